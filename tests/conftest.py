"""Shared test fixtures for the livemark test suite."""

import asyncio
import time

import pytest

from livemark._utils import canonical_path
from livemark.registry import SessionRegistry
from livemark.server import Coordinator


class ManualWatcher:
    """Stands in for ``watch_file``: tests call ``trigger()`` to emit a change.

    Tracks which paths currently hold a watch so tests can assert that
    removal released it.
    """

    def __init__(self):
        self.active = {}
        self.started = 0
        self.stopped = 0

    async def watch(self, path, stop_event):
        loop = asyncio.get_running_loop()
        queue = asyncio.Queue()
        self.active[path] = (loop, queue)
        self.started += 1
        try:
            while True:
                change = asyncio.ensure_future(queue.get())
                stop = asyncio.ensure_future(stop_event.wait())
                done, pending = await asyncio.wait(
                    {change, stop}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in pending:
                    task.cancel()
                if stop in done:
                    return
                yield
        finally:
            self.active.pop(path, None)
            self.stopped += 1

    def trigger(self, path, timeout=2.0):
        """Signal a change to ``path`` (waits for its watch to be live)."""
        path = canonical_path(path)
        deadline = time.monotonic() + timeout
        while path not in self.active:
            if time.monotonic() > deadline:
                raise AssertionError(f"no active watch for {path}")
            time.sleep(0.01)
        loop, queue = self.active[path]
        loop.call_soon_threadsafe(queue.put_nowait, None)


@pytest.fixture
def watcher():
    return ManualWatcher()


@pytest.fixture
def registry(watcher):
    return SessionRegistry(watcher=watcher.watch)


@pytest.fixture
def md_file(tmp_path):
    path = tmp_path / "a.md"
    path.write_text("# Hello\n\nFirst draft.\n")
    return path


@pytest.fixture
def other_md_file(tmp_path):
    path = tmp_path / "b.md"
    path.write_text("# Other\n")
    return path


@pytest.fixture
def coordinator(registry):
    return Coordinator(port=7799, host="127.0.0.1", registry=registry)
