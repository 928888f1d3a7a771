"""Session registry: file path -> live preview session.

The registry owns every Session for the lifetime of a coordinator. Adding a
path creates a session and starts its watch loop; removing it closes every
subscriber and waits for the watch loop to exit, so the OS watch is gone by
the time ``remove`` returns.

Lookups (``get_id``, ``lookup``) are synchronous and thread-safe, so the CLI
thread of a coordinator process can query the registry directly. Mutations
are coroutines because they start and stop tasks on the server's event loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import threading
from collections.abc import Callable
from contextlib import aclosing
from pathlib import Path

from livemark._types import Session
from livemark._utils import canonical_path, make_session_id
from livemark.renderer import render_markdown
from livemark.watcher import Watcher, watch_file

logger = logging.getLogger(__name__)

# How long remove() waits for a watch loop to wind down before cancelling it
_STOP_TIMEOUT = 5.0


def _ensure_readable(path: Path) -> None:
    """Raise if ``path`` is not a regular file this process can read."""
    if path.exists() and not path.is_file():
        raise ValueError(f"Not a regular file: {path}")
    with path.open("rb"):
        pass


class SessionRegistry:
    """Concurrency-safe mapping of canonical file paths to preview sessions.

    Args:
        renderer: Pure function turning file bytes into HTML.
        watcher: Async-iterator factory signalling file changes; defaults
            to the watchfiles-backed ``watch_file``.
    """

    def __init__(
        self,
        renderer: Callable[[bytes], str] = render_markdown,
        watcher: Watcher = watch_file,
    ) -> None:
        self._renderer = renderer
        self._watcher = watcher
        self._lock = threading.Lock()
        self._by_path: dict[Path, Session] = {}
        self._by_id: dict[str, Session] = {}
        # Sessions ever created; a re-added path never gets its old id back
        self._generation = 0

    # --- Lookups ---

    def get_id(self, path: str | os.PathLike[str]) -> str | None:
        """Return the session id for ``path``, or None if it is not previewed."""
        try:
            canonical = canonical_path(path)
        except ValueError:
            return None
        with self._lock:
            session = self._by_path.get(canonical)
            return session.id if session else None

    def lookup(self, session_id: str) -> Session | None:
        """Return the live session with ``session_id``, or None."""
        with self._lock:
            return self._by_id.get(session_id)

    def sessions(self) -> list[Session]:
        """Snapshot of the live sessions, in registration order."""
        with self._lock:
            return list(self._by_path.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_path)

    # --- Mutations ---

    async def add(self, path: str | os.PathLike[str]) -> str:
        """Register ``path`` for preview and return its session id.

        Idempotent: an already-registered path returns its existing id and
        keeps its single watch. Returns before the first render completes.

        Raises:
            FileNotFoundError: The file does not exist.
            PermissionError: The file cannot be read.
            ValueError: The path is not a regular file or cannot be resolved.
        """
        canonical = canonical_path(path)
        with self._lock:
            existing = self._by_path.get(canonical)
        if existing is not None:
            return existing.id

        await asyncio.to_thread(_ensure_readable, canonical)

        with self._lock:
            # Another handler may have registered it while we checked the file
            existing = self._by_path.get(canonical)
            if existing is not None:
                return existing.id
            self._generation += 1
            session = Session(id=make_session_id(canonical, self._generation), path=canonical)
            stop_event = asyncio.Event()
            session.stop_event = stop_event
            session.watch_task = asyncio.create_task(
                self._watch_loop(session, stop_event), name=f"livemark-watch-{session.id}"
            )
            self._by_path[canonical] = session
            self._by_id[session.id] = session

        logger.info(f"Previewing {canonical} as session {session.id}")
        return session.id

    async def remove(self, path: str | os.PathLike[str]) -> bool:
        """Remove the session for ``path``. Returns False if there is none."""
        try:
            canonical = canonical_path(path)
        except ValueError:
            return False
        with self._lock:
            session = self._by_path.pop(canonical, None)
            if session is None:
                return False
            self._by_id.pop(session.id, None)
        await self._teardown(session)
        return True

    async def remove_by_id(self, session_id: str) -> bool:
        """Remove the session with ``session_id``. Returns False if there is none."""
        with self._lock:
            session = self._by_id.pop(session_id, None)
            if session is None:
                return False
            self._by_path.pop(session.path, None)
        await self._teardown(session)
        return True

    async def remove_all(self) -> int:
        """Remove every session, releasing all watches. Returns the count."""
        with self._lock:
            sessions = list(self._by_path.values())
            self._by_path.clear()
            self._by_id.clear()
        if sessions:
            await asyncio.gather(*(self._teardown(s) for s in sessions))
        return len(sessions)

    # --- Internals ---

    async def _teardown(self, session: Session) -> None:
        """Close subscribers, then stop the watch loop and wait for it."""
        session.close()
        if session.stop_event is not None:
            session.stop_event.set()
        task = session.watch_task
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=_STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Watch loop for {session.path} did not stop in time; cancelled")
        logger.info(f"Stopped previewing {session.path} (session {session.id})")

    def _discard(self, session: Session) -> None:
        """Drop a session whose watch died, if it is still registered."""
        with self._lock:
            if self._by_path.get(session.path) is session:
                del self._by_path[session.path]
            if self._by_id.get(session.id) is session:
                del self._by_id[session.id]
        session.close()

    async def _watch_loop(self, session: Session, stop_event: asyncio.Event) -> None:
        """Render once, then re-render on every detected change until stopped."""
        await self._refresh(session)
        try:
            async with aclosing(self._watcher(session.path, stop_event)) as changes:
                async for _ in changes:
                    if stop_event.is_set() or session.closed:
                        break
                    await self._refresh(session)
        except Exception:
            logger.exception(f"Watching {session.path} failed; removing session {session.id}")
            self._discard(session)

    async def _refresh(self, session: Session) -> None:
        """Read, render and push the file if its contents changed."""
        try:
            data = await asyncio.to_thread(session.path.read_bytes)
        except OSError as e:
            logger.warning(f"Could not read {session.path}: {e}")
            session.digest = None
            session.publish_error(f"Could not read {session.path.name}: {e.strerror or e}")
            return

        digest = hashlib.sha1(data).hexdigest()
        if digest == session.digest:
            logger.debug(f"{session.path} unchanged, skipping render")
            return
        session.digest = digest

        try:
            html = await asyncio.to_thread(self._renderer, data)
        except Exception as e:
            logger.warning(f"Rendering {session.path} failed: {e}")
            session.publish_error(str(e))
            return

        delivered = session.publish_render(html)
        logger.debug(f"Rendered {session.path} ({len(html)} chars) to {delivered} subscriber(s)")
