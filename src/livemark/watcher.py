"""File watching for live previews.

``watch_file`` yields once for every batch of filesystem changes touching
a single file. It watches the file's parent directory (non-recursively)
and filters on the file name, so editors that save by writing a temp file
and renaming it over the original keep producing events.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import watchfiles

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 50

# (path, stop_event) -> async generator yielding once per detected change
Watcher = Callable[[Path, asyncio.Event], AsyncGenerator[None, None]]


async def watch_file(
    path: Path,
    stop_event: asyncio.Event,
    debounce: int = DEFAULT_DEBOUNCE_MS,
) -> AsyncGenerator[None, None]:
    """Yield whenever ``path`` is created, modified or deleted.

    Iteration ends once ``stop_event`` is set; the underlying OS watch is
    released before the generator returns. Errors from the watch backend
    (missing directory, exhausted inotify watches) propagate to the caller.
    """
    name = path.name

    def _only_target(change: watchfiles.Change, changed: str) -> bool:
        return os.path.basename(changed) == name

    logger.debug(f"Watching {path}")
    try:
        async for changes in watchfiles.awatch(
            path.parent,
            watch_filter=_only_target,
            debounce=debounce,
            stop_event=stop_event,
            recursive=False,
        ):
            logger.debug(f"{len(changes)} change(s) to {path}")
            yield
    finally:
        logger.debug(f"Stopped watching {path}")
