"""Shared utilities for the livemark package.

Deduplicates common patterns used across multiple modules:
path canonicalisation, session id derivation, preview URLs,
and detached subprocess launching.
"""

from __future__ import annotations

import hashlib
import os
import sys
from pathlib import Path
from typing import Any

DEFAULT_PORT = 1337
DEFAULT_HOST = "127.0.0.1"

# Browsers are pointed at "localhost"; programmatic access goes through
# 127.0.0.1 so it never depends on how localhost resolves.
DISPLAY_HOST = "localhost"

# ---------------------------------------------------------------------------
# Paths and ids
# ---------------------------------------------------------------------------


def canonical_path(path: str | os.PathLike[str]) -> Path:
    """Return the absolute, symlink-resolved form of ``path``.

    Relative paths are resolved against the current working directory, so
    callers in another process must canonicalise before sending a path to
    the coordinator.

    Raises:
        ValueError: The path cannot be resolved (unknown ``~user``, an
            embedded NUL byte, a symlink loop).
    """
    try:
        return Path(path).expanduser().resolve()
    except (RuntimeError, ValueError, OSError) as e:
        raise ValueError(f"Invalid path {str(path)!r}: {e}") from e


def make_session_id(path: Path, generation: int = 1) -> str:
    """Derive a session id from a canonical path.

    ``generation`` is the session's sequence number in this process, so a
    path that is removed and added again gets a fresh id.
    """
    key = f"{generation}:{path}".encode("utf-8", errors="surrogateescape")
    return hashlib.sha1(key).hexdigest()[:12]


def preview_url(port: int, session_id: str, host: str = DISPLAY_HOST) -> str:
    """Return the browser URL of a session's preview page."""
    return f"http://{host}:{port}/?id={session_id}"


# ---------------------------------------------------------------------------
# Cross-platform subprocess detach kwargs
# ---------------------------------------------------------------------------


def detached_popen_kwargs() -> dict[str, Any]:
    """Return Popen kwargs for detaching a subprocess from the parent."""
    if sys.platform == "win32":
        CREATE_NEW_PROCESS_GROUP = 0x00000200
        DETACHED_PROCESS = 0x00000008
        return {"creationflags": CREATE_NEW_PROCESS_GROUP | DETACHED_PROCESS}
    return {"start_new_session": True}
