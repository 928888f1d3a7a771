"""livemark: live markdown previews in the browser.

Runs a small local server that renders markdown files and pushes a fresh
render to every open browser tab whenever a file changes on disk. Several
files can be previewed at once; every ``livemark start`` on the same port
shares one server process.

Quick Start:
    $ livemark -l start README.md     # first call: becomes the server
    $ livemark -l start NOTES.md      # later calls: register with it
    $ livemark stop NOTES.md          # stop one preview
    $ livemark stop                   # stop the server

Embedding:
    from livemark import try_become_coordinator

    coordinator = try_become_coordinator(port=1337)
    if coordinator is not None:
        coordinator.start()
"""

from __future__ import annotations

import logging

__version__ = "0.2.0"

from livemark.client import ControlClient, ControlError
from livemark.registry import SessionRegistry
from livemark.renderer import RenderError, render_markdown
from livemark.server import Coordinator, try_become_coordinator

__all__ = [
    "ControlClient",
    "ControlError",
    "Coordinator",
    "RenderError",
    "SessionRegistry",
    "__version__",
    "render_markdown",
    "try_become_coordinator",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
