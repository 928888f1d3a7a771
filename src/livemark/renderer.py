"""Markdown-to-HTML renderer for the preview pipeline.

Turns the raw bytes of a previewed file into an HTML fragment. The
renderer is a pure function: it keeps no per-call state, and every
failure surfaces as a RenderError that the watch loop pushes to the
browser instead of the page content.
"""

from __future__ import annotations

import logging

from markdown_it import MarkdownIt

logger = logging.getLogger(__name__)

# Maximum file size accepted for rendering (10 MB)
_MAX_SOURCE_BYTES = 10 * 1024 * 1024

_md = (
    MarkdownIt("commonmark", {"html": True, "typographer": True})
    .enable("table")
    .enable("strikethrough")
)


class RenderError(Exception):
    """Raised when a file's contents cannot be rendered."""


def render_markdown(data: bytes) -> str:
    """Render UTF-8 markdown bytes to an HTML fragment.

    Args:
        data: Raw file contents.

    Returns:
        The rendered HTML.

    Raises:
        RenderError: If the input is too large, is not valid UTF-8, or the
            parser fails.
    """
    if len(data) > _MAX_SOURCE_BYTES:
        raise RenderError(
            f"File exceeds size limit: {len(data)} bytes > {_MAX_SOURCE_BYTES} bytes"
        )
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise RenderError(f"File is not valid UTF-8 (invalid byte at offset {e.start})") from e

    # Editors on Windows like to prepend a BOM
    text = text.removeprefix("\ufeff")

    try:
        return _md.render(text)
    except Exception as e:
        logger.debug("markdown-it failed", exc_info=True)
        raise RenderError(f"Markdown rendering failed: {e}") from e
