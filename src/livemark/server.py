"""Coordinator: Starlette + WebSocket server for live markdown previews.

One coordinator per port owns the listening socket and the session
registry. It runs uvicorn in a background thread on a socket it binds
itself, so failing to bind is how a second ``livemark start`` learns that
a coordinator is already running (see ``try_become_coordinator``).

Endpoints:
    POST   /                  → register a file, body {"Path": "..."}
    GET    /getid?path=...    → session id for a path (empty body if unknown)
    DELETE /?id=...           → remove one session (id or file path)
    DELETE /                  → remove every session and shut down
    GET    /?id=...           → preview page for a session
    GET    /                  → index of previewed files
    WS     /ws?id=...         → live-update stream for a session
    GET    /api/health        → health check
    GET    /api/sessions      → session listing
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import html
import json
import logging
import re
import socket
import sys
import threading
import time
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path

import anyio
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from livemark._types import MessageType, Subscriber
from livemark._utils import DEFAULT_HOST, DEFAULT_PORT, preview_url
from livemark.registry import SessionRegistry

logger = logging.getLogger(__name__)

_STATIC_DIR = Path(__file__).parent / "static"

# Filled in a single pass so substituted values are never rescanned
_PLACEHOLDER = re.compile(r"\{\{(title|path|session_id)\}\}")

# WebSocket close code for an unknown session id
_WS_NOT_FOUND = 4404


@functools.lru_cache(maxsize=1)
def _preview_template() -> str:
    return (_STATIC_DIR / "preview.html").read_text(encoding="utf-8")


class Coordinator:
    """Control API + preview server for one port.

    Owns the session registry and the uvicorn server. Designed to run in a
    background thread via ``start()`` while the calling thread blocks in
    ``wait()``.

    Args:
        port: Port to bind to. ``0`` picks a free port at bind time.
        host: Host to bind to (default: 127.0.0.1, local clients only).
        registry: Session registry to serve; a fresh one by default.
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.port = port
        self.host = host
        self.registry = registry if registry is not None else SessionRegistry()
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.shutdown_requested = threading.Event()
        self._started_at = datetime.now(timezone.utc)

        self._app = self._build_app()

    def _build_app(self) -> Starlette:
        """Build the Starlette application with all routes."""
        routes = [
            Route("/", self._index, methods=["GET"]),
            Route("/", self._add_file, methods=["POST"]),
            Route("/", self._delete, methods=["DELETE"]),
            Route("/getid", self._get_id, methods=["GET"]),
            Route("/api/health", self._api_health),
            Route("/api/sessions", self._api_sessions),
            WebSocketRoute("/ws", self._ws_endpoint),
        ]
        return Starlette(routes=routes, lifespan=self._lifespan)

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        yield
        # Every exit path releases every watch
        removed = await self.registry.remove_all()
        if removed:
            logger.debug(f"Released {removed} session(s) on shutdown")

    # --- Control API ---

    async def _add_file(self, request: Request) -> Response:
        """Register a file for preview. Responds once the session exists."""
        try:
            body = await request.json()
        except Exception:
            return PlainTextResponse("invalid JSON", status_code=400)

        path = body.get("Path") if isinstance(body, dict) else None
        if not isinstance(path, str) or not path:
            return PlainTextResponse("missing Path", status_code=400)

        try:
            session_id = await self.registry.add(path)
        except FileNotFoundError:
            return PlainTextResponse(f"file not found: {path}", status_code=404)
        except PermissionError:
            return PlainTextResponse(f"permission denied: {path}", status_code=403)
        except (ValueError, OSError) as e:
            return PlainTextResponse(str(e), status_code=400)
        return PlainTextResponse(session_id)

    async def _get_id(self, request: Request) -> Response:
        """Return the session id for ?path=, or an empty body if unknown."""
        path = request.query_params.get("path")
        if not path:
            return PlainTextResponse("missing path", status_code=400)
        return PlainTextResponse(self.registry.get_id(path) or "")

    async def _delete(self, request: Request) -> Response:
        """Remove one session (?id=) or, without an id, shut down."""
        target = request.query_params.get("id")
        if not target:
            removed = await self.registry.remove_all()
            logger.info(f"Shutdown requested; removed {removed} session(s)")
            self.request_shutdown()
            return PlainTextResponse("OK")

        # `livemark stop FILE` sends the file path in place of an id
        if await self.registry.remove_by_id(target) or await self.registry.remove(target):
            return PlainTextResponse("OK")
        return PlainTextResponse(f"no session for {target}", status_code=404)

    async def _api_health(self, request: Request) -> JSONResponse:
        """Health check endpoint."""
        from livemark import __version__

        uptime_seconds = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return JSONResponse(
            {
                "status": "ok",
                "uptime": round(uptime_seconds, 1),
                "version": __version__,
                "sessions": len(self.registry),
            }
        )

    async def _api_sessions(self, request: Request) -> JSONResponse:
        """List live sessions."""
        return JSONResponse(
            [
                {
                    "id": s.id,
                    "path": str(s.path),
                    "url": preview_url(self.port, s.id),
                    "subscribers": s.subscriber_count,
                }
                for s in self.registry.sessions()
            ]
        )

    # --- Preview pages ---

    async def _index(self, request: Request) -> Response:
        """Serve a session's preview page, or the index without ?id=."""
        session_id = request.query_params.get("id")
        if session_id is None:
            return HTMLResponse(self._render_index())

        session = self.registry.lookup(session_id)
        if session is None:
            return PlainTextResponse(f"no session {session_id}", status_code=404)

        values = {
            "title": html.escape(session.path.name),
            "path": html.escape(str(session.path)),
            "session_id": json.dumps(session.id),
        }
        page = _PLACEHOLDER.sub(lambda m: values[m.group(1)], _preview_template())
        return HTMLResponse(page)

    def _render_index(self) -> str:
        items = "\n".join(
            f'<li><a href="/?id={s.id}">{html.escape(s.path.name)}</a> '
            f"<code>{html.escape(str(s.path))}</code></li>"
            for s in self.registry.sessions()
        )
        body = f"<ul>{items}</ul>" if items else "<p>No files are being previewed.</p>"
        return f"<!doctype html><title>livemark</title><h1>livemark</h1>{body}"

    # --- WebSocket ---

    async def _ws_endpoint(self, ws: WebSocket) -> None:
        """Stream renders for ?id= until the session closes or the tab leaves."""
        session_id = ws.query_params.get("id", "")
        session = self.registry.lookup(session_id)
        if session is None:
            await ws.close(code=_WS_NOT_FOUND)
            return

        await ws.accept()
        subscriber = session.subscribe()
        logger.debug(f"Subscriber joined session {session_id}")

        closed_by_server = False
        try:
            async with anyio.create_task_group() as tg:

                async def pump() -> None:
                    nonlocal closed_by_server
                    closed_by_server = await self._pump(ws, subscriber)
                    tg.cancel_scope.cancel()

                async def drain() -> None:
                    await self._drain(ws)
                    tg.cancel_scope.cancel()

                tg.start_soon(pump)
                tg.start_soon(drain)
        finally:
            session.unsubscribe(subscriber)

        if closed_by_server:
            try:
                await ws.close(code=1000)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.debug(f"WebSocket for session {session_id} already closed: {e!r}")
        logger.debug(f"Subscriber left session {session_id}")

    async def _pump(self, ws: WebSocket, subscriber: Subscriber) -> bool:
        """Forward queued messages to the socket, in order.

        Returns True once the closed signal was delivered, False if the
        browser went away first.
        """
        while True:
            message = await subscriber.get()
            try:
                await ws.send_json(message)
            except (RuntimeError, OSError, WebSocketDisconnect) as e:
                logger.debug(f"Dropping subscriber of {subscriber.session_id}: {e!r}")
                return False
            if message["type"] == MessageType.CLOSED.value:
                return True

    async def _drain(self, ws: WebSocket) -> None:
        """Read (and ignore) client frames until the browser disconnects."""
        while True:
            try:
                message = await ws.receive()
            except (RuntimeError, WebSocketDisconnect):
                return
            if message["type"] == "websocket.disconnect":
                return

    # --- Lifecycle ---

    def bind(self) -> None:
        """Bind the listening socket.

        Raises:
            OSError: The address is already in use (or otherwise unavailable).
        """
        if self._socket is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if sys.platform != "win32":
                # On Windows SO_REUSEADDR lets a second process share the port
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(128)
        except OSError:
            sock.close()
            raise
        self._socket = sock
        self.port = sock.getsockname()[1]
        logger.debug(f"Bound {self.host}:{self.port}")

    def start(self) -> None:
        """Start serving in a background daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self.bind()

        config = uvicorn.Config(
            app=self._app,
            log_level="warning",
            access_log=False,
            lifespan="on",
        )
        self._server = uvicorn.Server(config)
        server = self._server
        sock = self._socket

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            try:
                self._loop.run_until_complete(server.serve(sockets=[sock]))
            finally:
                self._loop.close()
                self._close_socket()

        self._thread = threading.Thread(target=_run, name="livemark-coordinator", daemon=True)
        self._thread.start()
        self._wait_for_server()

    def _wait_for_server(self, timeout: float = 5.0) -> None:
        """Wait for uvicorn to finish startup."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._server is None or self._server.started:
                return
            if self._thread is not None and not self._thread.is_alive():
                return
            time.sleep(0.02)
        logger.warning("Coordinator did not report startup in time")

    def request_shutdown(self) -> None:
        """Ask the serve loop to exit (safe from any thread)."""
        self.shutdown_requested.set()
        if self._server is not None:
            self._server.should_exit = True

    def wait(self) -> None:
        """Block until the serve loop returns."""
        while self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=0.5)

    def stop(self) -> None:
        """Stop the server; the lifespan handler releases every session."""
        self.request_shutdown()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self._server = None
        self._close_socket()
        logger.debug("Coordinator stopped")

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    @property
    def is_running(self) -> bool:
        """Check if the server thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def get_id(self, path: str) -> str | None:
        """In-process session id lookup (no HTTP round trip)."""
        return self.registry.get_id(path)

    def url_for(self, session_id: str) -> str:
        return preview_url(self.port, session_id)


def try_become_coordinator(
    port: int = DEFAULT_PORT,
    host: str = DEFAULT_HOST,
    registry: SessionRegistry | None = None,
) -> Coordinator | None:
    """Bind ``port`` and return a coordinator, or None if the port is taken.

    A bind conflict means another process already coordinates this port;
    callers then talk to it through the control API instead.
    """
    coordinator = Coordinator(port=port, host=host, registry=registry)
    try:
        coordinator.bind()
    except OSError as e:
        logger.debug(f"Port {port} unavailable ({e}); using the running coordinator")
        return None
    return coordinator
