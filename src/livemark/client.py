"""Control-API client for talking to a running coordinator.

Used by the CLI whenever it is not the coordinator itself (and, in
coordinator mode, to register the first file the same way every other
invocation does).
"""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from livemark._utils import DEFAULT_HOST, DEFAULT_PORT, canonical_path

logger = logging.getLogger(__name__)


class ControlError(Exception):
    """A control request failed.

    ``status`` is the HTTP status code, or None if the coordinator could not
    be reached at all.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ControlClient:
    """Thin urllib client for the coordinator's control API.

    Paths are canonicalised here, in the caller's working directory, before
    they are sent.
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str = "/",
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bytes:
        url = self.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode(params)
        data = None
        headers: dict[str, str] = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"

        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug(f"{method} {url}")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            detail = e.read().decode(errors="replace").strip()
            raise ControlError(
                f"{method} {path} failed ({e.code}): {detail or e.reason}", status=e.code
            ) from e
        except (urllib.error.URLError, OSError) as e:
            reason = getattr(e, "reason", e)
            raise ControlError(f"Could not reach livemark at {self.base_url}: {reason}") from e

    def add_file(self, path: str | os.PathLike[str]) -> str:
        """Register a file for preview. Returns the session id."""
        body = self._request("POST", payload={"Path": str(canonical_path(path))})
        return body.decode().strip()

    def get_id(self, path: str | os.PathLike[str]) -> str | None:
        """Return the session id for ``path``, or None if it is not previewed."""
        body = self._request("GET", "/getid", params={"path": str(canonical_path(path))})
        return body.decode().strip() or None

    def delete_file(self, path: str | os.PathLike[str]) -> None:
        """Stop previewing ``path``."""
        self._request("DELETE", params={"id": str(canonical_path(path))})

    def delete_session(self, session_id: str) -> None:
        """Stop previewing the session with ``session_id``."""
        self._request("DELETE", params={"id": session_id})

    def shutdown(self) -> None:
        """Remove every session and stop the coordinator."""
        self._request("DELETE")

    def sessions(self) -> list[dict[str, Any]]:
        """List the coordinator's live sessions."""
        return json.loads(self._request("GET", "/api/sessions"))

    def health(self) -> dict[str, Any] | None:
        """GET /api/health. Returns the payload, or None if unhealthy or unreachable."""
        try:
            data = json.loads(self._request("GET", "/api/health"))
        except (ControlError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("status") != "ok":
            return None
        return data
