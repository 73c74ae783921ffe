"""HTTP client for the fleet dashboard backend.

All endpoints sit behind a cookie-based session. Transport failures become
``NetworkError``, 401 becomes ``AuthenticationRequired`` (after notifying the
caller so it can re-authenticate), and any other non-2xx response becomes a
``BackendError`` carrying the backend's own error text when it sent one.
"""

import logging
from collections.abc import Callable, Iterable

import httpx

from fleetdash.app.core.config import settings
from fleetdash.app.core.exceptions import AuthenticationRequired, BackendError, NetworkError

logger = logging.getLogger(__name__)

# Sentinel so callers can pass timeout=None to disable the timeout entirely
_DEFAULT = object()


def _error_message(response: httpx.Response) -> tuple[str | None, dict]:
    """Extract the backend's error text from a JSON error payload."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return (text[:200] or None), {}
    if not isinstance(payload, dict):
        return None, {}
    for key in ("error", "detail", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value, payload
    return None, payload


class FleetApiClient:
    """Client for the dashboard backend REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        session_cookie: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_unauthorized: Callable[[], None] | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Backend origin (e.g., http://localhost:3000). Defaults to settings.base_url
            session_cookie: Session cookie value for the authenticated session
            timeout: Default per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
            on_unauthorized: Called when the backend rejects the session with 401
        """
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.api_url = f"{self.base_url}{settings.api_prefix}"
        self.session_cookie = session_cookie if session_cookie is not None else settings.session_cookie
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.on_unauthorized = on_unauthorized
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling limits."""
        if self._client is None or self._client.is_closed:
            cookies = {}
            if self.session_cookie:
                cookies[settings.session_cookie_name] = self.session_cookie
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                cookies=cookies,
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=20,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FleetApiClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def set_session_cookie(self, value: str | None):
        """Swap the session cookie after re-authentication."""
        self.session_cookie = value
        if self._client is not None:
            self._client.cookies.clear()
            if value:
                self._client.cookies.set(settings.session_cookie_name, value)

    def url(self, path: str) -> str:
        return f"{self.api_url}/{path.lstrip('/')}"

    async def request(self, method: str, path: str, *, timeout=_DEFAULT, **kwargs) -> httpx.Response:
        """Send a request and translate failures into the fleetdash error taxonomy."""
        client = await self._get_client()
        if timeout is not _DEFAULT:
            kwargs["timeout"] = timeout
        try:
            response = await client.request(method, self.url(path), **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        self._raise_for_status(method, path, response)
        return response

    def _raise_for_status(self, method: str, path: str, response: httpx.Response):
        if response.status_code == 401:
            logger.warning("Session rejected by backend on %s %s", method, path)
            if self.on_unauthorized:
                self.on_unauthorized()
            raise AuthenticationRequired(f"{method} {path} requires re-authentication")
        if response.is_success:
            return
        message, payload = _error_message(response)
        logger.debug("%s %s returned %s: %s", method, path, response.status_code, message)
        raise BackendError(response.status_code, message, payload)

    async def _json(self, method: str, path: str, **kwargs):
        response = await self.request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(response.status_code, f"Invalid JSON from {path}") from e

    # ============ Printers ============

    async def get_fleet_status(self, *, timeout=_DEFAULT) -> dict:
        return await self._json("GET", "/printers/status", timeout=timeout)

    async def get_camera_snapshot(self, camera_url: str, token: int, *, timeout=_DEFAULT) -> httpx.Response:
        """Fetch one camera frame. ``token`` is the cache-busting counter."""
        return await self.request(
            "GET",
            "/printers/camera-snapshot",
            params={"url": camera_url, "t": token},
            timeout=timeout,
        )

    # ============ Library ============

    async def list_library(self, *, timeout=_DEFAULT) -> list[dict]:
        data = await self._json("GET", "/library", timeout=timeout)
        if isinstance(data, dict):
            # Some deployments wrap the list
            data = data.get("files", [])
        return data

    async def get_duplicates(self, group_by: str, *, timeout=_DEFAULT) -> dict:
        return await self._json("GET", "/library/duplicates", params={"groupBy": group_by}, timeout=timeout)

    async def delete_library_file(self, file_id: int, *, timeout=_DEFAULT):
        await self.request("DELETE", f"/library/{file_id}", timeout=timeout)

    async def get_geometry(self, file_id: int, *, timeout=_DEFAULT) -> httpx.Response:
        return await self.request("GET", f"/library/geometry/{file_id}", timeout=timeout)

    async def head_download(self, file_id: int, *, timeout=_DEFAULT) -> int | None:
        """HEAD the download endpoint and return the declared content length."""
        response = await self.request("HEAD", f"/library/download/{file_id}", timeout=timeout)
        length = response.headers.get("content-length")
        if length is None:
            return None
        try:
            return int(length)
        except ValueError:
            logger.warning("Ignoring invalid content-length %r for file %s", length, file_id)
            return None

    async def download(self, file_id: int, *, timeout=_DEFAULT) -> bytes:
        response = await self.request("GET", f"/library/download/{file_id}", timeout=timeout)
        return response.content

    async def upload_library_file(
        self,
        filename: str,
        content: bytes,
        *,
        description: str = "",
        tags: Iterable[str] = (),
        timeout=_DEFAULT,
    ) -> dict:
        return await self._json(
            "POST",
            "/library/upload",
            files={"file": (filename, content, "application/octet-stream")},
            data={"description": description, "tags": ",".join(sorted(set(tags)))},
            timeout=timeout,
        )

    async def patch_library_file(self, file_id: int, fields: dict, *, timeout=_DEFAULT) -> dict:
        return await self._json("PATCH", f"/library/{file_id}", json=fields, timeout=timeout)

    async def put_library_tags(self, file_id: int, tags: Iterable[str], *, timeout=_DEFAULT) -> dict:
        return await self._json("PUT", f"/library/{file_id}/tags", json={"tags": sorted(set(tags))}, timeout=timeout)

    async def auto_tag(self, file_id: int, *, timeout=_DEFAULT) -> dict:
        return await self._json("POST", f"/library/{file_id}/auto-tag", timeout=timeout)

    async def auto_tag_all(self, *, timeout=_DEFAULT) -> dict:
        return await self._json("POST", "/library/auto-tag-all", timeout=timeout)

    async def auto_tag_status(self, *, timeout=_DEFAULT) -> dict:
        return await self._json("GET", "/library/auto-tag-status", timeout=timeout)

    async def scan_library(self, *, timeout=_DEFAULT) -> dict:
        return await self._json("POST", "/library/scan", timeout=timeout)
