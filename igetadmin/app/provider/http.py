from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..request_context import current_request_id
from .auth import Session
from .errors import ApiError, message_from_body, raise_for_api

logger = logging.getLogger(__name__)


def clean_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop undefined values; list values are sent comma-joined."""
    out: Dict[str, Any] = {}
    for k, v in (params or {}).items():
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        if isinstance(v, (list, tuple, set)):
            items = [str(i) for i in v if i is not None and str(i) != ""]
            if not items:
                continue
            out[k] = ",".join(items)
            continue
        if isinstance(v, bool):
            out[k] = "true" if v else "false"
            continue
        out[k] = v
    return out


class ApiHTTP:
    def __init__(self, session: Session, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or Settings.from_env()
        s = self.settings
        timeout: httpx.Timeout | float
        if s.http_connect_timeout or s.http_read_timeout:
            timeout = httpx.Timeout(
                connect=s.http_connect_timeout or s.http_timeout,
                read=s.http_read_timeout or s.http_timeout,
                write=s.http_timeout,
                pool=None,
            )
        else:
            timeout = s.http_timeout
        limits = httpx.Limits(max_connections=s.http_max_connections)
        self._client = httpx.AsyncClient(timeout=timeout, limits=limits)

    def _url(self, path: str, base_url: Optional[str]) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return (base_url or self.settings.api_base_url).rstrip("/") + path

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        base_url: Optional[str] = None,
        include_token: bool = True,
        extra_headers: Optional[Dict[str, str]] = None,
        error_message: str = "Request failed",
    ) -> Any:
        """
        Sends one request and returns the decoded JSON body.

        A missing token raises NotAuthenticatedError before any I/O. Non-2xx statuses
        and ``{"success": false}`` bodies raise ApiError carrying the server message
        when present, else ``error_message``. No retries are attempted.
        """
        headers = {"Content-Type": "application/json"}
        if include_token:
            headers["Authorization"] = f"Bearer {self.session.require_token()}"
        req_id = current_request_id()
        if req_id:
            headers["X-Request-Id"] = req_id
        if extra_headers:
            headers.update({k: v for k, v in extra_headers.items() if v is not None})

        url = self._url(path, base_url)
        query = clean_params(params)
        try:
            resp = await self._client.request(method, url, params=query or None, json=json, headers=headers)
        except httpx.RequestError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise ApiError(error_message, http_status=502, retryable=True)

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            logger.warning("%s %s -> %s", method, url, resp.status_code)
            raise_for_api(resp.status_code, body, fallback=error_message)
        if isinstance(body, dict) and body.get("success") is False:
            raise ApiError(message_from_body(body, error_message), http_status=400, body=body)
        if body is None:
            raise ApiError(error_message, http_status=502, retryable=True)
        return body

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, json: Optional[Any] = None, **kwargs: Any) -> Any:
        return await self.request("POST", path, json=json if json is not None else {}, **kwargs)

    async def put(self, path: str, json: Optional[Any] = None, **kwargs: Any) -> Any:
        return await self.request("PUT", path, json=json if json is not None else {}, **kwargs)

    async def patch(self, path: str, json: Optional[Any] = None, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, json=json if json is not None else {}, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
