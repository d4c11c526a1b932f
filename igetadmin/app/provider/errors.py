from __future__ import annotations
from typing import Any, Optional


class IGetError(Exception):
    def __init__(self, msg: str, http_status: int = 500):
        super().__init__(msg)
        self.msg = msg
        self.http_status = http_status


class NotAuthenticatedError(IGetError):
    def __init__(self, msg: str = "Authentication token not found"):
        super().__init__(msg, http_status=401)


class ClientValidationError(IGetError):
    def __init__(self, msg: str):
        super().__init__(msg, http_status=400)


class ApiError(IGetError):
    def __init__(self, msg: str, http_status: int = 502, retryable: bool = False, body: Any = None):
        super().__init__(msg, http_status=http_status)
        self.retryable = retryable
        self.body = body


def map_status_to_message(status: Optional[int]) -> Optional[str]:
    mapping = {
        401: "Session expired. Please sign in again.",
        403: "Access denied. Please check your admin role.",
        404: "Resource not found",
    }
    return mapping.get(status) if status is not None else None


def message_from_body(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        msg = body.get("message") or body.get("msg") or body.get("error")
        if isinstance(msg, str) and msg.strip():
            return msg
    return fallback


def raise_for_api(status: Optional[int], body: Any, fallback: str = "Request failed"):
    # Upstream message wins; otherwise a status-specific text, then the caller's fallback
    msg = message_from_body(body, map_status_to_message(status) or fallback)
    http_status = status if status and status >= 400 else 502
    retryable = status is None or status >= 500
    raise ApiError(msg, http_status=http_status, retryable=retryable, body=body)
