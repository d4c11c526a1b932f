from __future__ import annotations
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel


DEFAULT_API_BASE_URL = "https://iget.onrender.com"
DEFAULT_LOCAL_API_BASE_URL = "http://localhost:5000"
DEFAULT_HUBNET_CHECKER_URL = "https://console.hubnet.app/live/api/context/business/transaction-checker"
DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def load_env_file(path: Optional[str] = None) -> None:
    # Load igetadmin/.env explicitly so startup works from any working directory
    try:
        base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        load_dotenv(path or os.path.join(base_dir, ".env"))
    except Exception:
        load_dotenv()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip().rstrip("/") for item in raw.split(",") if item.strip()]


def _env_opt_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    try:
        return float(raw) if raw else None
    except Exception:
        return None


class Settings(BaseModel):
    api_base_url: str = DEFAULT_API_BASE_URL
    local_api_base_url: str = DEFAULT_LOCAL_API_BASE_URL
    http_timeout: float = 30.0
    http_connect_timeout: Optional[float] = None
    http_read_timeout: Optional[float] = None
    http_max_connections: int = 100
    hubnet_checker_url: str = DEFAULT_HUBNET_CHECKER_URL
    hubnet_token: str = ""
    orders_page_size: int = 10
    orders_fetch_limit: int = 100
    export_page_size: int = 1000
    search_debounce_seconds: float = 0.5
    success_message_ttl_seconds: float = 3.0
    status_check_delay_seconds: float = 1.0
    sms_sender_id: str = "iGet"
    session_file: str = os.path.join("~", ".iget", "session.json")
    allow_session_file: bool = False
    cors_origins: List[str] = DEFAULT_CORS_ORIGINS
    max_workspaces: int = 100
    workspace_idle_seconds: float = 1800.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment.

        Invalid numeric values fall back to the defaults instead of failing startup.
        """
        page_size = _env_int("ORDERS_PAGE_SIZE", 10)
        export_page_size = _env_int("EXPORT_PAGE_SIZE", 1000)
        fetch_limit = _env_int("ORDERS_FETCH_LIMIT", 100)
        max_workspaces = _env_int("IGET_MAX_WORKSPACES", 100)
        return cls(
            api_base_url=os.getenv("IGET_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
            local_api_base_url=os.getenv("IGET_LOCAL_API_BASE_URL", DEFAULT_LOCAL_API_BASE_URL).rstrip("/"),
            http_timeout=_env_float("IGET_HTTP_TIMEOUT", 30.0),
            http_connect_timeout=_env_opt_float("IGET_HTTP_CONNECT_TIMEOUT"),
            http_read_timeout=_env_opt_float("IGET_HTTP_READ_TIMEOUT"),
            http_max_connections=_env_int("IGET_HTTP_MAX_CONNECTIONS", 100),
            hubnet_checker_url=os.getenv("HUBNET_CHECKER_URL", DEFAULT_HUBNET_CHECKER_URL),
            hubnet_token=os.getenv("HUBNET_TOKEN", ""),
            orders_page_size=page_size if page_size > 0 else 10,
            orders_fetch_limit=fetch_limit if fetch_limit > 0 else 100,
            export_page_size=export_page_size if export_page_size > 0 else 1000,
            search_debounce_seconds=max(0.0, _env_float("SEARCH_DEBOUNCE_SECONDS", 0.5)),
            success_message_ttl_seconds=max(0.0, _env_float("SUCCESS_MESSAGE_TTL_SECONDS", 3.0)),
            status_check_delay_seconds=max(0.0, _env_float("STATUS_CHECK_DELAY_SECONDS", 1.0)),
            sms_sender_id=(os.getenv("SMS_SENDER_ID") or "iGet")[:11],
            session_file=os.getenv("IGET_SESSION_FILE", os.path.join("~", ".iget", "session.json")),
            allow_session_file=_env_bool("IGET_ALLOW_SESSION_FILE"),
            cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
            max_workspaces=max_workspaces if max_workspaces > 0 else 100,
            workspace_idle_seconds=max(0.0, _env_float("IGET_WORKSPACE_IDLE_SECONDS", 1800.0)),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
