from __future__ import annotations
import json
import logging
import os
from typing import Any, Dict, Optional

from .errors import NotAuthenticatedError

logger = logging.getLogger(__name__)

TOKEN_KEY = "igettoken"
USER_KEY = "userData"
THEME_KEY = "theme"
ADMIN_ROLES = ("admin", "credit_admin", "debit_admin")


class SessionStore:
    """JSON file holding the persisted client session (token, cached user, theme)."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("unreadable session file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump(data, fh)


class Session:
    """Explicit session context injected into clients and views.

    Loaded once at startup (``Session.load``) and cleared on logout; nothing else
    reads the token store directly.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        user: Optional[Dict[str, Any]] = None,
        theme: Optional[str] = None,
        store: Optional[SessionStore] = None,
    ):
        self.token = token or None
        self.user = user or None
        self.theme = theme
        self.store = store

    @classmethod
    def load(cls, store: SessionStore) -> "Session":
        data = store.read()
        user = data.get(USER_KEY)
        return cls(
            token=data.get(TOKEN_KEY),
            user=user if isinstance(user, dict) else None,
            theme=data.get(THEME_KEY),
            store=store,
        )

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    @property
    def role(self) -> Optional[str]:
        return (self.user or {}).get("role")

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def require_token(self) -> str:
        if not self.token:
            raise NotAuthenticatedError()
        return self.token

    def login(self, token: str, user: Optional[Dict[str, Any]] = None) -> None:
        self.token = token
        self.user = user
        self._persist()

    def update_user(self, user: Dict[str, Any]) -> None:
        self.user = user
        self._persist()

    def set_theme(self, theme: str) -> None:
        self.theme = theme
        self._persist()

    def clear(self) -> None:
        self.token = None
        self.user = None
        self._persist()

    def _persist(self) -> None:
        if self.store is None:
            return
        data: Dict[str, Any] = {}
        if self.token:
            data[TOKEN_KEY] = self.token
        if self.user:
            data[USER_KEY] = self.user
        if self.theme:
            data[THEME_KEY] = self.theme
        self.store.write(data)
