from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from ..models.dto import Pagination, User, Wallet
from ..provider.client import IGetClient
from ..provider.errors import ClientValidationError, IGetError

logger = logging.getLogger(__name__)


def _positive_amount(raw: Any) -> Optional[float]:
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        return None
    if amount != amount or amount <= 0:
        return None
    return amount


class UserAdminService:
    """Admin user list with approval, wallet and role actions.

    Every action goes to the backend first; the cached page is only patched
    after the backend accepted the change.
    """

    def __init__(self, client: IGetClient, page_size: int = 20):
        self.client = client
        self.page_size = page_size
        self.users: List[User] = []
        self.pagination = Pagination()
        self.stats: Dict[str, Any] = {}
        self.search = ""
        self.approval_status = "all"
        self.page = 1
        self.selected: List[str] = []
        self.error: Optional[str] = None

    def get(self, user_id: str) -> User:
        for u in self.users:
            if u.id == user_id:
                return u
        raise ClientValidationError("User not found")

    def _patch(self, user_id: str, **update: Any) -> Optional[User]:
        # Users outside the loaded page have nothing local to update
        for i, u in enumerate(self.users):
            if u.id == user_id:
                self.users[i] = u.model_copy(update=update)
                return self.users[i]
        return None

    def _fail(self, exc: IGetError, action: str) -> None:
        logger.warning("%s failed: %s", action, exc.msg)
        self.error = exc.msg

    async def load(self, page: Optional[int] = None, search: Optional[str] = None, approval_status: Optional[str] = None) -> bool:
        if page is not None:
            self.page = max(int(page), 1)
        if search is not None:
            self.search = search
            self.page = 1 if page is None else self.page
        if approval_status is not None:
            self.approval_status = approval_status or "all"
        self.error = None
        try:
            result = await self.client.list_users(
                page=self.page, limit=self.page_size, search=self.search, approval_status=self.approval_status
            )
        except IGetError as e:
            self._fail(e, "load users")
            self.users = []
            self.pagination = Pagination()
            return False
        self.users = result.users
        self.pagination = result.pagination
        known = {u.id for u in self.users}
        self.selected = [uid for uid in self.selected if uid in known]
        return True

    async def load_stats(self) -> Dict[str, Any]:
        try:
            self.stats = await self.client.approval_stats()
        except IGetError as e:
            self._fail(e, "approval stats")
        return self.stats

    async def transactions(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.client.user_transactions(user_id)

    async def _run(self, action: str, coro) -> Any:
        self.error = None
        try:
            return await coro
        except IGetError as e:
            self._fail(e, action)
            raise

    async def approve(self, user_id: str, notes: str = "") -> Optional[User]:
        await self._run("approve user", self.client.approve_user(user_id, notes))
        await self.load_stats()
        return self._patch(user_id, approvalStatus="approved", isActive=True)

    async def reject(self, user_id: str, reason: str) -> Optional[User]:
        if not (reason or "").strip():
            self.error = "Rejection reason is required"
            raise ClientValidationError(self.error)
        await self._run("reject user", self.client.reject_user(user_id, reason.strip()))
        await self.load_stats()
        return self._patch(user_id, approvalStatus="rejected", isActive=False)

    def toggle_selected(self, user_id: str) -> List[str]:
        if user_id in self.selected:
            self.selected.remove(user_id)
        else:
            self.selected.append(user_id)
        return self.selected

    def select_all(self, checked: bool = True) -> List[str]:
        # Only pending users can be bulk approved
        self.selected = [u.id for u in self.users if u.approvalStatus == "pending"] if checked else []
        return self.selected

    async def bulk_approve(self, user_ids: Optional[List[str]] = None, notes: str = "Bulk approval") -> int:
        ids = list(user_ids if user_ids is not None else self.selected)
        if not ids:
            self.error = "No users selected for bulk approval"
            raise ClientValidationError(self.error)
        await self._run("bulk approve", self.client.bulk_approve_users(ids, notes))
        self.selected = []
        await self.load()
        await self.load_stats()
        return len(ids)

    async def delete(self, user_id: str) -> None:
        await self._run("delete user", self.client.delete_user(user_id))
        await self.load()

    async def toggle_status(self, user_id: str) -> User:
        current = self.get(user_id)
        await self._run("toggle user status", self.client.toggle_user_status(user_id))
        return self._patch(user_id, isActive=not bool(current.isActive))

    async def deposit(self, user_id: str, amount: Any, description: str = "") -> User:
        value = _positive_amount(amount)
        if value is None:
            self.error = "Please enter a valid amount"
            raise ClientValidationError(self.error)
        current = self.get(user_id)
        await self._run("deposit", self.client.deposit(user_id, value, description))
        return self._patch(user_id, wallet=self._wallet_with(current, value))

    async def debit(self, user_id: str, amount: Any, description: str = "") -> User:
        value = _positive_amount(amount)
        if value is None:
            self.error = "Please enter a valid amount"
            raise ClientValidationError(self.error)
        current = self.get(user_id)
        balance = current.wallet.balance if current.wallet else 0.0
        if balance < value:
            self.error = "Insufficient wallet balance"
            raise ClientValidationError(self.error)
        await self._run("debit", self.client.debit(user_id, value, description))
        return self._patch(user_id, wallet=self._wallet_with(current, -value))

    async def change_role(self, user_id: str, role: str) -> Optional[User]:
        if not (role or "").strip():
            self.error = "Please select a role"
            raise ClientValidationError(self.error)
        await self._run("change role", self.client.change_role(user_id, role))
        return self._patch(user_id, role=role)

    @staticmethod
    def _wallet_with(user: User, delta: float) -> Wallet:
        wallet = user.wallet or Wallet()
        return wallet.model_copy(update={"balance": (wallet.balance or 0.0) + delta})
