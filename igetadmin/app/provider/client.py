from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..config import Settings
from ..models.dto import Exclusions, Order, OrderFilter, OrdersPage, Pagination, UsersPage, User
from .auth import Session
from .errors import ApiError
from .http import ApiHTTP

logger = logging.getLogger(__name__)


def _as_int(val: Any, default: int) -> int:
    try:
        if isinstance(val, str):
            return int(float(val.strip()))
        return int(val)
    except Exception:
        return default


def _data_list(body: Any, *keys: str) -> List[Any]:
    """Pull a list out of an envelope, defaulting to [] on any shape mismatch."""
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return []
    for key in keys or ("data",):
        val = body.get(key)
        if isinstance(val, list):
            return val
    return []


def _data_dict(body: Any) -> Dict[str, Any]:
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, dict):
            return data
    return {}


def parse_orders_page(body: Any, page: int) -> OrdersPage:
    raw = _data_list(body, "data", "orders")
    orders: List[Order] = []
    for item in raw:
        if not isinstance(item, dict) or not (item.get("_id") or item.get("id")):
            continue
        if "_id" not in item:
            item = {**item, "_id": item.get("id")}
        try:
            orders.append(Order.model_validate(item))
        except ValidationError as e:
            logger.warning("skipping malformed order %s: %s", item.get("_id"), e.error_count())
    meta = body if isinstance(body, dict) else {}
    total = _as_int(meta.get("total"), len(orders))
    pages = _as_int(meta.get("pages") or meta.get("totalPages"), 1)
    return OrdersPage(
        orders=orders,
        total=max(total, 0),
        currentPage=_as_int(meta.get("currentPage"), page),
        pages=max(pages, 1),
    )


def _pagination(raw: Any, count: int) -> Pagination:
    if isinstance(raw, dict):
        try:
            return Pagination.model_validate(raw)
        except ValidationError:
            logger.warning("ignoring malformed pagination block")
    return Pagination(total=count)


def parse_users_page(body: Any) -> UsersPage:
    # The users endpoint has answered with a bare list, {users, pagination} and {data, pagination}
    if isinstance(body, list):
        raw = body
        pagination = Pagination(total=len(raw))
    elif isinstance(body, dict) and isinstance(body.get("users"), list):
        raw = body["users"]
        pagination = _pagination(body.get("pagination"), len(raw))
    elif isinstance(body, dict) and isinstance(body.get("data"), list):
        raw = body["data"]
        pagination = _pagination(body.get("pagination"), len(raw))
    else:
        logger.warning("unexpected users response shape: %s", type(body).__name__)
        raw = []
        pagination = Pagination()
    users: List[User] = []
    for u in raw:
        if not isinstance(u, dict) or not u.get("_id"):
            continue
        try:
            users.append(User.model_validate(u))
        except ValidationError as e:
            logger.warning("skipping malformed user %s: %s", u.get("_id"), e.error_count())
    return UsersPage(users=users, pagination=pagination)


class IGetClient:
    """
    Endpoint methods for the iGet REST API.

    Orders, users, catalog and stock live on the main API; AFA registrations,
    banks and withdrawals are served by the local service.
    """

    def __init__(self, session: Session, settings: Optional[Settings] = None, http: Optional[ApiHTTP] = None):
        self.session = session
        self.settings = settings or Settings.from_env()
        self.http = http or ApiHTTP(session, self.settings)

    @property
    def local_base(self) -> str:
        return self.settings.local_api_base_url

    async def aclose(self) -> None:
        await self.http.aclose()

    # ===== Session =====
    async def verify_session(self) -> bool:
        """Checks the stored token with the backend; a rejected token clears the session."""
        if not self.session.authenticated:
            return False
        try:
            await self.http.get("/api/dashboard/verify-token", error_message="Invalid token")
        except ApiError as e:
            if e.http_status in (401, 403):
                logger.info("stored token rejected, clearing session")
                self.session.clear()
                return False
            raise
        return True

    async def my_permissions(self) -> Dict[str, Any]:
        body = await self.http.get("/api/admin/my-permissions", error_message="Failed to fetch permissions")
        admin = body.get("admin") if isinstance(body, dict) else None
        if isinstance(admin, dict):
            self.session.update_user(admin)
        return {
            "admin": admin or {},
            "permissions": (body.get("permissions") if isinstance(body, dict) else None) or {},
        }

    # ===== Orders =====
    async def list_orders(
        self,
        page: int = 1,
        limit: int = 10,
        filters: Optional[OrderFilter] = None,
        search: Optional[str] = None,
        exclusions: Optional[Exclusions] = None,
    ) -> OrdersPage:
        f = filters or OrderFilter()
        ex = exclusions or Exclusions()
        params: Dict[str, Any] = {
            "page": page,
            "limit": limit,
            "status": f.status,
            "bundleType": f.bundleType,
            "startDate": f.startDate,
            "endDate": f.endDate,
            "search": (search or "").strip() or None,
            "excludedCapacities": ex.capacities,
            "excludedNetworks": ex.networks,
            "excludedNetworkCapacities": ex.networkCapacities,
        }
        body = await self.http.get("/api/orders/all", params, error_message="Failed to fetch orders")
        return parse_orders_page(body, page)

    async def update_order_status(self, order_id: str, status: str, sender_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": status}
        if sender_id:
            payload["senderID"] = sender_id
        return await self.http.put(
            f"/api/orders/{order_id}/status", payload, error_message="Failed to update order status"
        )

    async def bulk_update_order_status(
        self,
        order_ids: List[str],
        status: str,
        sender_id: Optional[str] = None,
        send_sms: bool = True,
    ) -> int:
        payload: Dict[str, Any] = {
            "orderIds": list(order_ids),
            "status": status,
            "sendSMSNotification": send_sms,
        }
        if sender_id:
            payload["senderID"] = sender_id
        body = await self.http.put("/api/orders/bulk-status", payload, error_message="Failed to update multiple orders")
        return _as_int(_data_dict(body).get("modified"), len(order_ids))

    async def my_orders(self) -> List[Order]:
        body = await self.http.get("/api/orders/my-orders", error_message="Failed to fetch orders")
        return parse_orders_page(body, 1).orders

    async def place_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.http.post(
            "/api/orders/placeorder", payload,
            error_message="Failed to process your purchase. Please try again.",
        )
        return _data_dict(body)

    # ===== Users =====
    async def list_users(
        self,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        approval_status: Optional[str] = None,
    ) -> UsersPage:
        params = {
            "page": page,
            "limit": limit,
            "search": (search or "").strip() or None,
            "approvalStatus": approval_status if approval_status and approval_status != "all" else None,
        }
        body = await self.http.get("/api/admin/users", params, error_message="Failed to fetch users")
        return parse_users_page(body)

    async def approval_stats(self) -> Dict[str, Any]:
        body = await self.http.get("/api/admin/users/approval-stats", error_message="Failed to fetch approval stats")
        return _data_dict(body)

    async def user_transactions(self, user_id: str) -> List[Dict[str, Any]]:
        body = await self.http.get(
            f"/api/admin/users/{user_id}/transactions", error_message="Failed to fetch transactions"
        )
        return [t for t in _data_list(body) if isinstance(t, dict)]

    async def approve_user(self, user_id: str, notes: str = "", send_sms: bool = True) -> Any:
        return await self.http.post(
            f"/api/admin/users/{user_id}/approve",
            {"notes": notes, "sendSMSNotification": send_sms},
            error_message="Failed to approve user",
        )

    async def reject_user(self, user_id: str, reason: str, send_sms: bool = True) -> Any:
        return await self.http.post(
            f"/api/admin/users/{user_id}/reject",
            {"reason": reason, "sendSMSNotification": send_sms},
            error_message="Failed to reject user",
        )

    async def bulk_approve_users(self, user_ids: List[str], notes: str = "Bulk approval", send_sms: bool = True) -> Any:
        return await self.http.post(
            "/api/admin/users/bulk-approve",
            {"userIds": list(user_ids), "notes": notes, "sendSMSNotification": send_sms},
            error_message="Failed to bulk approve users",
        )

    async def delete_user(self, user_id: str) -> Any:
        return await self.http.delete(f"/api/admin/users/{user_id}", error_message="Failed to delete user")

    async def toggle_user_status(self, user_id: str) -> Any:
        return await self.http.patch(
            f"/api/admin/users/{user_id}/status", {}, error_message="Failed to update user status"
        )

    async def change_role(self, user_id: str, role: str) -> Any:
        return await self.http.patch(
            f"/api/admin/users/{user_id}/role", {"role": role}, error_message="Failed to change user role"
        )

    async def deposit(self, user_id: str, amount: float, description: str = "") -> Any:
        return await self.http.post(
            f"/api/admin/users/{user_id}/wallet/deposit",
            {"amount": amount, "description": description},
            error_message="Failed to add funds",
        )

    async def debit(self, user_id: str, amount: float, description: str = "") -> Any:
        return await self.http.post(
            f"/api/admin/users/{user_id}/wallet/debit",
            {"amount": amount, "description": description},
            error_message="Failed to deduct funds",
        )

    # ===== Catalog =====
    async def list_bundles(self) -> List[Dict[str, Any]]:
        body = await self.http.get("/api/iget/bundle", error_message="Failed to fetch bundles")
        return [b for b in _data_list(body) if isinstance(b, dict)]

    async def list_bundles_by_type(self, bundle_type: str) -> List[Dict[str, Any]]:
        body = await self.http.get(f"/api/iget/bundle/{bundle_type}", error_message="Failed to fetch bundles")
        return [b for b in _data_list(body) if isinstance(b, dict)]

    async def update_bundle_prices(self, bundle_id: str, price: float, role_pricing: Dict[str, float]) -> Any:
        return await self.http.put(
            f"/api/iget/{bundle_id}",
            {"price": price, "rolePricing": role_pricing},
            error_message="Failed to update prices",
        )

    async def add_bundle(self, bundle: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.http.post("/api/iget/addbundle", bundle, error_message="Failed to add bundle")
        return _data_dict(body)

    async def delete_bundle(self, bundle_id: str) -> Any:
        return await self.http.delete(f"/api/iget/{bundle_id}", error_message="Failed to delete bundle")

    async def stock_action(self, bundle_id: str, endpoint: str, payload: Dict[str, Any], error_message: str) -> Dict[str, Any]:
        body = await self.http.put(f"/api/iget/stock/{bundle_id}/{endpoint}", payload, error_message=error_message)
        return body if isinstance(body, dict) else {}

    async def stock_history(self, bundle_id: str) -> List[Dict[str, Any]]:
        body = await self.http.get(f"/api/iget/stock/{bundle_id}/history", error_message="Failed to fetch stock history")
        return [h for h in _data_list(body) if isinstance(h, dict)]

    async def list_network_availability(self) -> List[Dict[str, Any]]:
        body = await self.http.get("/api/network", error_message="Failed to fetch network availability")
        return [n for n in _data_list(body) if isinstance(n, dict)]

    async def set_network_availability(self, network_type: str, available: bool) -> Any:
        return await self.http.put(
            f"/api/network/availability/{network_type}",
            {"isAvailable": available},
            error_message="Failed to update network availability",
        )

    async def initialize_network_availability(self) -> Any:
        return await self.http.post(
            "/api/network/availability/initialize", {}, error_message="Failed to initialize networks"
        )

    # ===== AFA =====
    async def register_afa(self, full_name: str, phone_number: str, price: float) -> Dict[str, Any]:
        body = await self.http.post(
            "/api/afa/register",
            {"fullName": full_name, "phoneNumber": phone_number, "price": price},
            base_url=self.local_base,
            error_message="Registration failed. Please try again.",
        )
        return _data_dict(body)

    async def afa_registrations(self) -> List[Dict[str, Any]]:
        body = await self.http.get(
            "/api/afa/registrations", base_url=self.local_base, error_message="Failed to fetch registrations"
        )
        return [r for r in _data_list(body) if isinstance(r, dict)]

    # ===== Wallet =====
    async def wallet_balance(self) -> float:
        body = await self.http.get("/api/iget/balance", base_url=self.local_base, error_message="Failed to fetch balance")
        try:
            return float(_data_dict(body).get("balance") or 0)
        except (TypeError, ValueError):
            return 0.0

    async def list_banks(self) -> List[Dict[str, Any]]:
        body = await self.http.get("/api/depsoite/banks", base_url=self.local_base, error_message="Failed to load supported banks")
        return [b for b in _data_list(body) if isinstance(b, dict)]

    async def verify_bank_account(self, account_number: str, bank_code: str) -> str:
        body = await self.http.post(
            "/api/depsoite/verify-account",
            {"accountNumber": account_number, "bankCode": bank_code},
            base_url=self.local_base,
            error_message="Failed to verify account",
        )
        return str(_data_dict(body).get("accountName") or "")

    async def withdraw(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = await self.http.post(
            "/api/depsoite/withdraw", payload, base_url=self.local_base, error_message="Withdrawal failed"
        )
        return _data_dict(body)
