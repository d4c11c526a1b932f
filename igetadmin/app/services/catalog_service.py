from __future__ import annotations
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ..models.dto import BUNDLE_TYPES, Bundle, NetworkAvailability, StockInfo
from ..provider.client import IGetClient
from ..provider.errors import ClientValidationError, IGetError

logger = logging.getLogger(__name__)

PRICE_ROLES = ("admin", "user", "agent", "Editor")


def is_in_stock(bundle: Bundle) -> bool:
    # Any source that reports out-of-stock wins
    if bundle.stockInfo is not None and bundle.stockInfo.isOutOfStock is True:
        return False
    if bundle.isInStock is False:
        return False
    if bundle.stockStatus is not None and bundle.stockStatus.isOutOfStock is True:
        return False
    return True


def display_price(bundle: Bundle) -> Optional[Decimal]:
    return bundle.userPrice if bundle.userPrice is not None else bundle.price


def savings(bundle: Bundle) -> Optional[Dict[str, str]]:
    """Discount of the caller's price against the standard price, or None when there is none."""
    if bundle.userPrice is None or bundle.price is None or bundle.userPrice >= bundle.price or bundle.price <= 0:
        return None
    amount = bundle.price - bundle.userPrice
    percent = amount / bundle.price * 100
    return {"amount": f"{amount:.2f}", "percent": f"{percent:.1f}"}


def search_bundles(bundles: List[Bundle], term: str) -> List[Bundle]:
    term = (term or "").strip().lower()
    if not term:
        return list(bundles)
    out = []
    for b in bundles:
        cap = "" if b.capacity is None else str(b.capacity).lower()
        price = "" if b.price is None else str(b.price)
        if term in cap or term in price:
            out.append(b)
    return out


def _parse_int(raw: Any) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


def _parse_price(raw: Any) -> Optional[Decimal]:
    if raw is None or not str(raw).strip():
        return None
    try:
        val = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    if not val.is_finite() or val < 0:
        return None
    return val


def stock_request(action: str, value: Any, reason: Optional[str] = None) -> Dict[str, Any]:
    """Validates a stock action and returns its endpoint and payload."""
    amount = _parse_int(value)
    if action == "restock":
        if amount is None or amount <= 0:
            raise ClientValidationError("Please enter a valid restock amount")
        return {"endpoint": "restock", "payload": {"units": amount, "reason": reason or "Manual restock"}}
    if action == "adjust":
        if amount is None or amount == 0:
            raise ClientValidationError("Please enter a valid adjustment amount")
        return {"endpoint": "adjust", "payload": {"adjustment": amount, "reason": reason or "Manual adjustment"}}
    if action == "set":
        if amount is None or amount < 0:
            raise ClientValidationError("Please enter a valid stock amount")
        return {"endpoint": "set", "payload": {"units": amount, "reason": reason or "Stock level set"}}
    if action == "threshold":
        if amount is None or amount < 0:
            raise ClientValidationError("Please enter a valid threshold")
        return {"endpoint": "low-threshold", "payload": {"threshold": amount}}
    raise ClientValidationError(f"Unknown stock action: {action}")


class CatalogService:
    def __init__(self, client: IGetClient):
        self.client = client
        # bundles cached per bundle type
        self.bundles: Dict[str, List[Bundle]] = {}
        self.networks: List[NetworkAvailability] = []
        self.error: Optional[str] = None
        self.success_message: Optional[str] = None

    def _fail(self, exc: IGetError, action: str) -> None:
        logger.warning("%s failed: %s", action, exc.msg)
        self.error = exc.msg

    def find(self, bundle_id: str) -> Optional[Bundle]:
        for items in self.bundles.values():
            for b in items:
                if b.id == bundle_id:
                    return b
        return None

    def _replace(self, bundle_id: str, **update: Any) -> Optional[Bundle]:
        for btype, items in self.bundles.items():
            for i, b in enumerate(items):
                if b.id == bundle_id:
                    items[i] = b.model_copy(update=update)
                    return items[i]
        return None

    async def load(self, bundle_types: Optional[List[str]] = None) -> Dict[str, List[Bundle]]:
        self.error = None
        for btype in bundle_types or BUNDLE_TYPES:
            try:
                raw = await self.client.list_bundles_by_type(btype)
            except IGetError as e:
                self._fail(e, f"load {btype} bundles")
                self.bundles[btype] = []
                continue
            self.bundles[btype] = [Bundle.model_validate(b) for b in raw if b.get("_id")]
        return self.bundles

    async def available_bundles(self, bundle_type: Optional[str] = None) -> List[Bundle]:
        """Customer-facing bundle list, optionally narrowed to one type."""
        raw = await self.client.list_bundles()
        bundles = [Bundle.model_validate(b) for b in raw if b.get("_id")]
        if bundle_type:
            bundles = [b for b in bundles if b.type == bundle_type]
        return bundles

    def search(self, term: str) -> Dict[str, List[Bundle]]:
        return {btype: search_bundles(items, term) for btype, items in self.bundles.items()}

    async def update_prices(self, bundle_id: str, prices: Dict[str, Any]) -> Bundle:
        standard = _parse_price(prices.get("standard"))
        if standard is None:
            self.error = "Invalid price for standard price role"
            raise ClientValidationError(self.error)
        role_pricing: Dict[str, Decimal] = {}
        for role in PRICE_ROLES:
            raw = prices.get(role)
            # Unset roles inherit the standard price
            val = standard if raw is None else _parse_price(raw)
            if val is None:
                self.error = f"Invalid price for {role} role"
                raise ClientValidationError(self.error)
            role_pricing[role] = val
        self.error = None
        try:
            await self.client.update_bundle_prices(
                bundle_id, float(standard), {k: float(v) for k, v in role_pricing.items()}
            )
        except IGetError as e:
            self._fail(e, "update prices")
            raise
        self.success_message = "Prices updated successfully"
        updated = self._replace(bundle_id, price=standard, rolePricing=role_pricing)
        if updated is None:
            updated = Bundle.model_validate({"_id": bundle_id, "price": standard, "rolePricing": role_pricing})
        return updated

    async def add_bundle(self, bundle_type: str, capacity: Any, price: Any) -> List[Bundle]:
        cap = _parse_int(capacity)
        amount = _parse_price(price)
        if not bundle_type or cap is None or cap <= 0 or amount is None or amount <= 0:
            self.error = "All fields are required"
            raise ClientValidationError(self.error)
        self.error = None
        try:
            await self.client.add_bundle({"type": bundle_type, "capacity": cap, "price": float(amount)})
        except IGetError as e:
            self._fail(e, "add bundle")
            raise
        self.success_message = "Bundle added successfully"
        await self.load([bundle_type])
        return self.bundles[bundle_type]

    async def delete_bundle(self, bundle_id: str) -> None:
        """Deactivate a bundle and drop it from the local lists."""
        self.error = None
        try:
            await self.client.delete_bundle(bundle_id)
        except IGetError as e:
            self._fail(e, "delete bundle")
            raise
        for btype, items in self.bundles.items():
            self.bundles[btype] = [b for b in items if b.id != bundle_id]
        self.success_message = "Bundle deactivated successfully"

    async def stock_action(self, bundle_id: str, action: str, value: Any, reason: Optional[str] = None) -> Dict[str, Any]:
        try:
            req = stock_request(action, value, reason)
        except ClientValidationError as e:
            self.error = e.msg
            raise
        self.error = None
        try:
            body = await self.client.stock_action(
                bundle_id, req["endpoint"], req["payload"], error_message=f"Failed to {action} stock"
            )
        except IGetError as e:
            self._fail(e, f"{action} stock")
            raise
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        current = self.find(bundle_id)
        if current is not None and data:
            info = (current.stockInfo.model_dump() if current.stockInfo else {})
            for key in ("available", "isLowStock", "isOutOfStock", "stockPercentage"):
                if key in data:
                    info[key] = data[key]
            self._replace(
                bundle_id,
                stockUnits=data.get("stockUnits") or current.stockUnits,
                stockInfo=StockInfo.model_validate(info),
            )
        self.success_message = f"Stock {action} completed"
        return data

    async def toggle_stock(self, bundle_id: str, currently_in_stock: bool) -> Bundle:
        endpoint = "out-of-stock" if currently_in_stock else "in-stock"
        payload = {"reason": "Marked out of stock by admin"} if currently_in_stock else {}
        self.error = None
        try:
            body = await self.client.stock_action(
                bundle_id, endpoint, payload, error_message="Failed to update stock status"
            )
        except IGetError as e:
            self._fail(e, "toggle stock")
            raise
        self.success_message = f"Bundle marked as {'out of stock' if currently_in_stock else 'in stock'}"
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        status = StockInfo.model_validate(
            data.get("stockStatus") or {"isInStock": not currently_in_stock, "isOutOfStock": currently_in_stock}
        )
        updated = self._replace(bundle_id, isInStock=not currently_in_stock, stockInfo=status)
        if updated is None:
            updated = Bundle.model_validate({"_id": bundle_id, "isInStock": not currently_in_stock, "stockInfo": status.model_dump()})
        return updated

    async def stock_history(self, bundle_id: str) -> List[Dict[str, Any]]:
        try:
            return await self.client.stock_history(bundle_id)
        except IGetError as e:
            self._fail(e, "stock history")
            raise

    async def load_networks(self) -> List[NetworkAvailability]:
        try:
            raw = await self.client.list_network_availability()
        except IGetError as e:
            self._fail(e, "load networks")
            return self.networks
        self.networks = [NetworkAvailability.model_validate(n) for n in raw]
        return self.networks

    async def set_network(self, network_type: str, available: bool) -> List[NetworkAvailability]:
        try:
            await self.client.set_network_availability(network_type, available)
        except IGetError as e:
            self._fail(e, "set network availability")
            raise
        self.networks = [
            n.model_copy(update={"isAvailable": available}) if n.networkType == network_type else n
            for n in self.networks
        ]
        return self.networks

    async def initialize_networks(self) -> List[NetworkAvailability]:
        try:
            await self.client.initialize_network_availability()
        except IGetError as e:
            self._fail(e, "initialize networks")
            raise
        return await self.load_networks()
