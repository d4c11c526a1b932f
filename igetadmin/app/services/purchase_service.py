from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from ..models.dto import Bundle
from ..provider.client import IGetClient
from ..provider.errors import ClientValidationError
from .catalog_service import display_price, is_in_stock

logger = logging.getLogger(__name__)

TELECEL_BUNDLE_TYPE = "Telecel-5959"


class PurchaseService:
    def __init__(self, client: IGetClient):
        self.client = client

    def _check(self, bundle: Optional[Bundle], recipient: str) -> str:
        recipient = (recipient or "").strip()
        if bundle is None or not recipient:
            raise ClientValidationError("Bundle details and recipient number are required")
        if not self.client.session.authenticated:
            raise ClientValidationError("You need to be logged in to make a purchase")
        if not is_in_stock(bundle):
            raise ClientValidationError("This bundle is currently out of stock")
        return recipient

    async def buy_mtn(self, bundle: Bundle, recipient: str) -> Dict[str, Any]:
        """MTN bundles are ordered by id; the backend resolves price and capacity."""
        recipient = self._check(bundle, recipient)
        order = await self.client.place_order({"bundleId": bundle.id, "recipientNumber": recipient})
        logger.info("placed MTN order for bundle %s", bundle.id)
        return order

    async def buy_telecel(self, bundle: Bundle, recipient: str) -> Dict[str, Any]:
        recipient = self._check(bundle, recipient)
        price = display_price(bundle)
        order = await self.client.place_order({
            "recipientNumber": recipient,
            "capacity": bundle.capacity,
            "price": float(price) if price is not None else None,
            "bundleType": bundle.type or TELECEL_BUNDLE_TYPE,
        })
        logger.info("placed Telecel order for bundle %s", bundle.id)
        return order
