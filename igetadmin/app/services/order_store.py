from __future__ import annotations
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from ..models.dto import Order


class OrderStore:
    """Normalized id -> Order map; the only copy of loaded orders.

    Insertion order is the server order, so derived views keep the listing
    order without a separate list.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}

    def __len__(self) -> int:
        return len(self._orders)

    def __iter__(self) -> Iterator[Order]:
        return iter(self._orders.values())

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def ids(self) -> List[str]:
        return list(self._orders.keys())

    def values(self) -> List[Order]:
        return list(self._orders.values())

    def replace(self, orders: Iterable[Order]) -> None:
        self._orders = {o.id: o for o in orders}

    def append(self, orders: Iterable[Order]) -> int:
        """Merges a further page; returns how many ids were new.

        An id that is already present keeps its position and takes the newer data.
        """
        added = 0
        for o in orders:
            if o.id not in self._orders:
                added += 1
            self._orders[o.id] = o
        return added

    def clear(self) -> None:
        self._orders = {}

    def patch_status(self, order_ids: Iterable[str], status: str, updated_at: Optional[datetime] = None) -> int:
        patched = 0
        for oid in order_ids:
            current = self._orders.get(oid)
            if current is None:
                continue
            self._orders[oid] = current.model_copy(update={"status": status, "updatedAt": updated_at or current.updatedAt})
            patched += 1
        return patched
