from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

from ..models.dto import Order
from ..provider.client import IGetClient
from ..provider.errors import IGetError
from ..provider.hubnet import TransactionChecker
from .filters import displayed_status
from .scheduler import TaskScheduler
from .status_poller import ExternalStatusCache, is_eligible


logger = logging.getLogger(__name__)

STATUS_TASK = "my-orders-status"


class MyOrdersView:
    """A customer's own order history with recipient search and up2u status checks.

    Status checks run in the background after a load; the listing never waits
    for them.
    """

    def __init__(
        self,
        client: IGetClient,
        status_cache: Optional[ExternalStatusCache] = None,
        scheduler: Optional[TaskScheduler] = None,
    ):
        self.client = client
        self.status_cache = status_cache or ExternalStatusCache(
            TransactionChecker(client.http), delay_seconds=client.settings.status_check_delay_seconds
        )
        self.scheduler = scheduler or TaskScheduler()
        self.orders: List[Order] = []
        self.search_phone = ""
        self.error: Optional[str] = None

    async def load(self, check_external: bool = True) -> bool:
        self.error = None
        try:
            self.orders = await self.client.my_orders()
        except IGetError as e:
            logger.warning("my orders fetch failed: %s", e.msg)
            self.error = e.msg
            self.orders = []
            return False
        if check_external:
            self.schedule_external_checks()
        return True

    def schedule_external_checks(self) -> Optional[asyncio.Task]:
        orders = [o for o in self.orders if is_eligible(o)]
        if not orders:
            return None
        return self.scheduler.call_later(STATUS_TASK, 0, lambda: self.status_cache.check_pending(orders))

    def filtered(self) -> List[Order]:
        needle = self.search_phone.strip().lower()
        if not needle:
            return list(self.orders)
        return [o for o in self.orders if o.recipientNumber and needle in o.recipientNumber.lower()]

    def status_of(self, order: Order) -> str:
        return displayed_status(order, self.status_cache.record(order.id))

    async def close(self) -> None:
        await self.scheduler.close()
