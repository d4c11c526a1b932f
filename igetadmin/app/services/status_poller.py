from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..models.dto import UP2U_BUNDLE_TYPE, ExternalStatus, Order
from ..provider.errors import IGetError
from ..provider.hubnet import TransactionChecker

logger = logging.getLogger(__name__)


class CheckState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class StatusEntry:
    state: CheckState = CheckState.IDLE
    record: Optional[ExternalStatus] = None
    error: Optional[str] = None
    task: Optional["asyncio.Task[Optional[ExternalStatus]]"] = None


def is_eligible(order: Order) -> bool:
    return bool(order.orderReference) and (order.bundleType or "").lower() == UP2U_BUNDLE_TYPE


class ExternalStatusCache:
    """Side table of provider-reported statuses keyed by order id.

    Records are advisory: nothing here writes to an Order. A request for an
    order that is already in flight joins the running request instead of
    issuing a second one.
    """

    def __init__(self, checker: TransactionChecker, delay_seconds: float = 1.0):
        self.checker = checker
        self.delay_seconds = delay_seconds
        self._entries: Dict[str, StatusEntry] = {}

    def entry(self, order_id: str) -> StatusEntry:
        return self._entries.get(order_id) or StatusEntry()

    def state(self, order_id: str) -> CheckState:
        return self.entry(order_id).state

    def record(self, order_id: str) -> Optional[ExternalStatus]:
        return self.entry(order_id).record

    def records(self) -> Dict[str, ExternalStatus]:
        return {oid: e.record for oid, e in self._entries.items() if e.record is not None}

    def in_flight(self) -> List[str]:
        return [oid for oid, e in self._entries.items() if e.state == CheckState.IN_FLIGHT]

    def clear(self) -> None:
        self._entries = {}

    async def check(self, order: Order) -> Optional[ExternalStatus]:
        """Polls one order; ineligible orders are skipped and return None."""
        if not is_eligible(order):
            return None
        entry = self._entries.setdefault(order.id, StatusEntry())
        if entry.task is not None and not entry.task.done():
            return await entry.task
        entry.state = CheckState.IN_FLIGHT
        entry.task = asyncio.get_running_loop().create_task(self._fetch(order, entry))
        return await entry.task

    async def _fetch(self, order: Order, entry: StatusEntry) -> Optional[ExternalStatus]:
        try:
            record = await self.checker.check(order.orderReference or "")
        except IGetError as e:
            logger.warning("external status check failed for %s: %s", order.id, e.msg)
            entry.state = CheckState.ERROR
            entry.error = e.msg
            return None
        except asyncio.CancelledError:
            entry.state = CheckState.SUCCESS if entry.record is not None else CheckState.IDLE
            raise
        except Exception as e:
            # A bad payload ends this order's check only; the batch carries on
            logger.warning("external status check failed for %s: %r", order.id, e)
            entry.state = CheckState.ERROR
            entry.error = "Failed to check external status"
            return None
        entry.record = record
        entry.error = None
        entry.state = CheckState.SUCCESS
        return record

    async def check_pending(self, orders: Iterable[Order]) -> int:
        """Sequentially polls eligible orders that were never checked.

        Failed checks are not retried here; use ``check`` for a manual retry.
        Sleeps ``delay_seconds`` between consecutive requests and returns the
        number of orders that received a record.
        """
        todo = [o for o in orders if is_eligible(o) and self.state(o.id) == CheckState.IDLE]
        updated = 0
        for i, order in enumerate(todo):
            if i and self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            if await self.check(order) is not None:
                updated += 1
        return updated
