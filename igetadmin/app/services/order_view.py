from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..config import Settings
from ..models.dto import ORDER_STATUSES, Exclusions, ExternalStatus, Order, OrderFilter
from ..provider.client import IGetClient
from ..provider.errors import ClientValidationError, IGetError
from ..provider.hubnet import TransactionChecker
from .export import collect_all_orders, orders_to_xlsx
from .filters import (
    display_name,
    displayed_status,
    format_number,
    network_of,
    page_count,
    paginate,
    refine,
    toggle_exclusion,
)
from .order_store import OrderStore
from .scheduler import TaskScheduler
from .status_poller import ExternalStatusCache, is_eligible

logger = logging.getLogger(__name__)

SEARCH_TASK = "search"
SUCCESS_TASK = "success-clear"
EXTERNAL_TASK = "external-status"


class OrderReconciliationView:
    """
    Admin order-management state: a cached window of server pages, client-side
    refinement and paging, selection, status mutations and external status overlay.

    Loads report failure through ``error`` and a False return. Mutations and
    exports set ``error`` and re-raise, and they never patch local state before
    the server has acknowledged the change.
    """

    def __init__(
        self,
        client: IGetClient,
        settings: Optional[Settings] = None,
        status_cache: Optional[ExternalStatusCache] = None,
        scheduler: Optional[TaskScheduler] = None,
        auto_check_external: bool = True,
    ):
        self.client = client
        self.settings = settings or client.settings
        self.store = OrderStore()
        self.status_cache = status_cache or ExternalStatusCache(
            TransactionChecker(client.http), delay_seconds=self.settings.status_check_delay_seconds
        )
        self.scheduler = scheduler or TaskScheduler()
        self.auto_check_external = auto_check_external

        self.page_size = self.settings.orders_page_size
        self.fetch_limit = self.settings.orders_fetch_limit
        self.filters = OrderFilter()
        self.exclusions = Exclusions()
        self.query = ""
        self.server_search = True
        self.current_page = 1
        self._selection: Dict[str, None] = {}

        self.server_page = 1
        self.server_total = 0
        self.server_total_pages = 1
        self.loaded = False
        self.loading = False
        self.bulk_in_progress = False
        self.error: Optional[str] = None
        self.error_retryable = False
        self.success_message: Optional[str] = None

    # ===== derived views =====
    @property
    def filtered_orders(self) -> List[Order]:
        if self.server_search:
            # The server already applied search and predicates to this window
            return self.store.values()
        return refine(self.store, self.query, self.filters, self.exclusions)

    @property
    def filtered_count(self) -> int:
        return len(self.filtered_orders)

    @property
    def total_pages(self) -> int:
        return page_count(self.filtered_count, self.page_size)

    @property
    def visible_orders(self) -> List[Order]:
        return paginate(self.filtered_orders, self.current_page, self.page_size)

    @property
    def selected_ids(self) -> List[str]:
        return list(self._selection)

    @property
    def has_more(self) -> bool:
        return self.server_page < self.server_total_pages

    def external_status(self, order_id: str) -> Optional[ExternalStatus]:
        return self.status_cache.record(order_id)

    def displayed_status(self, order: Order) -> str:
        return displayed_status(order, self.status_cache.record(order.id))

    # ===== fetching =====
    async def load_page(self, page: int = 1, append: bool = False) -> bool:
        """Fetches one server page with the current filter state.

        Replace mode swaps the cached window (and clears it on failure so rows
        from another filter are never shown); append mode merges into it.
        """
        page = max(int(page), 1)
        self.loading = True
        self.error = None
        try:
            result = await self.client.list_orders(
                page=page,
                limit=self.fetch_limit,
                filters=self.filters,
                search=self.query if self.server_search else None,
                exclusions=self.exclusions,
            )
        except IGetError as e:
            self._fail(e, "load orders")
            if not append:
                self.store.clear()
                self._prune_selection()
            return False
        finally:
            self.loading = False
            self.loaded = True

        if append:
            added = self.store.append(result.orders)
            logger.debug("appended page %s: %s new orders", page, added)
        else:
            self.store.replace(result.orders)
            self._prune_selection()
        self.server_page = result.currentPage
        self.server_total = result.total
        self.server_total_pages = result.pages
        self.current_page = min(self.current_page, self.total_pages)
        if self.auto_check_external:
            self.schedule_external_checks()
        return True

    async def load_more(self) -> bool:
        if not self.has_more:
            return False
        return await self.load_page(self.server_page + 1, append=True)

    async def refresh(self) -> bool:
        return await self.load_page(1)

    async def _auto_refetch(self) -> bool:
        if self.bulk_in_progress:
            logger.info("bulk update in flight, skipping filter refetch")
            return False
        return await self.load_page(1)

    # ===== search / filters =====
    def set_query(self, query: str, server_search: Optional[bool] = None) -> Optional[asyncio.Task]:
        """Sets the free-text query; a server search fires after the debounce delay."""
        self.query = query or ""
        if server_search is not None:
            self.server_search = server_search
        self.current_page = 1
        if not self.server_search:
            self.scheduler.cancel(SEARCH_TASK)
            return None
        return self.scheduler.call_later(SEARCH_TASK, self.settings.search_debounce_seconds, self._auto_refetch)

    async def set_filters(self, **changes: Any) -> bool:
        data = self.filters.model_dump()
        for k, v in changes.items():
            if k not in data:
                raise ClientValidationError(f"Unknown filter: {k}")
            data[k] = v or None
        self.filters = OrderFilter(**data)
        self.current_page = 1
        return await self._auto_refetch()

    async def toggle_exclusion(self, kind: str, value: str) -> bool:
        value = (value or "").strip()
        if not value:
            raise ClientValidationError("Exclusion value required")
        if kind == "capacity":
            self.exclusions = self.exclusions.model_copy(
                update={"capacities": toggle_exclusion(self.exclusions.capacities, value)})
        elif kind == "network":
            self.exclusions = self.exclusions.model_copy(
                update={"networks": toggle_exclusion(self.exclusions.networks, value)})
        elif kind == "networkCapacity":
            self.exclusions = self.exclusions.model_copy(
                update={"networkCapacities": toggle_exclusion(self.exclusions.networkCapacities, value)})
        else:
            raise ClientValidationError(f"Unknown exclusion kind: {kind}")
        self.current_page = 1
        return await self._auto_refetch()

    async def reset_filters(self) -> bool:
        self.filters = OrderFilter()
        self.exclusions = Exclusions()
        self.query = ""
        self.scheduler.cancel(SEARCH_TASK)
        self._selection.clear()
        self.current_page = 1
        return await self._auto_refetch()

    def set_page(self, page: int) -> int:
        self.current_page = min(max(int(page), 1), self.total_pages)
        if self.auto_check_external:
            self.schedule_external_checks()
        return self.current_page

    # ===== selection =====
    def toggle_select(self, order_id: str) -> bool:
        if order_id in self._selection:
            del self._selection[order_id]
            return False
        if order_id not in self.store:
            raise ClientValidationError("Order is not loaded")
        self._selection[order_id] = None
        return True

    def set_selection(self, order_ids: Iterable[str]) -> List[str]:
        self._selection = {oid: None for oid in order_ids if oid in self.store}
        return self.selected_ids

    def select_all_visible(self) -> List[str]:
        visible = [o.id for o in self.visible_orders]
        if visible and all(oid in self._selection for oid in visible):
            for oid in visible:
                self._selection.pop(oid, None)
        else:
            for oid in visible:
                self._selection[oid] = None
        return self.selected_ids

    def clear_selection(self) -> None:
        self._selection.clear()

    def _prune_selection(self) -> None:
        self._selection = {oid: None for oid in self._selection if oid in self.store}

    # ===== mutations =====
    def _sender(self, sender_id: Optional[str]) -> str:
        sender = (sender_id or self.settings.sms_sender_id or "").strip()
        if not sender or len(sender) > 11:
            raise ClientValidationError("Sender ID must be 1 to 11 characters")
        return sender

    async def bulk_update_status(self, status: Optional[str], sender_id: Optional[str] = None) -> int:
        try:
            ids = self.selected_ids
            if not ids:
                raise ClientValidationError("Please select at least one order to update")
            if not status:
                raise ClientValidationError("Please select a status to update")
            if status not in ORDER_STATUSES:
                raise ClientValidationError(f"Invalid status: {status}")
            sender = self._sender(sender_id)
        except ClientValidationError as e:
            self._fail(e, "bulk update")
            raise

        self.bulk_in_progress = True
        self.error = None
        try:
            modified = await self.client.bulk_update_order_status(ids, status, sender_id=sender)
        except IGetError as e:
            self._fail(e, "bulk update")
            raise
        finally:
            self.bulk_in_progress = False

        self.store.patch_status(ids, status, datetime.now(timezone.utc))
        self._selection.clear()
        # The patched rows may drop out of a status filter; keep the page but stay in range
        self.current_page = min(self.current_page, self.total_pages)
        self._notify(f"{modified} orders updated to {status}")
        logger.info("bulk status %s applied to %s orders (%s modified)", status, len(ids), modified)
        return modified

    async def update_status(self, order_id: str, status: str, sender_id: Optional[str] = None) -> Order:
        try:
            if order_id not in self.store:
                raise ClientValidationError("Order is not loaded")
            if status not in ORDER_STATUSES:
                raise ClientValidationError(f"Invalid status: {status}")
            sender = self._sender(sender_id)
        except ClientValidationError as e:
            self._fail(e, "status update")
            raise

        self.error = None
        try:
            await self.client.update_order_status(order_id, status, sender_id=sender)
        except IGetError as e:
            self._fail(e, "status update")
            raise
        self.store.patch_status([order_id], status, datetime.now(timezone.utc))
        self.current_page = min(self.current_page, self.total_pages)
        self._notify(f"Order {order_id[:8]}... updated to {status}")
        return self.store.get(order_id)  # type: ignore[return-value]

    # ===== external status =====
    async def check_external_status(self, order_id: str) -> Optional[ExternalStatus]:
        order = self.store.get(order_id)
        if order is None or not is_eligible(order):
            return None
        return await self.status_cache.check(order)

    async def check_visible_external_statuses(self) -> int:
        return await self.status_cache.check_pending(self.visible_orders)

    def schedule_external_checks(self) -> Optional[asyncio.Task]:
        if not any(is_eligible(o) for o in self.visible_orders):
            return None
        return self.scheduler.call_later(EXTERNAL_TASK, 0, self.check_visible_external_statuses)

    # ===== export =====
    async def export_xlsx(self) -> bytes:
        """Selected orders when there is a selection, otherwise every server page."""
        try:
            if self._selection:
                orders = [o for o in (self.store.get(oid) for oid in self._selection) if o is not None]
            else:
                orders = await collect_all_orders(
                    self.client,
                    filters=self.filters,
                    search=self.query if self.server_search else None,
                    exclusions=self.exclusions,
                    expected_total=self.server_total or None,
                    page_size=self.settings.export_page_size,
                )
        except IGetError as e:
            self._fail(e, "export")
            raise
        return orders_to_xlsx(orders, self.status_cache.records())

    # ===== banners =====
    def _fail(self, exc: IGetError, action: str) -> None:
        logger.warning("%s failed: %s", action, exc.msg)
        self.error = exc.msg
        self.error_retryable = bool(getattr(exc, "retryable", False))

    def _notify(self, message: str) -> None:
        self.success_message = message
        self.scheduler.call_later(SUCCESS_TASK, self.settings.success_message_ttl_seconds, self._clear_success)

    def _clear_success(self) -> None:
        self.success_message = None

    def dismiss_error(self) -> None:
        self.error = None

    async def close(self) -> None:
        await self.scheduler.close()

    # ===== snapshot =====
    def row(self, order: Order) -> Dict[str, Any]:
        ext = self.status_cache.record(order.id)
        return {
            "id": order.id,
            "recipientNumber": order.recipientNumber or order.phoneNumber,
            "name": display_name(order),
            "bundleType": order.bundleType,
            "network": network_of(order.bundleType),
            "capacity": format_number(order.capacity),
            "price": format_number(order.price),
            "status": order.status,
            "displayedStatus": self.displayed_status(order),
            "externalStatus": ext.model_dump(mode="json") if ext is not None else None,
            "checkState": self.status_cache.state(order.id).value,
            "orderReference": order.orderReference,
            "createdAt": order.createdAt.isoformat() if order.createdAt else None,
            "selected": order.id in self._selection,
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "orders": [self.row(o) for o in self.visible_orders],
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "pageSize": self.page_size,
            "filteredCount": self.filtered_count,
            "loadedCount": len(self.store),
            "serverPage": self.server_page,
            "serverTotal": self.server_total,
            "serverTotalPages": self.server_total_pages,
            "hasMore": self.has_more,
            "filters": self.filters.model_dump(),
            "exclusions": self.exclusions.model_dump(),
            "query": self.query,
            "serverSearch": self.server_search,
            "selected": self.selected_ids,
            "loading": self.loading,
            "bulkInProgress": self.bulk_in_progress,
            "error": self.error,
            "success": self.success_message,
        }
