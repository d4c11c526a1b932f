"""Pure selectors over loaded orders: predicates, free-text refinement, paging."""
from __future__ import annotations
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, TypeVar

from ..models.dto import AFA_BUNDLE_TYPE, Exclusions, ExternalStatus, Order, OrderFilter

T = TypeVar("T")

NETWORK_BY_BUNDLE_TYPE = {
    "mtnup2u": "MTN",
    "mtn-justforu": "MTN",
    "at-ishare": "AT",
    "telecel-5959": "Telecel",
    "afa-registration": "AfA",
}

# Provider wording -> console status vocabulary
EXTERNAL_STATUS_MAP = {
    "delivered": "completed",
    "successful": "completed",
    "success": "completed",
    "completed": "completed",
    "pending": "pending",
    "queued": "pending",
    "processing": "processing",
    "in progress": "processing",
    "failed": "failed",
    "error": "failed",
    "reversed": "refunded",
    "refunded": "refunded",
}


def network_of(bundle_type: Optional[str]) -> str:
    if not bundle_type:
        return "Unknown"
    key = bundle_type.strip().lower()
    if key in NETWORK_BY_BUNDLE_TYPE:
        return NETWORK_BY_BUNDLE_TYPE[key]
    if key.startswith("mtn"):
        return "MTN"
    if key.startswith("at"):
        return "AT"
    if key.startswith("telecel"):
        return "Telecel"
    return bundle_type


def format_number(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, bool):
        return str(val)
    if isinstance(val, (int, float, Decimal)):
        if float(val) == int(val):
            return str(int(val))
        return str(val)
    return str(val)


def combo_key(network: str, capacity: Any) -> str:
    return f"{network}:{format_number(capacity)}"


def order_combo(order: Order) -> str:
    return combo_key(network_of(order.bundleType), order.capacity)


def toggle_exclusion(values: Sequence[str], value: str) -> List[str]:
    """Adds ``value`` if absent, removes it if present; order of the rest is kept."""
    if value in values:
        return [v for v in values if v != value]
    return [*values, value]


def _to_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def _order_date(order: Order) -> Optional[date]:
    if order.createdAt is None:
        return None
    dt: datetime = order.createdAt
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date()


def matches_predicates(order: Order, filters: OrderFilter, exclusions: Exclusions) -> bool:
    if filters.status and order.status != filters.status:
        return False
    if filters.bundleType and order.bundleType != filters.bundleType:
        return False
    start = _to_date(filters.startDate)
    end = _to_date(filters.endDate)
    if start or end:
        created = _order_date(order)
        if created is None:
            return False
        if start and created < start:
            return False
        if end and created > end:
            return False
    if exclusions.capacities and format_number(order.capacity) in exclusions.capacities:
        return False
    if exclusions.networks and network_of(order.bundleType) in exclusions.networks:
        return False
    if exclusions.networkCapacities and order_combo(order) in exclusions.networkCapacities:
        return False
    return True


def searchable_fields(order: Order) -> List[str]:
    fields: List[Any] = [
        order.recipientNumber,
        order.phoneNumber,
        order.orderReference,
        order.id,
        order.bundleType,
        order.status,
    ]
    if order.bundleType == AFA_BUNDLE_TYPE:
        fields.append(order.full_name)
    if order.user is not None:
        fields.extend([order.user.username, order.user.email])
    fields.append(format_number(order.capacity) if order.capacity is not None else None)
    fields.append(format_number(order.price) if order.price is not None else None)
    return [str(f) for f in fields if f is not None and f != ""]


def matches_query(order: Order, query: str) -> bool:
    q = (query or "").strip().lower()
    if not q:
        return True
    return any(q in f.lower() for f in searchable_fields(order))


def refine(
    orders: Iterable[Order],
    query: str = "",
    filters: Optional[OrderFilter] = None,
    exclusions: Optional[Exclusions] = None,
) -> List[Order]:
    f = filters or OrderFilter()
    ex = exclusions or Exclusions()
    return [o for o in orders if matches_predicates(o, f, ex) and matches_query(o, query)]


def page_count(total: int, page_size: int) -> int:
    if page_size <= 0:
        return 1
    return max(1, math.ceil(max(total, 0) / page_size))


def paginate(items: Sequence[T], page: int, page_size: int) -> List[T]:
    page = max(page, 1)
    start = (page - 1) * page_size
    return list(items[start:start + page_size])


def translate_external_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    key = status.strip().lower()
    return EXTERNAL_STATUS_MAP.get(key, key)


def displayed_status(order: Order, external: Optional[ExternalStatus] = None) -> str:
    if external is not None:
        translated = translate_external_status(external.status)
        if translated:
            return translated
    return order.status or "Unknown"


def display_name(order: Order) -> str:
    if order.is_afa and order.full_name:
        return order.full_name
    if order.user is not None and order.user.username:
        return order.user.username
    return "N/A"
