from __future__ import annotations
import csv
import io
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from openpyxl import Workbook

from ..models.dto import AfaRegistration, Exclusions, ExternalStatus, Order, OrderFilter
from ..provider.client import IGetClient
from .filters import display_name, format_number, network_of

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

ORDER_COLUMNS = [
    "Recipient Number",
    "Name",
    "Capacity (GB)",
    "Network",
    "Bundle Type",
    "Status",
    "External Status",
    "Order Reference",
]

AFA_COLUMNS = [
    "Reference",
    "Full Name",
    "Phone Number",
    "ID Type",
    "ID Number",
    "Date of Birth",
    "Occupation",
    "Location",
    "Capacity",
    "Price",
    "Status",
    "Date",
]


async def collect_all_orders(
    client: IGetClient,
    filters: Optional[OrderFilter] = None,
    search: Optional[str] = None,
    exclusions: Optional[Exclusions] = None,
    expected_total: Optional[int] = None,
    page_size: int = 1000,
) -> List[Order]:
    """Pages through the order listing until it is exhausted.

    Stops on an empty page, on the last server page, or once the accumulated
    count reaches the reported total. Any failure propagates and nothing is
    returned, so callers never write a partial export.
    """
    collected: List[Order] = []
    seen: set[str] = set()
    page = 1
    total = expected_total
    while True:
        result = await client.list_orders(
            page=page, limit=page_size, filters=filters, search=search, exclusions=exclusions
        )
        if total is None or result.total > 0:
            total = result.total
        for o in result.orders:
            if o.id not in seen:
                seen.add(o.id)
                collected.append(o)
        logger.debug("export page %s: %s rows (%s/%s)", page, len(result.orders), len(collected), total)
        if not result.orders or page >= result.pages or (total is not None and len(collected) >= total):
            break
        page += 1
    if total is not None and len(collected) > total:
        collected = collected[:total]
    return collected


def _capacity_gb(capacity: Any) -> Any:
    if capacity is None:
        return 0
    try:
        return float(capacity) / 1000
    except (TypeError, ValueError):
        return 0


def order_rows(orders: Iterable[Order], external: Optional[Dict[str, ExternalStatus]] = None) -> List[List[Any]]:
    ext = external or {}
    rows: List[List[Any]] = []
    for o in orders:
        record = ext.get(o.id)
        rows.append([
            o.recipientNumber or o.phoneNumber or "N/A",
            display_name(o),
            _capacity_gb(o.capacity),
            network_of(o.bundleType),
            o.bundleType or "N/A",
            o.status or "N/A",
            (record.status if record is not None and record.status else "N/A"),
            o.orderReference or "N/A",
        ])
    return rows


def orders_to_xlsx(orders: Iterable[Order], external: Optional[Dict[str, ExternalStatus]] = None) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Orders"
    sheet.append(ORDER_COLUMNS)
    for row in order_rows(orders, external):
        sheet.append(row)
    buf = io.BytesIO()
    workbook.save(buf)
    return buf.getvalue()


def orders_export_filename(now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"orders_export_{ts}.xlsx"


def _fmt_date(val: Any, fmt: str) -> str:
    if val is None or val == "":
        return "N/A"
    if isinstance(val, datetime):
        return val.strftime(fmt)
    try:
        return datetime.fromisoformat(str(val).replace("Z", "+00:00")).strftime(fmt)
    except ValueError:
        return "Invalid date"


def afa_rows(registrations: Iterable[AfaRegistration]) -> List[List[str]]:
    rows: List[List[str]] = []
    for reg in registrations:
        meta = reg.metadata or {}
        rows.append([
            reg.orderReference or "N/A",
            meta.get("fullName") or "N/A",
            reg.phoneNumber or "N/A",
            meta.get("idType") or "N/A",
            meta.get("idNumber") or "N/A",
            _fmt_date(meta.get("dateOfBirth"), "%Y-%m-%d"),
            meta.get("occupation") or "N/A",
            meta.get("location") or "N/A",
            format_number(reg.capacity),
            format_number(reg.price),
            reg.status or "N/A",
            _fmt_date(reg.createdAt, "%Y-%m-%d %H:%M:%S"),
        ])
    return rows


def afa_to_csv(registrations: Iterable[AfaRegistration]) -> str:
    # Header unquoted, every data value quoted
    buf = io.StringIO()
    buf.write(",".join(AFA_COLUMNS) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows(afa_rows(registrations))
    return buf.getvalue().rstrip("\n")


def afa_export_filename(now: Optional[datetime] = None) -> str:
    return f"afa-registrations-{(now or datetime.now()).strftime('%Y%m%d')}.csv"
