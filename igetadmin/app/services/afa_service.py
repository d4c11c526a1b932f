from __future__ import annotations
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..models.dto import AfaRegistration
from ..provider.client import IGetClient
from ..provider.errors import ClientValidationError, IGetError
from .export import afa_to_csv

logger = logging.getLogger(__name__)

SORT_FIELDS = ("createdAt", "price", "capacity", "fullName")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _search_fields(reg: AfaRegistration) -> List[str]:
    meta = reg.metadata or {}
    return [
        reg.orderReference or "",
        reg.phoneNumber or "",
        str(meta.get("fullName") or ""),
        str(meta.get("idNumber") or ""),
        str(meta.get("location") or ""),
    ]


def _sort_key(field: str):
    if field == "createdAt":
        def key(r: AfaRegistration) -> Any:
            ts = r.createdAt or _EPOCH
            return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
        return key
    if field == "price":
        return lambda r: r.price if r.price is not None else Decimal("0")
    if field == "capacity":
        return lambda r: r.capacity if r.capacity is not None else 0
    return lambda r: str((r.metadata or {}).get("fullName") or "").lower()


def refine_registrations(
    registrations: List[AfaRegistration],
    status: str = "all",
    search: str = "",
    sort_field: str = "createdAt",
    direction: str = "desc",
) -> List[AfaRegistration]:
    needle = (search or "").strip().lower()
    out = []
    for reg in registrations:
        if status and status != "all" and reg.status != status:
            continue
        if needle and not any(needle in f.lower() for f in _search_fields(reg)):
            continue
        out.append(reg)
    if sort_field not in SORT_FIELDS:
        sort_field = "createdAt"
    return sorted(out, key=_sort_key(sort_field), reverse=direction != "asc")


class AfaService:
    """AFA registration form and the admin registration list."""

    def __init__(self, client: IGetClient):
        self.client = client
        self.registrations: List[AfaRegistration] = []
        self.status = "all"
        self.search = ""
        self.sort_field = "createdAt"
        self.sort_direction = "desc"
        self.error: Optional[str] = None

    async def register(self, first_name: str, last_name: str, phone_number: str, price: Any = 20) -> Dict[str, Any]:
        first, last, phone = (first_name or "").strip(), (last_name or "").strip(), (phone_number or "").strip()
        if not first or not last or not phone:
            raise ClientValidationError("First name, last name and phone number are required")
        try:
            amount = float(price if price is not None else 20)
        except (TypeError, ValueError):
            raise ClientValidationError("Please enter a valid price")
        data = await self.client.register_afa(f"{first} {last}", phone, amount)
        logger.info("AFA registration submitted for %s", phone)
        return data

    async def load(self) -> bool:
        self.error = None
        try:
            raw = await self.client.afa_registrations()
        except IGetError as e:
            logger.warning("AFA registrations fetch failed: %s", e.msg)
            self.error = e.msg
            self.registrations = []
            return False
        self.registrations = [AfaRegistration.model_validate(r) for r in raw]
        return True

    def sort_by(self, field: str) -> None:
        # Clicking the active column flips direction, a new column starts ascending
        if field == self.sort_field:
            self.sort_direction = "desc" if self.sort_direction == "asc" else "asc"
        else:
            self.sort_field = field
            self.sort_direction = "asc"

    def visible(self) -> List[AfaRegistration]:
        return refine_registrations(
            self.registrations, self.status, self.search, self.sort_field, self.sort_direction
        )

    def export_csv(self) -> str:
        return afa_to_csv(self.visible())
