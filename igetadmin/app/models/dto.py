from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


ORDER_STATUSES = ("pending", "processing", "completed", "failed", "refunded")
OrderStatus = Literal["pending", "processing", "completed", "failed", "refunded"]

BUNDLE_TYPES = (
    "mtnup2u",
    "mtn-justforu",
    "AT-ishare",
    "Telecel-5959",
    "AfA-registration",
)
AFA_BUNDLE_TYPE = "AfA-registration"
UP2U_BUNDLE_TYPE = "mtnup2u"


class WireModel(BaseModel):
    # Backend documents use Mongo-style `_id`; unknown fields are kept as-is
    model_config = ConfigDict(populate_by_name=True, extra="allow")


def _scalar_str(v: Any) -> Any:
    # Phone numbers and references sometimes arrive as JSON numbers
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


def _dict_or_none(v: Any) -> Any:
    # Unpopulated Mongo refs come through as bare id strings
    return v if isinstance(v, dict) else None


# ===== Orders =====
class OrderUser(WireModel):
    id: Optional[str] = Field(default=None, alias="_id")
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("id", "username", "email", "phone", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Any:
        return _scalar_str(v)


class Order(WireModel):
    id: str = Field(alias="_id")
    recipientNumber: Optional[str] = None
    phoneNumber: Optional[str] = None
    bundleType: Optional[str] = None
    capacity: Optional[Union[int, float]] = None
    price: Optional[Decimal] = None
    status: str = "pending"
    orderReference: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    user: Optional[OrderUser] = None

    @field_validator("id", "recipientNumber", "phoneNumber", "bundleType", "orderReference", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Any:
        return _scalar_str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v: Any) -> Any:
        return "pending" if v is None else _scalar_str(v)

    @field_validator("user", "metadata", mode="before")
    @classmethod
    def _coerce_refs(cls, v: Any) -> Any:
        return _dict_or_none(v)

    @field_validator("capacity", "price", "createdAt", "updatedAt", mode="wrap")
    @classmethod
    def _unparseable_is_unset(cls, v: Any, handler: Any) -> Any:
        try:
            return handler(v)
        except ValidationError:
            return None

    @property
    def full_name(self) -> Optional[str]:
        return (self.metadata or {}).get("fullName")

    @property
    def is_afa(self) -> bool:
        return self.bundleType == AFA_BUNDLE_TYPE


class ExternalStatus(BaseModel):
    status: Optional[str] = None
    processedDate: Optional[str] = None
    volume: Optional[Any] = None
    number: Optional[str] = None
    responseCode: Optional[str] = None
    message: Optional[str] = None
    checkedAt: datetime

    @field_validator("status", "processedDate", "number", "responseCode", "message", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Any:
        return _scalar_str(v)


class Exclusions(BaseModel):
    capacities: List[str] = Field(default_factory=list)
    networks: List[str] = Field(default_factory=list)
    networkCapacities: List[str] = Field(default_factory=list)


class OrderFilter(BaseModel):
    status: Optional[str] = None
    bundleType: Optional[str] = None
    startDate: Optional[str] = None  # YYYY-MM-DD
    endDate: Optional[str] = None  # YYYY-MM-DD

    def is_empty(self) -> bool:
        return not any([self.status, self.bundleType, self.startDate, self.endDate])


class OrdersPage(BaseModel):
    orders: List[Order] = Field(default_factory=list)
    total: int = 0
    currentPage: int = 1
    pages: int = 1


class BulkResult(BaseModel):
    modified: int = 0


class StatusUpdateBody(BaseModel):
    status: OrderStatus
    senderID: Optional[str] = Field(default=None, max_length=11)


class BulkStatusBody(BaseModel):
    status: Optional[OrderStatus] = None
    senderID: Optional[str] = Field(default=None, max_length=11)


class SearchBody(BaseModel):
    query: str = ""
    serverSearch: Optional[bool] = None


class SelectionBody(BaseModel):
    orderIds: List[str] = Field(default_factory=list)
    mode: Literal["toggle", "set", "all", "clear"] = "toggle"


class ExclusionToggleBody(BaseModel):
    kind: Literal["capacity", "network", "networkCapacity"]
    value: str


# ===== Users =====
class Wallet(WireModel):
    balance: float = 0.0
    currency: Optional[str] = None


class User(WireModel):
    id: str = Field(alias="_id")
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    isActive: Optional[bool] = None
    approvalStatus: Optional[str] = None
    wallet: Optional[Wallet] = None
    createdAt: Optional[datetime] = None

    @field_validator("id", "username", "email", "phone", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Any:
        return _scalar_str(v)

    @field_validator("wallet", mode="before")
    @classmethod
    def _coerce_wallet(cls, v: Any) -> Any:
        return _dict_or_none(v)


class Pagination(BaseModel):
    total: int = 0
    page: int = 1
    totalPages: int = 1
    hasNextPage: bool = False
    hasPrevPage: bool = False


class UsersPage(BaseModel):
    users: List[User] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)


class ApprovalBody(BaseModel):
    notes: str = ""


class RejectionBody(BaseModel):
    reason: str = ""


class BulkApproveBody(BaseModel):
    userIds: List[str] = Field(default_factory=list)
    notes: str = "Bulk approval"


class WalletAdjustBody(BaseModel):
    amount: Any = None
    description: str = ""


class RoleBody(BaseModel):
    role: str = ""


# ===== Catalog =====
class StockInfo(WireModel):
    available: Optional[int] = None
    isLowStock: Optional[bool] = None
    isOutOfStock: Optional[bool] = None
    isInStock: Optional[bool] = None
    stockPercentage: Optional[float] = None


class Bundle(WireModel):
    id: str = Field(alias="_id")
    type: Optional[str] = None
    capacity: Optional[Union[int, float]] = None
    price: Optional[Decimal] = None
    userPrice: Optional[Decimal] = None
    rolePricing: Optional[Dict[str, Decimal]] = None
    isInStock: Optional[bool] = None
    stockUnits: Optional[int] = None
    stockInfo: Optional[StockInfo] = None
    stockStatus: Optional[StockInfo] = None


class PriceUpdateBody(BaseModel):
    standard: Any = None
    admin: Any = None
    user: Any = None
    agent: Any = None
    Editor: Any = None


class StockActionBody(BaseModel):
    action: Literal["restock", "adjust", "set", "threshold"]
    value: Any = None
    reason: Optional[str] = None


class NetworkAvailability(WireModel):
    networkType: Optional[str] = None
    isAvailable: bool = True


# ===== AFA / wallet =====
class AfaRegistration(WireModel):
    id: Optional[str] = Field(default=None, alias="_id")
    orderReference: Optional[str] = None
    phoneNumber: Optional[str] = None
    capacity: Optional[Union[int, float]] = None
    price: Optional[Decimal] = None
    status: Optional[str] = None
    createdAt: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class AfaRegisterBody(BaseModel):
    firstName: str = ""
    lastName: str = ""
    phoneNumber: str = ""
    price: Decimal = Decimal("20")


class Bank(WireModel):
    code: Optional[str] = None
    name: Optional[str] = None


class WithdrawalQuote(BaseModel):
    amount: Decimal
    fee: Decimal
    net: Decimal


class WithdrawBody(BaseModel):
    amount: Any = None
    accountNumber: str = ""
    bankCode: str = ""
    reason: Optional[str] = None


class SuccessDTO(BaseModel):
    success: bool = True
    message: Optional[str] = None


class PurchaseBody(BaseModel):
    bundleId: str
    recipientNumber: str = ""


class VerifyAccountBody(BaseModel):
    accountNumber: str = ""
    bankCode: str = ""


class NetworkToggleBody(BaseModel):
    isAvailable: bool


class StockStatusBody(BaseModel):
    inStock: bool


class NewBundleBody(BaseModel):
    type: str
    capacity: Any = None
    price: Any = None
