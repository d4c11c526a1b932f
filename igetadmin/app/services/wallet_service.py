from __future__ import annotations
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ..models.dto import Bank, WithdrawalQuote
from ..provider.client import IGetClient
from ..provider.errors import ClientValidationError, IGetError

logger = logging.getLogger(__name__)

FEE_RATE = Decimal("0.025")
MIN_FEE = Decimal("1")
CENT = Decimal("0.01")


def _amount(raw: Any) -> Optional[Decimal]:
    try:
        val = Decimal(str(raw).strip())
    except (InvalidOperation, TypeError):
        return None
    return val if val.is_finite() else None


def quote(amount: Any) -> WithdrawalQuote:
    """Fee is 2.5% of the amount with a 1 GHS floor; the net never goes below zero."""
    value = _amount(amount)
    if value is None or value <= 0:
        zero = Decimal("0.00")
        return WithdrawalQuote(amount=zero, fee=zero, net=zero)
    fee = max(value * FEE_RATE, MIN_FEE).quantize(CENT, rounding=ROUND_HALF_UP)
    net = max(value - fee, Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)
    return WithdrawalQuote(amount=value, fee=fee, net=net)


class WalletService:
    def __init__(self, client: IGetClient):
        self.client = client
        self.balance: float = 0.0
        self.banks: List[Bank] = []
        self.verified_account: Optional[Dict[str, str]] = None
        self.error: Optional[str] = None

    async def load_balance(self) -> float:
        try:
            self.balance = await self.client.wallet_balance()
        except IGetError as e:
            logger.warning("balance fetch failed: %s", e.msg)
            self.error = e.msg
        return self.balance

    async def load_banks(self) -> List[Bank]:
        try:
            raw = await self.client.list_banks()
        except IGetError as e:
            logger.warning("bank list fetch failed: %s", e.msg)
            self.error = "Failed to load supported banks"
            return self.banks
        self.banks = [Bank.model_validate(b) for b in raw]
        return self.banks

    async def verify_account(self, account_number: str, bank_code: str) -> str:
        if not (account_number or "").strip() or not (bank_code or "").strip():
            self.error = "Please enter account number and select a bank"
            raise ClientValidationError(self.error)
        self.error = None
        self.verified_account = None
        try:
            name = await self.client.verify_bank_account(account_number.strip(), bank_code.strip())
        except IGetError as e:
            self.error = e.msg
            raise
        if not name:
            self.error = "Failed to verify account"
            raise ClientValidationError(self.error)
        self.verified_account = {"accountNumber": account_number.strip(), "bankCode": bank_code.strip(), "accountName": name}
        return name

    def _validate(self, amount: Any, account_number: str, bank_code: str) -> WithdrawalQuote:
        value = _amount(amount)
        if value is None or value <= 0:
            raise ClientValidationError("Please enter a valid amount")
        if value > Decimal(str(self.balance)):
            raise ClientValidationError("Insufficient wallet balance")
        if not (account_number or "").strip() or not (bank_code or "").strip():
            raise ClientValidationError("Please provide account details")
        verified = self.verified_account
        if (
            not verified
            or verified["accountNumber"] != account_number.strip()
            or verified["bankCode"] != bank_code.strip()
        ):
            raise ClientValidationError("Please verify your account details first")
        q = quote(value)
        if q.net <= 0:
            raise ClientValidationError("Amount too small after deducting withdrawal fee")
        return q

    async def withdraw(self, amount: Any, account_number: str, bank_code: str, reason: Optional[str] = None) -> Dict[str, Any]:
        try:
            q = self._validate(amount, account_number, bank_code)
        except ClientValidationError as e:
            self.error = e.msg
            raise
        self.error = None
        try:
            data = await self.client.withdraw({
                "amount": float(q.amount),
                "accountNumber": account_number.strip(),
                "bankCode": bank_code.strip(),
                "accountName": self.verified_account["accountName"],  # type: ignore[index]
                "reason": reason or "Wallet withdrawal",
            })
        except IGetError as e:
            self.error = e.msg
            raise
        if data.get("newWalletBalance") is not None:
            try:
                self.balance = float(data["newWalletBalance"])
            except (TypeError, ValueError):
                pass
        self.verified_account = None
        logger.info("withdrawal %s initiated", data.get("reference"))
        return data
