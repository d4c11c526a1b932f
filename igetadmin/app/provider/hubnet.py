from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from ..models.dto import ExternalStatus
from .errors import ApiError
from .http import ApiHTTP

logger = logging.getLogger(__name__)


class TransactionChecker:
    """Client for the hubnet transaction-checker used to track MTN up2u deliveries.

    The endpoint authenticates with a static bearer value sent in a ``token``
    header rather than ``Authorization``.
    """

    def __init__(self, http: ApiHTTP, url: Optional[str] = None, token: Optional[str] = None):
        self.http = http
        self.url = url or http.settings.hubnet_checker_url
        self.token = token if token is not None else http.settings.hubnet_token

    async def check(self, reference: str) -> ExternalStatus:
        if not reference:
            raise ApiError("order reference required", http_status=400)
        body: Any = await self.http.get(
            self.url,
            {"reference": reference},
            include_token=False,
            extra_headers={"token": f"Bearer {self.token}"},
            error_message="Failed to check external status",
        )
        if not isinstance(body, dict) or body.get("status") != "success" or not isinstance(body.get("data"), dict):
            logger.info("transaction checker gave no data for %s", reference)
            raise ApiError("No external status available", http_status=404, body=body)
        data = body["data"]
        try:
            return ExternalStatus(
                status=data.get("status"),
                processedDate=data.get("processed_date"),
                volume=data.get("volume"),
                number=data.get("number"),
                responseCode=str(data["response_code"]) if data.get("response_code") is not None else None,
                message=data.get("message"),
                checkedAt=datetime.now(timezone.utc),
            )
        except ValidationError as e:
            logger.warning("unreadable transaction checker payload for %s: %s", reference, e.error_count())
            raise ApiError("Failed to check external status", http_status=502, body=body)
