from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from ticketledger.tickets.service import NoRevocableTicketsError, RevocationService, RevocationSummary

from .models import RAPID_PURCHASE_FLAG, Purchase, RapidPurchaseGroup
from .repository import PurchaseRepository

logger = logging.getLogger(__name__)

BOT_REVOCATION_REASON = "Bot activity detected - rapid purchases"
SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class BotScanResult:
    scanned_at: datetime
    time_window_minutes: int
    event_id: str | None
    flagged: list[RapidPurchaseGroup] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    revocation: RevocationSummary | None = None

    @property
    def status(self) -> str:
        if self.warnings or (self.revocation is not None and self.revocation.warnings):
            return "partial_success"
        return "success"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "scan_timestamp": self.scanned_at.isoformat(),
            "time_window_minutes": self.time_window_minutes,
            "event_filter": self.event_id,
            "flagged_users_count": len(self.flagged),
            "flagged_purchases": [
                {
                    "user_id": group.user_id,
                    "purchase_count": group.purchase_count,
                    "total_tickets": group.total_tickets,
                    "time_span_minutes": group.time_span_minutes,
                    "first_purchase": group.first_purchase.isoformat(),
                    "last_purchase": group.last_purchase.isoformat(),
                    "purchase_ids": group.purchase_ids,
                    "event_ids": group.event_ids,
                }
                for group in self.flagged
            ],
        }
        if self.revocation is not None:
            payload["revocation"] = self.revocation.to_payload()
        return payload


@dataclass(slots=True)
class FlaggedPage:
    items: list[Purchase]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page * self.limit < self.total

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1


@dataclass(slots=True)
class BotActivityScanner:
    """Flag users who bought repeatedly inside a short window, optionally revoking their tickets."""

    purchases: PurchaseRepository
    revocations: RevocationService | None = None
    min_purchases: int = 2

    async def scan(
        self,
        *,
        time_window_minutes: int = 5,
        event_id: str | None = None,
        auto_revoke: bool = False,
    ) -> BotScanResult:
        if time_window_minutes <= 0:
            raise ValueError("time_window_minutes must be positive")

        now = datetime.now(timezone.utc)
        groups = await self.purchases.find_rapid_purchases(
            since=now - timedelta(minutes=time_window_minutes),
            event_id=event_id,
            min_purchases=self.min_purchases,
        )
        result = BotScanResult(scanned_at=now, time_window_minutes=time_window_minutes, event_id=event_id)
        logger.info("Bot scan found %d suspicious users", len(groups), extra={"event_id": event_id})

        for group in groups:
            try:
                await self.purchases.flag_purchases(group.purchase_ids, flag=RAPID_PURCHASE_FLAG)
            except Exception as exc:
                logger.exception("Failed to flag purchases for user %s", group.user_id)
                result.warnings.append(f"Failed to flag purchases for user {group.user_id}: {exc}")
                continue
            result.flagged.append(group)

        if auto_revoke and result.flagged:
            if self.revocations is None:
                raise RuntimeError("Automatic revocation requires a revocation service")
            purchase_ids = [purchase_id for group in result.flagged for purchase_id in group.purchase_ids]
            try:
                result.revocation = await self.revocations.revoke_purchases(
                    purchase_ids,
                    reason=BOT_REVOCATION_REASON,
                    actor=SYSTEM_ACTOR,
                    source="bot_scan",
                )
            except NoRevocableTicketsError as exc:
                result.warnings.append(str(exc))
        return result

    async def list_flagged(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        event_id: str | None = None,
        user_id: str | None = None,
    ) -> FlaggedPage:
        page = max(page, 1)
        items, total = await self.purchases.list_flagged(
            limit=limit, offset=(page - 1) * limit, event_id=event_id, user_id=user_id
        )
        return FlaggedPage(items=items, total=total, page=page, limit=limit)
