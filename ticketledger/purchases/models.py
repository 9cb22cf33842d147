from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class PurchaseStatus(str, Enum):
    NORMAL = "normal"
    FLAGGED = "flagged"
    REVOKED = "revoked"


RAPID_PURCHASE_FLAG = "rapid_purchase"


@dataclass(slots=True)
class Purchase:
    """Row of the purchase history."""

    id: int
    user_id: str
    event_id: str
    payment_id: str
    quantity: int
    status: PurchaseStatus
    purchase_timestamp: datetime
    flag: str | None = None


@dataclass(slots=True)
class RapidPurchaseGroup:
    """Purchases made by one user inside the scanned time window."""

    user_id: str
    purchase_ids: list[int]
    first_purchase: datetime
    last_purchase: datetime
    event_ids: list[str] = field(default_factory=list)
    payment_ids: list[str] = field(default_factory=list)
    quantities: list[int] = field(default_factory=list)

    @property
    def purchase_count(self) -> int:
        return len(self.purchase_ids)

    @property
    def total_tickets(self) -> int:
        return sum(self.quantities)

    @property
    def time_span_minutes(self) -> int:
        return round((self.last_purchase - self.first_purchase).total_seconds() / 60)
