from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .state import LedgerStatus, MintStatus, QueueStatus, TicketStatus

UINT256_MAX = 2**256 - 1


class InvalidTokenIdError(ValueError):
    """Raised when a value cannot be used as an on-chain token id."""


def parse_token_id(value: Any) -> int:
    """Parse a token id into an ``int`` in the uint256 range, or reject it."""

    if isinstance(value, bool):
        raise InvalidTokenIdError(f"Invalid token id: {value!r}")
    if isinstance(value, int):
        token_id = value
    elif isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise InvalidTokenIdError(f"Invalid token id: {value!r}")
        token_id = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise InvalidTokenIdError(f"Invalid token id: {value!r}")
        token_id = int(text)
    else:
        try:
            token_id = int(Decimal(str(value)))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidTokenIdError(f"Invalid token id: {value!r}") from exc
    if token_id < 0 or token_id > UINT256_MAX:
        raise InvalidTokenIdError(f"Token id out of range: {token_id}")
    return token_id


@dataclass(slots=True)
class Ticket:
    """A purchased ticket and its optional ledger linkage."""

    ticket_id: str
    status: TicketStatus
    payment_id: str | None = None
    user_id: str | None = None
    event_id: str | None = None
    parent_ticket_id: str | None = None
    is_parent_ticket: bool = False
    group_size: int = 1
    contract_address: str | None = None
    token_id: int | None = None
    ledger_registered: bool = False
    mint_status: MintStatus = MintStatus.UNSET
    ledger_tx_hash: str | None = None
    last_synced_at: datetime | None = None
    sync_status_code: int | None = None
    purchase_date: datetime | None = None

    @property
    def is_ledger_linked(self) -> bool:
        return self.contract_address is not None and self.token_id is not None

    @property
    def is_group_parent(self) -> bool:
        return self.is_parent_ticket and self.group_size > 1

    def ledger_link_violation(self) -> str | None:
        """Describe a broken registered-implies-linked invariant, if any."""

        if self.ledger_registered and not self.is_ledger_linked:
            missing = [
                name
                for name, value in (("contract_address", self.contract_address), ("token_id", self.token_id))
                if value is None
            ]
            return f"Ticket {self.ticket_id} is marked as ledger registered but has no {' or '.join(missing)}"
        return None


@dataclass(slots=True)
class RevocationAuditEntry:
    """One revocation action taken on a ticket."""

    id: int
    ticket_id: str
    actor: str
    reason: str
    revoked_at: datetime
    ledger_status: LedgerStatus
    ledger_tx_hash: str | None = None
    ledger_error: str | None = None


@dataclass(slots=True)
class QueueItem:
    """Work unit asking for a ticket's revocation to be written to the ledger."""

    id: int
    ticket_id: str
    audit_entry_id: int | None
    status: QueueStatus
    retry_count: int
    created_at: datetime
    processed_at: datetime | None = None
    error_message: str | None = None
