from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from ticketledger.metrics import MetricsRegistry, metrics_registry
from ticketledger.metrics.definitions import REVOCATIONS_TOTAL
from ticketledger.purchases.repository import PurchaseRepository
from ticketledger.reconciliation.queue import RevocationQueueRepository

from .models import QueueItem, RevocationAuditEntry, Ticket
from .repository import RevocationLogRepository, TicketRepository
from .state import LedgerStatus, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)


class RevocationServiceError(RuntimeError):
    """Base error for revocation requests that cannot be carried out."""


class TicketNotFoundError(RevocationServiceError):
    """Raised when a ticket could not be located."""


class TicketAlreadyRevokedError(RevocationServiceError):
    """Raised when revoking a ticket that is no longer valid."""


class PurchasesNotFoundError(RevocationServiceError):
    """Raised when none of the requested purchases exist."""


class NoRevocableTicketsError(RevocationServiceError):
    """Raised when the requested purchases have no valid tickets left."""


class InvalidRevocationRequestError(RevocationServiceError):
    """Raised when a revocation request is missing required data."""


def group_revocation_reason(parent_ticket_id: str, reason: str) -> str:
    return f"Revoked as part of group. Parent ticket {parent_ticket_id} was revoked. Reason: {reason}"


@dataclass(slots=True)
class RevokedTicketRecord:
    ticket: Ticket
    audit_entry: RevocationAuditEntry | None = None
    queue_item: QueueItem | None = None


@dataclass(slots=True)
class RevocationSummary:
    """What a revocation request changed, plus the non-fatal problems it hit."""

    records: list[RevokedTicketRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    group_size: int | None = None
    revoked_purchases_count: int | None = None
    affected_users: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial_success" if self.warnings else "success"

    @property
    def revoked_ticket_ids(self) -> list[str]:
        return [record.ticket.ticket_id for record in self.records]

    @property
    def audit_entries_created(self) -> int:
        return sum(1 for record in self.records if record.audit_entry is not None)

    @property
    def queue_entries_created(self) -> int:
        return sum(1 for record in self.records if record.queue_item is not None)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "revoked_ticket_ids": self.revoked_ticket_ids,
            "revoked_tickets_count": len(self.records),
            "audit_entries_created": self.audit_entries_created,
            "queue_entries_created": self.queue_entries_created,
            "tickets": [
                {
                    "ticket_id": record.ticket.ticket_id,
                    "ledger_status": None if record.audit_entry is None else record.audit_entry.ledger_status.value,
                    "audit_entry_id": None if record.audit_entry is None else record.audit_entry.id,
                    "queued": record.queue_item is not None,
                }
                for record in self.records
            ],
        }
        if self.group_size is not None:
            payload["group_size"] = self.group_size
        if self.revoked_purchases_count is not None:
            payload["revoked_purchases_count"] = self.revoked_purchases_count
            payload["affected_users"] = self.affected_users
        return payload


@dataclass(slots=True)
class RevocationService:
    """Revoke tickets locally and hand ledger-linked ones to the revocation queue.

    The local revocation is committed first and is never rolled back; audit and queue
    failures after that point are reported as warnings on the summary.
    """

    tickets: TicketRepository
    audit_log: RevocationLogRepository
    queue: RevocationQueueRepository
    purchases: PurchaseRepository
    metrics: MetricsRegistry = field(default_factory=lambda: metrics_registry)

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self.tickets.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def get_revocation_history(self, ticket_id: str) -> list[RevocationAuditEntry]:
        return await self.audit_log.list_for_ticket(ticket_id)

    async def revoke_ticket(self, ticket_id: str, *, reason: str, actor: str) -> RevocationSummary:
        if not ticket_id or not reason or not reason.strip():
            raise InvalidRevocationRequestError("Missing required fields: ticket_id, reason")

        ticket = await self.get_ticket(ticket_id)
        if not TicketStateMachine.can_transition(ticket.status, TicketStatus.REVOKED):
            raise TicketAlreadyRevokedError("Ticket is already revoked")

        revoked = await self.tickets.revoke_tickets([ticket_id])
        if not revoked:
            # Lost a race with another revocation of the same ticket.
            raise TicketAlreadyRevokedError("Ticket is already revoked")
        parent = revoked[0]
        logger.info("Ticket %s revoked by %s", ticket_id, actor)

        summary = RevocationSummary()
        children: list[Ticket] = []
        if parent.is_group_parent:
            try:
                candidates = await self.tickets.list_group_children(ticket_id)
                children = await self.tickets.revoke_tickets([child.ticket_id for child in candidates])
            except Exception as exc:
                logger.exception("Failed to revoke group tickets of %s", ticket_id)
                summary.warnings.append(f"Failed to revoke group tickets: {exc}")
            summary.group_size = 1 + len(children)

        summary.records.append(await self._record_revocation(parent, reason=reason, actor=actor, summary=summary))
        child_reason = group_revocation_reason(ticket_id, reason)
        for child in children:
            summary.records.append(
                await self._record_revocation(child, reason=child_reason, actor=actor, summary=summary)
            )

        self.metrics.counter(REVOCATIONS_TOTAL).inc(len(summary.records), labels={"source": "single"})
        return summary

    async def revoke_purchases(
        self,
        purchase_ids: Sequence[int],
        *,
        reason: str,
        actor: str,
        source: str = "purchases",
    ) -> RevocationSummary:
        if not purchase_ids:
            raise InvalidRevocationRequestError("purchase_ids array is required and cannot be empty")

        purchases = await self.purchases.get_purchases(purchase_ids)
        if not purchases:
            raise PurchasesNotFoundError("Failed to retrieve purchase details or no purchases found")

        payment_ids = list(dict.fromkeys(purchase.payment_id for purchase in purchases))
        candidates = await self.tickets.list_valid_by_payments(payment_ids)
        if not candidates:
            raise NoRevocableTicketsError("No valid tickets found for the specified purchases")

        revoked = await self.tickets.revoke_tickets([ticket.ticket_id for ticket in candidates])
        if not revoked:
            raise NoRevocableTicketsError("No valid tickets found for the specified purchases")
        logger.info(
            "Revoked %d tickets from %d purchases",
            len(revoked),
            len(purchases),
            extra={"actor": actor, "purchase_ids": [purchase.id for purchase in purchases]},
        )

        summary = RevocationSummary(
            revoked_purchases_count=len(purchases),
            affected_users=sorted({purchase.user_id for purchase in purchases}),
        )
        try:
            await self.purchases.mark_revoked([purchase.id for purchase in purchases])
        except Exception as exc:
            logger.exception("Failed to update purchase history status")
            summary.warnings.append(f"Failed to update purchase history status: {exc}")

        for ticket in revoked:
            summary.records.append(await self._record_revocation(ticket, reason=reason, actor=actor, summary=summary))

        self.metrics.counter(REVOCATIONS_TOTAL).inc(len(summary.records), labels={"source": source})
        return summary

    async def _record_revocation(
        self,
        ticket: Ticket,
        *,
        reason: str,
        actor: str,
        summary: RevocationSummary,
    ) -> RevokedTicketRecord:
        record = RevokedTicketRecord(ticket=ticket)
        ledger_status = LedgerStatus.PENDING if ticket.is_ledger_linked else LedgerStatus.NOT_APPLICABLE
        try:
            record.audit_entry = await self.audit_log.create_entry(
                ticket_id=ticket.ticket_id,
                actor=actor,
                reason=reason,
                ledger_status=ledger_status,
            )
        except Exception as exc:
            logger.exception("Failed to create revocation audit entry for ticket %s", ticket.ticket_id)
            summary.warnings.append(f"Failed to create audit entry for ticket {ticket.ticket_id}: {exc}")
            return record

        if not ticket.is_ledger_linked:
            return record
        try:
            record.queue_item = await self.queue.enqueue(
                ticket_id=ticket.ticket_id, audit_entry_id=record.audit_entry.id
            )
        except Exception as exc:
            logger.exception("Failed to queue ledger revocation for ticket %s", ticket.ticket_id)
            summary.warnings.append(f"Failed to queue ledger revocation for ticket {ticket.ticket_id}: {exc}")
        return record
