from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any

from opentelemetry import trace

from ticketledger.ledger.client import LedgerGateway
from ticketledger.metrics import MetricsRegistry, metrics_registry
from ticketledger.metrics.definitions import SYNC_DISCREPANCIES_TOTAL, SYNC_FAILURES_TOTAL
from ticketledger.tickets.models import Ticket
from ticketledger.tickets.repository import TicketRepository
from ticketledger.tickets.state import LedgerStatusCode, MintStatus, TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def expected_local_state(ticket: Ticket, code: int) -> tuple[TicketStatus, bool] | None:
    """Map a ledger status code to the (status, registered) pair the ticket should have.

    Returns ``None`` for codes the contract is not known to produce. A locally revoked
    ticket stays revoked whatever the ledger says.
    """

    if code == LedgerStatusCode.UNREGISTERED:
        return ticket.status, False
    if code == LedgerStatusCode.REGISTERED:
        if ticket.status is TicketStatus.REVOKED:
            return TicketStatus.REVOKED, True
        return TicketStatus.VALID, True
    if code == LedgerStatusCode.REVOKED:
        return TicketStatus.REVOKED, True
    return None


@dataclass(slots=True)
class SyncItemResult:
    ticket_id: str
    token_id: int | None
    status: str
    ledger_status_code: int | None = None
    old_status: TicketStatus | None = None
    new_status: TicketStatus | None = None
    ledger_behind: bool = False
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ticket_id": self.ticket_id,
            "token_id": None if self.token_id is None else str(self.token_id),
            "status": self.status,
        }
        if self.ledger_status_code is not None:
            payload["blockchain_status"] = self.ledger_status_code
        if self.old_status is not None and self.new_status is not None:
            payload["old_status"] = self.old_status.value
            payload["new_status"] = self.new_status.value
        if self.ledger_behind:
            payload["ledger_behind"] = True
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class SyncReport:
    total_checked: int = 0
    updated_count: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    discrepancies_found: int = 0
    ledger_behind: int = 0
    duration_ms: int = 0
    details: list[SyncItemResult] = field(default_factory=list)

    def to_payload(self, *, include_details: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "total_checked": self.total_checked,
            "updated_count": self.updated_count,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "discrepancies_found": self.discrepancies_found,
            "ledger_behind": self.ledger_behind,
            "sync_duration_ms": self.duration_ms,
        }
        if include_details:
            payload["sync_details"] = [item.to_payload() for item in self.details]
        return payload


@dataclass(slots=True)
class StateReconciler:
    """Pull ledger status for stale tickets and overwrite the local fields to match."""

    tickets: TicketRepository
    ledger: LedgerGateway
    stale_after: timedelta = timedelta(hours=1)
    request_delay: float = 0.1
    metrics: MetricsRegistry = field(default_factory=lambda: metrics_registry)

    async def sync(self, *, limit: int = 100, force_resync: bool = False) -> SyncReport:
        started = perf_counter()
        now = datetime.now(timezone.utc)
        synced_before = None if force_resync else now - self.stale_after

        with tracer.start_as_current_span("state_reconciler.sync") as span:
            span.set_attribute("sync.limit", limit)
            span.set_attribute("sync.force_resync", force_resync)
            tickets = await self.tickets.list_for_sync(limit=limit, synced_before=synced_before)
            report = SyncReport(total_checked=len(tickets))
            logger.info("Syncing %d tickets with the ledger", len(tickets), extra={"force_resync": force_resync})

            for index, ticket in enumerate(tickets):
                result = await self._sync_ticket(ticket)
                report.details.append(result)
                self._tally(report, result)
                if index < len(tickets) - 1 and self.request_delay > 0:
                    await asyncio.sleep(self.request_delay)

            report.duration_ms = round((perf_counter() - started) * 1000)
            span.set_attribute("sync.discrepancies", report.discrepancies_found)
            span.set_attribute("sync.failed", report.failed_syncs)

        logger.info(
            "Ledger sync finished",
            extra={
                "total_checked": report.total_checked,
                "updated": report.updated_count,
                "failed": report.failed_syncs,
                "discrepancies": report.discrepancies_found,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    def _tally(self, report: SyncReport, result: SyncItemResult) -> None:
        if result.status == "failed":
            report.failed_syncs += 1
            self.metrics.counter(SYNC_FAILURES_TOTAL).inc()
            return
        report.successful_syncs += 1
        if result.ledger_behind:
            report.ledger_behind += 1
        if result.status == "updated":
            report.updated_count += 1
            report.discrepancies_found += 1
            self.metrics.counter(SYNC_DISCREPANCIES_TOTAL).inc()

    async def _sync_ticket(self, ticket: Ticket) -> SyncItemResult:
        violation = ticket.ledger_link_violation()
        if violation is not None:
            logger.error(violation)
            return SyncItemResult(ticket_id=ticket.ticket_id, token_id=ticket.token_id, status="failed", error=violation)

        token_id = ticket.token_id
        try:
            code = await self.ledger.get_status(token_id)
            expected = expected_local_state(ticket, code)
            synced_at = datetime.now(timezone.utc)

            if expected is None:
                logger.warning(
                    "Unknown ledger status %s for ticket %s", code, ticket.ticket_id, extra={"token_id": token_id}
                )
                await self.tickets.touch_sync(ticket.ticket_id, status_code=code, synced_at=synced_at)
                return SyncItemResult(
                    ticket_id=ticket.ticket_id, token_id=token_id, status="unknown_status", ledger_status_code=code
                )

            new_status, new_registered = expected
            ledger_behind = code == LedgerStatusCode.REGISTERED and ticket.status is TicketStatus.REVOKED
            if ledger_behind:
                logger.info("Ledger has not recorded the revocation of ticket %s yet", ticket.ticket_id)

            if ticket.status is new_status and ticket.ledger_registered == new_registered:
                await self.tickets.touch_sync(ticket.ticket_id, status_code=code, synced_at=synced_at)
                return SyncItemResult(
                    ticket_id=ticket.ticket_id,
                    token_id=token_id,
                    status="in_sync",
                    ledger_status_code=code,
                    ledger_behind=ledger_behind,
                )

            mint_status = MintStatus.MINTED if code > 0 else ticket.mint_status
            logger.info(
                "Discrepancy for ticket %s: status %s -> %s, registered %s -> %s",
                ticket.ticket_id,
                ticket.status.value,
                new_status.value,
                ticket.ledger_registered,
                new_registered,
            )
            await self.tickets.apply_ledger_state(
                ticket.ticket_id,
                status=new_status,
                ledger_registered=new_registered,
                mint_status=mint_status,
                status_code=code,
                synced_at=synced_at,
            )
        except Exception as exc:
            logger.exception("Failed to sync ticket %s", ticket.ticket_id, extra={"token_id": token_id})
            return SyncItemResult(ticket_id=ticket.ticket_id, token_id=token_id, status="failed", error=str(exc))

        return SyncItemResult(
            ticket_id=ticket.ticket_id,
            token_id=token_id,
            status="updated",
            ledger_status_code=code,
            old_status=ticket.status,
            new_status=new_status,
            ledger_behind=ledger_behind,
        )
