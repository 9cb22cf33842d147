from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from ticketledger.ledger.client import LedgerGateway
from ticketledger.metrics import MetricsRegistry, metrics_registry
from ticketledger.metrics.definitions import (
    LEDGER_TRANSACTIONS_TOTAL,
    QUEUE_ITEMS_TOTAL,
    WORKER_BATCH_DURATION,
)
from ticketledger.tickets.models import QueueItem
from ticketledger.tickets.repository import RevocationLogRepository, TicketRepository
from ticketledger.tickets.state import LedgerStatus, LedgerStatusCode, QueueStateMachine, QueueStatus

from .queue import RevocationQueueRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

NO_LEDGER_DATA_MESSAGE = "Ticket has no blockchain data"
ALREADY_REVOKED_MESSAGE = "Already revoked on blockchain"


@dataclass(slots=True)
class WorkerItemResult:
    item_id: int
    ticket_id: str
    outcome: str
    message: str | None = None
    tx_hash: str | None = None
    retry_count: int | None = None


@dataclass(slots=True)
class WorkerRunResult:
    """Summary of one pass over the revocation queue."""

    fetched: int = 0
    items: list[WorkerItemResult] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for item in self.items if item.outcome == outcome)

    def to_payload(self) -> dict[str, Any]:
        outcomes: dict[str, int] = {}
        for item in self.items:
            outcomes[item.outcome] = outcomes.get(item.outcome, 0) + 1
        return {
            "fetched": self.fetched,
            "outcomes": outcomes,
            "items": [
                {
                    "queue_item_id": item.item_id,
                    "ticket_id": item.ticket_id,
                    "outcome": item.outcome,
                    "message": item.message,
                    "tx_hash": item.tx_hash,
                    "retry_count": item.retry_count,
                }
                for item in self.items
            ],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RevocationWorker:
    """Drain pending queue items and write their revocations to the ledger.

    A call to :meth:`process_batch` handles at most ``batch_size`` items in FIFO order and
    keeps no state between calls; scheduling is left to :func:`run_worker_loop` or an
    external scheduler.
    """

    queue: RevocationQueueRepository
    tickets: TicketRepository
    audit_log: RevocationLogRepository
    ledger: LedgerGateway
    batch_size: int = 10
    max_retries: int = QueueStateMachine.MAX_RETRIES
    metrics: MetricsRegistry = field(default_factory=lambda: metrics_registry)

    async def process_batch(self) -> WorkerRunResult:
        with tracer.start_as_current_span("revocation_worker.process_batch") as span:
            with self.metrics.time(WORKER_BATCH_DURATION):
                items = await self.queue.list_pending(self.batch_size)
                result = WorkerRunResult(fetched=len(items))
                span.set_attribute("revocation_queue.fetched", len(items))
                if not items:
                    logger.debug("No pending revocations to process")
                    return result

                logger.info("Processing %d pending revocations", len(items))
                for item in items:
                    try:
                        item_result = await self._process_item(item)
                    except Exception as exc:
                        # Outcome could not be recorded; the item stays in 'processing'.
                        logger.exception(
                            "Failed to record outcome for queue item %s", item.id, extra={"ticket_id": item.ticket_id}
                        )
                        item_result = WorkerItemResult(
                            item_id=item.id, ticket_id=item.ticket_id, outcome="error", message=str(exc)
                        )
                    self.metrics.counter(QUEUE_ITEMS_TOTAL).inc(labels={"outcome": item_result.outcome})
                    result.items.append(item_result)

                span.set_attribute("revocation_queue.completed", result.count("completed"))
                span.set_attribute("revocation_queue.failed", result.count("failed"))
                logger.info("Finished processing revocation queue", extra={"outcomes": result.to_payload()["outcomes"]})
                return result

    async def _process_item(self, item: QueueItem) -> WorkerItemResult:
        claimed = await self.queue.claim(item.id)
        if claimed is None:
            logger.info("Queue item %s was claimed elsewhere, skipping", item.id)
            return WorkerItemResult(item_id=item.id, ticket_id=item.ticket_id, outcome="skipped")

        if claimed.retry_count >= self.max_retries:
            message = f"Retry limit of {self.max_retries} already reached"
            await self.queue.record_failure(
                claimed.id,
                status=QueueStatus.FAILED,
                retry_count=claimed.retry_count,
                error=message,
                processed_at=_utcnow(),
            )
            await self._update_audit(claimed, LedgerStatus.FAILED, error=message)
            return WorkerItemResult(
                item_id=claimed.id,
                ticket_id=claimed.ticket_id,
                outcome="failed",
                message=message,
                retry_count=claimed.retry_count,
            )

        try:
            return await self._revoke_on_ledger(claimed)
        except Exception as exc:
            logger.exception(
                "Error processing queue item %s",
                claimed.id,
                extra={"ticket_id": claimed.ticket_id, "retry_count": claimed.retry_count},
            )
            return await self._record_failure(claimed, exc)

    async def _revoke_on_ledger(self, item: QueueItem) -> WorkerItemResult:
        ticket = await self.tickets.get_ticket(item.ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {item.ticket_id} not found")

        token_id = ticket.token_id
        if not ticket.is_ledger_linked or token_id is None:
            await self.queue.mark_completed(item.id, processed_at=_utcnow(), message=NO_LEDGER_DATA_MESSAGE)
            await self._update_audit(item, LedgerStatus.NOT_APPLICABLE)
            return WorkerItemResult(
                item_id=item.id, ticket_id=item.ticket_id, outcome="not_applicable", message=NO_LEDGER_DATA_MESSAGE
            )

        if await self.ledger.is_revoked(token_id):
            await self.queue.mark_completed(item.id, processed_at=_utcnow(), message=ALREADY_REVOKED_MESSAGE)
            await self._update_audit(item, LedgerStatus.COMPLETED)
            await self.tickets.record_ledger_revocation(
                ticket.ticket_id, tx_hash=None, status_code=int(LedgerStatusCode.REVOKED)
            )
            return WorkerItemResult(
                item_id=item.id, ticket_id=item.ticket_id, outcome="already_revoked", message=ALREADY_REVOKED_MESSAGE
            )

        logger.info("Revoking token %s for ticket %s", token_id, ticket.ticket_id)
        try:
            receipt = await self.ledger.revoke(token_id)
        except Exception:
            self.metrics.counter(LEDGER_TRANSACTIONS_TOTAL).inc(labels={"result": "failure"})
            raise
        self.metrics.counter(LEDGER_TRANSACTIONS_TOTAL).inc(labels={"result": "success"})
        logger.info("Transaction confirmed: %s", receipt.tx_hash, extra={"ticket_id": ticket.ticket_id})

        # The transaction is final from here on; bookkeeping errors must not trigger a resubmit.
        try:
            await self._record_confirmed(item, receipt.tx_hash)
        except Exception as exc:
            logger.exception(
                "Revocation of ticket %s confirmed in %s but the outcome could not be recorded",
                ticket.ticket_id,
                receipt.tx_hash,
                extra={"queue_item_id": item.id},
            )
            return WorkerItemResult(
                item_id=item.id,
                ticket_id=item.ticket_id,
                outcome="unrecorded",
                message=f"Revocation confirmed in {receipt.tx_hash} but outcome could not be recorded: {exc}",
                tx_hash=receipt.tx_hash,
                retry_count=item.retry_count,
            )
        return WorkerItemResult(
            item_id=item.id, ticket_id=item.ticket_id, outcome="completed", tx_hash=receipt.tx_hash
        )

    async def _record_confirmed(self, item: QueueItem, tx_hash: str) -> None:
        await self.queue.mark_completed(item.id, processed_at=_utcnow(), message=f"Confirmed in {tx_hash}")
        await self._update_audit(item, LedgerStatus.COMPLETED, tx_hash=tx_hash)
        await self.tickets.record_ledger_revocation(
            item.ticket_id, tx_hash=tx_hash, status_code=int(LedgerStatusCode.REVOKED)
        )

    async def _record_failure(self, item: QueueItem, exc: Exception) -> WorkerItemResult:
        status, attempts = QueueStateMachine.after_failure(item.retry_count, max_retries=self.max_retries)
        await self.queue.record_failure(
            item.id,
            status=status,
            retry_count=attempts,
            error=str(exc),
            processed_at=_utcnow(),
        )
        if status is QueueStatus.FAILED:
            logger.error(
                "Queue item %s failed permanently after %d attempts",
                item.id,
                attempts,
                extra={"ticket_id": item.ticket_id, "error": str(exc)},
            )
            await self._update_audit(item, LedgerStatus.FAILED, error=str(exc))
            outcome = "failed"
        else:
            outcome = "retry"
        return WorkerItemResult(
            item_id=item.id, ticket_id=item.ticket_id, outcome=outcome, message=str(exc), retry_count=attempts
        )

    async def _update_audit(
        self,
        item: QueueItem,
        ledger_status: LedgerStatus,
        *,
        tx_hash: str | None = None,
        error: str | None = None,
    ) -> None:
        if item.audit_entry_id is None:
            logger.warning("Queue item %s has no audit entry to update", item.id)
            return
        await self.audit_log.update_ledger_status(item.audit_entry_id, ledger_status, tx_hash=tx_hash, error=error)


async def run_worker_loop(
    worker: RevocationWorker,
    *,
    interval: float = 60.0,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Run ``worker.process_batch`` forever on a fixed interval until ``stop_event`` is set."""

    logger.info("Starting blockchain revocation worker", extra={"interval_seconds": interval})
    while stop_event is None or not stop_event.is_set():
        try:
            await worker.process_batch()
        except Exception:
            logger.exception("Revocation worker run failed")

        if stop_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    logger.info("Revocation worker stopped")
