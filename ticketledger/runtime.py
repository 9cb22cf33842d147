"""Construction of the service object graph from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from ticketledger.core.config import Settings
from ticketledger.ledger.client import LedgerClient
from ticketledger.purchases.repository import PurchaseRepository
from ticketledger.purchases.service import BotActivityScanner
from ticketledger.reconciliation.queue import RevocationQueueRepository
from ticketledger.reconciliation.stats import LedgerStatisticsService
from ticketledger.reconciliation.sync import StateReconciler
from ticketledger.reconciliation.verify import StateVerifier
from ticketledger.reconciliation.worker import RevocationWorker
from ticketledger.services.postgres import PostgresPoolManager
from ticketledger.tickets.repository import RevocationLogRepository, TicketRepository
from ticketledger.tickets.service import RevocationService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    pool_manager: PostgresPoolManager
    tickets: TicketRepository
    audit_log: RevocationLogRepository
    queue: RevocationQueueRepository
    purchases: PurchaseRepository
    revocation_service: RevocationService
    bot_scanner: BotActivityScanner
    statistics: LedgerStatisticsService
    ledger: LedgerClient | None = None
    worker: RevocationWorker | None = None
    reconciler: StateReconciler | None = None
    verifier: StateVerifier | None = None

    async def close(self) -> None:
        await self.pool_manager.close()


async def build_runtime(settings: Settings, *, ensure_schema: bool = True) -> Runtime:
    """Open the database pool and wire repositories, services and ledger jobs together."""

    pool_manager = PostgresPoolManager(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    pool = await pool_manager.get_pool()

    tickets = TicketRepository(pool)
    audit_log = RevocationLogRepository(pool)
    queue = RevocationQueueRepository(pool)
    purchases = PurchaseRepository(pool)
    if ensure_schema:
        # Foreign keys require this order.
        await tickets.ensure_schema()
        await audit_log.ensure_schema()
        await queue.ensure_schema()
        await purchases.ensure_schema()

    revocation_service = RevocationService(tickets=tickets, audit_log=audit_log, queue=queue, purchases=purchases)
    runtime = Runtime(
        settings=settings,
        pool_manager=pool_manager,
        tickets=tickets,
        audit_log=audit_log,
        queue=queue,
        purchases=purchases,
        revocation_service=revocation_service,
        bot_scanner=BotActivityScanner(purchases=purchases, revocations=revocation_service),
        statistics=LedgerStatisticsService(tickets=tickets, queue=queue),
    )

    if not settings.ledger_enabled:
        logger.warning("Ledger is not configured; worker, sync and verification are disabled")
        return runtime

    ledger = LedgerClient.from_settings(settings)
    runtime.ledger = ledger
    runtime.worker = RevocationWorker(
        queue=queue,
        tickets=tickets,
        audit_log=audit_log,
        ledger=ledger,
        batch_size=settings.worker_batch_size,
        max_retries=settings.worker_max_retries,
    )
    runtime.reconciler = StateReconciler(
        tickets=tickets,
        ledger=ledger,
        stale_after=timedelta(minutes=settings.sync_stale_after_minutes),
        request_delay=settings.sync_request_delay_seconds,
    )
    runtime.verifier = StateVerifier(
        tickets=tickets,
        ledger=ledger,
        batch_size=settings.verify_batch_size,
        batch_delay=settings.verify_batch_delay_seconds,
    )
    return runtime
