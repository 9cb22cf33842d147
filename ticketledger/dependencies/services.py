from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from ticketledger.ledger.client import LedgerClient
from ticketledger.purchases.service import BotActivityScanner
from ticketledger.reconciliation.queue import RevocationQueueRepository
from ticketledger.reconciliation.stats import LedgerStatisticsService
from ticketledger.reconciliation.sync import StateReconciler
from ticketledger.reconciliation.verify import StateVerifier
from ticketledger.services.postgres import PostgresPoolManager
from ticketledger.tickets.repository import TicketRepository
from ticketledger.tickets.service import RevocationService


def _from_state(request: Request, name: str, detail: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=detail)
    return service


async def get_revocation_service(request: Request) -> RevocationService:
    return _from_state(request, "revocation_service", "Revocation service is not configured")


async def get_ticket_repository(request: Request) -> TicketRepository:
    return _from_state(request, "ticket_repository", "Ticket repository is not configured")


async def get_bot_scanner(request: Request) -> BotActivityScanner:
    return _from_state(request, "bot_scanner", "Bot activity scanner is not configured")


async def get_queue_repository(request: Request) -> RevocationQueueRepository:
    return _from_state(request, "queue_repository", "Revocation queue is not configured")


async def get_statistics_service(request: Request) -> LedgerStatisticsService:
    return _from_state(request, "statistics_service", "Ledger statistics are not configured")


async def get_reconciler(request: Request) -> StateReconciler:
    return _from_state(request, "reconciler", "Blockchain sync is not configured")


async def get_verifier(request: Request) -> StateVerifier:
    return _from_state(request, "verifier", "Token verification is not configured")


async def get_ledger_client(request: Request) -> LedgerClient:
    return _from_state(request, "ledger_client", "Blockchain connection is not configured")


async def get_pool_manager(request: Request) -> PostgresPoolManager | None:
    return getattr(request.app.state, "pool_manager", None)
