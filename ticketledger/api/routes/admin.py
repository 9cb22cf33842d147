from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ticketledger.api.responses import Envelope, success
from ticketledger.api.routes.tickets import http_error_for, ticket_payload
from ticketledger.core.config import Settings, get_settings
from ticketledger.dependencies.auth import AdminUser
from ticketledger.dependencies.services import (
    get_bot_scanner,
    get_ledger_client,
    get_queue_repository,
    get_reconciler,
    get_revocation_service,
    get_statistics_service,
    get_ticket_repository,
    get_verifier,
)
from ticketledger.ledger.client import LedgerClient
from ticketledger.purchases.service import BOT_REVOCATION_REASON, BotActivityScanner
from ticketledger.reconciliation.queue import RevocationQueueRepository
from ticketledger.reconciliation.stats import LedgerStatisticsService
from ticketledger.reconciliation.sync import StateReconciler
from ticketledger.reconciliation.verify import StateVerifier
from ticketledger.tickets.repository import TicketRepository
from ticketledger.tickets.service import RevocationService, RevocationServiceError
from ticketledger.tickets.state import LedgerTicketFilter, QueueStatus, VerificationMode

router = APIRouter(prefix="/api/admin", tags=["admin"])


class RevokeFlaggedRequest(BaseModel):
    purchase_ids: list[int] = Field(..., min_length=1)
    reason: str = Field(default=BOT_REVOCATION_REASON, min_length=1, max_length=500)


class SyncRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)
    force_resync: bool = False


class VerifyRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)
    verification_type: VerificationMode = VerificationMode.ALL
    include_detailed_report: bool = True
    check_contract_state: bool = True


class BotScanRequest(BaseModel):
    event_id: str | None = None
    time_window_minutes: int = Field(default=5, ge=1, le=1440)
    auto_revoke: bool = False


SettingsDep = Annotated[Settings, Depends(get_settings)]


@router.post("/revoke-flagged-tickets", response_model=Envelope)
async def revoke_flagged_tickets(
    payload: RevokeFlaggedRequest,
    service: Annotated[RevocationService, Depends(get_revocation_service)],
    user: AdminUser,
) -> Envelope:
    try:
        summary = await service.revoke_purchases(payload.purchase_ids, reason=payload.reason, actor=user.user_id)
    except RevocationServiceError as exc:
        raise http_error_for(exc) from exc
    return success(
        f"Successfully revoked {len(summary.records)} tickets from {summary.revoked_purchases_count} flagged purchases",
        summary.to_payload(),
        warnings=summary.warnings,
    )


@router.post("/sync-blockchain-state", response_model=Envelope)
async def sync_blockchain_state(
    reconciler: Annotated[StateReconciler, Depends(get_reconciler)],
    settings: SettingsDep,
    _: AdminUser,
    payload: SyncRequest | None = None,
) -> Envelope:
    payload = payload or SyncRequest()
    report = await reconciler.sync(
        limit=payload.limit or settings.sync_default_limit, force_resync=payload.force_resync
    )
    data = report.to_payload()
    data["last_sync"] = datetime.now(timezone.utc).isoformat()
    return success(f"Blockchain sync completed successfully. Updated {report.updated_count} tickets.", data)


@router.post("/verify-all-tokens", response_model=Envelope)
async def verify_all_tokens(
    verifier: Annotated[StateVerifier, Depends(get_verifier)],
    settings: SettingsDep,
    _: AdminUser,
    payload: VerifyRequest | None = None,
) -> Envelope:
    payload = payload or VerifyRequest()
    report = await verifier.verify(
        limit=payload.limit or settings.verify_default_limit,
        mode=payload.verification_type,
        include_detailed_report=payload.include_detailed_report,
        check_contract_state=payload.check_contract_state,
    )
    return success(f"Token verification completed. Checked {report.total_checked} tokens.", report.to_payload())


@router.get("/check-blockchain-connection", response_model=Envelope)
async def check_blockchain_connection(
    ledger: Annotated[LedgerClient, Depends(get_ledger_client)],
    _: AdminUser,
) -> Envelope | JSONResponse:
    result = await ledger.check_connection()
    result["last_check"] = datetime.now(timezone.utc).isoformat()
    if result["connection_status"] != "connected":
        body = Envelope(status="error", message="Blockchain connection failed", data=result)
        return JSONResponse(status_code=500, content=body.model_dump(mode="json", exclude_none=True))
    return success("Blockchain connection verified successfully", result)


@router.get("/blockchain-stats", response_model=Envelope)
async def blockchain_stats(
    statistics: Annotated[LedgerStatisticsService, Depends(get_statistics_service)],
    _: AdminUser,
) -> Envelope:
    return success("Blockchain statistics retrieved successfully", await statistics.collect())


@router.get("/blockchain-tickets", response_model=Envelope)
async def blockchain_tickets(
    tickets: Annotated[TicketRepository, Depends(get_ticket_repository)],
    _: AdminUser,
    status_filter: LedgerTicketFilter | None = Query(default=None, alias="status"),
    token_search: str | None = Query(default=None, max_length=78),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
) -> Envelope:
    items, total = await tickets.list_ledger_tickets(
        status=status_filter, search=token_search, limit=limit, offset=(page - 1) * limit
    )
    total_pages = math.ceil(total / limit)
    return success(
        f"Retrieved {len(items)} blockchain tickets",
        {
            "tickets": [ticket_payload(ticket) for ticket in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1,
            },
        },
    )


@router.get("/revocation-queue", response_model=Envelope)
async def revocation_queue(
    queue: Annotated[RevocationQueueRepository, Depends(get_queue_repository)],
    _: AdminUser,
    status_filter: QueueStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> Envelope:
    items = await queue.list_items(status=status_filter, limit=limit, offset=offset)
    counts = await queue.count_by_status()
    return success(
        "Revocation queue retrieved successfully",
        {
            "items": [
                {
                    "id": item.id,
                    "ticket_id": item.ticket_id,
                    "audit_entry_id": item.audit_entry_id,
                    "status": item.status.value,
                    "retry_count": item.retry_count,
                    "created_at": item.created_at,
                    "processed_at": item.processed_at,
                    "error_message": item.error_message,
                }
                for item in items
            ],
            "counts": {status.value: count for status, count in counts.items()},
            "pagination": {"limit": limit, "offset": offset},
        },
    )


@router.post("/scan-bot-activity", response_model=Envelope)
async def scan_bot_activity(
    scanner: Annotated[BotActivityScanner, Depends(get_bot_scanner)],
    _: AdminUser,
    payload: BotScanRequest | None = None,
) -> Envelope:
    payload = payload or BotScanRequest()
    result = await scanner.scan(
        time_window_minutes=payload.time_window_minutes,
        event_id=payload.event_id,
        auto_revoke=payload.auto_revoke,
    )
    warnings = list(result.warnings)
    if result.revocation is not None:
        warnings.extend(result.revocation.warnings)
    return success(
        f"Scan completed. Found {len(result.flagged)} suspicious users", result.to_payload(), warnings=warnings
    )


@router.get("/flagged-activities", response_model=Envelope)
async def flagged_activities(
    scanner: Annotated[BotActivityScanner, Depends(get_bot_scanner)],
    _: AdminUser,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    event_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
) -> Envelope:
    result = await scanner.list_flagged(page=page, limit=limit, event_id=event_id, user_id=user_id)
    return success(
        "Flagged activities retrieved successfully",
        {
            "activities": [
                {
                    "id": purchase.id,
                    "user_id": purchase.user_id,
                    "event_id": purchase.event_id,
                    "payment_id": purchase.payment_id,
                    "quantity": purchase.quantity,
                    "status": purchase.status.value,
                    "flag": purchase.flag,
                    "purchase_timestamp": purchase.purchase_timestamp,
                }
                for purchase in result.items
            ],
            "pagination": {
                "total": result.total,
                "page": result.page,
                "limit": result.limit,
                "total_pages": result.total_pages,
                "has_next_page": result.has_next_page,
                "has_prev_page": result.has_prev_page,
            },
        },
    )
