from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ticketledger.api.responses import Envelope, success
from ticketledger.dependencies.auth import AdminUser, AuthenticatedUser, Role
from ticketledger.dependencies.services import get_revocation_service
from ticketledger.tickets.models import RevocationAuditEntry, Ticket
from ticketledger.tickets.service import (
    RevocationService,
    RevocationServiceError,
    TicketAlreadyRevokedError,
    TicketNotFoundError,
)
from ticketledger.tickets.state import LedgerStatus, MintStatus, TicketStatus

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


class RevokeTicketRequest(BaseModel):
    ticket_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    status: TicketStatus
    payment_id: str | None
    user_id: str | None
    event_id: str | None
    parent_ticket_id: str | None
    is_parent_ticket: bool
    group_size: int
    contract_address: str | None
    token_id: str | None
    ledger_registered: bool
    mint_status: MintStatus
    ledger_tx_hash: str | None
    last_synced_at: datetime | None
    sync_status_code: int | None
    purchase_date: datetime | None

    @field_validator("token_id", mode="before")
    @classmethod
    def _token_id_as_string(cls, value: Any) -> Any:
        # uint256 does not fit a JSON number
        return None if value is None else str(value)


class RevocationEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: str
    actor: str
    reason: str
    revoked_at: datetime
    ledger_status: LedgerStatus
    ledger_tx_hash: str | None
    ledger_error: str | None


RevocationServiceDep = Annotated[RevocationService, Depends(get_revocation_service)]


def ticket_payload(ticket: Ticket) -> dict[str, Any]:
    return TicketResponse.model_validate(ticket).model_dump(mode="json")


def _entry_payload(entry: RevocationAuditEntry) -> dict[str, Any]:
    return RevocationEntryResponse.model_validate(entry).model_dump(mode="json")


def http_error_for(exc: RevocationServiceError) -> HTTPException:
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TicketAlreadyRevokedError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.get("/{ticket_id}", response_model=Envelope)
async def get_ticket(ticket_id: str, service: RevocationServiceDep, user: AuthenticatedUser) -> Envelope:
    try:
        ticket = await service.get_ticket(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Ticket not found") from exc
    if not user.has_role(Role.ADMIN) and ticket.user_id != user.user_id:
        raise HTTPException(status_code=403, detail="Access denied")

    history = await service.get_revocation_history(ticket_id)
    return success(
        "Ticket retrieved successfully",
        {"ticket": ticket_payload(ticket), "revocation_history": [_entry_payload(entry) for entry in history]},
    )


@router.post("/revoke", response_model=Envelope)
async def revoke_ticket(payload: RevokeTicketRequest, service: RevocationServiceDep, user: AdminUser) -> Envelope:
    try:
        summary = await service.revoke_ticket(payload.ticket_id, reason=payload.reason, actor=user.user_id)
    except RevocationServiceError as exc:
        raise http_error_for(exc) from exc
    return success("Ticket revoked successfully", summary.to_payload(), warnings=summary.warnings)
