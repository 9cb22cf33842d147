from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Sequence

from opentelemetry import trace

from ticketledger.ledger.client import LedgerGateway
from ticketledger.metrics import MetricsRegistry, metrics_registry
from ticketledger.metrics.definitions import VERIFICATION_ERRORS_TOTAL, VERIFICATION_INCONSISTENCIES_TOTAL
from ticketledger.tickets.models import Ticket
from ticketledger.tickets.repository import TicketRepository
from ticketledger.tickets.state import LedgerStatusCode, TicketStatus, VerificationMode

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYNC_RECOMMENDATION = "Run blockchain sync to fix inconsistencies"


def find_inconsistencies(ticket: Ticket, code: int, is_revoked: bool) -> list[str]:
    """Compare local ticket fields with the ledger's answer and describe each mismatch."""

    reasons: list[str] = []
    if code == LedgerStatusCode.UNREGISTERED and ticket.ledger_registered:
        reasons.append("Token marked as registered in DB but unregistered on blockchain")
    if code == LedgerStatusCode.REGISTERED and ticket.status is not TicketStatus.VALID:
        reasons.append("Token registered on blockchain but not marked as valid in DB")
    if code == LedgerStatusCode.REVOKED and ticket.status is not TicketStatus.REVOKED:
        reasons.append("Token revoked on blockchain but not marked as revoked in DB")
    if is_revoked and ticket.status is TicketStatus.VALID:
        reasons.append("Token is revoked on blockchain but marked as valid in DB")
    if not ticket.ledger_registered and code > 0:
        reasons.append("Token exists on blockchain but not marked as registered in DB")
    return reasons


@dataclass(slots=True)
class TokenVerification:
    ticket_id: str
    token_id: int | None
    db_status: TicketStatus
    db_registered: bool
    db_mint_status: str
    ledger_status_code: int | None = None
    ledger_is_revoked: bool | None = None
    verification_status: str = "verified"
    inconsistencies: list[str] = field(default_factory=list)
    error: str | None = None
    verification_time_ms: int = 0

    @property
    def has_inconsistency(self) -> bool:
        return bool(self.inconsistencies)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ticket_id": self.ticket_id,
            "token_id": None if self.token_id is None else str(self.token_id),
            "db_ticket_status": self.db_status.value,
            "db_blockchain_registered": self.db_registered,
            "db_mint_status": self.db_mint_status,
            "verification_status": self.verification_status,
            "has_inconsistency": self.has_inconsistency,
            "inconsistency_reason": "; ".join(self.inconsistencies) or None,
            "recommended_action": SYNC_RECOMMENDATION if self.has_inconsistency else None,
            "verification_time_ms": self.verification_time_ms,
        }
        if self.ledger_status_code is not None:
            payload["blockchain_status"] = self.ledger_status_code
            payload["blockchain_status_text"] = LedgerStatusCode.describe(self.ledger_status_code)
            payload["blockchain_is_revoked"] = self.ledger_is_revoked
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _percentage(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


@dataclass(slots=True)
class VerificationReport:
    total_checked: int = 0
    valid_tokens: int = 0
    revoked_tokens: int = 0
    unregistered_tokens: int = 0
    unknown_tokens: int = 0
    inconsistencies_found: int = 0
    verification_errors: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0
    contract_info: dict[str, Any] | None = None
    details: list[TokenVerification] = field(default_factory=list)
    include_details: bool = True

    @property
    def invalid_tokens(self) -> int:
        return self.unknown_tokens + len(self.verification_errors)

    def summary_stats(self) -> dict[str, Any]:
        timings = [item.verification_time_ms for item in self.details if item.verification_status == "verified"]
        return {
            "total_tokens": self.total_checked,
            "valid_percentage": _percentage(self.valid_tokens, self.total_checked),
            "revoked_percentage": _percentage(self.revoked_tokens, self.total_checked),
            "unregistered_percentage": _percentage(self.unregistered_tokens, self.total_checked),
            "inconsistency_percentage": _percentage(self.inconsistencies_found, self.total_checked),
            "verification_errors": len(self.verification_errors),
            "average_verification_time_ms": round(sum(timings) / len(timings), 2) if timings else 0.0,
        }

    def to_payload(self) -> dict[str, Any]:
        return {
            "total_checked": self.total_checked,
            "valid_tokens": self.valid_tokens,
            "invalid_tokens": self.invalid_tokens,
            "revoked_tokens": self.revoked_tokens,
            "unregistered_tokens": self.unregistered_tokens,
            "inconsistencies_found": self.inconsistencies_found,
            "verification_duration_ms": self.duration_ms,
            "contract_info": self.contract_info,
            "verification_report": [item.to_payload() for item in self.details] if self.include_details else None,
            "summary_stats": self.summary_stats(),
            "verification_errors": self.verification_errors,
        }


@dataclass(slots=True)
class StateVerifier:
    """Read-only comparison of local ticket state against the ledger."""

    tickets: TicketRepository
    ledger: LedgerGateway
    batch_size: int = 10
    batch_delay: float = 1.0
    metrics: MetricsRegistry = field(default_factory=lambda: metrics_registry)

    async def verify(
        self,
        *,
        limit: int = 200,
        mode: VerificationMode = VerificationMode.ALL,
        include_detailed_report: bool = True,
        check_contract_state: bool = True,
    ) -> VerificationReport:
        started = perf_counter()
        report = VerificationReport(include_details=include_detailed_report)

        with tracer.start_as_current_span("state_verifier.verify") as span:
            span.set_attribute("verify.limit", limit)
            span.set_attribute("verify.mode", mode.value)

            if check_contract_state:
                try:
                    report.contract_info = await self.ledger.contract_info()
                except Exception as exc:
                    logger.warning("Could not fetch contract information", exc_info=True)
                    report.contract_info = {"error": str(exc)}

            tickets = await self.tickets.list_for_verification(limit=limit, mode=mode)
            report.total_checked = len(tickets)
            logger.info("Verifying %d tokens", len(tickets), extra={"mode": mode.value})

            batches = [tickets[i : i + self.batch_size] for i in range(0, len(tickets), self.batch_size)]
            for number, batch in enumerate(batches, start=1):
                logger.debug("Processing verification batch %d/%d", number, len(batches))
                results = await asyncio.gather(*(self._verify_ticket(ticket) for ticket in batch))
                self._tally(report, results)
                if number < len(batches) and self.batch_delay > 0:
                    await asyncio.sleep(self.batch_delay)

            report.duration_ms = round((perf_counter() - started) * 1000)
            span.set_attribute("verify.inconsistencies", report.inconsistencies_found)
            span.set_attribute("verify.errors", len(report.verification_errors))

        logger.info(
            "Token verification finished",
            extra={
                "total_checked": report.total_checked,
                "inconsistencies": report.inconsistencies_found,
                "errors": len(report.verification_errors),
                "duration_ms": report.duration_ms,
            },
        )
        return report

    def _tally(self, report: VerificationReport, results: Sequence[TokenVerification]) -> None:
        for result in results:
            report.details.append(result)
            if result.verification_status == "failed":
                report.verification_errors.append(
                    {
                        "ticket_id": result.ticket_id,
                        "token_id": None if result.token_id is None else str(result.token_id),
                        "error": result.error,
                    }
                )
                self.metrics.counter(VERIFICATION_ERRORS_TOTAL).inc()
                continue

            code = result.ledger_status_code
            if code == LedgerStatusCode.UNREGISTERED:
                report.unregistered_tokens += 1
            elif code == LedgerStatusCode.REGISTERED:
                report.valid_tokens += 1
            elif code == LedgerStatusCode.REVOKED:
                report.revoked_tokens += 1
            else:
                report.unknown_tokens += 1

            if result.has_inconsistency:
                report.inconsistencies_found += 1
                self.metrics.counter(VERIFICATION_INCONSISTENCIES_TOTAL).inc()

    async def _verify_ticket(self, ticket: Ticket) -> TokenVerification:
        result = TokenVerification(
            ticket_id=ticket.ticket_id,
            token_id=ticket.token_id,
            db_status=ticket.status,
            db_registered=ticket.ledger_registered,
            db_mint_status=ticket.mint_status.value,
        )
        started = perf_counter()
        try:
            if ticket.token_id is None:
                raise ValueError(f"Ticket {ticket.ticket_id} has no token id")
            code, is_revoked = await asyncio.gather(
                self.ledger.get_status(ticket.token_id), self.ledger.is_revoked(ticket.token_id)
            )
        except Exception as exc:
            logger.warning(
                "Verification failed for ticket %s", ticket.ticket_id, exc_info=True, extra={"token_id": ticket.token_id}
            )
            result.verification_status = "failed"
            result.error = str(exc)
            return result

        result.verification_time_ms = round((perf_counter() - started) * 1000)
        result.ledger_status_code = int(code)
        result.ledger_is_revoked = bool(is_revoked)
        result.inconsistencies = find_inconsistencies(ticket, result.ledger_status_code, result.ledger_is_revoked)
        if result.has_inconsistency:
            logger.info(
                "Inconsistency detected for ticket %s: %s", ticket.ticket_id, "; ".join(result.inconsistencies)
            )
        return result
