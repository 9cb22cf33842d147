from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ticketledger.tickets.repository import TicketRepository

from .queue import RevocationQueueRepository


def _percentage(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


@dataclass(slots=True)
class LedgerStatisticsService:
    """Counts over ledger-linked tickets plus the revocation queue backlog."""

    tickets: TicketRepository
    queue: RevocationQueueRepository
    recent_window: timedelta = timedelta(hours=24)

    async def collect(self) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        stats = await self.tickets.ledger_statistics(recent_since=now - self.recent_window)
        queue_counts = await self.queue.count_by_status()
        linked = stats.total_with_token_id
        return {
            "registered_count": stats.registered_count,
            "revoked_count": stats.revoked_count,
            "pending_count": stats.pending_count,
            "failed_count": stats.failed_count,
            "total_with_token_id": linked,
            "total_tickets": stats.total_tickets,
            "blockchain_coverage_percentage": _percentage(linked, stats.total_tickets),
            "recently_synced": stats.recently_synced,
            "never_synced": stats.never_synced,
            "registered_percentage": _percentage(stats.registered_count, linked),
            "revoked_percentage": _percentage(stats.revoked_count, linked),
            "pending_percentage": _percentage(stats.pending_count, linked),
            "failed_percentage": _percentage(stats.failed_count, linked),
            "revocation_queue": {status.value: count for status, count in queue_counts.items()},
            "generated_at": now.isoformat(),
        }
