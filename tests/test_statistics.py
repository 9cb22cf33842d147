import pytest

from ticketledger.reconciliation.stats import LedgerStatisticsService
from ticketledger.tickets.repository import LedgerStatistics

from .fakes import InMemoryQueue


class StubTicketRepository:
    async def ledger_statistics(self, *, recent_since):
        return LedgerStatistics(
            total_tickets=40,
            total_with_token_id=20,
            registered_count=12,
            revoked_count=4,
            failed_count=1,
            recently_synced=10,
            never_synced=5,
        )


@pytest.mark.asyncio
async def test_collect_reports_percentages_and_queue():
    queue = InMemoryQueue()
    await queue.enqueue(ticket_id="T1", audit_entry_id=1)

    stats = await LedgerStatisticsService(tickets=StubTicketRepository(), queue=queue).collect()

    assert stats["pending_count"] == 3
    assert stats["blockchain_coverage_percentage"] == 50.0
    assert stats["registered_percentage"] == 60.0
    assert stats["pending_percentage"] == 15.0
    assert stats["revocation_queue"] == {"pending": 1, "processing": 0, "completed": 0, "failed": 0}
