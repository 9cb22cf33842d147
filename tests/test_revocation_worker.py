import asyncio
from unittest.mock import AsyncMock

import pytest

from ticketledger.metrics import MetricsRegistry, register_default_metrics
from ticketledger.metrics.definitions import LEDGER_TRANSACTIONS_TOTAL, QUEUE_ITEMS_TOTAL
from ticketledger.reconciliation.worker import (
    ALREADY_REVOKED_MESSAGE,
    NO_LEDGER_DATA_MESSAGE,
    RevocationWorker,
    run_worker_loop,
)
from ticketledger.tickets.state import LedgerStatus, LedgerStatusCode, QueueStatus, TicketStatus

from .fakes import (
    FakeLedger,
    InMemoryQueue,
    InMemoryRevocationLog,
    InMemoryTicketRepository,
    make_ticket,
)


@pytest.fixture
def registry():
    return register_default_metrics(MetricsRegistry())


async def _queue_revocation(tickets, audit_log, queue, ticket):
    tickets.add(ticket)
    ledger_status = LedgerStatus.PENDING if ticket.is_ledger_linked else LedgerStatus.NOT_APPLICABLE
    entry = await audit_log.create_entry(
        ticket_id=ticket.ticket_id, actor="admin-1", reason="fraud", ledger_status=ledger_status
    )
    return await queue.enqueue(ticket_id=ticket.ticket_id, audit_entry_id=entry.id)


def _worker(tickets, audit_log, queue, ledger, registry, **kwargs):
    return RevocationWorker(
        queue=queue, tickets=tickets, audit_log=audit_log, ledger=ledger, metrics=registry, **kwargs
    )


@pytest.mark.asyncio
async def test_linked_ticket_is_revoked_on_ledger(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger({42: LedgerStatusCode.REGISTERED})
    item = await _queue_revocation(
        tickets, audit_log, queue, make_ticket("T1", status=TicketStatus.REVOKED, token_id=42)
    )

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert result.fetched == 1
    assert result.items[0].outcome == "completed"
    assert ledger.revoke_calls == [42]
    assert queue.items[item.id].status is QueueStatus.COMPLETED
    entry = audit_log.entries[item.audit_entry_id]
    assert entry.ledger_status is LedgerStatus.COMPLETED
    assert entry.ledger_tx_hash == result.items[0].tx_hash
    assert tickets.tickets["T1"].sync_status_code == LedgerStatusCode.REVOKED
    assert tickets.tickets["T1"].ledger_tx_hash == result.items[0].tx_hash
    assert registry.counter(QUEUE_ITEMS_TOTAL).value(labels={"outcome": "completed"}) == 1
    assert registry.counter(LEDGER_TRANSACTIONS_TOTAL).value(labels={"result": "success"}) == 1


@pytest.mark.asyncio
async def test_confirmed_revocation_is_not_resubmitted_when_recording_fails(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger({42: LedgerStatusCode.REGISTERED})
    item = await _queue_revocation(
        tickets, audit_log, queue, make_ticket("T1", status=TicketStatus.REVOKED, token_id=42)
    )
    audit_log.update_ledger_status = AsyncMock(side_effect=RuntimeError("connection reset"))

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    outcome = result.items[0]
    assert outcome.outcome == "unrecorded"
    assert outcome.tx_hash is not None
    assert outcome.tx_hash in outcome.message
    assert ledger.revoke_calls == [42]
    assert queue.items[item.id].retry_count == 0
    assert queue.items[item.id].status is not QueueStatus.PENDING
    assert audit_log.entries[item.audit_entry_id].ledger_status is LedgerStatus.PENDING
    assert registry.counter(LEDGER_TRANSACTIONS_TOTAL).value(labels={"result": "success"}) == 1

    await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert ledger.revoke_calls == [42]


@pytest.mark.asyncio
async def test_unlinked_ticket_completes_without_ledger_call(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger()
    item = await _queue_revocation(tickets, audit_log, queue, make_ticket("T2", status=TicketStatus.REVOKED))

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert result.items[0].outcome == "not_applicable"
    assert ledger.revoke_calls == []
    assert queue.items[item.id].status is QueueStatus.COMPLETED
    assert queue.items[item.id].error_message == NO_LEDGER_DATA_MESSAGE
    assert audit_log.entries[item.audit_entry_id].ledger_status is LedgerStatus.NOT_APPLICABLE


@pytest.mark.asyncio
async def test_token_already_revoked_skips_transaction(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger({7: LedgerStatusCode.REVOKED})
    item = await _queue_revocation(tickets, audit_log, queue, make_ticket("T3", status=TicketStatus.REVOKED, token_id=7))

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert result.items[0].outcome == "already_revoked"
    assert ledger.revoke_calls == []
    assert queue.items[item.id].status is QueueStatus.COMPLETED
    assert queue.items[item.id].error_message == ALREADY_REVOKED_MESSAGE
    assert audit_log.entries[item.audit_entry_id].ledger_status is LedgerStatus.COMPLETED


@pytest.mark.asyncio
async def test_failing_item_is_retried_until_ceiling(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger({9: LedgerStatusCode.REGISTERED})
    ledger.revoke_error = RuntimeError("execution reverted")
    item = await _queue_revocation(tickets, audit_log, queue, make_ticket("T4", status=TicketStatus.REVOKED, token_id=9))
    worker = _worker(tickets, audit_log, queue, ledger, registry)

    first = await worker.process_batch()
    assert first.items[0].outcome == "retry"
    assert queue.items[item.id].status is QueueStatus.PENDING
    assert queue.items[item.id].retry_count == 1

    second = await worker.process_batch()
    assert second.items[0].outcome == "retry"
    assert queue.items[item.id].retry_count == 2
    assert audit_log.entries[item.audit_entry_id].ledger_status is LedgerStatus.PENDING

    third = await worker.process_batch()
    assert third.items[0].outcome == "failed"
    assert queue.items[item.id].status is QueueStatus.FAILED
    assert queue.items[item.id].retry_count == 3
    assert queue.items[item.id].error_message == "execution reverted"
    entry = audit_log.entries[item.audit_entry_id]
    assert entry.ledger_status is LedgerStatus.FAILED
    assert entry.ledger_error == "execution reverted"

    fourth = await worker.process_batch()
    assert fourth.fetched == 0
    assert len(ledger.revoke_calls) == 3
    assert registry.counter(LEDGER_TRANSACTIONS_TOTAL).value(labels={"result": "failure"}) == 3


@pytest.mark.asyncio
async def test_item_at_ceiling_fails_without_another_attempt(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger({5: LedgerStatusCode.REGISTERED})
    item = await _queue_revocation(tickets, audit_log, queue, make_ticket("T5", status=TicketStatus.REVOKED, token_id=5))
    queue.items[item.id].retry_count = 3

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert result.items[0].outcome == "failed"
    assert ledger.revoke_calls == []
    assert queue.items[item.id].status is QueueStatus.FAILED
    assert queue.items[item.id].retry_count == 3


@pytest.mark.asyncio
async def test_batch_takes_oldest_pending_items_first(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger()
    for index in range(12):
        await _queue_revocation(tickets, audit_log, queue, make_ticket(f"T{index:02d}", status=TicketStatus.REVOKED))

    result = await _worker(tickets, audit_log, queue, ledger, registry, batch_size=10).process_batch()

    assert result.fetched == 10
    assert [item.ticket_id for item in result.items] == [f"T{index:02d}" for index in range(10)]
    remaining = await queue.list_pending(10)
    assert [item.ticket_id for item in remaining] == ["T10", "T11"]


@pytest.mark.asyncio
async def test_item_claimed_elsewhere_is_skipped(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger({3: LedgerStatusCode.REGISTERED})
    await _queue_revocation(tickets, audit_log, queue, make_ticket("T6", status=TicketStatus.REVOKED, token_id=3))
    queue.claim = AsyncMock(return_value=None)

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert result.items[0].outcome == "skipped"
    assert ledger.revoke_calls == []


@pytest.mark.asyncio
async def test_unrecordable_outcome_does_not_stop_the_batch(registry):
    tickets, audit_log, queue = InMemoryTicketRepository(), InMemoryRevocationLog(), InMemoryQueue()
    ledger = FakeLedger()
    first = await _queue_revocation(tickets, audit_log, queue, make_ticket("A", status=TicketStatus.REVOKED))
    second = await _queue_revocation(tickets, audit_log, queue, make_ticket("B", status=TicketStatus.REVOKED))

    original_mark_completed = queue.mark_completed

    async def flaky_mark_completed(item_id, **kwargs):
        if item_id == first.id:
            raise RuntimeError("connection reset")
        await original_mark_completed(item_id, **kwargs)

    queue.mark_completed = flaky_mark_completed
    queue.record_failure = AsyncMock(side_effect=RuntimeError("connection reset"))

    result = await _worker(tickets, audit_log, queue, ledger, registry).process_batch()

    assert [item.outcome for item in result.items] == ["error", "not_applicable"]
    assert queue.items[first.id].status is QueueStatus.PROCESSING
    assert queue.items[second.id].status is QueueStatus.COMPLETED


@pytest.mark.asyncio
async def test_worker_loop_survives_failed_runs():
    stop = asyncio.Event()
    calls = []

    async def process_batch():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        stop.set()

    worker = AsyncMock()
    worker.process_batch = process_batch

    await asyncio.wait_for(run_worker_loop(worker, interval=0, stop_event=stop), timeout=5)

    assert len(calls) == 2
