from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from ticketledger.tickets.repository import RevocationLogRepository, TicketRepository
from ticketledger.tickets.state import LedgerStatus, LedgerTicketFilter, MintStatus, TicketStatus, VerificationMode


def _ticket_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "ticket_id": "T1",
        "status": "valid",
        "payment_id": "P1",
        "user_id": "user-1",
        "event_id": "event-1",
        "parent_ticket_id": None,
        "is_parent_ticket": False,
        "group_size": 1,
        "contract_address": "0xabc",
        "token_id": Decimal("115792089237316195423570985008687907853269984665640564039457584007913129639935"),
        "ledger_registered": True,
        "mint_status": "minted",
        "ledger_tx_hash": None,
        "last_synced_at": None,
        "sync_status_code": None,
        "purchase_date": now,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables(pool, connection):
    await TicketRepository(pool).ensure_schema()
    await RevocationLogRepository(pool).ensure_schema()

    assert connection.execute.await_count == 5
    executed = [call.args[0] for call in connection.execute.await_args_list]
    assert any("CREATE TABLE IF NOT EXISTS tickets" in stmt for stmt in executed)
    assert any("tickets_registered_requires_link" in stmt for stmt in executed)
    assert any("CREATE TABLE IF NOT EXISTS revocation_log" in stmt for stmt in executed)


@pytest.mark.asyncio
async def test_get_ticket_maps_numeric_token_id(pool, connection):
    connection.fetchrow = AsyncMock(return_value=_ticket_row())

    ticket = await TicketRepository(pool).get_ticket("T1")

    assert ticket is not None
    assert ticket.token_id == 2**256 - 1
    assert ticket.status is TicketStatus.VALID
    assert ticket.mint_status is MintStatus.MINTED
    assert ticket.is_ledger_linked


@pytest.mark.asyncio
async def test_get_ticket_returns_none_when_missing(pool, connection):
    connection.fetchrow = AsyncMock(return_value=None)

    assert await TicketRepository(pool).get_ticket("missing") is None


@pytest.mark.asyncio
async def test_revoke_tickets_only_touches_valid_rows(pool, connection):
    connection.fetch = AsyncMock(return_value=[_ticket_row(status="revoked")])
    repository = TicketRepository(pool)

    revoked = await repository.revoke_tickets(["T1", "T2"])

    assert [ticket.status for ticket in revoked] == [TicketStatus.REVOKED]
    sql, ids = connection.fetch.await_args.args
    assert "status = 'valid'" in sql
    assert ids == ["T1", "T2"]
    assert await repository.revoke_tickets([]) == []
    assert connection.fetch.await_count == 1


@pytest.mark.asyncio
async def test_list_for_sync_passes_cutoff(pool, connection):
    connection.fetch = AsyncMock(return_value=[])
    repository = TicketRepository(pool)
    cutoff = datetime.now(timezone.utc)

    await repository.list_for_sync(limit=25, synced_before=cutoff)
    assert connection.fetch.await_args.args[1:] == (25, cutoff)

    await repository.list_for_sync(limit=25, synced_before=None)
    assert connection.fetch.await_args.args[1:] == (25, None)


@pytest.mark.asyncio
async def test_list_for_verification_uses_mode_query(pool, connection):
    connection.fetch = AsyncMock(return_value=[])

    await TicketRepository(pool).list_for_verification(limit=10, mode=VerificationMode.FLAGGED_ONLY)

    assert "mint_status = 'failed'" in connection.fetch.await_args.args[0]


@pytest.mark.asyncio
async def test_list_ledger_tickets_pages_with_filter_and_search(pool, connection):
    connection.fetchval = AsyncMock(return_value=41)
    connection.fetch = AsyncMock(return_value=[_ticket_row(token_id=Decimal(1234), status="revoked")])

    tickets, total = await TicketRepository(pool).list_ledger_tickets(
        status=LedgerTicketFilter.REVOKED, search=" 23 ", limit=20, offset=40
    )

    assert total == 41
    assert [ticket.token_id for ticket in tickets] == [1234]
    assert connection.fetchval.await_args.args[1:] == ("revoked", "23")
    query = connection.fetch.await_args.args[0]
    assert "token_id IS NOT NULL" in query
    assert "LIMIT $3 OFFSET $4" in query
    assert connection.fetch.await_args.args[1:] == ("revoked", "23", 20, 40)


@pytest.mark.asyncio
async def test_list_ledger_tickets_without_filters(pool, connection):
    connection.fetchval = AsyncMock(return_value=None)
    connection.fetch = AsyncMock(return_value=[])

    tickets, total = await TicketRepository(pool).list_ledger_tickets(search="  ")

    assert (tickets, total) == ([], 0)
    assert connection.fetch.await_args.args[1:] == (None, None, 20, 0)


@pytest.mark.asyncio
async def test_apply_ledger_state_writes_enum_values(pool, connection):
    synced_at = datetime.now(timezone.utc)

    await TicketRepository(pool).apply_ledger_state(
        "T1",
        status=TicketStatus.REVOKED,
        ledger_registered=True,
        mint_status=MintStatus.MINTED,
        status_code=2,
        synced_at=synced_at,
    )

    assert connection.execute.await_args.args[1:] == ("T1", "revoked", True, "minted", 2, synced_at)


@pytest.mark.asyncio
async def test_ledger_statistics_pending_count(pool, connection):
    connection.fetchrow = AsyncMock(
        return_value={
            "total_tickets": 20,
            "total_with_token_id": 10,
            "registered_count": 5,
            "revoked_count": 2,
            "failed_count": 1,
            "recently_synced": 4,
            "never_synced": 3,
        }
    )

    stats = await TicketRepository(pool).ledger_statistics(recent_since=datetime.now(timezone.utc))

    assert stats.pending_count == 2


@pytest.mark.asyncio
async def test_create_entry_returns_audit_entry(pool, connection):
    now = datetime.now(timezone.utc)
    connection.fetchrow = AsyncMock(
        return_value={
            "id": 3,
            "ticket_id": "T1",
            "actor": "admin-1",
            "reason": "Fraud",
            "revoked_at": now,
            "ledger_status": "pending",
            "ledger_tx_hash": None,
            "ledger_error": None,
        }
    )

    entry = await RevocationLogRepository(pool).create_entry(
        ticket_id="T1", actor="admin-1", reason="Fraud", ledger_status=LedgerStatus.PENDING
    )

    assert entry.id == 3
    assert entry.ledger_status is LedgerStatus.PENDING
    assert connection.fetchrow.await_args.args[1:] == ("T1", "admin-1", "Fraud", "pending")


@pytest.mark.asyncio
async def test_create_entry_raises_without_row(pool, connection):
    connection.fetchrow = AsyncMock(return_value=None)

    with pytest.raises(RuntimeError):
        await RevocationLogRepository(pool).create_entry(
            ticket_id="T1", actor="admin-1", reason="Fraud", ledger_status=LedgerStatus.PENDING
        )
