from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

import asyncpg

from .models import RevocationAuditEntry, Ticket, parse_token_id
from .state import LedgerStatus, LedgerTicketFilter, MintStatus, TicketStatus, VerificationMode

_TICKET_COLUMNS = """
    ticket_id, status, payment_id, user_id, event_id, parent_ticket_id, is_parent_ticket,
    group_size, contract_address, token_id, ledger_registered, mint_status, ledger_tx_hash,
    last_synced_at, sync_status_code, purchase_date
"""


# $1 is an optional LedgerTicketFilter value, $2 an optional token id fragment
_LEDGER_TICKET_WHERE = """
    WHERE token_id IS NOT NULL
      AND (
        $1::text IS NULL
        OR ($1 = 'registered' AND ledger_registered AND status = 'valid')
        OR ($1 = 'revoked' AND status = 'revoked')
        OR ($1 = 'pending' AND NOT ledger_registered)
        OR ($1 = 'failed' AND mint_status = 'failed')
      )
      AND ($2::text IS NULL OR strpos(token_id::text, $2) > 0)
"""


@dataclass(slots=True)
class LedgerStatistics:
    """Raw counters over the tickets table used by the statistics report."""

    total_tickets: int
    total_with_token_id: int
    registered_count: int
    revoked_count: int
    failed_count: int
    recently_synced: int
    never_synced: int

    @property
    def pending_count(self) -> int:
        return max(
            self.total_with_token_id - self.registered_count - self.revoked_count - self.failed_count,
            0,
        )


class TicketRepository:
    """Data access layer for ticket records."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        ticket_id TEXT PRIMARY KEY,
        status TEXT NOT NULL DEFAULT 'valid',
        payment_id TEXT NULL,
        user_id TEXT NULL,
        event_id TEXT NULL,
        parent_ticket_id TEXT NULL REFERENCES tickets(ticket_id),
        is_parent_ticket BOOLEAN NOT NULL DEFAULT FALSE,
        group_size INTEGER NOT NULL DEFAULT 1,
        contract_address TEXT NULL,
        token_id NUMERIC(78, 0) NULL CHECK (token_id >= 0),
        ledger_registered BOOLEAN NOT NULL DEFAULT FALSE,
        mint_status TEXT NOT NULL DEFAULT 'unset',
        ledger_tx_hash TEXT NULL,
        last_synced_at TIMESTAMPTZ NULL,
        sync_status_code SMALLINT NULL,
        purchase_date TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT tickets_registered_requires_link CHECK (
            NOT ledger_registered OR (contract_address IS NOT NULL AND token_id IS NOT NULL)
        )
    )
    """

    _CREATE_INDEXES_SQL = (
        "CREATE INDEX IF NOT EXISTS tickets_payment_id_idx ON tickets (payment_id)",
        "CREATE INDEX IF NOT EXISTS tickets_parent_ticket_id_idx ON tickets (parent_ticket_id)",
    )

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE ticket_id = $1
    """

    _REVOKE_TICKETS_SQL = f"""
    UPDATE tickets
    SET status = 'revoked'
    WHERE ticket_id = ANY($1::text[])
      AND status = 'valid'
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_GROUP_CHILDREN_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE parent_ticket_id = $1
      AND status = 'valid'
    ORDER BY ticket_id ASC
    """

    _SELECT_VALID_BY_PAYMENTS_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE payment_id = ANY($1::text[])
      AND status = 'valid'
    ORDER BY ticket_id ASC
    """

    _RECORD_LEDGER_REVOCATION_SQL = """
    UPDATE tickets
    SET ledger_tx_hash = COALESCE($2, ledger_tx_hash),
        sync_status_code = $3
    WHERE ticket_id = $1
    """

    _SELECT_FOR_SYNC_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE ((token_id IS NOT NULL AND contract_address IS NOT NULL) OR ledger_registered)
      AND ($2::timestamptz IS NULL OR last_synced_at IS NULL OR last_synced_at < $2)
    ORDER BY purchase_date DESC
    LIMIT $1
    """

    _SELECT_FOR_VERIFICATION_SQL = {
        VerificationMode.ALL: f"""
        SELECT {_TICKET_COLUMNS}
        FROM tickets
        WHERE token_id IS NOT NULL
        ORDER BY purchase_date DESC
        LIMIT $1
        """,
        VerificationMode.REGISTERED_ONLY: f"""
        SELECT {_TICKET_COLUMNS}
        FROM tickets
        WHERE token_id IS NOT NULL
          AND ledger_registered
        ORDER BY purchase_date DESC
        LIMIT $1
        """,
        VerificationMode.FLAGGED_ONLY: f"""
        SELECT {_TICKET_COLUMNS}
        FROM tickets
        WHERE token_id IS NOT NULL
          AND (NOT ledger_registered OR mint_status = 'failed')
        ORDER BY purchase_date DESC
        LIMIT $1
        """,
    }

    _COUNT_LEDGER_TICKETS_SQL = f"""
    SELECT COUNT(*)
    FROM tickets
    {_LEDGER_TICKET_WHERE}
    """

    _SELECT_LEDGER_TICKETS_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    {_LEDGER_TICKET_WHERE}
    ORDER BY purchase_date DESC
    LIMIT $3 OFFSET $4
    """

    _APPLY_LEDGER_STATE_SQL = """
    UPDATE tickets
    SET status = $2,
        ledger_registered = $3,
        mint_status = $4,
        sync_status_code = $5,
        last_synced_at = $6
    WHERE ticket_id = $1
    """

    _TOUCH_SYNC_SQL = """
    UPDATE tickets
    SET sync_status_code = $2,
        last_synced_at = $3
    WHERE ticket_id = $1
    """

    _LEDGER_STATISTICS_SQL = """
    SELECT
        COUNT(*) AS total_tickets,
        COUNT(*) FILTER (WHERE token_id IS NOT NULL) AS total_with_token_id,
        COUNT(*) FILTER (
            WHERE token_id IS NOT NULL AND status = 'valid' AND ledger_registered
        ) AS registered_count,
        COUNT(*) FILTER (WHERE token_id IS NOT NULL AND status = 'revoked') AS revoked_count,
        COUNT(*) FILTER (
            WHERE token_id IS NOT NULL
              AND status = 'valid'
              AND NOT ledger_registered
              AND mint_status = 'failed'
        ) AS failed_count,
        COUNT(*) FILTER (WHERE token_id IS NOT NULL AND last_synced_at >= $1) AS recently_synced,
        COUNT(*) FILTER (WHERE token_id IS NOT NULL AND last_synced_at IS NULL) AS never_synced
    FROM tickets
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            for statement in self._CREATE_INDEXES_SQL:
                await connection.execute(statement)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def revoke_tickets(self, ticket_ids: Sequence[str]) -> list[Ticket]:
        """Mark valid tickets as revoked and return the rows that actually changed."""

        if not ticket_ids:
            return []
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._REVOKE_TICKETS_SQL, list(ticket_ids))
        return [self._row_to_ticket(row) for row in rows]

    async def list_group_children(self, parent_ticket_id: str) -> list[Ticket]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_GROUP_CHILDREN_SQL, parent_ticket_id)
        return [self._row_to_ticket(row) for row in rows]

    async def list_valid_by_payments(self, payment_ids: Sequence[str]) -> list[Ticket]:
        if not payment_ids:
            return []
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_VALID_BY_PAYMENTS_SQL, list(payment_ids))
        return [self._row_to_ticket(row) for row in rows]

    async def record_ledger_revocation(self, ticket_id: str, *, tx_hash: str | None, status_code: int) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._RECORD_LEDGER_REVOCATION_SQL, ticket_id, tx_hash, status_code)

    async def list_for_sync(self, *, limit: int, synced_before: datetime | None) -> list[Ticket]:
        """Return ledger-linked tickets whose last sync is missing or older than ``synced_before``.

        ``synced_before=None`` selects every ledger-linked ticket (forced resync).
        """

        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_FOR_SYNC_SQL, limit, synced_before)
        return [self._row_to_ticket(row) for row in rows]

    async def list_for_verification(self, *, limit: int, mode: VerificationMode) -> list[Ticket]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_FOR_VERIFICATION_SQL[mode], limit)
        return [self._row_to_ticket(row) for row in rows]

    async def list_ledger_tickets(
        self,
        *,
        status: LedgerTicketFilter | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Ticket], int]:
        """Return one page of tickets holding a token id, newest first, and the total match count."""

        status_value = None if status is None else LedgerTicketFilter(status).value
        search = (search or "").strip() or None
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(self._COUNT_LEDGER_TICKETS_SQL, status_value, search)
            rows = await connection.fetch(self._SELECT_LEDGER_TICKETS_SQL, status_value, search, limit, offset)
        return [self._row_to_ticket(row) for row in rows], int(total or 0)

    async def apply_ledger_state(
        self,
        ticket_id: str,
        *,
        status: TicketStatus,
        ledger_registered: bool,
        mint_status: MintStatus,
        status_code: int,
        synced_at: datetime,
    ) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._APPLY_LEDGER_STATE_SQL,
                ticket_id,
                status.value,
                ledger_registered,
                mint_status.value,
                status_code,
                synced_at,
            )

    async def touch_sync(self, ticket_id: str, *, status_code: int, synced_at: datetime) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._TOUCH_SYNC_SQL, ticket_id, status_code, synced_at)

    async def ledger_statistics(self, *, recent_since: datetime) -> LedgerStatistics:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._LEDGER_STATISTICS_SQL, recent_since)
        return LedgerStatistics(
            total_tickets=int(row["total_tickets"]),
            total_with_token_id=int(row["total_with_token_id"]),
            registered_count=int(row["registered_count"]),
            revoked_count=int(row["revoked_count"]),
            failed_count=int(row["failed_count"]),
            recently_synced=int(row["recently_synced"]),
            never_synced=int(row["never_synced"]),
        )

    @staticmethod
    def _row_to_ticket(row: Any) -> Ticket:
        token_id = row["token_id"]
        sync_status_code = row["sync_status_code"]
        return Ticket(
            ticket_id=str(row["ticket_id"]),
            status=TicketStatus(str(row["status"])),
            payment_id=_optional_str(row["payment_id"]),
            user_id=_optional_str(row["user_id"]),
            event_id=_optional_str(row["event_id"]),
            parent_ticket_id=_optional_str(row["parent_ticket_id"]),
            is_parent_ticket=bool(row["is_parent_ticket"]),
            group_size=int(row["group_size"]),
            contract_address=_optional_str(row["contract_address"]),
            token_id=None if token_id is None else parse_token_id(token_id),
            ledger_registered=bool(row["ledger_registered"]),
            mint_status=MintStatus(str(row["mint_status"])),
            ledger_tx_hash=_optional_str(row["ledger_tx_hash"]),
            last_synced_at=row["last_synced_at"],
            sync_status_code=None if sync_status_code is None else int(sync_status_code),
            purchase_date=row["purchase_date"],
        )


class RevocationLogRepository:
    """Append-only audit trail of revocations and their ledger outcome."""

    _CREATE_LOG_SQL = """
    CREATE TABLE IF NOT EXISTS revocation_log (
        id BIGSERIAL PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(ticket_id),
        actor TEXT NOT NULL,
        reason TEXT NOT NULL,
        revoked_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        ledger_status TEXT NOT NULL,
        ledger_tx_hash TEXT NULL,
        ledger_error TEXT NULL
    )
    """

    _CREATE_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS revocation_log_ticket_id_idx ON revocation_log (ticket_id)
    """

    _INSERT_ENTRY_SQL = """
    INSERT INTO revocation_log (ticket_id, actor, reason, ledger_status)
    VALUES ($1, $2, $3, $4)
    RETURNING id, ticket_id, actor, reason, revoked_at, ledger_status, ledger_tx_hash, ledger_error
    """

    _UPDATE_LEDGER_STATUS_SQL = """
    UPDATE revocation_log
    SET ledger_status = $2,
        ledger_tx_hash = COALESCE($3, ledger_tx_hash),
        ledger_error = $4
    WHERE id = $1
    """

    _SELECT_FOR_TICKET_SQL = """
    SELECT id, ticket_id, actor, reason, revoked_at, ledger_status, ledger_tx_hash, ledger_error
    FROM revocation_log
    WHERE ticket_id = $1
    ORDER BY revoked_at ASC, id ASC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_LOG_SQL)
            await connection.execute(self._CREATE_INDEX_SQL)

    async def create_entry(
        self,
        *,
        ticket_id: str,
        actor: str,
        reason: str,
        ledger_status: LedgerStatus,
    ) -> RevocationAuditEntry:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(
                self._INSERT_ENTRY_SQL,
                ticket_id,
                actor,
                reason,
                ledger_status.value,
            )
        if row is None:
            raise RuntimeError(f"Failed to insert revocation log entry for ticket {ticket_id}")
        return self._row_to_entry(row)

    async def update_ledger_status(
        self,
        entry_id: int,
        ledger_status: LedgerStatus,
        *,
        tx_hash: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._UPDATE_LEDGER_STATUS_SQL,
                entry_id,
                ledger_status.value,
                tx_hash,
                error,
            )

    async def list_for_ticket(self, ticket_id: str) -> list[RevocationAuditEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_FOR_TICKET_SQL, ticket_id)
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Any) -> RevocationAuditEntry:
        return RevocationAuditEntry(
            id=int(row["id"]),
            ticket_id=str(row["ticket_id"]),
            actor=str(row["actor"]),
            reason=str(row["reason"]),
            revoked_at=row["revoked_at"],
            ledger_status=LedgerStatus(str(row["ledger_status"])),
            ledger_tx_hash=_optional_str(row["ledger_tx_hash"]),
            ledger_error=_optional_str(row["ledger_error"]),
        )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
