from __future__ import annotations

from datetime import datetime
from typing import Any

import asyncpg

from ticketledger.tickets.models import QueueItem
from ticketledger.tickets.state import QueueStatus

_QUEUE_COLUMNS = "id, ticket_id, audit_entry_id, status, retry_count, created_at, processed_at, error_message"


class RevocationQueueRepository:
    """Durable FIFO of tickets whose revocation still has to reach the ledger."""

    _CREATE_QUEUE_SQL = """
    CREATE TABLE IF NOT EXISTS blockchain_revocation_queue (
        id BIGSERIAL PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(ticket_id),
        audit_entry_id BIGINT NULL REFERENCES revocation_log(id),
        status TEXT NOT NULL DEFAULT 'pending',
        retry_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        processed_at TIMESTAMPTZ NULL,
        error_message TEXT NULL
    )
    """

    _CREATE_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS blockchain_revocation_queue_status_created_idx
    ON blockchain_revocation_queue (status, created_at)
    """

    _INSERT_ITEM_SQL = f"""
    INSERT INTO blockchain_revocation_queue (ticket_id, audit_entry_id, status)
    VALUES ($1, $2, 'pending')
    RETURNING {_QUEUE_COLUMNS}
    """

    _SELECT_PENDING_SQL = f"""
    SELECT {_QUEUE_COLUMNS}
    FROM blockchain_revocation_queue
    WHERE status = 'pending'
    ORDER BY created_at ASC, id ASC
    LIMIT $1
    """

    # The claim only succeeds for the caller that flips the row out of 'pending'.
    _CLAIM_ITEM_SQL = f"""
    UPDATE blockchain_revocation_queue
    SET status = 'processing'
    WHERE id = $1
      AND status = 'pending'
    RETURNING {_QUEUE_COLUMNS}
    """

    _MARK_COMPLETED_SQL = """
    UPDATE blockchain_revocation_queue
    SET status = 'completed',
        processed_at = $2,
        error_message = $3
    WHERE id = $1
    """

    _RECORD_FAILURE_SQL = """
    UPDATE blockchain_revocation_queue
    SET status = $2,
        retry_count = $3,
        error_message = $4,
        processed_at = $5
    WHERE id = $1
    """

    _SELECT_ITEMS_SQL = f"""
    SELECT {_QUEUE_COLUMNS}
    FROM blockchain_revocation_queue
    WHERE ($1::text IS NULL OR status = $1)
    ORDER BY created_at ASC, id ASC
    LIMIT $2 OFFSET $3
    """

    _COUNT_BY_STATUS_SQL = """
    SELECT status, COUNT(*) AS item_count
    FROM blockchain_revocation_queue
    GROUP BY status
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_QUEUE_SQL)
            await connection.execute(self._CREATE_INDEX_SQL)

    async def enqueue(self, *, ticket_id: str, audit_entry_id: int | None) -> QueueItem:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._INSERT_ITEM_SQL, ticket_id, audit_entry_id)
        if row is None:
            raise RuntimeError(f"Failed to enqueue ledger revocation for ticket {ticket_id}")
        return self._row_to_item(row)

    async def list_pending(self, limit: int) -> list[QueueItem]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_PENDING_SQL, limit)
        return [self._row_to_item(row) for row in rows]

    async def claim(self, item_id: int) -> QueueItem | None:
        """Move a pending item to processing; ``None`` when someone else got there first."""

        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._CLAIM_ITEM_SQL, item_id)
        if row is None:
            return None
        return self._row_to_item(row)

    async def mark_completed(
        self, item_id: int, *, processed_at: datetime, message: str | None = None
    ) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._MARK_COMPLETED_SQL, item_id, processed_at, message)

    async def record_failure(
        self,
        item_id: int,
        *,
        status: QueueStatus,
        retry_count: int,
        error: str,
        processed_at: datetime,
    ) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._RECORD_FAILURE_SQL,
                item_id,
                status.value,
                retry_count,
                error,
                processed_at,
            )

    async def list_items(
        self, *, status: QueueStatus | None = None, limit: int = 50, offset: int = 0
    ) -> list[QueueItem]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(
                self._SELECT_ITEMS_SQL,
                None if status is None else status.value,
                limit,
                offset,
            )
        return [self._row_to_item(row) for row in rows]

    async def count_by_status(self) -> dict[QueueStatus, int]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._COUNT_BY_STATUS_SQL)
        counts = {status: 0 for status in QueueStatus}
        for row in rows:
            counts[QueueStatus(str(row["status"]))] = int(row["item_count"])
        return counts

    @staticmethod
    def _row_to_item(row: Any) -> QueueItem:
        audit_entry_id = row["audit_entry_id"]
        return QueueItem(
            id=int(row["id"]),
            ticket_id=str(row["ticket_id"]),
            audit_entry_id=None if audit_entry_id is None else int(audit_entry_id),
            status=QueueStatus(str(row["status"])),
            retry_count=int(row["retry_count"]),
            created_at=row["created_at"],
            processed_at=row["processed_at"],
            error_message=None if row["error_message"] is None else str(row["error_message"]),
        )
