from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import asyncpg

from .models import Purchase, PurchaseStatus, RapidPurchaseGroup

_PURCHASE_COLUMNS = "id, user_id, event_id, payment_id, quantity, status, flag, purchase_timestamp"


class PurchaseRepository:
    """Data access for the purchase history used by bot detection and bulk revocation."""

    _CREATE_PURCHASES_SQL = """
    CREATE TABLE IF NOT EXISTS purchase_history (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        payment_id TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'normal',
        flag TEXT NULL,
        purchase_timestamp TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _SELECT_BY_IDS_SQL = f"""
    SELECT {_PURCHASE_COLUMNS}
    FROM purchase_history
    WHERE id = ANY($1::bigint[])
    ORDER BY id ASC
    """

    _UPDATE_STATUS_SQL = """
    UPDATE purchase_history
    SET status = $2,
        flag = COALESCE($3, flag)
    WHERE id = ANY($1::bigint[])
    """

    _SELECT_RAPID_PURCHASES_SQL = """
    SELECT
        user_id,
        array_agg(id ORDER BY purchase_timestamp) AS purchase_ids,
        array_agg(event_id ORDER BY purchase_timestamp) AS event_ids,
        array_agg(payment_id ORDER BY purchase_timestamp) AS payment_ids,
        array_agg(quantity ORDER BY purchase_timestamp) AS quantities,
        MIN(purchase_timestamp) AS first_purchase,
        MAX(purchase_timestamp) AS last_purchase
    FROM purchase_history
    WHERE purchase_timestamp >= $1
      AND status = 'normal'
      AND ($2::text IS NULL OR event_id = $2)
    GROUP BY user_id
    HAVING COUNT(*) >= $3
    ORDER BY COUNT(*) DESC, MAX(purchase_timestamp) DESC
    """

    _COUNT_FLAGGED_SQL = """
    SELECT COUNT(*)
    FROM purchase_history
    WHERE status = 'flagged'
      AND ($1::text IS NULL OR event_id = $1)
      AND ($2::text IS NULL OR user_id = $2)
    """

    _SELECT_FLAGGED_SQL = f"""
    SELECT {_PURCHASE_COLUMNS}
    FROM purchase_history
    WHERE status = 'flagged'
      AND ($1::text IS NULL OR event_id = $1)
      AND ($2::text IS NULL OR user_id = $2)
    ORDER BY purchase_timestamp DESC
    LIMIT $3 OFFSET $4
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_PURCHASES_SQL)

    async def get_purchases(self, purchase_ids: Sequence[int]) -> list[Purchase]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_BY_IDS_SQL, list(purchase_ids))
        return [self._row_to_purchase(row) for row in rows]

    async def mark_revoked(self, purchase_ids: Sequence[int]) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._UPDATE_STATUS_SQL, list(purchase_ids), PurchaseStatus.REVOKED.value, None
            )

    async def flag_purchases(self, purchase_ids: Sequence[int], *, flag: str) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._UPDATE_STATUS_SQL, list(purchase_ids), PurchaseStatus.FLAGGED.value, flag
            )

    async def find_rapid_purchases(
        self, *, since: datetime, event_id: str | None = None, min_purchases: int = 2
    ) -> list[RapidPurchaseGroup]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_RAPID_PURCHASES_SQL, since, event_id, min_purchases)
        return [
            RapidPurchaseGroup(
                user_id=str(row["user_id"]),
                purchase_ids=[int(value) for value in row["purchase_ids"]],
                event_ids=[str(value) for value in row["event_ids"]],
                payment_ids=[str(value) for value in row["payment_ids"]],
                quantities=[int(value) for value in row["quantities"]],
                first_purchase=row["first_purchase"],
                last_purchase=row["last_purchase"],
            )
            for row in rows
        ]

    async def list_flagged(
        self,
        *,
        limit: int,
        offset: int,
        event_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[list[Purchase], int]:
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(self._COUNT_FLAGGED_SQL, event_id, user_id)
            rows = await connection.fetch(self._SELECT_FLAGGED_SQL, event_id, user_id, limit, offset)
        return [self._row_to_purchase(row) for row in rows], int(total or 0)

    @staticmethod
    def _row_to_purchase(row: Any) -> Purchase:
        return Purchase(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            event_id=str(row["event_id"]),
            payment_id=str(row["payment_id"]),
            quantity=int(row["quantity"]),
            status=PurchaseStatus(str(row["status"])),
            flag=None if row["flag"] is None else str(row["flag"]),
            purchase_timestamp=row["purchase_timestamp"],
        )
