from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ticketledger.purchases.models import PurchaseStatus
from ticketledger.purchases.repository import PurchaseRepository


@pytest.mark.asyncio
async def test_find_rapid_purchases_groups_rows(pool, connection):
    start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    connection.fetch = AsyncMock(
        return_value=[
            {
                "user_id": "bot",
                "purchase_ids": [4, 5, 6],
                "event_ids": ["e1", "e1", "e1"],
                "payment_ids": ["p4", "p5", "p6"],
                "quantities": [2, 2, 4],
                "first_purchase": start,
                "last_purchase": start + timedelta(minutes=4),
            }
        ]
    )
    since = start - timedelta(minutes=5)

    [group] = await PurchaseRepository(pool).find_rapid_purchases(since=since, event_id="e1")

    assert group.purchase_count == 3
    assert group.total_tickets == 8
    assert group.time_span_minutes == 4
    assert connection.fetch.await_args.args[1:] == (since, "e1", 2)


@pytest.mark.asyncio
async def test_list_flagged_returns_total(pool, connection):
    connection.fetchval = AsyncMock(return_value=7)
    connection.fetch = AsyncMock(
        return_value=[
            {
                "id": 1,
                "user_id": "bot",
                "event_id": "e1",
                "payment_id": "p1",
                "quantity": 1,
                "status": "flagged",
                "flag": "rapid_purchase",
                "purchase_timestamp": datetime.now(timezone.utc),
            }
        ]
    )

    items, total = await PurchaseRepository(pool).list_flagged(limit=1, offset=0)

    assert total == 7
    assert items[0].status is PurchaseStatus.FLAGGED


@pytest.mark.asyncio
async def test_mark_revoked_keeps_existing_flag(pool, connection):
    await PurchaseRepository(pool).mark_revoked([1, 2])

    assert connection.execute.await_args.args[1:] == ([1, 2], "revoked", None)
