"""SQLite repository tests."""

from datetime import timedelta

import aiosqlite
import pytest

from conftest import NOW, make_market, make_point
from polymarket_breaking.errors import DuplicateWriteError


async def test_upsert_market_is_idempotent(db):
    market_id, outcome = await db.upsert_market(make_market("0xa", 0.4))
    assert outcome == "created"

    again_id, outcome = await db.upsert_market(make_market("0xa", 0.6, question="Renamed?"))
    assert outcome == "updated"
    assert again_id == market_id
    assert await db.count_markets() == 1

    stored = await db.get_market(market_id)
    assert stored.question == "Renamed?"
    assert stored.yes_price == pytest.approx(0.6)
    assert stored.created_at is not None


async def test_list_active_markets_excludes_closed(db):
    await db.upsert_market(make_market("0xa"))
    await db.upsert_market(make_market("0xb", closed=True))
    await db.upsert_market(make_market("0xc", active=False))

    active = await db.list_active_markets()
    assert [m.condition_id for m in active] == ["0xa"]
    assert await db.list_condition_ids() == ["0xa"]


async def test_duplicate_price_point_in_same_minute(db):
    market_id, _ = await db.upsert_market(make_market("0xa"))
    await db.insert_price_point(make_point(market_id, 0.5, NOW, condition_id="0xa"))

    with pytest.raises(DuplicateWriteError):
        await db.insert_price_point(
            make_point(market_id, 0.55, NOW + timedelta(seconds=20), condition_id="0xa")
        )
    assert await db.count_price_points(market_id) == 1


async def test_bulk_insert_is_atomic(db):
    market_id, _ = await db.upsert_market(make_market("0xa"))
    points = [
        make_point(market_id, 0.5, NOW, condition_id="0xa"),
        make_point(market_id, 0.6, NOW, condition_id="0xa"),
    ]
    with pytest.raises(aiosqlite.IntegrityError):
        await db.insert_price_points(points)
    assert await db.count_price_points() == 0


async def test_price_point_for_unknown_market_is_not_a_duplicate(db):
    with pytest.raises(aiosqlite.IntegrityError) as excinfo:
        await db.insert_price_point(make_point("missing", 0.5, NOW))
    assert not isinstance(excinfo.value, DuplicateWriteError)


async def test_price_history_window_is_ascending(db):
    market_id, _ = await db.upsert_market(make_market("0xa"))
    stamps = [NOW - timedelta(hours=h) for h in (30, 3, 2, 1)]
    for i, ts in enumerate(stamps):
        await db.insert_price_point(make_point(market_id, 0.1 * (i + 1), ts, condition_id="0xa"))

    history = await db.get_price_history([market_id], since=NOW - timedelta(hours=24), until=NOW)
    assert [p.timestamp for p in history] == sorted(stamps[1:])


async def test_subscription_lifecycle(db):
    created = await db.create_subscription("a@example.com", "daily", "tok1", NOW)
    assert created.active and created.unsubscribe_token == "tok1"

    due = await db.list_due_subscribers("daily", NOW - timedelta(hours=23))
    assert [s.email for s in due] == ["a@example.com"]

    await db.mark_newsletter_sent("a@example.com", NOW)
    assert await db.list_due_subscribers("daily", NOW - timedelta(hours=23)) == []

    assert await db.deactivate_subscription(created.id, NOW)
    assert not await db.deactivate_subscription(created.id, NOW)
    assert await db.get_active_subscription_by_token("tok1") is None

    reactivated = await db.reactivate_subscription(created.id, "weekly", "tok2")
    assert reactivated.active
    assert reactivated.frequency == "weekly"
    assert reactivated.unsubscribed_at is None


async def test_duplicate_subscription_email(db):
    await db.create_subscription("a@example.com", "daily", "tok1", NOW)
    with pytest.raises(DuplicateWriteError):
        await db.create_subscription("a@example.com", "weekly", "tok2", NOW)
    stored = await db.get_subscription_by_email("a@example.com")
    assert stored.frequency == "daily"


async def test_metadata_roundtrip(db):
    assert await db.get_metadata("last_active_sync_time") is None
    await db.set_metadata("last_active_sync_time", "x")
    await db.set_metadata("last_active_sync_time", "y")
    assert await db.get_metadata("last_active_sync_time") == "y"
