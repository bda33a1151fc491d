"""Market sync worker tests against a real SQLite store and a fake Gamma API."""

from datetime import timedelta

import pytest

from conftest import NOW, make_market, make_point
from polymarket_breaking.api.client import GammaAPIError
from polymarket_breaking.errors import UpstreamFetchError, ValidationError
from polymarket_breaking.services.market_sync import MarketSyncWorker


class FakeGamma:
    """Serves a fixed market list, paged and filtered like the real API."""

    def __init__(self, markets, fail_chunks=0):
        self.markets = markets
        self.fail_chunks = fail_chunks
        self.chunk_calls = []

    async def list_markets(self, *, active=True, closed=None, limit=100, offset=0, condition_ids=None):
        return self.markets[offset:offset + limit]

    async def get_markets_by_condition_ids(self, condition_ids):
        self.chunk_calls.append(list(condition_ids))
        if len(self.chunk_calls) <= self.fail_chunks:
            raise GammaAPIError("Gamma API error: 503", status_code=503)
        wanted = set(condition_ids)
        return [m for m in self.markets if m.condition_id in wanted]


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


async def test_sync_active_twice_is_idempotent(db):
    gamma = FakeGamma([make_market("0xa", 0.4), make_market("0xb", 0.7)])
    worker = MarketSyncWorker(gamma, db, clock=Clock())

    first = await worker.sync_active()
    assert (first.created, first.updated, first.synced) == (2, 0, 2)

    second = await worker.sync_active()
    assert (second.created, second.updated) == (0, 2)
    # Same minute: the fallback classifies every point as a duplicate
    assert second.synced == 0
    assert second.skipped == 2
    assert second.failed == 0
    assert "2 skipped (duplicates)" in second.message

    assert await db.count_markets() == 2
    assert await db.count_price_points() == 2


async def test_sync_active_pages_until_short_page(db):
    gamma = FakeGamma([make_market(f"0x{i}") for i in range(5)])
    worker = MarketSyncWorker(gamma, db, page_size=2, clock=Clock())
    result = await worker.sync_active()
    assert result.total_markets == 5
    assert result.synced == 5


async def test_fallback_inserts_fresh_rows_and_skips_duplicates(db):
    clock = Clock()
    gamma = FakeGamma([make_market("0xa", 0.4), make_market("0xb", 0.6)])
    worker = MarketSyncWorker(gamma, db, clock=clock)
    await worker.sync_active()

    # A third market joins; the batch collides on 0xa and 0xb only
    gamma.markets.append(make_market("0xc", 0.5))
    result = await worker.sync_active()
    assert result.synced == 1
    assert result.skipped == 2
    assert await db.count_price_points() == 3


async def test_markets_without_yes_outcome_are_counted(db):
    gamma = FakeGamma([make_market("0xa", None), make_market("", 0.5), make_market("0xb", 0.5)])
    worker = MarketSyncWorker(gamma, db, clock=Clock())
    result = await worker.sync_active()
    assert result.upserted == 2
    assert result.missing_price == 1
    assert result.invalid == 1
    assert result.synced == 1


async def test_repeated_condition_id_is_counted_once(db):
    gamma = FakeGamma([make_market("0xa", 0.4), make_market("0xa", 0.6), make_market("", 0.5)])
    result = await MarketSyncWorker(gamma, db, clock=Clock()).sync_active()
    assert result.upserted == 1
    assert result.repeated == 1
    assert result.invalid == 1
    assert result.synced == 1


async def test_sync_tracked_uses_stored_condition_ids(db):
    clock = Clock()
    markets = [make_market(f"0x{i}") for i in range(60)]
    worker = MarketSyncWorker(FakeGamma(markets), db, clock=clock)
    await worker.sync_active()

    clock.now = NOW + timedelta(hours=1)
    gamma = FakeGamma(markets)
    tracked = MarketSyncWorker(gamma, db, clock=clock)
    result = await tracked.sync_tracked()

    assert [len(c) for c in gamma.chunk_calls] == [50, 10]
    assert result.synced == 60
    assert await db.count_price_points() == 120
    assert await db.get_metadata("last_tracked_sync_synced") == "60"


async def test_sync_tracked_partial_chunk_failure(db):
    clock = Clock()
    markets = [make_market(f"0x{i}") for i in range(60)]
    await MarketSyncWorker(FakeGamma(markets), db, clock=clock).sync_active()

    clock.now = NOW + timedelta(hours=1)
    result = await MarketSyncWorker(FakeGamma(markets, fail_chunks=1), db, clock=clock).sync_tracked()
    assert result.failed_chunks == 1
    assert result.synced == 10


async def test_sync_tracked_all_chunks_failing_raises(db):
    await MarketSyncWorker(FakeGamma([make_market("0xa")]), db, clock=Clock()).sync_active()
    worker = MarketSyncWorker(FakeGamma([make_market("0xa")], fail_chunks=5), db, clock=Clock())
    with pytest.raises(UpstreamFetchError):
        await worker.sync_tracked()


async def test_sync_tracked_single_condition_id(db):
    gamma = FakeGamma([make_market("0xa"), make_market("0xb")])
    worker = MarketSyncWorker(gamma, db, clock=Clock())
    result = await worker.sync_tracked(condition_id="0xb")
    assert gamma.chunk_calls == [["0xb"]]
    assert result.created == 1
    assert (await db.get_market_by_condition_id("0xb")).slug == "market-0xb"


async def test_sync_tracked_rejects_conflicting_ids(db):
    worker = MarketSyncWorker(FakeGamma([]), db)
    with pytest.raises(ValidationError, match="Cannot specify both"):
        await worker.sync_tracked(market_id="m", condition_id="c")


@pytest.mark.parametrize("batch_size", [0, 501])
async def test_batch_size_bounds(db, batch_size):
    with pytest.raises(ValidationError, match="batchSize must be between 1 and 500"):
        MarketSyncWorker(FakeGamma([]), db, batch_size=batch_size)


async def test_small_batches_isolate_duplicates(db):
    clock = Clock()
    market_id, _ = await db.upsert_market(make_market("0xa"))
    await db.insert_price_point(make_point(market_id, 0.5, NOW, condition_id="0xa"))

    gamma = FakeGamma([make_market("0xa"), make_market("0xb"), make_market("0xc")])
    worker = MarketSyncWorker(gamma, db, batch_size=1, clock=clock)
    result = await worker.sync_active()
    assert result.synced == 2
    assert result.skipped == 1
