"""HTTP surface tests using pytest-aiohttp."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_market, seed_market
from polymarket_breaking.services.market_sync import MarketSyncWorker
from polymarket_breaking.services.newsletter import NewsletterDispatcher
from polymarket_breaking.services.notifiers import LogNotifier
from polymarket_breaking.services.ranker import BreakingMarketsRanker
from polymarket_breaking.services.subscriptions import SubscriptionRegistry
from polymarket_breaking.utils.cache import TTLCache
from polymarket_breaking.utils.rate_limit import FixedWindowRateLimiter
from polymarket_breaking.web.server import WebServer

SECRET = "s3cret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class FakeGamma:
    def __init__(self, markets):
        self.markets = markets

    async def list_markets(self, *, active=True, closed=None, limit=100, offset=0, condition_ids=None):
        return self.markets[offset:offset + limit]

    async def get_markets_by_condition_ids(self, condition_ids):
        return [m for m in self.markets if m.condition_id in set(condition_ids)]


@pytest.fixture
async def client(db, aiohttp_client):
    ranker = BreakingMarketsRanker(db, cache=TTLCache(), cache_ttl=30)
    server = WebServer(
        ranker=ranker,
        dispatcher=NewsletterDispatcher(db, ranker, [LogNotifier()], site_url="https://example.com"),
        registry=SubscriptionRegistry(db, FixedWindowRateLimiter(max_attempts=2, window_seconds=3600)),
        sync_worker=MarketSyncWorker(FakeGamma([make_market("0xa", 0.4)]), db),
        db=db,
        cron_secret=SECRET,
    )
    return await aiohttp_client(server.app)


async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "ok"
    assert body["markets"] == 0


async def test_breaking_markets_success_shape(client, db):
    now = datetime.now(timezone.utc)
    await seed_market(db, "0xa", [0.40, 0.40, 0.52], end=now - timedelta(minutes=1))

    resp = await client.get("/functions/v1/get-breaking-markets", params={"limit": "5"})
    assert resp.status == 200
    assert resp.headers["Cache-Control"] == "public, s-maxage=30, max-age=30"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    body = await resp.json()
    assert body["success"] is True
    assert body["count"] == 1
    assert body["cached"] is False
    assert body["data"][0]["condition_id"] == "0xa"
    assert body["data"][0]["trend"] == "up"

    resp = await client.post("/functions/v1/get-breaking-markets", json={"limit": 5})
    assert (await resp.json())["cached"] is True


async def test_breaking_markets_validation_error(client):
    resp = await client.get("/functions/v1/get-breaking-markets", params={"limit": "500"})
    assert resp.status == 400
    body = await resp.json()
    assert body["error"] == "Limit cannot exceed 100"
    assert "timestamp" in body


async def test_method_not_allowed(client):
    resp = await client.delete("/functions/v1/get-breaking-markets")
    assert resp.status == 405
    assert (await resp.json())["error"] == "Method not allowed"


async def test_preflight(client):
    resp = await client.options("/functions/v1/subscribe-newsletter")
    assert resp.status == 200
    assert await resp.text() == "ok"
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]


async def test_cron_endpoints_require_secret(client):
    resp = await client.post("/functions/v1/send-breaking-daily", json={})
    assert resp.status == 401
    resp = await client.post("/functions/v1/sync-gamma-markets", headers={"Authorization": "Bearer wrong"})
    assert resp.status == 401


async def test_send_daily_with_secret(client):
    resp = await client.post("/functions/v1/send-breaking-daily", json={"frequency": "daily"}, headers=AUTH)
    assert resp.status == 200
    body = await resp.json()
    assert set(body) >= {"sent", "failed", "skipped", "errors", "timestamp", "duration_ms"}


async def test_send_daily_bad_frequency(client):
    resp = await client.post("/functions/v1/send-breaking-daily", json={"frequency": "hourly"}, headers=AUTH)
    assert resp.status == 400


async def test_subscribe_flow_and_rate_limit(client):
    resp = await client.post("/functions/v1/subscribe-newsletter", json={"email": "a@example.com"})
    assert resp.status == 200
    assert resp.headers["X-RateLimit-Remaining"] == "1"
    assert "X-RateLimit-Reset" in resp.headers
    body = await resp.json()
    assert body["message"] == "Subscribed successfully"
    token = body["data"]["unsubscribe_token"]

    resp = await client.post("/functions/v1/subscribe-newsletter", json={"email": "a@example.com"})
    assert (await resp.json())["message"] == "Already subscribed"

    resp = await client.post("/functions/v1/subscribe-newsletter", json={"email": "a@example.com"})
    assert resp.status == 429
    assert int(resp.headers["Retry-After"]) > 0
    body = await resp.json()
    assert body["error"] == "Too many subscription attempts"
    assert "resetAt" in body

    resp = await client.get("/functions/v1/unsubscribe-newsletter", params={"token": token})
    assert resp.status == 200
    assert (await resp.json())["success"] is True

    resp = await client.post("/functions/v1/unsubscribe-newsletter", json={"token": token})
    assert resp.status == 400
    assert (await resp.json())["error"] == "Invalid or expired unsubscribe link"


@pytest.mark.parametrize(
    "payload, message",
    [
        (None, "Request body is required"),
        ({}, "Email is required"),
        ({"email": "nope"}, "Invalid email format"),
        ({"email": "a@example.com", "frequency": "monthly"}, 'Frequency must be either "daily" or "weekly"'),
    ],
)
async def test_subscribe_validation(client, payload, message):
    if payload is None:
        resp = await client.post("/functions/v1/subscribe-newsletter")
    else:
        resp = await client.post("/functions/v1/subscribe-newsletter", json=payload)
    assert resp.status == 400
    assert (await resp.json())["error"] == message


async def test_sync_endpoints(client, db):
    resp = await client.post("/functions/v1/sync-gamma-markets", headers=AUTH)
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["synced"] == 1
    assert body["message"].startswith("Synced 1 price records successfully")
    assert await db.count_markets() == 1

    resp = await client.get(
        "/functions/v1/sync-price-history", params={"batch_size": "0"}, headers=AUTH
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "batchSize must be between 1 and 500"

    resp = await client.post(
        "/functions/v1/sync-price-history",
        json={"marketId": "m", "conditionId": "c"},
        headers=AUTH,
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "Cannot specify both marketId and conditionId"
