"""Gamma API client tests using httpx.MockTransport."""

import json

import httpx
import pytest

from polymarket_breaking.api.client import GammaAPIError, GammaClient, chunked
from polymarket_breaking.utils.cache import TTLCache

RAW_MARKET = {
    "conditionId": "0xabc",
    "question": "Will it rain?",
    "slug": "will-it-rain",
    "outcomes": json.dumps(["Yes", "No"]),
    "outcomePrices": json.dumps(["0.62", "0.38"]),
    "volumeNum": 1234.5,
    "liquidity": "250",
    "active": True,
    "closed": False,
    "endDate": "2025-03-01T00:00:00Z",
    "tags": [{"label": "Weather", "slug": "weather"}],
}


def _client(handler, **kwargs) -> GammaClient:
    return GammaClient(
        base_url="https://gamma.test",
        rate_limit_per_sec=1000,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_parse_market_with_string_encoded_outcomes():
    market = GammaClient.parse_market(RAW_MARKET)
    assert market.condition_id == "0xabc"
    assert market.yes_price == pytest.approx(0.62)
    assert market.no_price == pytest.approx(0.38)
    assert market.volume == pytest.approx(1234.5)
    assert market.liquidity == pytest.approx(250.0)
    assert market.tags[0].label == "Weather"
    assert market.end_date.year == 2025


def test_parse_market_with_object_outcomes():
    market = GammaClient.parse_market(
        {"conditionId": "0x1", "question": "Q", "outcomes": [{"name": "Yes", "price": 0.2}]}
    )
    assert market.yes_price == pytest.approx(0.2)
    assert market.no_price == pytest.approx(0.8)


def test_chunked_splits_into_fifty():
    ids = [f"0x{i}" for i in range(120)]
    chunks = chunked(ids, 50)
    assert [len(c) for c in chunks] == [50, 50, 20]


async def test_list_markets_sends_filters():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json=[RAW_MARKET, {"conditionId": "0xbad", "question": "Q", "volume": -5}])

    client = _client(handler)
    markets = await client.get_markets_by_condition_ids(["0xabc", "0xdef"])
    await client.close()

    assert seen["condition_ids"] == "0xabc,0xdef"
    assert seen["active"] == "true"
    assert [m.condition_id for m in markets] == ["0xabc"]


async def test_too_many_condition_ids_rejected():
    client = _client(lambda request: httpx.Response(200, json=[]))
    with pytest.raises(ValueError):
        await client.list_markets(condition_ids=[str(i) for i in range(51)])
    await client.close()


async def test_error_status_maps_to_gamma_error():
    client = _client(lambda request: httpx.Response(404, text="nope"))
    with pytest.raises(GammaAPIError) as excinfo:
        await client.list_markets()
    await client.close()
    assert excinfo.value.status_code == 404
    assert excinfo.value.url == "https://gamma.test/markets"


async def test_timeout_message_names_url():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(handler, timeout=5)
    with pytest.raises(GammaAPIError, match="timeout after 5"):
        await client.list_markets()
    await client.close()


async def test_list_cache_avoids_second_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=[RAW_MARKET])

    client = _client(handler, cache=TTLCache(), cache_ttl=30)
    await client.list_markets(limit=10)
    await client.list_markets(limit=10)
    await client.close()
    assert len(calls) == 1
