"""Shared fixtures: a fresh SQLite store per test and seeding helpers."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from polymarket_breaking.database.repository import Database
from polymarket_breaking.schemas import Market, Outcome, PriceHistoryPoint

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_market(
    condition_id: str,
    yes: Optional[float] = 0.5,
    *,
    question: Optional[str] = None,
    volume: Optional[float] = 1000.0,
    active: bool = True,
    closed: bool = False,
) -> Market:
    outcomes = [] if yes is None else [Outcome(name="Yes", price=yes), Outcome(name="No", price=1 - yes)]
    return Market(
        condition_id=condition_id,
        question=question or f"Will {condition_id} happen?",
        slug=f"market-{condition_id}",
        outcomes=outcomes,
        volume=volume,
        liquidity=500.0,
        active=active,
        closed=closed,
    )


def make_point(
    market_id: str,
    price: float,
    timestamp: datetime,
    volume: Optional[float] = 1000.0,
    condition_id: str = "0x",
) -> PriceHistoryPoint:
    return PriceHistoryPoint(
        market_id=market_id,
        condition_id=condition_id,
        price_yes=price,
        price_no=1 - price,
        volume=volume,
        timestamp=timestamp,
    )


async def seed_market(
    db: Database,
    condition_id: str,
    prices: list[float],
    *,
    volumes: Optional[list[float]] = None,
    end: datetime = NOW,
    step: timedelta = timedelta(hours=1),
) -> str:
    """Store a market and a price series ending at ``end``; returns its id."""
    market_id, _ = await db.upsert_market(make_market(condition_id, prices[-1] if prices else 0.5))
    start = end - step * (len(prices) - 1)
    points = [
        make_point(
            market_id,
            price,
            start + step * i,
            volume=volumes[i] if volumes else 1000.0,
            condition_id=condition_id,
        )
        for i, price in enumerate(prices)
    ]
    await db.insert_price_points(points)
    return market_id


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()
