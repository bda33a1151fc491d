"""Ranks markets by recent movement to surface "breaking" ones."""

import math
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiosqlite

from polymarket_breaking.database.repository import Database
from polymarket_breaking.errors import DataSourceError, ValidationError
from polymarket_breaking.schemas import BreakingMarket, PriceHistoryPoint, StoredMarket
from polymarket_breaking.services.statistics import (
    calculate_price_statistics,
    sample_price_history,
)
from polymarket_breaking.utils.cache import TTLCache
from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
DEFAULT_MIN_PRICE_CHANGE = 0.05
DEFAULT_TIME_RANGE_HOURS = 24
MAX_TIME_RANGE_HOURS = 168
CACHE_TTL_SECONDS = 30.0


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _parse_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class BreakingMarketsQuery:
    """Validated ranking request."""

    limit: int = DEFAULT_LIMIT
    min_price_change: float = DEFAULT_MIN_PRICE_CHANGE
    time_range_hours: int = DEFAULT_TIME_RANGE_HOURS
    market_id: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1:
            raise ValidationError("Limit must be a positive integer")
        if self.limit > MAX_LIMIT:
            raise ValidationError(f"Limit cannot exceed {MAX_LIMIT}")
        if not 0 <= self.min_price_change <= 1:
            raise ValidationError("min_price_change must be between 0 and 1")
        if (
            isinstance(self.time_range_hours, bool)
            or not isinstance(self.time_range_hours, int)
            or not 1 <= self.time_range_hours <= MAX_TIME_RANGE_HOURS
        ):
            raise ValidationError(
                f"time_range_hours must be between 1 and {MAX_TIME_RANGE_HOURS} (7 days)"
            )

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "BreakingMarketsQuery":
        """Build a query from query-string or JSON body values.

        Raises:
            ValidationError: For malformed or out-of-range values.
        """
        kwargs: dict[str, Any] = {}

        raw_limit = params.get("limit")
        if not _is_blank(raw_limit):
            limit = _parse_int(raw_limit)
            if limit is None:
                raise ValidationError("Limit must be a positive integer")
            kwargs["limit"] = limit

        raw_change = params.get("min_price_change")
        if not _is_blank(raw_change):
            change = _parse_float(raw_change)
            if change is None:
                raise ValidationError("min_price_change must be between 0 and 1")
            kwargs["min_price_change"] = change

        raw_hours = params.get("time_range_hours")
        if not _is_blank(raw_hours):
            hours = _parse_int(raw_hours)
            if hours is None:
                raise ValidationError(
                    f"time_range_hours must be between 1 and {MAX_TIME_RANGE_HOURS} (7 days)"
                )
            kwargs["time_range_hours"] = hours

        raw_market = params.get("market_id")
        if not _is_blank(raw_market):
            kwargs["market_id"] = str(raw_market).strip()

        return cls(**kwargs)

    @property
    def cache_key(self) -> tuple[Any, ...]:
        return (
            "breaking",
            self.limit,
            self.min_price_change,
            self.time_range_hours,
            self.market_id,
        )


class BreakingMarketsRanker:
    """Builds ranked BreakingMarket records from stored price history.

    Read-only. Responses may be served from a short-lived cache; a miss always
    recomputes from the store.
    """

    def __init__(
        self,
        db: Database,
        cache: Optional[TTLCache] = None,
        cache_ttl: float = CACHE_TTL_SECONDS,
    ) -> None:
        self._db = db
        self._cache = cache
        self._cache_ttl = cache_ttl

    async def get_breaking_markets(
        self, query: BreakingMarketsQuery
    ) -> tuple[list[BreakingMarket], bool]:
        """Ranked markets for a query, plus whether the result came from cache."""
        if self._cache is None or self._cache_ttl <= 0:
            return await self.rank(query), False
        return await self._cache.get_or_compute(
            query.cache_key, self._cache_ttl, lambda: self.rank(query)
        )

    async def rank(
        self,
        query: BreakingMarketsQuery,
        now: Optional[datetime] = None,
    ) -> list[BreakingMarket]:
        """Compute the ranking without consulting the cache.

        Raises:
            DataSourceError: The store could not be read.
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=query.time_range_hours)

        logger.info(
            "Fetching breaking markets",
            extra={
                "ctx_limit": query.limit,
                "ctx_min_change": query.min_price_change,
                "ctx_hours": query.time_range_hours,
                "ctx_market_id": query.market_id,
            },
        )

        try:
            markets = await self._resolve_candidates(query.market_id)
            if not markets:
                logger.info("No markets found")
                return []
            history = await self._db.get_price_history(
                [m.id for m in markets], since=since, until=now
            )
        except (aiosqlite.Error, OSError) as e:
            logger.error("Data source query failed", extra={"ctx_error": str(e)})
            raise DataSourceError(f"Failed to fetch market data: {e}") from e

        by_market: dict[str, list[PriceHistoryPoint]] = defaultdict(list)
        for point in history:
            by_market[point.market_id].append(point)

        explicit = query.market_id is not None
        breaking: list[BreakingMarket] = []
        for market in markets:
            points = by_market.get(market.id, [])
            if len(points) < 2:
                logger.debug(
                    "Skipping market with insufficient price history",
                    extra={"ctx_market_id": market.id, "ctx_points": len(points)},
                )
                continue

            try:
                record = self._build_record(market, points)
            except Exception as e:
                logger.warning(
                    "Could not compute statistics",
                    extra={"ctx_market_id": market.id, "ctx_error": str(e)},
                )
                continue
            if record is None:
                continue

            if not explicit and abs(record.price_change_percent) < query.min_price_change:
                continue

            breaking.append(record)

        breaking.sort(key=lambda r: (-r.movement_score, r.id))
        limited = breaking[: query.limit]

        logger.info(
            "Returning breaking markets",
            extra={"ctx_count": len(limited), "ctx_candidates": len(markets)},
        )
        return limited

    async def _resolve_candidates(self, market_id: Optional[str]) -> list[StoredMarket]:
        if market_id is not None:
            market = await self._db.get_market(market_id)
            return [market] if market else []
        return await self._db.list_active_markets()

    @staticmethod
    def _build_record(
        market: StoredMarket, points: list[PriceHistoryPoint]
    ) -> Optional[BreakingMarket]:
        stats = calculate_price_statistics(points)
        if stats is None:
            return None
        latest = points[-1]
        return BreakingMarket(
            **market.model_dump(),
            price_yes=latest.price_yes,
            price_no=latest.price_no,
            price_change_percent=stats.price_change_percent,
            volume_change_percent=stats.volume_change_percent,
            price_high_24h=stats.price_high,
            price_low_24h=stats.price_low,
            volatility_index=stats.volatility_index,
            movement_score=stats.movement_score,
            trend=stats.trend,
            price_history_24h=sample_price_history(points),
        )
