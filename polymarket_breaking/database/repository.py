"""Database repository for markets, price history and newsletter subscriptions."""

import asyncio
import json
import uuid
from collections.abc import Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import aiosqlite

from polymarket_breaking.database.models import (
    DUE_SUBSCRIBERS_SQL,
    INSERT_PRICE_POINT_SQL,
    SCHEMA_SQL,
    UPSERT_MARKET_SQL,
)
from polymarket_breaking.errors import DuplicateWriteError
from polymarket_breaking.schemas import (
    Market,
    PriceHistoryPoint,
    StoredMarket,
    Subscription,
)
from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string so lexical order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def minute_bucket(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


def is_unique_violation(exc: Exception) -> bool:
    return isinstance(exc, aiosqlite.IntegrityError) and "UNIQUE" in str(exc).upper()


def _market_row(row: aiosqlite.Row) -> StoredMarket:
    data = dict(row)
    data["outcomes"] = json.loads(data.get("outcomes") or "[]")
    data["tags"] = json.loads(data.get("tags") or "[]")
    for flag in ("active", "closed", "archived"):
        data[flag] = bool(data[flag])
    return StoredMarket.model_validate(data)


def _price_row(row: aiosqlite.Row) -> PriceHistoryPoint:
    return PriceHistoryPoint.model_validate(dict(row))


def _subscription_row(row: aiosqlite.Row) -> Subscription:
    data = dict(row)
    data["active"] = bool(data["active"])
    return Subscription.model_validate(data)


class Database:
    """Async SQLite database repository.

    Manages a single shared connection guarded by a lock and provides the
    persistence operations used by the sync, ranking and newsletter services.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with self._get_connection() as conn:
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()
        logger.info("Database initialized", extra={"ctx_db_path": self.db_path})

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get database connection with lock."""
        async with self._lock:
            if self._connection is None:
                self._connection = await aiosqlite.connect(self.db_path)
                self._connection.row_factory = aiosqlite.Row
                await self._connection.execute("PRAGMA foreign_keys = ON")
            yield self._connection

    # ==================== Market Operations ====================

    async def upsert_market(
        self, market: Market, now: Optional[datetime] = None
    ) -> tuple[str, str]:
        """Insert or update a market keyed by condition_id (last write wins).

        Returns:
            (market_id, "created" | "updated").
        """
        stamp = to_db_timestamp(now or datetime.now(timezone.utc))
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT id FROM markets WHERE condition_id = ?",
                (market.condition_id,),
            )
            existing = await cursor.fetchone()
            market_id = existing["id"] if existing else str(uuid.uuid4())

            await conn.execute(
                UPSERT_MARKET_SQL,
                (
                    market_id,
                    market.condition_id,
                    market.question,
                    market.description,
                    market.slug,
                    to_db_timestamp(market.start_date) if market.start_date else None,
                    to_db_timestamp(market.end_date) if market.end_date else None,
                    json.dumps([o.model_dump() for o in market.outcomes]),
                    market.volume,
                    market.liquidity,
                    1 if market.active else 0,
                    1 if market.closed else 0,
                    1 if market.archived else 0,
                    market.category,
                    json.dumps([t.model_dump() for t in market.tags]),
                    market.image_url,
                    stamp,
                    stamp,
                ),
            )
            await conn.commit()
            return market_id, "updated" if existing else "created"

    async def get_market(self, market_id: str) -> Optional[StoredMarket]:
        """Get market by surrogate id."""
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM markets WHERE id = ?", (market_id,))
            row = await cursor.fetchone()
            return _market_row(row) if row else None

    async def get_market_by_condition_id(self, condition_id: str) -> Optional[StoredMarket]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM markets WHERE condition_id = ?", (condition_id,)
            )
            row = await cursor.fetchone()
            return _market_row(row) if row else None

    async def list_active_markets(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> list[StoredMarket]:
        """List markets that are active and not closed."""
        sql = "SELECT * FROM markets WHERE active = 1 AND closed = 0 ORDER BY id"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = (limit, offset)
        async with self._get_connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return [_market_row(row) for row in rows]

    async def list_condition_ids(self, market_id: Optional[str] = None) -> list[str]:
        """Condition ids for one market, or for every active open market."""
        async with self._get_connection() as conn:
            if market_id:
                cursor = await conn.execute(
                    "SELECT condition_id FROM markets WHERE id = ?", (market_id,)
                )
            else:
                cursor = await conn.execute(
                    "SELECT condition_id FROM markets WHERE active = 1 AND closed = 0 ORDER BY id"
                )
            rows = await cursor.fetchall()
            return [row["condition_id"] for row in rows]

    async def count_markets(self) -> int:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) AS n FROM markets")
            row = await cursor.fetchone()
            return int(row["n"])

    # ==================== Price History Operations ====================

    @staticmethod
    def _price_params(point: PriceHistoryPoint) -> tuple[Any, ...]:
        return (
            point.market_id,
            point.condition_id,
            point.price_yes,
            point.price_no,
            point.volume,
            point.liquidity,
            to_db_timestamp(point.timestamp),
            minute_bucket(point.timestamp),
        )

    async def insert_price_points(self, points: Sequence[PriceHistoryPoint]) -> int:
        """Insert a batch atomically. Any failing row rolls back the whole batch.

        Returns:
            Number of rows inserted.
        """
        if not points:
            return 0
        async with self._get_connection() as conn:
            try:
                await conn.executemany(
                    INSERT_PRICE_POINT_SQL,
                    [self._price_params(p) for p in points],
                )
                await conn.commit()
            except aiosqlite.Error:
                await conn.rollback()
                raise
        return len(points)

    async def insert_price_point(self, point: PriceHistoryPoint) -> None:
        """Insert a single point.

        Raises:
            DuplicateWriteError: A point for this market and minute exists.
        """
        async with self._get_connection() as conn:
            try:
                await conn.execute(INSERT_PRICE_POINT_SQL, self._price_params(point))
                await conn.commit()
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                if is_unique_violation(e):
                    raise DuplicateWriteError(
                        f"Price point already recorded for {point.condition_id} "
                        f"at {minute_bucket(point.timestamp)}"
                    ) from e
                raise

    async def get_price_history(
        self,
        market_ids: Iterable[str],
        since: datetime,
        until: Optional[datetime] = None,
    ) -> list[PriceHistoryPoint]:
        """Points for the given markets in [since, until], oldest first."""
        ids = list(dict.fromkeys(market_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        sql = f"""
            SELECT market_id, condition_id, price_yes, price_no, volume, liquidity, timestamp
            FROM market_price_history
            WHERE market_id IN ({placeholders}) AND timestamp >= ?
        """
        params: list[Any] = [*ids, to_db_timestamp(since)]
        if until is not None:
            sql += " AND timestamp <= ?"
            params.append(to_db_timestamp(until))
        sql += " ORDER BY timestamp ASC, id ASC"

        async with self._get_connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return [_price_row(row) for row in rows]

    async def count_price_points(self, market_id: Optional[str] = None) -> int:
        async with self._get_connection() as conn:
            if market_id:
                cursor = await conn.execute(
                    "SELECT COUNT(*) AS n FROM market_price_history WHERE market_id = ?",
                    (market_id,),
                )
            else:
                cursor = await conn.execute("SELECT COUNT(*) AS n FROM market_price_history")
            row = await cursor.fetchone()
            return int(row["n"])

    # ==================== Subscription Operations ====================

    async def get_subscription_by_email(self, email: str) -> Optional[Subscription]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM breaking_newsletter_subscriptions WHERE email = ?",
                (email,),
            )
            row = await cursor.fetchone()
            return _subscription_row(row) if row else None

    async def get_active_subscription_by_token(self, token: str) -> Optional[Subscription]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM breaking_newsletter_subscriptions
                WHERE unsubscribe_token = ? AND active = 1
                """,
                (token,),
            )
            row = await cursor.fetchone()
            return _subscription_row(row) if row else None

    async def create_subscription(
        self, email: str, frequency: str, token: str, now: datetime
    ) -> Subscription:
        """Insert a new active subscription.

        Raises:
            DuplicateWriteError: The email already has a subscription row.
        """
        subscription_id = str(uuid.uuid4())
        async with self._get_connection() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO breaking_newsletter_subscriptions
                        (id, email, active, frequency, created_at, unsubscribe_token)
                    VALUES (?, ?, 1, ?, ?, ?)
                    """,
                    (subscription_id, email, frequency, to_db_timestamp(now), token),
                )
                await conn.commit()
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                if is_unique_violation(e):
                    raise DuplicateWriteError(f"Subscription already exists for {email}") from e
                raise
        return await self._require_subscription(subscription_id)

    async def reactivate_subscription(
        self, subscription_id: str, frequency: str, token: str
    ) -> Subscription:
        async with self._get_connection() as conn:
            await conn.execute(
                """
                UPDATE breaking_newsletter_subscriptions
                SET active = 1, frequency = ?, unsubscribed_at = NULL, unsubscribe_token = ?
                WHERE id = ?
                """,
                (frequency, token, subscription_id),
            )
            await conn.commit()
        return await self._require_subscription(subscription_id)

    async def update_subscription_frequency(
        self, subscription_id: str, frequency: str
    ) -> Subscription:
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE breaking_newsletter_subscriptions SET frequency = ? WHERE id = ?",
                (frequency, subscription_id),
            )
            await conn.commit()
        return await self._require_subscription(subscription_id)

    async def deactivate_subscription(self, subscription_id: str, now: datetime) -> bool:
        """Deactivate an active subscription. Returns False if it was not active."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                """
                UPDATE breaking_newsletter_subscriptions
                SET active = 0, unsubscribed_at = ?
                WHERE id = ? AND active = 1
                """,
                (to_db_timestamp(now), subscription_id),
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def list_due_subscribers(
        self, frequency: str, sent_before: datetime
    ) -> list[Subscription]:
        """Active subscribers of a frequency never sent to, or last sent before the cutoff."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                DUE_SUBSCRIBERS_SQL, (frequency, to_db_timestamp(sent_before))
            )
            rows = await cursor.fetchall()
            return [_subscription_row(row) for row in rows]

    async def mark_newsletter_sent(self, email: str, now: datetime) -> None:
        async with self._get_connection() as conn:
            await conn.execute(
                "UPDATE breaking_newsletter_subscriptions SET last_sent_at = ? WHERE email = ?",
                (to_db_timestamp(now), email),
            )
            await conn.commit()

    async def _require_subscription(self, subscription_id: str) -> Subscription:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM breaking_newsletter_subscriptions WHERE id = ?",
                (subscription_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            raise LookupError(f"Subscription {subscription_id} not found")
        return _subscription_row(row)

    # ==================== Metadata Operations ====================

    async def get_metadata(self, key: str) -> Optional[str]:
        """Get metadata value by key."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT value FROM metadata WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
            return row["value"] if row else None

    async def set_metadata(self, key: str, value: str) -> None:
        """Set metadata value."""
        async with self._get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO metadata (key, value, updated_at)
                VALUES (?, ?, datetime('now'))
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value),
            )
            await conn.commit()
