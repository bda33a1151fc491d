"""Market sync worker: pulls Gamma markets, upserts them and records prices."""

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Optional

from polymarket_breaking.api.client import (
    CONDITION_ID_CHUNK_SIZE,
    GammaAPIError,
    GammaClient,
    chunked,
)
from polymarket_breaking.database.repository import Database
from polymarket_breaking.errors import (
    DuplicateWriteError,
    UpstreamFetchError,
    ValidationError,
)
from polymarket_breaking.schemas import (
    Market,
    PriceHistoryPoint,
    SyncError,
    SyncResult,
    utc_now,
)
from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 500


class MarketSyncWorker:
    """Keeps the market table and price history in step with the Gamma API.

    Features:
    - Active-market sync with pagination
    - Tracked-market sync by condition id, chunked to the API's limit
    - Idempotent market upsert keyed by condition_id
    - One price point per market per run, written bulk-first with a
      row-by-row fallback that classifies duplicates as skips
    - Periodic background syncing
    """

    def __init__(
        self,
        client: GammaClient,
        db: Database,
        page_size: int = 100,
        max_markets: int = 1000,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._db = db
        self._clock = clock
        self._page_size = page_size
        self._max_markets = max_markets
        self._batch_size = self._validate_batch_size(batch_size)
        self._sync_lock = asyncio.Lock()
        self._is_running = False
        self._sync_task: Optional[asyncio.Task] = None

    @staticmethod
    def _validate_batch_size(batch_size: int) -> int:
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ValidationError(f"batchSize must be between 1 and {MAX_BATCH_SIZE}")
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValidationError(f"batchSize must be between 1 and {MAX_BATCH_SIZE}")
        return batch_size

    # ==================== Entry Points ====================

    async def sync_active(self) -> SyncResult:
        """Sync every active, open market the API reports."""
        async with self._sync_lock:
            started = time.monotonic()
            logger.info("Starting active market sync")

            markets: list[Market] = []
            offset = 0
            while len(markets) < self._max_markets:
                page = await self._client.list_markets(
                    active=True,
                    closed=False,
                    limit=self._page_size,
                    offset=offset,
                )
                if not page:
                    break
                markets.extend(page)
                if len(page) < self._page_size:
                    break
                offset += self._page_size

            result = await self._sync_markets(markets[: self._max_markets])
            return await self._finish(result, started, "active")

    async def sync_tracked(
        self,
        market_id: Optional[str] = None,
        condition_id: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> SyncResult:
        """Refresh markets already in the store (or one explicit condition id).

        Raises:
            ValidationError: Both market_id and condition_id were given.
            UpstreamFetchError: Every chunk request to the API failed.
        """
        if market_id and condition_id:
            raise ValidationError("Cannot specify both marketId and conditionId")
        effective_batch = (
            self._validate_batch_size(batch_size) if batch_size is not None else None
        )

        async with self._sync_lock:
            started = time.monotonic()

            if condition_id:
                condition_ids = [condition_id]
            else:
                condition_ids = await self._db.list_condition_ids(market_id)

            if not condition_ids:
                logger.info("No active markets found in database")
                return await self._finish(SyncResult(), started, "tracked")

            logger.info(
                "Starting tracked market sync",
                extra={"ctx_condition_ids": len(condition_ids)},
            )

            markets: list[Market] = []
            chunks = chunked(condition_ids, CONDITION_ID_CHUNK_SIZE)
            failed_chunks: list[SyncError] = []
            for chunk in chunks:
                try:
                    markets.extend(await self._client.get_markets_by_condition_ids(chunk))
                except GammaAPIError as e:
                    logger.error(
                        "Gamma API request failed for chunk",
                        extra={"ctx_chunk_size": len(chunk), "ctx_error": str(e)},
                    )
                    failed_chunks.append(SyncError(condition_id=",".join(chunk), error=str(e)))

            if chunks and len(failed_chunks) == len(chunks):
                raise UpstreamFetchError(
                    f"All {len(chunks)} Gamma API requests failed: {failed_chunks[0].error}"
                )

            result = await self._sync_markets(markets, batch_size=effective_batch)
            result.failed_chunks = len(failed_chunks)
            result.errors.extend(failed_chunks)
            return await self._finish(result, started, "tracked")

    # ==================== Pipeline ====================

    async def _sync_markets(
        self,
        markets: Sequence[Market],
        batch_size: Optional[int] = None,
    ) -> SyncResult:
        """Upsert each market and record one price point per upserted market."""
        result = SyncResult(total_markets=len(markets))
        synced_at = self._clock()
        seen: set[str] = set()
        points: list[PriceHistoryPoint] = []

        for market in markets:
            if not market.condition_id:
                result.invalid += 1
                logger.debug("Skipping market without condition id")
                continue
            if market.condition_id in seen:
                result.repeated += 1
                logger.debug(
                    "Skipping market repeated in response",
                    extra={"ctx_condition_id": market.condition_id},
                )
                continue
            seen.add(market.condition_id)

            try:
                market_id, outcome = await self._db.upsert_market(market, now=synced_at)
            except Exception as e:
                result.failed += 1
                result.errors.append(SyncError(condition_id=market.condition_id, error=str(e)))
                logger.warning(
                    "Failed to persist market",
                    extra={"ctx_condition_id": market.condition_id, "ctx_error": str(e)},
                )
                continue

            result.upserted += 1
            if outcome == "created":
                result.created += 1
            else:
                result.updated += 1

            point = self.build_price_point(market, market_id, synced_at)
            if point is None:
                result.missing_price += 1
                logger.warning(
                    "Skipping price point: missing Yes outcome",
                    extra={"ctx_condition_id": market.condition_id},
                )
                continue
            points.append(point)

        await self._write_price_points(points, batch_size or self._batch_size, result)
        return result

    @staticmethod
    def build_price_point(
        market: Market, market_id: str, timestamp: datetime
    ) -> Optional[PriceHistoryPoint]:
        yes = market.yes_price
        if yes is None:
            return None
        no = market.no_price
        return PriceHistoryPoint(
            market_id=market_id,
            condition_id=market.condition_id,
            price_yes=yes,
            price_no=no if no is not None else 1.0 - yes,
            volume=market.volume,
            liquidity=market.liquidity,
            timestamp=timestamp,
        )

    async def _write_price_points(
        self,
        points: Sequence[PriceHistoryPoint],
        batch_size: int,
        result: SyncResult,
    ) -> None:
        """Bulk insert per batch; on failure retry that batch one row at a time."""
        total_batches = (len(points) + batch_size - 1) // batch_size
        for number, start in enumerate(range(0, len(points), batch_size), start=1):
            batch = points[start:start + batch_size]
            logger.debug(
                "Processing price batch",
                extra={"ctx_batch": number, "ctx_batches": total_batches},
            )
            try:
                result.synced += await self._db.insert_price_points(batch)
                continue
            except Exception as e:
                logger.info(
                    "Batch insert failed, retrying row by row",
                    extra={"ctx_batch": number, "ctx_error": str(e)},
                )

            for point in batch:
                try:
                    await self._db.insert_price_point(point)
                    result.synced += 1
                except DuplicateWriteError:
                    result.skipped += 1
                    logger.debug(
                        "Skipped duplicate price point",
                        extra={"ctx_condition_id": point.condition_id},
                    )
                except Exception as e:
                    result.failed += 1
                    result.errors.append(SyncError(condition_id=point.condition_id, error=str(e)))
                    logger.error(
                        "Error inserting price point",
                        extra={"ctx_condition_id": point.condition_id, "ctx_error": str(e)},
                    )

    async def _finish(self, result: SyncResult, started: float, kind: str) -> SyncResult:
        result.duration_ms = int((time.monotonic() - started) * 1000)
        result.timestamp = self._clock()

        try:
            await self._db.set_metadata(f"last_{kind}_sync_time", result.timestamp.isoformat())
            await self._db.set_metadata(f"last_{kind}_sync_synced", str(result.synced))
            await self._db.set_metadata(f"last_{kind}_sync_failed", str(result.failed))
        except Exception as e:
            logger.warning("Failed to record sync metadata", extra={"ctx_error": str(e)})

        logger.info(
            "Market sync complete",
            extra={
                "ctx_kind": kind,
                "ctx_total_markets": result.total_markets,
                "ctx_upserted": result.upserted,
                "ctx_synced": result.synced,
                "ctx_skipped": result.skipped,
                "ctx_failed": result.failed,
                "ctx_missing_price": result.missing_price,
                "ctx_duration_ms": result.duration_ms,
            },
        )
        return result

    # ==================== Periodic Sync ====================

    async def start_periodic_sync(self, interval_seconds: int) -> None:
        """Start background syncing of active markets and their prices."""
        if self._is_running:
            logger.warning("Periodic sync already running")
            return

        self._is_running = True
        self._sync_task = asyncio.create_task(self._periodic_sync_loop(interval_seconds))
        logger.info("Started periodic sync", extra={"ctx_interval": interval_seconds})

    async def _periodic_sync_loop(self, interval_seconds: int) -> None:
        while self._is_running:
            try:
                await self.sync_active()
            except Exception as e:
                logger.error("Periodic sync failed", extra={"ctx_error": str(e)})

            await asyncio.sleep(interval_seconds)

    async def stop_periodic_sync(self) -> None:
        """Stop periodic syncing."""
        self._is_running = False
        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        logger.info("Stopped periodic sync")
