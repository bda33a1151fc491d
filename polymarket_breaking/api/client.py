"""Gamma market API client."""

import json
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from polymarket_breaking.errors import UpstreamFetchError
from polymarket_breaking.schemas import Market, Outcome, Tag
from polymarket_breaking.utils.cache import TTLCache
from polymarket_breaking.utils.logging import get_logger
from polymarket_breaking.utils.rate_limit import AsyncRateLimiter
from polymarket_breaking.utils.retry import async_retry

logger = get_logger(__name__)

# Gamma rejects overly long condition_ids lists
CONDITION_ID_CHUNK_SIZE = 50


class GammaAPIError(UpstreamFetchError):
    """Gamma API request failed, timed out, or returned an error status."""


def chunked(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _maybe_json(value: Any) -> Any:
    """Gamma encodes some list fields as JSON strings."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return []
    return value


class GammaClient:
    """Async client for the Gamma REST API.

    Handles rate limiting, retries, timeouts and response parsing.
    """

    def __init__(
        self,
        base_url: str = "https://gamma-api.polymarket.com",
        timeout: float = 30.0,
        rate_limit_per_sec: float = 2.0,
        cache: Optional[TTLCache] = None,
        cache_ttl: float = 0.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._rate_limiter = AsyncRateLimiter(rate_limit_per_sec)
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazy initialization of HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("API client closed")

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Make an HTTP request with rate limiting and retry.

        Raises:
            GammaAPIError: On timeouts, transport failures and error statuses.
        """
        client = await self._ensure_client()
        url = f"{self.base_url}{path}"

        async def do_request() -> httpx.Response:
            async with self._rate_limiter:
                response = await client.request(method, url, params=params)
                response.raise_for_status()
                return response

        try:
            response = await async_retry(
                do_request,
                attempts=3,
                base_wait=0.5,
                max_wait=5.0,
            )
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "API request failed",
                extra={
                    "ctx_url": url,
                    "ctx_status": e.response.status_code,
                    "ctx_body": e.response.text[:500],
                },
            )
            raise GammaAPIError(
                f"Gamma API error: {e.response.status_code}",
                status_code=e.response.status_code,
                url=url,
            ) from e
        except httpx.TimeoutException as e:
            logger.error("API request timed out", extra={"ctx_url": url, "ctx_timeout": self.timeout})
            raise GammaAPIError(
                f"Gamma API request timeout after {self.timeout}s: {url}", url=url
            ) from e
        except httpx.TransportError as e:
            logger.error("API transport error", extra={"ctx_url": url, "ctx_error": str(e)})
            raise GammaAPIError(f"Transport error: {e}", url=url) from e
        except ValueError as e:
            raise GammaAPIError(f"Invalid JSON from Gamma API: {url}", url=url) from e

    # ==================== Market Endpoints ====================

    async def list_markets(
        self,
        *,
        active: Optional[bool] = True,
        closed: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
        condition_ids: Optional[Sequence[str]] = None,
    ) -> list[Market]:
        """List markets with optional filters.

        Args:
            active: Filter by active status (None to omit).
            closed: Filter by closed status (None to omit).
            limit: Maximum results per page.
            offset: Pagination offset.
            condition_ids: Restrict to these condition ids (at most one chunk).

        Returns:
            List of Market objects. Unparseable entries are logged and dropped.
        """
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if active is not None:
            params["active"] = str(active).lower()
        if closed is not None:
            params["closed"] = str(closed).lower()
        if condition_ids:
            if len(condition_ids) > CONDITION_ID_CHUNK_SIZE:
                raise ValueError(
                    f"At most {CONDITION_ID_CHUNK_SIZE} condition ids per request"
                )
            params["condition_ids"] = ",".join(condition_ids)

        if self._cache is not None and self._cache_ttl > 0:
            key = ("gamma:list_markets", tuple(sorted(params.items())))
            data, _ = await self._cache.get_or_compute(
                key, self._cache_ttl, lambda: self._request("GET", "/markets", params=params)
            )
        else:
            data = await self._request("GET", "/markets", params=params)

        if not isinstance(data, list):
            logger.warning("Unexpected response format", extra={"ctx_data": str(data)[:200]})
            return []

        markets = []
        for item in data:
            try:
                markets.append(self.parse_market(item))
            except Exception as e:
                logger.warning(
                    "Failed to parse market",
                    extra={"ctx_error": str(e), "ctx_item": str(item)[:200]},
                )
        return markets

    async def get_markets_by_condition_ids(
        self, condition_ids: Sequence[str]
    ) -> list[Market]:
        """Fetch a single chunk of markets by condition id."""
        return await self.list_markets(
            active=True,
            limit=max(len(condition_ids), 1),
            condition_ids=condition_ids,
        )

    @staticmethod
    def parse_market(data: dict[str, Any]) -> Market:
        """Parse market data from an API response.

        Outcomes arrive either as ``[{name, price}]`` or as parallel JSON-string
        arrays ``outcomes`` and ``outcomePrices``.
        """
        raw_outcomes = _maybe_json(data.get("outcomes", []))
        raw_prices = _maybe_json(data.get("outcomePrices", []))

        outcomes: list[Outcome] = []
        if isinstance(raw_outcomes, list):
            for i, entry in enumerate(raw_outcomes):
                if isinstance(entry, dict):
                    outcomes.append(Outcome(name=entry.get("name", ""), price=entry.get("price", 0)))
                elif isinstance(raw_prices, list) and i < len(raw_prices):
                    outcomes.append(Outcome(name=str(entry), price=raw_prices[i]))

        tags = []
        for t in data.get("tags") or []:
            if isinstance(t, dict) and t.get("label"):
                tags.append(Tag(label=t["label"], slug=t.get("slug") or ""))

        return Market(
            condition_id=data.get("conditionId") or data.get("condition_id") or "",
            question=data.get("question", data.get("title", "")),
            description=data.get("description") or None,
            slug=data.get("slug") or "",
            start_date=data.get("startDate") or data.get("start_date"),
            end_date=data.get("endDate") or data.get("end_date"),
            outcomes=outcomes,
            volume=data.get("volume") or data.get("volumeNum"),
            liquidity=data.get("liquidity") or data.get("liquidityNum"),
            active=bool(data.get("active", True)),
            closed=bool(data.get("closed", False)),
            archived=bool(data.get("archived") or False),
            category=data.get("category") or None,
            tags=tags,
            image_url=data.get("imageUrl") or data.get("image") or None,
        )
