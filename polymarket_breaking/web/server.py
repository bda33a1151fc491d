"""aiohttp server exposing the breaking-markets functions over HTTP.

Routes:
- /functions/v1/get-breaking-markets - Ranked breaking markets
- /functions/v1/send-breaking-daily - Newsletter dispatch (cron)
- /functions/v1/subscribe-newsletter - Create or reactivate a subscription
- /functions/v1/unsubscribe-newsletter - Cancel a subscription by token
- /functions/v1/sync-gamma-markets - Active market sync (cron)
- /functions/v1/sync-price-history - Tracked market price sync (cron)
- /api/health - Health check endpoint
"""

from __future__ import annotations

import hmac
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from aiohttp import web

from polymarket_breaking.database.repository import Database
from polymarket_breaking.errors import RateLimitedError, ValidationError
from polymarket_breaking.services.market_sync import MAX_BATCH_SIZE, MarketSyncWorker
from polymarket_breaking.services.newsletter import (
    DEFAULT_NEWSLETTER_LIMIT,
    NewsletterDispatcher,
)
from polymarket_breaking.services.ranker import BreakingMarketsQuery, BreakingMarketsRanker
from polymarket_breaking.services.subscriptions import SubscriptionRegistry
from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)

FUNCTIONS_PREFIX = "/functions/v1"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

BREAKING_CACHE_CONTROL = "public, s-maxage=30, max-age=30"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_epoch(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _error(message: str, status: int, **extra: Any) -> web.Response:
    payload = {"error": message, **extra, "timestamp": _timestamp()}
    return web.json_response(payload, status=status)


async def _read_json(request: web.Request) -> Optional[dict[str, Any]]:
    """JSON object body, or None when the body is missing or not an object."""
    if not request.can_read_body:
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def _read_params(request: web.Request) -> Mapping[str, Any]:
    """Query string for GET, JSON body for POST (invalid JSON means no params)."""
    if request.method == "POST":
        return await _read_json(request) or {}
    return request.query


def _pick(params: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = params.get(name)
        if value not in (None, ""):
            return value
    return None


def _parse_batch_size(value: Any) -> Optional[int]:
    if value is None:
        return None
    message = f"batchSize must be between 1 and {MAX_BATCH_SIZE}"
    if isinstance(value, bool):
        raise ValidationError(message)
    try:
        batch_size = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(message) from e
    if not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ValidationError(message)
    return batch_size


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Answer preflight requests, attach CORS headers, and JSON-ify 405s."""
    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(text="ok")
    else:
        try:
            response = await handler(request)
        except web.HTTPMethodNotAllowed:
            response = _error("Method not allowed", 405)
    response.headers.update(CORS_HEADERS)
    return response


class WebServer:
    """HTTP server hosting the breaking-markets functions.

    Example:
        server = WebServer(
            ranker=ranker,
            dispatcher=dispatcher,
            registry=registry,
            sync_worker=sync_worker,
            db=db,
            host="127.0.0.1",
            port=8080,
        )
        await server.start()
        # ... application runs ...
        await server.stop()
    """

    def __init__(
        self,
        ranker: BreakingMarketsRanker,
        dispatcher: NewsletterDispatcher,
        registry: SubscriptionRegistry,
        sync_worker: MarketSyncWorker,
        db: Database,
        cron_secret: Optional[str] = None,
        host: str = "127.0.0.1",
        port: int = 8080,
    ) -> None:
        """Initialize the web server.

        Args:
            ranker: Breaking markets ranking service.
            dispatcher: Newsletter dispatcher.
            registry: Subscription registry.
            sync_worker: Gamma market sync worker.
            db: Database used by the health check.
            cron_secret: Bearer secret for scheduled endpoints (None disables the check).
            host: Host address to bind the server to.
            port: Port number to listen on.
        """
        self._ranker = ranker
        self._dispatcher = dispatcher
        self._registry = registry
        self._sync_worker = sync_worker
        self._db = db
        self._cron_secret = cron_secret
        self._host = host
        self._port = port

        self._app = web.Application(middlewares=[cors_middleware])
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

        self._register_routes()

    def _register_routes(self) -> None:
        """Register all HTTP routes."""
        router = self._app.router
        router.add_get("/api/health", self._handle_health)

        both = {
            "get-breaking-markets": self._handle_breaking_markets,
            "unsubscribe-newsletter": self._handle_unsubscribe,
            "sync-gamma-markets": self._handle_sync_gamma_markets,
            "sync-price-history": self._handle_sync_price_history,
        }
        for name, handler in both.items():
            router.add_get(f"{FUNCTIONS_PREFIX}/{name}", handler)
            router.add_post(f"{FUNCTIONS_PREFIX}/{name}", handler)

        router.add_post(f"{FUNCTIONS_PREFIX}/send-breaking-daily", self._handle_send_daily)
        router.add_post(f"{FUNCTIONS_PREFIX}/subscribe-newsletter", self._handle_subscribe)

    async def start(self) -> None:
        """Start the HTTP server.

        Raises:
            OSError: If the port is already in use.
        """
        if self._runner is not None:
            logger.warning("Web server already running")
            return

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info(
            "Web server started",
            extra={"ctx_host": self._host, "ctx_port": self._port},
        )

    async def stop(self) -> None:
        """Stop the HTTP server and cleanup resources."""
        if self._site is not None:
            await self._site.stop()
            self._site = None

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Web server stopped")

    def _authorized(self, request: web.Request) -> bool:
        if not self._cron_secret:
            return True
        supplied = request.headers.get("Authorization", "")
        return hmac.compare_digest(supplied, f"Bearer {self._cron_secret}")

    # ==================== Handlers ====================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        try:
            payload = {
                "status": "ok",
                "markets": await self._db.count_markets(),
                "last_sync": await self._db.get_metadata("last_active_sync_time"),
                "timestamp": _timestamp(),
            }
            return web.json_response(payload)
        except Exception as e:
            logger.error("Health check failed", extra={"ctx_error": str(e)})
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_breaking_markets(self, request: web.Request) -> web.Response:
        """Handle GET|POST /functions/v1/get-breaking-markets."""
        try:
            query = BreakingMarketsQuery.from_params(await _read_params(request))
            markets, cached = await self._ranker.get_breaking_markets(query)
        except ValidationError as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.error("Breaking markets request failed", extra={"ctx_error": str(e)})
            return _error(str(e), 500, details=type(e).__name__)

        payload = {
            "success": True,
            "data": [m.to_response() for m in markets],
            "count": len(markets),
            "timestamp": _timestamp(),
            "cached": cached,
        }
        return web.json_response(
            payload, headers={"Cache-Control": BREAKING_CACHE_CONTROL}
        )

    async def _handle_send_daily(self, request: web.Request) -> web.Response:
        """Handle POST /functions/v1/send-breaking-daily."""
        if not self._authorized(request):
            return _error("Unauthorized", 401)

        body = await _read_json(request) or {}
        try:
            result = await self._dispatcher.dispatch(
                frequency=body.get("frequency") or "daily",
                limit=body.get("limit") or DEFAULT_NEWSLETTER_LIMIT,
            )
        except ValidationError as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.error("Newsletter send failed", extra={"ctx_error": str(e)})
            return _error(str(e), 500, details=type(e).__name__)

        return web.json_response(result.model_dump(mode="json"))

    async def _handle_subscribe(self, request: web.Request) -> web.Response:
        """Handle POST /functions/v1/subscribe-newsletter."""
        body = await _read_json(request)
        if body is None:
            return _error("Request body is required", 400)

        try:
            result, decision = await self._registry.subscribe(
                body.get("email"), body.get("frequency") or "daily"
            )
        except ValidationError as e:
            return _error(str(e), 400)
        except RateLimitedError as e:
            reset_at = _iso_from_epoch(e.reset_at)
            return web.json_response(
                {
                    "error": "Too many subscription attempts",
                    "details": f"Rate limit exceeded. Please try again after {reset_at}.",
                    "resetAt": reset_at,
                    "timestamp": _timestamp(),
                },
                status=429,
                headers={"Retry-After": str(e.retry_after)},
            )
        except Exception as e:
            logger.error("Subscription failed", extra={"ctx_error": str(e)})
            return _error(str(e), 500, details=type(e).__name__)

        return web.json_response(
            result.to_response(),
            headers={
                "X-RateLimit-Remaining": str(decision.remaining),
                "X-RateLimit-Reset": _iso_from_epoch(decision.reset_at),
            },
        )

    async def _handle_unsubscribe(self, request: web.Request) -> web.Response:
        """Handle GET|POST /functions/v1/unsubscribe-newsletter."""
        params = await _read_params(request)
        try:
            result = await self._registry.unsubscribe(params.get("token"))
        except ValidationError as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.error("Unsubscribe failed", extra={"ctx_error": str(e)})
            return _error(str(e), 500, details=type(e).__name__)

        if not result.success:
            return _error(result.message, 400, success=False)
        return web.json_response(result.model_dump())

    async def _handle_sync_gamma_markets(self, request: web.Request) -> web.Response:
        """Handle GET|POST /functions/v1/sync-gamma-markets."""
        if not self._authorized(request):
            return _error("Unauthorized", 401)

        try:
            result = await self._sync_worker.sync_active()
        except Exception as e:
            logger.error("Gamma market sync failed", extra={"ctx_error": str(e)})
            return _error(str(e), 500, details=type(e).__name__)
        return web.json_response(result.to_response())

    async def _handle_sync_price_history(self, request: web.Request) -> web.Response:
        """Handle GET|POST /functions/v1/sync-price-history."""
        if not self._authorized(request):
            return _error("Unauthorized", 401)

        params = await _read_params(request)
        try:
            result = await self._sync_worker.sync_tracked(
                market_id=_pick(params, "market_id", "marketId"),
                condition_id=_pick(params, "condition_id", "conditionId"),
                batch_size=_parse_batch_size(_pick(params, "batch_size", "batchSize")),
            )
        except ValidationError as e:
            return _error(str(e), 400)
        except Exception as e:
            logger.error("Price history sync failed", extra={"ctx_error": str(e)})
            return _error(str(e), 500, details=type(e).__name__)
        return web.json_response(result.to_response())

    @property
    def app(self) -> web.Application:
        """The underlying aiohttp application."""
        return self._app

    @property
    def host(self) -> str:
        """Get the configured host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the configured port number."""
        return self._port

    @property
    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._runner is not None


__all__ = ["WebServer", "cors_middleware"]
