"""Main entry point for the breaking-markets service."""

import asyncio
import signal
import sys
from typing import Optional

from polymarket_breaking.api.client import GammaClient
from polymarket_breaking.config import Settings, get_settings
from polymarket_breaking.database.repository import Database
from polymarket_breaking.services.market_sync import MarketSyncWorker
from polymarket_breaking.services.newsletter import NewsletterDispatcher
from polymarket_breaking.services.notifiers import Notifier, build_notifiers
from polymarket_breaking.services.ranker import BreakingMarketsRanker
from polymarket_breaking.services.subscriptions import SubscriptionRegistry
from polymarket_breaking.utils.cache import TTLCache
from polymarket_breaking.utils.logging import get_logger, setup_logging
from polymarket_breaking.utils.rate_limit import FixedWindowRateLimiter
from polymarket_breaking.web.server import WebServer

logger = get_logger(__name__)


class Application:
    """Main application orchestrator.

    Coordinates all components:
    - Database
    - Gamma API client
    - Sync, ranking, newsletter and subscription services
    - HTTP server
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db: Optional[Database] = None
        self._client: Optional[GammaClient] = None
        self._sync_worker: Optional[MarketSyncWorker] = None
        self._notifiers: list[Notifier] = []
        self._web_server: Optional[WebServer] = None
        self._shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize all components.

        Raises:
            ConfigurationError: Email delivery is not configured for production.
        """
        logger.info("Initializing application")
        settings = self._settings

        # Fail before touching any resource
        self._notifiers = build_notifiers(settings)

        # Database
        self._db = Database(settings.db_path)
        await self._db.initialize()

        # API Client
        self._client = GammaClient(
            base_url=settings.api_url,
            timeout=settings.http_timeout,
            rate_limit_per_sec=settings.http_rps,
            cache=TTLCache(),
            cache_ttl=settings.api_cache_ttl,
        )

        # Services
        self._sync_worker = MarketSyncWorker(
            self._client,
            self._db,
            page_size=settings.sync_page_size,
            max_markets=settings.sync_max_markets,
            batch_size=settings.sync_batch_size,
        )
        ranker = BreakingMarketsRanker(
            self._db,
            cache=TTLCache(),
            cache_ttl=settings.ranking_cache_ttl,
        )
        dispatcher = NewsletterDispatcher(
            self._db,
            ranker,
            self._notifiers,
            site_url=settings.site_url,
            batch_size=settings.newsletter_batch_size,
            batch_delay=settings.newsletter_batch_delay_sec,
            unsubscribe_path=settings.unsubscribe_path,
        )
        registry = SubscriptionRegistry(
            self._db,
            FixedWindowRateLimiter(
                max_attempts=settings.subscribe_rate_limit,
                window_seconds=settings.subscribe_rate_window_sec,
            ),
        )

        # HTTP server
        self._web_server = WebServer(
            ranker=ranker,
            dispatcher=dispatcher,
            registry=registry,
            sync_worker=self._sync_worker,
            db=self._db,
            cron_secret=settings.cron_secret,
            host=settings.web_host,
            port=settings.web_port,
        )
        await self._web_server.start()

        logger.info("Application initialized")

    async def shutdown(self) -> None:
        """Graceful shutdown of all components."""
        logger.info("Shutting down application")

        if self._sync_worker:
            await self._sync_worker.stop_periodic_sync()

        if self._web_server:
            await self._web_server.stop()

        for notifier in self._notifiers:
            await notifier.close()

        if self._client:
            await self._client.close()

        if self._db:
            await self._db.close()

        logger.info("Application shutdown complete")

    async def run(self) -> None:
        """Run the application.

        Startup flow:
        1. Initialize all components and start the HTTP server
        2. Start periodic syncing when an interval is configured
        3. Wait for shutdown
        """
        await self.initialize()

        if not self._sync_worker:
            logger.error("Sync worker not initialized, cannot run")
            return

        if self._settings.sync_interval_sec > 0:
            logger.info("Starting background market sync")
            await self._sync_worker.start_periodic_sync(self._settings.sync_interval_sec)
        else:
            logger.info("Background sync disabled; relying on scheduled endpoints")

        # Wait for shutdown signal
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request application shutdown."""
        self._shutdown_event.set()


# Global application instance for signal handlers
_app: Optional[Application] = None


def _handle_signal(signum: int, frame) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}, initiating shutdown")
    if _app:
        _app.request_shutdown()


async def async_main() -> None:
    """Async main entry point."""
    global _app

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    logger.info(
        "Starting breaking markets service",
        extra={
            "ctx_api_url": settings.api_url,
            "ctx_db_path": settings.db_path,
            "ctx_web_addr": f"http://{settings.web_host}:{settings.web_port}",
            "ctx_sync_interval": settings.sync_interval_sec or "disabled",
            "ctx_deploy_env": settings.deploy_env,
        },
    )

    _app = Application(settings)

    # Setup signal handlers
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        await _app.run()
    finally:
        await _app.shutdown()


def cli_main() -> None:
    """CLI entry point."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    cli_main()
