"""Business logic services."""

from polymarket_breaking.services.market_sync import MarketSyncWorker
from polymarket_breaking.services.newsletter import NewsletterDispatcher
from polymarket_breaking.services.notifiers import (
    LogNotifier,
    Notifier,
    ResendNotifier,
    SendGridNotifier,
    SendResult,
    build_notifiers,
)
from polymarket_breaking.services.ranker import BreakingMarketsQuery, BreakingMarketsRanker
from polymarket_breaking.services.subscriptions import SubscriptionRegistry

__all__ = [
    "BreakingMarketsQuery",
    "BreakingMarketsRanker",
    "LogNotifier",
    "MarketSyncWorker",
    "NewsletterDispatcher",
    "Notifier",
    "ResendNotifier",
    "SendGridNotifier",
    "SendResult",
    "SubscriptionRegistry",
    "build_notifiers",
]
