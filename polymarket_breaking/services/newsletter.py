"""Breaking-markets newsletter: rendering and batched dispatch."""

import asyncio
import html
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from functools import lru_cache
from importlib import resources
from string import Template
from typing import Optional
from urllib.parse import quote

import aiosqlite

from polymarket_breaking.database.repository import Database
from polymarket_breaking.errors import DataSourceError, PartialBatchFailure, ValidationError
from polymarket_breaking.schemas import (
    FREQUENCIES,
    BreakingMarket,
    DispatchResult,
    Subscription,
    utc_now,
)
from polymarket_breaking.services.notifiers import Notifier, SendResult
from polymarket_breaking.services.ranker import BreakingMarketsQuery, BreakingMarketsRanker
from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)

NEWSLETTER_MIN_PRICE_CHANGE = 0.03
NEWSLETTER_TIME_RANGE_HOURS = 24
DEFAULT_NEWSLETTER_LIMIT = 10
DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY = 1.0
DEFAULT_UNSUBSCRIBE_PATH = "/functions/v1/unsubscribe-newsletter"

# A daily subscriber becomes due again slightly before a full day has passed
ELIGIBILITY_WINDOWS = {
    "daily": timedelta(hours=23),
    "weekly": timedelta(days=7),
}

_RANK_COLORS = {1: ("#fbbf24", "#fef3c7"), 2: ("#94a3b8", "#f1f5f9"), 3: ("#b45309", "#fef3c7")}
_DEFAULT_RANK_COLORS = ("#64748b", "#f1f5f9")
_TREND_STYLES = {
    "up": ("▲", "#22c55e"),
    "down": ("▼", "#ef4444"),
    "neutral": ("─", "#64748b"),
}


def eligibility_cutoff(frequency: str, now: datetime) -> datetime:
    """Subscribers last sent before this instant are due."""
    return now - ELIGIBILITY_WINDOWS[frequency]


@lru_cache
def load_template() -> Template:
    text = (
        resources.files("polymarket_breaking")
        .joinpath("templates/newsletter.html")
        .read_text(encoding="utf-8")
    )
    return Template(text)


def format_change(change: float) -> str:
    """Signed percentage with one decimal, e.g. ``+12.5%``."""
    percent = change * 100
    return f"+{percent:.1f}%" if change >= 0 else f"{percent:.1f}%"


def render_market_card(market: BreakingMarket, rank: int, base_url: str) -> str:
    rank_color, rank_bg = _RANK_COLORS.get(rank, _DEFAULT_RANK_COLORS)
    trend_icon, trend_color = _TREND_STYLES[market.trend]
    link = f"{base_url}/markets/{quote(market.slug or market.id)}"

    return f"""
    <tr>
      <td style="padding: 16px 40px; border-bottom: 1px solid #f1f5f9;">
        <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%">
          <tr>
            <td width="50" valign="top">
              <div style="width: 40px; height: 40px; line-height: 40px; text-align: center; background-color: {rank_bg}; border-radius: 50%;">
                <span style="color: {rank_color}; font-size: 16px; font-weight: 700;">{rank}</span>
              </div>
            </td>
            <td valign="top">
              <a href="{html.escape(link)}" style="text-decoration: none; color: inherit;">
                <p style="margin: 0 0 6px 0; color: #1e293b; font-size: 16px; font-weight: 600; line-height: 1.4;">{html.escape(market.question)}</p>
              </a>
              <span style="color: #64748b; font-size: 13px;">Current Price: </span>
              <span style="color: #1e293b; font-size: 13px; font-weight: 600;">{market.price_yes * 100:.1f}c</span>
              <span style="padding-left: 16px; color: {trend_color}; font-size: 13px; font-weight: 500;">{trend_icon} {format_change(market.price_change_percent)}</span>
            </td>
          </tr>
        </table>
      </td>
    </tr>"""


def render_subject(now: datetime, frequency: str = "daily") -> str:
    edition = "Weekly" if frequency == "weekly" else "Daily"
    return f"Breaking Markets {edition} - {now.strftime('%b')} {now.day}"


def render_email(
    markets: Sequence[BreakingMarket],
    email: str,
    unsubscribe_token: str,
    base_url: str,
    now: datetime,
    unsubscribe_path: str = DEFAULT_UNSUBSCRIBE_PATH,
) -> str:
    """Render the full newsletter HTML for one subscriber."""
    base_url = base_url.rstrip("/")
    cards = "".join(
        render_market_card(market, rank, base_url)
        for rank, market in enumerate(markets, start=1)
    )
    unsubscribe_url = (
        f"{base_url}/{unsubscribe_path.lstrip('/')}?token={quote(unsubscribe_token)}"
    )
    return load_template().safe_substitute(
        preview_text=f"Top {len(markets)} breaking markets today from Palpiteiros",
        date=f"{now.strftime('%A, %B')} {now.day}, {now.year}",
        market_count=str(len(markets)),
        markets_html=cards,
        base_url=html.escape(base_url),
        email=html.escape(email),
        unsubscribe_url=html.escape(unsubscribe_url),
    )


class NewsletterDispatcher:
    """Sends the ranked markets to every due subscriber.

    Notifiers are tried in order and the first success wins. A subscriber
    whose delivery fails is recorded and the run moves on; only failures to
    load markets or subscribers abort the run.
    """

    def __init__(
        self,
        db: Database,
        ranker: BreakingMarketsRanker,
        notifiers: Sequence[Notifier],
        site_url: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        unsubscribe_path: str = DEFAULT_UNSUBSCRIBE_PATH,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._ranker = ranker
        self._notifiers = list(notifiers)
        self._site_url = site_url
        self._batch_size = max(1, batch_size)
        self._batch_delay = batch_delay
        self._unsubscribe_path = unsubscribe_path
        self._clock = clock
        self._sleep = sleep

    async def dispatch(
        self,
        frequency: str = "daily",
        limit: int = DEFAULT_NEWSLETTER_LIMIT,
    ) -> DispatchResult:
        """Send one newsletter edition.

        Args:
            frequency: "daily" or "weekly".
            limit: Number of markets to include (1-100).

        Returns:
            DispatchResult with sent/failed/skipped counters.

        Raises:
            ValidationError: Unknown frequency or out-of-range limit.
            DataSourceError: Markets or subscribers could not be loaded.
        """
        if frequency not in FREQUENCIES:
            raise ValidationError('Frequency must be either "daily" or "weekly"')
        query = BreakingMarketsQuery(
            limit=limit,
            min_price_change=NEWSLETTER_MIN_PRICE_CHANGE,
            time_range_hours=NEWSLETTER_TIME_RANGE_HOURS,
        )

        started = time.monotonic()
        now = self._clock()
        result = DispatchResult(timestamp=now)
        logger.info("Starting newsletter send", extra={"ctx_frequency": frequency})

        markets = await self._ranker.rank(query, now=now)
        if not markets:
            logger.info("No breaking markets to send")
            result.duration_ms = int((time.monotonic() - started) * 1000)
            return result

        try:
            subscribers = await self._db.list_due_subscribers(
                frequency, eligibility_cutoff(frequency, now)
            )
        except (aiosqlite.Error, OSError) as e:
            raise DataSourceError(f"Failed to fetch subscribers: {e}") from e

        logger.info(
            "Fetched newsletter inputs",
            extra={"ctx_markets": len(markets), "ctx_subscribers": len(subscribers)},
        )

        subject = render_subject(now, frequency)
        for start in range(0, len(subscribers), self._batch_size):
            if start > 0 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)
            for subscriber in subscribers[start:start + self._batch_size]:
                await self._deliver(subscriber, markets, subject, now, result)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Newsletter send complete",
            extra={
                "ctx_sent": result.sent,
                "ctx_failed": result.failed,
                "ctx_skipped": result.skipped,
                "ctx_duration_ms": result.duration_ms,
            },
        )
        return result

    async def _deliver(
        self,
        subscriber: Subscription,
        markets: Sequence[BreakingMarket],
        subject: str,
        now: datetime,
        result: DispatchResult,
    ) -> None:
        if not subscriber.unsubscribe_token:
            result.skipped += 1
            logger.warning(
                "Skipping subscriber without unsubscribe token",
                extra={"ctx_subscription_id": subscriber.id},
            )
            return

        try:
            body = render_email(
                markets,
                subscriber.email,
                subscriber.unsubscribe_token,
                self._site_url,
                now,
                unsubscribe_path=self._unsubscribe_path,
            )
            send = await self.send_with_fallback(subscriber.email, subject, body)
            if not send.ok:
                raise RuntimeError(send.error or "Failed to send email")
            await self._db.mark_newsletter_sent(subscriber.email, now)
            result.sent += 1
        except Exception as e:
            failure = PartialBatchFailure(item=subscriber.email, error=str(e))
            result.failed += 1
            result.errors.append(str(failure))
            logger.error(
                "Newsletter delivery failed",
                extra={"ctx_subscription_id": subscriber.id, "ctx_error": str(e)},
            )

    async def send_with_fallback(self, to: str, subject: str, body: str) -> SendResult:
        """Try each notifier in order; return the first success or the last failure."""
        last: Optional[SendResult] = None
        for notifier in self._notifiers:
            try:
                last = await notifier.send(to, subject, body)
            except Exception as e:
                last = SendResult(ok=False, provider=notifier.name, error=str(e))
            if last.ok:
                return last
            logger.info(
                "Email provider failed, trying next",
                extra={"ctx_provider": last.provider, "ctx_error": last.error},
            )
        return last or SendResult(ok=False, provider="none", error="No email provider configured")
