"""Newsletter subscription lifecycle."""

import re
import secrets
from collections.abc import Callable
from datetime import datetime
from typing import Any

from polymarket_breaking.database.repository import Database
from polymarket_breaking.errors import DuplicateWriteError, RateLimitedError, ValidationError
from polymarket_breaking.schemas import (
    FREQUENCIES,
    SubscribeResult,
    UnsubscribeResult,
    utc_now,
)
from polymarket_breaking.utils.logging import get_logger
from polymarket_breaking.utils.rate_limit import RateLimitDecision, RateLimiter

logger = get_logger(__name__)

MAX_EMAIL_LENGTH = 254

EMAIL_PATTERN = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9]"
    r"(?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: Any) -> str:
    """Validate and normalize an email address.

    Raises:
        ValidationError: Missing, malformed or overlong address.
    """
    if email is None or (isinstance(email, str) and not email.strip()):
        raise ValidationError("Email is required")
    if not isinstance(email, str):
        raise ValidationError("Invalid email format")
    normalized = normalize_email(email)
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValidationError("Email is too long")
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError("Invalid email format")
    return normalized


def validate_frequency(frequency: Any) -> str:
    if frequency is None or frequency == "":
        return "daily"
    if frequency not in FREQUENCIES:
        raise ValidationError('Frequency must be either "daily" or "weekly"')
    return frequency


def generate_token() -> str:
    return secrets.token_urlsafe(32)


class SubscriptionRegistry:
    """Creates, reactivates and cancels newsletter subscriptions.

    Subscription attempts are keyed by normalized email and checked against
    the injected rate limiter before any store access.
    """

    def __init__(
        self,
        db: Database,
        rate_limiter: RateLimiter,
        token_factory: Callable[[], str] = generate_token,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._rate_limiter = rate_limiter
        self._token_factory = token_factory
        self._clock = clock

    async def subscribe(
        self, email: Any, frequency: Any = "daily"
    ) -> tuple[SubscribeResult, RateLimitDecision]:
        """Subscribe an address, reactivating or updating an existing row.

        Returns:
            The result and the rate limit decision for response headers.

        Raises:
            ValidationError: Bad email or frequency.
            RateLimitedError: Too many attempts for this email in the window.
        """
        normalized = validate_email(email)
        frequency = validate_frequency(frequency)

        decision = self._rate_limiter.check_and_consume(normalized)
        if not decision.allowed:
            logger.warning(
                "Subscription rate limit exceeded",
                extra={"ctx_retry_after": decision.retry_after},
            )
            raise RateLimitedError(
                f"Rate limit exceeded. Try again in {decision.retry_after} seconds.",
                retry_after=decision.retry_after,
                reset_at=decision.reset_at,
            )

        existing = await self._db.get_subscription_by_email(normalized)

        if existing is None:
            try:
                subscription = await self._db.create_subscription(
                    normalized, frequency, self._token_factory(), self._clock()
                )
            except DuplicateWriteError:
                # A concurrent request created the row after our lookup
                existing = await self._db.get_subscription_by_email(normalized)
                if existing is None:
                    raise
                logger.info(
                    "Subscription created concurrently",
                    extra={"ctx_subscription_id": existing.id},
                )
            else:
                logger.info(
                    "New subscription created",
                    extra={"ctx_subscription_id": subscription.id, "ctx_frequency": frequency},
                )
                return (
                    SubscribeResult(
                        success=True,
                        message="Subscribed successfully",
                        subscription=subscription,
                    ),
                    decision,
                )

        if not existing.active:
            subscription = await self._db.reactivate_subscription(
                existing.id, frequency, self._token_factory()
            )
            logger.info(
                "Subscription reactivated",
                extra={"ctx_subscription_id": subscription.id},
            )
            return (
                SubscribeResult(
                    success=True,
                    message="Subscription reactivated successfully",
                    reactivated=True,
                    subscription=subscription,
                ),
                decision,
            )

        if existing.frequency != frequency:
            subscription = await self._db.update_subscription_frequency(existing.id, frequency)
            logger.info(
                "Subscription frequency updated",
                extra={"ctx_subscription_id": subscription.id, "ctx_frequency": frequency},
            )
            return (
                SubscribeResult(success=True, message="Frequency updated successfully"),
                decision,
            )

        return SubscribeResult(success=True, message="Already subscribed"), decision

    async def unsubscribe(self, token: Any) -> UnsubscribeResult:
        """Deactivate the active subscription owning this token.

        Raises:
            ValidationError: No token was given.
        """
        if not isinstance(token, str) or not token.strip():
            raise ValidationError("Unsubscribe token is required")

        subscription = await self._db.get_active_subscription_by_token(token.strip())
        if subscription is None or not await self._db.deactivate_subscription(
            subscription.id, self._clock()
        ):
            return UnsubscribeResult(
                success=False, message="Invalid or expired unsubscribe link"
            )

        logger.info("Subscription cancelled", extra={"ctx_subscription_id": subscription.id})
        return UnsubscribeResult(
            success=True, message="Successfully unsubscribed from newsletter"
        )
