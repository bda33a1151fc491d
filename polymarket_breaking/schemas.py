"""Pydantic models for markets, price history, rankings and subscriptions."""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Trend = Literal["up", "down", "neutral"]
Frequency = Literal["daily", "weekly"]

FREQUENCIES: tuple[str, ...] = ("daily", "weekly")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse the timestamp shapes seen from the API and the store.

    Naive values are assumed to be UTC. Unparseable input yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Unix timestamp in milliseconds
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Outcome(BaseModel):
    """One tradable outcome of a market with its implied probability."""

    name: str
    price: float = Field(ge=0.0, le=1.0)


class Tag(BaseModel):
    label: str
    slug: str = ""


class Market(BaseModel):
    """Market as reported by the Gamma API."""

    model_config = ConfigDict(populate_by_name=True)

    condition_id: str = Field(..., alias="conditionId")
    question: str
    description: Optional[str] = None
    slug: str = ""
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    outcomes: list[Outcome] = Field(default_factory=list)
    volume: Optional[float] = Field(default=None, ge=0)
    liquidity: Optional[float] = Field(default=None, ge=0)
    active: bool = True
    closed: bool = False
    archived: bool = False
    category: Optional[str] = None
    tags: list[Tag] = Field(default_factory=list)
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def parse_dates(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @property
    def yes_price(self) -> Optional[float]:
        """Price of the outcome named "Yes", if present."""
        for outcome in self.outcomes:
            if outcome.name.lower() == "yes":
                return outcome.price
        return None

    @property
    def no_price(self) -> Optional[float]:
        """Price of "No", defaulting to the complement of "Yes"."""
        for outcome in self.outcomes:
            if outcome.name.lower() == "no":
                return outcome.price
        yes = self.yes_price
        return None if yes is None else 1.0 - yes


class StoredMarket(Market):
    """Market row as persisted, with its surrogate id."""

    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def parse_row_dates(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)


class PriceHistoryPoint(BaseModel):
    """Immutable price observation for a market."""

    market_id: str
    condition_id: str
    price_yes: float
    price_no: float
    volume: Optional[float] = None
    liquidity: Optional[float] = None
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_ts(cls, v: Any) -> datetime:
        parsed = parse_timestamp(v)
        if parsed is None:
            raise ValueError(f"Cannot parse timestamp: {v}")
        return parsed


class PricePoint(BaseModel):
    """Compact point used for sparklines in ranked output."""

    timestamp: datetime
    price_yes: float
    price_no: float
    volume: Optional[float] = None


class BreakingMarket(StoredMarket):
    """A market together with its movement statistics for one window."""

    price_yes: float
    price_no: float
    price_change_percent: float
    volume_change_percent: float
    price_high_24h: float
    price_low_24h: float
    volatility_index: float
    movement_score: float
    trend: Trend
    price_history_24h: list[PricePoint] = Field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        """Serialize with snake_case keys for JSON responses."""
        return self.model_dump(mode="json", by_alias=False)


class Subscription(BaseModel):
    """Newsletter subscription row."""

    id: str
    email: str
    active: bool = True
    frequency: Frequency = "daily"
    created_at: datetime
    last_sent_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None
    unsubscribe_token: Optional[str] = None

    @field_validator("created_at", "last_sent_at", "unsubscribed_at", mode="before")
    @classmethod
    def parse_dates(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)


class SyncError(BaseModel):
    condition_id: str
    error: str


class SyncResult(BaseModel):
    """Counters from one sync run."""

    total_markets: int = 0
    upserted: int = 0
    created: int = 0
    updated: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    missing_price: int = 0
    invalid: int = 0
    repeated: int = 0
    failed_chunks: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def message(self) -> str:
        parts = [f"Synced {self.synced} price records successfully"]
        if self.failed > 0:
            parts.append(f"{self.failed} failed")
        if self.skipped > 0:
            parts.append(f"{self.skipped} skipped (duplicates)")
        return ", ".join(parts)

    def to_response(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["success"] = True
        payload["message"] = self.message
        return payload


class DispatchResult(BaseModel):
    """Counters from one newsletter run."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    duration_ms: int = 0


class SubscribeResult(BaseModel):
    success: bool
    message: str
    reactivated: bool = False
    subscription: Optional[Subscription] = None

    def to_response(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "reactivated": self.reactivated,
        }
        # Only brand-new subscriptions echo their row back
        if self.subscription is not None and not self.reactivated:
            payload["data"] = self.subscription.model_dump(
                mode="json",
                include={"id", "email", "active", "frequency", "created_at", "unsubscribe_token"},
            )
        return payload


class UnsubscribeResult(BaseModel):
    success: bool
    message: str
