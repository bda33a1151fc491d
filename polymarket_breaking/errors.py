"""Error taxonomy shared by the sync, ranking and newsletter pipelines."""

from dataclasses import dataclass
from typing import Optional


class BreakingMarketsError(Exception):
    """Base exception for all pipeline errors."""


class ValidationError(BreakingMarketsError):
    """Malformed or out-of-range input. Raised before any I/O."""


class ConfigurationError(BreakingMarketsError):
    """Required configuration (credentials, URLs) is missing or invalid."""


class UpstreamFetchError(BreakingMarketsError):
    """An external service was unreachable, timed out, or returned an error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class DataSourceError(UpstreamFetchError):
    """The backing data store could not be queried."""


class DuplicateWriteError(BreakingMarketsError):
    """A write collided with an existing unique row."""


class RateLimitedError(BreakingMarketsError):
    """Caller exceeded the allowed number of attempts for the current window."""

    def __init__(self, message: str, retry_after: int, reset_at: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.reset_at = reset_at


@dataclass(frozen=True)
class PartialBatchFailure:
    """One failed item inside an otherwise successful batch."""

    item: str
    error: str

    def __str__(self) -> str:
        return f"{self.item}: {self.error}"


__all__ = [
    "BreakingMarketsError",
    "ConfigurationError",
    "DataSourceError",
    "DuplicateWriteError",
    "PartialBatchFailure",
    "RateLimitedError",
    "UpstreamFetchError",
    "ValidationError",
]
