from __future__ import annotations


class TradingError(RuntimeError):
    """Base class for recoverable engine errors."""


class DataUnavailableError(TradingError):
    """Candles or account data missing, empty or too short to analyse."""


class RateLimitedError(TradingError):
    """Upstream refused the request because of rate limiting."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class BrokerExecutionError(TradingError):
    """Order placement or position modification was rejected."""


class ConfigurationInvalidError(TradingError):
    """A robot configuration is missing required fields or holds invalid values."""
