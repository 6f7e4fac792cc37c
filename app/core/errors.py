"""
Market Intelligence Exceptions
Typed failures raised by the market-intelligence services and translated
into HTTP responses by the handlers registered in app.main.
"""
from typing import Any, Dict, Optional


class MarketIntelError(Exception):
    """Base exception for the market intelligence engine."""

    error_code = "MARKET_INTEL_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)


class SourceUnavailableError(MarketIntelError):
    """An external market data source failed or timed out."""

    error_code = "SOURCE_UNAVAILABLE"

    def __init__(self, source_kind: str, region: str, message: str):
        super().__init__(
            f"{source_kind} unavailable for '{region}': {message}",
            details={"source_kind": source_kind, "region": region},
        )
        self.source_kind = source_kind
        self.region = region


class InsufficientDataError(MarketIntelError):
    """Not enough data to compute a figure."""

    error_code = "INSUFFICIENT_DATA"


class DataValidationError(MarketIntelError):
    """Malformed input rejected before anything is persisted."""

    error_code = "VALIDATION_ERROR"


class ConcurrencyConflictError(MarketIntelError):
    """A serialized write could not be completed after one retry."""

    error_code = "CONCURRENCY_CONFLICT"
