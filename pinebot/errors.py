"""Error taxonomy for the evaluation and execution engine.

Parser and evaluator errors abort a single tuple.  Gateway and exchange
errors are caught by the coordinator and either recorded on the trade row
or turned into a skip.  Nothing here is fatal to a sweep.
"""

from typing import Optional


class PineBotError(Exception):
    """Base class for every engine error."""


class StrategySyntaxError(PineBotError, ValueError):
    """Script text could not be turned into a strategy.

    Surfaced to the script author, never retried.
    """

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InsufficientHistory(PineBotError, ValueError):
    """Not enough candles to compute an indicator yet."""

    def __init__(self, required: int, available: int, what: str = "") -> None:
        label = f" for {what}" if what else ""
        super().__init__(
            f"Need at least {required} candles{label}, got {available}"
        )
        self.required = required
        self.available = available


class MarketDataUnavailable(PineBotError):
    """Every market data host failed."""

    def __init__(self, failures: list[str]) -> None:
        super().__init__(
            "All market data hosts failed: " + "; ".join(failures)
        )
        self.failures = failures


class RateLimited(PineBotError):
    """The exchange asked us to back off."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ExchangeError(PineBotError):
    """Order placement failed at the exchange."""


class ExchangeRejected(ExchangeError):
    """The exchange answered and refused the request.

    ``provider_message`` is kept verbatim for later classification.
    """

    def __init__(self, provider_message: str, code: Optional[int] = None) -> None:
        super().__init__(provider_message)
        self.provider_message = provider_message
        self.code = code


class ApiKeyPermissionError(ExchangeRejected):
    """The exchange rejected the user's credentials or their permissions."""


class InsufficientBudget(PineBotError):
    """User has no coins left.  A normal skip, not a failure."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} has no coins remaining")
        self.user_id = user_id


class DuplicateTrade(PineBotError):
    """A trade already exists for this user, script, timeframe and candle."""


# ── Provider message classification ──────────────────────────────────────

PERMISSION_ERROR_MARKERS = (
    "Invalid API-key",
    "permissions for action",
    "API-key format invalid",
)
PERMISSION_ERROR_CODES = {-2014, -2015, -1022}
RATE_LIMIT_CODES = {-1003, -1015}


def is_permission_error(message: Optional[str], code: Optional[int] = None) -> bool:
    """Return True if a provider error points at the user's API key."""
    if code is not None and code in PERMISSION_ERROR_CODES:
        return True
    if not message:
        return False
    return any(marker in message for marker in PERMISSION_ERROR_MARKERS)


def classify_exchange_error(
    status_code: int,
    message: str,
    code: Optional[int] = None,
) -> PineBotError:
    """Map an exchange error response onto the engine's taxonomy."""
    if status_code in (418, 429) or (code is not None and code in RATE_LIMIT_CODES):
        return RateLimited(message)
    if is_permission_error(message, code):
        return ApiKeyPermissionError(message, code)
    return ExchangeRejected(message, code)
