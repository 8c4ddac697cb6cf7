"""Error taxonomy for exchange access and bot-domain failures.

Exchange adapters raise only ExchangeError subclasses; everything
exchange-specific is mapped at that boundary. Bot-domain failures are raised
as BotError with a stable code that the API layer turns into an HTTP status.
"""

import re
from enum import Enum
from typing import Optional

import ccxt.async_support as ccxt


# ============================================================================
# Exchange errors
# ============================================================================

class ExchangeErrorCode(str, Enum):
    """Kinds of exchange failure."""
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    EXCHANGE_UNAVAILABLE = "EXCHANGE_UNAVAILABLE"
    AUTH = "AUTH"
    BAD_REQUEST = "BAD_REQUEST"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    UNKNOWN = "UNKNOWN"


class ExchangeError(Exception):
    """Base class for typed exchange errors."""

    code = ExchangeErrorCode.UNKNOWN
    retryable = False

    def __init__(
        self,
        message: str = "",
        cause: Optional[BaseException] = None,
        retry_after_ms: Optional[int] = None,
    ):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value
        self.cause = cause
        self.retry_after_ms = retry_after_ms


class RateLimitError(ExchangeError):
    code = ExchangeErrorCode.RATE_LIMIT
    retryable = True

    def __init__(self, retry_after_ms: Optional[int] = None, cause: Optional[BaseException] = None):
        message = "Rate limit exceeded"
        if retry_after_ms:
            message += f", retry after {retry_after_ms}ms"
        super().__init__(message, cause=cause, retry_after_ms=retry_after_ms)


class ExchangeTimeoutError(ExchangeError):
    code = ExchangeErrorCode.TIMEOUT
    retryable = True


class ExchangeUnavailableError(ExchangeError):
    code = ExchangeErrorCode.EXCHANGE_UNAVAILABLE
    retryable = True


class AuthError(ExchangeError):
    code = ExchangeErrorCode.AUTH


class BadRequestError(ExchangeError):
    code = ExchangeErrorCode.BAD_REQUEST


class InsufficientFundsError(BadRequestError):
    pass


class OrderNotFoundError(BadRequestError):
    pass


class DuplicateOrderError(ExchangeError):
    """The client order id was already used; the intent exists remotely."""
    code = ExchangeErrorCode.DUPLICATE_ORDER

    def __init__(self, client_order_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Duplicate clientOrderId: {client_order_id}", cause=cause)
        self.client_order_id = client_order_id


_DUPLICATE_PATTERNS = (
    re.compile(r"duplicate", re.IGNORECASE),
    re.compile(r"already\s+exists", re.IGNORECASE),
)
_CLIENT_ORDER_ID_PATTERN = re.compile(r"client.?order.?id", re.IGNORECASE)
_CLIENT_ORDER_ID_REUSE_PATTERN = re.compile(r"exists|used|duplicate", re.IGNORECASE)


def is_likely_duplicate_client_order_id_error(error: BaseException) -> bool:
    """Guess from the message whether the exchange rejected a reused client order id."""
    message = str(error)
    if any(pattern.search(message) for pattern in _DUPLICATE_PATTERNS):
        return True
    return bool(
        _CLIENT_ORDER_ID_PATTERN.search(message)
        and _CLIENT_ORDER_ID_REUSE_PATTERN.search(message)
    )


def map_ccxt_error(operation: str, error: BaseException, symbol: Optional[str] = None) -> ExchangeError:
    """Map a ccxt (or transport) exception to the typed taxonomy.

    Args:
        operation: Name of the executor operation, used in the message
        error: The raised exception
        symbol: Optional trading pair for context

    Returns:
        ExchangeError subclass instance (never a bare transport error)
    """
    if isinstance(error, ExchangeError):
        return error

    where = f"{operation} ({symbol})" if symbol else operation

    # Order matters: RateLimitExceeded and RequestTimeout are NetworkErrors in ccxt
    if isinstance(error, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        return RateLimitError(cause=error)
    if isinstance(error, ccxt.RequestTimeout):
        return ExchangeTimeoutError(f"Request timeout: {where}", cause=error)
    if isinstance(error, (ccxt.NetworkError, ccxt.ExchangeNotAvailable)):
        return ExchangeUnavailableError(f"Exchange unavailable: {where}", cause=error)
    if isinstance(error, ccxt.AuthenticationError):
        return AuthError(f"Exchange auth failed: {where}", cause=error)
    if isinstance(error, ccxt.InsufficientFunds):
        return InsufficientFundsError(f"Exchange rejected request: {where}: {error}", cause=error)
    if isinstance(error, (ccxt.InvalidOrder, ccxt.BadRequest)):
        return BadRequestError(f"Exchange rejected request: {where}: {error}", cause=error)

    return ExchangeError(f"Unexpected exchange error in {where}: {error}", cause=error)


# ============================================================================
# Bot-domain errors
# ============================================================================

class BotErrorCode(str, Enum):
    """Codes surfaced to callers of the bot control surface."""
    BOT_NOT_FOUND = "BOT_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    KILL_SWITCH_LOCKED = "KILL_SWITCH_LOCKED"
    CONFIG_VALIDATION_ERROR = "CONFIG_VALIDATION_ERROR"
    CONFIG_LOCKED = "CONFIG_LOCKED"
    EXCHANGE_UNAVAILABLE = "EXCHANGE_UNAVAILABLE"
    BELOW_MIN_AMOUNT = "BELOW_MIN_AMOUNT"
    BELOW_MIN_NOTIONAL = "BELOW_MIN_NOTIONAL"
    ORDER_SUBMIT_FAILED = "ORDER_SUBMIT_FAILED"
    UNSUPPORTED_BASE_PRICE_TYPE = "UNSUPPORTED_BASE_PRICE_TYPE"
    MISSING_FROZEN_REFERENCE_PRICE = "MISSING_FROZEN_REFERENCE_PRICE"
    STOPPING_FAILED = "STOPPING_FAILED"


BOT_ERROR_HTTP_STATUS = {
    BotErrorCode.BOT_NOT_FOUND: 404,
    BotErrorCode.INVALID_STATE_TRANSITION: 409,
    BotErrorCode.CONCURRENT_MODIFICATION: 409,
    BotErrorCode.CONFIG_LOCKED: 409,
    BotErrorCode.CONFIG_VALIDATION_ERROR: 422,
    BotErrorCode.UNSUPPORTED_BASE_PRICE_TYPE: 422,
    BotErrorCode.KILL_SWITCH_LOCKED: 423,
    BotErrorCode.EXCHANGE_UNAVAILABLE: 503,
}


class BotError(Exception):
    """Bot-domain failure with a stable code."""

    def __init__(self, code: BotErrorCode, message: str):
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message

    @property
    def http_status(self) -> int:
        return BOT_ERROR_HTTP_STATUS.get(self.code, 400)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}
