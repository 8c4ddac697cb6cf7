"""Tests for the exchange and bot error taxonomy."""

import ccxt.async_support as ccxt
import pytest

from strategyhub.services.errors import (
    AuthError,
    BadRequestError,
    BotError,
    BotErrorCode,
    ExchangeError,
    ExchangeTimeoutError,
    ExchangeUnavailableError,
    InsufficientFundsError,
    RateLimitError,
    is_likely_duplicate_client_order_id_error,
    map_ccxt_error,
)


@pytest.mark.parametrize("raised,expected", [
    (ccxt.RateLimitExceeded("slow down"), RateLimitError),
    (ccxt.DDoSProtection("blocked"), RateLimitError),
    (ccxt.RequestTimeout("timed out"), ExchangeTimeoutError),
    (ccxt.NetworkError("connection reset"), ExchangeUnavailableError),
    (ccxt.ExchangeNotAvailable("maintenance"), ExchangeUnavailableError),
    (ccxt.AuthenticationError("bad key"), AuthError),
    (ccxt.InsufficientFunds("not enough USDT"), InsufficientFundsError),
    (ccxt.InvalidOrder("bad qty"), BadRequestError),
    (ccxt.BadRequest("bad param"), BadRequestError),
])
def test_map_ccxt_error(raised, expected):
    mapped = map_ccxt_error("create_order", raised, "BTC/USDT")
    assert type(mapped) is expected
    assert mapped.cause is raised


def test_map_unknown_error_to_base_class():
    mapped = map_ccxt_error("fetch_balance", RuntimeError("boom"))
    assert type(mapped) is ExchangeError
    assert not mapped.retryable
    assert "fetch_balance" in mapped.message


def test_map_passes_typed_errors_through():
    original = AuthError("nope")
    assert map_ccxt_error("fetch_balance", original) is original


def test_retryable_flags():
    assert RateLimitError().retryable
    assert ExchangeTimeoutError().retryable
    assert ExchangeUnavailableError().retryable
    assert not AuthError().retryable
    assert not BadRequestError().retryable


@pytest.mark.parametrize("message", [
    "Duplicate order sent.",
    "Order already exists",
    "clientOrderId is already used",
    "newClientOrderId exists",
])
def test_duplicate_client_order_id_detection(message):
    assert is_likely_duplicate_client_order_id_error(Exception(message))


@pytest.mark.parametrize("message", ["Invalid quantity", "clientOrderId too long"])
def test_non_duplicate_messages(message):
    assert not is_likely_duplicate_client_order_id_error(Exception(message))


@pytest.mark.parametrize("code,status", [
    (BotErrorCode.BOT_NOT_FOUND, 404),
    (BotErrorCode.INVALID_STATE_TRANSITION, 409),
    (BotErrorCode.CONCURRENT_MODIFICATION, 409),
    (BotErrorCode.CONFIG_LOCKED, 409),
    (BotErrorCode.CONFIG_VALIDATION_ERROR, 422),
    (BotErrorCode.KILL_SWITCH_LOCKED, 423),
    (BotErrorCode.EXCHANGE_UNAVAILABLE, 503),
])
def test_bot_error_http_status(code, status):
    assert BotError(code, "msg").http_status == status


def test_bot_error_to_dict():
    error = BotError(BotErrorCode.KILL_SWITCH_LOCKED, "Kill switch is enabled")
    assert error.to_dict() == {"code": "KILL_SWITCH_LOCKED", "message": "Kill switch is enabled"}
    assert str(error) == "KILL_SWITCH_LOCKED: Kill switch is enabled"
