"""Exchange executor contract and the ccxt-backed implementation.

Reconcile and the trigger/order processor only see the ExchangeExecutor and
MarketDataProvider interfaces below. Everything exchange specific (response
parsing, status mapping, error mapping) stays inside the adapter.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List

import ccxt.async_support as ccxt
import yaml

from ..models import OrderSide, OrderType, OrderStatus
from .decimals import to_decimal_string
from .errors import (
    DuplicateOrderError,
    ExchangeError,
    is_likely_duplicate_client_order_id_error,
    map_ccxt_error,
)
from .idempotency import is_our_order

logger = logging.getLogger(__name__)


@dataclass
class RemoteOrder:
    """Order as reported by the exchange."""
    id: str
    symbol: str
    client_order_id: str
    side: OrderSide
    type: OrderType
    price: Optional[str]
    amount: str
    filled_amount: str
    status: OrderStatus
    avg_fill_price: Optional[str] = None


@dataclass
class RemoteTrade:
    """Fill as reported by the exchange.

    client_order_id is whatever the exchange echoed back and may be missing.
    """
    id: str
    symbol: str
    side: OrderSide
    price: str
    amount: str
    timestamp: datetime
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    fee: str = "0"
    fee_currency: str = ""


@dataclass
class CreateOrderParams:
    """Order submission request."""
    symbol: str
    side: OrderSide
    type: OrderType
    amount: str
    client_order_id: str
    price: Optional[str] = None


@dataclass
class CreateOrderResult:
    """Exchange acknowledgement of an order."""
    exchange_order_id: str
    client_order_id: str
    status: OrderStatus


@dataclass
class Balance:
    """Account balance for a currency."""
    currency: str
    free: str
    used: str = "0"
    total: str = "0"


@dataclass
class Ticker:
    """Market ticker data."""
    symbol: str
    last: str
    bid: Optional[str] = None
    ask: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class MarketInfo:
    """Trading rules for a symbol.

    Precisions are either decimal places or tick sizes, as the exchange reports them.
    """
    symbol: str
    price_precision: Any = 2
    amount_precision: Any = 8
    min_amount: str = "0"
    min_notional: str = "0"


class ExchangeExecutor(ABC):
    """Trading capability contract.

    Implementations raise ExchangeError subclasses only.
    """

    @abstractmethod
    async def fetch_open_orders(self, symbol: str) -> List[RemoteOrder]:
        """Open orders carrying our client order id prefix."""

    @abstractmethod
    async def fetch_my_trades(self, symbol: str, since: Optional[datetime] = None) -> List[RemoteTrade]:
        """Account fills for a symbol (unfiltered; reconcile attributes them)."""

    @abstractmethod
    async def create_order(self, params: CreateOrderParams) -> CreateOrderResult:
        """Submit an order. Resubmitting the same client order id must not duplicate it."""

    @abstractmethod
    async def cancel_order(self, exchange_order_id: str, symbol: str) -> None:
        """Cancel an order. Unknown or finished orders are not an error."""

    @abstractmethod
    async def fetch_balance(self) -> Dict[str, Balance]:
        """Balances keyed by currency."""

    async def close(self) -> None:
        """Release network resources."""


class MarketDataProvider(ABC):
    """Market data capability used by config validation and the worker."""

    @abstractmethod
    async def get_market_info(self, symbol: str) -> MarketInfo:
        """Trading rules for a symbol."""

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker:
        """Latest ticker for a symbol."""

    @abstractmethod
    async def get_balance(self, symbol: str) -> Optional[Balance]:
        """Free quote balance for a symbol's quote currency."""


# ============================================================================
# ccxt mapping helpers
# ============================================================================

_CLIENT_ORDER_ID_INFO_KEYS = ("clientOrderId", "clOrdId", "client-order-id", "client_order_id")


def extract_client_order_id(payload: Dict[str, Any]) -> Optional[str]:
    """Find the client order id in a ccxt order or trade structure."""
    direct = payload.get("clientOrderId")
    if direct:
        return direct

    info = payload.get("info") or {}
    if not isinstance(info, dict):
        return None
    for key in _CLIENT_ORDER_ID_INFO_KEYS:
        if info.get(key):
            return str(info[key])
    return None


def map_ccxt_order_status(order: Dict[str, Any]) -> OrderStatus:
    """Map a ccxt unified order status to ours."""
    raw = str(order.get("status") or "").lower()
    if raw == "open":
        filled = order.get("filled") or 0
        return OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.NEW
    if raw == "closed":
        return OrderStatus.FILLED
    if raw in ("canceled", "cancelled", "expired", "rejected"):
        return OrderStatus.CANCELED
    return OrderStatus.NEW


def _parse_timestamp(value: Optional[int]) -> datetime:
    if value:
        return datetime.utcfromtimestamp(value / 1000)
    return datetime.utcnow()


class CcxtExecutor(ExchangeExecutor, MarketDataProvider):
    """Executor for any ccxt-supported spot exchange."""

    def __init__(
        self,
        exchange_id: str = "binance",
        config_path: str = "config/exchanges.yaml",
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        password: Optional[str] = None,
        sandbox: Optional[bool] = None,
        allow_mainnet: Optional[bool] = None,
    ):
        """Initialize the executor.

        Explicit credentials win over the YAML file.

        Args:
            exchange_id: The ccxt exchange identifier (e.g., 'binance', 'okx')
            config_path: Path to the exchanges configuration file
            api_key: API key
            api_secret: API secret
            password: API passphrase, for exchanges that need one
            sandbox: Use the exchange testnet
            allow_mainnet: Must be true to trade outside the testnet
        """
        self.exchange_id = exchange_id
        self.config_path = config_path
        self._config = self._load_config()

        self._api_key = api_key if api_key is not None else self._config.get("api_key", "")
        self._api_secret = api_secret if api_secret is not None else self._config.get("api_secret", "")
        self._password = password if password is not None else self._config.get("password")
        self._sandbox = sandbox if sandbox is not None else self._config.get("sandbox", False)
        self._allow_mainnet = (
            allow_mainnet if allow_mainnet is not None else self._config.get("allow_mainnet", False)
        )
        self.exchange: Optional[ccxt.Exchange] = None

    def _load_config(self) -> Dict[str, Any]:
        """Load exchange configuration from YAML file."""
        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f) or {}
                return config.get(self.exchange_id, {}) or {}
        except FileNotFoundError:
            logger.debug(f"Exchange config file not found: {self.config_path}")
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error loading exchange config: {e}")
            return {}

    def _get_exchange(self) -> ccxt.Exchange:
        """Create the ccxt client on first use."""
        if self.exchange is not None:
            return self.exchange

        exchange_class = getattr(ccxt, self.exchange_id, None)
        if not exchange_class:
            raise ValueError(f"Exchange {self.exchange_id} not supported by ccxt")

        if not self._sandbox and not self._allow_mainnet:
            raise ValueError("Mainnet trading not allowed unless allow_mainnet is set")

        exchange = exchange_class({
            "apiKey": self._api_key,
            "secret": self._api_secret,
            "password": self._password,
            "enableRateLimit": True,
            "options": {
                "defaultType": "spot",
                "adjustForTimeDifference": True,
            },
        })
        if self._sandbox:
            exchange.set_sandbox_mode(True)

        self.exchange = exchange
        logger.info(f"Created {self.exchange_id} client (sandbox={self._sandbox})")
        return exchange

    async def close(self) -> None:
        """Close the underlying ccxt client."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
            logger.info(f"Disconnected from {self.exchange_id}")

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def fetch_open_orders(self, symbol: str) -> List[RemoteOrder]:
        try:
            orders = await self._get_exchange().fetch_open_orders(symbol)
        except Exception as e:
            raise map_ccxt_error("fetch_open_orders", e, symbol) from e

        result = []
        for order in orders:
            client_order_id = extract_client_order_id(order)
            if not is_our_order(client_order_id):
                continue
            result.append(self._parse_order(order, client_order_id))
        return result

    async def fetch_my_trades(self, symbol: str, since: Optional[datetime] = None) -> List[RemoteTrade]:
        since_ms = int(since.timestamp() * 1000) if since else None
        try:
            trades = await self._get_exchange().fetch_my_trades(symbol, since_ms)
        except Exception as e:
            raise map_ccxt_error("fetch_my_trades", e, symbol) from e

        return [self._parse_trade(trade, symbol) for trade in trades]

    async def create_order(self, params: CreateOrderParams) -> CreateOrderResult:
        exchange = self._get_exchange()
        price = float(params.price) if params.type == OrderType.LIMIT and params.price else None

        try:
            order = await exchange.create_order(
                params.symbol,
                params.type.value,
                params.side.value,
                float(params.amount),
                price,
                {"clientOrderId": params.client_order_id},
            )
        except Exception as e:
            if not is_likely_duplicate_client_order_id_error(e):
                raise map_ccxt_error("create_order", e, params.symbol) from e

            logger.warning(
                f"[{self.exchange_id}] Duplicate order {params.client_order_id}, searching open orders"
            )
            return await self._recover_duplicate(params, e)

        return CreateOrderResult(
            exchange_order_id=str(order["id"]),
            client_order_id=params.client_order_id,
            status=map_ccxt_order_status(order),
        )

    async def _recover_duplicate(self, params: CreateOrderParams, error: Exception) -> CreateOrderResult:
        """Find the already-placed order for a reused client order id."""
        try:
            open_orders = await self._get_exchange().fetch_open_orders(params.symbol)
        except Exception as e:
            raise map_ccxt_error("fetch_open_orders", e, params.symbol) from e

        for order in open_orders:
            if extract_client_order_id(order) == params.client_order_id and order.get("id"):
                return CreateOrderResult(
                    exchange_order_id=str(order["id"]),
                    client_order_id=params.client_order_id,
                    status=map_ccxt_order_status(order),
                )

        raise DuplicateOrderError(params.client_order_id, cause=error)

    async def cancel_order(self, exchange_order_id: str, symbol: str) -> None:
        try:
            await self._get_exchange().cancel_order(exchange_order_id, symbol)
            logger.info(f"Cancelled order {exchange_order_id} for {symbol}")
        except ccxt.OrderNotFound:
            logger.info(f"Order {exchange_order_id} already gone, nothing to cancel")
        except Exception as e:
            raise map_ccxt_error("cancel_order", e, symbol) from e

    async def fetch_balance(self) -> Dict[str, Balance]:
        try:
            raw = await self._get_exchange().fetch_balance()
        except Exception as e:
            raise map_ccxt_error("fetch_balance", e) from e

        result = {}
        for currency, total in (raw.get("total") or {}).items():
            if not total:
                continue
            entry = raw.get(currency) or {}
            result[currency] = Balance(
                currency=currency,
                free=to_decimal_string(entry.get("free")) or "0",
                used=to_decimal_string(entry.get("used")) or "0",
                total=to_decimal_string(total) or "0",
            )
        return result

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_market_info(self, symbol: str) -> MarketInfo:
        exchange = self._get_exchange()
        try:
            markets = await exchange.load_markets()
        except Exception as e:
            raise map_ccxt_error("load_markets", e, symbol) from e

        market = markets.get(symbol)
        if not market:
            raise ExchangeError(f"Unknown symbol {symbol} on {self.exchange_id}")

        precision = market.get("precision") or {}
        limits = market.get("limits") or {}
        return MarketInfo(
            symbol=symbol,
            price_precision=precision.get("price", 2),
            amount_precision=precision.get("amount", 8),
            min_amount=to_decimal_string((limits.get("amount") or {}).get("min")) or "0",
            min_notional=to_decimal_string((limits.get("cost") or {}).get("min")) or "0",
        )

    async def get_ticker(self, symbol: str) -> Ticker:
        try:
            ticker = await self._get_exchange().fetch_ticker(symbol)
        except Exception as e:
            raise map_ccxt_error("fetch_ticker", e, symbol) from e

        last = ticker.get("last") or ticker.get("close")
        if last is None:
            raise ExchangeError(f"Ticker for {symbol} has no last price")
        return Ticker(
            symbol=ticker.get("symbol", symbol),
            last=to_decimal_string(last),
            bid=to_decimal_string(ticker.get("bid")),
            ask=to_decimal_string(ticker.get("ask")),
            timestamp=_parse_timestamp(ticker.get("timestamp")),
        )

    async def get_balance(self, symbol: str) -> Optional[Balance]:
        quote = symbol.split("/")[-1]
        balances = await self.fetch_balance()
        return balances.get(quote)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_order(self, order: Dict[str, Any], client_order_id: str) -> RemoteOrder:
        """Parse ccxt order response to RemoteOrder."""
        return RemoteOrder(
            id=str(order.get("id", "")),
            symbol=order.get("symbol", ""),
            client_order_id=client_order_id,
            side=OrderSide(order.get("side") or "buy"),
            type=OrderType.MARKET if order.get("type") == "market" else OrderType.LIMIT,
            price=to_decimal_string(order.get("price")),
            amount=to_decimal_string(order.get("amount")) or "0",
            filled_amount=to_decimal_string(order.get("filled")) or "0",
            status=map_ccxt_order_status(order),
            avg_fill_price=to_decimal_string(order.get("average")),
        )

    def _parse_trade(self, trade: Dict[str, Any], symbol: str) -> RemoteTrade:
        """Parse ccxt trade structure to RemoteTrade."""
        fee = trade.get("fee") or {}
        return RemoteTrade(
            id=str(trade.get("id") or ""),
            order_id=str(trade["order"]) if trade.get("order") else None,
            client_order_id=extract_client_order_id(trade),
            symbol=trade.get("symbol") or symbol,
            side=OrderSide(trade.get("side") or "buy"),
            price=to_decimal_string(trade.get("price")) or "0",
            amount=to_decimal_string(trade.get("amount")) or "0",
            fee=to_decimal_string(fee.get("cost")) or "0",
            fee_currency=fee.get("currency") or "",
            timestamp=_parse_timestamp(trade.get("timestamp")),
        )
