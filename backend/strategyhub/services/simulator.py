"""Deterministic in-memory exchange for dry runs and tests.

ExchangeSimulator holds the book: balances, orders and fills, plus fault
injection per endpoint. SimulatorExecutor exposes it through the same
ExchangeExecutor / MarketDataProvider contract the ccxt executor implements.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, List, Tuple, Union

from ..models import OrderSide, OrderType, OrderStatus
from .decimals import parse_decimal, format_decimal
from .errors import (
    AuthError,
    BadRequestError,
    ExchangeError,
    ExchangeTimeoutError,
    InsufficientFundsError,
    OrderNotFoundError,
    RateLimitError,
)
from .exchange import (
    Balance,
    CreateOrderParams,
    CreateOrderResult,
    ExchangeExecutor,
    MarketDataProvider,
    MarketInfo,
    RemoteOrder,
    RemoteTrade,
    Ticker,
)

logger = logging.getLogger(__name__)

DEFAULT_FEE_RATE = Decimal("0.001")

FAULT_ENDPOINTS = (
    "create_order",
    "cancel_order",
    "fetch_open_orders",
    "fetch_balance",
    "fetch_my_trades",
    "get_ticker",
)
FAULT_MODES = ("timeout", "rateLimit", "auth", "badRequest")


class FakeClock:
    """Controllable millisecond clock."""

    def __init__(self, initial: Union[int, datetime, None] = None):
        if initial is None:
            initial = datetime.now(timezone.utc)
        self._now = self._to_ms(initial)

    @staticmethod
    def _to_ms(value: Union[int, datetime]) -> int:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return int(value.timestamp() * 1000)
        return int(value)

    def now(self) -> int:
        return self._now

    def now_datetime(self) -> datetime:
        """Naive UTC datetime, matching the timestamps stored in the database."""
        return datetime.utcfromtimestamp(self._now / 1000)

    def now_iso(self) -> str:
        return datetime.fromtimestamp(self._now / 1000, tz=timezone.utc).isoformat()

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("Cannot advance time backwards")
        self._now += int(ms)

    def set_time(self, value: Union[int, datetime]) -> None:
        self._now = self._to_ms(value)


@dataclass
class SimulatedOrder:
    exchange_order_id: str
    client_order_id: str
    symbol: str
    side: OrderSide
    type: OrderType
    amount: str
    price: Optional[str] = None
    status: OrderStatus = OrderStatus.NEW
    filled_amount: str = "0"
    avg_fill_price: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0


@dataclass
class SimulatedTrade:
    trade_id: str
    order_id: str
    client_order_id: str
    symbol: str
    side: OrderSide
    price: str
    amount: str
    fee: str
    fee_currency: str
    timestamp: int


@dataclass
class FaultInjection:
    mode: str
    remaining: int
    retry_after_ms: Optional[int] = None


@dataclass
class SimulatedBalance:
    free: str = "0"
    locked: str = "0"


def _parse_symbol(symbol: str) -> Tuple[str, str]:
    parts = symbol.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise BadRequestError(f"Invalid symbol format: {symbol}")
    return parts[0], parts[1]


def _create_fault_error(mode: str, endpoint: str, retry_after_ms: Optional[int]) -> ExchangeError:
    if mode == "timeout":
        return ExchangeTimeoutError(f"Request timeout: {endpoint}")
    if mode == "rateLimit":
        return RateLimitError(retry_after_ms=retry_after_ms)
    if mode == "auth":
        return AuthError("Authentication failed")
    if mode == "badRequest":
        return BadRequestError(f"Bad request on {endpoint}")
    return ExchangeError(f"Unknown fault: {mode}")


class ExchangeSimulator:
    """Controllable exchange.

    create_order is idempotent by client order id: a resubmission returns the
    existing order instead of placing a second one.
    """

    def __init__(self, exchange: str = "binance", clock: Optional[FakeClock] = None):
        self.exchange = exchange
        self.clock = clock or FakeClock()
        self.fee_rate = DEFAULT_FEE_RATE

        self._tickers: Dict[str, str] = {}
        self._markets: Dict[str, MarketInfo] = {}
        self._balances: Dict[str, SimulatedBalance] = {}
        self._orders: Dict[str, SimulatedOrder] = {}
        self._orders_by_client_id: Dict[str, SimulatedOrder] = {}
        self._trades: List[SimulatedTrade] = []
        self._faults: Dict[str, FaultInjection] = {}
        self._next_order_id = 1
        self._next_trade_id = 1

    # ========================================================================
    # Market data
    # ========================================================================

    def set_ticker(self, symbol: str, last: str) -> None:
        self._tickers[symbol] = str(last)

    def get_ticker(self, symbol: str) -> Optional[str]:
        self._check_fault("get_ticker")
        return self._tickers.get(symbol)

    def set_market(self, market: MarketInfo) -> None:
        self._markets[market.symbol] = market

    def get_market(self, symbol: str) -> MarketInfo:
        return self._markets.get(symbol) or MarketInfo(symbol=symbol)

    # ========================================================================
    # Account
    # ========================================================================

    def set_balance(self, asset: str, free: str, locked: str = "0") -> None:
        self._balances[asset] = SimulatedBalance(free=str(free), locked=str(locked))

    def fetch_balance(self) -> Dict[str, SimulatedBalance]:
        self._check_fault("fetch_balance")
        return {asset: SimulatedBalance(b.free, b.locked) for asset, b in self._balances.items()}

    # ========================================================================
    # Orders
    # ========================================================================

    def create_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        amount: str,
        client_order_id: str,
        price: Optional[str] = None,
    ) -> SimulatedOrder:
        self._check_fault("create_order")

        existing = self._orders_by_client_id.get(client_order_id)
        if existing:
            return existing

        base, quote = _parse_symbol(symbol)
        side = OrderSide(side)
        order_type = OrderType(order_type)
        qty = parse_decimal(amount)

        if side == OrderSide.BUY:
            if order_type == OrderType.LIMIT and price:
                required = qty * parse_decimal(price)
            else:
                required = qty
            available = self._free(quote)
            if available < required:
                raise InsufficientFundsError(
                    f"Insufficient {quote}: required {format_decimal(required, 8)}, available {available}"
                )
        else:
            available = self._free(base)
            if available < qty:
                raise InsufficientFundsError(
                    f"Insufficient {base}: required {amount}, available {available}"
                )

        now = self.clock.now()
        order = SimulatedOrder(
            exchange_order_id=f"{self.exchange}-{self._next_order_id}",
            client_order_id=client_order_id,
            symbol=symbol,
            side=side,
            type=order_type,
            amount=str(amount),
            price=str(price) if price is not None else None,
            created_at=now,
            updated_at=now,
        )
        self._next_order_id += 1

        self._orders[order.exchange_order_id] = order
        self._orders_by_client_id[client_order_id] = order
        return order

    def cancel_order(self, exchange_order_id: str, symbol: str) -> SimulatedOrder:
        self._check_fault("cancel_order")

        order = self._orders.get(exchange_order_id)
        if not order:
            raise OrderNotFoundError(f"Order not found: {exchange_order_id}")

        if order.status in (OrderStatus.FILLED, OrderStatus.CANCELED):
            return order

        order.status = OrderStatus.CANCELED
        order.updated_at = self.clock.now()
        return order

    def fetch_open_orders(self, symbol: str) -> List[SimulatedOrder]:
        self._check_fault("fetch_open_orders")
        return [
            o for o in self._orders.values()
            if o.symbol == symbol and o.status in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)
        ]

    def fetch_order(self, exchange_order_id: str) -> Optional[SimulatedOrder]:
        return self._orders.get(exchange_order_id)

    def fetch_order_by_client_order_id(self, symbol: str, client_order_id: str) -> Optional[SimulatedOrder]:
        order = self._orders_by_client_id.get(client_order_id)
        if order and order.symbol == symbol:
            return order
        return None

    # ========================================================================
    # Trades
    # ========================================================================

    def fetch_my_trades(self, symbol: str, since_ms: Optional[int] = None) -> List[SimulatedTrade]:
        self._check_fault("fetch_my_trades")
        trades = [t for t in self._trades if t.symbol == symbol]
        if since_ms is not None:
            trades = [t for t in trades if t.timestamp > since_ms]
        return trades

    def simulate_fill(self, exchange_order_id: str, amount: str, price: str) -> SimulatedTrade:
        """Fill (part of) an order at a price and move balances accordingly."""
        order = self._orders.get(exchange_order_id)
        if not order:
            raise OrderNotFoundError(f"Order not found: {exchange_order_id}")

        base, quote = _parse_symbol(order.symbol)
        fill_amount = parse_decimal(amount)
        fill_price = parse_decimal(price)
        notional = fill_amount * fill_price

        base_balance = self._balances.setdefault(base, SimulatedBalance())
        quote_balance = self._balances.setdefault(quote, SimulatedBalance())

        if order.side == OrderSide.BUY:
            available = parse_decimal(quote_balance.free)
            if available < notional:
                raise InsufficientFundsError(
                    f"Insufficient {quote}: required {format_decimal(notional, 8)}, available {available}"
                )
            quote_balance.free = format_decimal(available - notional, 8)
            base_balance.free = format_decimal(parse_decimal(base_balance.free) + fill_amount, 8)
        else:
            available = parse_decimal(base_balance.free)
            if available < fill_amount:
                raise InsufficientFundsError(
                    f"Insufficient {base}: required {amount}, available {available}"
                )
            base_balance.free = format_decimal(available - fill_amount, 8)
            quote_balance.free = format_decimal(parse_decimal(quote_balance.free) + notional, 8)

        trade = SimulatedTrade(
            trade_id=f"{self.exchange}-trade-{self._next_trade_id}",
            order_id=exchange_order_id,
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            side=order.side,
            price=str(price),
            amount=str(amount),
            fee=format_decimal(notional * self.fee_rate, 8),
            fee_currency=quote,
            timestamp=self.clock.now(),
        )
        self._next_trade_id += 1
        self._trades.append(trade)

        filled = parse_decimal(order.filled_amount) + fill_amount
        order.filled_amount = format_decimal(filled, 8)

        order_trades = [t for t in self._trades if t.order_id == exchange_order_id]
        total_amount = sum((parse_decimal(t.amount) for t in order_trades), Decimal(0))
        total_cost = sum((parse_decimal(t.amount) * parse_decimal(t.price) for t in order_trades), Decimal(0))
        if total_amount > 0:
            order.avg_fill_price = format_decimal(total_cost / total_amount, 8)

        if filled >= parse_decimal(order.amount):
            order.status = OrderStatus.FILLED
        elif filled > 0:
            order.status = OrderStatus.PARTIALLY_FILLED
        order.updated_at = self.clock.now()

        return trade

    # ========================================================================
    # Fault injection
    # ========================================================================

    def inject_error(self, endpoint: str, mode: str, count: int = 1, retry_after_ms: Optional[int] = None) -> None:
        """Make the next `count` calls to an endpoint fail with the given mode."""
        if endpoint not in FAULT_ENDPOINTS:
            raise ValueError(f"Unknown endpoint: {endpoint}")
        if mode not in FAULT_MODES:
            raise ValueError(f"Unknown fault mode: {mode}")
        self._faults[endpoint] = FaultInjection(mode=mode, remaining=count, retry_after_ms=retry_after_ms)

    def clear_faults(self) -> None:
        self._faults.clear()

    def _check_fault(self, endpoint: str) -> None:
        fault = self._faults.get(endpoint)
        if fault and fault.remaining > 0:
            fault.remaining -= 1
            if fault.remaining == 0:
                del self._faults[endpoint]
            raise _create_fault_error(fault.mode, endpoint, fault.retry_after_ms)

    # ========================================================================
    # Inspection
    # ========================================================================

    def _free(self, asset: str) -> Decimal:
        balance = self._balances.get(asset)
        return parse_decimal(balance.free) if balance else Decimal(0)

    @property
    def order_count(self) -> int:
        return len(self._orders)

    @property
    def trade_count(self) -> int:
        return len(self._trades)

    def all_orders(self) -> List[SimulatedOrder]:
        return list(self._orders.values())

    def all_trades(self) -> List[SimulatedTrade]:
        return list(self._trades)

    def reset(self) -> None:
        self._tickers.clear()
        self._markets.clear()
        self._balances.clear()
        self._orders.clear()
        self._orders_by_client_id.clear()
        self._trades = []
        self._faults.clear()
        self._next_order_id = 1
        self._next_trade_id = 1


class SimulatorExecutor(ExchangeExecutor, MarketDataProvider):
    """ExchangeExecutor backed by an ExchangeSimulator."""

    def __init__(self, simulator: ExchangeSimulator):
        self.simulator = simulator
        self.create_order_calls = 0

    def _to_remote_order(self, order: SimulatedOrder) -> RemoteOrder:
        return RemoteOrder(
            id=order.exchange_order_id,
            symbol=order.symbol,
            client_order_id=order.client_order_id,
            side=order.side,
            type=order.type,
            price=order.price,
            amount=order.amount,
            filled_amount=order.filled_amount,
            status=order.status,
            avg_fill_price=order.avg_fill_price,
        )

    async def fetch_open_orders(self, symbol: str) -> List[RemoteOrder]:
        return [self._to_remote_order(o) for o in self.simulator.fetch_open_orders(symbol)]

    async def fetch_my_trades(self, symbol: str, since: Optional[datetime] = None) -> List[RemoteTrade]:
        since_ms = FakeClock._to_ms(since) if since else None
        return [
            RemoteTrade(
                id=t.trade_id,
                order_id=t.order_id,
                client_order_id=t.client_order_id,
                symbol=t.symbol,
                side=t.side,
                price=t.price,
                amount=t.amount,
                fee=t.fee,
                fee_currency=t.fee_currency,
                timestamp=datetime.utcfromtimestamp(t.timestamp / 1000),
            )
            for t in self.simulator.fetch_my_trades(symbol, since_ms)
        ]

    async def create_order(self, params: CreateOrderParams) -> CreateOrderResult:
        self.create_order_calls += 1
        order = self.simulator.create_order(
            symbol=params.symbol,
            side=params.side,
            order_type=params.type,
            amount=params.amount,
            client_order_id=params.client_order_id,
            price=params.price,
        )
        return CreateOrderResult(
            exchange_order_id=order.exchange_order_id,
            client_order_id=order.client_order_id,
            status=order.status,
        )

    async def cancel_order(self, exchange_order_id: str, symbol: str) -> None:
        try:
            self.simulator.cancel_order(exchange_order_id, symbol)
        except OrderNotFoundError:
            logger.info(f"Order {exchange_order_id} not found on simulator, nothing to cancel")

    async def fetch_balance(self) -> Dict[str, Balance]:
        result = {}
        for asset, balance in self.simulator.fetch_balance().items():
            total = parse_decimal(balance.free) + parse_decimal(balance.locked)
            result[asset] = Balance(
                currency=asset,
                free=balance.free,
                used=balance.locked,
                total=format(total.normalize(), "f"),
            )
        return result

    async def get_market_info(self, symbol: str) -> MarketInfo:
        return self.simulator.get_market(symbol)

    async def get_ticker(self, symbol: str) -> Ticker:
        last = self.simulator.get_ticker(symbol)
        if last is None:
            raise ExchangeError(f"No ticker for {symbol}")
        return Ticker(symbol=symbol, last=last, timestamp=self.simulator.clock.now_datetime())

    async def get_balance(self, symbol: str) -> Optional[Balance]:
        _, quote = _parse_symbol(symbol)
        balances = await self.fetch_balance()
        return balances.get(quote)
