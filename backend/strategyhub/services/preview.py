"""Grid config parsing and the preview engine.

calculate_preview is pure: it takes market rules, a ticker and an optional
balance and returns the trigger prices, the orders the bot would place and
the validation issues. Start/resume and the /preview endpoint share it.
"""

import json
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import Optional, Dict, Any, List, Union

from .decimals import parse_decimal, normalize_decimal
from .exchange import Balance, MarketInfo, Ticker

DEFAULT_FEE_RATE = "0.001"

SUPPORTED_BASE_PRICE_TYPES = ("current", "manual")


# ============================================================================
# Config
# ============================================================================

@dataclass
class TriggerConfig:
    grid_type: str = "percent"  # percent | price
    base_price_type: str = "current"  # current | cost | avg_24h | manual
    base_price: Optional[str] = None
    price_min: Optional[str] = None
    price_max: Optional[str] = None
    rise_sell: str = "0"
    fall_buy: str = "0"


@dataclass
class OrderConfig:
    order_type: str = "limit"


@dataclass
class SizingConfig:
    amount_mode: str = "amount"  # amount (quote) | percent (of free quote)
    grid_symmetric: bool = True
    order_quantity: Optional[str] = None
    buy_quantity: Optional[str] = None
    sell_quantity: Optional[str] = None

    @property
    def has_symmetric(self) -> bool:
        return self.grid_symmetric and self.order_quantity is not None

    @property
    def has_asymmetric(self) -> bool:
        return self.buy_quantity is not None or self.sell_quantity is not None


@dataclass
class RiskConfig:
    enable_buy: bool = True
    enable_sell: bool = True
    enable_floor_price: bool = False
    floor_price: Optional[str] = None
    enable_auto_close: bool = False
    auto_close_drawdown_percent: Optional[str] = None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _section(data: Dict[str, Any], key: str, required: bool = True) -> Dict[str, Any]:
    section = data.get(key)
    if section is None and not required:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"config.{key} must be an object")
    return section


@dataclass
class GridConfig:
    """Bot strategy config.

    schemaVersion 1 (default) stores percentages as percent points ("2" = 2%),
    version 2 and later store ratios ("0.02" = 2%).
    """
    trigger: TriggerConfig
    order: OrderConfig = field(default_factory=OrderConfig)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    schema_version: int = 1

    @classmethod
    def from_dict(cls, data: Union[str, Dict[str, Any], None]) -> "GridConfig":
        """Parse the stored camelCase config.

        Raises:
            ValueError: If the config is not an object or a section is malformed
        """
        if isinstance(data, str):
            data = json.loads(data)
        if not isinstance(data, dict):
            raise ValueError("config must be an object")

        trigger = _section(data, "trigger")
        order = _section(data, "order", required=False)
        sizing = _section(data, "sizing")
        risk = _section(data, "risk", required=False)

        symmetric = sizing.get("symmetric") or {}
        asymmetric = sizing.get("asymmetric") or {}

        schema_version = data.get("schemaVersion", 1)
        if isinstance(schema_version, bool) or not isinstance(schema_version, (int, float)):
            schema_version = 1

        return cls(
            trigger=TriggerConfig(
                grid_type=trigger.get("gridType", "percent"),
                base_price_type=trigger.get("basePriceType", "current"),
                base_price=_str_or_none(trigger.get("basePrice")),
                price_min=_str_or_none(trigger.get("priceMin")),
                price_max=_str_or_none(trigger.get("priceMax")),
                rise_sell=_str_or_none(trigger.get("riseSell")) or "0",
                fall_buy=_str_or_none(trigger.get("fallBuy")) or "0",
            ),
            order=OrderConfig(order_type=order.get("orderType", "limit")),
            sizing=SizingConfig(
                amount_mode=sizing.get("amountMode", "amount"),
                grid_symmetric=bool(sizing.get("gridSymmetric", True)),
                order_quantity=_str_or_none(symmetric.get("orderQuantity")),
                buy_quantity=_str_or_none(asymmetric.get("buyQuantity")),
                sell_quantity=_str_or_none(asymmetric.get("sellQuantity")),
            ),
            risk=RiskConfig(
                enable_buy=risk.get("enableBuy", True) is not False,
                enable_sell=risk.get("enableSell", True) is not False,
                enable_floor_price=bool(risk.get("enableFloorPrice", False)),
                floor_price=_str_or_none(risk.get("floorPrice")),
                enable_auto_close=bool(risk.get("enableAutoClose", False)),
                auto_close_drawdown_percent=_str_or_none(risk.get("autoCloseDrawdownPercent")),
            ),
            schema_version=int(schema_version),
        )

    def percent_to_ratio(self, value: Optional[str]) -> Decimal:
        raw = parse_decimal(value)
        return raw if self.schema_version >= 2 else raw / 100


# ============================================================================
# Preview
# ============================================================================

@dataclass
class PreviewIssue:
    severity: str  # ERROR | WARN
    code: str
    message: str


@dataclass
class PreviewLine:
    kind: str  # reference | trigger | bound | risk
    label: str
    price: str


@dataclass
class PreviewOrder:
    side: str
    type: str
    quote_amount: str
    base_amount: str
    price: Optional[str] = None


@dataclass
class PreviewEstimates:
    assumed_fee_rate: str
    spread_quote: str
    spread_percent: str
    estimated_fee_quote_round_trip: str
    estimated_net_profit_quote_round_trip: str
    notes: List[str] = field(default_factory=list)


@dataclass
class PreviewResult:
    base_price: str
    buy_trigger_price: str
    sell_trigger_price: str
    lines: List[PreviewLine] = field(default_factory=list)
    orders: List[PreviewOrder] = field(default_factory=list)
    issues: List[PreviewIssue] = field(default_factory=list)
    estimates: Optional[PreviewEstimates] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_trigger_prices(config: GridConfig, base_price: Decimal):
    """Buy and sell trigger prices around a base price.

    Returns:
        Tuple of (buy_trigger, sell_trigger) as Decimals
    """
    if config.trigger.grid_type == "percent":
        fall = config.percent_to_ratio(config.trigger.fall_buy)
        rise = config.percent_to_ratio(config.trigger.rise_sell)
        return base_price * (1 - fall), base_price * (1 + rise)

    fall = parse_decimal(config.trigger.fall_buy)
    rise = parse_decimal(config.trigger.rise_sell)
    return base_price - fall, base_price + rise


def _quote_amounts(config: GridConfig, balance: Optional[Balance], issues: List[PreviewIssue]):
    sizing = config.sizing

    if not sizing.has_symmetric and not sizing.has_asymmetric:
        issues.append(PreviewIssue(
            "ERROR", "INVALID_SIZING_CONFIG", "Missing symmetric or asymmetric sizing config"
        ))
        return Decimal(0), Decimal(0)

    if sizing.has_symmetric:
        buy_qty = sell_qty = parse_decimal(sizing.order_quantity)
    else:
        buy_qty = parse_decimal(sizing.buy_quantity)
        sell_qty = parse_decimal(sizing.sell_quantity)

    if sizing.amount_mode != "percent":
        return buy_qty, sell_qty

    if balance is None:
        issues.append(PreviewIssue(
            "WARN", "BALANCE_UNAVAILABLE", "Balance not available for percent calculation, using placeholder"
        ))
        return Decimal(0), Decimal(0)

    free_quote = parse_decimal(balance.free)
    return free_quote * buy_qty / 100, free_quote * sell_qty / 100


def calculate_preview(
    config: GridConfig,
    market: MarketInfo,
    ticker: Ticker,
    balance: Optional[Balance] = None,
    fee_rate: Optional[str] = None,
) -> PreviewResult:
    """Compute trigger prices, planned orders and validation issues.

    Args:
        config: Parsed grid config
        market: Symbol trading rules
        ticker: Current ticker
        balance: Free quote balance, needed for percent sizing
        fee_rate: Fee rate for the round-trip estimate

    Returns:
        PreviewResult with prices normalized to the market precision
    """
    issues: List[PreviewIssue] = []
    lines: List[PreviewLine] = []
    orders: List[PreviewOrder] = []
    trigger = config.trigger

    if trigger.base_price_type in ("cost", "avg_24h"):
        issues.append(PreviewIssue(
            "ERROR",
            "UNSUPPORTED_BASE_PRICE_TYPE",
            f"basePriceType={trigger.base_price_type} is not supported, use manual or current",
        ))

    if trigger.base_price_type == "manual":
        if not trigger.base_price:
            issues.append(PreviewIssue(
                "ERROR", "MISSING_BASE_PRICE", "basePrice is required when basePriceType=manual"
            ))
            base_price = Decimal(0)
        else:
            base_price = parse_decimal(trigger.base_price)
    else:
        base_price = parse_decimal(ticker.last)

    buy_trigger, sell_trigger = compute_trigger_prices(config, base_price)

    price_precision = market.price_precision
    base_norm = normalize_decimal(base_price, price_precision)
    buy_norm = normalize_decimal(buy_trigger, price_precision)
    sell_norm = normalize_decimal(sell_trigger, price_precision)

    lines.append(PreviewLine("reference", "Base Price", base_norm))
    lines.append(PreviewLine("trigger", "Buy Trigger", buy_norm))
    lines.append(PreviewLine("trigger", "Sell Trigger", sell_norm))
    if trigger.price_min:
        lines.append(PreviewLine("bound", "Price Min", trigger.price_min))
    if trigger.price_max:
        lines.append(PreviewLine("bound", "Price Max", trigger.price_max))
    if config.risk.enable_floor_price and config.risk.floor_price:
        lines.append(PreviewLine("risk", "Floor Price", config.risk.floor_price))

    buy_quote, sell_quote = _quote_amounts(config, balance, issues)

    buy_base = buy_quote / buy_trigger if buy_trigger > 0 else Decimal(0)
    sell_base = sell_quote / sell_trigger if sell_trigger > 0 else Decimal(0)

    buy_quote_norm = normalize_decimal(buy_quote, price_precision)
    sell_quote_norm = normalize_decimal(sell_quote, price_precision)
    buy_base_norm = normalize_decimal(buy_base, market.amount_precision)
    sell_base_norm = normalize_decimal(sell_base, market.amount_precision)

    min_amount = parse_decimal(market.min_amount)
    for label, amount, amount_norm in (("Buy", buy_base, buy_base_norm), ("Sell", sell_base, sell_base_norm)):
        if 0 < amount < min_amount:
            issues.append(PreviewIssue(
                "ERROR",
                "BELOW_MIN_AMOUNT",
                f"{label} order amount {amount_norm} is below minimum {market.min_amount}",
            ))

    min_notional = parse_decimal(market.min_notional)
    for label, quote, quote_norm in (("Buy", buy_quote, buy_quote_norm), ("Sell", sell_quote, sell_quote_norm)):
        if 0 < quote < min_notional:
            issues.append(PreviewIssue(
                "ERROR",
                "BELOW_MIN_NOTIONAL",
                f"{label} order notional {quote_norm} is below minimum {market.min_notional}",
            ))

    is_limit = config.order.order_type == "limit"
    if buy_quote > 0:
        orders.append(PreviewOrder(
            side="buy",
            type="limit" if is_limit else "market",
            price=buy_norm if is_limit else None,
            quote_amount=buy_quote_norm,
            base_amount=buy_base_norm,
        ))
    if sell_quote > 0:
        orders.append(PreviewOrder(
            side="sell",
            type="limit" if is_limit else "market",
            price=sell_norm if is_limit else None,
            quote_amount=sell_quote_norm,
            base_amount=sell_base_norm,
        ))

    estimates = None
    has_errors = any(issue.severity == "ERROR" for issue in issues)
    if not has_errors and buy_quote > 0 and sell_quote > 0:
        effective_fee_rate = parse_decimal(fee_rate or DEFAULT_FEE_RATE)
        spread = sell_trigger - buy_trigger
        spread_percent = spread / base_price if base_price > 0 else Decimal(0)
        fee_round_trip = (buy_quote + sell_quote) * effective_fee_rate
        avg_base = (buy_base + sell_base) / 2
        net_profit = avg_base * spread - fee_round_trip

        estimates = PreviewEstimates(
            assumed_fee_rate=str(effective_fee_rate),
            spread_quote=normalize_decimal(spread, price_precision),
            spread_percent=normalize_decimal(spread_percent, 4),
            estimated_fee_quote_round_trip=normalize_decimal(fee_round_trip, price_precision),
            estimated_net_profit_quote_round_trip=normalize_decimal(net_profit, price_precision),
            notes=[
                "Assumes immediate fills at the trigger price",
                "Ignores slippage and matching latency",
                "Ignores partial fills",
            ],
        )

    return PreviewResult(
        base_price=base_norm,
        buy_trigger_price=buy_norm,
        sell_trigger_price=sell_norm,
        lines=lines,
        orders=orders,
        issues=issues,
        estimates=estimates,
    )


def has_blocking_errors(result: PreviewResult) -> bool:
    return any(issue.severity == "ERROR" for issue in result.issues)
