"""Order gates evaluated before an intent is written.

Each gate returns a GateResult; a blocked result carries a code and reason.
"""

from dataclasses import dataclass
from typing import Optional

from .decimals import parse_decimal
from .preview import GridConfig


@dataclass
class GateResult:
    blocked: bool = False
    code: Optional[str] = None
    reason: Optional[str] = None


PASS = GateResult()


def check_price_bounds(config: GridConfig, current_price: str) -> GateResult:
    """Block when the price is outside [priceMin, priceMax]."""
    price = parse_decimal(current_price)
    price_min = config.trigger.price_min
    price_max = config.trigger.price_max

    if price_min and price < parse_decimal(price_min):
        return GateResult(True, "PRICE_BELOW_MIN", f"Price {current_price} is below minimum {price_min}")
    if price_max and price > parse_decimal(price_max):
        return GateResult(True, "PRICE_ABOVE_MAX", f"Price {current_price} is above maximum {price_max}")
    return PASS


def check_floor_price(config: GridConfig, current_price: str, side: str) -> GateResult:
    """Block buys below the floor price. Sells are never blocked."""
    risk = config.risk
    if not risk.enable_floor_price or not risk.floor_price or side != "buy":
        return PASS

    if parse_decimal(current_price) < parse_decimal(risk.floor_price):
        return GateResult(
            True,
            "FLOOR_PRICE_TRIGGERED",
            f"Price {current_price} is below floor price {risk.floor_price}, buy blocked",
        )
    return PASS


def check_risk_side(config: GridConfig, side: str) -> GateResult:
    """Honor the enableBuy / enableSell switches."""
    if side == "buy" and not config.risk.enable_buy:
        return GateResult(True, "BUY_DISABLED", "Buy is disabled by risk settings")
    if side == "sell" and not config.risk.enable_sell:
        return GateResult(True, "SELL_DISABLED", "Sell is disabled by risk settings")
    return PASS
