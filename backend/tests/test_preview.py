"""Tests for config parsing, the preview engine and order gates."""

import pytest

from strategyhub.services.exchange import Balance, MarketInfo, Ticker
from strategyhub.services.gates import check_floor_price, check_price_bounds, check_risk_side
from strategyhub.services.preview import GridConfig, calculate_preview, has_blocking_errors

from conftest import grid_config

MARKET = MarketInfo(
    symbol="BTC/USDT",
    price_precision=2,
    amount_precision=8,
    min_amount="0.0001",
    min_notional="5",
)
TICKER = Ticker(symbol="BTC/USDT", last="100")


def preview(config, balance=None, market=MARKET, ticker=TICKER):
    return calculate_preview(GridConfig.from_dict(config), market, ticker, balance)


def issue_codes(result):
    return [issue.code for issue in result.issues]


class TestConfigParsing:
    """GridConfig.from_dict."""

    def test_parses_camel_case_sections(self):
        config = GridConfig.from_dict(grid_config(risk={"enableBuy": False, "floorPrice": "90"}))
        assert config.trigger.grid_type == "percent"
        assert config.trigger.rise_sell == "2"
        assert config.sizing.order_quantity == "100"
        assert config.sizing.has_symmetric
        assert not config.risk.enable_buy
        assert config.risk.enable_sell
        assert config.risk.floor_price == "90"
        assert config.schema_version == 1

    def test_parses_json_string(self):
        config = GridConfig.from_dict('{"trigger": {"riseSell": 3}, "sizing": {}}')
        assert config.trigger.rise_sell == "3"
        assert config.trigger.fall_buy == "0"

    @pytest.mark.parametrize("data", [None, [], "[]", {"sizing": {}}, {"trigger": "x", "sizing": {}}])
    def test_rejects_malformed(self, data):
        with pytest.raises(ValueError):
            GridConfig.from_dict(data)

    def test_percent_units_by_schema_version(self):
        v1 = GridConfig.from_dict(grid_config())
        v2 = GridConfig.from_dict({**grid_config(), "schemaVersion": 2})
        assert str(v1.percent_to_ratio("2")) == "0.02"
        assert str(v2.percent_to_ratio("0.02")) == "0.02"


class TestPreview:
    """calculate_preview."""

    def test_percent_grid_around_current_price(self):
        result = preview(grid_config())

        assert result.base_price == "100.00"
        assert result.buy_trigger_price == "98.00"
        assert result.sell_trigger_price == "102.00"
        assert result.issues == []
        assert not has_blocking_errors(result)

        buy, sell = result.orders
        assert (buy.side, buy.type, buy.price) == ("buy", "limit", "98.00")
        assert buy.quote_amount == "100.00"
        assert buy.base_amount == "1.02040816"
        assert (sell.side, sell.price) == ("sell", "102.00")
        assert sell.base_amount == "0.98039216"

    def test_round_trip_estimates(self):
        estimates = preview(grid_config()).estimates
        assert estimates.assumed_fee_rate == "0.001"
        assert estimates.spread_quote == "4.00"
        assert estimates.spread_percent == "0.0400"
        assert estimates.estimated_fee_quote_round_trip == "0.20"
        assert estimates.estimated_net_profit_quote_round_trip == "3.80"

    def test_price_grid_with_manual_base(self):
        config = grid_config(trigger={
            "gridType": "price", "basePriceType": "manual", "basePrice": "200", "riseSell": "5", "fallBuy": "5",
        })
        result = preview(config)
        assert result.base_price == "200.00"
        assert result.buy_trigger_price == "195.00"
        assert result.sell_trigger_price == "205.00"

    def test_schema_v2_ratios(self):
        config = {**grid_config(trigger={"riseSell": "0.02", "fallBuy": "0.02"}), "schemaVersion": 2}
        result = preview(config)
        assert result.buy_trigger_price == "98.00"
        assert result.sell_trigger_price == "102.00"

    def test_manual_without_base_price(self):
        result = preview(grid_config(trigger={"basePriceType": "manual"}))
        assert "MISSING_BASE_PRICE" in issue_codes(result)
        assert has_blocking_errors(result)

    @pytest.mark.parametrize("base_price_type", ["cost", "avg_24h"])
    def test_unsupported_base_price_type(self, base_price_type):
        result = preview(grid_config(trigger={"basePriceType": base_price_type}))
        assert "UNSUPPORTED_BASE_PRICE_TYPE" in issue_codes(result)

    def test_below_min_notional(self):
        result = preview(grid_config(sizing={"symmetric": {"orderQuantity": "1"}}))
        assert issue_codes(result) == ["BELOW_MIN_NOTIONAL", "BELOW_MIN_NOTIONAL"]
        assert result.estimates is None

    def test_below_min_amount(self):
        market = MarketInfo(symbol="BTC/USDT", price_precision=2, amount_precision=8, min_amount="2")
        result = preview(grid_config(), market=market)
        assert issue_codes(result) == ["BELOW_MIN_AMOUNT", "BELOW_MIN_AMOUNT"]

    def test_missing_sizing(self):
        config = grid_config()
        config["sizing"] = {"amountMode": "amount", "gridSymmetric": True}
        result = preview(config)
        assert issue_codes(result) == ["INVALID_SIZING_CONFIG"]
        assert result.orders == []

    def test_asymmetric_sizing(self):
        config = grid_config()
        config["sizing"] = {
            "gridSymmetric": False,
            "asymmetric": {"buyQuantity": "50", "sellQuantity": "200"},
        }
        buy, sell = preview(config).orders
        assert buy.quote_amount == "50.00"
        assert sell.quote_amount == "200.00"

    def test_percent_sizing_uses_free_balance(self):
        config = grid_config(sizing={"amountMode": "percent", "symmetric": {"orderQuantity": "1"}})
        result = preview(config, balance=Balance(currency="USDT", free="10000"))
        assert [o.quote_amount for o in result.orders] == ["100.00", "100.00"]

    def test_percent_sizing_without_balance(self):
        config = grid_config(sizing={"amountMode": "percent", "symmetric": {"orderQuantity": "1"}})
        result = preview(config)
        assert issue_codes(result) == ["BALANCE_UNAVAILABLE"]
        assert not has_blocking_errors(result)
        assert result.orders == []

    def test_market_orders_have_no_price(self):
        result = preview(grid_config(order={"orderType": "market"}))
        assert [o.type for o in result.orders] == ["market", "market"]
        assert all(o.price is None for o in result.orders)

    def test_bounds_and_floor_lines(self):
        config = grid_config(
            trigger={"priceMin": "80", "priceMax": "120"},
            risk={"enableFloorPrice": True, "floorPrice": "85"},
        )
        labels = [line.label for line in preview(config).lines]
        assert labels == ["Base Price", "Buy Trigger", "Sell Trigger", "Price Min", "Price Max", "Floor Price"]

    def test_to_dict(self):
        data = preview(grid_config()).to_dict()
        assert data["buy_trigger_price"] == "98.00"
        assert data["orders"][0]["side"] == "buy"


class TestGates:
    """Per-order gates."""

    def test_price_bounds(self):
        config = GridConfig.from_dict(grid_config(trigger={"priceMin": "90", "priceMax": "110"}))
        assert not check_price_bounds(config, "100").blocked
        assert check_price_bounds(config, "89.99").code == "PRICE_BELOW_MIN"
        assert check_price_bounds(config, "110.01").code == "PRICE_ABOVE_MAX"

    def test_floor_blocks_buys_only(self):
        config = GridConfig.from_dict(grid_config(risk={"enableFloorPrice": True, "floorPrice": "95"}))
        assert check_floor_price(config, "94", "buy").code == "FLOOR_PRICE_TRIGGERED"
        assert not check_floor_price(config, "94", "sell").blocked
        assert not check_floor_price(config, "96", "buy").blocked

    def test_floor_disabled(self):
        config = GridConfig.from_dict(grid_config(risk={"floorPrice": "95"}))
        assert not check_floor_price(config, "1", "buy").blocked

    def test_risk_side(self):
        config = GridConfig.from_dict(grid_config(risk={"enableBuy": False}))
        assert check_risk_side(config, "buy").code == "BUY_DISABLED"
        assert not check_risk_side(config, "sell").blocked
