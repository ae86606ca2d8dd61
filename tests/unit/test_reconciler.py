"""
Unit tests for position and order reconciliation.

Tests cover:
- Exchange precision parsing and rounding to tick/step size
- Position normalization from REST and stream payloads
- Order handles built from placement responses
- Fill detection and order-log entries
- Commission conversion to the margin asset
"""

from decimal import Decimal
from unittest.mock import AsyncMock

from hypothesis import given, settings, strategies as st
import pytest

from perpbot.data.errors import ExchangeAPIError, ExchangeError
from perpbot.data.websocket import OrderTradeUpdateEvent
from perpbot.trading.reconciler import (
    ExchangeInfo,
    Order,
    OrderRole,
    commission_in_quote,
    fill_log_entry,
    format_price,
    format_quantity,
    is_fill,
    order_log_entry,
    position_from_rest,
    position_from_stream,
    round_down_to_increment,
)

from conftest import position_risk

# =============================================================================
# Fixtures
# =============================================================================


def trade_update(**overrides) -> OrderTradeUpdateEvent:
    payload = {
        "e": "ORDER_TRADE_UPDATE",
        "E": 1_700_000_000_000,
        "o": {
            "s": "BTCUSDT",
            "i": 555,
            "S": "BUY",
            "o": "LIMIT",
            "X": "FILLED",
            "x": "TRADE",
            "q": "0.010",
            "p": "60000",
            "ap": "60000",
            "l": "0.010",
            "z": "0.010",
            "L": "60000",
            "n": "0.24",
            "N": "USDT",
            "rp": "0",
            "R": False,
            "t": 9001,
        },
    }
    payload["o"].update(overrides)
    return OrderTradeUpdateEvent.from_ws_message(payload)


# =============================================================================
# Precision
# =============================================================================


@pytest.mark.unit
class TestPrecision:
    def test_parses_filters(self, exchange_info):
        precision = exchange_info.get("btcusdt")
        assert precision.tick_size == Decimal("0.10")
        assert precision.step_size == Decimal("0.001")
        assert "BTCUSDT" in exchange_info
        assert len(exchange_info) == 2

    def test_price_rounds_down_to_tick(self, exchange_info):
        assert format_price(exchange_info, "BTCUSDT", 60123.456) == "60123.4"

    def test_quantity_rounds_down_to_step(self, exchange_info):
        assert format_quantity(exchange_info, "BTCUSDT", 0.0019) == "0.001"

    def test_quantity_below_step_formats_to_zero(self, exchange_info):
        assert format_quantity(exchange_info, "BTCUSDT", 0.0004) == "0.000"

    def test_integer_step(self):
        info = ExchangeInfo.from_payload(
            {"symbols": [{"symbol": "DOGEUSDT", "filters": [{"filterType": "LOT_SIZE", "stepSize": "1"}]}]}
        )
        assert format_quantity(info, "DOGEUSDT", 153.9) == "153"

    def test_unknown_symbol_uses_fallback_format(self, exchange_info):
        assert format_price(exchange_info, "XRPUSDT", 0.52340000) == "0.5234"
        assert format_quantity(None, "XRPUSDT", 12.0) == "12"

    def test_non_numeric_value_raises(self):
        with pytest.raises(ValueError):
            round_down_to_increment("abc", Decimal("0.1"))

    @settings(max_examples=200)
    @given(
        value=st.decimals(min_value=Decimal("0.001"), max_value=Decimal("1000000"), places=6),
        increment=st.sampled_from([Decimal("0.1"), Decimal("0.01"), Decimal("0.001"), Decimal("1"), Decimal("0.5")]),
    )
    def test_rounded_value_is_multiple_not_above_input(self, value, increment):
        result = Decimal(round_down_to_increment(value, increment))

        assert result <= value
        assert value - result < increment
        assert (result / increment) == (result / increment).to_integral_value()

    @settings(max_examples=200)
    @given(
        value=st.decimals(min_value=Decimal("0.001"), max_value=Decimal("1000000"), places=6),
        increment=st.sampled_from(
            [Decimal("0.1"), Decimal("0.01"), Decimal("0.001"), Decimal("1"), Decimal("0.5"), None]
        ),
    )
    def test_formatting_is_idempotent(self, value, increment):
        once = round_down_to_increment(value, increment)

        assert round_down_to_increment(once, increment) == once


# =============================================================================
# Positions
# =============================================================================


@pytest.mark.unit
class TestPositionFromRest:
    def test_long_position(self):
        position = position_from_rest(position_risk("0.010", "60000", "1.5"), "BTCUSDT")

        assert position.side == "LONG"
        assert position.quantity == pytest.approx(0.010)
        assert position.entry_price == 60000.0
        assert position.unrealized_pnl == 1.5
        assert position.leverage == 10
        assert position.close_side == "SELL"

    def test_short_position(self):
        position = position_from_rest(position_risk("-0.5", "3000"), "BTCUSDT")

        assert position.side == "SHORT"
        assert position.quantity == 0.5
        assert position.close_side == "BUY"

    def test_zero_amount_is_no_position(self):
        assert position_from_rest(position_risk("0.000"), "BTCUSDT") is None

    def test_other_symbol_is_ignored(self):
        assert position_from_rest(position_risk("1", "3000", symbol="ETHUSDT"), "BTCUSDT") is None

    def test_single_object_payload(self):
        payload = position_risk("0.002", "61000")[0]
        assert position_from_rest(payload, "BTCUSDT").quantity == 0.002

    def test_none_payload(self):
        assert position_from_rest(None, "BTCUSDT") is None

    @given(amount=st.floats(min_value=-1e6, max_value=1e6, allow_nan=False))
    def test_quantity_is_never_signed_and_zero_is_absent(self, amount):
        position = position_from_rest(position_risk(repr(amount), "100"), "BTCUSDT")

        if abs(amount) < 1e-9:
            assert position is None
        else:
            assert position.quantity > 0
            assert position.side == ("LONG" if amount > 0 else "SHORT")


@pytest.mark.unit
class TestPositionFromStream:
    def test_symbol_not_mentioned(self):
        found, position = position_from_stream([{"s": "ETHUSDT", "pa": "1"}], "BTCUSDT", 10)
        assert found is False
        assert position is None

    def test_position_closed(self):
        found, position = position_from_stream([{"s": "BTCUSDT", "pa": "0", "ep": "0"}], "BTCUSDT", 10)
        assert found is True
        assert position is None

    def test_keeps_caller_leverage(self):
        found, position = position_from_stream(
            [{"s": "BTCUSDT", "pa": "-0.01", "ep": "60000", "up": "-2", "ps": "BOTH"}], "BTCUSDT", 25, 60100.0
        )
        assert found is True
        assert position.side == "SHORT"
        assert position.leverage == 25
        assert position.mark_price == 60100.0
        assert position.unrealized_pnl == -2.0


# =============================================================================
# Orders
# =============================================================================


@pytest.mark.unit
class TestOrder:
    def test_from_response(self):
        order = Order.from_response(
            {"orderId": 42, "status": "NEW"}, OrderRole.ENTRY, "BTCUSDT", "BUY", "LIMIT", "0.010", price="60000.0"
        )
        assert order.order_id == "42"
        assert order.role is OrderRole.ENTRY
        assert order.status == "NEW"

    def test_missing_order_id_raises(self):
        with pytest.raises(ExchangeError):
            Order.from_response({"status": "NEW"}, OrderRole.STOP_LOSS, "BTCUSDT", "SELL", "STOP_MARKET", "0.010")

    def test_age_and_dict(self):
        order = Order("1", OrderRole.TAKE_PROFIT, "BTCUSDT", "SELL", "TAKE_PROFIT_MARKET", "0.010", placed_at=100.0)
        assert order.age_seconds(now=130.0) == 30.0
        data = order.to_dict()
        assert data["role"] == "TAKE_PROFIT"
        assert "placed_at" not in data


@pytest.mark.unit
class TestFills:
    def test_trade_execution_is_fill(self):
        assert is_fill(trade_update())

    def test_partial_fill_is_fill(self):
        assert is_fill(trade_update(X="PARTIALLY_FILLED", l="0.004", z="0.004"))

    def test_new_order_is_not_fill(self):
        assert not is_fill(trade_update(X="NEW", x="NEW", l="0"))

    def test_cancel_is_not_fill(self):
        assert not is_fill(trade_update(X="CANCELED", x="CANCELED", l="0"))

    def test_fill_log_entry(self):
        entry = fill_log_entry(trade_update(rp="1.25"), 7, 3, "USDT", 0.24)

        assert entry.order_id == "555"
        assert entry.status_reason == "FILLED"
        assert entry.price == 60000.0
        assert entry.quantity == 0.010
        assert entry.realized_pnl == 1.25
        assert entry.commission_usdt == 0.24
        assert entry.event_key == "555:FILLED:9001"

    def test_order_log_entry_for_timeout(self):
        order = Order("77", OrderRole.ENTRY, "BTCUSDT", "SELL", "LIMIT", "0.020", price="61000.0")
        entry = order_log_entry(order, "CANCELED_TIMEOUT", 7, 3, "USDT")

        assert entry.status_reason == "CANCELED_TIMEOUT"
        assert entry.price == 61000.0
        assert entry.quantity == 0.020
        assert entry.event_key == "77:CANCELED_TIMEOUT:0"


@pytest.mark.unit
class TestCommissionInQuote:
    @pytest.mark.asyncio
    async def test_margin_asset_is_passed_through(self):
        rest = AsyncMock()
        assert await commission_in_quote(rest, "USDT", 0.3, "USDT") == 0.3
        rest.fetch_latest_close.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_asset_is_converted(self):
        rest = AsyncMock()
        rest.fetch_latest_close.return_value = 600.0

        assert await commission_in_quote(rest, "BNB", 0.001, "USDT") == pytest.approx(0.6)
        rest.fetch_latest_close.assert_awaited_once_with("BNBUSDT", "1m")

    @pytest.mark.asyncio
    async def test_unpriceable_asset_counts_as_zero(self):
        rest = AsyncMock()
        rest.fetch_latest_close.side_effect = ExchangeAPIError("Invalid symbol.", code=-1121)

        assert await commission_in_quote(rest, "XYZ", 5.0, "USDT") == 0.0
