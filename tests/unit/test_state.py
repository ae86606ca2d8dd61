"""
Unit tests for the bot state machine.

Tests cover:
- Self-transition no-ops
- Protection invariants on POSITION_ACTIVE / POSITION_UNPROTECTED
- Trade tracking cleared on IDLE
- Terminal state handling
- Operational snapshot
"""

import pytest

from perpbot.exceptions import StateInvariantError
from perpbot.trading.reconciler import Order, OrderRole, Position
from perpbot.trading.state import BotState, StateMachine, TradeContext

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def position() -> Position:
    return Position(
        symbol="BTCUSDT",
        side="LONG",
        quantity=0.01,
        entry_price=60000.0,
        mark_price=60000.0,
        unrealized_pnl=0.0,
        leverage=10,
    )


def order(order_id: str, role: OrderRole) -> Order:
    return Order(order_id, role, "BTCUSDT", "SELL", "STOP_MARKET", "0.010", reduce_only=True)


@pytest.fixture
def machine() -> StateMachine:
    return StateMachine()


# =============================================================================
# Tests
# =============================================================================


@pytest.mark.unit
class TestTransitions:
    def test_starts_initializing(self, machine):
        assert machine.state is BotState.INITIALIZING
        assert not machine.is_terminal

    def test_self_transition_is_noop(self, machine):
        machine.transition(BotState.IDLE, "startup")
        count = machine.transition_count

        assert machine.transition(BotState.IDLE, "again") is False
        assert machine.transition_count == count

    def test_listener_is_called(self):
        calls = []
        machine = StateMachine(listener=lambda old, new, reason: calls.append((old, new, reason)))

        machine.transition(BotState.IDLE, "startup")

        assert calls == [(BotState.INITIALIZING, BotState.IDLE, "startup")]

    def test_active_requires_both_protective_orders(self, machine, position):
        machine.context.position = position
        machine.context.stop_loss_order = order("1", OrderRole.STOP_LOSS)

        with pytest.raises(StateInvariantError):
            machine.transition(BotState.POSITION_ACTIVE)
        assert machine.state is BotState.INITIALIZING

    def test_active_with_full_protection(self, machine, position):
        ctx = machine.context
        ctx.position = position
        ctx.stop_loss_order = order("1", OrderRole.STOP_LOSS)
        ctx.take_profit_order = order("2", OrderRole.TAKE_PROFIT)

        assert machine.transition(BotState.POSITION_ACTIVE, "protected")
        assert ctx.is_protected

    def test_compromised_protection_is_not_active(self, machine, position):
        ctx = machine.context
        ctx.position = position
        ctx.stop_loss_order = order("1", OrderRole.STOP_LOSS)
        ctx.take_profit_order = order("2", OrderRole.TAKE_PROFIT)
        ctx.protection_compromised = True

        with pytest.raises(StateInvariantError):
            machine.transition(BotState.POSITION_ACTIVE)
        assert machine.transition(BotState.POSITION_UNPROTECTED, "margin call")

    def test_unprotected_requires_position(self, machine):
        with pytest.raises(StateInvariantError):
            machine.transition(BotState.POSITION_UNPROTECTED)

    def test_idle_clears_tracking(self, machine, position):
        ctx = machine.context
        ctx.position = position
        ctx.entry_order = order("9", OrderRole.ENTRY)
        ctx.stop_loss_order = order("1", OrderRole.STOP_LOSS)
        ctx.protection_compromised = True

        machine.transition(BotState.IDLE, "closed")

        assert ctx.is_flat()
        assert ctx.open_plan is None
        assert ctx.protection_compromised is False

    def test_error_only_moves_to_shutdown(self, machine):
        machine.transition(BotState.ERROR, "stream lost")

        assert machine.is_terminal
        assert machine.transition(BotState.IDLE) is False
        assert machine.state is BotState.ERROR
        assert machine.transition(BotState.SHUTDOWN) is True

    def test_shutdown_is_final(self, machine):
        machine.transition(BotState.SHUTDOWN)

        assert machine.transition(BotState.ERROR) is False
        assert machine.transition(BotState.IDLE) is False
        assert machine.state is BotState.SHUTDOWN


@pytest.mark.unit
class TestTradeContext:
    def test_snapshot_without_trade(self):
        snapshot = TradeContext().snapshot()

        assert snapshot == {
            "active_pending_entry_order_details": None,
            "active_sl_order_id": None,
            "active_tp_order_id": None,
            "is_managing_order_lock": False,
            "is_position_unprotected": False,
        }

    def test_snapshot_with_unprotected_position(self, position):
        ctx = TradeContext(position=position, stop_loss_order=order("5", OrderRole.STOP_LOSS), busy=True)
        snapshot = ctx.snapshot()

        assert snapshot["active_sl_order_id"] == "5"
        assert snapshot["active_tp_order_id"] is None
        assert snapshot["is_managing_order_lock"] is True
        assert snapshot["is_position_unprotected"] is True

    def test_snapshot_with_pending_entry(self):
        ctx = TradeContext(entry_order=order("3", OrderRole.ENTRY))

        details = ctx.snapshot()["active_pending_entry_order_details"]
        assert details["orderId"] == "3"
        assert details["seconds_pending"] >= 0

    def test_protective_orders(self, position):
        ctx = TradeContext(position=position, take_profit_order=order("2", OrderRole.TAKE_PROFIT))
        assert [o.order_id for o in ctx.protective_orders] == ["2"]
