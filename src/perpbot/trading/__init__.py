"""
Trading module for the perpbot engine.

Provides the bot state machine, the timer scheduler and the reconciliation helpers
that turn venue payloads into positions, orders and order-log entries.

The engine itself lives in ``perpbot.trading.orchestrator`` and is imported from
there directly.
"""

from .reconciler import (
    ExchangeInfo,
    Order,
    OrderRole,
    Position,
    SymbolPrecision,
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
from .scheduler import Scheduler
from .state import TERMINAL_STATES, BotState, StateMachine, TradeContext

__all__ = [
    # State
    "BotState",
    "TERMINAL_STATES",
    "StateMachine",
    "TradeContext",
    # Scheduling
    "Scheduler",
    # Reconciliation
    "ExchangeInfo",
    "SymbolPrecision",
    "Position",
    "Order",
    "OrderRole",
    "format_price",
    "format_quantity",
    "round_down_to_increment",
    "position_from_rest",
    "position_from_stream",
    "is_fill",
    "fill_log_entry",
    "order_log_entry",
    "commission_in_quote",
]
