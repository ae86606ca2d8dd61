"""
Bot state and the orchestration context.

``StateMachine.transition`` is the only way the bot state changes. It no-ops on a
self-transition, logs every change with the trade context, clears all trade tracking
on entry to IDLE and refuses transitions that would break the protection invariants:

- POSITION_ACTIVE: a position exists and both protective order ids are set.
- POSITION_UNPROTECTED: a position exists and protection is incomplete.
- IDLE: no position, no entry order, no protective orders.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import time
from typing import TYPE_CHECKING, Any

from perpbot.exceptions import StateInvariantError
from perpbot.trading.reconciler import Order, Position
from perpbot.utils import get_logger

if TYPE_CHECKING:
    from perpbot.analysis.oracle import DecisionResult, OpenOrderPlan

logger = get_logger(__name__)


class BotState(str, Enum):
    INITIALIZING = "INITIALIZING"
    IDLE = "IDLE"
    EVALUATING = "EVALUATING"
    ORDER_PENDING = "ORDER_PENDING"
    POSITION_ACTIVE = "POSITION_ACTIVE"
    POSITION_UNPROTECTED = "POSITION_UNPROTECTED"
    CLOSING = "CLOSING"
    SHUTDOWN = "SHUTDOWN"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset({BotState.SHUTDOWN, BotState.ERROR})


@dataclass
class TradeContext:
    """Position and order handles owned by the orchestrator."""

    position: Position | None = None
    entry_order: Order | None = None
    stop_loss_order: Order | None = None
    take_profit_order: Order | None = None
    open_plan: "OpenOrderPlan | None" = None
    protection_compromised: bool = False
    last_closed_price: float | None = None
    last_result: "DecisionResult | None" = None
    busy: bool = False
    evaluation_origin: BotState | None = None

    @property
    def is_protected(self) -> bool:
        return (
            self.position is not None
            and self.stop_loss_order is not None
            and self.take_profit_order is not None
            and not self.protection_compromised
        )

    @property
    def protective_orders(self) -> list[Order]:
        return [order for order in (self.stop_loss_order, self.take_profit_order) if order is not None]

    def is_flat(self) -> bool:
        return (
            self.position is None
            and self.entry_order is None
            and self.stop_loss_order is None
            and self.take_profit_order is None
        )

    def clear_trade_tracking(self) -> None:
        self.position = None
        self.entry_order = None
        self.stop_loss_order = None
        self.take_profit_order = None
        self.open_plan = None
        self.protection_compromised = False

    def snapshot(self) -> dict[str, Any]:
        """Operational state as shown to the oracle and the heartbeat."""
        entry = None
        if self.entry_order is not None:
            entry = {
                "orderId": self.entry_order.order_id,
                "seconds_pending": round(self.entry_order.age_seconds(), 1),
            }
        return {
            "active_pending_entry_order_details": entry,
            "active_sl_order_id": self.stop_loss_order.order_id if self.stop_loss_order else None,
            "active_tp_order_id": self.take_profit_order.order_id if self.take_profit_order else None,
            "is_managing_order_lock": self.busy,
            "is_position_unprotected": self.position is not None and not self.is_protected,
        }


TransitionListener = Callable[[BotState, BotState, str], None]


class StateMachine:
    """
    Single writer of ``BotState``.

    Example:
        ```python
        machine = StateMachine(TradeContext())
        machine.transition(BotState.IDLE, "startup complete")
        ```
    """

    def __init__(
        self,
        context: TradeContext | None = None,
        listener: TransitionListener | None = None,
    ):
        self.context = context or TradeContext()
        self._state = BotState.INITIALIZING
        self._listener = listener
        self.changed_at = time.monotonic()
        self.transition_count = 0

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def _check_invariants(self, new_state: BotState) -> None:
        ctx = self.context
        if new_state is BotState.POSITION_ACTIVE and not ctx.is_protected:
            raise StateInvariantError(
                "POSITION_ACTIVE requires a position with both protective orders "
                f"(position={ctx.position is not None}, sl={ctx.stop_loss_order is not None}, "
                f"tp={ctx.take_profit_order is not None}, compromised={ctx.protection_compromised})"
            )
        if new_state is BotState.POSITION_UNPROTECTED:
            if ctx.position is None:
                raise StateInvariantError("POSITION_UNPROTECTED requires a position")
            if ctx.is_protected:
                raise StateInvariantError("POSITION_UNPROTECTED requires incomplete protection")

    def transition(self, new_state: BotState, reason: str = "", **metadata: Any) -> bool:
        """
        Move to ``new_state``.

        Returns:
            True if the state changed, False for a no-op or an ignored transition
            out of a terminal state.

        Raises:
            StateInvariantError: The target state's invariant does not hold.
        """
        old_state = self._state
        if new_state is old_state:
            return False

        if old_state is BotState.SHUTDOWN or (
            old_state is BotState.ERROR and new_state is not BotState.SHUTDOWN
        ):
            logger.warning(
                "transition_ignored",
                from_state=old_state.value,
                to_state=new_state.value,
                reason=reason,
            )
            return False

        if new_state is BotState.IDLE:
            self.context.clear_trade_tracking()
        self._check_invariants(new_state)

        self._state = new_state
        self.changed_at = time.monotonic()
        self.transition_count += 1

        ctx = self.context
        logger.info(
            "state_transition",
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
            has_position=ctx.position is not None,
            entry_order_id=ctx.entry_order.order_id if ctx.entry_order else None,
            sl_order_id=ctx.stop_loss_order.order_id if ctx.stop_loss_order else None,
            tp_order_id=ctx.take_profit_order.order_id if ctx.take_profit_order else None,
            **metadata,
        )

        if self._listener is not None:
            self._listener(old_state, new_state, reason)
        return True
