"""
Trading engine: the single owner of bot state.

The engine consumes stream events, timer ticks and oracle decisions and drives order
placement and cancellation through the REST client. Every state change goes through
``StateMachine.transition``. Order operations (open, protect, close, timeout sweep)
hold the busy flag so they never interleave, and each one re-checks the state after
every await because stream events may have moved the machine meanwhile.

Example Usage:
    ```python
    engine = TradingEngine(config, store, rest_client, gateway, engine_settings)
    exit_code = await engine.run()  # returns after request_stop()
    ```
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
import os
from typing import Any

from perpbot.analysis.oracle import (
    DecisionOracleGateway,
    DecisionResult,
    DecisionValidationError,
    OpenOrderPlan,
    OracleAction,
    OracleError,
    OracleRequestError,
    apply_safety_overrides,
)
from perpbot.config.constants import ENTRY_TERMINAL_FAILURES, NO_SUCH_ORDER_CODE
from perpbot.config.settings import BotConfig, EngineSettings
from perpbot.data.errors import BenignOutcome, ExchangeAPIError, ExchangeError
from perpbot.data.rest_client import FuturesRestClient
from perpbot.data.storage import AIInteractionEntry, BotStore, OrderLogEntry, StrategyDirectives
from perpbot.data.websocket import (
    AccountUpdateEvent,
    FuturesUserMarketStream,
    KlineMessage,
    MarginCallEvent,
    OrderTradeUpdateEvent,
    StreamMessage,
)
from perpbot.exceptions import ConfigurationError
from perpbot.trading.reconciler import (
    ExchangeInfo,
    Order,
    OrderRole,
    Position,
    commission_in_quote,
    fill_log_entry,
    format_quantity,
    is_fill,
    order_log_entry,
    position_from_rest,
    position_from_stream,
)
from perpbot.trading.scheduler import Scheduler
from perpbot.trading.state import BotState, StateMachine
from perpbot.utils import get_logger

logger = get_logger(__name__)

DECISION_STATES = frozenset(
    {BotState.IDLE, BotState.POSITION_ACTIVE, BotState.POSITION_UNPROTECTED}
)
POSITION_STATES = frozenset({BotState.POSITION_ACTIVE, BotState.POSITION_UNPROTECTED})
PROTECTION_LOST = frozenset({"CANCELED", "EXPIRED", "REJECTED"})

StreamFactory = Callable[..., FuturesUserMarketStream]


class TradingEngine:
    """
    Orchestrates one bot configuration.

    Args:
        config: Immutable bot configuration
        store: Persistence collaborator, already bound to ``config``
        rest: Exchange REST client
        gateway: Decision oracle gateway
        settings: Engine timing settings
        stream_factory: Builds the combined stream; defaults to ``FuturesUserMarketStream``
        scheduler: Timer registry
    """

    def __init__(
        self,
        config: BotConfig,
        store: BotStore,
        rest: FuturesRestClient,
        gateway: DecisionOracleGateway,
        settings: EngineSettings | None = None,
        stream_factory: StreamFactory | None = None,
        scheduler: Scheduler | None = None,
        pid: int | None = None,
    ):
        self.config = config
        self.store = store
        self.rest = rest
        self.gateway = gateway
        self.settings = settings or EngineSettings()
        self.scheduler = scheduler or Scheduler()
        self.machine = StateMachine()
        self.ctx = self.machine.context
        self.exchange_info: ExchangeInfo | None = None
        self.strategy: StrategyDirectives | None = None
        self.listen_key: str | None = None
        self.stream: FuturesUserMarketStream | None = None
        self.pid = pid if pid is not None else os.getpid()

        self._stream_factory = stream_factory or FuturesUserMarketStream
        self._stop_event = asyncio.Event()
        self._stop_reason: str | None = None
        self._stop_error: str | None = None
        self._accepting = True
        self._shut_down = False
        self._emergency_pending = False
        self._reconcile_pending = False
        self._deferred_entry_fill: tuple[str, float, float] | None = None
        # Updates for unknown order ids, collected while an entry placement is in flight
        self._early_updates: dict[str, OrderTradeUpdateEvent] | None = None

    @property
    def state(self) -> BotState:
        return self.machine.state

    @property
    def symbol(self) -> str:
        return self.config.symbol

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> int:
        """Initialize, wait for a stop request, shut down. Returns the exit code."""
        try:
            await self.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.critical("engine_startup_failed", error=str(e), exc_info=True)
            self.machine.transition(BotState.ERROR, "startup failed", error=str(e))
            await self.shutdown(error=f"Startup failed: {e}")
            return 1

        await self._stop_event.wait()
        await self.shutdown(error=self._stop_error)
        return 1 if self._stop_error else 0

    async def initialize(self) -> None:
        """
        Load strategy and precision, detect an existing position, open the stream and
        arm the timers.

        Raises:
            ConfigurationError: Invalid strategy directives for this configuration.
            ExchangeError: A startup call to the venue failed.
        """
        config = self.config
        await self.store.update_heartbeat("initializing", self.pid)

        self.strategy = await self._load_strategy()

        self.exchange_info = ExchangeInfo.from_payload(await self.rest.fetch_exchange_info())
        if self.symbol not in self.exchange_info:
            logger.warning("symbol_precision_missing", symbol=self.symbol)

        position = position_from_rest(
            await self.rest.fetch_position_risk(self.symbol), self.symbol, config.default_leverage
        )

        self.listen_key = await self.rest.start_user_stream()
        self.stream = self._stream_factory(
            symbol=config.symbol,
            interval=config.kline_interval,
            listen_key=self.listen_key,
            renew_listen_key=self._renew_listen_key,
            on_connection_lost=self._on_stream_lost,
            testnet=config.use_testnet,
            ping_interval=self.settings.ws_ping_interval,
            ping_timeout=self.settings.ws_ping_timeout,
        )
        self.stream.add_handler(self.handle_stream_message)
        await self.stream.start()

        if position is not None:
            self.ctx.position = position
            self.machine.transition(
                BotState.POSITION_UNPROTECTED,
                "existing position found at startup",
                side=position.side,
                quantity=position.quantity,
            )
        else:
            self.machine.transition(BotState.IDLE, "startup complete")

        self._arm_timers()
        await self.store.update_heartbeat("running", self.pid, None, self._position_details())
        logger.info(
            "engine_started",
            bot_id=config.id,
            symbol=config.symbol,
            state=self.state.value,
            sizing=self.strategy.sizing_method,
        )

    async def _load_strategy(self) -> StrategyDirectives:
        strategy = (await self.store.load_active_strategy(self.config.user_id)).validate()
        if strategy.sizing_method == "INITIAL_MARGIN_TARGET" and self.config.initial_margin_target_usdt <= 0:
            raise ConfigurationError(
                "INITIAL_MARGIN_TARGET sizing requires a positive initial_margin_target_usdt"
            )
        return strategy

    def _arm_timers(self) -> None:
        config, settings = self.config, self.settings
        self.scheduler.add_periodic("heartbeat", settings.heartbeat_interval_seconds, self.heartbeat)
        self.scheduler.add_periodic("order_check", config.order_check_interval_seconds, self.check_orders)
        self.scheduler.add_periodic(
            "decision",
            config.ai_update_interval_seconds,
            self.run_decision_cycle,
            initial_delay=settings.initial_decision_delay_seconds,
        )
        self.scheduler.add_periodic(
            "listen_key_keepalive", settings.listen_key_refresh_seconds, self.keepalive_listen_key
        )
        if config.take_profit_target_usdt > 0:
            self.scheduler.add_periodic(
                "profit_check", config.profit_check_interval_seconds, self.check_profit_target
            )
        if settings.max_runtime_seconds > 0:
            self.scheduler.add_oneshot("max_runtime", settings.max_runtime_seconds, self._max_runtime_reached)

    async def _max_runtime_reached(self) -> None:
        self.request_stop("max runtime reached")

    def request_stop(self, reason: str, error: str | None = None) -> None:
        """Ask the engine to shut down; ``error`` marks an unrecoverable failure."""
        if self._stop_event.is_set():
            return
        self._accepting = False
        self._stop_reason = reason
        if error:
            self._stop_error = error
            self.machine.transition(BotState.ERROR, reason, error=error)
        logger.warning("engine_stop_requested", reason=reason, error=error)
        self._stop_event.set()

    async def shutdown(self, error: str | None = None) -> None:
        """Tear everything down; every step is best effort."""
        if self._shut_down:
            return
        self._shut_down = True
        self._accepting = False
        logger.info("engine_shutting_down", reason=self._stop_reason, error=error)

        await self.scheduler.close()

        if self.listen_key:
            try:
                await self.rest.close_user_stream(self.listen_key)
            except ExchangeError as e:
                logger.warning("listen_key_close_failed", error=str(e))

        if self.stream is not None:
            try:
                await self.stream.stop()
            except Exception as e:
                logger.error("stream_stop_failed", error=str(e))

        for name, closer in (("oracle", self.gateway.close), ("rest", self.rest.close)):
            try:
                await closer()
            except Exception as e:
                logger.error("client_close_failed", client=name, error=str(e))

        try:
            await self.store.update_heartbeat(
                "error" if error else "stopped", self.pid, error, self._position_details()
            )
        except Exception as e:
            logger.error("final_heartbeat_failed", error=str(e))

        self.machine.transition(BotState.SHUTDOWN, self._stop_reason or "shutdown")

        try:
            await self.store.close()
        except Exception as e:
            logger.error("store_close_failed", error=str(e))
        logger.info("engine_stopped", error=error)

    # =========================================================================
    # Timers
    # =========================================================================

    def _position_details(self) -> dict[str, Any] | None:
        return self.ctx.position.to_dict() if self.ctx.position else None

    async def heartbeat(self) -> None:
        await self.store.update_heartbeat("running", self.pid, None, self._position_details())

    async def keepalive_listen_key(self) -> None:
        if not self.listen_key:
            return
        try:
            await self.rest.keepalive_user_stream(self.listen_key)
            logger.debug("listen_key_kept_alive")
        except ExchangeError as e:
            logger.error("listen_key_keepalive_failed", error=str(e))

    async def _renew_listen_key(self) -> str:
        self.listen_key = await self.rest.start_user_stream()
        logger.info("listen_key_renewed")
        return self.listen_key

    async def _on_stream_lost(self, reason: str) -> None:
        self.request_stop("stream connection lost", error=f"Stream connection lost: {reason}")

    def _schedule_emergency_cycle(self) -> None:
        if not self._accepting:
            return
        logger.warning("emergency_decision_scheduled", state=self.state.value)
        self.scheduler.add_oneshot(
            "emergency_decision", 0, lambda: self.run_decision_cycle(emergency=True)
        )

    @asynccontextmanager
    async def _exclusive(self, operation: str) -> AsyncGenerator[None, None]:
        self.ctx.busy = True
        logger.debug("operation_started", operation=operation)
        try:
            yield
        finally:
            self.ctx.busy = False
        await self._after_busy()

    async def _after_busy(self) -> None:
        """Run work that stream events deferred while an operation was in flight."""
        if self.machine.is_terminal or self.ctx.busy:
            return

        deferred, self._deferred_entry_fill = self._deferred_entry_fill, None
        entry = self.ctx.entry_order
        if deferred and entry and entry.order_id == deferred[0] and self.state is BotState.ORDER_PENDING:
            async with self._exclusive("deferred_entry_fill"):
                await self._handle_entry_fill(deferred[1], deferred[2])
            return

        if self._reconcile_pending:
            self._reconcile_pending = False
            if self.state in POSITION_STATES:
                await self._close("position closed while busy")
                return

        if self._emergency_pending:
            self._emergency_pending = False
            self._schedule_emergency_cycle()

    async def check_orders(self) -> None:
        """Order sweep: entry timeout/status fallback, stuck close reconciliation."""
        if self.machine.is_terminal or self.ctx.busy:
            return
        if self.state is BotState.ORDER_PENDING and self.ctx.entry_order is not None:
            async with self._exclusive("entry_sweep"):
                await self._sweep_entry(self.ctx.entry_order)
        elif self.state is BotState.CLOSING:
            async with self._exclusive("closing_sweep"):
                await self._reconcile_close("closing sweep")

    async def check_profit_target(self) -> None:
        target = self.config.take_profit_target_usdt
        if target <= 0 or self.ctx.busy or self.state not in POSITION_STATES:
            return
        ok, position = await self._fetch_position()
        if not ok or self.ctx.busy or self.state not in POSITION_STATES:
            return
        if position is None:
            await self._close("position flat on profit check")
            return
        self.ctx.position = position
        if position.unrealized_pnl >= target:
            logger.info(
                "profit_target_reached",
                unrealized_pnl=position.unrealized_pnl,
                target=target,
            )
            await self._close("profit target reached")

    # =========================================================================
    # Decision cycle
    # =========================================================================

    async def run_decision_cycle(self, emergency: bool = False) -> None:
        """Ask the oracle what to do and act on the (possibly overridden) answer."""
        if not self._accepting or self.machine.is_terminal:
            return
        origin = self.state
        if self.ctx.busy or origin not in DECISION_STATES:
            if emergency:
                self._emergency_pending = True
            logger.debug("decision_cycle_skipped", state=origin.value, busy=self.ctx.busy)
            return

        async with self._exclusive("decision_cycle"):
            self.ctx.evaluation_origin = origin
            self.machine.transition(
                BotState.EVALUATING,
                "emergency decision" if emergency else "scheduled decision",
            )
            try:
                await self._evaluate(origin, emergency)
            except Exception as e:
                logger.error("decision_cycle_failed", error=str(e), state=self.state.value, exc_info=True)
                self.ctx.last_result = DecisionResult(status="ERROR_CYCLE", message=f"Decision cycle failed: {e}")
                try:
                    await self._record_interaction("ERROR_CYCLE", None, self.ctx.last_result, None, None, None)
                except Exception as record_error:
                    logger.error("ai_interaction_not_recorded", action="ERROR_CYCLE", error=str(record_error))
            finally:
                self.ctx.evaluation_origin = None
                if self.state is BotState.EVALUATING:
                    await self._settle("decision cycle finished")

    async def _evaluate(self, origin: BotState, emergency: bool) -> None:
        ctx = self.ctx
        try:
            self.strategy = (await self.store.load_active_strategy(self.config.user_id)).validate()
        except Exception as e:
            logger.warning("strategy_reload_failed", error=str(e))
        strategy = self.strategy

        operational_state = {"bot_state": origin.value, **ctx.snapshot()}
        context = await self.gateway.collect_context(
            self.config,
            strategy,
            operational_state,
            ctx.last_result,
            ctx.last_closed_price,
            self.exchange_info,
            is_emergency=emergency,
        )
        if self.state is not BotState.EVALUATING:
            return
        if context.position_known:
            self._refresh_position(context.position)

        try:
            reply = await self.gateway.decide(context.document, strategy)
        except OracleError as e:
            failure = "ERROR_CYCLE" if isinstance(e, OracleRequestError) else "ERROR_PROCESSING_AI_RESPONSE"
            logger.error("oracle_cycle_failed", error=str(e), failure=failure)
            ctx.last_result = DecisionResult(status=failure, message=f"AI cycle failed: {e}")
            await self._record_interaction(
                failure, None, ctx.last_result, context.document, e.payload_md5, e.raw_response
            )
            return

        if self.state is not BotState.EVALUATING:
            return

        decision = reply.decision
        has_position = ctx.position is not None
        unprotected = origin is BotState.POSITION_UNPROTECTED or (has_position and not ctx.is_protected)
        executed, override = apply_safety_overrides(decision.action, has_position, unprotected)

        result = DecisionResult(
            status="WARN_OVERRIDE" if override else "OK_ACTION",
            message=f"Bot Override: {override}" if override else f"Bot will {executed.value} as per AI.",
            proposed_action=decision.action.value,
            executed_action=executed.value,
            override_reason=override,
            original_decision=decision.params,
        )
        if override:
            logger.warning(
                "decision_overridden",
                original_action=decision.action.value,
                executed_action=executed.value,
                reason=override,
                state=origin.value,
            )

        updated = await self.gateway.apply_strategy_update(strategy, decision, context.document)
        if updated is not None:
            result.strategy_update_status = "OK" if updated else "FAILED"
            result.message = ("[Strategy Updated] " if updated else "[Strategy Update Failed] ") + result.message

        log_action = result.log_action
        plan: OpenOrderPlan | None = None
        if executed is OracleAction.OPEN_POSITION:
            try:
                plan = self.gateway.resolve_open(decision, strategy, self.config, self.exchange_info)
            except DecisionValidationError as e:
                logger.error("open_decision_rejected", error=str(e), params=decision.params)
                result.status = "ERROR_VALIDATION"
                result.message = f"AI OPEN_POSITION params rejected by bot: {e}"
                log_action = "ERROR_VALIDATION_OPEN_POS"

        ctx.last_result = result
        await self._record_interaction(
            log_action, decision.params, result, context.document, reply.payload_md5, reply.raw_response
        )
        if self.state is not BotState.EVALUATING:
            return

        if executed is OracleAction.OPEN_POSITION:
            if plan is None:
                self.machine.transition(BotState.IDLE, "open decision failed validation")
            else:
                await self._open_position(plan)
        elif executed is OracleAction.CLOSE_POSITION:
            await self._close_from_cycle(decision.rationale or "oracle close decision")
        else:
            logger.info("decision_hold", action=executed.value, rationale=decision.rationale)

    def _refresh_position(self, position: Position | None) -> None:
        if position is not None and self.ctx.position is not None:
            position.leverage = position.leverage or self.ctx.position.leverage
        self.ctx.position = position

    async def _settle(self, reason: str) -> None:
        """Leave EVALUATING for the state the trade context actually supports."""
        ctx = self.ctx
        if ctx.position is None:
            if ctx.protective_orders:
                self.machine.transition(BotState.CLOSING, f"{reason}: position gone")
                await self._reconcile_close(reason)
            else:
                self.machine.transition(BotState.IDLE, reason)
        elif ctx.is_protected:
            self.machine.transition(BotState.POSITION_ACTIVE, reason)
        else:
            self.machine.transition(BotState.POSITION_UNPROTECTED, reason)

    async def _record_interaction(
        self,
        action: str,
        decision: dict[str, Any] | None,
        result: DecisionResult,
        context: dict[str, Any] | None,
        payload_md5: str | None,
        raw_response: str | None,
    ) -> None:
        entry = AIInteractionEntry(
            user_id=self.config.user_id,
            bot_config_id=self.config.id,
            symbol=self.symbol,
            executed_action=action,
            decision=decision,
            bot_feedback=result.to_dict(),
            context=context,
            payload_md5=payload_md5,
            raw_response=raw_response,
        )
        if not await self.store.append_ai_interaction(entry):
            logger.warning("ai_interaction_not_recorded", action=action)

    # =========================================================================
    # Open / protect
    # =========================================================================

    async def _open_position(self, plan: OpenOrderPlan) -> None:
        self.ctx.open_plan = plan
        self._early_updates = {}
        try:
            await self._place_entry(plan)
        finally:
            self._early_updates = None

    async def _place_entry(self, plan: OpenOrderPlan) -> None:
        try:
            await self.rest.set_leverage(self.symbol, plan.leverage)
            response = await self.rest.place_order(
                self.symbol,
                plan.side,
                "LIMIT",
                plan.quantity,
                price=plan.entry_price,
                time_in_force="GTC",
            )
            order = Order.from_response(
                response,
                OrderRole.ENTRY,
                self.symbol,
                plan.side,
                "LIMIT",
                plan.quantity,
                price=plan.entry_price,
            )
        except ExchangeError as e:
            logger.error("entry_order_failed", error=str(e), plan=plan.to_dict())
            if self.ctx.last_result is not None:
                self.ctx.last_result.status = "ERROR_EXECUTION"
                self.ctx.last_result.message = f"Entry order placement failed: {e}"
            if self.state is BotState.EVALUATING:
                self.machine.transition(BotState.IDLE, "entry order placement failed")
            return

        if self.state is not BotState.EVALUATING:
            logger.warning("entry_placed_after_state_change", order_id=order.order_id, state=self.state.value)
        self.ctx.entry_order = order
        self.machine.transition(
            BotState.ORDER_PENDING,
            "entry order placed",
            order_id=order.order_id,
            side=plan.side,
            price=plan.entry_price,
            quantity=plan.quantity,
        )
        self._apply_early_update(order)

    def _apply_early_update(self, order: Order) -> None:
        """Match a stream update that arrived before the placement response."""
        update = (self._early_updates or {}).get(order.order_id)
        if update is None:
            return
        order.status = update.status
        logger.info("entry_update_before_placement_response", order_id=order.order_id, status=update.status)
        if update.status == "FILLED":
            self._deferred_entry_fill = (
                order.order_id, update.cumulative_filled_quantity, update.average_price
            )

    async def _handle_entry_fill(self, quantity: float, price: float) -> None:
        """Entry fully filled: track the position and protect it."""
        ctx = self.ctx
        entry = ctx.entry_order
        if entry is None or self.state is not BotState.ORDER_PENDING:
            return
        ctx.entry_order = None
        if ctx.position is None:
            leverage = ctx.open_plan.leverage if ctx.open_plan else self.config.default_leverage
            fill_price = price or float(entry.price or 0)
            ctx.position = Position(
                symbol=self.symbol,
                side="LONG" if entry.side == "BUY" else "SHORT",
                quantity=quantity or float(entry.quantity),
                entry_price=fill_price,
                mark_price=fill_price,
                unrealized_pnl=0.0,
                leverage=leverage,
            )
        self.machine.transition(BotState.POSITION_UNPROTECTED, "entry order filled", order_id=entry.order_id)
        await self._protect_position(flatten_on_failure=True)

    async def _place_protective(self, role: OrderRole, side: str, quantity: str, stop_price: str) -> Order:
        order_type = "STOP_MARKET" if role is OrderRole.STOP_LOSS else "TAKE_PROFIT_MARKET"
        response = await self.rest.place_order(
            self.symbol,
            side,
            order_type,
            quantity,
            stop_price=stop_price,
            reduce_only=True,
            working_type="MARK_PRICE",
        )
        return Order.from_response(
            response, role, self.symbol, side, order_type, quantity, stop_price=stop_price, reduce_only=True
        )

    async def _protect_position(self, flatten_on_failure: bool) -> bool:
        """
        Place the missing protective orders concurrently.

        On failure every order placed by this call is cancelled; with
        ``flatten_on_failure`` the position is then closed at market, otherwise an
        emergency decision cycle is scheduled.
        """
        ctx = self.ctx
        position, plan = ctx.position, ctx.open_plan
        if position is None:
            return False
        if plan is None:
            logger.error("protection_plan_missing", position=position.to_dict())
            self._schedule_emergency_cycle()
            return False

        quantity = format_quantity(self.exchange_info, self.symbol, position.quantity)
        side = position.close_side
        tasks: dict[OrderRole, asyncio.Task] = {}
        if ctx.stop_loss_order is None:
            tasks[OrderRole.STOP_LOSS] = asyncio.create_task(
                self._place_protective(OrderRole.STOP_LOSS, side, quantity, plan.stop_loss_price)
            )
        if ctx.take_profit_order is None:
            tasks[OrderRole.TAKE_PROFIT] = asyncio.create_task(
                self._place_protective(OrderRole.TAKE_PROFIT, side, quantity, plan.take_profit_price)
            )

        if tasks:
            _, pending = await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
            if pending:
                await asyncio.wait(pending)

        placed: dict[OrderRole, Order] = {}
        errors: list[str] = []
        for role, task in tasks.items():
            if task.exception() is not None:
                errors.append(f"{role.value}: {task.exception()}")
            else:
                placed[role] = task.result()

        if errors or self.state is not BotState.POSITION_UNPROTECTED or ctx.position is None:
            logger.critical(
                "protective_orders_failed",
                errors=errors,
                state=self.state.value,
                has_position=ctx.position is not None,
            )
            for order in placed.values():
                await self._cancel_quietly(order)
            if self.state is not BotState.POSITION_UNPROTECTED:
                return False
            if ctx.position is None or flatten_on_failure:
                ctx.stop_loss_order = ctx.take_profit_order = None
                self.machine.transition(BotState.CLOSING, "protective order placement failed")
                await self._reconcile_close("forced flatten after protection failure")
            else:
                self._schedule_emergency_cycle()
            return False

        if OrderRole.STOP_LOSS in placed:
            ctx.stop_loss_order = placed[OrderRole.STOP_LOSS]
        if OrderRole.TAKE_PROFIT in placed:
            ctx.take_profit_order = placed[OrderRole.TAKE_PROFIT]
        ctx.protection_compromised = False
        self.machine.transition(BotState.POSITION_ACTIVE, "protective orders placed")
        return True

    # =========================================================================
    # Close
    # =========================================================================

    async def _close(self, reason: str) -> None:
        """Close from a position state under the busy flag."""
        if self.ctx.busy:
            self._reconcile_pending = True
            return
        async with self._exclusive("close"):
            if self.state not in POSITION_STATES:
                return
            self.machine.transition(BotState.CLOSING, reason)
            await self._reconcile_close(reason)

    async def _close_from_cycle(self, reason: str) -> None:
        self.machine.transition(BotState.CLOSING, f"close decision: {reason}")
        await self._reconcile_close(reason)

    async def _cancel_quietly(self, order: Order) -> None:
        try:
            result = await self.rest.cancel_order(self.symbol, order.order_id)
        except ExchangeError as e:
            logger.error("order_cancel_failed", order_id=order.order_id, role=order.role.value, error=str(e))
            return
        if isinstance(result, BenignOutcome):
            logger.info("order_already_gone", order_id=order.order_id, role=order.role.value, code=result.code)
        else:
            logger.info("order_canceled", order_id=order.order_id, role=order.role.value)

    async def _fetch_position(self) -> tuple[bool, Position | None]:
        leverage = self.ctx.position.leverage if self.ctx.position else self.config.default_leverage
        try:
            payload = await self.rest.fetch_position_risk(self.symbol)
        except ExchangeError as e:
            logger.error("position_fetch_failed", error=str(e))
            return False, None
        return True, position_from_rest(payload, self.symbol, leverage)

    async def _reconcile_close(self, reason: str) -> None:
        """Cancel protection, confirm the position and flatten it if still open."""
        ctx = self.ctx
        for order in ctx.protective_orders:
            await self._cancel_quietly(order)
            if self.state is not BotState.CLOSING:
                return
        ctx.stop_loss_order = ctx.take_profit_order = None

        ok, position = await self._fetch_position()
        if self.state is not BotState.CLOSING:
            return
        if ok:
            self._refresh_position(position)
        if ctx.position is None:
            await self._finish_close(reason)
            return

        quantity = format_quantity(self.exchange_info, self.symbol, ctx.position.quantity)
        try:
            await self.rest.place_order(
                self.symbol, ctx.position.close_side, "MARKET", quantity, reduce_only=True
            )
        except ExchangeError as e:
            logger.critical("close_order_failed", error=str(e), reason=reason)
            if self.state is BotState.CLOSING and ctx.position is not None:
                self.machine.transition(BotState.POSITION_UNPROTECTED, "close order failed")
                self._schedule_emergency_cycle()
            return
        logger.info("close_order_placed", reason=reason, quantity=quantity)

    async def _finish_close(self, reason: str) -> None:
        if self.state is not BotState.CLOSING:
            return
        self.machine.transition(BotState.IDLE, f"position closed: {reason}")
        if self._accepting:
            self.scheduler.add_oneshot(
                "post_close_decision",
                self.settings.post_close_decision_delay_seconds,
                self.run_decision_cycle,
            )

    # =========================================================================
    # Order sweep
    # =========================================================================

    def _entry_still_pending(self, order: Order) -> bool:
        return self.state is BotState.ORDER_PENDING and self.ctx.entry_order is order

    async def _log_order(self, entry: OrderLogEntry) -> None:
        if not await self.store.append_order_log(entry):
            logger.warning("order_log_not_recorded", order_id=entry.order_id, status=entry.status_reason)

    def _order_log(self, order: Order, status_reason: str) -> OrderLogEntry:
        return order_log_entry(
            order, status_reason, self.config.id, self.config.user_id, self.config.margin_asset
        )

    async def _sweep_entry(self, order: Order) -> None:
        timeout = self.config.pending_entry_order_cancel_timeout_seconds
        if order.age_seconds() >= timeout:
            await self._cancel_timed_out_entry(order)
            return

        try:
            payload = await self.rest.get_order(self.symbol, order.order_id)
        except ExchangeAPIError as e:
            if e.code == NO_SUCH_ORDER_CODE and self._entry_still_pending(order):
                logger.warning("entry_order_vanished", order_id=order.order_id)
                self.machine.transition(BotState.IDLE, "entry order not found")
            else:
                logger.error("entry_status_check_failed", order_id=order.order_id, error=str(e))
            return
        except ExchangeError as e:
            logger.error("entry_status_check_failed", order_id=order.order_id, error=str(e))
            return

        if not self._entry_still_pending(order):
            return
        status = str(payload.get("status", ""))
        if status == "FILLED":
            await self._handle_entry_fill(*self._filled_from_payload(payload))
        elif status in ENTRY_TERMINAL_FAILURES:
            logger.warning("entry_order_ended", order_id=order.order_id, status=status, source="fallback")
            await self._resolve_dead_entry(order, f"{status}_FALLBACK", check_rest=True)

    @staticmethod
    def _filled_from_payload(payload: dict[str, Any]) -> tuple[float, float]:
        try:
            quantity = float(payload.get("executedQty") or 0)
            price = float(payload.get("avgPrice") or 0)
        except (TypeError, ValueError):
            return 0.0, 0.0
        return quantity, price

    async def _cancel_timed_out_entry(self, order: Order) -> None:
        logger.warning(
            "entry_order_timed_out",
            order_id=order.order_id,
            age_seconds=round(order.age_seconds(), 1),
            timeout=self.config.pending_entry_order_cancel_timeout_seconds,
        )
        try:
            result = await self.rest.cancel_order(self.symbol, order.order_id)
        except ExchangeError as e:
            logger.error("entry_cancel_failed", order_id=order.order_id, error=str(e))
            return
        if not self._entry_still_pending(order):
            return

        if isinstance(result, BenignOutcome):
            try:
                payload = await self.rest.get_order(self.symbol, order.order_id)
            except ExchangeError as e:
                logger.warning("entry_status_after_cancel_unknown", order_id=order.order_id, error=str(e))
                payload = {}
            if not self._entry_still_pending(order):
                return
            if payload.get("status") == "FILLED":
                await self._handle_entry_fill(*self._filled_from_payload(payload))
                return

        await self._resolve_dead_entry(order, "CANCELED_TIMEOUT", check_rest=True)

    async def _resolve_dead_entry(self, order: Order, status_reason: str, check_rest: bool) -> None:
        """The entry will not fill any further; protect a partial fill or go IDLE."""
        await self._log_order(self._order_log(order, status_reason))
        if not self._entry_still_pending(order):
            return
        if check_rest:
            ok, position = await self._fetch_position()
            if not self._entry_still_pending(order):
                return
            if ok:
                self._refresh_position(position)

        self.ctx.entry_order = None
        if self.ctx.position is not None:
            self.machine.transition(
                BotState.POSITION_UNPROTECTED, "entry ended with a partial fill", status=status_reason
            )
            await self._protect_position(flatten_on_failure=True)
        else:
            self.machine.transition(BotState.IDLE, f"entry order ended: {status_reason}")

    # =========================================================================
    # Stream events
    # =========================================================================

    async def handle_stream_message(self, message: StreamMessage) -> None:
        if self.machine.is_terminal:
            return
        if isinstance(message, KlineMessage):
            if message.is_closed:
                self.ctx.last_closed_price = message.close
        elif isinstance(message, OrderTradeUpdateEvent):
            await self._on_order_update(message)
        elif isinstance(message, AccountUpdateEvent):
            await self._on_account_update(message)
        elif isinstance(message, MarginCallEvent):
            await self._on_margin_call(message)

    async def _log_fill(self, update: OrderTradeUpdateEvent) -> None:
        commission = await commission_in_quote(
            self.rest, update.commission_asset, update.commission, self.config.margin_asset
        )
        await self._log_order(
            fill_log_entry(update, self.config.id, self.config.user_id, self.config.margin_asset, commission)
        )

    def _protective_role(self, order_id: str) -> OrderRole | None:
        ctx = self.ctx
        if ctx.stop_loss_order is not None and ctx.stop_loss_order.order_id == order_id:
            return OrderRole.STOP_LOSS
        if ctx.take_profit_order is not None and ctx.take_profit_order.order_id == order_id:
            return OrderRole.TAKE_PROFIT
        return None

    async def _on_order_update(self, update: OrderTradeUpdateEvent) -> None:
        if update.symbol.upper() != self.symbol:
            return
        if is_fill(update):
            await self._log_fill(update)

        ctx = self.ctx
        entry = ctx.entry_order
        if entry is not None and update.order_id == entry.order_id:
            entry.status = update.status
            if update.status == "FILLED":
                if ctx.busy:
                    self._deferred_entry_fill = (
                        entry.order_id, update.cumulative_filled_quantity, update.average_price
                    )
                    logger.info("entry_fill_deferred", order_id=entry.order_id)
                    return
                async with self._exclusive("entry_fill"):
                    await self._handle_entry_fill(update.cumulative_filled_quantity, update.average_price)
            elif update.status in ENTRY_TERMINAL_FAILURES and not ctx.busy:
                logger.warning("entry_order_ended", order_id=entry.order_id, status=update.status, source="stream")
                async with self._exclusive("entry_ended"):
                    if self._entry_still_pending(entry):
                        await self._resolve_dead_entry(entry, update.status, check_rest=False)
            return

        role = self._protective_role(update.order_id)
        if role is None:
            if self._early_updates is not None:
                known = self._early_updates.get(update.order_id)
                if known is None or known.status != "FILLED":
                    self._early_updates[update.order_id] = update
            return
        if update.status == "FILLED":
            logger.info(
                "protective_order_filled",
                role=role.value,
                order_id=update.order_id,
                realized_pnl=update.realized_pnl,
            )
            await self._close(f"{role.value.lower()} filled")
        elif update.status in PROTECTION_LOST and self.state is BotState.POSITION_ACTIVE and not ctx.busy:
            await self._on_protection_missing(role, update.status)

    async def _on_protection_missing(self, role: OrderRole, status: str) -> None:
        ctx = self.ctx
        logger.warning("protective_order_missing", role=role.value, status=status)
        if role is OrderRole.STOP_LOSS:
            ctx.stop_loss_order = None
        else:
            ctx.take_profit_order = None
        self.machine.transition(BotState.POSITION_UNPROTECTED, f"{role.value.lower()} {status.lower()} externally")
        async with self._exclusive("restore_protection"):
            await self._protect_position(flatten_on_failure=False)

    async def _on_account_update(self, event: AccountUpdateEvent) -> None:
        ctx = self.ctx
        leverage = ctx.position.leverage if ctx.position else self.config.default_leverage
        found, position = position_from_stream(
            event.positions, self.symbol, leverage, ctx.last_closed_price or 0.0
        )
        if not found:
            return
        previous = ctx.position
        ctx.position = position
        state = self.state

        if position is None:
            if state in POSITION_STATES and previous is not None:
                logger.info("position_flat_on_account_update", reason=event.reason)
                await self._close("position closed on venue")
            elif state is BotState.CLOSING and not ctx.busy:
                await self._finish_close("position confirmed flat")
            elif state is BotState.CLOSING:
                logger.debug("position_flat_while_closing", reason=event.reason)
            return

        if state is BotState.IDLE:
            logger.warning("unexpected_position_detected", side=position.side, quantity=position.quantity)
            self.machine.transition(BotState.POSITION_UNPROTECTED, "position appeared while idle")
            self._schedule_emergency_cycle()

    async def _on_margin_call(self, event: MarginCallEvent) -> None:
        mentioned = not event.positions or any(
            str(entry.get("s", "")).upper() == self.symbol for entry in event.positions
        )
        logger.warning(
            "margin_call_received",
            state=self.state.value,
            cross_wallet_balance=event.cross_wallet_balance,
            affects_symbol=mentioned,
        )
        if not mentioned or self.ctx.position is None:
            return
        if self.state is BotState.POSITION_ACTIVE:
            self.ctx.protection_compromised = True
            self.machine.transition(BotState.POSITION_UNPROTECTED, "margin call")
            self._schedule_emergency_cycle()
        elif self.state is BotState.POSITION_UNPROTECTED:
            self._schedule_emergency_cycle()
        else:
            self.ctx.protection_compromised = True
            self._emergency_pending = True
