"""
Decision oracle gateway for the perpbot trading engine.

One decision cycle goes through this module: collect the context document in
parallel, render the mode-specific prompt, POST it to the generative model, parse the
nested JSON decision, optionally persist a strategy-directives update and, for an
"open" decision, validate and precision-format the order plan.

Every oracle-side failure (HTTP error, blocked prompt, missing or malformed decision)
raises an ``OracleError`` subclass. The engine treats those as recoverable.

Example Usage:
    ```python
    gateway = DecisionOracleGateway(api_key, "gemini-2.5-flash", rest_client, store)

    context = await gateway.collect_context(config, strategy, operational_state, ...)
    reply = await gateway.decide(context.document, strategy)

    action, override = apply_safety_overrides(reply.decision.action, has_position, unprotected)
    if action is OracleAction.OPEN_POSITION:
        plan = gateway.resolve_open(reply.decision, strategy, config, exchange_info)
    ```
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
import hashlib
import json
from typing import Any

import httpx

from perpbot.analysis.prompts import OperatingMode, render_prompt
from perpbot.config.constants import (
    ACCOUNT_TRADES_LIMIT,
    CONFIG_OWNED_DIRECTIVE_KEYS,
    ERROR_PREVIEW_LENGTH,
    HISTORICAL_KLINE_INTERVALS,
    KLINE_CONTEXT_LIMIT,
    MAX_AI_INTERACTIONS_FOR_CONTEXT,
    MAX_LEVERAGE,
    MAX_ORDER_LOGS_FOR_CONTEXT,
    MIN_LEVERAGE,
    MIN_RATIONALE_LENGTH,
    ORACLE_BASE_URL,
    SIZING_INITIAL_MARGIN_TARGET,
)
from perpbot.config.settings import BotConfig
from perpbot.data.rest_client import FuturesRestClient
from perpbot.data.storage import BotStore, StrategyDirectives
from perpbot.exceptions import PerpbotError
from perpbot.trading.reconciler import (
    ExchangeInfo,
    Position,
    format_price,
    format_quantity,
    position_from_rest,
)
from perpbot.utils import get_logger

logger = get_logger(__name__)


# =============================================================================
# Errors
# =============================================================================


class OracleError(PerpbotError):
    """A decision cycle could not obtain a usable decision from the oracle."""

    def __init__(self, message: str, raw_response: str | None = None, payload_md5: str | None = None):
        super().__init__(message)
        self.raw_response = raw_response
        self.payload_md5 = payload_md5


class OracleRequestError(OracleError):
    """Transport failure or HTTP status >= 300."""

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class OracleBlockedError(OracleError):
    """The oracle refused the prompt (``promptFeedback.blockReason``)."""

    def __init__(self, block_reason: str, **kwargs: Any):
        super().__init__(f"AI prompt blocked: {block_reason}", **kwargs)
        self.block_reason = block_reason


class OracleResponseError(OracleError):
    """The response or the decision inside it is missing or malformed."""


class DecisionValidationError(PerpbotError):
    """An OPEN_POSITION decision failed validation and must not be placed."""


# =============================================================================
# Decisions
# =============================================================================


class OracleAction(str, Enum):
    OPEN_POSITION = "OPEN_POSITION"
    CLOSE_POSITION = "CLOSE_POSITION"
    HOLD_POSITION = "HOLD_POSITION"
    DO_NOTHING = "DO_NOTHING"


@dataclass(frozen=True)
class StrategyUpdateSuggestion:
    reason: str
    directives: dict[str, Any]


@dataclass(frozen=True)
class OracleDecision:
    """Parsed oracle answer. ``params`` keeps the original payload for the audit log."""

    action: OracleAction
    rationale: str
    params: dict[str, Any]
    strategy_update: StrategyUpdateSuggestion | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "OracleDecision":
        """
        Build a decision from the decoded JSON, failing closed.

        Raises:
            OracleResponseError: Payload is not an object or the action is missing/unknown.
        """
        if not isinstance(payload, dict):
            raise OracleResponseError(f"Decision is not a JSON object: {type(payload).__name__}")
        raw_action = payload.get("action")
        if not isinstance(raw_action, str) or not raw_action.strip():
            raise OracleResponseError("Decision has no 'action' field")
        try:
            action = OracleAction(raw_action.strip().upper())
        except ValueError as e:
            raise OracleResponseError(f"Unknown AI action '{raw_action}'") from e

        suggestion = None
        raw_update = payload.get("suggested_strategy_directives_update")
        if isinstance(raw_update, dict) and isinstance(raw_update.get("updated_directives"), dict):
            suggestion = StrategyUpdateSuggestion(
                reason=str(raw_update.get("reason_for_update") or "AI suggested update"),
                directives=raw_update["updated_directives"],
            )

        rationale = payload.get("rationale")
        return cls(
            action=action,
            rationale=rationale.strip() if isinstance(rationale, str) else "",
            params=payload,
            strategy_update=suggestion,
        )


@dataclass
class DecisionResult:
    """What the engine did with the last decision; shown to the oracle next cycle."""

    status: str
    message: str
    proposed_action: str | None = None
    executed_action: str | None = None
    override_reason: str | None = None
    strategy_update_status: str | None = None
    original_decision: dict[str, Any] | None = None

    @property
    def log_action(self) -> str:
        """``executed_action_by_bot`` value for the AI interaction log."""
        if self.executed_action is None:
            return self.status
        suffix = "_BOT_OVERRIDE" if self.override_reason else "_AI_DIRECT"
        return f"{self.executed_action}{suffix}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "message": self.message}
        if self.executed_action is not None:
            data["executed_action_by_bot"] = self.executed_action
        if self.override_reason:
            data["override_reason"] = self.override_reason
            data["original_ai_decision"] = self.original_decision
        if self.strategy_update_status is not None:
            data["strategy_update_status"] = self.strategy_update_status
        return data


@dataclass(frozen=True)
class OpenOrderPlan:
    """Validated, precision-formatted entry and protective prices for an open."""

    symbol: str
    side: str
    leverage: int
    entry_price: str
    quantity: str
    stop_loss_price: str
    take_profit_price: str
    rationale: str

    @property
    def close_side(self) -> str:
        return "SELL" if self.side == "BUY" else "BUY"

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "leverage": self.leverage,
            "entryPrice": self.entry_price,
            "quantity": self.quantity,
            "stopLossPrice": self.stop_loss_price,
            "takeProfitPrice": self.take_profit_price,
        }


def apply_safety_overrides(
    action: OracleAction,
    has_position: bool,
    unprotected: bool,
) -> tuple[OracleAction, str | None]:
    """
    Coerce the proposed action to what the current situation allows.

    Returns:
        ``(executed_action, override_reason)``; the reason is ``None`` when the
        proposed action stands.
    """
    if unprotected:
        if action is not OracleAction.CLOSE_POSITION:
            return (
                OracleAction.CLOSE_POSITION,
                f"AI chose '{action.value}' while the position is missing SL/TP. Bot enforces CLOSE for safety.",
            )
        return action, None

    if has_position:
        if action is OracleAction.OPEN_POSITION:
            return (
                OracleAction.HOLD_POSITION,
                "AI chose OPEN_POSITION while a position already exists. Bot enforces HOLD.",
            )
        if action is OracleAction.DO_NOTHING:
            return (
                OracleAction.HOLD_POSITION,
                "AI chose DO_NOTHING while a position is active. Bot enforces HOLD.",
            )
        return action, None

    if action is not OracleAction.OPEN_POSITION and action is not OracleAction.DO_NOTHING:
        return (
            OracleAction.DO_NOTHING,
            f"AI chose {action.value} when no position exists. Bot enforces DO_NOTHING.",
        )
    return action, None


# =============================================================================
# Open validation
# =============================================================================


def _positive_number(params: dict[str, Any], key: str) -> float:
    value = params.get(key)
    if isinstance(value, bool) or value is None:
        raise DecisionValidationError(f"Missing or invalid {key}.")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise DecisionValidationError(f"Invalid {key}: {value!r}.") from e
    if not number > 0 or number == float("inf"):
        raise DecisionValidationError(f"Invalid {key} <= 0.")
    return number


def _leverage(params: dict[str, Any]) -> int:
    value = params.get("leverage")
    if isinstance(value, bool) or value is None:
        raise DecisionValidationError("Missing or invalid leverage.")
    if isinstance(value, float):
        if not value.is_integer():
            raise DecisionValidationError(f"Leverage must be an integer: {value}.")
        value = int(value)
    elif isinstance(value, str):
        if not value.strip().isdigit():
            raise DecisionValidationError(f"Leverage must be an integer: {value!r}.")
        value = int(value.strip())
    elif not isinstance(value, int):
        raise DecisionValidationError(f"Invalid leverage: {value!r}.")
    if not MIN_LEVERAGE <= value <= MAX_LEVERAGE:
        raise DecisionValidationError(f"Invalid leverage: {value}.")
    return value


def _is_positive(formatted: str) -> bool:
    try:
        return Decimal(formatted) > 0
    except InvalidOperation:
        return False


def _check_sides(side: str, entry: Any, stop_loss: Any, take_profit: Any) -> None:
    if side == "BUY" and (stop_loss >= entry or take_profit <= entry):
        raise DecisionValidationError(
            "Invalid SL/TP for LONG position. SL must be < Entry, TP must be > Entry."
        )
    if side == "SELL" and (stop_loss <= entry or take_profit >= entry):
        raise DecisionValidationError(
            "Invalid SL/TP for SHORT position. SL must be > Entry, TP must be < Entry."
        )


def validate_open_decision(
    decision: OracleDecision,
    symbol: str,
    sizing_method: str,
    margin_target: float,
    exchange_info: ExchangeInfo | None,
) -> OpenOrderPlan:
    """
    Validate an OPEN_POSITION decision and format it to instrument precision.

    With formula sizing the quantity is ``margin_target * leverage / entry``; the
    oracle's quantity is ignored.

    Raises:
        DecisionValidationError: Any check fails. Nothing may be placed.
    """
    params = decision.params
    side = str(params.get("side") or "").strip().upper()
    if side not in ("BUY", "SELL"):
        raise DecisionValidationError(f"Invalid side: '{side}'.")

    leverage = _leverage(params)
    entry = _positive_number(params, "entryPrice")
    stop_loss = _positive_number(params, "stopLossPrice")
    take_profit = _positive_number(params, "takeProfitPrice")

    if len(decision.rationale) < MIN_RATIONALE_LENGTH:
        raise DecisionValidationError("Missing or insufficient 'rationale'.")

    _check_sides(side, entry, stop_loss, take_profit)

    if sizing_method.upper() == SIZING_INITIAL_MARGIN_TARGET:
        if margin_target <= 0:
            raise DecisionValidationError(
                "Cannot calculate quantity for INITIAL_MARGIN_TARGET: margin target is not positive."
            )
        raw_quantity = (margin_target * leverage) / entry
    else:
        raw_quantity = _positive_number(params, "quantity")

    quantity = format_quantity(exchange_info, symbol, raw_quantity)
    if not _is_positive(quantity):
        raise DecisionValidationError(
            f"Quantity {raw_quantity} rounds to {quantity} at instrument step size."
        )

    plan = OpenOrderPlan(
        symbol=symbol,
        side=side,
        leverage=leverage,
        entry_price=format_price(exchange_info, symbol, entry),
        quantity=quantity,
        stop_loss_price=format_price(exchange_info, symbol, stop_loss),
        take_profit_price=format_price(exchange_info, symbol, take_profit),
        rationale=decision.rationale,
    )
    for name in ("entry_price", "stop_loss_price", "take_profit_price"):
        if not _is_positive(getattr(plan, name)):
            raise DecisionValidationError(f"{name} rounds to zero at instrument tick size.")
    try:
        _check_sides(
            side, Decimal(plan.entry_price), Decimal(plan.stop_loss_price), Decimal(plan.take_profit_price)
        )
    except DecisionValidationError as e:
        raise DecisionValidationError(f"{e} (after rounding to instrument tick size)") from e
    return plan


def prepare_strategy_update(current: dict[str, Any], suggested: dict[str, Any]) -> dict[str, Any]:
    """Drop config-owned keys from an oracle suggestion and keep the current values."""
    updated = {key: value for key, value in suggested.items() if key not in CONFIG_OWNED_DIRECTIVE_KEYS}
    for key in CONFIG_OWNED_DIRECTIVE_KEYS:
        if key in current:
            updated[key] = current[key]
    updated.setdefault("schema_version", current.get("schema_version", "1.0.0"))
    return updated


# =============================================================================
# Gateway
# =============================================================================


@dataclass
class OracleContext:
    """Context document plus the REST position view gathered with it."""

    document: dict[str, Any]
    position: Position | None = None
    position_known: bool = False


@dataclass
class OracleReply:
    decision: OracleDecision
    mode: OperatingMode
    payload_md5: str
    raw_response: str


def _error_preview(error: BaseException) -> str:
    return str(error)[:ERROR_PREVIEW_LENGTH]


def _compact_klines(raw: list[list[Any]]) -> list[dict[str, Any]]:
    return [
        {
            "open_time": row[0],
            "open": row[1],
            "high": row[2],
            "low": row[3],
            "close": row[4],
            "volume": row[5],
        }
        for row in raw
        if isinstance(row, list) and len(row) >= 6
    ]


class DecisionOracleGateway:
    """
    Client for the generative decision oracle.

    Args:
        api_key: Oracle API key (decrypted)
        model_name: Model identifier, e.g. ``gemini-2.5-flash``
        rest: Exchange REST client used for context collection
        store: Persistence used for history reads and strategy updates
        base_url: Oracle API root
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        model_name: str,
        rest: FuturesRestClient,
        store: BotStore,
        base_url: str = ORACLE_BASE_URL,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._rest = rest
        self._store = store
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model_name}:generateContent"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    async def _guarded(self, name: str, awaitable: Awaitable[Any]) -> tuple[bool, Any]:
        try:
            return True, await awaitable
        except Exception as e:
            logger.warning("context_branch_failed", branch=name, error=str(e))
            return False, {f"error_fetch_{name}": _error_preview(e)}

    async def collect_context(
        self,
        config: BotConfig,
        strategy: StrategyDirectives,
        operational_state: dict[str, Any],
        last_result: DecisionResult | None,
        last_price: float | None,
        exchange_info: ExchangeInfo | None,
        is_emergency: bool = False,
    ) -> OracleContext:
        """Gather everything the oracle sees; a failing branch becomes an error entry."""
        symbol = config.symbol
        branches: dict[str, Awaitable[Any]] = {
            "balance": self._rest.fetch_balances(),
            "position": self._rest.fetch_position_risk(symbol),
            "trade_history": self._rest.fetch_account_trades(symbol, ACCOUNT_TRADES_LIMIT),
            "commission_rates": self._rest.fetch_commission_rate(symbol),
            "latest_price": self._rest.fetch_latest_close(symbol, "1m"),
            "order_logs": self._store.recent_order_logs(MAX_ORDER_LOGS_FOR_CONTEXT),
            "ai_interactions": self._store.recent_ai_interactions(MAX_AI_INTERACTIONS_FOR_CONTEXT),
        }
        for interval in HISTORICAL_KLINE_INTERVALS:
            branches[f"kline_{interval}"] = self._rest.fetch_klines(symbol, interval, KLINE_CONTEXT_LIMIT)

        outcomes = await asyncio.gather(
            *(self._guarded(name, awaitable) for name, awaitable in branches.items())
        )
        results = dict(zip(branches.keys(), outcomes, strict=True))

        balance_ok, balance = results["balance"]
        if balance_ok:
            balance = next(
                (entry for entry in balance if entry.get("asset") == config.margin_asset),
                {"asset": config.margin_asset, "balance": "0", "availableBalance": "0"},
            )

        position_ok, position_payload = results["position"]
        position = None
        if position_ok:
            position = position_from_rest(position_payload, symbol, config.default_leverage)

        price_ok, fetched_price = results["latest_price"]
        market_price = last_price if last_price is not None else (fetched_price if price_ok else None)

        klines: dict[str, Any] = {}
        for interval in HISTORICAL_KLINE_INTERVALS:
            ok, payload = results[f"kline_{interval}"]
            klines[interval] = _compact_klines(payload) if ok else payload

        precision = exchange_info.get(symbol) if exchange_info is not None else None
        symbol_precision = precision.to_dict() if precision else {
            "price_tick_size": None,
            "quantity_step_size": None,
        }
        symbol_precision["comment"] = (
            "All price and quantity values in your response MUST be multiples of these "
            "sizes and formatted accordingly."
        )

        document = {
            "bot_metadata": {
                "current_timestamp_iso_utc": datetime.now(UTC).isoformat(),
                "trading_symbol": symbol,
                "is_emergency_update_request": is_emergency,
                "bot_id": config.id,
                "user_id": config.user_id,
            },
            "market_data": {
                "current_market_price": market_price,
                "symbol_precision": symbol_precision,
                "historical_klines_multi_tf": klines,
                "commission_rates": results["commission_rates"][1],
            },
            "account_state": {
                "balance_details": balance,
                "current_position_details": (
                    position.to_dict() if position else None
                ) if position_ok else position_payload,
                "recent_account_trades": results["trade_history"][1],
            },
            "bot_operational_state": operational_state,
            "historical_bot_performance_and_decisions": {
                "last_ai_decision_bot_feedback": last_result.to_dict() if last_result else None,
                "recent_bot_order_log_outcomes": results["order_logs"][1],
                "recent_ai_interactions": results["ai_interactions"][1],
            },
            "current_guiding_trade_logic_source": strategy.to_context(),
            "bot_configuration_summary_for_ai": {
                "initialMarginTargetUsdt": config.initial_margin_target_usdt,
                "defaultLeverage": config.default_leverage,
                "pendingEntryOrderTimeoutSeconds": config.pending_entry_order_cancel_timeout_seconds,
            },
        }
        return OracleContext(document=document, position=position, position_known=position_ok)

    # -------------------------------------------------------------------------
    # Request / response
    # -------------------------------------------------------------------------

    @staticmethod
    def build_payload(prompt_text: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt_text}]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }

    async def request_decision(self, body: str, payload_md5: str | None = None) -> str:
        """POST a serialized payload and return the raw response body."""
        client = await self._get_client()
        try:
            response = await client.post(
                self.endpoint,
                params={"key": self._api_key},
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OracleRequestError(
                f"Oracle request failed: {type(e).__name__}: {e}", payload_md5=payload_md5
            ) from e

        if response.status_code >= 300:
            raise OracleRequestError(
                f"Oracle API HTTP error: {response.status_code} Body: {response.text[:500]}",
                status_code=response.status_code,
                raw_response=response.text,
                payload_md5=payload_md5,
            )
        return response.text

    @staticmethod
    def parse_response(raw: str) -> dict[str, Any]:
        """
        Extract the decision object from a raw generateContent response.

        Raises:
            OracleBlockedError: The prompt was blocked.
            OracleResponseError: Text part missing, or the text is not a JSON object.
        """
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as e:
            raise OracleResponseError(f"Oracle response is not JSON: {e}") from e
        if not isinstance(envelope, dict):
            raise OracleResponseError("Oracle response is not a JSON object")

        feedback = envelope.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            raise OracleBlockedError(str(feedback["blockReason"]))

        candidate: dict[str, Any] = {}
        try:
            candidate = envelope["candidates"][0]
            text = candidate["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            finish = candidate.get("finishReason", "N/A") if isinstance(candidate, dict) else "N/A"
            raise OracleResponseError(
                f"AI response missing text content. Finish Reason: {finish}"
            ) from e
        if not isinstance(text, str):
            raise OracleResponseError("AI response text part is not a string")

        cleaned = text.replace("```json", "").replace("```", "").strip()
        try:
            decision = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise OracleResponseError(f"Failed to decode JSON from AI text: {e}") from e
        if not isinstance(decision, dict):
            raise OracleResponseError("AI decision is not a JSON object")
        return decision

    async def decide(self, document: dict[str, Any], strategy: StrategyDirectives) -> OracleReply:
        """Render, send and parse one decision request."""
        prompt = render_prompt(document, strategy.sizing_method, strategy.allow_self_update)
        body = json.dumps(self.build_payload(prompt.text), ensure_ascii=False)
        payload_md5 = hashlib.md5(body.encode("utf-8")).hexdigest()
        logger.info("oracle_request_sent", mode=prompt.mode.name, payload_md5=payload_md5)

        raw = await self.request_decision(body, payload_md5)
        try:
            decision = OracleDecision.from_payload(self.parse_response(raw))
        except OracleError as e:
            e.raw_response = raw
            e.payload_md5 = payload_md5
            raise

        logger.info(
            "oracle_decision_received",
            action=decision.action.value,
            has_strategy_update=decision.strategy_update is not None,
        )
        return OracleReply(decision=decision, mode=prompt.mode, payload_md5=payload_md5, raw_response=raw)

    # -------------------------------------------------------------------------
    # Decision follow-up
    # -------------------------------------------------------------------------

    async def apply_strategy_update(
        self,
        strategy: StrategyDirectives,
        decision: OracleDecision,
        snapshot: dict[str, Any] | None,
    ) -> bool | None:
        """
        Persist the suggested directives if the active strategy allows it.

        Returns:
            ``None`` when nothing was attempted, otherwise whether the update was stored.
        """
        suggestion = decision.strategy_update
        if suggestion is None:
            return None
        if not strategy.allow_self_update:
            logger.info("strategy_update_ignored", reason="self update not permitted")
            return None
        if strategy.id is None:
            logger.warning("strategy_update_skipped", reason="strategy has no id")
            return False

        directives = prepare_strategy_update(strategy.directives, suggestion.directives)
        return await self._store.update_strategy(strategy.id, directives, suggestion.reason, snapshot)

    def resolve_open(
        self,
        decision: OracleDecision,
        strategy: StrategyDirectives,
        config: BotConfig,
        exchange_info: ExchangeInfo | None,
    ) -> OpenOrderPlan:
        return validate_open_decision(
            decision,
            config.symbol,
            strategy.sizing_method,
            config.initial_margin_target_usdt,
            exchange_info,
        )


