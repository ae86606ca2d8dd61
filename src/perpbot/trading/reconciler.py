"""
Position & order reconciliation for the futures venue.

Maps the venue's raw position and order payloads into the canonical ``Position`` and
``Order`` views used by the orchestrator, formats prices and quantities to instrument
precision, and turns order/trade updates into fill-log entries.

Example Usage:
    ```python
    info = ExchangeInfo.from_payload(await rest.fetch_exchange_info())
    qty = format_quantity(info, "BTCUSDT", 0.0019)    # "0.001"
    price = format_price(info, "BTCUSDT", 60123.456)  # "60123.4"

    position = position_from_rest(await rest.fetch_position_risk("BTCUSDT"), "BTCUSDT")
    ```
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
import time
from typing import Any, Literal

from perpbot.config.constants import FALLBACK_DECIMALS, POSITION_EPSILON
from perpbot.data.errors import ExchangeError
from perpbot.data.storage import OrderLogEntry
from perpbot.data.websocket import OrderTradeUpdateEvent
from perpbot.utils import get_logger

logger = get_logger(__name__)

PositionSide = Literal["LONG", "SHORT"]
OrderSide = Literal["BUY", "SELL"]


# =============================================================================
# Instrument precision
# =============================================================================


@dataclass(frozen=True)
class SymbolPrecision:
    """Tick and step size of one instrument; ``None`` when the venue did not say."""

    symbol: str
    tick_size: Decimal | None = None
    step_size: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "price_tick_size": str(self.tick_size) if self.tick_size is not None else None,
            "quantity_step_size": str(self.step_size) if self.step_size is not None else None,
        }


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


class ExchangeInfo:
    """Read-only per-symbol precision cache, populated once at startup."""

    def __init__(self, symbols: dict[str, SymbolPrecision] | None = None):
        self._symbols = dict(symbols or {})

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExchangeInfo":
        symbols: dict[str, SymbolPrecision] = {}
        for entry in payload.get("symbols", []):
            symbol = entry.get("symbol")
            if not symbol:
                continue
            tick = step = None
            for venue_filter in entry.get("filters", []):
                if venue_filter.get("filterType") == "PRICE_FILTER":
                    tick = _to_decimal(venue_filter.get("tickSize"))
                elif venue_filter.get("filterType") == "LOT_SIZE":
                    step = _to_decimal(venue_filter.get("stepSize"))
            symbols[symbol.upper()] = SymbolPrecision(symbol.upper(), tick, step)
        logger.info("exchange_info_loaded", symbols=len(symbols))
        return cls(symbols)

    def get(self, symbol: str) -> SymbolPrecision | None:
        return self._symbols.get(symbol.upper())

    def __contains__(self, symbol: str) -> bool:
        return symbol.upper() in self._symbols

    def __len__(self) -> int:
        return len(self._symbols)


def _fallback_format(value: float) -> str:
    text = f"{value:.{FALLBACK_DECIMALS}f}".rstrip("0").rstrip(".")
    return text or "0"


def round_down_to_increment(value: float | str | Decimal, increment: Decimal | None) -> str:
    """Round ``value`` down to a multiple of ``increment``, rendered with its decimals.

    Falls back to a trimmed fixed-point rendering when the increment is missing or
    not positive.
    """
    amount = _to_decimal(value)
    if amount is None:
        raise ValueError(f"Cannot format non-numeric value: {value!r}")
    if increment is None or increment <= 0:
        return _fallback_format(float(amount))

    steps = (amount / increment).to_integral_value(rounding=ROUND_DOWN)
    rounded = steps * increment
    places = max(0, -increment.normalize().as_tuple().exponent)
    return f"{rounded:.{places}f}"


def format_price(info: ExchangeInfo | None, symbol: str, price: float | str | Decimal) -> str:
    precision = info.get(symbol) if info is not None else None
    return round_down_to_increment(price, precision.tick_size if precision else None)


def format_quantity(info: ExchangeInfo | None, symbol: str, quantity: float | str | Decimal) -> str:
    precision = info.get(symbol) if info is not None else None
    return round_down_to_increment(quantity, precision.step_size if precision else None)


# =============================================================================
# Positions
# =============================================================================


@dataclass
class Position:
    """An open position. Absence of a position is ``None``, never a zero quantity."""

    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float
    leverage: int
    initial_margin: float = 0.0
    maint_margin: float = 0.0
    position_side: str = "BOTH"

    @property
    def close_side(self) -> OrderSide:
        """Order side that reduces this position."""
        return "SELL" if self.side == "LONG" else "BUY"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _float(raw: Any, default: float = 0.0) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _build_position(
    symbol: str,
    signed_quantity: float,
    entry_price: float,
    mark_price: float,
    unrealized_pnl: float,
    leverage: int,
    initial_margin: float,
    maint_margin: float,
    position_side: str,
) -> Position | None:
    if abs(signed_quantity) < POSITION_EPSILON:
        return None
    return Position(
        symbol=symbol,
        side="LONG" if signed_quantity > 0 else "SHORT",
        quantity=abs(signed_quantity),
        entry_price=entry_price,
        mark_price=mark_price,
        unrealized_pnl=unrealized_pnl,
        leverage=leverage,
        initial_margin=initial_margin,
        maint_margin=maint_margin,
        position_side=position_side,
    )


def position_from_rest(
    payload: list[dict[str, Any]] | dict[str, Any] | None,
    symbol: str,
    default_leverage: int = 1,
) -> Position | None:
    """Normalize a ``positionRisk`` response (list or single entry) for ``symbol``."""
    if payload is None:
        return None
    entries = payload if isinstance(payload, list) else [payload]
    for entry in entries:
        if str(entry.get("symbol", "")).upper() != symbol.upper():
            continue
        quantity = _float(entry.get("positionAmt"))
        if abs(quantity) < POSITION_EPSILON:
            continue
        entry_price = _float(entry.get("entryPrice"))
        return _build_position(
            symbol=symbol.upper(),
            signed_quantity=quantity,
            entry_price=entry_price,
            mark_price=_float(entry.get("markPrice"), entry_price),
            unrealized_pnl=_float(entry.get("unRealizedProfit")),
            leverage=int(_float(entry.get("leverage"), default_leverage)) or default_leverage,
            initial_margin=_float(entry.get("initialMargin", entry.get("isolatedMargin"))),
            maint_margin=_float(entry.get("maintMargin")),
            position_side=str(entry.get("positionSide", "BOTH")),
        )
    return None


def position_from_stream(
    entries: list[dict[str, Any]],
    symbol: str,
    leverage: int,
    fallback_mark_price: float = 0.0,
) -> tuple[bool, Position | None]:
    """Normalize the ``a.P`` list of an account update for ``symbol``.

    The stream payload carries no leverage, so the caller passes the last known one.

    Returns:
        ``(found, position)``: ``found`` is False when the update did not mention the
        symbol at all, in which case the position must be left unchanged.
    """
    for entry in entries:
        if str(entry.get("s", "")).upper() != symbol.upper():
            continue
        entry_price = _float(entry.get("ep"))
        position = _build_position(
            symbol=symbol.upper(),
            signed_quantity=_float(entry.get("pa")),
            entry_price=entry_price,
            mark_price=_float(entry.get("mp"), fallback_mark_price or entry_price),
            unrealized_pnl=_float(entry.get("up")),
            leverage=leverage,
            initial_margin=_float(entry.get("iw")),
            maint_margin=_float(entry.get("mm")),
            position_side=str(entry.get("ps", "BOTH")),
        )
        return True, position
    return False, None


# =============================================================================
# Orders
# =============================================================================


class OrderRole(str, Enum):
    ENTRY = "ENTRY"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    CLOSE = "CLOSE"


@dataclass
class Order:
    """A tracked order handle."""

    order_id: str
    role: OrderRole
    symbol: str
    side: OrderSide
    order_type: str
    quantity: str
    price: str | None = None
    stop_price: str | None = None
    status: str = "NEW"
    reduce_only: bool = False
    placed_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_response(
        cls,
        payload: dict[str, Any],
        role: OrderRole,
        symbol: str,
        side: OrderSide,
        order_type: str,
        quantity: str,
        price: str | None = None,
        stop_price: str | None = None,
        reduce_only: bool = False,
    ) -> "Order":
        order_id = payload.get("orderId") if isinstance(payload, dict) else None
        if order_id is None:
            raise ExchangeError(f"Order response without orderId for {role.value}: {payload!r}")
        return cls(
            order_id=str(order_id),
            role=role,
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=price,
            stop_price=stop_price,
            status=str(payload.get("status", "NEW")),
            reduce_only=reduce_only,
        )

    def age_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.monotonic()) - self.placed_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data.pop("placed_at")
        data["seconds_pending"] = round(self.age_seconds(), 1)
        return data


def is_fill(update: OrderTradeUpdateEvent) -> bool:
    """True if the update reports an actual execution with positive quantity."""
    return (
        update.execution_type == "TRADE"
        and update.status in ("FILLED", "PARTIALLY_FILLED")
        and update.last_filled_quantity > 0
    )


def fill_log_entry(
    update: OrderTradeUpdateEvent,
    bot_config_id: int,
    user_id: int,
    margin_asset: str,
    commission_quote: float,
) -> OrderLogEntry:
    return OrderLogEntry(
        user_id=user_id,
        bot_config_id=bot_config_id,
        order_id=update.order_id,
        symbol=update.symbol,
        side=update.side,
        status_reason=update.status,
        price=update.last_filled_price,
        quantity=update.last_filled_quantity,
        margin_asset=margin_asset,
        realized_pnl=update.realized_pnl,
        commission_usdt=commission_quote,
        reduce_only=update.reduce_only,
        event_key=f"{update.order_id}:{update.status}:{update.trade_id}",
        timestamp=update.event_datetime,
    )


def order_log_entry(
    order: Order,
    status_reason: str,
    bot_config_id: int,
    user_id: int,
    margin_asset: str,
    price: float | None = None,
    quantity: float | None = None,
) -> OrderLogEntry:
    """Log entry for a non-fill outcome of a tracked order, e.g. a timeout cancel."""
    return OrderLogEntry(
        user_id=user_id,
        bot_config_id=bot_config_id,
        order_id=order.order_id,
        symbol=order.symbol,
        side=order.side,
        status_reason=status_reason,
        price=price if price is not None else _float(order.price or order.stop_price),
        quantity=quantity if quantity is not None else _float(order.quantity),
        margin_asset=margin_asset,
        realized_pnl=0.0,
        commission_usdt=0.0,
        reduce_only=order.reduce_only,
        event_key=f"{order.order_id}:{status_reason}:0",
        timestamp=datetime.now(UTC),
    )


async def commission_in_quote(rest: Any, asset: str, amount: float, margin_asset: str) -> float:
    """Convert a commission to the margin asset via the ``<ASSET><MARGIN>`` 1m close.

    Returns 0.0 when the conversion pair cannot be priced.
    """
    if amount == 0 or not asset or asset.upper() == margin_asset.upper():
        return amount
    pair = f"{asset.upper()}{margin_asset.upper()}"
    try:
        price = await rest.fetch_latest_close(pair, "1m")
    except ExchangeError as e:
        logger.warning("commission_conversion_failed", pair=pair, error=str(e))
        return 0.0
    return amount * price
