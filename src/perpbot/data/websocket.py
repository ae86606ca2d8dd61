"""
Combined market + user-data WebSocket stream for USDT-M futures.

One connection carries the ``<symbol>@kline_<interval>`` channel and the private
user-data channel named by the listen key. Frames are ``{stream, data}`` envelopes,
decoded into typed messages and handed to registered handlers in arrival order.

There is deliberately no reconnect loop: a dropped connection invokes the
``on_connection_lost`` callback and the engine stops, leaving restarts to the process
supervisor. The one exception is listen key expiry, which renews the key and
reconnects in place.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
import json
import time
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from perpbot.config.constants import WS_BASE_URL, WS_TESTNET_BASE_URL
from perpbot.utils import get_logger

logger = get_logger(__name__)


class ConnectionState(Enum):
    """WebSocket connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RENEWING = "renewing"
    CLOSED = "closed"


def _ms_to_datetime(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError):
        return datetime.now(UTC)


# =============================================================================
# Messages
# =============================================================================


@dataclass
class KlineMessage:
    """Parsed kline/candlestick update."""

    symbol: str
    interval: str
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_closed: bool
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_ws_message(cls, data: dict[str, Any]) -> "KlineMessage":
        k = data["k"]
        return cls(
            symbol=data["s"],
            interval=k["i"],
            open_time=k["t"],
            close_time=k["T"],
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
            is_closed=bool(k["x"]),
        )


@dataclass
class AccountUpdateEvent:
    """ACCOUNT_UPDATE: balance and position snapshot after a change."""

    event_time: int
    reason: str
    balances: list[dict[str, Any]]
    positions: list[dict[str, Any]]

    @classmethod
    def from_ws_message(cls, data: dict[str, Any]) -> "AccountUpdateEvent":
        account = data.get("a", {})
        return cls(
            event_time=data.get("E", 0),
            reason=account.get("m", ""),
            balances=list(account.get("B", [])),
            positions=list(account.get("P", [])),
        )


@dataclass
class OrderTradeUpdateEvent:
    """ORDER_TRADE_UPDATE: status change or execution of one order."""

    symbol: str
    order_id: str
    side: str
    order_type: str
    original_type: str
    status: str
    execution_type: str
    original_quantity: float
    price: float
    average_price: float
    stop_price: float
    last_filled_quantity: float
    cumulative_filled_quantity: float
    last_filled_price: float
    commission: float
    commission_asset: str
    realized_pnl: float
    reduce_only: bool
    trade_id: int
    event_time: int

    @property
    def event_datetime(self) -> datetime:
        return _ms_to_datetime(self.event_time)

    @classmethod
    def from_ws_message(cls, data: dict[str, Any]) -> "OrderTradeUpdateEvent":
        o = data["o"]
        return cls(
            symbol=o["s"],
            order_id=str(o["i"]),
            side=o["S"],
            order_type=o.get("o", ""),
            original_type=o.get("ot", o.get("o", "")),
            status=o["X"],
            execution_type=o.get("x", ""),
            original_quantity=float(o.get("q", 0) or 0),
            price=float(o.get("p", 0) or 0),
            average_price=float(o.get("ap", 0) or 0),
            stop_price=float(o.get("sp", 0) or 0),
            last_filled_quantity=float(o.get("l", 0) or 0),
            cumulative_filled_quantity=float(o.get("z", 0) or 0),
            last_filled_price=float(o.get("L", 0) or 0),
            commission=float(o.get("n", 0) or 0),
            commission_asset=o.get("N") or "",
            realized_pnl=float(o.get("rp", 0) or 0),
            reduce_only=bool(o.get("R", False)),
            trade_id=int(o.get("t", 0) or 0),
            event_time=data.get("E", 0),
        )


@dataclass
class MarginCallEvent:
    """MARGIN_CALL: positions close to liquidation."""

    event_time: int
    cross_wallet_balance: float
    positions: list[dict[str, Any]]

    @classmethod
    def from_ws_message(cls, data: dict[str, Any]) -> "MarginCallEvent":
        return cls(
            event_time=data.get("E", 0),
            cross_wallet_balance=float(data.get("cw", 0) or 0),
            positions=list(data.get("p", [])),
        )


@dataclass
class ListenKeyExpiredEvent:
    event_time: int


StreamMessage = (
    KlineMessage
    | AccountUpdateEvent
    | OrderTradeUpdateEvent
    | MarginCallEvent
    | ListenKeyExpiredEvent
)

AsyncMessageHandler = Callable[[StreamMessage], Any]


# =============================================================================
# Stream client
# =============================================================================


class FuturesUserMarketStream:
    """
    Combined kline + user-data stream client.

    Args:
        symbol: Trading symbol
        interval: Kline interval of the market channel
        listen_key: Initial user-data listen key
        renew_listen_key: Coroutine returning a fresh listen key after expiry
        on_connection_lost: Coroutine invoked with a reason when the stream drops
        testnet: Use the testnet stream endpoint
    """

    def __init__(
        self,
        symbol: str,
        interval: str,
        listen_key: str,
        renew_listen_key: Callable[[], Awaitable[str]],
        on_connection_lost: Callable[[str], Awaitable[None]],
        testnet: bool = False,
        ping_interval: float = 20.0,
        ping_timeout: float = 10.0,
        base_url: str | None = None,
    ):
        self.symbol = symbol.upper()
        self.interval = interval
        self.listen_key = listen_key
        self.base_url = base_url or (WS_TESTNET_BASE_URL if testnet else WS_BASE_URL)
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self._renew_listen_key = renew_listen_key
        self._on_connection_lost = on_connection_lost

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._message_queue: asyncio.Queue[StreamMessage] = asyncio.Queue()
        self._handlers: list[AsyncMessageHandler] = []
        self._running = False
        self._closing = False
        self._tasks: list[asyncio.Task] = []
        self._messages_received = 0
        self._renewals = 0
        self._connect_time: float | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def kline_stream(self) -> str:
        return f"{self.symbol.lower()}@kline_{self.interval}"

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "messages_received": self._messages_received,
            "listen_key_renewals": self._renewals,
            "uptime_seconds": time.time() - self._connect_time if self._connect_time else None,
            "queue_size": self._message_queue.qsize(),
        }

    def add_handler(self, handler: AsyncMessageHandler) -> None:
        self._handlers.append(handler)

    def build_url(self) -> str:
        return f"{self.base_url}/stream?streams={self.kline_stream}/{self.listen_key}"

    def parse_message(self, raw_data: str | bytes) -> StreamMessage | None:
        """Decode one envelope; unknown or malformed frames yield ``None``."""
        try:
            envelope = json.loads(raw_data)
            stream_name = envelope.get("stream")
            payload = envelope.get("data")
            if not isinstance(payload, dict):
                logger.debug("stream_frame_without_data", stream=stream_name)
                return None

            if stream_name == self.kline_stream:
                if payload.get("e") == "kline":
                    return KlineMessage.from_ws_message(payload)
                return None

            if stream_name == self.listen_key:
                event_type = payload.get("e")
                if event_type == "ACCOUNT_UPDATE":
                    return AccountUpdateEvent.from_ws_message(payload)
                if event_type == "ORDER_TRADE_UPDATE":
                    return OrderTradeUpdateEvent.from_ws_message(payload)
                if event_type == "MARGIN_CALL":
                    return MarginCallEvent.from_ws_message(payload)
                if event_type == "listenKeyExpired":
                    return ListenKeyExpiredEvent(event_time=payload.get("E", 0))
                logger.debug("stream_unhandled_user_event", event_type=event_type)
                return None

            logger.debug("stream_unknown_channel", stream=stream_name)
            return None

        except json.JSONDecodeError as e:
            logger.warning("stream_json_decode_error", error=str(e))
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("stream_malformed_frame", error=str(e))
            return None

    async def _open(self) -> None:
        self._state = ConnectionState.CONNECTING
        url = self.build_url()
        try:
            self._ws = await websockets.connect(
                url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                close_timeout=10,
            )
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("stream_connect_failed", error=str(e))
            raise
        self._state = ConnectionState.CONNECTED
        self._connect_time = time.time()
        logger.info("stream_connected", kline_stream=self.kline_stream)

    async def start(self) -> None:
        """Connect and start the receive and dispatch tasks."""
        if self._running:
            logger.warning("stream_already_running")
            return
        await self._open()
        self._running = True
        self._closing = False
        self._tasks = [
            asyncio.create_task(self._receive_loop(), name="stream-receive"),
            asyncio.create_task(self._dispatch_loop(), name="stream-dispatch"),
        ]

    async def stop(self) -> None:
        """Close the stream without triggering the connection-lost callback."""
        self._closing = True
        self._running = False
        self._state = ConnectionState.CLOSED

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks.clear()

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("stream_close_error", error=str(e))
            finally:
                self._ws = None

        logger.info("stream_stopped", stats=self.stats)

    async def _renew_and_reconnect(self) -> None:
        """Swap in a fresh listen key and reopen the connection in place."""
        self._state = ConnectionState.RENEWING
        logger.warning("listen_key_expired")
        old_ws, self._ws = self._ws, None
        if old_ws is not None:
            try:
                await old_ws.close()
            except Exception as e:
                logger.debug("stream_close_before_renewal_failed", error=str(e))
        self.listen_key = await self._renew_listen_key()
        self._renewals += 1
        await self._open()
        logger.info("stream_reconnected_after_renewal", renewals=self._renewals)

    async def _connection_lost(self, reason: str) -> None:
        self._running = False
        self._state = ConnectionState.DISCONNECTED
        if self._closing:
            return
        logger.error("stream_connection_lost", reason=reason)
        await self._on_connection_lost(reason)

    async def _receive_loop(self) -> None:
        while self._running:
            try:
                raw_data = await self._ws.recv()
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                await self._connection_lost(f"connection closed: code={e.code} reason={e.reason}")
                return
            except Exception as e:
                await self._connection_lost(f"receive error: {e}")
                return

            self._messages_received += 1
            message = self.parse_message(raw_data)
            if message is None:
                continue

            if isinstance(message, ListenKeyExpiredEvent):
                try:
                    await self._renew_and_reconnect()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    await self._connection_lost(f"listen key renewal failed: {e}")
                    return
                continue

            await self._message_queue.put(message)

    async def _dispatch_loop(self) -> None:
        while True:
            message = await self._message_queue.get()
            for handler in self._handlers:
                try:
                    result = handler(message)
                    if asyncio.iscoroutine(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        "stream_handler_error",
                        handler=getattr(handler, "__name__", repr(handler)),
                        message_type=type(message).__name__,
                        error=str(e),
                        exc_info=True,
                    )
