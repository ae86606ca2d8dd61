"""
Signed REST client for USDT-M futures with fault classification and retries.

Every request/response call of the engine goes through ``FuturesRestClient.request``:
benign cancel failures resolve to a ``BenignOutcome``, temporary failures are retried
with linear backoff up to ``max_attempts``, and everything else raises
``ExchangeAPIError``. The client holds no business state.

Example Usage:
    ```python
    async with FuturesRestClient(api_key, api_secret, testnet=True) as client:
        info = await client.fetch_exchange_info()
        order = await client.place_order("BTCUSDT", "BUY", "LIMIT", "0.001", price="60000.0")
        result = await client.cancel_order("BTCUSDT", order["orderId"])
    ```
"""

import asyncio
from typing import Any
import uuid

import httpx

from perpbot.config.constants import (
    ACCOUNT_TRADES_LIMIT,
    BALANCE_PATH,
    CLIENT_ORDER_ID_PREFIX,
    COMMISSION_RATE_PATH,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_UNIT_SECONDS,
    DUPLICATE_CLIENT_ORDER_ID_CODE,
    EXCHANGE_INFO_PATH,
    KLINES_PATH,
    LEVERAGE_PATH,
    LISTEN_KEY_PATH,
    ORDER_PATH,
    POSITION_RISK_PATH,
    RECV_WINDOW_MS,
    REST_BASE_URL,
    REST_TESTNET_BASE_URL,
    USER_TRADES_PATH,
)
from perpbot.data.errors import BenignOutcome, ExchangeAPIError, FaultClass, classify_fault
from perpbot.data.signing import AuthMode, PendingRequest, RequestSigner
from perpbot.utils import get_logger

logger = get_logger(__name__)


def new_client_order_id() -> str:
    """Unique client order id within the venue limit of 36 characters."""
    return f"{CLIENT_ORDER_ID_PREFIX}{uuid.uuid4().hex}"


class FuturesRestClient:
    """
    Async REST client for the futures venue.

    Attributes:
        testnet: Whether the testnet endpoint is used
        max_attempts: Attempt cap for temporary failures
        retry_unit: Linear backoff unit in seconds
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        recv_window: int = RECV_WINDOW_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_unit: float = DEFAULT_RETRY_UNIT_SECONDS,
        timeout: float = 10.0,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.testnet = testnet
        self.max_attempts = max_attempts
        self.retry_unit = retry_unit
        self.timeout = timeout
        self.base_url = base_url or (REST_TESTNET_BASE_URL if testnet else REST_BASE_URL)
        self._signer = RequestSigner(api_key, api_secret, self.base_url, recv_window)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        logger.info(
            "rest_client_initialized",
            base_url=self.base_url,
            testnet=testnet,
            max_attempts=max_attempts,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FuturesRestClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # =========================================================================
    # Request / retry core
    # =========================================================================

    @staticmethod
    def _decode(response: httpx.Response) -> tuple[bool, Any, int | None, str]:
        """Split a response into (ok, payload, venue code, message)."""
        payload: Any = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                if response.status_code < 300:
                    return False, None, None, f"Invalid JSON response: {response.text[:200]}"
        else:
            payload = {}

        code = None
        message = ""
        if isinstance(payload, dict):
            raw_code = payload.get("code")
            if isinstance(raw_code, int) and raw_code < 0:
                code = raw_code
                message = str(payload.get("msg", ""))

        if response.status_code >= 300:
            if not message:
                if isinstance(payload, dict) and payload.get("msg"):
                    message = str(payload["msg"])
                else:
                    message = response.text[:200] or response.reason_phrase
            return False, payload, code, message
        if code is not None:
            return False, payload, code, message
        return True, payload, None, ""

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        auth: AuthMode = AuthMode.SIGNED,
    ) -> Any:
        """
        Send one logical request, retrying temporary failures.

        Returns:
            Decoded JSON payload, or ``BenignOutcome`` for an already resolved cancel.

        Raises:
            ExchangeAPIError: Fatal failure, or temporary failure after the last attempt.
        """
        pending = PendingRequest(method=method.upper(), path=path, params=dict(params or {}), auth=auth)
        client = await self._get_client()

        while True:
            pending.attempt += 1
            self._signer.prepare(pending)

            http_status: int | None = None
            code: int | None = None
            transport_error = False
            try:
                response = await client.request(
                    pending.method,
                    pending.url,
                    headers=pending.headers,
                    content=pending.body,
                )
            except httpx.TransportError as e:
                transport_error = True
                message = f"{type(e).__name__}: {e}"
            else:
                http_status = response.status_code
                ok, payload, code, message = self._decode(response)
                if ok:
                    if pending.attempt > 1:
                        logger.info(
                            "request_retry_succeeded",
                            method=pending.method,
                            path=path,
                            attempt=pending.attempt,
                        )
                    return payload

            fault = classify_fault(pending.method, http_status, code, transport_error)

            if fault is FaultClass.BENIGN:
                logger.info(
                    "request_benign_failure",
                    method=pending.method,
                    path=path,
                    code=code,
                    message=message,
                )
                return BenignOutcome(code=code or 0, message=message, method=pending.method, path=path)

            if fault is FaultClass.TEMPORARY and pending.attempt < self.max_attempts:
                wait_time = pending.attempt * self.retry_unit
                logger.warning(
                    "request_temporary_failure",
                    method=pending.method,
                    path=path,
                    http_status=http_status,
                    code=code,
                    error=message,
                    attempt=pending.attempt,
                    max_attempts=self.max_attempts,
                    wait_time=wait_time,
                )
                await asyncio.sleep(wait_time)
                continue

            logger.error(
                "request_failed",
                method=pending.method,
                path=path,
                http_status=http_status,
                code=code,
                error=message,
                fault=fault.value,
                attempts=pending.attempt,
            )
            raise ExchangeAPIError(
                message,
                code=code,
                http_status=http_status,
                method=pending.method,
                path=path,
                attempts=pending.attempt,
            )

    # =========================================================================
    # Market data (public)
    # =========================================================================

    async def fetch_exchange_info(self) -> dict[str, Any]:
        return await self.request("GET", EXCHANGE_INFO_PATH, auth=AuthMode.PUBLIC)

    async def fetch_klines(self, symbol: str, interval: str, limit: int = 20) -> list[list[Any]]:
        """Fetch raw klines: ``[openTime, open, high, low, close, volume, ...]``."""
        return await self.request(
            "GET",
            KLINES_PATH,
            {"symbol": symbol, "interval": interval, "limit": limit},
            auth=AuthMode.PUBLIC,
        )

    async def fetch_latest_close(self, symbol: str, interval: str = "1m") -> float:
        """Close price of the most recent candle."""
        klines = await self.fetch_klines(symbol, interval, limit=1)
        if not klines or len(klines[0]) < 5:
            raise ExchangeAPIError(
                f"No kline data for {symbol} {interval}", method="GET", path=KLINES_PATH
            )
        return float(klines[0][4])

    # =========================================================================
    # Account
    # =========================================================================

    async def fetch_balances(self) -> list[dict[str, Any]]:
        return await self.request("GET", BALANCE_PATH)

    async def fetch_position_risk(self, symbol: str) -> list[dict[str, Any]]:
        return await self.request("GET", POSITION_RISK_PATH, {"symbol": symbol})

    async def fetch_commission_rate(self, symbol: str) -> dict[str, Any]:
        return await self.request("GET", COMMISSION_RATE_PATH, {"symbol": symbol})

    async def fetch_account_trades(
        self, symbol: str, limit: int = ACCOUNT_TRADES_LIMIT
    ) -> list[dict[str, Any]]:
        return await self.request("GET", USER_TRADES_PATH, {"symbol": symbol, "limit": limit})

    async def set_leverage(self, symbol: str, leverage: int) -> dict[str, Any]:
        return await self.request("POST", LEVERAGE_PATH, {"symbol": symbol, "leverage": leverage})

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: str,
        price: str | None = None,
        stop_price: str | None = None,
        reduce_only: bool = False,
        time_in_force: str | None = None,
        working_type: str | None = None,
        client_order_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Place an order. Prices and quantities must already be precision-formatted.

        Args:
            symbol: Trading symbol
            side: "BUY" or "SELL"
            order_type: LIMIT, MARKET, STOP_MARKET or TAKE_PROFIT_MARKET
            quantity: Formatted quantity
            price: Formatted limit price (LIMIT only)
            stop_price: Formatted trigger price (stop orders only)
            reduce_only: Whether the order may only reduce the position
            time_in_force: e.g. "GTC" for limit entries
            working_type: Trigger price source for stop orders, e.g. "MARK_PRICE"
            client_order_id: Idempotency key; generated when omitted and reused on every retry
        """
        client_order_id = client_order_id or new_client_order_id()
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": quantity,
            "positionSide": "BOTH",
            "newClientOrderId": client_order_id,
        }
        if price is not None:
            params["price"] = price
        if stop_price is not None:
            params["stopPrice"] = stop_price
        if time_in_force is not None:
            params["timeInForce"] = time_in_force
        if working_type is not None:
            params["workingType"] = working_type
        if reduce_only:
            params["reduceOnly"] = True

        try:
            result = await self.request("POST", ORDER_PATH, params)
        except ExchangeAPIError as e:
            if e.code != DUPLICATE_CLIENT_ORDER_ID_CODE or e.attempts < 2:
                raise
            logger.warning("order_placed_by_earlier_attempt", symbol=symbol, client_order_id=client_order_id)
            result = await self.request(
                "GET", ORDER_PATH, {"symbol": symbol, "origClientOrderId": client_order_id}
            )
        logger.info(
            "order_placed",
            client_order_id=client_order_id,
            symbol=symbol,
            side=side,
            type=order_type,
            quantity=quantity,
            price=price,
            stop_price=stop_price,
            reduce_only=reduce_only,
            order_id=result.get("orderId") if isinstance(result, dict) else None,
        )
        return result

    async def get_order(self, symbol: str, order_id: str | int) -> dict[str, Any]:
        return await self.request("GET", ORDER_PATH, {"symbol": symbol, "orderId": order_id})

    async def cancel_order(self, symbol: str, order_id: str | int) -> dict[str, Any] | BenignOutcome:
        """Cancel an order; an already filled or missing order yields ``BenignOutcome``."""
        return await self.request("DELETE", ORDER_PATH, {"symbol": symbol, "orderId": order_id})

    # =========================================================================
    # User data stream
    # =========================================================================

    async def start_user_stream(self) -> str:
        result = await self.request("POST", LISTEN_KEY_PATH, auth=AuthMode.API_KEY)
        listen_key = result.get("listenKey") if isinstance(result, dict) else None
        if not listen_key:
            raise ExchangeAPIError(
                "Listen key missing from response", method="POST", path=LISTEN_KEY_PATH
            )
        return listen_key

    async def keepalive_user_stream(self, listen_key: str) -> None:
        await self.request("PUT", LISTEN_KEY_PATH, {"listenKey": listen_key}, auth=AuthMode.API_KEY)

    async def close_user_stream(self, listen_key: str) -> None:
        await self.request("DELETE", LISTEN_KEY_PATH, {"listenKey": listen_key}, auth=AuthMode.API_KEY)
