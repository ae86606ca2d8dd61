"""
Exchange, engine and strategy constants for the perpbot trading engine.

This module collects the venue endpoints, venue error codes, engine timing
defaults and the default strategy directives document used when a user has no
active trade logic source yet.

All constants are immutable (Final) to prevent accidental modification during runtime.
"""

from typing import Any, Final


# =============================================================================
# Venue Endpoints
# =============================================================================

REST_BASE_URL: Final[str] = "https://fapi.binance.com"
"""Production USDT-M futures REST endpoint."""

REST_TESTNET_BASE_URL: Final[str] = "https://testnet.binancefuture.com"
"""Testnet USDT-M futures REST endpoint."""

WS_BASE_URL: Final[str] = "wss://fstream.binance.com"
"""Production combined-stream websocket endpoint."""

WS_TESTNET_BASE_URL: Final[str] = "wss://stream.binancefuture.com"
"""Testnet combined-stream websocket endpoint."""

ORACLE_BASE_URL: Final[str] = "https://generativelanguage.googleapis.com/v1beta"
"""Decision oracle (Gemini generateContent) API root."""

EXCHANGE_INFO_PATH: Final[str] = "/fapi/v1/exchangeInfo"
BALANCE_PATH: Final[str] = "/fapi/v2/balance"
KLINES_PATH: Final[str] = "/fapi/v1/klines"
POSITION_RISK_PATH: Final[str] = "/fapi/v2/positionRisk"
LEVERAGE_PATH: Final[str] = "/fapi/v1/leverage"
COMMISSION_RATE_PATH: Final[str] = "/fapi/v1/commissionRate"
ORDER_PATH: Final[str] = "/fapi/v1/order"
USER_TRADES_PATH: Final[str] = "/fapi/v1/userTrades"
LISTEN_KEY_PATH: Final[str] = "/fapi/v1/listenKey"


# =============================================================================
# Request Signing & Retry
# =============================================================================

RECV_WINDOW_MS: Final[int] = 5000
"""Maximum tolerated clock skew for signed requests, in milliseconds."""

API_KEY_HEADER: Final[str] = "X-MBX-APIKEY"

DEFAULT_MAX_ATTEMPTS: Final[int] = 3
"""Attempt cap for temporary failures before they are treated as fatal."""

DEFAULT_RETRY_UNIT_SECONDS: Final[float] = 1.0
"""Linear backoff unit: the n-th retry waits n times this value."""

BENIGN_CANCEL_CODES: Final[frozenset[int]] = frozenset({-2011, -2013})
"""Cancel rejected (unknown or already final order) and no such order."""

TEMPORARY_ERROR_CODES: Final[frozenset[int]] = frozenset(
    {-1000, -1001, -1003, -1006, -1007, -1008}
)
"""Venue codes for unknown error, disconnected, rate limit, bad upstream, timeout, busy."""

TEMPORARY_HTTP_STATUSES: Final[frozenset[int]] = frozenset({408, 418, 429})
"""HTTP statuses retried in addition to the whole 5xx class."""

NO_SUCH_ORDER_CODE: Final[int] = -2013

DUPLICATE_CLIENT_ORDER_ID_CODE: Final[int] = -4116
"""A retried placement whose first attempt already reached the venue."""

CLIENT_ORDER_ID_PREFIX: Final[str] = "pb-"


# =============================================================================
# Positions, Orders & Precision
# =============================================================================

POSITION_EPSILON: Final[float] = 1e-9
"""Absolute quantity below which a position is treated as flat."""

FALLBACK_DECIMALS: Final[int] = 8
"""Decimals used when instrument precision metadata is unavailable."""

MIN_LEVERAGE: Final[int] = 1
MAX_LEVERAGE: Final[int] = 125

MIN_RATIONALE_LENGTH: Final[int] = 10
"""Shortest oracle rationale accepted for an open decision."""

ENTRY_TERMINAL_FAILURES: Final[frozenset[str]] = frozenset({"CANCELED", "EXPIRED", "REJECTED"})


# =============================================================================
# Engine Timing
# =============================================================================

HEARTBEAT_INTERVAL_SECONDS: Final[int] = 10
LISTEN_KEY_REFRESH_SECONDS: Final[int] = 30 * 60
MAX_RUNTIME_SECONDS: Final[int] = 24 * 60 * 60
"""The engine stops itself after this long; the supervisor starts a fresh process."""

INITIAL_DECISION_DELAY_SECONDS: Final[float] = 5.0
POST_CLOSE_DECISION_DELAY_SECONDS: Final[float] = 2.0


# =============================================================================
# Oracle Context
# =============================================================================

KLINE_INTERVALS: Final[frozenset[str]] = frozenset(
    {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M"}
)
"""Candle intervals the venue accepts for klines and kline streams."""

HISTORICAL_KLINE_INTERVALS: Final[tuple[str, ...]] = (
    "1m", "5m", "15m", "30m", "1h", "6h", "12h", "1d",
)
KLINE_CONTEXT_LIMIT: Final[int] = 20
ACCOUNT_TRADES_LIMIT: Final[int] = 20
MAX_ORDER_LOGS_FOR_CONTEXT: Final[int] = 10
MAX_AI_INTERACTIONS_FOR_CONTEXT: Final[int] = 3
ERROR_PREVIEW_LENGTH: Final[int] = 150


# =============================================================================
# Strategy Directives
# =============================================================================

DEFAULT_STRATEGY_SOURCE_NAME: Final[str] = "default_strategy_v1"

SIZING_AI_SUGGESTED: Final[str] = "AI_SUGGESTED"
SIZING_INITIAL_MARGIN_TARGET: Final[str] = "INITIAL_MARGIN_TARGET"
SIZING_METHODS: Final[frozenset[str]] = frozenset({SIZING_AI_SUGGESTED, SIZING_INITIAL_MARGIN_TARGET})

CONFIG_OWNED_DIRECTIVE_KEYS: Final[tuple[str, ...]] = (
    "quantity_determination_method",
    "allow_ai_to_update_self",
)
"""Directive fields that belong to bot configuration and are never taken from the oracle."""

DEFAULT_STRATEGY_DIRECTIVES: Final[dict[str, Any]] = {
    "schema_version": "1.0.0",
    "strategy_type": "GENERAL_TRADING",
    "current_market_bias": "NEUTRAL",
    "User prompt": [],
    "preferred_timeframes_for_entry": ["1m", "5m", "15m"],
    "key_sr_levels_to_watch": {"support": [], "resistance": []},
    "risk_parameters": {
        "target_risk_per_trade_usdt": 0.5,
        "default_rr_ratio": 3,
        "max_concurrent_positions": 1,
    },
    "quantity_determination_method": SIZING_INITIAL_MARGIN_TARGET,
    "entry_conditions_keywords": ["momentum_confirm", "breakout_consolidation"],
    "exit_conditions_keywords": ["momentum_stall", "target_profit_achieved"],
    "leverage_preference": {"min": 100, "max": 100, "preferred": 100},
    "ai_confidence_threshold_for_trade": 0.7,
    "ai_learnings_notes": "Initial default strategy directives. AI to adapt based on market and trade outcomes.",
    "allow_ai_to_update_self": False,
    "emergency_hold_justification": "Wait for clear market signal or manual intervention.",
}
"""Directives stored for a user the first time the engine runs without an active source."""
