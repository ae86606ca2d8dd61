"""
Exchange connectivity and persistence for the perpbot engine.

This module provides the signed REST client, the combined market/user-data stream,
fault classification and the database store the engine reads and writes.
"""

from .errors import (
    BenignOutcome,
    ExchangeAPIError,
    ExchangeError,
    FaultClass,
    classify_fault,
)
from .rest_client import FuturesRestClient
from .signing import AuthMode, PendingRequest, RequestSigner, build_query, sign
from .storage import (
    AIInteractionEntry,
    BotStore,
    Credentials,
    DatabaseManager,
    OrderLogEntry,
    SqlBotStore,
    StrategyDirectives,
)
from .websocket import (
    AccountUpdateEvent,
    ConnectionState,
    FuturesUserMarketStream,
    KlineMessage,
    ListenKeyExpiredEvent,
    MarginCallEvent,
    OrderTradeUpdateEvent,
    StreamMessage,
)

__all__ = [
    # Errors
    "FaultClass",
    "ExchangeError",
    "ExchangeAPIError",
    "BenignOutcome",
    "classify_fault",
    # REST
    "AuthMode",
    "PendingRequest",
    "RequestSigner",
    "build_query",
    "sign",
    "FuturesRestClient",
    # Storage
    "DatabaseManager",
    "BotStore",
    "SqlBotStore",
    "Credentials",
    "StrategyDirectives",
    "OrderLogEntry",
    "AIInteractionEntry",
    # Stream
    "ConnectionState",
    "FuturesUserMarketStream",
    "StreamMessage",
    "KlineMessage",
    "AccountUpdateEvent",
    "OrderTradeUpdateEvent",
    "MarginCallEvent",
    "ListenKeyExpiredEvent",
]
