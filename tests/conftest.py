"""
Shared pytest fixtures for the perpbot test suite.

This module provides fixtures for:
- Bot configuration and strategy directives
- Exchange precision payloads and position payloads
- An in-memory SQLite database manager
- Mock REST client, store and stream
"""

from collections.abc import AsyncGenerator
import copy
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from perpbot.config.constants import DEFAULT_STRATEGY_DIRECTIVES
from perpbot.config.settings import BotConfig, EngineSettings
from perpbot.data.storage import Base, DatabaseManager, StrategyDirectives
from perpbot.trading.reconciler import ExchangeInfo

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow-running tests")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def bot_config() -> BotConfig:
    """Bot configuration trading BTCUSDT on testnet."""
    return BotConfig(
        id=7,
        user_id=3,
        name="test-bot",
        symbol="BTCUSDT",
        kline_interval="1m",
        margin_asset="USDT",
        default_leverage=10,
        order_check_interval_seconds=45,
        ai_update_interval_seconds=60,
        use_testnet=True,
        pending_entry_order_cancel_timeout_seconds=180,
        initial_margin_target_usdt=10.0,
        take_profit_target_usdt=0.0,
        profit_check_interval_seconds=60,
        user_api_key_id=11,
    )


@pytest.fixture
def engine_settings() -> EngineSettings:
    """Engine settings with short, test-friendly timers."""
    return EngineSettings(
        heartbeat_interval_seconds=3600,
        listen_key_refresh_seconds=3600,
        max_runtime_seconds=0,
        initial_decision_delay_seconds=3600,
        post_close_decision_delay_seconds=3600,
    )


def make_strategy(**overrides: Any) -> StrategyDirectives:
    directives = copy.deepcopy(DEFAULT_STRATEGY_DIRECTIVES)
    directives.update(overrides)
    return StrategyDirectives(
        id=1,
        user_id=3,
        source_name="default_strategy_v1",
        version=1,
        directives=directives,
    )


@pytest.fixture
def formula_strategy() -> StrategyDirectives:
    """Default directives: formula sizing, no self update (EXECUTOR mode)."""
    return make_strategy()


@pytest.fixture
def ai_strategy() -> StrategyDirectives:
    """AI-suggested sizing with self update allowed (ADAPTIVE mode)."""
    return make_strategy(quantity_determination_method="AI_SUGGESTED", allow_ai_to_update_self=True)


# ============================================================================
# Exchange Payload Fixtures
# ============================================================================


@pytest.fixture
def exchange_info_payload() -> dict[str, Any]:
    """Trimmed exchangeInfo response for BTCUSDT and ETHUSDT."""
    return {
        "symbols": [
            {
                "symbol": "BTCUSDT",
                "filters": [
                    {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                    {"filterType": "LOT_SIZE", "stepSize": "0.001"},
                ],
            },
            {
                "symbol": "ETHUSDT",
                "filters": [
                    {"filterType": "PRICE_FILTER", "tickSize": "0.01"},
                    {"filterType": "LOT_SIZE", "stepSize": "0.001"},
                ],
            },
        ]
    }


@pytest.fixture
def exchange_info(exchange_info_payload) -> ExchangeInfo:
    return ExchangeInfo.from_payload(exchange_info_payload)


def position_risk(amount: str = "0", entry: str = "0", pnl: str = "0", symbol: str = "BTCUSDT") -> list[dict]:
    """positionRisk payload with one entry."""
    return [
        {
            "symbol": symbol,
            "positionAmt": amount,
            "entryPrice": entry,
            "markPrice": entry,
            "unRealizedProfit": pnl,
            "leverage": "10",
            "positionSide": "BOTH",
        }
    ]


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def db_engine():
    """Create async in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_manager(db_engine) -> AsyncGenerator[DatabaseManager, None]:
    """DatabaseManager wired to the in-memory engine."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    manager._engine = db_engine
    manager._session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield manager
    manager._engine = None
    manager._session_maker = None


# ============================================================================
# Mock Collaborator Fixtures
# ============================================================================


@pytest.fixture
def mock_rest(exchange_info_payload) -> AsyncMock:
    """REST client double; order placement returns increasing order ids."""
    rest = AsyncMock()
    counter = {"next": 1000}

    async def place_order(*args, **kwargs):
        counter["next"] += 1
        return {"orderId": counter["next"], "status": "NEW"}

    rest.place_order.side_effect = place_order
    rest.fetch_exchange_info.return_value = exchange_info_payload
    rest.fetch_position_risk.return_value = position_risk()
    rest.start_user_stream.return_value = "listen-key-1"
    rest.set_leverage.return_value = {"leverage": 10}
    rest.cancel_order.return_value = {"status": "CANCELED"}
    rest.fetch_latest_close.return_value = 1.0
    return rest


@pytest.fixture
def mock_store(formula_strategy) -> AsyncMock:
    store = AsyncMock()
    store.load_active_strategy.return_value = formula_strategy
    store.append_order_log.return_value = True
    store.append_ai_interaction.return_value = True
    store.update_heartbeat.return_value = True
    store.update_strategy.return_value = True
    store.recent_order_logs.return_value = []
    store.recent_ai_interactions.return_value = []
    return store


@pytest.fixture
def mock_stream() -> MagicMock:
    stream = MagicMock()
    stream.start = AsyncMock()
    stream.stop = AsyncMock()
    return stream
