"""
Tests for the persistence layer.

Tests the ORM models, repositories and SqlBotStore against in-memory SQLite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from perpbot.data.storage import (
    AIInteractionEntry,
    BotConfigurationModel,
    BotRuntimeStatusModel,
    OrderLogEntry,
    SqlBotStore,
    StrategyDirectives,
    TradeLogicSourceModel,
    UserApiKeyModel,
    entry_to_dict,
)
from perpbot.exceptions import ConfigurationError, CredentialError
from perpbot.utils.crypto import CredentialCipher

KEY = "storage-test-key"

# ============================================================================
# Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def seeded_db(db_manager):
    """Database with one active bot configuration and its API key row."""
    cipher = CredentialCipher(KEY)
    async with db_manager.get_session() as session:
        session.add(
            UserApiKeyModel(
                id=11,
                user_id=3,
                key_name="main",
                binance_api_key_encrypted=cipher.encrypt("exchange-key", b"\x01" * 16),
                binance_api_secret_encrypted=cipher.encrypt("exchange-secret", b"\x02" * 16),
                gemini_api_key_encrypted=cipher.encrypt("oracle-key", b"\x03" * 16),
            )
        )
        session.add(
            BotConfigurationModel(
                id=7,
                user_id=3,
                name="bot",
                symbol="btcusdt",
                kline_interval="5m",
                margin_asset="usdt",
                default_leverage=20,
                user_api_key_id=11,
            )
        )
        session.add(BotConfigurationModel(id=8, user_id=3, symbol="ETHUSDT", default_leverage=500))
        session.add(BotConfigurationModel(id=9, user_id=3, symbol="ETHUSDT", is_active=False))
        session.add(BotConfigurationModel(id=10, user_id=3, symbol="ETHUSDT", kline_interval="7m"))
    return db_manager


@pytest_asyncio.fixture
async def store(seeded_db) -> SqlBotStore:
    store = SqlBotStore(seeded_db, CredentialCipher(KEY))
    await store.load_config(7)
    return store


def order_entry(order_id: str = "1", status: str = "FILLED", minutes_ago: int = 0, **kwargs) -> OrderLogEntry:
    return OrderLogEntry(
        user_id=3,
        bot_config_id=7,
        order_id=order_id,
        symbol="BTCUSDT",
        side="BUY",
        status_reason=status,
        price=60000.0,
        quantity=0.01,
        margin_asset="USDT",
        event_key=kwargs.pop("event_key", f"{order_id}:{status}:1"),
        timestamp=datetime.now(UTC) - timedelta(minutes=minutes_ago),
        **kwargs,
    )


# ============================================================================
# Configuration and credentials
# ============================================================================


@pytest.mark.unit
class TestLoadConfig:
    @pytest.mark.asyncio
    async def test_loads_and_normalizes(self, seeded_db):
        config = await SqlBotStore(seeded_db).load_config(7)

        assert config.symbol == "BTCUSDT"
        assert config.margin_asset == "USDT"
        assert config.kline_interval == "5m"
        assert config.default_leverage == 20
        assert config.user_api_key_id == 11

    @pytest.mark.asyncio
    async def test_missing_config(self, seeded_db):
        with pytest.raises(ConfigurationError):
            await SqlBotStore(seeded_db).load_config(99)

    @pytest.mark.asyncio
    async def test_inactive_config(self, seeded_db):
        with pytest.raises(ConfigurationError):
            await SqlBotStore(seeded_db).load_config(9)

    @pytest.mark.asyncio
    async def test_invalid_leverage(self, seeded_db):
        with pytest.raises(ConfigurationError):
            await SqlBotStore(seeded_db).load_config(8)

    @pytest.mark.asyncio
    async def test_unknown_kline_interval(self, seeded_db):
        with pytest.raises(ConfigurationError, match="kline_interval"):
            await SqlBotStore(seeded_db).load_config(10)


@pytest.mark.unit
class TestLoadCredentials:
    @pytest.mark.asyncio
    async def test_decrypts_all_keys(self, store):
        config = await store.load_config(7)
        credentials = await store.load_credentials(config)

        assert credentials.exchange_api_key == "exchange-key"
        assert credentials.exchange_api_secret == "exchange-secret"
        assert credentials.oracle_api_key == "oracle-key"
        assert "exchange-secret" not in repr(credentials)

    @pytest.mark.asyncio
    async def test_wrong_key_fails(self, seeded_db):
        store = SqlBotStore(seeded_db, CredentialCipher("a-different-key"))
        config = await store.load_config(7)

        with pytest.raises(CredentialError):
            await store.load_credentials(config)

    @pytest.mark.asyncio
    async def test_missing_cipher(self, seeded_db):
        store = SqlBotStore(seeded_db)
        config = await store.load_config(7)

        with pytest.raises(CredentialError):
            await store.load_credentials(config)


# ============================================================================
# Strategy directives
# ============================================================================


@pytest.mark.unit
class TestStrategy:
    @pytest.mark.asyncio
    async def test_default_created_when_missing(self, store, seeded_db):
        strategy = await store.load_active_strategy(3)

        assert strategy.version == 1
        assert strategy.source_name == "default_strategy_v1"
        assert strategy.sizing_method == "INITIAL_MARGIN_TARGET"
        assert strategy.allow_self_update is False

        again = await store.load_active_strategy(3)
        assert again.id == strategy.id

    @pytest.mark.asyncio
    async def test_update_bumps_version_and_prefixes_notes(self, store, seeded_db):
        strategy = await store.load_active_strategy(3)
        directives = dict(strategy.directives, current_market_bias="BEARISH", ai_learnings_notes="old notes")

        assert await store.update_strategy(strategy.id, directives, "volatility spike", {"ctx": 1}) is True

        updated = await store.load_active_strategy(3)
        assert updated.version == 2
        assert updated.last_updated_by == "AI"
        assert updated.directives["current_market_bias"] == "BEARISH"
        notes = updated.directives["ai_learnings_notes"]
        assert "UTC - AI Update (v2): volatility spike\nold notes" in notes

        async with seeded_db.get_session() as session:
            model = (await session.execute(select(TradeLogicSourceModel))).scalar_one()
            assert model.full_data_snapshot_at_last_update_json == {"ctx": 1}

    @pytest.mark.asyncio
    async def test_update_of_unknown_source(self, store):
        assert await store.update_strategy(12345, {}, "x", None) is False

    def test_invalid_sizing_method(self):
        strategy = StrategyDirectives(
            id=1, user_id=3, source_name="s", version=1, directives={"quantity_determination_method": "YOLO"}
        )
        with pytest.raises(ConfigurationError):
            strategy.validate()

    def test_sizing_defaults_to_ai(self):
        strategy = StrategyDirectives(id=1, user_id=3, source_name="s", version=1, directives={})
        assert strategy.sizing_method == "AI_SUGGESTED"
        assert strategy.to_context()["strategy_directives"] == {}


# ============================================================================
# Logs and heartbeat
# ============================================================================


@pytest.mark.unit
class TestLogs:
    @pytest.mark.asyncio
    async def test_order_log_duplicates_are_ignored(self, store):
        assert await store.append_order_log(order_entry("1")) is True
        assert await store.append_order_log(order_entry("1")) is True

        logs = await store.recent_order_logs(10)
        assert len(logs) == 1
        assert logs[0]["orderId"] == "1"
        assert logs[0]["status"] == "FILLED"
        assert logs[0]["assetPair"] == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_recent_order_logs_newest_first(self, store):
        await store.append_order_log(order_entry("old", minutes_ago=10))
        await store.append_order_log(order_entry("new", minutes_ago=1, realized_pnl=2.5, reduce_only=True))

        logs = await store.recent_order_logs(1)

        assert [log["orderId"] for log in logs] == ["new"]
        assert logs[0]["realizedPnl"] == 2.5
        assert logs[0]["reduceOnly"] is True

    @pytest.mark.asyncio
    async def test_ai_interactions(self, store):
        entry = AIInteractionEntry(
            user_id=3,
            bot_config_id=7,
            symbol="BTCUSDT",
            executed_action="HOLD_POSITION_AI_DIRECT",
            decision={"action": "HOLD_POSITION"},
            bot_feedback={"status": "OK_ACTION"},
            context={"bot_metadata": {}},
            payload_md5="0" * 32,
            raw_response="{}",
        )
        assert await store.append_ai_interaction(entry) is True

        recent = await store.recent_ai_interactions(3)
        assert recent[0]["executed_action_by_bot"] == "HOLD_POSITION_AI_DIRECT"
        assert recent[0]["bot_feedback"] == {"status": "OK_ACTION"}

    @pytest.mark.asyncio
    async def test_heartbeat_upserts_single_row(self, store, seeded_db):
        assert await store.update_heartbeat("initializing", 100) is True
        assert await store.update_heartbeat("running", 100, None, {"side": "LONG"}) is True

        async with seeded_db.get_session() as session:
            rows = (await session.execute(select(BotRuntimeStatusModel))).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == "running"
        assert rows[0].current_position_details_json == {"side": "LONG"}

    def test_entry_to_dict(self):
        data = entry_to_dict(order_entry("5"))
        assert data["order_id"] == "5"
        assert isinstance(data["timestamp"], str)
