"""Boot and persistence tests.

Tests config loading and validation, database schema, activity log, the notifier
sink (trade/admission/ledger rows and Telegram dispatch), session stats, a full
paper-mode app start/stop, and the single-instance pid lock.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from sniper.shell.contract import Position, PositionStatus, TokenCandidate, TokenMetrics


def _write(dir_path: Path, name: str, text: str) -> None:
    (dir_path / name).write_text(text)


def _closed_position(asset="ASSET1", strategy="ladder", status=PositionStatus.CLOSED) -> Position:
    position = Position(
        asset_id=asset,
        strategy_id=strategy,
        entry_price=0.001,
        position_size=0.05,
        invested_amount=0.049495,
        reserved_amount=0.0554545,
        entry_time=0.0,
        buy_signature="buy-sig",
    )
    position.record_price(0.003, 10.0)
    position.status = status
    return position


# --- Config ---

def test_shipped_config_loads():
    from sniper.shell.config import load_config
    from sniper.strategies.router import StrategyRouter

    config = load_config()
    assert config.mode == "paper"
    assert config.default_strategy == "ladder"
    assert config.risk.max_open_positions == 5
    assert config.fees.exit_cost == pytest.approx(0.000505)
    assert "Custom:3012" in config.retry.not_ready_signatures
    assert config.telegram.notifications.candidate_rejected is False

    router = StrategyRouter(config.default_strategy, config.strategies)
    assert router.get("ladder").max_size == config.strategies["ladder"]["max_size"]


def test_config_overrides_from_toml():
    from sniper.shell.config import load_config

    with tempfile.TemporaryDirectory() as tmp:
        tmp_path = Path(tmp)
        _write(tmp_path, "settings.toml", """
[general]
initial_balance = 2.5
default_strategy = "mid"

[engine]
tick_interval_seconds = 0.5

[readiness]
timeout_seconds = 60.0

[strategies.gem]
initial_trailing_pct = 0.25
""")
        _write(tmp_path, "risk_limits.toml", """
[position]
max_open_positions = 3
""")
        config = load_config(tmp_path)

    assert config.initial_balance == 2.5
    assert config.default_strategy == "mid"
    assert config.engine.tick_interval_seconds == 0.5
    assert config.readiness.timeout_seconds == 60.0
    assert config.readiness.poll_interval_seconds == 0.2
    assert config.risk.max_open_positions == 3
    assert config.strategies == {"gem": {"initial_trailing_pct": 0.25}}


def test_config_validation_collects_errors():
    from sniper.shell.config import load_config

    with tempfile.TemporaryDirectory() as tmp:
        tmp_path = Path(tmp)
        _write(tmp_path, "settings.toml", """
[general]
mode = "yolo"
default_strategy = "nope"

[strategies.unknown]
x = 1
""")
        _write(tmp_path, "risk_limits.toml", """
[position]
max_open_positions = 0
""")
        with pytest.raises(ValueError) as exc:
            load_config(tmp_path)

    message = str(exc.value)
    assert "mode must be" in message
    assert "default_strategy" in message
    assert "strategies.unknown" in message
    assert "max_open_positions" in message


def test_live_mode_requires_wallet(monkeypatch):
    from sniper.shell.config import load_config

    monkeypatch.delenv("WALLET_ADDRESS", raising=False)
    with tempfile.TemporaryDirectory() as tmp:
        tmp_path = Path(tmp)
        _write(tmp_path, "settings.toml", '[general]\nmode = "live"\n')
        with pytest.raises(ValueError, match="WALLET_ADDRESS"):
            load_config(tmp_path)

        monkeypatch.setenv("WALLET_ADDRESS", "Wallet111")
        config = load_config(tmp_path)
        assert config.rpc.wallet_address == "Wallet111"
        assert not config.is_paper()


# --- Database ---

@pytest.mark.asyncio
async def test_database_schema():
    from sniper.shell.database import Database

    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    try:
        db = Database(db_path)
        await db.connect()

        rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = [r["name"] for r in rows]
        for t in ["trades", "admissions", "ledger_events", "activity_log"]:
            assert t in tables, f"Missing table: {t}"

        columns = [r["name"] for r in await db.fetchall("PRAGMA table_info(trades)")]
        assert "peak_multiplier" in columns
        assert "proceeds_source" in columns

        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_database_migrates_old_trades_table():
    import aiosqlite

    from sniper.shell.database import Database

    with tempfile.TemporaryDirectory() as tmp:
        db_path = str(Path(tmp) / "old.db")
        async with aiosqlite.connect(db_path) as conn:
            await conn.execute(
                "CREATE TABLE trades (id INTEGER PRIMARY KEY, asset_id TEXT NOT NULL, strategy TEXT NOT NULL, "
                "status TEXT NOT NULL, entry_price REAL NOT NULL, exit_price REAL, position_size REAL NOT NULL, "
                "invested REAL NOT NULL, reserved REAL NOT NULL, proceeds REAL NOT NULL DEFAULT 0, "
                "pnl REAL NOT NULL DEFAULT 0, multiplier REAL, exit_reason TEXT, buy_signature TEXT, "
                "sell_signature TEXT, opened_at TEXT, closed_at TEXT)"
            )
            await conn.commit()

        db = Database(db_path)
        await db.connect()
        columns = [r["name"] for r in await db.fetchall("PRAGMA table_info(trades)")]
        assert "peak_multiplier" in columns
        assert "proceeds_source" in columns
        await db.close()


# --- Activity + Notifier ---

@pytest.mark.asyncio
async def test_activity_log_roundtrip():
    from sniper.shell.activity import ActivityLogger
    from sniper.shell.database import Database

    db = Database(":memory:")
    await db.connect()
    activity = ActivityLogger(db)

    await activity.system("System online")
    await activity.trade("CLOSE ASSET1", detail={"pnl": 0.01})
    await activity.ledger("desync", severity="error")

    recent = await activity.recent()
    assert [r["category"] for r in recent] == ["SYSTEM", "TRADE", "LEDGER"]
    errors = await activity.query(severity="error")
    assert len(errors) == 1
    assert errors[0]["summary"] == "desync"
    trades = await activity.query(category="TRADE")
    assert '"pnl": 0.01' in trades[0]["detail"]

    await db.close()


@pytest.mark.asyncio
async def test_notifier_persists_lifecycle_events():
    from sniper.shell.activity import ActivityLogger
    from sniper.shell.database import Database
    from sniper.telegram.notifications import Notifier

    db = Database(":memory:")
    await db.connect()
    notifier = Notifier()
    notifier.set_activity_logger(ActivityLogger(db))

    position = _closed_position()
    await notifier.position_opened(position)
    await notifier.candidate_rejected("ASSET2", "slots", "no free slots")
    await notifier.position_closed(position, "take_profit", 0.003, 0.12, 0.07, "execution", "sell-sig")
    await notifier.ledger_desync(0.2, 0.1, -0.1, 1.0)

    trades = await db.fetchall("SELECT * FROM trades")
    assert len(trades) == 1
    assert trades[0]["exit_reason"] == "take_profit"
    assert trades[0]["multiplier"] == pytest.approx(3.0)
    assert trades[0]["peak_multiplier"] == pytest.approx(3.0)
    assert trades[0]["proceeds_source"] == "execution"
    assert trades[0]["sell_signature"] == "sell-sig"

    admissions = await db.fetchall("SELECT * FROM admissions ORDER BY id")
    assert [(a["asset_id"], a["admitted"], a["gate"]) for a in admissions] == [
        ("ASSET1", 1, "admitted"),
        ("ASSET2", 0, "slots"),
    ]

    events = await db.fetchall("SELECT * FROM ledger_events")
    assert events[0]["kind"] == "desync"
    assert events[0]["amount"] == pytest.approx(-0.1)

    categories = [r["category"] for r in await db.fetchall("SELECT category FROM activity_log ORDER BY id")]
    assert categories == ["TRADE", "ADMISSION", "TRADE", "LEDGER"]

    await db.close()


@pytest.mark.asyncio
async def test_notifier_abandoned_position_writes_off_stake():
    from sniper.shell.activity import ActivityLogger
    from sniper.shell.database import Database
    from sniper.telegram.notifications import Notifier

    db = Database(":memory:")
    await db.connect()
    notifier = Notifier()
    notifier.set_activity_logger(ActivityLogger(db))

    position = _closed_position(status=PositionStatus.ABANDONED)
    await notifier.position_abandoned(position, "stop_loss", "route not found")

    row = await db.fetchone("SELECT * FROM trades")
    assert row["status"] == "abandoned"
    assert row["proceeds"] == 0.0
    assert row["pnl"] == pytest.approx(-0.05)
    assert row["exit_price"] is None

    await db.close()


@pytest.mark.asyncio
async def test_notifier_telegram_filter():
    from sniper.shell.config import NotificationConfig
    from sniper.telegram.notifications import Notifier

    bot = AsyncMock()
    notifier = Notifier("12345", tg_filter=NotificationConfig(), bot=bot)

    await notifier.system_online(1.0, "paper")
    await notifier.candidate_rejected("ASSET1", "strategy", "untradeable asset class")
    await notifier.stop()

    assert bot.send_message.await_count == 1
    assert "System Online" in bot.send_message.call_args.kwargs["text"]
    bot.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_notifier_activity_failure_is_swallowed():
    from sniper.telegram.notifications import Notifier

    activity = AsyncMock()
    activity.log.side_effect = RuntimeError("db locked")
    activity.record_admission.side_effect = RuntimeError("db locked")
    notifier = Notifier()
    notifier.set_activity_logger(activity)

    await notifier.candidate_rejected("ASSET1", "slots", "no free slots")
    await notifier.system_error("boom")
    assert activity.log.await_count == 2


# --- Session truth ---

@pytest.mark.asyncio
async def test_session_stats():
    from sniper.shell.activity import ActivityLogger
    from sniper.shell.database import Database
    from sniper.shell.truth import compute_session_stats

    db = Database(":memory:")
    await db.connect()
    activity = ActivityLogger(db)

    empty = await compute_session_stats(db)
    assert empty["trade_count"] == 0
    assert empty["win_rate"] == 0.0

    await activity.record_trade(_closed_position("A1"), 0.003, 0.12, 0.07, "take_profit", "execution")
    await activity.record_trade(_closed_position("A2", "gem"), 0.0005, 0.02, -0.03, "trailing_stop", "execution")
    await activity.record_trade(_closed_position("A3", status=PositionStatus.ABANDONED),
                                None, 0.0, -0.05, "stop_loss", "write_off")
    await activity.record_admission("A1", True, "admitted", "opened", "ladder")
    await activity.record_admission("A4", False, "slots", "no free slots")

    stats = await compute_session_stats(db)
    assert stats["trade_count"] == 3
    assert stats["win_count"] == 1
    assert stats["loss_count"] == 1
    assert stats["abandoned_count"] == 1
    assert stats["win_rate"] == pytest.approx(1 / 3)
    assert stats["net_pnl"] == pytest.approx(-0.01)
    assert stats["best_multiplier"] == pytest.approx(3.0)
    assert stats["worst_multiplier"] == pytest.approx(0.5)
    assert stats["by_strategy"]["ladder"]["trades"] == 2
    assert stats["exit_reasons"]["take_profit"] == 1
    assert stats["admissions_by_gate"] == {"admitted": 1, "slots": 1}

    await db.close()


# --- App ---

@pytest.mark.asyncio
async def test_paper_app_boot_intake_and_shutdown():
    from sniper.main import SniperApp
    from sniper.shell.config import Config

    with tempfile.TemporaryDirectory() as tmp:
        config = Config()
        config.db_path = str(Path(tmp) / "sniper.db")
        config.log_level = "WARNING"
        app = SniperApp(config)

        runner = asyncio.create_task(app.start())
        for _ in range(100):
            if app.running:
                break
            await asyncio.sleep(0.01)
        assert app.running

        jobs = {job.id for job in app._scheduler.get_jobs()}
        assert jobs == {"refresh_prices", "reconcile_ledger", "log_status"}

        # Trash is rejected at the strategy gate, before any network call
        app.submit(TokenCandidate("TRASH1", metrics=TokenMetrics(1.0, 10)))
        for _ in range(300):
            if app.orchestrator.get_stats()["rejections"]:
                break
            await asyncio.sleep(0.01)
        assert app.orchestrator.get_stats()["rejections"] == {"strategy": 1}

        rows = await app._db.fetchall("SELECT * FROM admissions")
        assert rows[0]["gate"] == "strategy"

        await app.stop()
        await asyncio.wait_for(runner, timeout=5)
        assert not app.running


@pytest.mark.asyncio
async def test_live_mode_without_adapter_refuses_to_start():
    from sniper.main import SniperApp
    from sniper.shell.config import Config

    config = Config()
    config.mode = "live"
    config.db_path = ":memory:"
    config.log_level = "WARNING"
    with pytest.raises(RuntimeError, match="execution adapter"):
        await SniperApp(config).setup()


# --- Single-instance lock ---

def test_pid_lock_lifecycle():
    from sniper.main import PidLock

    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "data" / "sniper.pid"
        lock = PidLock(path)

        assert lock.acquire()
        assert path.read_text() == str(os.getpid())
        # Re-acquiring our own lock is allowed
        assert lock.acquire()

        lock.release()
        assert not path.exists()
        lock.release()


def test_pid_lock_respects_live_owner_and_takes_over_stale():
    from sniper.main import PidLock

    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "sniper.pid"

        path.write_text(str(os.getppid()))
        lock = PidLock(path)
        assert lock.holder() == os.getppid()
        assert not lock.acquire()

        path.write_text("not-a-pid")
        assert lock.acquire()
        assert path.read_text() == str(os.getpid())
