"""Tests for the engine: retry executor, readiness wait, sanity clamps, sizing, monitor.

Uses a fake clock whose sleep advances time, so timeouts run instantly.
"""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from sniper.shell.config import EngineConfig, FeeConfig, RiskConfig, SanityConfig
from sniper.shell.contract import (
    ExecutionResult,
    ExitPlan,
    ExitReason,
    FilterVerdict,
    Position,
    PositionStatus,
    TokenCandidate,
    Urgency,
)

NOT_READY = ["Custom:3012", '"Custom":3012']


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class StaticFilter:
    def __init__(self, name: str, verdict: FilterVerdict, delay: float = 0.0) -> None:
        self.name = name
        self._verdict = verdict
        self._delay = delay
        self.calls = 0

    async def check(self, candidate):
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._verdict


def _position(**kw) -> Position:
    base = dict(
        asset_id="ASSET1",
        strategy_id="ladder",
        entry_price=1.0,
        position_size=0.05,
        invested_amount=0.0495,
        reserved_amount=0.055,
        entry_time=0.0,
    )
    base.update(kw)
    return Position(**base)


# --- RetryableExecutor ---

@pytest.mark.asyncio
async def test_retry_once_on_not_ready_then_succeed():
    from sniper.engine.executor import RetryableExecutor

    adapter = AsyncMock()
    adapter.buy.side_effect = [
        ExecutionResult(success=False, error='Program failed: {"Custom":3012}'),
        ExecutionResult(success=True, signature="sig1", filled_amount=10.0, execution_price=0.005),
    ]
    clock = FakeClock()
    executor = RetryableExecutor(adapter, NOT_READY, sleep=clock.sleep, rng=random.Random(1))

    result = await executor.buy("ASSET1", 0.05)
    assert result.success
    assert result.attempts == 2
    assert adapter.buy.call_count == 2
    assert len(clock.sleeps) == 1
    assert 0.8 <= clock.sleeps[0] <= 1.2


@pytest.mark.asyncio
async def test_retry_abandons_after_second_not_ready():
    from sniper.engine.executor import RetryableExecutor

    adapter = AsyncMock()
    adapter.buy.return_value = ExecutionResult(success=False, error="custom program error Custom:3012")
    clock = FakeClock()
    executor = RetryableExecutor(adapter, NOT_READY, sleep=clock.sleep)

    result = await executor.buy("ASSET1", 0.05)
    assert not result.success
    assert result.abandoned
    assert result.attempts == 2
    assert adapter.buy.call_count == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    from sniper.engine.executor import RetryableExecutor

    adapter = AsyncMock()
    adapter.sell.return_value = ExecutionResult(success=False, error="insufficient funds")
    clock = FakeClock()
    executor = RetryableExecutor(adapter, NOT_READY, sleep=clock.sleep)

    plan = ExitPlan(Urgency.URGENT, 0.3)
    result = await executor.sell("ASSET1", 100.0, plan)
    assert not result.success
    assert not result.abandoned
    assert result.attempts == 1
    assert adapter.sell.call_count == 1
    adapter.sell.assert_awaited_with("ASSET1", 100.0, plan)
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_adapter_exception_becomes_failed_result():
    from sniper.engine.executor import RetryableExecutor

    adapter = AsyncMock()
    adapter.buy.side_effect = RuntimeError("rpc down")
    executor = RetryableExecutor(adapter, NOT_READY, sleep=FakeClock().sleep)

    result = await executor.buy("ASSET1", 0.05)
    assert not result.success
    assert "rpc down" in result.error
    assert adapter.buy.call_count == 1


@pytest.mark.asyncio
async def test_raised_not_ready_is_retried():
    from sniper.engine.executor import RetryableExecutor

    adapter = AsyncMock()
    adapter.buy.side_effect = [
        RuntimeError("simulation failed: Custom:3012"),
        ExecutionResult(success=True, signature="sig", filled_amount=1.0, execution_price=0.05),
    ]
    executor = RetryableExecutor(adapter, NOT_READY, sleep=FakeClock().sleep)

    result = await executor.buy("ASSET1", 0.05)
    assert result.success
    assert result.attempts == 2


# --- ReadinessGate ---

@pytest.mark.asyncio
async def test_readiness_ready_after_filters():
    from sniper.engine.readiness import ReadinessGate, ReadinessState

    probe = AsyncMock()
    probe.is_ready.side_effect = [False, False, True]
    f = StaticFilter("quote_available", FilterVerdict(True))
    clock = FakeClock()
    gate = ReadinessGate(probe, [f], poll_interval=0.2, timeout=5.0, filter_timeout=2.0,
                         clock=clock, sleep=clock.sleep)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert outcome.ready
    assert outcome.state == ReadinessState.BUYING
    assert outcome.polls == 3
    assert f.calls == 1


@pytest.mark.asyncio
async def test_readiness_timeout_discards():
    from sniper.engine.readiness import ReadinessGate, ReadinessState

    probe = AsyncMock()
    probe.is_ready.return_value = False
    clock = FakeClock()
    gate = ReadinessGate(probe, [StaticFilter("ok", FilterVerdict(True))], poll_interval=0.2,
                         timeout=1.0, filter_timeout=0.5, clock=clock, sleep=clock.sleep)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert not outcome.ready
    assert outcome.state == ReadinessState.DISCARDED
    assert outcome.reason == "readiness timeout"
    assert outcome.waited >= 1.0


@pytest.mark.asyncio
async def test_readiness_filter_rejection():
    from sniper.engine.readiness import ReadinessGate, ReadinessState

    probe = AsyncMock()
    probe.is_ready.return_value = True
    first = StaticFilter("quote_available", FilterVerdict(False, "no quote"))
    second = StaticFilter("mint_authority", FilterVerdict(True))
    clock = FakeClock()
    gate = ReadinessGate(probe, [first, second], clock=clock, sleep=clock.sleep)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert outcome.state == ReadinessState.DISCARDED
    assert outcome.reason == "filter quote_available: no quote"
    assert second.calls == 0


@pytest.mark.asyncio
async def test_readiness_filter_exception_discards():
    from sniper.engine.readiness import ReadinessGate

    class Broken:
        name = "broken"

        async def check(self, candidate):
            raise RuntimeError("boom")

    probe = AsyncMock()
    probe.is_ready.return_value = False
    clock = FakeClock()
    gate = ReadinessGate(probe, [Broken()], clock=clock, sleep=clock.sleep)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert not outcome.ready
    assert outcome.reason.startswith("filter broken failed")


@pytest.mark.asyncio
async def test_readiness_keeps_polling_during_slow_filter():
    """A slow filter never hides readiness: the probe runs on every interval meanwhile."""
    from sniper.engine.readiness import ReadinessGate

    probe = AsyncMock()
    probe.is_ready.return_value = True
    slow = StaticFilter("slow", FilterVerdict(True), delay=0.05)
    gate = ReadinessGate(probe, [slow], poll_interval=0.01, timeout=5.0, filter_timeout=5.0)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert outcome.ready
    assert outcome.polls >= 2
    assert slow.calls == 1


@pytest.mark.asyncio
async def test_readiness_probe_errors_count_as_not_ready():
    from sniper.engine.readiness import ReadinessGate

    probe = AsyncMock()
    probe.is_ready.side_effect = [RuntimeError("rpc"), True]
    clock = FakeClock()
    gate = ReadinessGate(probe, [], poll_interval=0.2, clock=clock, sleep=clock.sleep)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert outcome.ready
    assert outcome.polls == 2


@pytest.mark.asyncio
async def test_readiness_filters_incomplete():
    from sniper.engine.readiness import ReadinessGate

    probe = AsyncMock()
    probe.is_ready.return_value = True
    slow = StaticFilter("slow", FilterVerdict(True), delay=10.0)
    gate = ReadinessGate(probe, [slow], poll_interval=0.01, timeout=1.0, filter_timeout=0.05)

    outcome = await gate.wait(TokenCandidate("ASSET1"))
    assert not outcome.ready
    assert outcome.reason == "filters incomplete"


# --- Sanity ---

def test_sanitize_exit_price_fallbacks():
    from sniper.engine.sanity import sanitize_exit_price

    position = _position(entry_price=1.0)
    position.record_price(3.0, 1.0)
    position.record_price(2.5, 2.0)

    assert sanitize_exit_price(position, 2.0, 1000) == 2.0
    assert sanitize_exit_price(position, None, 1000) == 3.0        # peak
    assert sanitize_exit_price(position, 0.0, 1000) == 3.0
    assert sanitize_exit_price(position, 5000.0, 1000) == 3.0      # implausible


def test_clamp_multiplier():
    from sniper.engine.sanity import clamp_multiplier

    position = _position(entry_price=1.0)
    position.record_price(4.0, 1.0)
    assert clamp_multiplier(position, 2.0, 1000, 100) == 2.0
    assert clamp_multiplier(position, 150.0, 1000, 100) == 100
    assert clamp_multiplier(position, 5000.0, 1000, 100) == pytest.approx(4.0)
    assert clamp_multiplier(position, float("nan"), 1000, 100) == 0.0


def test_estimate_and_validate_proceeds():
    from sniper.engine.sanity import estimate_proceeds, validate_proceeds

    position = _position(entry_price=1.0, invested_amount=0.1)
    assert estimate_proceeds(position, 2.0, 0.001, 1000, 100) == pytest.approx(0.199)
    assert estimate_proceeds(position, 0.001, 0.01, 1000, 100) == 0.0

    assert validate_proceeds(position, 0.15, 1000)
    assert not validate_proceeds(position, None, 1000)
    assert not validate_proceeds(position, -1.0, 1000)
    assert not validate_proceeds(position, 500.0, 1000)


# --- Sizing ---

def test_plan_reservation():
    from sniper.engine.sizing import plan_reservation

    fees = FeeConfig()
    plan = plan_reservation(0.05, fees, 2.0)
    assert plan.invested == pytest.approx(0.05 - fees.entry_cost)
    assert plan.exit_slippage == pytest.approx(plan.invested * 2.0 * 0.05)
    assert plan.total_reserved == pytest.approx(0.05 + fees.exit_cost + plan.exit_slippage)


def test_check_plan_limits():
    from sniper.engine.sizing import check_plan, plan_reservation

    fees = FeeConfig()
    sanity = SanityConfig()
    assert check_plan(plan_reservation(0.05, fees, 2.0), sanity) is None
    assert "does not cover" in check_plan(plan_reservation(0.0004, fees, 2.0), sanity)
    assert "fee floor" in check_plan(plan_reservation(0.0009, fees, 2.0), sanity)
    assert "single-trade limit" in check_plan(plan_reservation(2.0, fees, 2.0), sanity)


def test_minimum_viable_reservation_covers_stake_and_reserve():
    from sniper.engine.sizing import minimum_viable_reservation, plan_reservation

    fees = FeeConfig()
    risk = RiskConfig(min_position_size=0.004, max_position_size=0.05)
    plan = plan_reservation(0.004, fees, fees.reference_take_profit_multiplier)
    # admission deducts the stake and then reserves, so both must fit in free balance
    assert minimum_viable_reservation(risk, fees) == pytest.approx(plan.position_size + plan.total_reserved)


def test_cap_position_size():
    from sniper.engine.sizing import cap_position_size

    risk = RiskConfig(min_position_size=0.004, max_position_size=0.05)
    assert cap_position_size(0.001, risk) == 0.004
    assert cap_position_size(0.2, risk) == 0.05
    assert cap_position_size(0.01, risk) == 0.01


# --- Monitor ---

@pytest.mark.asyncio
async def test_monitor_closes_on_strategy_exit():
    from sniper.engine.monitor import PositionMonitor
    from sniper.strategies.mid import MidStrategy

    position = _position(strategy_id="mid", entry_time=1000.0, take_profit_target=1.35)
    quotes = AsyncMock()
    quotes.get_price.side_effect = [1.1, 1.2, 1.4]
    closes = []

    async def close(pos, reason, price):
        closes.append((reason, price))
        pos.status = PositionStatus.CLOSED
        return True

    clock = FakeClock()
    monitor = PositionMonitor(position, MidStrategy(), quotes, close, EngineConfig(), SanityConfig(),
                              clock=clock, sleep=clock.sleep)
    await monitor.run()

    assert closes == [(ExitReason.TAKE_PROFIT, 1.4)]
    assert monitor.ticks == 3
    assert position.peak_price == pytest.approx(1.4)


@pytest.mark.asyncio
async def test_monitor_ignores_implausible_price():
    from sniper.engine.monitor import PositionMonitor
    from sniper.strategies.mid import MidStrategy

    position = _position(strategy_id="mid", entry_time=1000.0)
    quotes = AsyncMock()
    quotes.get_price.return_value = 5000.0
    close = AsyncMock(return_value=True)

    clock = FakeClock()
    monitor = PositionMonitor(position, MidStrategy(), quotes, close, EngineConfig(), SanityConfig(),
                              clock=clock, sleep=clock.sleep)
    await monitor.tick()

    assert position.peak_price == 1.0
    assert len(position.price_history) == 0
    close.assert_not_awaited()


@pytest.mark.asyncio
async def test_monitor_failsafe_on_price_silence():
    from sniper.engine.monitor import PositionMonitor
    from sniper.strategies.mid import MidStrategy

    position = _position(strategy_id="mid", entry_time=1000.0)
    quotes = AsyncMock()
    quotes.get_price.return_value = 0.0
    closes = []

    async def close(pos, reason, price):
        closes.append(reason)
        pos.status = PositionStatus.CLOSED
        return True

    clock = FakeClock()
    monitor = PositionMonitor(position, MidStrategy(), quotes, close, EngineConfig(), SanityConfig(),
                              clock=clock, sleep=clock.sleep)
    await monitor.run()

    assert closes == [ExitReason.FAILSAFE]
    # Silence window is 10s at 1s ticks: the first tick past it is the 12th
    assert monitor.ticks == 12


@pytest.mark.asyncio
async def test_monitor_closes_after_repeated_errors():
    from sniper.engine.monitor import PositionMonitor
    from sniper.strategies.mid import MidStrategy

    class ExplodingStrategy(MidStrategy):
        def evaluate(self, position, context, price):
            raise RuntimeError("bad state")

    position = _position(strategy_id="mid", entry_time=1000.0)
    quotes = AsyncMock()
    quotes.get_price.return_value = 1.0
    closes = []

    async def close(pos, reason, price):
        closes.append(reason)
        pos.status = PositionStatus.CLOSED
        return True

    clock = FakeClock()
    engine = EngineConfig(max_tick_errors=3, error_backoff_seconds=5.0)
    monitor = PositionMonitor(position, ExplodingStrategy(), quotes, close, engine, SanityConfig(),
                              clock=clock, sleep=clock.sleep)
    await monitor.run()

    assert closes == [ExitReason.ERROR]
    assert position.error_count == 3
    assert clock.sleeps == [5.0, 5.0]
