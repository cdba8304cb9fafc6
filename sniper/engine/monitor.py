"""Per-position monitor task: price -> strategy decision -> close, one tick at a time."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from sniper.engine.filters import QuoteService
from sniper.engine.sanity import is_plausible_price
from sniper.shell.config import EngineConfig, SanityConfig
from sniper.shell.contract import ExitReason, Position, StrategyBase, StrategyContext

log = structlog.get_logger()

CloseFn = Callable[[Position, str, Optional[float]], Awaitable[bool]]


class PositionMonitor:
    """Owns one position's ticks. The status check at the loop head is the only stop signal."""

    def __init__(
        self,
        position: Position,
        strategy: StrategyBase,
        quotes: QuoteService,
        close: CloseFn,
        engine: EngineConfig,
        sanity: SanityConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._position = position
        self._strategy = strategy
        self._quotes = quotes
        self._close = close
        self._engine = engine
        self._sanity = sanity
        self._clock = clock
        self._sleep = sleep
        self.ticks = 0

    async def run(self) -> None:
        position = self._position
        log.info("monitor.started", asset=position.asset_id, strategy=position.strategy_id)
        while position.is_active:
            delay = self._engine.tick_interval_seconds
            try:
                await self.tick()
                position.error_count = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                position.error_count += 1
                log.error(
                    "monitor.tick_failed",
                    asset=position.asset_id,
                    errors=position.error_count,
                    error=str(e),
                    exc_info=True,
                )
                if position.error_count >= self._engine.max_tick_errors:
                    await self._close(position, ExitReason.ERROR, position.current_price)
                    break
                delay = self._engine.error_backoff_seconds
            if position.is_active:
                await self._sleep(delay)
        log.info("monitor.stopped", asset=position.asset_id, status=position.status.value, ticks=self.ticks)

    async def _fetch_price(self) -> float:
        try:
            return float(await self._quotes.get_price(self._position.asset_id) or 0.0)
        except Exception as e:
            log.warning("monitor.quote_failed", asset=self._position.asset_id, error=str(e))
            return 0.0

    async def tick(self) -> None:
        position = self._position
        self.ticks += 1
        price = await self._fetch_price()
        if not position.is_active:
            return
        now = self._clock()

        fresh = None
        if is_plausible_price(price, position.entry_price, self._sanity.max_plausible_multiplier):
            position.record_price(price, now)
            fresh = price
        elif price > 0:
            log.warning(
                "monitor.price_implausible",
                asset=position.asset_id,
                price=price,
                entry=position.entry_price,
            )

        context = StrategyContext(position.asset_id, now, fresh, position.metrics)
        decision = self._strategy.monitor_tick(position, context)
        if not decision.should_exit:
            return

        exit_price = fresh if fresh is not None else position.current_price
        log.info(
            "monitor.exit_decided",
            asset=position.asset_id,
            reason=decision.reason,
            urgent=decision.urgent,
            multiplier=round(position.multiplier(exit_price), 4),
            peak_multiplier=round(position.peak_multiplier, 4),
        )
        await self._close(position, decision.reason, exit_price)
