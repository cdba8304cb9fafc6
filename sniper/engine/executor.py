"""Bounded retry around a single buy or sell.

Freshly created assets can be briefly untradable on-chain even after they show up.
Those failures carry known error fragments. A call that hits one is retried exactly
once after a short randomized pause. A second hit abandons the call for good,
and every other error is returned untouched.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from typing import Awaitable, Callable, Iterable, Optional, Protocol

import structlog

from sniper.shell.contract import ExecutionResult, ExitPlan

log = structlog.get_logger()


class ExecutionAdapter(Protocol):
    async def buy(self, asset_id: str, amount: float) -> ExecutionResult: ...

    async def sell(self, asset_id: str, amount: float, plan: Optional[ExitPlan] = None) -> ExecutionResult: ...


class RetryableExecutor:
    def __init__(
        self,
        adapter: ExecutionAdapter,
        not_ready_signatures: Iterable[str],
        backoff_min: float = 0.8,
        backoff_max: float = 1.2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._adapter = adapter
        self._signatures = tuple(not_ready_signatures)
        self._backoff = (backoff_min, backoff_max)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def is_not_ready(self, error: str | None) -> bool:
        if not error:
            return False
        return any(sig in error for sig in self._signatures)

    async def buy(self, asset_id: str, amount: float) -> ExecutionResult:
        return await self._run("buy", asset_id, lambda: self._adapter.buy(asset_id, amount))

    async def sell(self, asset_id: str, amount: float, plan: ExitPlan | None = None) -> ExecutionResult:
        return await self._run("sell", asset_id, lambda: self._adapter.sell(asset_id, amount, plan))

    async def _attempt(self, op: str, asset_id: str, call: Callable[[], Awaitable[ExecutionResult]]) -> ExecutionResult:
        try:
            return await call()
        except Exception as e:
            log.warning("executor.adapter_raised", op=op, asset=asset_id, error=str(e))
            return ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

    async def _run(self, op: str, asset_id: str, call: Callable[[], Awaitable[ExecutionResult]]) -> ExecutionResult:
        first = await self._attempt(op, asset_id, call)
        if first.success or not self.is_not_ready(first.error):
            return replace(first, attempts=1)

        delay = self._rng.uniform(*self._backoff)
        log.info("executor.retry_scheduled", op=op, asset=asset_id, delay=round(delay, 3), error=first.error)
        await self._sleep(delay)

        second = await self._attempt(op, asset_id, call)
        if second.success:
            log.info("executor.retry_succeeded", op=op, asset=asset_id)
            return replace(second, attempts=2)

        if self.is_not_ready(second.error):
            log.warning("executor.abandoned", op=op, asset=asset_id, error=second.error)
            return replace(second, attempts=2, abandoned=True)
        return replace(second, attempts=2)
