"""Readiness wait: per-candidate state machine that runs before any capital moves.

    PROBING -> FILTER_EVALUATING -> WAITING_READY -> BUYING
                      |                  |
                      +---> DISCARDED <--+

While filters are pending, readiness keeps getting polled every `poll_interval`.
A slow filter runs as a task raced against that interval, so it never hides a
readiness success and picks up where it left off on the next iteration.
Once filters pass, only readiness is polled, until `timeout`.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol, Sequence

import structlog

from sniper.shell.contract import FilterVerdict, TokenCandidate

log = structlog.get_logger()


class ReadinessState(Enum):
    PROBING = "probing"
    FILTER_EVALUATING = "filter_evaluating"
    WAITING_READY = "waiting_ready"
    BUYING = "buying"
    DISCARDED = "discarded"


class ReadinessProbe(Protocol):
    async def is_ready(self, asset_id: str) -> bool: ...


class CandidateFilter(Protocol):
    name: str

    async def check(self, candidate: TokenCandidate) -> FilterVerdict: ...


@dataclass(frozen=True)
class ReadinessOutcome:
    state: ReadinessState
    reason: str
    waited: float
    polls: int

    @property
    def ready(self) -> bool:
        return self.state == ReadinessState.BUYING


class ReadinessGate:
    def __init__(
        self,
        probe: ReadinessProbe,
        filters: Sequence[CandidateFilter] = (),
        poll_interval: float = 0.2,
        timeout: float = 120.0,
        filter_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._probe = probe
        self._filters = list(filters)
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._filter_timeout = filter_timeout
        self._clock = clock
        self._sleep = sleep

    async def _probe_ready(self, asset_id: str) -> bool:
        try:
            return bool(await self._probe.is_ready(asset_id))
        except Exception as e:
            log.warning("readiness.probe_failed", asset=asset_id, error=str(e))
            return False

    async def wait(self, candidate: TokenCandidate) -> ReadinessOutcome:
        asset = candidate.asset_id
        start = self._clock()
        state = ReadinessState.PROBING
        stage = 0
        polls = 0
        pending: asyncio.Task | None = None

        def outcome(final: ReadinessState, reason: str) -> ReadinessOutcome:
            waited = self._clock() - start
            log.info("readiness.finished", asset=asset, state=final.value, reason=reason,
                     waited=round(waited, 3), polls=polls)
            return ReadinessOutcome(final, reason, waited, polls)

        try:
            while True:
                elapsed = self._clock() - start
                filters_done = stage >= len(self._filters)
                if elapsed >= self._timeout:
                    return outcome(ReadinessState.DISCARDED, "readiness timeout")
                if not filters_done and elapsed >= self._filter_timeout:
                    return outcome(ReadinessState.DISCARDED, "filters incomplete")

                ready = await self._probe_ready(asset)
                polls += 1
                if ready and filters_done:
                    return outcome(ReadinessState.BUYING, "ready")

                if filters_done:
                    if state != ReadinessState.WAITING_READY:
                        state = ReadinessState.WAITING_READY
                        log.debug("readiness.waiting", asset=asset)
                    await self._sleep(self._poll_interval)
                    continue

                state = ReadinessState.FILTER_EVALUATING
                current = self._filters[stage]
                if pending is None:
                    pending = asyncio.ensure_future(current.check(candidate))
                done, _ = await asyncio.wait({pending}, timeout=self._poll_interval)
                if pending not in done:
                    # Slow filter: keep it running, go probe again
                    continue

                task, pending = pending, None
                try:
                    verdict = task.result()
                except Exception as e:
                    log.warning("readiness.filter_failed", asset=asset, filter=current.name, error=str(e))
                    return outcome(ReadinessState.DISCARDED, f"filter {current.name} failed: {e}")
                if not verdict.passed:
                    return outcome(ReadinessState.DISCARDED, f"filter {current.name}: {verdict.reason}")

                stage += 1
                if stage >= len(self._filters):
                    log.debug("readiness.filters_passed", asset=asset)
                    if ready:
                        return outcome(ReadinessState.BUYING, "ready")
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
