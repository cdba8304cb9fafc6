"""Position orchestrator: admission control, active registry, close path.

Admission runs its gates in a fixed order and stops at the first failure:

    slots -> balance -> strategy -> readiness -> reservation -> execution

Nothing touches the ledger before the reservation step. A failed buy undoes the
principal deduction and the reservation with one exact inverse release. Closing
is guarded by the position status, so any number of concurrent exit triggers
produce exactly one sell and exactly one ledger release. A submitted buy or sell is
always awaited and settled, even when the task driving it is cancelled.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import Counter
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from sniper.engine.executor import RetryableExecutor
from sniper.engine.filters import QuoteService
from sniper.engine.monitor import PositionMonitor
from sniper.engine.readiness import ReadinessGate
from sniper.engine.sanity import (
    estimate_proceeds,
    is_valid_price,
    sanitize_exit_price,
    validate_proceeds,
)
from sniper.engine.sizing import (
    ReservationPlan,
    cap_position_size,
    check_plan,
    minimum_viable_reservation,
    plan_reservation,
)
from sniper.shell.config import Config
from sniper.shell.contract import (
    EntryParams,
    ExecutionResult,
    ExitPlan,
    ExitReason,
    Position,
    PositionStatus,
    StrategyBase,
    StrategyContext,
    TokenCandidate,
    Urgency,
)
from sniper.shell.ledger import Ledger
from sniper.strategies.router import StrategyRouter

log = structlog.get_logger()

FALLBACK_EXIT_PLAN = ExitPlan(Urgency.URGENT, 0.30, priority_fee_multiplier=1.5)


class BalanceSource(Protocol):
    async def get_balance(self) -> float: ...


@dataclass(frozen=True)
class AdmissionResult:
    admitted: bool
    gate: str
    reason: str
    position: Optional[Position] = None

    def __bool__(self) -> bool:
        return self.admitted


class PositionOrchestrator:
    def __init__(
        self,
        config: Config,
        ledger: Ledger,
        executor: RetryableExecutor,
        quotes: QuoteService,
        router: StrategyRouter,
        readiness: ReadinessGate,
        notifier=None,
        balance_source: BalanceSource | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._executor = executor
        self._quotes = quotes
        self._router = router
        self._readiness = readiness
        self._notifier = notifier
        self._balance_source = balance_source
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._positions: dict[str, Position] = {}
        self._monitors: dict[str, asyncio.Task] = {}
        self._admitting: set[str] = set()
        self._inflight: dict[str, float] = {}     # asset -> reservation held while buying
        self._accepting = True
        self._counts: Counter = Counter()
        self._rejections: Counter = Counter()
        self._realized_pnl = 0.0

    # --- Registry ---

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def active_positions(self) -> list[Position]:
        return [p for p in self._positions.values() if p.is_active]

    def get_position(self, asset_id: str) -> Position | None:
        return self._positions.get(asset_id)

    def _occupied_slots(self) -> int:
        return len(self._positions) + len(self._inflight)

    # --- Observability ---

    async def _notify(self, event: str, **data) -> None:
        if self._notifier is None:
            return
        try:
            await getattr(self._notifier, event)(**data)
        except Exception as e:
            log.error("orchestrator.notify_failed", notify_event=event, error=str(e))

    async def _reject(
        self, candidate: TokenCandidate, gate: str, reason: str, strategy: StrategyBase | None = None,
    ) -> AdmissionResult:
        self._rejections[gate] += 1
        log.info("orchestrator.candidate_rejected", asset=candidate.asset_id, gate=gate, reason=reason)
        await self._notify(
            "candidate_rejected",
            asset_id=candidate.asset_id,
            gate=gate,
            reason=reason,
            strategy=strategy.strategy_id if strategy else None,
        )
        return AdmissionResult(False, gate, reason)

    # --- Admission ---

    async def try_open_position(self, candidate: TokenCandidate) -> AdmissionResult:
        asset = candidate.asset_id
        if not self._accepting:
            return await self._reject(candidate, "intake", "engine stopping")
        if asset in self._positions or asset in self._admitting:
            return await self._reject(candidate, "duplicate", "already tracked")

        # 1. Slots
        if self._occupied_slots() >= self._config.risk.max_open_positions:
            return await self._reject(candidate, "slots", "no free slots")

        # 2. Balance
        minimum = minimum_viable_reservation(self._config.risk, self._config.fees)
        free = self._ledger.free_balance
        if free < minimum:
            return await self._reject(
                candidate, "balance", f"free balance {free:.6f} below minimum reservation {minimum:.6f}",
            )

        # 3. Strategy
        strategy = self._router.route(candidate)
        if strategy is None:
            return await self._reject(candidate, "strategy", "untradeable asset class")
        context = StrategyContext(asset, self._clock(), None, candidate.metrics)
        decision = strategy.should_enter(context)
        if not decision.enter:
            return await self._reject(candidate, "strategy", decision.reason, strategy)

        self._admitting.add(asset)
        try:
            # 4. Readiness
            outcome = await self._readiness.wait(candidate)
            if not outcome.ready:
                return await self._reject(candidate, "readiness", outcome.reason, strategy)
            return await self._open(candidate, strategy)
        finally:
            self._admitting.discard(asset)

    async def _open(self, candidate: TokenCandidate, strategy: StrategyBase) -> AdmissionResult:
        asset = candidate.asset_id
        cfg = self._config

        delay = self._rng.uniform(cfg.readiness.pre_buy_delay_min_seconds, cfg.readiness.pre_buy_delay_max_seconds)
        if delay > 0:
            await self._sleep(delay)

        quote = await self._entry_quote(asset)
        if not is_valid_price(quote):
            return await self._reject(candidate, "quote", "no entry price", strategy)

        # From here to the reservation nothing awaits, so the checks and mutations are one step
        if not self._accepting:
            return await self._reject(candidate, "intake", "engine stopping", strategy)
        if self._occupied_slots() >= cfg.risk.max_open_positions:
            return await self._reject(candidate, "slots", "no free slots", strategy)

        context = StrategyContext(asset, self._clock(), quote, candidate.metrics)
        params = strategy.entry_params(context, self._ledger.free_balance)
        size = cap_position_size(params.position_size, cfg.risk)
        target = (
            params.take_profit_multiplier
            or strategy.target_multiplier
            or cfg.fees.reference_take_profit_multiplier
        )
        plan = plan_reservation(size, cfg.fees, target)
        problem = check_plan(plan, cfg.sanity)
        if problem:
            return await self._reject(candidate, "reservation", problem, strategy)

        required = plan.position_size + plan.total_reserved
        free = self._ledger.free_balance
        if free < required:
            return await self._reject(
                candidate, "reservation", f"insufficient free balance {free:.6f} < {required:.6f}", strategy,
            )

        # 5. Reservation
        self._ledger.deduct_from_principal(plan.position_size)
        if not self._ledger.reserve(plan.total_reserved):
            self._ledger.release(0.0, plan.position_size)
            return await self._reject(candidate, "reservation", "reserve refused", strategy)
        self._inflight[asset] = plan.total_reserved

        # 6. Execution. A submitted buy is always awaited and settled, even if this
        # admission is cancelled while it is in flight.
        buy = asyncio.ensure_future(self._executor.buy(asset, plan.position_size))
        cancelled = False
        try:
            result = await asyncio.shield(buy)
        except asyncio.CancelledError:
            log.warning("orchestrator.buy_in_flight_on_cancel", asset=asset)
            result = await buy
            cancelled = True

        admission = await self._settle_buy(candidate, strategy, params, plan, quote, result)
        if cancelled:
            raise asyncio.CancelledError
        return admission

    async def _settle_buy(
        self,
        candidate: TokenCandidate,
        strategy: StrategyBase,
        params: EntryParams,
        plan: ReservationPlan,
        quote: float,
        result: ExecutionResult,
    ) -> AdmissionResult:
        asset = candidate.asset_id
        if not result.success:
            self._ledger.release(plan.total_reserved, plan.position_size)
            self._inflight.pop(asset, None)
            self._counts["buy_failed"] += 1
            reason = result.error or "buy failed"
            if result.abandoned:
                reason = f"not tradable after retry: {reason}"
            return await self._reject(candidate, "execution", reason, strategy)

        # 7. Register and monitor
        entry_price = result.execution_price if is_valid_price(result.execution_price) else quote
        now = self._clock()
        position = Position(
            asset_id=asset,
            strategy_id=strategy.strategy_id,
            entry_price=entry_price,
            position_size=plan.position_size,
            invested_amount=plan.invested,
            reserved_amount=plan.total_reserved,
            entry_time=now,
            token_amount=result.filled_amount,
            stop_loss_target=entry_price * (1 - params.stop_loss_pct) if params.stop_loss_pct else None,
            take_profit_target=entry_price * params.take_profit_multiplier if params.take_profit_multiplier else None,
            exit_deadline=now + params.timeout_seconds if params.timeout_seconds else None,
            trailing_stop_pct=params.trailing_stop_pct,
            metrics=candidate.metrics,
            buy_signature=result.signature,
        )
        position.state = strategy.initial_state(position)
        self._positions[asset] = position
        self._inflight.pop(asset, None)
        self._counts["opened"] += 1
        self._spawn_monitor(position, strategy)

        log.info(
            "orchestrator.position_opened",
            asset=asset,
            strategy=strategy.strategy_id,
            entry_price=entry_price,
            invested=round(plan.invested, 6),
            reserved=round(plan.total_reserved, 6),
            attempts=result.attempts,
        )
        await self._notify("position_opened", position=position)

        # A buy that lands after shutdown began missed close_all_positions
        if not self._accepting:
            await self.close_position(position, ExitReason.SHUTDOWN, entry_price)
        return AdmissionResult(True, "admitted", "opened", position)

    async def _entry_quote(self, asset_id: str) -> float:
        try:
            return float(await self._quotes.get_price(asset_id) or 0.0)
        except Exception as e:
            log.warning("orchestrator.quote_failed", asset=asset_id, error=str(e))
            return 0.0

    def _spawn_monitor(self, position: Position, strategy: StrategyBase) -> None:
        monitor = PositionMonitor(
            position,
            strategy,
            self._quotes,
            self.close_position,
            self._config.engine,
            self._config.sanity,
            clock=self._clock,
            sleep=self._sleep,
        )
        task = asyncio.create_task(monitor.run(), name=f"monitor:{position.asset_id}")
        task.add_done_callback(self._on_monitor_done)
        self._monitors[position.asset_id] = task

    def _on_monitor_done(self, task: asyncio.Task) -> None:
        """Log monitor tasks that died with an exception instead of a close."""
        for asset, t in list(self._monitors.items()):
            if t is task:
                del self._monitors[asset]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("orchestrator.monitor_crashed", task=task.get_name(), error=str(exc))

    # --- Close path ---

    async def close_position(self, position: Position, reason: str, exit_price: float | None = None) -> bool:
        """Sell and settle. Returns True when the position ended closed, False otherwise."""
        if not position.begin_closing():
            log.debug("orchestrator.close_ignored", asset=position.asset_id, status=position.status.value)
            return False

        strategy = self._router.get(position.strategy_id)
        context = StrategyContext(position.asset_id, self._clock(), exit_price, position.metrics)
        try:
            plan = strategy.exit_plan(position, context, reason)
        except Exception as e:
            log.error("orchestrator.exit_plan_failed", asset=position.asset_id, error=str(e))
            plan = FALLBACK_EXIT_PLAN
        last_known = exit_price if is_valid_price(exit_price) else position.current_price
        plan = replace(plan, reference_price=last_known)

        # A submitted sell is always awaited and settled, even if the caller is cancelled
        amount = position.token_amount if position.token_amount is not None else position.invested_amount
        sell = asyncio.ensure_future(self._executor.sell(position.asset_id, amount, plan))
        try:
            result = await asyncio.shield(sell)
        except asyncio.CancelledError:
            log.warning("orchestrator.sell_in_flight_on_cancel", asset=position.asset_id)
            await self._settle_sell(position, reason, exit_price, plan, await sell)
            raise
        return await self._settle_sell(position, reason, exit_price, plan, result)

    async def _settle_sell(
        self, position: Position, reason: str, exit_price: float | None, plan: ExitPlan, result: ExecutionResult,
    ) -> bool:
        cfg = self._config
        if not result.success:
            self._abandon(position, reason, result.error or "sell failed")
            await self._notify(
                "position_abandoned", position=position, reason=reason, error=result.error or "sell failed",
            )
            return False

        max_mult = cfg.sanity.max_plausible_multiplier
        if is_valid_price(result.execution_price):
            settled_price = sanitize_exit_price(position, result.execution_price, max_mult)
        else:
            settled_price = sanitize_exit_price(position, exit_price, max_mult)
        if validate_proceeds(position, result.proceeds, max_mult):
            proceeds = result.proceeds
            source = "execution"
        else:
            proceeds = estimate_proceeds(
                position, settled_price, cfg.fees.exit_cost, max_mult, cfg.sanity.fallback_multiplier_cap,
            )
            source = "estimate"

        self._ledger.release(position.reserved_amount, proceeds)
        position.status = PositionStatus.CLOSED
        self._positions.pop(position.asset_id, None)
        pnl = proceeds - position.position_size
        self._realized_pnl += pnl
        self._counts["closed"] += 1

        log.info(
            "orchestrator.position_closed",
            asset=position.asset_id,
            reason=reason,
            multiplier=round(position.multiplier(settled_price), 4),
            proceeds=round(proceeds, 6),
            pnl=round(pnl, 6),
            source=source,
            urgency=plan.urgency.value,
        )
        await self._notify(
            "position_closed",
            position=position,
            reason=reason,
            exit_price=settled_price,
            proceeds=proceeds,
            pnl=pnl,
            proceeds_source=source,
            sell_signature=result.signature,
        )
        return True

    def _abandon(self, position: Position, reason: str, error: str) -> None:
        """Write the position off: unlock its reservation, credit nothing."""
        self._ledger.release(position.reserved_amount, 0.0)
        position.status = PositionStatus.ABANDONED
        self._positions.pop(position.asset_id, None)
        self._realized_pnl -= position.position_size
        self._counts["abandoned"] += 1
        log.error(
            "orchestrator.position_abandoned",
            asset=position.asset_id,
            reason=reason,
            error=error,
            written_off=round(position.position_size, 6),
        )

    async def close_all_positions(self, reason: str) -> int:
        """Stop intake, close every active position and wait for monitors to wind down."""
        self._accepting = False
        targets = self.active_positions
        log.info("orchestrator.closing_all", count=len(targets), reason=reason)
        results = await asyncio.gather(
            *(self.close_position(p, reason, p.current_price) for p in targets),
            return_exceptions=True,
        )
        closed = 0
        for position, result in zip(targets, results):
            if isinstance(result, BaseException):
                log.error("orchestrator.close_failed", asset=position.asset_id, error=str(result))
            elif result:
                closed += 1

        tasks = dict(self._monitors)
        if tasks:
            _, still_running = await asyncio.wait(
                tasks.values(), timeout=max(1.0, 2 * self._config.engine.tick_interval_seconds),
            )
            # Only idle monitors are cancelled. One whose position is CLOSING owns a sell
            # and is left to settle it.
            selling = []
            for asset, task in tasks.items():
                if task not in still_running:
                    continue
                position = self._positions.get(asset)
                if position is not None and position.status == PositionStatus.CLOSING:
                    selling.append(task)
                else:
                    task.cancel()
            if selling:
                log.info("orchestrator.awaiting_sells", count=len(selling))
                await asyncio.gather(*selling, return_exceptions=True)
        return closed

    # --- Periodic jobs ---

    async def refresh_prices(self) -> dict[str, float]:
        """Batch-refresh quotes for every active position so monitor ticks hit a warm cache."""
        assets = [p.asset_id for p in self.active_positions]
        if not assets:
            return {}
        try:
            prices = await self._quotes.get_prices_batch(assets)
        except Exception as e:
            log.warning("orchestrator.refresh_failed", error=str(e))
            return {}
        missing = [a for a in assets if not is_valid_price(prices.get(a))]
        if missing:
            log.debug("orchestrator.refresh_missing", assets=missing)
        return prices

    def expected_locked(self) -> float:
        """Reservations the ledger should be holding right now."""
        held = sum(
            p.reserved_amount for p in self._positions.values()
            if p.status in (PositionStatus.ACTIVE, PositionStatus.CLOSING)
        )
        return held + sum(self._inflight.values())

    async def reconcile_ledger(self) -> float | None:
        expected = self.expected_locked()
        before = self._ledger.snapshot()
        correction = self._ledger.reconcile(expected, self._config.engine.desync_tolerance)
        if correction is not None:
            self._counts["desync_corrections"] += 1
            await self._notify(
                "ledger_desync",
                locked_before=before.locked_balance,
                expected=expected,
                correction=correction,
                total=before.total_balance,
            )
        return correction

    async def sync_external_balance(self) -> float | None:
        """Adopt the authoritative wallet balance when it has drifted."""
        if self._balance_source is None:
            return None
        try:
            real = await self._balance_source.get_balance()
        except Exception as e:
            log.warning("orchestrator.balance_fetch_failed", error=str(e))
            return None
        if real is None or real < 0:
            return None
        if abs(real - self._ledger.total_balance) <= self._config.engine.balance_sync_tolerance:
            return None
        diff = self._ledger.sync_to_external_balance(real)
        await self._notify("balance_synced", real_balance=real, diff=diff)
        return diff

    def get_stats(self) -> dict:
        snap = self._ledger.snapshot()
        return {
            "active_positions": len(self.active_positions),
            "admitting": len(self._admitting),
            "total_balance": snap.total_balance,
            "locked_balance": snap.locked_balance,
            "free_balance": snap.free_balance,
            "peak_balance": snap.peak_balance,
            "opened": self._counts["opened"],
            "closed": self._counts["closed"],
            "abandoned": self._counts["abandoned"],
            "buy_failed": self._counts["buy_failed"],
            "desync_corrections": self._counts["desync_corrections"],
            "rejections": dict(self._rejections),
            "realized_pnl": self._realized_pnl,
            "positions": [
                {
                    "asset_id": p.asset_id,
                    "strategy": p.strategy_id,
                    "multiplier": round(p.multiplier(), 4),
                    "peak_multiplier": round(p.peak_multiplier, 4),
                    "held_seconds": round(p.held_seconds(self._clock()), 1),
                }
                for p in self.active_positions
            ],
        }
