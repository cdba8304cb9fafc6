"""Aggressive short-horizon strategy for assets with concentrated liquidity.

Enters immediately on detection, keeps a tight stop and a short clock, and leaves
as soon as the impulse fades. Every exit is treated as urgent.
"""

from __future__ import annotations

from sniper.shell.contract import (
    EntryDecision,
    EntryParams,
    ExitPlan,
    ExitReason,
    ManipulatorState,
    MonitorDecision,
    Position,
    StrategyBase,
    StrategyContext,
    Urgency,
)
from sniper.strategies.indicators import update_impulse


class ManipulatorStrategy(StrategyBase):
    strategy_id = "manipulator"

    max_size = 0.01
    min_size = 0.005
    balance_fraction = 0.10
    stop_loss_pct = 0.10
    timeout_seconds = 60.0
    impulse_window = 3
    max_consecutive_drops = 2
    exit_slippage = 0.25
    price_silence_seconds = 5.0

    def should_enter(self, context: StrategyContext) -> EntryDecision:
        return EntryDecision(True, "immediate entry")

    def entry_params(self, context: StrategyContext, available_balance: float) -> EntryParams:
        size = max(self.min_size, min(self.max_size, available_balance * self.balance_fraction))
        return EntryParams(
            position_size=size,
            stop_loss_pct=self.stop_loss_pct,
            timeout_seconds=self.timeout_seconds,
        )

    def initial_state(self, position: Position) -> ManipulatorState:
        return ManipulatorState()

    def evaluate(self, position: Position, context: StrategyContext, price: float) -> MonitorDecision:
        if position.stop_loss_target is not None and price <= position.stop_loss_target:
            return MonitorDecision.exit(ExitReason.STOP_LOSS, urgent=True)

        if position.exit_deadline is not None and context.now >= position.exit_deadline:
            return MonitorDecision.exit(ExitReason.TIMEOUT, urgent=True)

        state = position.state if isinstance(position.state, ManipulatorState) else ManipulatorState()
        position.state = state
        samples = list(position.price_history)[-self.impulse_window:]
        update_impulse(state.impulse, samples)
        if state.impulse.consecutive_drops >= self.max_consecutive_drops:
            return MonitorDecision.exit(ExitReason.MOMENTUM_LOSS, urgent=True)

        return MonitorDecision.hold()

    def exit_plan(self, position: Position, context: StrategyContext, reason: str) -> ExitPlan:
        return ExitPlan(Urgency.URGENT, self.exit_slippage, priority_fee_multiplier=1.5)
