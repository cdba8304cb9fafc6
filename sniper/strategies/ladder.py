"""Default policy for candidates that arrive without classification metrics.

Takes profit at a fixed multiplier while the move is modest. Once the peak clears
3x, a tiered trailing stop takes over, and it tightens late in the holding window.
A hard timeout bounds every position.
"""

from __future__ import annotations

from sniper.shell.contract import (
    EntryDecision,
    EntryParams,
    ExitPlan,
    ExitReason,
    MonitorDecision,
    Position,
    StrategyBase,
    StrategyContext,
    Urgency,
)

# (minimum peak multiplier, trailing drop, late-exit after seconds, late-exit drop)
TIERS = (
    (10.0, 0.30, 80.0, 0.25),
    (5.0, 0.25, 75.0, 0.20),
    (3.0, 0.20, 70.0, 0.15),
)


class LadderStrategy(StrategyBase):
    strategy_id = "ladder"

    min_entry_multiplier = 1.0
    max_size = 0.05
    min_size = 0.004
    balance_fraction = 0.20
    take_profit_multiplier = 2.0
    trailing_activation = 3.0       # peak multiplier where take-profit hands over to trailing
    timeout_seconds = 90.0
    emergency_after_seconds = 85.0
    emergency_ratio = 0.5           # exit below this fraction of the peak multiplier
    emergency_ratio_high = 0.4      # same, once the peak cleared 10x
    orderly_slippage = 0.20
    urgent_slippage = 0.30
    price_silence_seconds = 5.0

    @property
    def target_multiplier(self) -> float:
        return self.take_profit_multiplier

    def should_enter(self, context: StrategyContext) -> EntryDecision:
        m = context.metrics
        if m is None:
            return EntryDecision(True, "unclassified candidate")
        if m.multiplier < self.min_entry_multiplier:
            return EntryDecision(False, f"multiplier {m.multiplier:.2f}x < {self.min_entry_multiplier}x")
        return EntryDecision(True, f"multiplier {m.multiplier:.2f}x")

    def entry_params(self, context: StrategyContext, available_balance: float) -> EntryParams:
        size = max(self.min_size, min(self.max_size, available_balance * self.balance_fraction))
        return EntryParams(
            position_size=size,
            take_profit_multiplier=self.take_profit_multiplier,
            timeout_seconds=self.timeout_seconds,
        )

    def evaluate(self, position: Position, context: StrategyContext, price: float) -> MonitorDecision:
        held = position.held_seconds(context.now)
        multiplier = position.multiplier(price)
        peak = position.peak_multiplier

        if position.exit_deadline is not None and context.now >= position.exit_deadline:
            return MonitorDecision.exit(ExitReason.TIMEOUT)

        if peak < self.trailing_activation:
            if position.take_profit_target is not None and price >= position.take_profit_target:
                return MonitorDecision.exit(ExitReason.TAKE_PROFIT)
        else:
            drop = position.drawdown_from_peak(price)
            for threshold, trail, late_after, late_drop in TIERS:
                if peak >= threshold:
                    if drop >= trail:
                        return MonitorDecision.exit(ExitReason.TRAILING_STOP)
                    if held >= late_after and drop >= late_drop:
                        return MonitorDecision.exit(ExitReason.LATE_EXIT)
                    break

        if held >= self.emergency_after_seconds:
            ratio = self.emergency_ratio_high if peak >= 10 else self.emergency_ratio
            if multiplier < peak * ratio:
                return MonitorDecision.exit(ExitReason.EMERGENCY, urgent=True)

        if position.stop_loss_target is not None and price <= position.stop_loss_target:
            return MonitorDecision.exit(ExitReason.STOP_LOSS, urgent=True)

        return MonitorDecision.hold()

    def exit_plan(self, position: Position, context: StrategyContext, reason: str) -> ExitPlan:
        if reason in (ExitReason.TAKE_PROFIT, ExitReason.TRAILING_STOP, ExitReason.TIMEOUT):
            return ExitPlan(Urgency.ORDERLY, self.orderly_slippage)
        return ExitPlan(Urgency.URGENT, self.urgent_slippage, priority_fee_multiplier=1.5)
