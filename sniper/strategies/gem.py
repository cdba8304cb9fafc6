"""Structural long-horizon strategy for assets that have already multiplied.

No fixed stop-loss, take-profit or timeout. The position rides a trailing stop
whose width grows with the peak multiplier, and leaves early on a momentum
collapse, a broken swing structure or a critical drop from the peak.
"""

from __future__ import annotations

from sniper.shell.contract import (
    EntryDecision,
    EntryParams,
    ExitPlan,
    ExitReason,
    GemState,
    MonitorDecision,
    Position,
    StrategyBase,
    StrategyContext,
    Urgency,
)
from sniper.strategies.indicators import structure_broken, update_impulse, update_structure

# (minimum peak multiplier, trailing width), widest band first
TRAILING_BANDS = (
    (10.0, 0.40),
    (5.0, 0.30),
    (3.0, 0.25),
)


def trailing_width(peak_multiplier: float, base: float) -> float:
    """Trailing stop width for a given peak multiplier; never narrower than `base`."""
    for threshold, width in TRAILING_BANDS:
        if peak_multiplier >= threshold:
            return max(width, base)
    return base


class GemStrategy(StrategyBase):
    strategy_id = "gem"

    min_multiplier = 2.0
    min_liquidity_usd = 1500.0
    max_size = 0.015
    min_size = 0.005
    balance_fraction = 0.15
    initial_trailing_pct = 0.20
    critical_drop_pct = 0.50
    momentum_window = 5
    momentum_drops = 3
    swing_min_pullback = 0.05
    orderly_slippage = 0.20
    urgent_slippage = 0.30
    price_silence_seconds = 30.0
    target_multiplier = 3.0

    def should_enter(self, context: StrategyContext) -> EntryDecision:
        m = context.metrics
        if m is None:
            return EntryDecision(False, "no metrics")
        if m.multiplier < self.min_multiplier:
            return EntryDecision(False, f"multiplier {m.multiplier:.2f}x < {self.min_multiplier}x")
        if m.liquidity_usd < self.min_liquidity_usd:
            return EntryDecision(False, f"liquidity ${m.liquidity_usd:,.0f} < ${self.min_liquidity_usd:,.0f}")
        return EntryDecision(True, f"multiplier {m.multiplier:.2f}x, liquidity ${m.liquidity_usd:,.0f}")

    def entry_params(self, context: StrategyContext, available_balance: float) -> EntryParams:
        size = max(self.min_size, min(self.max_size, available_balance * self.balance_fraction))
        return EntryParams(position_size=size, trailing_stop_pct=self.initial_trailing_pct)

    def initial_state(self, position: Position) -> GemState:
        return GemState()

    def evaluate(self, position: Position, context: StrategyContext, price: float) -> MonitorDecision:
        state = position.state if isinstance(position.state, GemState) else GemState()
        position.state = state

        drop = position.drawdown_from_peak(price)
        if drop >= self.critical_drop_pct:
            return MonitorDecision.exit(ExitReason.CRITICAL_DROP, urgent=True)

        base = position.trailing_stop_pct or self.initial_trailing_pct
        width = trailing_width(position.peak_multiplier, base)
        if width != position.trailing_stop_pct:
            position.trailing_stop_pct = width
        if drop >= width:
            return MonitorDecision.exit(ExitReason.TRAILING_STOP)

        samples = list(position.price_history)[-self.momentum_window:]
        impulse = update_impulse(state.impulse, samples)
        if impulse.consecutive_drops >= self.momentum_drops and impulse.acceleration < 0:
            return MonitorDecision.exit(ExitReason.MOMENTUM_LOSS, urgent=True)

        broken = structure_broken(state.structure, price)
        state.structure = update_structure(
            state.structure, price, position.peak_price, self.swing_min_pullback,
        )
        if broken:
            return MonitorDecision.exit(ExitReason.STRUCTURE_BREAK)

        return MonitorDecision.hold()

    def exit_plan(self, position: Position, context: StrategyContext, reason: str) -> ExitPlan:
        if reason in (ExitReason.CRITICAL_DROP, ExitReason.MOMENTUM_LOSS, ExitReason.FAILSAFE):
            return ExitPlan(Urgency.URGENT, self.urgent_slippage, priority_fee_multiplier=2.0)
        return ExitPlan(Urgency.ORDERLY, self.orderly_slippage)
