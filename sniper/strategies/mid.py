"""Balanced medium-horizon strategy: fixed take-profit, stop-loss and timeout."""

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


class MidStrategy(StrategyBase):
    strategy_id = "mid"

    min_multiplier = 1.12
    min_liquidity_usd = 1000.0
    max_size = 0.01
    min_size = 0.004
    balance_fraction = 0.12
    take_profit_multiplier = 1.35
    stop_loss_pct = 0.10
    timeout_seconds = 45.0
    orderly_slippage = 0.20
    urgent_slippage = 0.25
    price_silence_seconds = 10.0

    @property
    def target_multiplier(self) -> float:
        return self.take_profit_multiplier

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
        return EntryParams(
            position_size=size,
            stop_loss_pct=self.stop_loss_pct,
            take_profit_multiplier=self.take_profit_multiplier,
            timeout_seconds=self.timeout_seconds,
        )

    def evaluate(self, position: Position, context: StrategyContext, price: float) -> MonitorDecision:
        if position.take_profit_target is not None and price >= position.take_profit_target:
            return MonitorDecision.exit(ExitReason.TAKE_PROFIT)

        if position.stop_loss_target is not None and price <= position.stop_loss_target:
            return MonitorDecision.exit(ExitReason.STOP_LOSS, urgent=True)

        if position.exit_deadline is not None and context.now >= position.exit_deadline:
            return MonitorDecision.exit(ExitReason.TIMEOUT, urgent=True)

        return MonitorDecision.hold()

    def exit_plan(self, position: Position, context: StrategyContext, reason: str) -> ExitPlan:
        if reason == ExitReason.TAKE_PROFIT:
            return ExitPlan(Urgency.ORDERLY, self.orderly_slippage)
        return ExitPlan(Urgency.URGENT, self.urgent_slippage, priority_fee_multiplier=1.5)
