"""Reservation sizing and per-trade safety caps."""

from __future__ import annotations

from dataclasses import dataclass

from sniper.shell.config import FeeConfig, RiskConfig, SanityConfig


@dataclass(frozen=True)
class ReservationPlan:
    position_size: float
    entry_cost: float
    invested: float
    exit_cost: float
    exit_slippage: float

    @property
    def total_reserved(self) -> float:
        return self.position_size + self.exit_cost + self.exit_slippage


def plan_reservation(position_size: float, fees: FeeConfig, target_multiplier: float) -> ReservationPlan:
    """Pessimistic hold-back: the stake plus exit cost plus worst-case slippage at target."""
    invested = position_size - fees.entry_cost
    exit_slippage = max(0.0, invested) * target_multiplier * fees.exit_slippage_max
    return ReservationPlan(
        position_size=position_size,
        entry_cost=fees.entry_cost,
        invested=invested,
        exit_cost=fees.exit_cost,
        exit_slippage=exit_slippage,
    )


def minimum_viable_reservation(risk: RiskConfig, fees: FeeConfig) -> float:
    """Smallest free balance any admission could need: the minimum stake plus its reservation."""
    plan = plan_reservation(risk.min_position_size, fees, fees.reference_take_profit_multiplier)
    return plan.position_size + plan.total_reserved


def cap_position_size(size: float, risk: RiskConfig) -> float:
    return min(max(size, risk.min_position_size), risk.max_position_size)


def check_plan(plan: ReservationPlan, sanity: SanityConfig) -> str | None:
    """Reason the plan is unusable, or None."""
    if plan.invested <= 0:
        return f"position size {plan.position_size:.6f} does not cover entry cost"
    min_invested = (plan.entry_cost + plan.exit_cost) / 1.5
    if plan.invested < min_invested:
        return f"invested {plan.invested:.6f} below fee floor {min_invested:.6f}"
    limit = sanity.max_single_amount
    if plan.position_size > limit or plan.total_reserved > limit:
        return f"amounts exceed single-trade limit {limit}"
    return None
