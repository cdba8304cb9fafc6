"""Paper execution adapter: simulated fills against live quotes.

Fill price = mark price moved against us by a size-dependent impact:

    impact = min(base + k * (amount / threshold) ** power, cap)

Buys pay mark * (1 + impact), sells receive mark * (1 - impact), and both pay the
network fees. A sell with no live mark fills at the exit plan's reference price
(the last price the engine saw). No transaction is ever sent.
"""

from __future__ import annotations

import itertools
import time
import uuid

import numpy as np
import structlog

from sniper.engine.filters import QuoteService
from sniper.shell.config import FeeConfig, PaperConfig
from sniper.shell.contract import ExecutionResult, ExitPlan

log = structlog.get_logger()


def market_impact(amount: float, config: PaperConfig) -> float:
    if amount <= 0:
        return 0.0
    impact = config.impact_base + config.impact_k * np.power(amount / config.impact_threshold, config.impact_power)
    return float(min(impact, config.impact_cap))


class PaperExecutionAdapter:
    def __init__(self, quotes: QuoteService, paper: PaperConfig, fees: FeeConfig) -> None:
        self._quotes = quotes
        self._paper = paper
        self._fees = fees
        self._holdings: dict[str, float] = {}
        self._seq = itertools.count(1)

    def holdings(self, asset_id: str) -> float:
        return self._holdings.get(asset_id, 0.0)

    def _signature(self) -> str:
        return f"paper-{int(time.time() * 1000)}-{next(self._seq)}-{uuid.uuid4().hex[:8]}"

    async def buy(self, asset_id: str, amount: float) -> ExecutionResult:
        mark = await self._quotes.get_price(asset_id)
        if mark <= 0:
            return ExecutionResult(success=False, error=f"no mark price for {asset_id}")

        fee = self._fees.entry_cost
        spend = amount - fee
        if spend <= 0:
            return ExecutionResult(success=False, error=f"amount {amount} does not cover fees {fee}")

        impact = market_impact(amount, self._paper)
        price = mark * (1 + impact)
        tokens = spend / price
        self._holdings[asset_id] = self._holdings.get(asset_id, 0.0) + tokens

        signature = self._signature()
        log.info(
            "paper.buy",
            asset=asset_id,
            amount=amount,
            mark=mark,
            execution_price=price,
            impact=round(impact, 4),
            tokens=tokens,
            signature=signature,
        )
        return ExecutionResult(
            success=True, signature=signature, filled_amount=tokens, execution_price=price,
        )

    async def sell(self, asset_id: str, amount: float, plan: ExitPlan | None = None) -> ExecutionResult:
        held = self._holdings.get(asset_id, 0.0)
        if held <= 0:
            return ExecutionResult(success=False, error=f"no holdings for {asset_id}")
        tokens = min(amount, held)

        mark = await self._quotes.get_price(asset_id)
        if mark <= 0:
            if plan is None or not plan.reference_price or plan.reference_price <= 0:
                return ExecutionResult(success=False, error=f"no mark price for {asset_id}")
            mark = plan.reference_price
            log.warning("paper.sell_at_last_known", asset=asset_id, mark=mark)

        multiplier = plan.priority_fee_multiplier if plan else 1.0
        fee = self._fees.priority_fee * multiplier + self._fees.signature_fee
        impact = market_impact(tokens * mark, self._paper)
        if plan is not None:
            # the fill can't be worse than the plan's slippage tolerance allows
            impact = min(impact, plan.slippage_tolerance)
        price = mark * (1 - impact)
        proceeds = max(0.0, tokens * price - fee)

        remaining = held - tokens
        if remaining > 0:
            self._holdings[asset_id] = remaining
        else:
            self._holdings.pop(asset_id, None)

        signature = self._signature()
        log.info(
            "paper.sell",
            asset=asset_id,
            tokens=tokens,
            mark=mark,
            execution_price=price,
            impact=round(impact, 4),
            proceeds=proceeds,
            signature=signature,
        )
        return ExecutionResult(
            success=True, signature=signature, execution_price=price, proceeds=proceeds,
        )
