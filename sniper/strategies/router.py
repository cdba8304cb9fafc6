"""Asset classification and strategy routing."""

from __future__ import annotations

from enum import Enum
from typing import Optional

import structlog

from sniper.shell.contract import StrategyBase, TokenCandidate, TokenMetrics
from sniper.strategies.gem import GemStrategy
from sniper.strategies.ladder import LadderStrategy
from sniper.strategies.manipulator import ManipulatorStrategy
from sniper.strategies.mid import MidStrategy

log = structlog.get_logger()

STRATEGY_TYPES: dict[str, type[StrategyBase]] = {
    ManipulatorStrategy.strategy_id: ManipulatorStrategy,
    MidStrategy.strategy_id: MidStrategy,
    GemStrategy.strategy_id: GemStrategy,
    LadderStrategy.strategy_id: LadderStrategy,
}


class AssetClass(Enum):
    MANIPULATOR = "manipulator"
    GEM = "gem"
    MID = "mid"
    TRASH = "trash"


def classify(metrics: TokenMetrics) -> AssetClass:
    """First matching class wins: concentrated liquidity, then big movers, then modest ones."""
    if metrics.concentrated_liquidity and metrics.liquidity_usd >= 500 and metrics.market_cap_usd >= 1000:
        return AssetClass.MANIPULATOR
    if metrics.multiplier >= 2.0 and metrics.liquidity_usd >= 1500:
        return AssetClass.GEM
    if metrics.multiplier >= 1.12 and metrics.liquidity_usd >= 1000:
        return AssetClass.MID
    return AssetClass.TRASH


class StrategyRouter:
    """Owns one instance of each strategy and picks the one a candidate belongs to."""

    def __init__(self, default_strategy: str = "ladder", overrides: dict[str, dict] | None = None) -> None:
        overrides = overrides or {}
        self._strategies: dict[str, StrategyBase] = {
            sid: cls(**overrides.get(sid, {})) for sid, cls in STRATEGY_TYPES.items()
        }
        if default_strategy not in self._strategies:
            raise ValueError(f"Unknown default strategy '{default_strategy}'")
        self._default = default_strategy

    def get(self, strategy_id: str) -> StrategyBase:
        return self._strategies[strategy_id]

    @property
    def strategies(self) -> dict[str, StrategyBase]:
        return dict(self._strategies)

    def route(self, candidate: TokenCandidate) -> Optional[StrategyBase]:
        """Strategy for the candidate, or None for untradeable assets."""
        if candidate.metrics is None:
            return self._strategies[self._default]

        asset_class = classify(candidate.metrics)
        log.info(
            "router.classified",
            asset=candidate.asset_id,
            asset_class=asset_class.value,
            multiplier=round(candidate.metrics.multiplier, 3),
            liquidity_usd=round(candidate.metrics.liquidity_usd, 2),
        )
        if asset_class == AssetClass.TRASH:
            return None
        return self._strategies[asset_class.value]
