"""Clamping helpers for implausible numeric data.

Quotes for brand-new assets are noisy. A broken quote can claim a 10,000x move
or a zero price. These helpers keep such values out of the ledger and log every
clamp they apply.

Bounds (configurable through `[sanity]`):
  max_plausible_multiplier   price/entry above this is treated as corrupt (default 1000x)
  fallback_multiplier_cap    estimated exit multipliers are capped here (default 100x)
"""

from __future__ import annotations

import math

import structlog

from sniper.shell.contract import Position

log = structlog.get_logger()


def is_valid_price(price: float | None) -> bool:
    return price is not None and math.isfinite(price) and price > 0


def is_plausible_price(price: float | None, entry_price: float, max_multiplier: float) -> bool:
    """Positive, finite, and not absurdly far above the entry."""
    if not is_valid_price(price) or entry_price <= 0:
        return False
    return price / entry_price <= max_multiplier


def sanitize_exit_price(position: Position, exit_price: float | None, max_multiplier: float) -> float:
    """Pick a usable exit price: the given one, else peak, current, entry (first valid wins)."""
    if is_plausible_price(exit_price, position.entry_price, max_multiplier):
        return exit_price
    for label, candidate in (
        ("peak", position.peak_price),
        ("current", position.current_price),
        ("entry", position.entry_price),
    ):
        if is_plausible_price(candidate, position.entry_price, max_multiplier):
            log.warning(
                "sanity.exit_price_replaced",
                asset=position.asset_id,
                given=exit_price,
                used=label,
                price=candidate,
            )
            return candidate
    log.error("sanity.no_usable_price", asset=position.asset_id, given=exit_price)
    return position.entry_price


def clamp_multiplier(position: Position, multiplier: float, max_multiplier: float, cap: float) -> float:
    """Bound a computed exit multiplier.

    Above `max_multiplier` the figure is corrupt and falls back to the observed peak
    multiplier (itself capped). Otherwise it is capped at `cap`.
    """
    if not math.isfinite(multiplier) or multiplier < 0:
        log.error("sanity.multiplier_invalid", asset=position.asset_id, multiplier=multiplier)
        return 0.0
    if multiplier > max_multiplier:
        fallback = min(position.peak_multiplier, cap)
        log.error(
            "sanity.multiplier_implausible",
            asset=position.asset_id,
            multiplier=multiplier,
            fallback=fallback,
        )
        return fallback
    if multiplier > cap:
        log.warning("sanity.multiplier_capped", asset=position.asset_id, multiplier=multiplier, cap=cap)
        return cap
    return multiplier


def estimate_proceeds(
    position: Position,
    exit_price: float | None,
    exit_cost: float,
    max_multiplier: float,
    cap: float,
) -> float:
    """Proceeds from price alone, for when the adapter could not report a fill."""
    price = sanitize_exit_price(position, exit_price, max_multiplier)
    multiplier = clamp_multiplier(position, position.multiplier(price), max_multiplier, cap)
    return max(0.0, position.invested_amount * multiplier - exit_cost)


def validate_proceeds(position: Position, proceeds: float | None, max_multiplier: float) -> bool:
    """Reported proceeds are usable when finite, non-negative, and not an absurd multiple of the stake."""
    if proceeds is None or not math.isfinite(proceeds) or proceeds < 0:
        return False
    if position.invested_amount > 0 and proceeds / position.invested_amount > max_multiplier:
        log.error(
            "sanity.proceeds_implausible",
            asset=position.asset_id,
            proceeds=proceeds,
            invested=position.invested_amount,
        )
        return False
    return True
