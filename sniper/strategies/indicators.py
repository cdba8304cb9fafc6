"""Price-path indicators: pure computations on the short per-position sample buffer."""

from __future__ import annotations

from typing import Iterable, Optional

import numpy as np

from sniper.shell.contract import ImpulseState, PriceSample, StructureState

# Most recent swing lows kept per position
MAX_SWING_LOWS = 5


def velocities(samples: Iterable[PriceSample]) -> np.ndarray:
    """Relative price change per second between consecutive samples.

    Samples with a non-positive time delta or price are skipped.
    """
    data = [(s.price, s.at) for s in samples if s.price > 0]
    if len(data) < 2:
        return np.empty(0)
    arr = np.asarray(data, dtype=float)
    prices, times = arr[:, 0], arr[:, 1]
    dt = np.diff(times)
    rel = np.diff(prices) / prices[:-1]
    mask = dt > 0
    return rel[mask] / dt[mask]


def impulse(samples: Iterable[PriceSample]) -> Optional[tuple[float, float]]:
    """Latest (velocity, acceleration), or None with fewer than two samples."""
    v = velocities(samples)
    if v.size == 0:
        return None
    acceleration = float(v[-1] - v[-2]) if v.size >= 2 else 0.0
    return float(v[-1]), acceleration


def update_impulse(state: ImpulseState, samples: list[PriceSample]) -> ImpulseState:
    """Fold the newest sample into the drop counter. Re-reading the same sample is a no-op."""
    if not samples:
        return state
    newest = samples[-1].at
    if state.last_sample_at is not None and newest <= state.last_sample_at:
        return state
    result = impulse(samples)
    state.last_sample_at = newest
    if result is None:
        return state
    state.velocity, state.acceleration = result
    if state.velocity < 0:
        state.consecutive_drops += 1
    else:
        state.consecutive_drops = 0
    return state


def update_structure(state: Optional[StructureState], price: float, high: float,
                     min_pullback: float) -> StructureState:
    """Track swing highs and lows.

    A low is confirmed as a swing low once price makes a new high after a pullback
    of at least `min_pullback` (fraction of the high).
    """
    if state is None:
        return StructureState(last_high=max(high, price), pending_low=price)

    if price > state.last_high:
        pullback = (state.last_high - state.pending_low) / state.last_high
        if pullback >= min_pullback:
            state.swing_lows.append(state.pending_low)
            del state.swing_lows[:-MAX_SWING_LOWS]
        state.last_high = price
        state.pending_low = price
    elif price < state.pending_low:
        state.pending_low = price
    return state


def structure_broken(state: Optional[StructureState], price: float) -> bool:
    """True when price undercuts the most recent confirmed swing low."""
    if state is None or not state.swing_lows:
        return False
    return price < state.swing_lows[-1]
