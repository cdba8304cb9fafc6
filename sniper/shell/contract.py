"""IO Contract: rigid interface between the engine and its strategies/collaborators.

These types define EXACTLY what strategies receive and what they must return,
and what the engine expects back from quote, execution and readiness collaborators.
The engine enforces all constraints.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

# Longest price history any strategy reads
PRICE_HISTORY_SIZE = 5


# --- Enums ---

class PositionStatus(Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    ABANDONED = "abandoned"


class Action(Enum):
    HOLD = "hold"
    EXIT = "exit"


class Urgency(Enum):
    ORDERLY = "orderly"
    URGENT = "urgent"


class ExitReason:
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    TIMEOUT = "timeout"
    MOMENTUM_LOSS = "momentum_loss"
    STRUCTURE_BREAK = "structure_break"
    CRITICAL_DROP = "critical_drop"
    LATE_EXIT = "late_exit"
    EMERGENCY = "emergency_exit"
    FAILSAFE = "failsafe_no_price"
    ERROR = "error"
    SHUTDOWN = "shutdown"


# --- Input Types (feed -> engine -> strategy) ---

@dataclass(frozen=True)
class TokenMetrics:
    multiplier: float               # current price vs. reference (launch) price
    liquidity_usd: float = 0.0
    market_cap_usd: float = 0.0
    volume_usd: float = 0.0
    concentrated_liquidity: bool = False


@dataclass(frozen=True)
class TokenCandidate:
    asset_id: str
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metrics: Optional[TokenMetrics] = None
    source: str = ""


@dataclass(frozen=True)
class StrategyContext:
    asset_id: str
    now: float                          # monotonic seconds
    current_price: Optional[float] = None  # None when the quote service had nothing fresh
    metrics: Optional[TokenMetrics] = None


@dataclass(frozen=True)
class PriceSample:
    price: float
    at: float                           # monotonic seconds


# --- Per-variant scratch state ---

@dataclass
class ImpulseState:
    """Velocity/acceleration tracking over the recent price samples."""
    velocity: float = 0.0
    acceleration: float = 0.0
    consecutive_drops: int = 0
    last_sample_at: Optional[float] = None


@dataclass
class StructureState:
    """Swing structure: running high, the low since that high, and confirmed swing lows."""
    last_high: float
    pending_low: float
    swing_lows: list[float] = field(default_factory=list)


@dataclass
class ManipulatorState:
    impulse: ImpulseState = field(default_factory=ImpulseState)


@dataclass
class GemState:
    impulse: ImpulseState = field(default_factory=ImpulseState)
    structure: Optional[StructureState] = None


StrategyState = Union[ManipulatorState, GemState, None]


# --- Position ---

@dataclass
class Position:
    asset_id: str
    strategy_id: str
    entry_price: float
    position_size: float            # capital that left principal at entry
    invested_amount: float          # capital actually deployed after entry costs
    reserved_amount: float          # capital held by the ledger for the whole lifecycle
    entry_time: float               # monotonic seconds
    token_amount: Optional[float] = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    peak_price: float = 0.0
    current_price: float = 0.0
    last_price_update: float = 0.0
    status: PositionStatus = PositionStatus.ACTIVE
    stop_loss_target: Optional[float] = None
    take_profit_target: Optional[float] = None
    exit_deadline: Optional[float] = None
    trailing_stop_pct: Optional[float] = None
    price_history: deque = field(default_factory=lambda: deque(maxlen=PRICE_HISTORY_SIZE))
    state: StrategyState = None
    metrics: Optional[TokenMetrics] = None
    buy_signature: Optional[str] = None
    error_count: int = 0

    def __post_init__(self) -> None:
        if self.peak_price <= 0:
            self.peak_price = self.entry_price
        if self.current_price <= 0:
            self.current_price = self.entry_price
        if self.last_price_update <= 0:
            self.last_price_update = self.entry_time

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    def multiplier(self, price: float | None = None) -> float:
        price = self.current_price if price is None else price
        if self.entry_price <= 0:
            return 0.0
        return price / self.entry_price

    @property
    def peak_multiplier(self) -> float:
        return self.multiplier(self.peak_price)

    def drawdown_from_peak(self, price: float) -> float:
        if self.peak_price <= 0:
            return 0.0
        return (self.peak_price - price) / self.peak_price

    def held_seconds(self, now: float) -> float:
        return now - self.entry_time

    def record_price(self, price: float, now: float) -> None:
        """Store a fresh observed price; the peak only ever moves up."""
        self.current_price = price
        self.last_price_update = now
        if price > self.peak_price:
            self.peak_price = price
        self.price_history.append(PriceSample(price, now))

    def begin_closing(self) -> bool:
        """Move active -> closing. Returns False if a close was already triggered."""
        if self.status != PositionStatus.ACTIVE:
            return False
        self.status = PositionStatus.CLOSING
        return True


# --- Output Types (strategy -> engine) ---

@dataclass(frozen=True)
class EntryDecision:
    enter: bool
    reason: str = ""


@dataclass(frozen=True)
class EntryParams:
    position_size: float
    stop_loss_pct: Optional[float] = None          # fraction, 0.10 = 10% below entry
    take_profit_multiplier: Optional[float] = None
    timeout_seconds: Optional[float] = None
    trailing_stop_pct: Optional[float] = None      # fraction below peak


@dataclass(frozen=True)
class MonitorDecision:
    action: Action
    reason: str = ""
    urgent: bool = False

    @property
    def should_exit(self) -> bool:
        return self.action == Action.EXIT

    @classmethod
    def hold(cls, reason: str = "") -> MonitorDecision:
        return cls(Action.HOLD, reason)

    @classmethod
    def exit(cls, reason: str, urgent: bool = False) -> MonitorDecision:
        return cls(Action.EXIT, reason, urgent)


@dataclass(frozen=True)
class ExitPlan:
    urgency: Urgency
    slippage_tolerance: float
    priority_fee_multiplier: float = 1.0
    reference_price: Optional[float] = None     # last known mark, used when no live quote is available


# --- Collaborator results ---

@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    signature: Optional[str] = None
    filled_amount: Optional[float] = None      # asset units received on buy
    execution_price: Optional[float] = None
    proceeds: Optional[float] = None           # settlement units received on sell
    error: Optional[str] = None
    attempts: int = 1
    abandoned: bool = False                    # retry budget exhausted on a not-ready error


@dataclass(frozen=True)
class FilterVerdict:
    passed: bool
    reason: str = ""


# --- Strategy Interface ---

class StrategyBase:
    """Base class that defines the contract for strategy variants.

    Variants MUST implement: should_enter(), entry_params(), evaluate(), exit_plan()
    Variants MAY override: initial_state(), target_multiplier, price_silence_seconds

    monitor_tick() is the engine entry point. It handles missing prices with the
    shared failsafe (hold while quiet, exit once the silence window is exceeded)
    and hands fresh prices to evaluate().
    """

    strategy_id = "base"
    price_silence_seconds = 5.0
    target_multiplier: Optional[float] = None   # used to size the exit reservation

    def __init__(self, **params) -> None:
        for key, value in params.items():
            attr = getattr(type(self), key, None)
            if (key.startswith("_") or key == "strategy_id" or attr is None
                    or callable(attr) or isinstance(attr, property)):
                raise ValueError(f"Unknown parameter '{key}' for strategy '{self.strategy_id}'")
            setattr(self, key, value)

    def should_enter(self, context: StrategyContext) -> EntryDecision:
        """Pure predicate over observed metrics."""
        raise NotImplementedError

    def entry_params(self, context: StrategyContext, available_balance: float) -> EntryParams:
        """Size the position and choose its exit parameters."""
        raise NotImplementedError

    def initial_state(self, position: Position) -> StrategyState:
        """Fresh per-position scratch state. Called once when the position opens."""
        return None

    def monitor_tick(self, position: Position, context: StrategyContext) -> MonitorDecision:
        price = context.current_price
        if price is None or price <= 0:
            silence = context.now - position.last_price_update
            if silence > self.price_silence_seconds:
                return MonitorDecision.exit(ExitReason.FAILSAFE, urgent=True)
            return MonitorDecision.hold("waiting for price")
        return self.evaluate(position, context, price)

    def evaluate(self, position: Position, context: StrategyContext, price: float) -> MonitorDecision:
        """Hold/exit decision for a fresh, positive price."""
        raise NotImplementedError

    def exit_plan(self, position: Position, context: StrategyContext, reason: str) -> ExitPlan:
        """Map an exit reason to urgency and slippage tolerance."""
        raise NotImplementedError
