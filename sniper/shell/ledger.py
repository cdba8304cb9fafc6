"""Capital ledger: the single source of truth for total, locked and peak capital.

Every mutation takes the same lock, so reservations and releases coming from
concurrent monitor tasks (or scheduler threads) are applied one at a time.
Invariants after every call: 0 <= locked <= total, peak >= total.
Bookkeeping anomalies are clamped and logged, never raised.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class LedgerSnapshot:
    total_balance: float
    locked_balance: float
    peak_balance: float

    @property
    def free_balance(self) -> float:
        return self.total_balance - self.locked_balance


class Ledger:
    """Reserve/release accounting for the whole engine."""

    def __init__(self, initial_balance: float) -> None:
        if initial_balance < 0:
            raise ValueError(f"initial_balance must be >= 0, got {initial_balance}")
        self._total = float(initial_balance)
        self._locked = 0.0
        self._peak = self._total
        self._lock = threading.RLock()

    @property
    def total_balance(self) -> float:
        with self._lock:
            return self._total

    @property
    def locked_balance(self) -> float:
        with self._lock:
            return self._locked

    @property
    def peak_balance(self) -> float:
        with self._lock:
            return self._peak

    @property
    def free_balance(self) -> float:
        with self._lock:
            return max(0.0, self._total - self._locked)

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(self._total, self._locked, self._peak)

    def reserve(self, amount: float) -> bool:
        """Lock `amount` of free capital. Fails without side effects if it isn't there."""
        with self._lock:
            if amount <= 0:
                log.warning("ledger.reserve_invalid", amount=amount)
                return False
            free = self._total - self._locked
            if free < amount:
                log.info("ledger.reserve_rejected", amount=amount, free=free)
                return False
            self._locked += amount
            log.debug("ledger.reserved", amount=amount, locked=self._locked, total=self._total)
            return True

    def release(self, reserved_amount: float, proceeds: float) -> None:
        """Unlock a reservation and credit what came back from the exit."""
        with self._lock:
            if reserved_amount < 0:
                log.error("ledger.release_negative_reservation", reserved=reserved_amount)
                reserved_amount = 0.0
            if proceeds < 0:
                log.error("ledger.release_negative_proceeds", proceeds=proceeds)
                proceeds = 0.0

            if reserved_amount > self._locked:
                log.error(
                    "ledger.release_exceeds_locked",
                    reserved=reserved_amount,
                    locked=self._locked,
                )
                self._locked = 0.0
            else:
                self._locked -= reserved_amount

            self._total += proceeds
            if self._total > self._peak:
                self._peak = self._total
            log.debug(
                "ledger.released",
                reserved=reserved_amount,
                proceeds=proceeds,
                locked=self._locked,
                total=self._total,
            )

    def deduct_from_principal(self, amount: float) -> None:
        """Debit principal directly, e.g. the entry cost before a reservation."""
        with self._lock:
            if amount <= 0:
                return
            if amount > self._total:
                log.error("ledger.deduct_exceeds_total", amount=amount, total=self._total)
            self._total = max(0.0, self._total - amount)
            if self._locked > self._total:
                log.error("ledger.locked_clamped", locked=self._locked, total=self._total)
                self._locked = self._total

    def sync_to_external_balance(self, real_balance: float) -> float:
        """Adopt an authoritative external balance. Returns the applied difference."""
        with self._lock:
            if real_balance < 0:
                log.error("ledger.sync_negative_balance", real=real_balance)
                return 0.0
            diff = real_balance - self._total
            self._total = real_balance
            if self._total > self._peak:
                self._peak = self._total
            if self._locked > self._total:
                log.error("ledger.locked_clamped", locked=self._locked, total=self._total)
                self._locked = self._total
            log.info("ledger.synced", total=self._total, diff=diff)
            return diff

    def reconcile(self, expected_locked: float, tolerance: float = 0.0001) -> float | None:
        """Repair locked balance to the sum of live reservations.

        Returns the applied correction (new - old), or None if within tolerance.
        """
        with self._lock:
            target = min(max(0.0, expected_locked), self._total)
            drift = target - self._locked
            if abs(drift) <= tolerance and self._locked <= self._total:
                return None
            log.error(
                "ledger.desync_corrected",
                locked=self._locked,
                expected=expected_locked,
                corrected_to=target,
                total=self._total,
            )
            self._locked = target
            return drift
