"""Tests for the capital ledger.

Tests reserve/release accounting, principal deductions, external balance sync,
reconciliation, and the locked <= total invariant under clamping and random operation
sequences.
"""

import random
import threading

import pytest

from sniper.shell.ledger import Ledger


def test_reserve_and_release_cycle():
    ledger = Ledger(1.0)
    assert ledger.reserve(0.4) is True
    assert ledger.free_balance == pytest.approx(0.6)

    # Not enough free capital: no side effects
    assert ledger.reserve(0.7) is False
    assert ledger.locked_balance == pytest.approx(0.4)

    ledger.release(0.4, 0.5)
    assert ledger.total_balance == pytest.approx(1.5)
    assert ledger.locked_balance == pytest.approx(0.0)
    assert ledger.peak_balance == pytest.approx(1.5)


def test_reserve_rejects_non_positive():
    ledger = Ledger(1.0)
    assert ledger.reserve(0) is False
    assert ledger.reserve(-0.1) is False
    assert ledger.locked_balance == 0.0


def test_reserve_exact_free_balance():
    ledger = Ledger(0.5)
    assert ledger.reserve(0.5) is True
    assert ledger.free_balance == 0.0
    assert ledger.reserve(0.0001) is False


def test_release_more_than_locked_clamps_to_zero():
    ledger = Ledger(1.0)
    ledger.reserve(0.1)
    ledger.release(0.3, 0.0)
    assert ledger.locked_balance == 0.0
    assert ledger.total_balance == pytest.approx(1.0)


def test_release_negative_inputs_are_clamped():
    ledger = Ledger(1.0)
    ledger.reserve(0.2)
    ledger.release(-0.2, -5.0)
    assert ledger.locked_balance == pytest.approx(0.2)
    assert ledger.total_balance == pytest.approx(1.0)


def test_loss_release_keeps_peak():
    ledger = Ledger(1.0)
    ledger.deduct_from_principal(0.1)
    ledger.reserve(0.12)
    ledger.release(0.12, 0.05)
    assert ledger.total_balance == pytest.approx(0.95)
    assert ledger.peak_balance == pytest.approx(1.0)
    assert ledger.locked_balance == 0.0


def test_deduct_from_principal():
    ledger = Ledger(1.0)
    ledger.deduct_from_principal(0.25)
    assert ledger.total_balance == pytest.approx(0.75)

    # Non-positive amounts are ignored
    ledger.deduct_from_principal(0)
    ledger.deduct_from_principal(-1)
    assert ledger.total_balance == pytest.approx(0.75)


def test_deduct_beyond_total_clamps_total_and_locked():
    ledger = Ledger(0.5)
    ledger.reserve(0.4)
    ledger.deduct_from_principal(0.8)
    assert ledger.total_balance == 0.0
    assert ledger.locked_balance == 0.0


def test_deduct_then_reserve_then_exact_inverse_restores_state():
    """The buy-failure rollback: deduct size, reserve total, release(total, size)."""
    ledger = Ledger(1.0)
    ledger.deduct_from_principal(0.05)
    assert ledger.reserve(0.056)
    ledger.release(0.056, 0.05)
    assert ledger.total_balance == pytest.approx(1.0)
    assert ledger.locked_balance == pytest.approx(0.0)


def test_sync_to_external_balance():
    ledger = Ledger(1.0)
    ledger.reserve(0.3)
    diff = ledger.sync_to_external_balance(1.2)
    assert diff == pytest.approx(0.2)
    assert ledger.total_balance == pytest.approx(1.2)
    assert ledger.peak_balance == pytest.approx(1.2)
    assert ledger.locked_balance == pytest.approx(0.3)


def test_sync_below_locked_clamps_locked():
    ledger = Ledger(1.0)
    ledger.reserve(0.8)
    diff = ledger.sync_to_external_balance(0.5)
    assert diff == pytest.approx(-0.5)
    assert ledger.locked_balance == pytest.approx(0.5)
    assert ledger.free_balance == 0.0


def test_sync_ignores_negative_balance():
    ledger = Ledger(1.0)
    assert ledger.sync_to_external_balance(-1.0) == 0.0
    assert ledger.total_balance == pytest.approx(1.0)


def test_reconcile_within_tolerance_is_noop():
    ledger = Ledger(1.0)
    ledger.reserve(0.2)
    assert ledger.reconcile(0.20005, tolerance=0.0001) is None
    assert ledger.locked_balance == pytest.approx(0.2)


def test_reconcile_corrects_drift():
    ledger = Ledger(1.0)
    ledger.reserve(0.3)
    correction = ledger.reconcile(0.1)
    assert correction == pytest.approx(-0.2)
    assert ledger.locked_balance == pytest.approx(0.1)


def test_reconcile_target_clamped_to_total():
    ledger = Ledger(0.5)
    correction = ledger.reconcile(2.0)
    assert correction == pytest.approx(0.5)
    assert ledger.locked_balance == pytest.approx(0.5)
    assert ledger.free_balance == 0.0


def test_negative_initial_balance_rejected():
    with pytest.raises(ValueError):
        Ledger(-1.0)


def test_snapshot_is_consistent():
    ledger = Ledger(2.0)
    ledger.reserve(0.5)
    snap = ledger.snapshot()
    assert snap.total_balance == pytest.approx(2.0)
    assert snap.locked_balance == pytest.approx(0.5)
    assert snap.free_balance == pytest.approx(1.5)


def test_concurrent_reservations_never_overcommit():
    ledger = Ledger(1.0)
    granted = []

    def worker():
        for _ in range(100):
            if ledger.reserve(0.01):
                granted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(granted) <= 100
    assert ledger.locked_balance <= ledger.total_balance + 1e-9
    assert ledger.free_balance >= 0.0


def test_random_operation_sequence_keeps_invariants():
    rng = random.Random(42)
    ledger = Ledger(1.0)
    peak = ledger.peak_balance

    for step in range(2000):
        before = ledger.snapshot()
        op = rng.choice(("reserve", "release", "deduct", "sync", "reconcile"))
        if op == "reserve":
            amount = rng.uniform(-0.05, 0.5)
            granted = ledger.reserve(amount)
            if granted:
                assert ledger.locked_balance == pytest.approx(before.locked_balance + amount, abs=1e-12)
            else:
                assert ledger.snapshot() == before
        elif op == "release":
            # mostly well-formed releases, sometimes over-release or negative amounts
            reserved = rng.uniform(0, before.locked_balance) if rng.random() < 0.8 else rng.uniform(-0.1, 1.0)
            proceeds = rng.uniform(0, 0.3) if rng.random() < 0.9 else rng.uniform(-0.1, 0.0)
            ledger.release(reserved, proceeds)
            if 0 <= reserved <= before.locked_balance and proceeds >= 0:
                assert ledger.locked_balance == pytest.approx(before.locked_balance - reserved, abs=1e-12)
                assert ledger.total_balance == pytest.approx(before.total_balance + proceeds, abs=1e-12)
        elif op == "deduct":
            ledger.deduct_from_principal(rng.uniform(-0.05, 0.3))
        elif op == "sync":
            ledger.sync_to_external_balance(rng.uniform(-0.1, 2.0))
        else:
            ledger.reconcile(rng.uniform(-0.1, 1.5))

        total, locked = ledger.total_balance, ledger.locked_balance
        assert locked >= 0.0, f"step {step} ({op}): locked {locked} < 0"
        assert locked <= total + 1e-9, f"step {step} ({op}): locked {locked} > total {total}"
        assert ledger.peak_balance >= peak, f"step {step} ({op}): peak fell"
        assert ledger.peak_balance >= total - 1e-12
        peak = ledger.peak_balance
