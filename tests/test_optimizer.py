"""Tests for core/optimizer.py — determinism, invariants and the rounding rules."""

from __future__ import annotations

import random
from unittest.mock import patch

import pytest

from core.errors import AllocationDefect, InfeasibleUnderCaps, NoAllowedCategory, ValidationError
from core.network_config import Category
from core.optimizer import AllocationOptimizer, AllocationVector, CategoryScore, best_scores
from core.policy_engine import PolicyViolation, is_allowed

OPEN_CAPS = (10000, 10000, 10000, 10000, 10000)


@pytest.fixture
def optimizer() -> AllocationOptimizer:
    return AllocationOptimizer()


def _scores(**apys: float) -> list[CategoryScore]:
    return [CategoryScore(Category[name.upper()], apy) for name, apy in apys.items()]


def _assert_invariants(alloc: AllocationVector, allow_bitmap: int, caps) -> None:
    assert len(alloc) == 5
    assert sum(alloc) == 10000
    for i, bps in enumerate(alloc):
        assert isinstance(bps, int)
        assert 0 <= bps <= caps[i]
        if not is_allowed(allow_bitmap, i):
            assert bps == 0


# ── best_scores ───────────────────────────────────────────────────────────────


class TestBestScores:
    def test_keeps_max_per_category(self) -> None:
        scores = [
            CategoryScore(Category.ONDO, 1.0),
            CategoryScore(Category.ONDO, 3.0),
            CategoryScore(Category.AGNI, 2.0),
        ]
        assert best_scores(scores) == [3.0, 2.0, 0.0, 0.0, 0.0]

    def test_negative_apy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            best_scores([CategoryScore(Category.ONDO, -1.0)])

    def test_nan_apy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            best_scores([CategoryScore(Category.ONDO, float("nan"))])

    def test_unknown_category_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unknown category"):
            best_scores([CategoryScore(7, 1.0)])  # type: ignore[arg-type]


# ── optimize ──────────────────────────────────────────────────────────────────


class TestOptimize:
    def test_single_allowed_category_takes_everything(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize(_scores(stargate=4.2, ondo=9.0), 4, (0, 0, 10000, 0, 0))
        assert alloc.bps == (0, 0, 10000, 0, 0)

    def test_proportional_split(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize(_scores(ondo=3.0, agni=1.0), 0b11111, OPEN_CAPS)
        assert alloc.bps == (7500, 2500, 0, 0, 0)

    def test_remainder_goes_to_lowest_index_on_equal_weights(
        self, optimizer: AllocationOptimizer
    ) -> None:
        alloc = optimizer.optimize(_scores(ondo=1.0, agni=1.0, stargate=1.0), 0b11111, OPEN_CAPS)
        assert alloc.bps == (3334, 3333, 3333, 0, 0)

    def test_remainder_goes_to_highest_weight(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize(_scores(ondo=1.0, agni=2.0), 0b00011, OPEN_CAPS)
        assert alloc.bps == (3333, 6667, 0, 0, 0)

    def test_capped_excess_redistributed(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize(
            _scores(ondo=8.0, agni=1.0, stargate=1.0), 0b00111, (5000, 10000, 10000, 0, 0)
        )
        assert alloc.bps == (5000, 2500, 2500, 0, 0)

    def test_disallowed_scores_are_ignored(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize(_scores(agni=50.0), 1, (10000, 0, 0, 0, 0))
        assert alloc.bps == (10000, 0, 0, 0, 0)

    def test_zero_scores_seed_first_allowed_then_fill(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize([], 0b00110, (0, 6000, 10000, 0, 0))
        assert alloc.bps == (0, 6000, 4000, 0, 0)

    def test_empty_bitmap_raises(self, optimizer: AllocationOptimizer) -> None:
        with pytest.raises(NoAllowedCategory):
            optimizer.optimize(_scores(ondo=5.0), 0, OPEN_CAPS)

    def test_caps_too_tight_raise(self, optimizer: AllocationOptimizer) -> None:
        with pytest.raises(InfeasibleUnderCaps):
            optimizer.optimize(_scores(ondo=5.0, agni=5.0), 3, (4000, 4000, 0, 0, 0))

    def test_idempotent(self, optimizer: AllocationOptimizer) -> None:
        scores = _scores(ondo=3.3, agni=7.1, init=0.4)
        first = optimizer.optimize(scores, 0b10011, (6000, 6000, 0, 0, 2000))
        second = optimizer.optimize(scores, 0b10011, (6000, 6000, 0, 0, 2000))
        assert first == second

    def test_postcondition_failure_is_a_defect(self, optimizer: AllocationOptimizer) -> None:
        with patch(
            "core.optimizer.PolicyEngine.check_allocation",
            side_effect=PolicyViolation("broken"),
        ):
            with pytest.raises(AllocationDefect):
                optimizer.optimize(_scores(ondo=1.0), 1, OPEN_CAPS)

    def test_to_csv(self, optimizer: AllocationOptimizer) -> None:
        alloc = optimizer.optimize(_scores(ondo=1.0), 1, OPEN_CAPS)
        assert alloc.to_csv() == "10000,0,0,0,0"

    def test_invariants_hold_for_random_feasible_policies(
        self, optimizer: AllocationOptimizer
    ) -> None:
        rng = random.Random(1234)
        for _ in range(200):
            allow_bitmap = rng.randint(1, 31)
            caps = [rng.randint(0, 10000) for _ in range(5)]
            allowed = [i for i in range(5) if is_allowed(allow_bitmap, i)]
            if sum(caps[i] for i in allowed) < 10000:
                caps[allowed[0]] = 10000
            scores = [
                CategoryScore(Category(rng.randint(0, 4)), rng.uniform(0.0, 40.0))
                for _ in range(rng.randint(0, 8))
            ]
            alloc = optimizer.optimize(scores, allow_bitmap, caps)
            _assert_invariants(alloc, allow_bitmap, caps)


# ── input validation ──────────────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.parametrize("bitmap", [32, -1, True, 1.0])
    def test_bad_bitmap(self, optimizer: AllocationOptimizer, bitmap) -> None:
        with pytest.raises(ValidationError):
            optimizer.optimize(_scores(ondo=1.0), bitmap, OPEN_CAPS)

    def test_wrong_cap_length(self, optimizer: AllocationOptimizer) -> None:
        with pytest.raises(ValidationError, match="5 entries"):
            optimizer.optimize(_scores(ondo=1.0), 1, (10000, 0, 0, 0))

    def test_cap_above_total(self, optimizer: AllocationOptimizer) -> None:
        with pytest.raises(ValidationError):
            optimizer.optimize(_scores(ondo=1.0), 1, (10001, 0, 0, 0, 0))

    def test_negative_cap(self, optimizer: AllocationOptimizer) -> None:
        with pytest.raises(ValidationError):
            optimizer.optimize(_scores(ondo=1.0), 1, (10000, -1, 0, 0, 0))
