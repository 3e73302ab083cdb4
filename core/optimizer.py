"""Policy-constrained allocation across the protocol categories.

Take the best score per category, split 10000 bps proportionally, clamp by
caps and the allow bitmap, then reconcile the rounding remainder one basis
point at a time.  The proof commits to the exact vector; the rounding steps
are part of the output format.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from core.errors import AllocationDefect, InfeasibleUnderCaps, NoAllowedCategory, ValidationError
from core.network_config import NUM_CATEGORIES, Category
from core.policy_engine import (
    TOTAL_BPS,
    PolicyEngine,
    PolicyViolation,
    allowed_categories,
    is_allowed,
    to_csv,
    validate_allow_bitmap,
    validate_apy,
    validate_caps,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryScore:
    category: Category
    apy: float


@dataclass(frozen=True)
class AllocationVector:
    bps: tuple[int, ...]

    def __getitem__(self, index: int) -> int:
        return self.bps[index]

    def __len__(self) -> int:
        return len(self.bps)

    def __iter__(self):
        return iter(self.bps)

    def to_csv(self) -> str:
        return to_csv(self.bps)


def best_scores(scores: Iterable[CategoryScore]) -> list[float]:
    """Max apy per category (0.0 where no score maps).  Validates every score."""
    best = [0.0] * NUM_CATEGORIES
    for score in scores:
        try:
            category = Category(score.category)
        except ValueError as exc:
            raise ValidationError(f"unknown category {score.category!r}") from exc
        apy = validate_apy(score.apy)
        best[category] = max(best[category], apy)
    return best


class AllocationOptimizer:
    """Pure function object: same inputs always give the same vector."""

    def optimize(
        self,
        scores: Sequence[CategoryScore],
        allow_bitmap: int,
        caps: Sequence[int],
    ) -> AllocationVector:
        allow_bitmap = validate_allow_bitmap(allow_bitmap)
        caps = validate_caps(caps)
        allowed = [is_allowed(allow_bitmap, i) for i in range(NUM_CATEGORIES)]

        weights = [w if allowed[i] else 0.0 for i, w in enumerate(best_scores(scores))]
        total_weight = sum(weights)

        if total_weight <= 0:
            candidates = allowed_categories(allow_bitmap)
            if not candidates:
                raise NoAllowedCategory("allow_bitmap has no allowed categories")
            raw = [0] * NUM_CATEGORIES
            raw[candidates[0]] = TOTAL_BPS
            logger.info("no positive score for any allowed category; seeding category %d", candidates[0])
        else:
            raw = [math.floor(w / total_weight * TOTAL_BPS) for w in weights]

        alloc = [min(raw[i], caps[i]) if allowed[i] else 0 for i in range(NUM_CATEGORIES)]

        excess = sum(alloc) - TOTAL_BPS
        while excess > 0:
            # max() returns the first maximal element → lowest index wins ties.
            largest = max(range(NUM_CATEGORIES), key=lambda i: alloc[i])
            alloc[largest] -= 1
            excess -= 1

        shortfall = TOTAL_BPS - sum(alloc)
        if shortfall > 0:
            # sorted() is stable → equal weights keep index order.
            order = sorted(range(NUM_CATEGORIES), key=lambda i: weights[i], reverse=True)
            while shortfall > 0:
                progressed = False
                for i in order:
                    if not allowed[i] or alloc[i] >= caps[i]:
                        continue
                    alloc[i] += 1
                    shortfall -= 1
                    progressed = True
                    if shortfall == 0:
                        break
                if not progressed:
                    break

        if sum(alloc) != TOTAL_BPS:
            raise InfeasibleUnderCaps(
                f"could not reach {TOTAL_BPS} bps under caps {to_csv(caps)} "
                f"(reached {sum(alloc)}); relax the caps"
            )

        try:
            PolicyEngine(allow_bitmap, caps).check_allocation(alloc)
        except PolicyViolation as exc:
            raise AllocationDefect(f"optimizer postcondition violated: {exc}") from exc

        logger.info("allocation %s (weights=%s)", to_csv(alloc), weights)
        return AllocationVector(bps=tuple(alloc))
