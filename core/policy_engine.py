"""Policy gate.  Every allocation and every encoded call passes through here.

A policy is the pair committed on-chain: an allow bitmap (bit i permits
category i) and a cap vector in basis points.
"""

from __future__ import annotations

import math
from typing import Sequence

from core.errors import ValidationError
from core.network_config import NUM_CATEGORIES

TOTAL_BPS = 10_000
MAX_CAP_BPS = 10_000
_MAX_BITMAP = (1 << NUM_CATEGORIES) - 1


class PolicyViolation(ValidationError):
    """Raised when an allocation or call is blocked by policy."""


# ── parsing / validation ─────────────────────────────────────────────────────


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_allow_bitmap(allow_bitmap: object) -> int:
    if not _is_int(allow_bitmap):
        raise ValidationError(f"allow_bitmap must be an integer, got {allow_bitmap!r}")
    if allow_bitmap < 0 or allow_bitmap > _MAX_BITMAP:  # type: ignore[operator]
        raise ValidationError(
            f"allow_bitmap {allow_bitmap} out of range [0, {_MAX_BITMAP}]"
        )
    return allow_bitmap  # type: ignore[return-value]


def validate_caps(caps: Sequence[object]) -> tuple[int, ...]:
    if len(caps) != NUM_CATEGORIES:
        raise ValidationError(f"caps must have {NUM_CATEGORIES} entries, got {len(caps)}")
    for i, cap in enumerate(caps):
        if not _is_int(cap) or not 0 <= cap <= MAX_CAP_BPS:  # type: ignore[operator]
            raise ValidationError(f"cap[{i}]={cap!r} must be an integer in [0, {MAX_CAP_BPS}]")
    return tuple(caps)  # type: ignore[arg-type]


def parse_caps_csv(caps_csv: str) -> tuple[int, ...]:
    """Parse ``"10000,0,0,0,0"`` into a validated cap vector."""
    parts = [p.strip() for p in caps_csv.split(",")]
    if len(parts) != NUM_CATEGORIES:
        raise ValidationError(f"caps CSV must have {NUM_CATEGORIES} entries: {caps_csv!r}")
    try:
        caps = [int(p) for p in parts]
    except ValueError as exc:
        raise ValidationError(f"caps CSV must contain integers: {caps_csv!r}") from exc
    return validate_caps(caps)


def validate_apy(apy: object) -> float:
    if isinstance(apy, bool) or not isinstance(apy, (int, float)):
        raise ValidationError(f"apy must be a number, got {apy!r}")
    if not math.isfinite(apy) or apy < 0:
        raise ValidationError(f"apy must be finite and non-negative, got {apy!r}")
    return float(apy)


def is_allowed(allow_bitmap: int, category: int) -> bool:
    return (allow_bitmap >> category) & 1 == 1


def allowed_categories(allow_bitmap: int) -> list[int]:
    return [i for i in range(NUM_CATEGORIES) if is_allowed(allow_bitmap, i)]


def to_csv(values: Sequence[int]) -> str:
    return ",".join(str(v) for v in values)


# ── engine ───────────────────────────────────────────────────────────────────


class PolicyEngine:
    def __init__(self, allow_bitmap: int, caps: Sequence[int]):
        self.allow_bitmap = validate_allow_bitmap(allow_bitmap)
        self.caps = validate_caps(caps)

    def check_category(self, category: int) -> None:
        """Raise PolicyViolation if calls into *category* are not permitted."""
        if not 0 <= category < NUM_CATEGORIES:
            raise PolicyViolation(f"category {category} does not exist")
        if not is_allowed(self.allow_bitmap, category):
            raise PolicyViolation(
                f"category {category} is not allowed (bit not set in allow_bitmap "
                f"{self.allow_bitmap:#07b})"
            )

    def check_allocation(self, allocation: Sequence[int]) -> None:
        """Raise PolicyViolation unless *allocation* is a valid vector for this policy."""
        if len(allocation) != NUM_CATEGORIES:
            raise PolicyViolation(
                f"allocation must have {NUM_CATEGORIES} entries, got {len(allocation)}"
            )
        for i, bps in enumerate(allocation):
            if not _is_int(bps) or bps < 0:
                raise PolicyViolation(f"allocation[{i}]={bps!r} must be a non-negative integer")
            if bps > 0 and not is_allowed(self.allow_bitmap, i):
                raise PolicyViolation(f"allocation[{i}]={bps} on a disallowed category")
            if bps > self.caps[i]:
                raise PolicyViolation(f"allocation[{i}]={bps} exceeds cap {self.caps[i]}")
        total = sum(allocation)
        if total != TOTAL_BPS:
            raise PolicyViolation(f"allocation sums to {total}, expected {TOTAL_BPS}")
