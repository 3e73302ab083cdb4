"""Structured result of one pipeline cycle.  Never persisted by the core."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Stage(str, Enum):
    START = "start"
    READ_STATE = "read_state"
    SCORE = "score"
    OPTIMIZE = "optimize"
    ENCODE = "encode"
    PROVE = "prove"
    GATE = "gate"
    ASSEMBLE = "assemble"
    SUBMIT = "submit"


@dataclass(frozen=True)
class Submitted:
    tx_hash: str
    confirmed: bool
    block_number: int | None = None

    status = "submitted"


@dataclass(frozen=True)
class Prepared:
    """Dry run: the execution request was assembled but not broadcast."""

    request: Any

    status = "prepared"


@dataclass(frozen=True)
class Aborted:
    stage: Stage
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    status = "aborted"


@dataclass(frozen=True)
class Failed:
    stage: Stage
    error_kind: str
    message: str
    retryable: bool = False

    status = "failed"


PipelineOutcome = Union[Submitted, Prepared, Aborted, Failed]


def describe(outcome: PipelineOutcome) -> str:
    """One-line summary suitable for logs."""
    if isinstance(outcome, Submitted):
        state = "confirmed" if outcome.confirmed else "unconfirmed"
        return f"submitted tx={outcome.tx_hash} ({state}, block={outcome.block_number})"
    if isinstance(outcome, Prepared):
        return f"prepared (dry run) to={outcome.request.to} calldata={len(outcome.request.data)} bytes"
    if isinstance(outcome, Aborted):
        return f"aborted at {outcome.stage.value}: {outcome.reason}"
    retry = "retryable" if outcome.retryable else "not retryable"
    return f"failed at {outcome.stage.value} [{outcome.error_kind}, {retry}]: {outcome.message}"
