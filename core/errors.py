"""Error taxonomy shared by every pipeline stage.

Each error carries a stable ``kind`` (reported in the final outcome) and a
``retryable`` flag.  Retryable means "a caller may start a *new* cycle"; no
stage ever retries itself.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every failure a pipeline stage can raise."""

    kind = "PipelineError"
    retryable = False


# ── caller mistakes / infeasible policy ──────────────────────────────────────


class ValidationError(PipelineError):
    """Malformed caps, bitmap, scores or allocation."""

    kind = "ValidationError"


class NoAllowedCategory(PipelineError):
    """The allow bitmap permits no category at all."""

    kind = "NoAllowedCategory"


class InfeasibleUnderCaps(PipelineError):
    """The caps of the allowed categories cannot add up to 10000 bps."""

    kind = "InfeasibleUnderCaps"


# ── defects ──────────────────────────────────────────────────────────────────


class AllocationDefect(PipelineError):
    """The optimizer produced a vector that breaks its own postconditions."""

    kind = "AllocationDefect"


class EncodingError(PipelineError):
    """A field does not fit its ABI representation."""

    kind = "EncodingError"


# ── backend output ───────────────────────────────────────────────────────────


class MalformedProof(PipelineError):
    """The proving backend returned an artifact of the wrong shape."""

    kind = "MalformedProof"
    retryable = True


# ── transient external failures ──────────────────────────────────────────────


class StateReadFailure(PipelineError):
    kind = "StateReadFailure"
    retryable = True


class ScoreSourceFailure(PipelineError):
    kind = "ScoreSourceFailure"
    retryable = True


class ProofBackendFailure(PipelineError):
    kind = "ProofBackendFailure"
    retryable = True


class SubmissionFailure(PipelineError):
    kind = "SubmissionFailure"
    retryable = True

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class SubmissionPending(PipelineError):
    """A transaction broadcast by an earlier cycle has no receipt yet."""

    kind = "SubmissionPending"
    retryable = True

    def __init__(self, account: str, tx_hash: str) -> None:
        super().__init__(
            f"transaction {tx_hash} for {account} is still pending; "
            "refusing to start a cycle on the same counter"
        )
        self.account = account
        self.tx_hash = tx_hash


class CycleTimeout(PipelineError):
    kind = "CycleTimeout"
    retryable = True


class CycleCancelled(Exception):
    """Raised by blocking tools when the cycle's cancel event is set."""
