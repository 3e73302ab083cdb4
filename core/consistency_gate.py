"""Client-side check that a proof was generated against the live policy.

The on-chain module reports the commitment as bytes32 while the prover prints
the Poseidon digest as a decimal field element, so values are compared after
normalizing both to 32-byte lowercase hex.  This is defense in depth; the
module still enforces its own checks on-chain.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_DIGEST_BYTES = 32
_HEX_RE = re.compile(r"0[xX][0-9a-fA-F]+")
_MAX_DIGEST = (1 << (8 * _DIGEST_BYTES)) - 1


def parse_uint_text(text: str) -> int:
    """Parse ``0x``-prefixed hex or ASCII decimal digits.  Raises ValueError otherwise."""
    if _HEX_RE.fullmatch(text):
        return int(text[2:], 16)
    if text.isascii() and text.isdigit():
        return int(text, 10)
    raise ValueError(f"{text!r} is neither hex nor decimal")


def normalize_commitment(value: object) -> str:
    """Return *value* as ``0x`` + 64 lowercase hex chars.

    Accepts bytes, non-negative ints, ``0x``-prefixed hex (any case) and
    decimal strings.  Raises ValueError for anything else.
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) > _DIGEST_BYTES:
            raise ValueError(f"commitment is {len(value)} bytes, expected at most {_DIGEST_BYTES}")
        as_int = int.from_bytes(value, "big")
    elif isinstance(value, int) and not isinstance(value, bool):
        as_int = value
    elif isinstance(value, str):
        as_int = parse_uint_text(value.strip())
    else:
        raise ValueError(f"unsupported commitment type {type(value).__name__}")

    if not 0 <= as_int <= _MAX_DIGEST:
        raise ValueError(f"commitment {value!r} does not fit in {_DIGEST_BYTES} bytes")
    return "0x" + format(as_int, "064x")


@dataclass(frozen=True)
class MismatchDetails:
    live: str
    artifact: str
    live_normalized: str | None
    artifact_normalized: str | None

    def describe(self) -> str:
        return (
            f"POLICY_HASH_MISMATCH: onchain={self.live_normalized or self.live} "
            f"proof={self.artifact_normalized or self.artifact}"
        )


@dataclass(frozen=True)
class GateResult:
    ok: bool
    mismatch: MismatchDetails | None = None


class ConsistencyGate:
    def check(self, live_commitment: object, artifact_commitment: object) -> GateResult:
        """Ok when both commitments denote the same digest; Abort with details otherwise."""
        live_norm = _try_normalize(live_commitment)
        artifact_norm = _try_normalize(artifact_commitment)
        if live_norm is not None and live_norm == artifact_norm:
            return GateResult(ok=True)
        return GateResult(
            ok=False,
            mismatch=MismatchDetails(
                live=_display(live_commitment),
                artifact=_display(artifact_commitment),
                live_normalized=live_norm,
                artifact_normalized=artifact_norm,
            ),
        )


def _display(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _try_normalize(value: object) -> str | None:
    try:
        return normalize_commitment(value)
    except ValueError:
        return None
