"""Proof requests against the external Groth16 proving backend.

The pipeline builds a canonical request, calls the backend exactly once and
validates the artifact strictly.  Proving is expensive, so there is no retry
here; a failed proof means a new cycle with fresh on-chain state.

Two backends are supported:
  - SubprocessProverBackend: runs the prover script (``node zk/scripts/prove.mjs``)
  - HttpProverBackend:       POSTs the request to a prover service
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Sequence

import httpx

from core.consistency_gate import parse_uint_text
from core.errors import CycleCancelled, MalformedProof, ProofBackendFailure, ValidationError
from core.network_config import NUM_CATEGORIES
from core.policy_engine import to_csv, validate_allow_bitmap, validate_caps

logger = logging.getLogger(__name__)

_UINT256_MAX = (1 << 256) - 1
_POLL_INTERVAL_S = 0.5


@dataclass(frozen=True)
class Groth16Proof:
    a: tuple[int, int]
    b: tuple[tuple[int, int], tuple[int, int]]
    c: tuple[int, int]


@dataclass(frozen=True)
class ProofArtifact:
    policy_commitment: str
    proof: Groth16Proof
    public_signals: tuple[int, ...]


@dataclass(frozen=True)
class ProofRequest:
    account: str
    counter: int
    deadline: int
    allow_bitmap: int
    caps: tuple[int, ...]
    allocation: tuple[int, ...]

    def to_payload(self) -> Dict[str, str]:
        """All numbers as decimal strings so nothing loses precision in transit."""
        return {
            "account": self.account,
            "counter": str(self.counter),
            "deadline": str(self.deadline),
            "allowBitmap": str(self.allow_bitmap),
            "capsCsv": to_csv(self.caps),
            "allocationsCsv": to_csv(self.allocation),
        }


# ── artifact validation ──────────────────────────────────────────────────────


def _parse_uint(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise MalformedProof(f"{where}: boolean is not an integer")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            n = parse_uint_text(text)
        except ValueError as exc:
            raise MalformedProof(f"{where}: {value!r} is not an unsigned integer") from exc
    else:
        raise MalformedProof(f"{where}: expected integer string, got {type(value).__name__}")
    if not 0 <= n <= _UINT256_MAX:
        raise MalformedProof(f"{where}: {value!r} out of uint256 range")
    return n


def _parse_pair(value: Any, where: str) -> tuple[int, int]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise MalformedProof(f"{where}: expected an array of 2 elements, got {value!r}")
    return _parse_uint(value[0], f"{where}[0]"), _parse_uint(value[1], f"{where}[1]")


def parse_proof_response(raw: Any) -> ProofArtifact:
    """Validate a backend response and return the artifact, or raise MalformedProof.

    Accepted shapes:
      {"policyCommitment", "proofElements": [a, b, c], "publicSignals"}
      {"policyHash", "a", "b", "c", "publicInputs"}   (prover script output)
    """
    if not isinstance(raw, dict):
        raise MalformedProof(f"proof response must be an object, got {type(raw).__name__}")

    if "proofElements" in raw:
        commitment = raw.get("policyCommitment")
        elements = raw["proofElements"]
        if isinstance(elements, dict):
            elements = [elements.get("a"), elements.get("b"), elements.get("c")]
        if not isinstance(elements, (list, tuple)) or len(elements) != 3:
            raise MalformedProof("proofElements must be [a, b, c]")
        a_raw, b_raw, c_raw = elements
        signals_raw = raw.get("publicSignals")
    else:
        commitment = raw.get("policyHash")
        a_raw, b_raw, c_raw = raw.get("a"), raw.get("b"), raw.get("c")
        signals_raw = raw.get("publicInputs")

    if commitment is None or (isinstance(commitment, str) and not commitment.strip()):
        raise MalformedProof("proof response has no policy commitment")
    if not isinstance(commitment, (str, int)) or isinstance(commitment, bool):
        raise MalformedProof(f"policy commitment has unexpected type {type(commitment).__name__}")

    a = _parse_pair(a_raw, "a")
    if not isinstance(b_raw, (list, tuple)) or len(b_raw) != 2:
        raise MalformedProof(f"b: expected a 2x2 array, got {b_raw!r}")
    b = (_parse_pair(b_raw[0], "b[0]"), _parse_pair(b_raw[1], "b[1]"))
    c = _parse_pair(c_raw, "c")

    if not isinstance(signals_raw, (list, tuple)) or not signals_raw:
        raise MalformedProof("public signals must be a non-empty array")
    signals = tuple(_parse_uint(s, f"publicSignals[{i}]") for i, s in enumerate(signals_raw))

    return ProofArtifact(
        policy_commitment=str(commitment).strip(),
        proof=Groth16Proof(a=a, b=b, c=c),
        public_signals=signals,
    )


# ── backends ─────────────────────────────────────────────────────────────────


class ProverBackend(ABC):
    """Abstract proving backend: request payload in, raw JSON response out."""

    @abstractmethod
    def prove(
        self,
        payload: Dict[str, str],
        timeout_s: float,
        cancel: threading.Event | None = None,
    ) -> Any:
        raise NotImplementedError


class SubprocessProverBackend(ProverBackend):
    """Runs the prover command and parses the JSON it prints on stdout."""

    def __init__(self, command: str) -> None:
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("prover command is empty")

    def build_argv(self, payload: Dict[str, str]) -> list[str]:
        return [
            *self._argv,
            "--vault", payload["account"],
            "--nonce", payload["counter"],
            "--deadline", payload["deadline"],
            "--allowBitmap", payload["allowBitmap"],
            "--capsBps", payload["capsCsv"],
            "--allocations", payload["allocationsCsv"],
        ]

    def prove(
        self,
        payload: Dict[str, str],
        timeout_s: float,
        cancel: threading.Event | None = None,
    ) -> Any:
        argv = self.build_argv(payload)
        logger.info("  running prover: %s", " ".join(argv))
        try:
            proc = subprocess.Popen(
                argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
            )
        except OSError as exc:
            raise ProofBackendFailure(f"failed to start prover: {exc}") from exc

        give_up_at = time.monotonic() + timeout_s
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL_S)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise CycleCancelled("proof generation cancelled")
                if time.monotonic() >= give_up_at:
                    proc.kill()
                    proc.communicate()
                    raise ProofBackendFailure(f"prover timed out after {timeout_s:.0f}s")

        if proc.returncode != 0:
            raise ProofBackendFailure(
                f"prover exited with {proc.returncode}: {stderr.strip()[:500]}"
            )
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise MalformedProof(f"prover printed invalid JSON: {exc}") from exc


class HttpProverBackend(ProverBackend):
    """POSTs the payload to a prover service and returns its JSON body.

    Cancellation is not observable mid-request; the timeout bounds the wait.
    """

    def __init__(self, url: str, api_key: str | None = None) -> None:
        self._url = url
        self._api_key = api_key

    def prove(
        self,
        payload: Dict[str, str],
        timeout_s: float,
        cancel: threading.Event | None = None,
    ) -> Any:
        headers: Dict[str, str] = {}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        logger.info("  POST %s", self._url)
        try:
            resp = httpx.post(self._url, json=payload, headers=headers or None, timeout=timeout_s)
        except httpx.TimeoutException as exc:
            raise ProofBackendFailure(f"prover service timed out after {timeout_s:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise ProofBackendFailure(f"prover service unreachable: {exc}") from exc
        if cancel is not None and cancel.is_set():
            raise CycleCancelled("proof generation cancelled")
        if resp.status_code != 200:
            raise ProofBackendFailure(f"prover service error {resp.status_code}: {resp.text[:500]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedProof(f"prover service returned invalid JSON: {exc}") from exc


# ── pipeline ─────────────────────────────────────────────────────────────────


class ProofPipeline:
    def __init__(self, backend: ProverBackend, timeout_s: float = 300.0) -> None:
        self._backend = backend
        self._timeout_s = timeout_s

    def build_request(
        self,
        account: str,
        counter: int,
        deadline: int,
        allow_bitmap: int,
        caps: Sequence[int],
        allocation: Sequence[int],
    ) -> ProofRequest:
        for name, value in (("counter", counter), ("deadline", deadline)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")
        alloc = tuple(allocation)
        if len(alloc) != NUM_CATEGORIES:
            raise ValidationError(f"allocation must have {NUM_CATEGORIES} entries, got {len(alloc)}")
        return ProofRequest(
            account=account,
            counter=counter,
            deadline=deadline,
            allow_bitmap=validate_allow_bitmap(allow_bitmap),
            caps=validate_caps(caps),
            allocation=alloc,
        )

    def request_proof(
        self,
        account: str,
        counter: int,
        deadline: int,
        allow_bitmap: int,
        caps: Sequence[int],
        allocation: Sequence[int],
        *,
        timeout_s: float | None = None,
        cancel: threading.Event | None = None,
    ) -> ProofArtifact:
        """Request one proof.  Raises ProofBackendFailure, MalformedProof or CycleCancelled."""
        request = self.build_request(account, counter, deadline, allow_bitmap, caps, allocation)
        payload = request.to_payload()
        budget = self._timeout_s if timeout_s is None else min(timeout_s, self._timeout_s)
        logger.info(
            "requesting proof nonce=%s allocations=%s (timeout=%.0fs)",
            payload["counter"],
            payload["allocationsCsv"],
            budget,
        )
        started = time.monotonic()
        raw = self._backend.prove(payload, budget, cancel)
        artifact = parse_proof_response(raw)
        logger.info(
            "  → proof ready in %.1fs policyHash=%s signals=%d",
            time.monotonic() - started,
            artifact.policy_commitment,
            len(artifact.public_signals),
        )
        return artifact
