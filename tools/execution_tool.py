"""Calldata for the gating module's ``executeWithProof`` entry point.

Layout (must match the module's verifier exactly):

    executeWithProof(
        address safe,
        (address target, uint256 value, bytes data)[] calls,   # execution order
        bytes proof,          # abi.encode(uint256[2] a, uint256[2][2] b, uint256[2] c)
        uint256[] publicInputs
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Sequence

from eth_abi import encode
from eth_abi.exceptions import EncodingError as AbiEncodingError
from web3 import Web3

from core.errors import EncodingError
from tools.action_encoder import ActionDescriptor, function_selector
from tools.prover_tool import Groth16Proof, ProofArtifact

logger = logging.getLogger(__name__)

EXECUTE_WITH_PROOF_SIGNATURE = "executeWithProof(address,(address,uint256,bytes)[],bytes,uint256[])"
_EXECUTE_ARG_TYPES = ["address", "(address,uint256,bytes)[]", "bytes", "uint256[]"]
_PROOF_TYPES = ["uint256[2]", "uint256[2][2]", "uint256[2]"]
_UINT256_MAX = (1 << 256) - 1


@dataclass(frozen=True)
class ExecutionRequest:
    to: str  # gating module
    value: int
    data: bytes
    account: str
    actions: tuple[ActionDescriptor, ...]
    proof_bytes: bytes
    public_signals: tuple[int, ...]

    def to_tx_params(self) -> Dict[str, Any]:
        return {"to": self.to, "value": self.value, "data": Web3.to_hex(self.data)}


def _address(value: Any, where: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise EncodingError(f"{where}: {value!r} is not a valid address")
    return Web3.to_checksum_address(value)


def _uint256(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{where}: {value!r} is not an integer")
    if not 0 <= value <= _UINT256_MAX:
        raise EncodingError(f"{where}: {value} does not fit uint256")
    return value


def encode_proof(proof: Groth16Proof) -> bytes:
    """``abi.encode(uint256[2] a, uint256[2][2] b, uint256[2] c)``, element order preserved."""
    a = [_uint256(v, f"proof.a[{i}]") for i, v in enumerate(proof.a)]
    b = [
        [_uint256(v, f"proof.b[{r}][{k}]") for k, v in enumerate(row)]
        for r, row in enumerate(proof.b)
    ]
    c = [_uint256(v, f"proof.c[{i}]") for i, v in enumerate(proof.c)]
    if len(a) != 2 or len(c) != 2 or len(b) != 2 or any(len(row) != 2 for row in b):
        raise EncodingError("proof elements must be a[2], b[2][2], c[2]")
    try:
        return encode(_PROOF_TYPES, [a, b, c])
    except AbiEncodingError as exc:
        raise EncodingError(f"proof does not encode: {exc}") from exc


class ExecutionAssembler:
    def __init__(self, module_address: str) -> None:
        self._module = _address(module_address, "gating module")
        self._selector = function_selector(EXECUTE_WITH_PROOF_SIGNATURE)

    def assemble(
        self,
        account: str,
        actions: Sequence[ActionDescriptor],
        artifact: ProofArtifact,
    ) -> ExecutionRequest:
        """Serialize everything into one executeWithProof call.  Raises EncodingError."""
        safe = _address(account, "account")

        calls = []
        for i, action in enumerate(actions):
            if not isinstance(action.payload, (bytes, bytearray)):
                raise EncodingError(f"calls[{i}].payload must be bytes, got {type(action.payload).__name__}")
            calls.append(
                (
                    _address(action.target, f"calls[{i}].target"),
                    _uint256(action.value, f"calls[{i}].value"),
                    bytes(action.payload),
                )
            )

        if not artifact.public_signals:
            raise EncodingError("public signals must not be empty")
        signals = [_uint256(s, f"publicSignals[{i}]") for i, s in enumerate(artifact.public_signals)]
        proof_bytes = encode_proof(artifact.proof)

        try:
            args = encode(_EXECUTE_ARG_TYPES, [safe, calls, proof_bytes, signals])
        except AbiEncodingError as exc:
            raise EncodingError(f"executeWithProof arguments do not encode: {exc}") from exc

        data = self._selector + args
        logger.info(
            "assembled executeWithProof: safe=%s calls=%d proof=%d bytes signals=%d calldata=%d bytes",
            safe,
            len(calls),
            len(proof_bytes),
            len(signals),
            len(data),
        )
        return ExecutionRequest(
            to=self._module,
            value=0,
            data=data,
            account=safe,
            actions=tuple(actions),
            proof_bytes=proof_bytes,
            public_signals=tuple(signals),
        )
