"""Tests for tools/execution_tool.py — executeWithProof calldata layout."""

from __future__ import annotations

import pytest
from eth_abi import decode

from core.errors import EncodingError
from core.network_config import Category
from tools.action_encoder import ActionDescriptor, function_selector
from tools.execution_tool import (
    EXECUTE_WITH_PROOF_SIGNATURE,
    ExecutionAssembler,
    encode_proof,
)
from tools.prover_tool import Groth16Proof, ProofArtifact

MODULE = "0x" + "22" * 20
SAFE = "0x" + "33" * 20
ONDO = "0x" + "11" * 20
PENDLE = "0x" + "44" * 20

PROOF = Groth16Proof(a=(1, 2), b=((3, 4), (5, 6)), c=(7, 8))


def _artifact(proof: Groth16Proof = PROOF, signals: tuple = (99, 7)) -> ProofArtifact:
    return ProofArtifact(policy_commitment="99", proof=proof, public_signals=signals)


def _actions() -> list[ActionDescriptor]:
    return [
        ActionDescriptor(Category.ONDO, ONDO, 0, b""),
        ActionDescriptor(Category.MANTLE_REWARDS, PENDLE, 5, b"\xde\xad"),
    ]


@pytest.fixture
def assembler() -> ExecutionAssembler:
    return ExecutionAssembler(MODULE)


# ── proof bytes ──────────────────────────────────────────────────────────────


class TestEncodeProof:
    def test_layout(self) -> None:
        proof_bytes = encode_proof(PROOF)
        assert len(proof_bytes) == 8 * 32
        a, b, c = decode(["uint256[2]", "uint256[2][2]", "uint256[2]"], proof_bytes)
        assert a == (1, 2)
        assert b == ((3, 4), (5, 6))
        assert c == (7, 8)

    def test_negative_element(self) -> None:
        with pytest.raises(EncodingError):
            encode_proof(Groth16Proof(a=(-1, 2), b=((3, 4), (5, 6)), c=(7, 8)))

    def test_wrong_shape(self) -> None:
        with pytest.raises(EncodingError):
            encode_proof(Groth16Proof(a=(1, 2, 3), b=((3, 4), (5, 6)), c=(7, 8)))  # type: ignore[arg-type]


# ── executeWithProof ─────────────────────────────────────────────────────────


class TestAssemble:
    def test_calldata_layout(self, assembler: ExecutionAssembler) -> None:
        request = assembler.assemble(SAFE, _actions(), _artifact())
        assert request.to.lower() == MODULE
        assert request.value == 0
        assert request.data[:4] == function_selector(EXECUTE_WITH_PROOF_SIGNATURE)

        safe, calls, proof_bytes, signals = decode(
            ["address", "(address,uint256,bytes)[]", "bytes", "uint256[]"], request.data[4:]
        )
        assert safe.lower() == SAFE
        assert [(t.lower(), v, d) for t, v, d in calls] == [
            (ONDO, 0, b""),
            (PENDLE, 5, b"\xde\xad"),
        ]
        assert proof_bytes == encode_proof(PROOF)
        assert signals == (99, 7)

    def test_empty_call_list(self, assembler: ExecutionAssembler) -> None:
        request = assembler.assemble(SAFE, [], _artifact())
        _, calls, _, _ = decode(
            ["address", "(address,uint256,bytes)[]", "bytes", "uint256[]"], request.data[4:]
        )
        assert calls == ()

    def test_tx_params(self, assembler: ExecutionAssembler) -> None:
        params = assembler.assemble(SAFE, _actions(), _artifact()).to_tx_params()
        assert params["data"].startswith("0x")
        assert params["value"] == 0

    def test_empty_signals_rejected(self, assembler: ExecutionAssembler) -> None:
        with pytest.raises(EncodingError, match="public signals"):
            assembler.assemble(SAFE, _actions(), _artifact(signals=()))

    def test_signal_out_of_range(self, assembler: ExecutionAssembler) -> None:
        with pytest.raises(EncodingError, match="uint256"):
            assembler.assemble(SAFE, _actions(), _artifact(signals=(1 << 256,)))

    def test_bad_account(self, assembler: ExecutionAssembler) -> None:
        with pytest.raises(EncodingError, match="account"):
            assembler.assemble("0x1234", _actions(), _artifact())

    def test_bad_target(self, assembler: ExecutionAssembler) -> None:
        actions = [ActionDescriptor(Category.ONDO, "nope", 0, b"")]
        with pytest.raises(EncodingError, match="target"):
            assembler.assemble(SAFE, actions, _artifact())

    def test_negative_value(self, assembler: ExecutionAssembler) -> None:
        actions = [ActionDescriptor(Category.ONDO, ONDO, -1, b"")]
        with pytest.raises(EncodingError, match="value"):
            assembler.assemble(SAFE, actions, _artifact())

    def test_non_bytes_payload(self, assembler: ExecutionAssembler) -> None:
        actions = [ActionDescriptor(Category.ONDO, ONDO, 0, "0xdead")]  # type: ignore[arg-type]
        with pytest.raises(EncodingError, match="payload"):
            assembler.assemble(SAFE, actions, _artifact())
