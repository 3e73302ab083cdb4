"""Read-only view of the gating module's per-account state.

Every cycle re-reads the policy commitment and the replay counter; nothing
here is cached between calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from web3 import Web3

from core.consistency_gate import normalize_commitment
from core.errors import StateReadFailure

logger = logging.getLogger(__name__)

PROOF_GATE_READ_ABI = [
    {
        "type": "function",
        "name": "policyHashOf",
        "stateMutability": "view",
        "inputs": [{"name": "safe", "type": "address"}],
        "outputs": [{"name": "policyHash", "type": "bytes32"}],
    },
    {
        "type": "function",
        "name": "nonceOf",
        "stateMutability": "view",
        "inputs": [{"name": "safe", "type": "address"}],
        "outputs": [{"name": "nonce", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "agentEnabled",
        "stateMutability": "view",
        "inputs": [
            {"name": "safe", "type": "address"},
            {"name": "agent", "type": "address"},
        ],
        "outputs": [{"name": "enabled", "type": "bool"}],
    },
]


@dataclass(frozen=True)
class PolicyState:
    policy_commitment: str  # normalized 0x-prefixed 32-byte hex
    counter: int
    agent_authorized: bool | None = None


def make_web3(rpc_url: str, timeout_s: float = 30.0) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))


class ProofGateStateTool:
    """Query policyHashOf / nonceOf / agentEnabled on the gating module."""

    def __init__(self, w3: Web3, module_address: str) -> None:
        if not Web3.is_address(module_address):
            raise ValueError(f"bad gating module address: {module_address}")
        self._w3 = w3
        self._module = w3.eth.contract(
            address=Web3.to_checksum_address(module_address),
            abi=PROOF_GATE_READ_ABI,
        )

    def read(self, account: str, agent: str | None = None) -> PolicyState:
        """Return the live commitment and counter for *account*.

        Raises StateReadFailure on any RPC or decoding problem.
        """
        if not Web3.is_address(account):
            raise StateReadFailure(f"bad account address: {account}")
        safe = Web3.to_checksum_address(account)
        logger.info("reading gating module state for %s", safe)
        try:
            raw_hash = self._module.functions.policyHashOf(safe).call()
            counter = int(self._module.functions.nonceOf(safe).call())
        except Exception as exc:
            raise StateReadFailure(f"failed to read gating module state for {safe}: {exc}") from exc

        try:
            commitment = normalize_commitment(bytes(raw_hash))
        except (TypeError, ValueError) as exc:
            raise StateReadFailure(f"unexpected policyHashOf value {raw_hash!r}") from exc
        if counter < 0:
            raise StateReadFailure(f"negative counter {counter} for {safe}")

        agent_authorized: bool | None = None
        if agent and Web3.is_address(agent):
            # Diagnostic only; a failed read does not fail the cycle.
            try:
                agent_authorized = bool(
                    self._module.functions.agentEnabled(
                        safe, Web3.to_checksum_address(agent)
                    ).call()
                )
            except Exception as exc:
                logger.warning("agentEnabled read failed for %s: %s", agent, exc)

        logger.info("  → policyHash=%s nonce=%d agentEnabled=%s", commitment, counter, agent_authorized)
        return PolicyState(
            policy_commitment=commitment,
            counter=counter,
            agent_authorized=agent_authorized,
        )
