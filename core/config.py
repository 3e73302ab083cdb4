"""Load and validate application configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from core.errors import ValidationError
from core.network_config import Category, NetworkDetector, ZERO_ADDRESS
from core.policy_engine import parse_caps_csv, validate_allow_bitmap

load_dotenv()


@dataclass(frozen=True)
class ChainConfig:
    rpc_url: str
    proof_gate_module: str  # gating module (executeWithProof entry point)
    safe_address: str  # account whose funds are rebalanced
    agent_private_key: str | None = None  # only needed when submitting
    agent_address: str | None = None  # enables the agentEnabled diagnostic read
    rpc_timeout_s: float = 30.0


@dataclass(frozen=True)
class PolicyConfig:
    """The policy committed on-chain for the Safe.

    These MUST hash to the module's policyHashOf(safe), otherwise every cycle
    aborts at the consistency gate.
    """

    allow_bitmap: int = 1
    caps_bps: tuple[int, ...] = (10000, 0, 0, 0, 0)


@dataclass(frozen=True)
class ProverConfig:
    command: str = "node ../zk/scripts/prove.mjs"
    url: str | None = None  # HTTP prover service; preferred over command when set
    timeout_s: float = 300.0  # proving takes tens of seconds to minutes
    deadline_offset_s: int = 0  # 0 → deadline field 0 (no deadline)


@dataclass(frozen=True)
class ExecutionConfig:
    confirmation_timeout_s: float = 120.0
    cycle_timeout_s: float = 0.0  # 0 → unbounded
    total_amount: int | None = None  # base units handed to amount-aware call strategies


@dataclass(frozen=True)
class YieldsConfig:
    url: str = "https://yields.llama.fi/pools"
    timeout_s: float = 30.0
    chain: str = "Mantle"
    stable_hint: str = "USDC"
    min_tvl_usd: float = 50_000.0
    top_k: int = 7


@dataclass(frozen=True)
class TargetTable:
    """Per-category call target, index-aligned with Category."""

    targets: tuple[str | None, ...] = (None, None, None, None, None)

    def __call__(self, category: int) -> str | None:
        return self.resolve(category)

    def resolve(self, category: int) -> str | None:
        if not 0 <= category < len(self.targets):
            return None
        addr = self.targets[category]
        if not addr or addr.lower() == ZERO_ADDRESS:
            return None
        return addr


@dataclass(frozen=True)
class AppConfig:
    chain: ChainConfig
    policy: PolicyConfig
    prover: ProverConfig
    execution: ExecutionConfig
    yields: YieldsConfig
    targets: TargetTable


# Env var per category for target overrides.
_TARGET_ENV = {
    Category.ONDO: "ONDO_TARGET",
    Category.AGNI: "AGNI_TARGET",
    Category.STARGATE: "STARGATE_TARGET",
    Category.MANTLE_REWARDS: "MANTLE_REWARDS_TARGET",
    Category.INIT: "INIT_TARGET",
}


def _getenv(name: str, default: str | None = None) -> str | None:
    """os.getenv wrapper that strips inline comments (e.g. '300  # note' → '300')."""
    raw = os.getenv(name, default)
    if raw is None:
        return None
    # Split on first ' #' (space-hash) to drop inline comments, then strip
    return raw.split(" #")[0].strip()


def _require(name: str) -> str:
    value = _getenv(name)
    if not value:
        raise EnvironmentError(f"Required environment variable {name} is not set")
    return value


def _load_targets(rpc_url: str) -> TargetTable:
    defaults = NetworkDetector.get_targets(NetworkDetector.detect(rpc_url))
    resolved: list[str | None] = []
    for category in Category:
        override = _getenv(_TARGET_ENV[category])
        if override and override.startswith("0x"):
            resolved.append(override)
        else:
            resolved.append(defaults.target_for(category))
    return TargetTable(targets=tuple(resolved))


def _load_policy() -> PolicyConfig:
    try:
        allow_bitmap = int(_getenv("ALLOW_BITMAP", "1"))  # type: ignore[arg-type]
        validate_allow_bitmap(allow_bitmap)
        caps = parse_caps_csv(_getenv("CAPS_BPS", "10000,0,0,0,0"))  # type: ignore[arg-type]
    except (ValueError, ValidationError) as exc:
        raise EnvironmentError(f"Invalid policy configuration: {exc}") from exc
    return PolicyConfig(allow_bitmap=allow_bitmap, caps_bps=caps)


def load_config() -> AppConfig:
    """Build AppConfig from environment. Raises EnvironmentError on missing keys."""
    rpc_url = _require("RPC_URL")
    total_amount = _getenv("TOTAL_AMOUNT")
    return AppConfig(
        chain=ChainConfig(
            rpc_url=rpc_url,
            proof_gate_module=_require("PROOF_GATE_SAFE_MODULE"),
            safe_address=_require("SAFE_ADDRESS"),
            agent_private_key=_getenv("AGENT_PRIVATE_KEY") or None,
            agent_address=_getenv("AGENT_ADDRESS") or None,
            rpc_timeout_s=float(_getenv("RPC_TIMEOUT_S", "30")),  # type: ignore[arg-type]
        ),
        policy=_load_policy(),
        prover=ProverConfig(
            command=_getenv("ZK_PROVER_CMD", "node ../zk/scripts/prove.mjs"),  # type: ignore[arg-type]
            url=_getenv("ZK_PROVER_URL") or None,
            timeout_s=float(_getenv("PROVE_TIMEOUT_S", "300")),  # type: ignore[arg-type]
            deadline_offset_s=int(_getenv("PROOF_DEADLINE_S", "0")),  # type: ignore[arg-type]
        ),
        execution=ExecutionConfig(
            confirmation_timeout_s=float(_getenv("CONFIRMATION_TIMEOUT_S", "120")),  # type: ignore[arg-type]
            cycle_timeout_s=float(_getenv("CYCLE_TIMEOUT_S", "0")),  # type: ignore[arg-type]
            total_amount=int(total_amount) if total_amount else None,
        ),
        yields=YieldsConfig(
            url=_getenv("LLAMA_POOLS_URL", "https://yields.llama.fi/pools"),  # type: ignore[arg-type]
            timeout_s=float(_getenv("LLAMA_FETCH_TIMEOUT_S", "30")),  # type: ignore[arg-type]
            chain=_getenv("YIELD_CHAIN", "Mantle"),  # type: ignore[arg-type]
            stable_hint=_getenv("YIELD_STABLE_HINT", "USDC"),  # type: ignore[arg-type]
            min_tvl_usd=float(_getenv("YIELD_MIN_TVL_USD", "50000")),  # type: ignore[arg-type]
            top_k=int(_getenv("YIELD_TOP_K", "7")),  # type: ignore[arg-type]
        ),
        targets=_load_targets(rpc_url),
    )
