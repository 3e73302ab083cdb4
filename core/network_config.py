from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class NetworkType(Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class Category(IntEnum):
    """Protocol categories.  Values are the bit / vector index used on-chain."""

    ONDO = 0
    AGNI = 1
    STARGATE = 2
    MANTLE_REWARDS = 3
    INIT = 4


NUM_CATEGORIES = len(Category)

# Substring of the yield source's project name → category.  Checked in order.
_PROJECT_HINTS: tuple[tuple[str, Category], ...] = (
    ("ondo", Category.ONDO),
    ("agni", Category.AGNI),
    ("stargate", Category.STARGATE),
    ("mantle", Category.MANTLE_REWARDS),
    ("init", Category.INIT),
)


def category_for_project(project: str) -> Category | None:
    """Map a yield-source project name (e.g. ``"agni-finance"``) to a category."""
    p = project.strip().lower()
    for hint, category in _PROJECT_HINTS:
        if hint in p:
            return category
    return None


@dataclass(frozen=True)
class NetworkTargets:
    """Default call target per category for a network.

    ``None`` (or the zero address) means the category has no deployed target on
    that network; the encoder skips such categories.
    """

    ondo: str | None
    agni: str | None
    stargate: str | None
    mantle_rewards: str | None
    init: str | None

    def target_for(self, category: Category) -> str | None:
        addr = {
            Category.ONDO: self.ondo,
            Category.AGNI: self.agni,
            Category.STARGATE: self.stargate,
            Category.MANTLE_REWARDS: self.mantle_rewards,
            Category.INIT: self.init,
        }[category]
        if addr is None or addr.lower() == ZERO_ADDRESS:
            return None
        return addr


MAINNET_TARGETS = NetworkTargets(
    ondo="0x05Be26527e817998A7206475496FDe1e68957c5a",  # USDY
    agni="0x319B69888b0d11cEC22caA5034e25FfFBDc88421",  # swap router
    stargate=None,
    # Pendle market; swapSyForExactPt is the simplest entry point.
    mantle_rewards="0x7dc07C575A0c512422dCab82CE9Ed74dB58Be30C",
    init=None,
)

# Nothing is deployed at known addresses on the test network; configure
# targets through the environment.
TESTNET_TARGETS = NetworkTargets(
    ondo=None,
    agni=None,
    stargate=None,
    mantle_rewards=None,
    init=None,
)


class NetworkDetector:
    """Helpers for detecting network and resolving default targets."""

    @staticmethod
    def detect(rpc_url: str) -> NetworkType:
        """Detect network from RPC URL (simple heuristic)."""
        url = rpc_url.lower()
        if any(marker in url for marker in ("sepolia", "testnet", "localhost", "127.0.0.1")):
            return NetworkType.TESTNET
        return NetworkType.MAINNET

    @staticmethod
    def get_targets(network: NetworkType) -> NetworkTargets:
        return TESTNET_TARGETS if network == NetworkType.TESTNET else MAINNET_TARGETS
