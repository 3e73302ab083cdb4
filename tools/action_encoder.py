"""Allocation vector → ordered call descriptors for the gating module.

Per-category call encoding is deployment configuration: each category may
register one CallStrategy; categories without one get an empty no-op call.
The encoder never touches the network.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

from eth_abi import encode
from web3 import Web3

from core.errors import ValidationError
from core.network_config import NUM_CATEGORIES, Category
from core.policy_engine import TOTAL_BPS, PolicyEngine, is_allowed, validate_allow_bitmap

logger = logging.getLogger(__name__)

TargetResolver = Callable[[int], "str | None"]


@dataclass(frozen=True)
class ActionDescriptor:
    category: Category
    target: str
    value: int
    payload: bytes


def function_selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


class CallStrategy(ABC):
    """Builds the (value, payload) of a call into one category's target."""

    @abstractmethod
    def build_call(self, category: Category, allocation_bps: int, target: str) -> tuple[int, bytes]:
        raise NotImplementedError


class NoopCallStrategy(CallStrategy):
    """Zero-value call with empty calldata."""

    def build_call(self, category: Category, allocation_bps: int, target: str) -> tuple[int, bytes]:
        return 0, b""


class PendleSwapStrategy(CallStrategy):
    """Pendle market ``swapSyForExactPt(address receiver, uint256 exactPtOut, bytes data)``.

    Assumes the Safe already holds SY.  PT goes to *receiver* (the Safe).
    Without a configured total the PT amount is ``bps * 1e15`` (0.001 PT per bp).
    """

    SIGNATURE = "swapSyForExactPt(address,uint256,bytes)"

    def __init__(self, receiver: str, total_amount: int | None = None) -> None:
        if not Web3.is_address(receiver):
            raise ValueError(f"bad receiver address: {receiver}")
        self._receiver = Web3.to_checksum_address(receiver)
        self._total_amount = total_amount

    def exact_pt_out(self, allocation_bps: int) -> int:
        if self._total_amount is not None:
            return self._total_amount * allocation_bps // TOTAL_BPS
        return allocation_bps * 10**15

    def build_call(self, category: Category, allocation_bps: int, target: str) -> tuple[int, bytes]:
        args = encode(
            ["address", "uint256", "bytes"],
            [self._receiver, self.exact_pt_out(allocation_bps), b""],
        )
        return 0, function_selector(self.SIGNATURE) + args


def default_strategies(safe_address: str, total_amount: int | None = None) -> dict[Category, CallStrategy]:
    """Strategy table shipped with the agent; only Pendle has a real encoding."""
    return {Category.MANTLE_REWARDS: PendleSwapStrategy(safe_address, total_amount)}


class ActionEncoder:
    def __init__(self, strategies: Mapping[Category, CallStrategy] | None = None) -> None:
        self._strategies = dict(strategies or {})
        self._default = NoopCallStrategy()

    def strategy_for(self, category: Category) -> CallStrategy:
        return self._strategies.get(category, self._default)

    def encode(
        self,
        allocation: Sequence[int],
        allow_bitmap: int,
        target_resolver: TargetResolver,
    ) -> list[ActionDescriptor]:
        """One descriptor per funded category with a resolvable target, in index order.

        Raises ValidationError if any funded category is disallowed; the vector
        is re-checked here regardless of where it came from.
        """
        allow_bitmap = validate_allow_bitmap(allow_bitmap)
        bps = list(allocation)
        if len(bps) != NUM_CATEGORIES:
            raise ValidationError(f"allocation must have {NUM_CATEGORIES} entries, got {len(bps)}")
        if any(isinstance(v, bool) or not isinstance(v, int) or v < 0 for v in bps):
            raise ValidationError(f"allocation entries must be non-negative integers: {bps}")

        engine = PolicyEngine(allow_bitmap, [TOTAL_BPS] * NUM_CATEGORIES)
        for i, amount in enumerate(bps):
            if amount > 0:
                engine.check_category(i)

        actions: list[ActionDescriptor] = []
        for i, amount in enumerate(bps):
            if amount == 0 or not is_allowed(allow_bitmap, i):
                continue
            category = Category(i)
            target = target_resolver(i)
            if not target or not Web3.is_address(target) or int(target, 16) == 0:
                logger.warning(
                    "category %s (%d bps) has no registered target address, skipping",
                    category.name,
                    amount,
                )
                continue
            target = Web3.to_checksum_address(target)
            value, payload = self.strategy_for(category).build_call(category, amount, target)
            actions.append(ActionDescriptor(category=category, target=target, value=value, payload=payload))
            logger.info("  call[%d] %s → %s value=%d data=%d bytes", len(actions) - 1, category.name, target, value, len(payload))
        return actions
