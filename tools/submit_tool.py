"""Agent EOA wallet: sign, broadcast, wait for the receipt.  Policy-unaware — caller must gate.

Broadcast is irreversible and never retried.  A transaction whose receipt has
not been seen is remembered per account so that a later cycle does not submit
a second transaction against the same replay counter.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from core.errors import StateReadFailure, SubmissionFailure, SubmissionPending
from tools.execution_tool import ExecutionRequest

logger = logging.getLogger(__name__)

_GAS_HEADROOM = 1.2


@dataclass(frozen=True)
class SubmissionReceipt:
    tx_hash: str
    confirmed: bool
    block_number: int | None = None


class WalletSubmitter:
    def __init__(
        self,
        w3: Web3,
        private_key: str,
        *,
        confirmation_timeout_s: float = 120.0,
        poll_interval_s: float = 1.0,
    ) -> None:
        self._w3 = w3
        self._account = Account.from_key(private_key)
        self.address = self._account.address
        self._confirmation_timeout_s = confirmation_timeout_s
        self._poll_interval_s = poll_interval_s
        self._pending: dict[str, str] = {}
        self._lock = threading.Lock()

    # ── pending-transaction tracking ──────────────────────────────

    def pending_for(self, account: str) -> str | None:
        with self._lock:
            return self._pending.get(account.lower())

    def ensure_no_pending(self, account: str) -> None:
        """Raise SubmissionPending if an earlier tx for *account* has no receipt yet."""
        tx_hash = self.pending_for(account)
        if tx_hash is None:
            return
        try:
            receipt = self._fetch_receipt(tx_hash)
        except Exception as exc:
            raise StateReadFailure(f"failed to look up pending tx {tx_hash}: {exc}") from exc
        if receipt is None:
            raise SubmissionPending(account, tx_hash)
        logger.info(
            "previous tx %s for %s resolved (status=%s block=%s)",
            tx_hash,
            account,
            receipt.get("status"),
            receipt.get("blockNumber"),
        )
        with self._lock:
            self._pending.pop(account.lower(), None)

    # ── mutations ─────────────────────────────────────────────────

    def submit(
        self,
        request: ExecutionRequest,
        cancel: threading.Event | None = None,
    ) -> SubmissionReceipt:
        """Sign and broadcast *request*, then wait for its receipt.

        Raises SubmissionFailure if signing/broadcast fails or the tx reverts.
        A failed send keeps the locally computed hash pending.  If the wait times
        out or *cancel* is set after broadcast, the tx stays tracked as pending
        and an unconfirmed receipt is returned.
        """
        tx_hash = self._broadcast(request)

        receipt = self._wait_for_receipt(tx_hash, cancel)
        if receipt is None:
            logger.warning("  tx %s not confirmed yet; tracking as pending", tx_hash)
            return SubmissionReceipt(tx_hash=tx_hash, confirmed=False)

        with self._lock:
            self._pending.pop(request.account.lower(), None)
        if receipt.get("status") != 1:
            raise SubmissionFailure(f"transaction {tx_hash} reverted", tx_hash=tx_hash)
        block = receipt.get("blockNumber")
        logger.info("  transaction %s confirmed in block %s", tx_hash, block)
        return SubmissionReceipt(tx_hash=tx_hash, confirmed=True, block_number=block)

    def _broadcast(self, request: ExecutionRequest) -> str:
        """Sign and send *request*; the hash is tracked as pending from before the send."""
        try:
            tx = {
                **request.to_tx_params(),
                "from": self.address,
                "nonce": self._w3.eth.get_transaction_count(self.address, "pending"),
                "chainId": self._w3.eth.chain_id,
                "gasPrice": self._w3.eth.gas_price,
            }
            tx["gas"] = int(self._w3.eth.estimate_gas(tx) * _GAS_HEADROOM)
            signed = self._account.sign_transaction(tx)
        except Exception as exc:
            raise SubmissionFailure(f"failed to prepare execution: {exc}") from exc

        tx_hash = Web3.to_hex(signed.hash)
        with self._lock:
            self._pending[request.account.lower()] = tx_hash
        logger.info("  broadcasting executeWithProof → %s from %s (tx %s)", request.to, self.address, tx_hash)
        try:
            self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            # The node may have accepted the tx before the error; keep it tracked.
            logger.warning("  send of %s failed: %s; tracking as pending", tx_hash, exc)
            raise SubmissionFailure(f"failed to broadcast execution: {exc}", tx_hash=tx_hash) from exc
        return tx_hash

    # ── helpers ────────────────────────────────────────────────────

    def _fetch_receipt(self, tx_hash: str) -> dict | None:
        try:
            return dict(self._w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None

    def _wait_for_receipt(
        self, tx_hash: str, cancel: threading.Event | None
    ) -> dict | None:
        """Poll until a receipt exists, the timeout elapses or *cancel* is set."""
        logger.info(
            "  waiting for receipt of %s (timeout=%ss) …", tx_hash, self._confirmation_timeout_s
        )
        start = time.monotonic()
        while True:
            try:
                receipt = self._fetch_receipt(tx_hash)
                if receipt is not None:
                    return receipt
            except Exception as exc:
                logger.warning("  error while polling receipt for %s: %s", tx_hash, exc)

            if cancel is not None and cancel.is_set():
                logger.warning("  wait for %s cancelled; tx remains in flight", tx_hash)
                return None
            if time.monotonic() - start >= self._confirmation_timeout_s:
                logger.warning("  timeout waiting for receipt of %s", tx_hash)
                return None
            time.sleep(self._poll_interval_s)
