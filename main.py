"""Entry point: load config → build pipeline → run one cycle → exit."""

from __future__ import annotations

import argparse
import logging
import sys

from core.agent import build_orchestrator
from core.config import load_config
from core.outcome import Aborted, Failed

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Proof-gated rebalancing agent (one cycle)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="prove and assemble executeWithProof calldata but do not broadcast",
    )
    parser.add_argument(
        "--safe",
        default=None,
        help="account to rebalance (defaults to SAFE_ADDRESS)",
    )
    return parser.parse_args(argv)


def exit_code_for(outcome) -> int:
    if isinstance(outcome, Failed):
        return EXIT_FAILED
    if isinstance(outcome, Aborted):
        return EXIT_ABORTED
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logger.info("starting up (dry_run=%s)", args.dry_run)
    try:
        config = load_config()
        orchestrator = build_orchestrator(config, dry_run=args.dry_run)
    except EnvironmentError as exc:
        logger.error("configuration error: %s", exc)
        sys.exit(EXIT_FAILED)

    logger.info(
        "config loaded — rpc=%s module=%s policy=%d/%s",
        config.chain.rpc_url,
        config.chain.proof_gate_module,
        config.policy.allow_bitmap,
        ",".join(str(c) for c in config.policy.caps_bps),
    )

    outcome = orchestrator.run_cycle(args.safe)
    if isinstance(outcome, Failed) and outcome.retryable:
        logger.info("transient failure; the next run starts a fresh cycle")
    sys.exit(exit_code_for(outcome))


if __name__ == "__main__":
    main()
