"""Preview harness for the SCORE → OPTIMIZE → ENCODE stages.

Fetches live yield data and prints the allocation and calls the agent *would*
propose under the configured policy, without reading chain state, proving or
submitting anything.
"""

from __future__ import annotations

import logging

from core.config import load_config
from core.errors import PipelineError
from core.optimizer import AllocationOptimizer, best_scores
from tools.action_encoder import ActionEncoder, default_strategies
from tools.yields_tool import YieldsTool

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = load_config()
    scores = YieldsTool(config.yields).category_scores()
    logger.info("best apy per category: %s", best_scores(scores))

    try:
        allocation = AllocationOptimizer().optimize(
            scores, config.policy.allow_bitmap, config.policy.caps_bps
        )
    except PipelineError as exc:
        logger.error("no allocation [%s]: %s", exc.kind, exc)
        return

    encoder = ActionEncoder(
        default_strategies(config.chain.safe_address, config.execution.total_amount)
    )
    actions = encoder.encode(allocation, config.policy.allow_bitmap, config.targets)
    logger.info("allocationsCsv=%s", allocation.to_csv())
    for action in actions:
        logger.info(
            "  %s → %s value=%d data=0x%s",
            action.category.name,
            action.target,
            action.value,
            action.payload.hex(),
        )


if __name__ == "__main__":
    main()
