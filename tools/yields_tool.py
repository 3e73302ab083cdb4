"""Yield data source: DefiLlama pools → per-category scores.

Only the subset of the pool schema the optimizer needs is kept.  Fetching is
an idempotent read, so transport errors are retried here; nothing downstream
of the score stage is ever retried.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import YieldsConfig
from core.errors import ScoreSourceFailure
from core.network_config import category_for_project
from core.optimizer import CategoryScore

logger = logging.getLogger(__name__)

_MAX_SANE_APY = 1_000_000.0


@dataclass(frozen=True)
class LlamaPool:
    pool: str
    chain: str
    project: str
    symbol: str
    apy: float
    tvl_usd: float

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "LlamaPool":
        apy = raw.get("apy")
        tvl = raw.get("tvlUsd")
        return cls(
            pool=str(raw.get("pool") or ""),
            chain=str(raw.get("chain") or ""),
            project=str(raw.get("project") or ""),
            symbol=str(raw.get("symbol") or ""),
            apy=float(apy) if isinstance(apy, (int, float)) else 0.0,
            tvl_usd=float(tvl) if isinstance(tvl, (int, float)) else 0.0,
        )


def select_top_pools(
    pools: List[LlamaPool],
    chain: str,
    stable_hint: str,
    min_tvl_usd: float,
    top_k: int,
) -> List[LlamaPool]:
    """Filter to *chain* / *stable_hint* pools with sane APY and TVL, best first."""
    chain_lc = chain.strip().lower()
    hint_lc = stable_hint.strip().lower()
    filtered = [
        p
        for p in pools
        if p.chain.strip().lower() == chain_lc
        and hint_lc in p.symbol.strip().lower()
        and p.tvl_usd >= min_tvl_usd
        and math.isfinite(p.apy)
        and 0 < p.apy < _MAX_SANE_APY
    ]
    filtered.sort(key=lambda p: p.apy, reverse=True)
    return filtered[:top_k]


def pools_to_scores(pools: List[LlamaPool]) -> List[CategoryScore]:
    """One score per pool whose project maps to a category; others are dropped."""
    scores: List[CategoryScore] = []
    for p in pools:
        category = category_for_project(p.project)
        if category is None:
            logger.debug("no category for project %r (pool %s), ignoring", p.project, p.pool)
            continue
        scores.append(CategoryScore(category=category, apy=p.apy))
    return scores


class YieldsTool:
    def __init__(self, config: YieldsConfig) -> None:
        self._config = config

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def _get_pools_json(self) -> Dict[str, Any]:
        resp = httpx.get(self._config.url, timeout=self._config.timeout_s)
        resp.raise_for_status()
        return resp.json()

    def fetch_pools(self) -> List[LlamaPool]:
        try:
            payload = self._get_pools_json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ScoreSourceFailure(f"DefiLlama fetch failed: {exc}") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise ScoreSourceFailure("DefiLlama response has no 'data' array")
        return [LlamaPool.from_json(p) for p in data if isinstance(p, dict)]

    def category_scores(self) -> List[CategoryScore]:
        """Fetch, filter and map pools into category scores for the optimizer."""
        cfg = self._config
        selected = select_top_pools(
            self.fetch_pools(), cfg.chain, cfg.stable_hint, cfg.min_tvl_usd, cfg.top_k
        )
        for p in selected:
            logger.info(
                "  pool %s | %s | apy=%.2f%% | tvl=$%.0f", p.project, p.symbol, p.apy, p.tvl_usd
            )
        return pools_to_scores(selected)

    __call__ = category_scores
