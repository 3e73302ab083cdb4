"""LangGraph state machine:
READ_STATE → SCORE → OPTIMIZE → ENCODE → PROVE → GATE → ASSEMBLE → SUBMIT → DONE.

One cycle is strictly forward and one-shot.  Any stage that sets an outcome
(failure, abort, dry-run stop, submission) routes straight to END; nothing
loops back.  Retrying means calling run_cycle() again, which re-reads the
counter and commitment from chain.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from typing import Any, Callable, Sequence, TypedDict

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from core.config import AppConfig
from core.consistency_gate import ConsistencyGate
from core.errors import CycleCancelled, CycleTimeout, PipelineError, SubmissionFailure
from core.optimizer import AllocationOptimizer, AllocationVector, CategoryScore
from core.outcome import Aborted, Failed, PipelineOutcome, Prepared, Stage, Submitted, describe
from tools.action_encoder import ActionDescriptor, ActionEncoder, default_strategies
from tools.execution_tool import ExecutionAssembler, ExecutionRequest
from tools.proof_gate_tool import PolicyState, ProofGateStateTool, make_web3
from tools.prover_tool import (
    HttpProverBackend,
    ProofArtifact,
    ProofPipeline,
    ProverBackend,
    SubprocessProverBackend,
)
from tools.submit_tool import WalletSubmitter
from tools.yields_tool import YieldsTool

logger = logging.getLogger(__name__)

ScoreSource = Callable[[], Sequence[CategoryScore]]

# ── state ─────────────────────────────────────────────────────────────────────


class CycleState(TypedDict):
    account: str
    allow_bitmap: int
    caps: tuple[int, ...]
    stage: str                              # last stage entered
    live: PolicyState | None                # READ_STATE
    scores: list[CategoryScore] | None      # SCORE
    allocation: AllocationVector | None     # OPTIMIZE
    actions: list[ActionDescriptor] | None  # ENCODE
    artifact: ProofArtifact | None          # PROVE
    request: ExecutionRequest | None        # ASSEMBLE
    outcome: PipelineOutcome | None         # set once; ends the cycle
    cancel: threading.Event | None
    deadline_at: float | None               # time.monotonic() budget for the whole cycle


def _initial_state(
    account: str,
    allow_bitmap: int,
    caps: Sequence[int],
    cancel: threading.Event | None = None,
    deadline_at: float | None = None,
) -> CycleState:
    return CycleState(
        account=account,
        allow_bitmap=allow_bitmap,
        caps=tuple(caps),
        stage=Stage.START.value,
        live=None,
        scores=None,
        allocation=None,
        actions=None,
        artifact=None,
        request=None,
        outcome=None,
        cancel=cancel,
        deadline_at=deadline_at,
    )


def _remaining(state: CycleState) -> float | None:
    deadline_at = state.get("deadline_at")
    if deadline_at is None:
        return None
    return deadline_at - time.monotonic()


def _preflight(stage: Stage, state: CycleState) -> PipelineOutcome | None:
    """Cancellation and cycle budget are checked before every stage is entered."""
    cancel = state.get("cancel")
    if cancel is not None and cancel.is_set():
        logger.info("  cycle cancelled before %s", stage.value)
        return Aborted(stage=stage, reason="cancelled")
    remaining = _remaining(state)
    if remaining is not None and remaining <= 0:
        logger.error("  cycle budget exhausted before %s", stage.value)
        return Failed(
            stage=stage,
            error_kind=CycleTimeout.kind,
            message=f"cycle timeout reached before {stage.value}",
            retryable=CycleTimeout.retryable,
        )
    return None


def _stage_node(stage: Stage, work: Callable[[CycleState], dict[str, Any]]):
    """Wrap *work* so every error becomes a Failed outcome tagged with *stage*."""

    def node(state: CycleState) -> CycleState:
        logger.info("═══ %s ═══", stage.name)
        outcome = _preflight(stage, state)
        if outcome is None:
            try:
                updates = work(state)
            except CycleCancelled as exc:
                logger.info("  cancelled during %s: %s", stage.value, exc)
                outcome = Aborted(stage=stage, reason="cancelled", details={"message": str(exc)})
            except PipelineError as exc:
                logger.error("  %s failed [%s]: %s", stage.value, exc.kind, exc)
                outcome = Failed(
                    stage=stage, error_kind=exc.kind, message=str(exc), retryable=exc.retryable
                )
            except Exception as exc:
                logger.exception("  %s failed unexpectedly", stage.value)
                outcome = Failed(stage=stage, error_kind=type(exc).__name__, message=str(exc))
            else:
                return {**state, **updates, "stage": stage.value}
        return {**state, "stage": stage.value, "outcome": outcome}

    return node


def _proof_deadline(offset_s: int) -> int:
    return 0 if offset_s <= 0 else int(time.time()) + offset_s


# ── graph ─────────────────────────────────────────────────────────────────────


def build_graph(
    config: AppConfig,
    *,
    gateway: ProofGateStateTool,
    score_source: ScoreSource,
    optimizer: AllocationOptimizer,
    encoder: ActionEncoder,
    prover: ProofPipeline,
    assembler: ExecutionAssembler,
    gate: ConsistencyGate,
    submitter: WalletSubmitter | None = None,
    dry_run: bool = False,
) -> CompiledStateGraph:
    """Build the compiled pipeline graph over the given collaborators."""

    # ── READ_STATE ────────────────────────────────────────────────
    def read_state(state: CycleState) -> dict[str, Any]:
        account = state["account"]
        if submitter is not None:
            submitter.ensure_no_pending(account)
        live = gateway.read(account, agent=config.chain.agent_address)
        if live.agent_authorized is False:
            logger.warning("  agent %s is not enabled for %s; submission will likely revert",
                           config.chain.agent_address, account)
        return {"live": live}

    # ── SCORE ─────────────────────────────────────────────────────
    def score(state: CycleState) -> dict[str, Any]:
        scores = list(score_source())
        logger.info("  %d category score(s)", len(scores))
        return {"scores": scores}

    # ── OPTIMIZE ──────────────────────────────────────────────────
    def optimize(state: CycleState) -> dict[str, Any]:
        allocation = optimizer.optimize(state["scores"] or [], state["allow_bitmap"], state["caps"])
        logger.info("  allocations=%s", allocation.to_csv())
        return {"allocation": allocation}

    # ── ENCODE ────────────────────────────────────────────────────
    def encode(state: CycleState) -> dict[str, Any]:
        actions = encoder.encode(state["allocation"], state["allow_bitmap"], config.targets)
        logger.info("  %d call(s) encoded", len(actions))
        return {"actions": actions}

    # ── PROVE ─────────────────────────────────────────────────────
    def prove(state: CycleState) -> dict[str, Any]:
        live = state["live"]
        artifact = prover.request_proof(
            state["account"],
            live.counter,
            _proof_deadline(config.prover.deadline_offset_s),
            state["allow_bitmap"],
            state["caps"],
            state["allocation"].bps,
            timeout_s=_remaining(state),
            cancel=state.get("cancel"),
        )
        return {"artifact": artifact}

    # ── GATE ──────────────────────────────────────────────────────
    def check_gate(state: CycleState) -> dict[str, Any]:
        result = gate.check(state["live"].policy_commitment, state["artifact"].policy_commitment)
        if result.ok:
            logger.info("  policy commitment matches on-chain value")
            return {}
        mismatch = result.mismatch
        logger.warning("  %s — stopping before assembly", mismatch.describe())
        return {
            "outcome": Aborted(
                stage=Stage.GATE,
                reason="policy_mismatch",
                details={
                    "live": mismatch.live,
                    "artifact": mismatch.artifact,
                    "live_normalized": mismatch.live_normalized,
                    "artifact_normalized": mismatch.artifact_normalized,
                },
            )
        }

    # ── ASSEMBLE ──────────────────────────────────────────────────
    def assemble(state: CycleState) -> dict[str, Any]:
        request = assembler.assemble(state["account"], state["actions"] or [], state["artifact"])
        if dry_run:
            logger.info("  dry run — not submitting")
            return {"request": request, "outcome": Prepared(request=request)}
        return {"request": request}

    # ── SUBMIT ────────────────────────────────────────────────────
    def submit(state: CycleState) -> dict[str, Any]:
        if submitter is None:
            raise SubmissionFailure("no signer configured (set AGENT_PRIVATE_KEY or use --dry-run)")
        receipt = submitter.submit(state["request"], cancel=state.get("cancel"))
        return {
            "outcome": Submitted(
                tx_hash=receipt.tx_hash,
                confirmed=receipt.confirmed,
                block_number=receipt.block_number,
            )
        }

    # ── routing ───────────────────────────────────────────────────
    def _next(name: str):
        def route(state: CycleState) -> str:
            return END if state.get("outcome") is not None else name

        return route

    # ── wire the graph ────────────────────────────────────────────
    stages = [
        (Stage.READ_STATE, read_state),
        (Stage.SCORE, score),
        (Stage.OPTIMIZE, optimize),
        (Stage.ENCODE, encode),
        (Stage.PROVE, prove),
        (Stage.GATE, check_gate),
        (Stage.ASSEMBLE, assemble),
        (Stage.SUBMIT, submit),
    ]
    graph = StateGraph(CycleState)
    for stage, work in stages:
        graph.add_node(stage.value, _stage_node(stage, work))

    graph.set_entry_point(Stage.READ_STATE.value)
    for (stage, _), (next_stage, _) in zip(stages, stages[1:]):
        graph.add_conditional_edges(
            stage.value,
            _next(next_stage.value),
            {next_stage.value: next_stage.value, END: END},
        )
    graph.add_edge(Stage.SUBMIT.value, END)

    return graph.compile()


# ── orchestrator ──────────────────────────────────────────────────────────────


class Orchestrator:
    """Runs single-shot cycles; at most one cycle per account at a time."""

    def __init__(self, config: AppConfig, graph: CompiledStateGraph) -> None:
        self.config = config
        self._graph = graph
        # Entries disappear once no cycle for that account holds the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, account: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account.lower(), threading.Lock())

    def run_cycle(
        self,
        account: str | None = None,
        *,
        allow_bitmap: int | None = None,
        caps: Sequence[int] | None = None,
        cancel: threading.Event | None = None,
    ) -> PipelineOutcome:
        """Run one cycle for *account* (default: the configured Safe)."""
        account = account or self.config.chain.safe_address
        budget = self.config.execution.cycle_timeout_s
        with self._lock_for(account):
            state = _initial_state(
                account,
                self.config.policy.allow_bitmap if allow_bitmap is None else allow_bitmap,
                self.config.policy.caps_bps if caps is None else caps,
                cancel=cancel,
                deadline_at=time.monotonic() + budget if budget > 0 else None,
            )
            logger.info("starting cycle for %s", account)
            result = self._graph.invoke(state)

        outcome = result.get("outcome")
        if outcome is None:
            # Every terminal path sets an outcome; reaching END without one is a defect.
            outcome = Failed(
                stage=Stage(result.get("stage", Stage.START.value)),
                error_kind="PipelineDefect",
                message="cycle ended without an outcome",
            )
        logger.info("─── cycle done: %s ───", describe(outcome))
        return outcome


def build_prover_backend(config: AppConfig) -> ProverBackend:
    if config.prover.url:
        return HttpProverBackend(config.prover.url)
    return SubprocessProverBackend(config.prover.command)


def build_orchestrator(config: AppConfig, *, dry_run: bool = False) -> Orchestrator:
    """Wire the real chain, prover, yield and wallet collaborators from *config*."""
    if not dry_run and not config.chain.agent_private_key:
        raise EnvironmentError("AGENT_PRIVATE_KEY is required unless running with --dry-run")

    w3 = make_web3(config.chain.rpc_url, config.chain.rpc_timeout_s)
    submitter = None
    if not dry_run:
        submitter = WalletSubmitter(
            w3,
            config.chain.agent_private_key,  # type: ignore[arg-type]
            confirmation_timeout_s=config.execution.confirmation_timeout_s,
        )

    graph = build_graph(
        config,
        gateway=ProofGateStateTool(w3, config.chain.proof_gate_module),
        score_source=YieldsTool(config.yields),
        optimizer=AllocationOptimizer(),
        encoder=ActionEncoder(
            default_strategies(config.chain.safe_address, config.execution.total_amount)
        ),
        prover=ProofPipeline(build_prover_backend(config), timeout_s=config.prover.timeout_s),
        assembler=ExecutionAssembler(config.chain.proof_gate_module),
        gate=ConsistencyGate(),
        submitter=submitter,
        dry_run=dry_run,
    )
    return Orchestrator(config, graph)
