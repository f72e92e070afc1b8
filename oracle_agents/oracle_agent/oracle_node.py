"""
Oracle node: independently verifies revealed tasks and submits scores.

The verification pipeline is a LangGraph workflow:

    check_window -> fetch_artifact -> score -> submit

Each step can end the run early (window closed, consensus already
reached, artifact unavailable). Nodes record the outcome in the graph
state; the node object keeps a local queue of submitted tasks and drops
entries once the consensus monitor reports them done.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set, TypedDict

from eth_account.signers.local import LocalAccount
from langgraph.graph import END, StateGraph
from web3 import Web3

from ..config import Config
from ..core.base_role import BaseRole
from ..core.lifecycle import InFlightGuard
from ..infrastructure.content_store import ContentStore
from ..infrastructure.contract_abis import COMMIT_REGISTRY, ORACLE_REGISTRY, VERIFICATION_AGGREGATOR
from ..infrastructure.errors import InsufficientFundsError, NetworkError, RevertError, SubmissionError
from ..infrastructure.models import LogEntry, Task, TaskState
from ..infrastructure.signatures import sign_score
from ..infrastructure.transaction_submitter import TransactionSubmitter
from .consensus import ConsensusAggregator, ConsensusStage, ConsensusStatus
from .scorer import Scorer, ScoreBreakdown

logger = logging.getLogger(__name__)

# Outcomes recorded in VerificationState["outcome"]
PENDING = "pending"
SUBMITTED = "submitted"
SKIPPED = "skipped"
FAILED = "failed"


class VerificationState(TypedDict):
    """State for the verification workflow."""
    task_id: int
    cid: str
    task: Optional[Task]
    artifact: Optional[bytes]
    breakdown: Optional[ScoreBreakdown]
    score: Optional[int]
    tx_hash: Optional[str]
    outcome: str
    reason: Optional[str]
    error: Optional[Exception]


@dataclass
class QueueEntry:
    """A task this oracle has verified and is following to consensus."""
    task_id: int
    score: int
    submitted_at: datetime
    tx_hash: Optional[str] = None
    status: str = SUBMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "score": self.score,
            "submitted_at": self.submitted_at.isoformat(),
            "tx_hash": self.tx_hash,
            "status": self.status,
        }


@dataclass
class NodeStats:
    verified: int = 0
    skipped: int = 0
    failed: int = 0
    scores: Dict[int, int] = field(default_factory=dict)


class OracleNode(BaseRole):
    """
    One independently keyed oracle.

    Unaware of other oracles except through the ledger. Registration
    status is checked and logged but never gates verification; the
    aggregator contract decides whether to count a submission.
    """

    role = "oracle"

    def __init__(
        self,
        oracle_id: int,
        account: LocalAccount,
        gateway,
        submitter: TransactionSubmitter,
        content_store: ContentStore,
        scorer: Scorer,
        consensus: ConsensusAggregator,
        node_config: Optional[Config] = None
    ):
        super().__init__(f"oracle-{oracle_id}", node_config)
        self.oracle_id = oracle_id
        self.account = account
        self.address = account.address
        self.gateway = gateway
        self.submitter = submitter
        self.content_store = content_store
        self.scorer = scorer
        self.consensus = consensus

        self.registered: Optional[bool] = None
        self.attempted: Set[int] = set()
        self.attempts: Dict[int, int] = {}
        self.queue: Dict[int, QueueEntry] = {}
        self.guard = InFlightGuard()
        self.stats = NodeStats()

        self.graph = self._build_graph()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self):
        """Check registration and try to register once when inactive."""
        try:
            self.registered = bool(
                await self.gateway.call(ORACLE_REGISTRY, "isActiveOracle", self.address)
            )
        except NetworkError as e:
            logger.warning(f"[{self.name}] ⚠️ Cannot read registration status: {e}")
            return

        if self.registered:
            self.log_activity(f"✅ Registered oracle {self.address}")
            return

        if self.config.oracle_stake <= 0:
            logger.warning(f"[{self.name}] ⚠️ Not registered; verifications may be rejected")
            return

        self.log_activity(f"Registering oracle {self.address} with stake {self.config.oracle_stake} ETH")
        result = await self.submitter.execute(
            ORACLE_REGISTRY, "registerOracle",
            value=Web3.to_wei(self.config.oracle_stake, "ether")
        )
        if result.ok:
            self.registered = True
            self.log_activity("✅ Oracle registered")
        else:
            logger.warning(
                f"[{self.name}] ⚠️ Registration failed ({result.error}); "
                f"continuing, the aggregator decides whether submissions count"
            )

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self):
        """Build the LangGraph verification workflow."""
        workflow = StateGraph(VerificationState)

        workflow.add_node("check_window", self._check_window_node)
        workflow.add_node("fetch_artifact", self._fetch_artifact_node)
        workflow.add_node("score", self._score_node)
        workflow.add_node("submit", self._submit_node)

        workflow.set_entry_point("check_window")

        for source, target in (
            ("check_window", "fetch_artifact"),
            ("fetch_artifact", "score"),
            ("score", "submit"),
        ):
            workflow.add_conditional_edges(
                source,
                self._route,
                {"continue": target, "end": END}
            )
        workflow.add_edge("submit", END)

        return workflow.compile()

    def _route(self, state: VerificationState) -> str:
        return "continue" if state["outcome"] == PENDING else "end"

    def _end(self, state: VerificationState, outcome: str, reason: str,
             error: Optional[Exception] = None) -> VerificationState:
        state["outcome"] = outcome
        state["reason"] = reason
        state["error"] = error
        return state

    async def _check_window_node(self, state: VerificationState) -> VerificationState:
        """Abandon tasks whose submission window closed or that already have consensus."""
        task_id = state["task_id"]
        try:
            task = Task.from_contract(task_id, await self.gateway.call(COMMIT_REGISTRY, "getTask", task_id))
            state["task"] = task

            if task.state != TaskState.REVEALED:
                return self._end(state, SKIPPED, f"task is {task.state.name.lower()}")

            if not await self.gateway.call(COMMIT_REGISTRY, "canValidate", task_id):
                return self._end(state, SKIPPED, "submission window closed")

            if await self.consensus.has_consensus(task_id):
                return self._end(state, SKIPPED, "consensus already reached")

        except NetworkError as e:
            return self._end(state, FAILED, "window check failed", e)

        return state

    async def _fetch_artifact_node(self, state: VerificationState) -> VerificationState:
        task = state["task"]
        cid = state["cid"] or task.cid
        try:
            state["artifact"] = await self.content_store.get(cid, task.provider)
        except NetworkError as e:
            return self._end(state, FAILED, f"artifact {cid} unavailable", e)
        return state

    async def _score_node(self, state: VerificationState) -> VerificationState:
        task = state["task"]
        expectations = dict(self.config.market_expectations.get(task.market_id, {}))
        expectations.setdefault("market_id", task.market_id)

        breakdown = await self.scorer.score(state["artifact"], expectations)
        state["breakdown"] = breakdown
        state["score"] = breakdown.composite
        logger.info(
            f"[{self.name}] Task {task.id} scored {breakdown.composite} | "
            f"quality {breakdown.quality:.2f} alignment {breakdown.alignment:.2f} "
            f"integrity {breakdown.integrity:.2f}"
        )
        return state

    async def _submit_node(self, state: VerificationState) -> VerificationState:
        task_id, score = state["task_id"], state["score"]
        signature = sign_score(self.account, task_id, score)

        result = await self.submitter.execute(
            VERIFICATION_AGGREGATOR, "submitVerification", task_id, score, signature
        )
        state["tx_hash"] = result.tx_hash

        if result.ok or result.pending:
            return self._end(state, SUBMITTED, "confirmed" if result.ok else "awaiting confirmation")
        return self._end(state, FAILED, "submission failed", result.error)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def on_task_revealed(self, entry: LogEntry):
        """TaskRevealed handler: dedup, then verify in the background."""
        task_id = int(entry.args["taskId"])
        cid = entry.args.get("cid", "")

        if task_id in self.attempted:
            logger.debug(f"[{self.name}] Task {task_id} already attempted, skipping")
            return
        self.attempted.add(task_id)

        self.log_activity(f"TaskRevealed: task {task_id} cid {cid}")
        self.spawn(self.verify(task_id, cid), f"verify-{task_id}")

    async def verify(self, task_id: int, cid: str) -> VerificationState:
        """Run the verification workflow for one task."""
        if not await self.guard.acquire(task_id):
            logger.info(f"[{self.name}] ⚠️ Verification of task {task_id} already in flight")
            return self._initial_state(task_id, cid) | {"outcome": SKIPPED, "reason": "in flight"}

        self.attempts[task_id] = self.attempts.get(task_id, 0) + 1
        try:
            result = await self.graph.ainvoke(self._initial_state(task_id, cid))
        finally:
            await self.guard.release(task_id)

        await self._record_outcome(result)
        return result

    def _initial_state(self, task_id: int, cid: str) -> VerificationState:
        return {
            "task_id": task_id,
            "cid": cid,
            "task": None,
            "artifact": None,
            "breakdown": None,
            "score": None,
            "tx_hash": None,
            "outcome": PENDING,
            "reason": None,
            "error": None,
        }

    async def _record_outcome(self, state: VerificationState):
        task_id, outcome, error = state["task_id"], state["outcome"], state.get("error")

        if outcome == SUBMITTED:
            self.stats.verified += 1
            self.stats.scores[task_id] = state["score"]
            self.queue[task_id] = QueueEntry(
                task_id=task_id,
                score=state["score"],
                submitted_at=datetime.now(),
                tx_hash=state.get("tx_hash"),
                status=SUBMITTED if state["reason"] == "confirmed" else PENDING,
            )
            self.consensus.watch(task_id)
            self.log_activity(f"✅ Verification for task {task_id} submitted: score {state['score']}")
            return

        if outcome == SKIPPED:
            self.stats.skipped += 1
            self._forget(task_id)
            self.log_activity(f"⚠️ Task {task_id} skipped: {state['reason']}")
            return

        self.stats.failed += 1
        transient = isinstance(error, (NetworkError, InsufficientFundsError, SubmissionError)) or (
            isinstance(error, RevertError) and error.is_time_window
        )
        if transient and self.attempts.get(task_id, 0) <= self.config.max_retries:
            logger.warning(
                f"[{self.name}] 🔁 Task {task_id} {state['reason']}: {error}; "
                f"retrying in {self.config.retry_backoff}s"
            )
            self.spawn(self._retry_later(task_id, state["cid"]), f"retry-verify-{task_id}")
        else:
            self.log_error(f"Verification of task {task_id} failed ({state['reason']})", error)
            # Kept until the window lapses so duplicate reveal events stay ignored
            self.consensus.watch(task_id)

    async def _retry_later(self, task_id: int, cid: str):
        if await self.sleep_unless_stopped(self.config.retry_backoff):
            await self.verify(task_id, cid)

    async def on_consensus_status(self, status: ConsensusStatus):
        """Drop per-task bookkeeping once the network is done with a task."""
        if not (status.stage in (ConsensusStage.CONSENSUS_REACHED, ConsensusStage.FINALIZED) or status.expired):
            return
        known = status.task_id in self.attempted or status.task_id in self.attempts
        self._forget(status.task_id)
        entry = self.queue.pop(status.task_id, None)
        if entry is not None or known:
            reason = "window lapsed" if status.expired else status.stage.value
            self.log_activity(f"Task {status.task_id} done ({reason}), forgotten")

    def _forget(self, task_id: int):
        self.attempted.discard(task_id)
        self.attempts.pop(task_id, None)

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status.update({
            "id": self.oracle_id,
            "address": self.address,
            "registered": self.registered,
            "queue": [entry.to_dict() for entry in self.queue.values()],
            "verified": self.stats.verified,
            "skipped": self.stats.skipped,
            "failed": self.stats.failed,
        })
        return status
