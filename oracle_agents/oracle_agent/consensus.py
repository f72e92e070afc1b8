"""
Client-side monitor of the ledger's verification aggregation.

All consensus math happens in VerificationAggregator. This module only
reads submission counts, consensus and finalization flags, derives a
status for observers, and notifies subscribers when a watched task
changes stage.
"""

import asyncio
import logging
import math
import statistics
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..config import Config
from ..core.base_role import BaseRole
from ..infrastructure.contract_abis import ORACLE_REGISTRY, VERIFICATION_AGGREGATOR
from ..infrastructure.errors import NetworkError
from ..infrastructure.models import VerificationSubmission

logger = logging.getLogger(__name__)


class ConsensusStage(str, Enum):
    """Stage of a task in the oracle network."""
    COLLECTING = "collecting"
    CONSENSUS_REACHED = "consensus-reached"
    FINALIZED = "finalized"


@dataclass
class ConsensusStatus:
    """Derived view of one task's aggregation state."""
    task_id: int
    stage: ConsensusStage
    submissions: int
    quorum: int
    active_oracles: int
    time_remaining: int

    @property
    def progress(self) -> float:
        denominator = max(self.quorum, self.active_oracles)
        if denominator <= 0:
            return 0.0
        return min(1.0, self.submissions / denominator)

    @property
    def expired(self) -> bool:
        return self.stage == ConsensusStage.COLLECTING and self.time_remaining == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "stage": self.stage.value,
            "submissions": self.submissions,
            "quorum": self.quorum,
            "active_oracles": self.active_oracles,
            "time_remaining": self.time_remaining,
            "progress": round(self.progress, 4),
        }


StageCallback = Callable[[ConsensusStatus], Awaitable[None]]


def median_consensus(scores: Sequence[int], quorum: int, tolerance: float) -> Optional[int]:
    """
    Reference version of the ledger rule, for observers and tests.

    Consensus holds when at least ``quorum`` scores lie within
    ``tolerance * median`` of the median; the final score is the median.
    """
    if not scores:
        return None
    median = statistics.median(scores)
    band = tolerance * median
    within = [s for s in scores if abs(s - median) <= band]
    if len(within) < quorum:
        return None
    return math.floor(median + 0.5)


class ConsensusAggregator(BaseRole):
    """
    Read-only polling wrapper around VerificationAggregator.

    Watched tasks are polled every poll_interval; subscribers are called
    once per stage change. A task stops being watched once finalized or
    once its submission window lapsed without consensus.
    """

    role = "consensus-monitor"

    def __init__(self, gateway, aggregator_config: Optional[Config] = None, name: str = "consensus"):
        super().__init__(name, aggregator_config)
        self.gateway = gateway
        self.watched: Dict[int, ConsensusStage] = {}
        self.latest: Dict[int, ConsensusStatus] = {}
        self._subscribers: List[StageCallback] = []

    # ------------------------------------------------------------------
    # Ledger reads
    # ------------------------------------------------------------------

    async def submission_count(self, task_id: int) -> int:
        return int(await self.gateway.call(VERIFICATION_AGGREGATOR, "getSubmissionCount", task_id))

    async def has_consensus(self, task_id: int) -> bool:
        return bool(await self.gateway.call(VERIFICATION_AGGREGATOR, "hasConsensus", task_id))

    async def time_remaining(self, task_id: int) -> int:
        return int(await self.gateway.call(VERIFICATION_AGGREGATOR, "getTimeRemaining", task_id))

    async def is_finalized(self, task_id: int) -> bool:
        return bool(await self.gateway.call(VERIFICATION_AGGREGATOR, "taskFinalized", task_id))

    async def active_oracle_count(self) -> int:
        try:
            return int(await self.gateway.call(ORACLE_REGISTRY, "getActiveOracleCount"))
        except NetworkError as e:
            logger.debug(f"Active oracle count unavailable, using configured count: {e}")
            return self.config.oracle_count

    async def submissions(self, task_id: int) -> List[VerificationSubmission]:
        raw = await self.gateway.call(VERIFICATION_AGGREGATOR, "getTaskSubmissions", task_id)
        return [
            VerificationSubmission(
                task_id=task_id,
                oracle=item[0],
                score=int(item[1]),
                signature=bytes(item[2]),
                timestamp=int(item[3]),
            )
            for item in raw
        ]

    async def status(self, task_id: int) -> ConsensusStatus:
        """Read the current aggregation state of a task from the ledger."""
        count, consensus, finalized, remaining, active = await asyncio.gather(
            self.submission_count(task_id),
            self.has_consensus(task_id),
            self.is_finalized(task_id),
            self.time_remaining(task_id),
            self.active_oracle_count(),
        )
        if finalized:
            stage = ConsensusStage.FINALIZED
        elif consensus:
            stage = ConsensusStage.CONSENSUS_REACHED
        else:
            stage = ConsensusStage.COLLECTING

        status = ConsensusStatus(
            task_id=task_id,
            stage=stage,
            submissions=count,
            quorum=self.config.quorum_size(active or self.config.oracle_count),
            active_oracles=active,
            time_remaining=remaining,
        )
        self.latest[task_id] = status
        return status

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def subscribe(self, callback: StageCallback):
        self._subscribers.append(callback)

    def watch(self, task_id: int):
        if task_id not in self.watched:
            self.watched[task_id] = ConsensusStage.COLLECTING
            logger.info(f"👀 Watching consensus for task {task_id}")

    def unwatch(self, task_id: int):
        self.watched.pop(task_id, None)

    async def start(self):
        await super().start()
        self.add_timer(self.config.poll_interval, self.poll_watched, "poll")

    async def poll_watched(self):
        """Refresh every watched task and notify on stage changes."""
        for task_id in list(self.watched):
            await self.refresh(task_id)

    async def refresh(self, task_id: int) -> Optional[ConsensusStatus]:
        try:
            status = await self.status(task_id)
        except NetworkError as e:
            logger.warning(f"⚠️ Consensus poll for task {task_id} failed: {e}")
            return None

        previous = self.watched.get(task_id)
        if previous != status.stage or (status.expired and task_id in self.watched):
            self.log_activity(
                f"Task {task_id}: {status.stage.value} "
                f"({status.submissions} submissions, {status.progress:.0%})"
            )
            if task_id in self.watched:
                self.watched[task_id] = status.stage
            await self._notify(status)

        if status.stage == ConsensusStage.FINALIZED or status.expired:
            if status.expired:
                logger.info(f"⌛ Task {task_id} window lapsed without consensus, stop watching")
            self.unwatch(task_id)
        return status

    async def on_finalized_event(self, entry):
        """TaskFinalized/ConsensusReached handler: reconcile against the ledger right away."""
        task_id = int(entry.args["taskId"])
        self.watch(task_id)
        await self.refresh(task_id)

    async def _notify(self, status: ConsensusStatus):
        for callback in self._subscribers:
            try:
                await callback(status)
            except Exception as e:
                self.log_error(f"Consensus subscriber failed for task {status.task_id}", e)

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status["watched"] = len(self.watched)
        return status
