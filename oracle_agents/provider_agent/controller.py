"""
Provider role: commits artifacts and reveals them once a buyer has paid.

Flow per task:
1. Timer: generate artifact -> encrypted upload -> commitTask(hash, market, stake)
2. FundsLocked for one of our tasks -> reveal (escrow, state, deadline and
   canReveal are re-read right before sending)
3. Reveal sweep: a second trigger path into the same idempotent reveal
"""

import logging
import time
from typing import Any, Dict, Optional

from web3 import Web3

from ..config import Config
from ..core.lifecycle import LifecycleState, TaskLifecycleController, TaskRecord
from ..infrastructure.content_store import ContentStore
from ..infrastructure.contract_abis import COMMIT_REGISTRY
from ..infrastructure.errors import ParseError, StaleStateError
from ..infrastructure.models import EscrowState, LogEntry, Receipt, TaskState
from ..infrastructure.signatures import commit_hash
from ..oracle_agent.consensus import ConsensusAggregator, ConsensusStage, ConsensusStatus
from .artifact_generator import ArtifactGenerator

logger = logging.getLogger(__name__)

# A reveal whose broadcast is still unresolved is resumed by the same triggers
REVEAL_STATES = (LifecycleState.AWAITING_REVEAL, LifecycleState.AWAITING_CONFIRMATION)


class ProviderController(TaskLifecycleController):
    """Lifecycle controller for one provider identity."""

    role = "provider"

    def __init__(
        self,
        gateway,
        submitter,
        content_store: ContentStore,
        consensus: Optional[ConsensusAggregator] = None,
        generator: Optional[ArtifactGenerator] = None,
        role_config: Optional[Config] = None,
        name: str = "provider"
    ):
        super().__init__(name, gateway, submitter, role_config)
        self.content_store = content_store
        self.consensus = consensus
        self.generator = generator or ArtifactGenerator(self.config)
        # cids of our own commits; the ledger only learns them on reveal
        self.task_cids: Dict[int, str] = {}
        self.tasks_created = 0

        if self.consensus is not None:
            self.consensus.subscribe(self.on_consensus_status)

    async def start(self):
        await super().start()
        if self.config.task_creation_interval > 0:
            self.add_timer(self.config.task_creation_interval, self.create_task, "create-task")
        self.add_timer(self.config.reveal_sweep_interval, self.reveal_sweep, "reveal-sweep")

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def create_task(self) -> Optional[int]:
        """
        Commit one new task.

        Returns:
            The ledger task id, or None when the commit did not go through
        """
        artifact = await self.generator.generate(self.config.market_id)

        upload = await self.content_store.put(artifact, self.address)
        if not upload.success:
            self.log_error(f"Artifact upload failed: {upload.error}")
            return None

        timestamp_ms = int(time.time() * 1000)
        digest = commit_hash(upload.cid, timestamp_ms)
        stake = Web3.to_wei(self.config.provider_stake, "ether")

        self.log_activity(f"Committing artifact {upload.cid} to market {self.config.market_id}")
        result = await self.submitter.execute(
            COMMIT_REGISTRY, "commitTask", digest, self.config.market_id, stake, value=stake
        )
        if not result.ok:
            self.log_error(f"commitTask failed ({result.status.value})", result.error)
            return None

        task_id = await self._task_id_from_receipt(result.receipt)
        self.task_cids[task_id] = upload.cid
        record = self.record(task_id, LifecycleState.AWAITING_REVEAL)
        record.cid = upload.cid
        record.tx_hashes["commit"] = result.tx_hash
        self.tasks_created += 1
        self.log_activity(f"✅ Task {task_id} committed, awaiting a paying escrow")
        return task_id

    async def _task_id_from_receipt(self, receipt: Receipt) -> int:
        topic = self.gateway.topic(COMMIT_REGISTRY, "TaskCommitted").lower()
        for log in receipt.logs:
            entry = log if isinstance(log, LogEntry) else LogEntry.from_web3(log)
            if not entry.topics or entry.topics[0].lower() != topic:
                continue
            try:
                self.gateway.decode_log(COMMIT_REGISTRY, "TaskCommitted", entry)
            except ParseError as e:
                logger.warning(f"[{self.name}] ⚠️ {e}")
                continue
            return int(entry.args["taskId"])

        # Task ids are sequential, the newest one is ours when the log is missing
        total = int(await self.gateway.call(COMMIT_REGISTRY, "getTotalTasks"))
        logger.warning(f"[{self.name}] ⚠️ TaskCommitted log not found in receipt, assuming task {total}")
        return total

    # ------------------------------------------------------------------
    # Reveal
    # ------------------------------------------------------------------

    async def on_funds_locked(self, entry: LogEntry):
        """FundsLocked handler: reveal our task once a buyer has paid."""
        task_id = int(entry.args["taskId"])
        provider = entry.args.get("provider", "")
        if provider.lower() != self.address.lower():
            return

        self.log_activity(f"FundsLocked for task {task_id} by {entry.args.get('buyer')}")
        self.spawn(self.reveal(task_id), f"reveal-{task_id}")

    async def reveal_sweep(self):
        """Feed every task still awaiting reveal into the reveal operation."""
        for record in list(self.records.values()):
            if record.state in REVEAL_STATES:
                await self.reveal(record.task_id, trigger="sweep")

    async def reveal(self, task_id: int, trigger: str = "event") -> bool:
        """
        Reveal one of our tasks. Safe to call any number of times.

        Returns:
            True when a reveal attempt ran (it may still have been a no-op)
        """
        record = self.records.get(task_id)
        if record is None:
            cid = self.task_cids.get(task_id)
            if cid is None:
                logger.warning(f"[{self.name}] ⚠️ No cid known for task {task_id}, cannot reveal")
                return False
            record = self.record(task_id, LifecycleState.AWAITING_REVEAL)
            record.cid = cid

        if record.state not in REVEAL_STATES:
            logger.debug(f"[{self.name}] Task {task_id} is {record.state.value}, reveal ({trigger}) is a no-op")
            return False

        return await self.run_guarded(record, "reveal", self._reveal)

    async def _reveal(self, record: TaskRecord):
        task_id = record.task_id

        escrow = await self.get_escrow(task_id)
        if not escrow.exists:
            logger.debug(f"[{self.name}] Task {task_id}: no escrow yet, not revealing")
            return
        if escrow.state != EscrowState.LOCKED:
            self.transition(record, LifecycleState.ABANDONED, f"escrow is {escrow.state.name.lower()}")
            raise StaleStateError(f"Escrow for task {task_id} is {escrow.state.name.lower()}")

        task = await self.get_task(task_id)
        if task.state >= TaskState.REVEALED:
            self.clear_pending(record, "reveal visible on-chain")
            self.transition(record, LifecycleState.AWAITING_CONSENSUS, "already revealed on-chain")
            self._watch(task_id)
            return
        if task.state != TaskState.COMMITTED:
            self.transition(record, LifecycleState.ABANDONED, f"task is {task.state.name.lower()}")
            raise StaleStateError(f"Task {task_id} is {task.state.name.lower()}")

        # Last check right before sending
        if not await self.gateway.call(COMMIT_REGISTRY, "canReveal", task_id):
            if task.reveal_deadline and time.time() > task.reveal_deadline:
                self.transition(record, LifecycleState.ABANDONED, "reveal deadline passed")
                raise StaleStateError(f"Reveal deadline for task {task_id} passed")
            raise StaleStateError(f"canReveal({task_id}) is false")

        await self.submit_for(record, "reveal", COMMIT_REGISTRY, "revealTask", task_id, record.cid)

        self.transition(record, LifecycleState.AWAITING_CONSENSUS, "reveal confirmed")
        self._watch(task_id)

    def _watch(self, task_id: int):
        if self.consensus is not None:
            self.consensus.watch(task_id)

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    async def on_consensus_status(self, status: ConsensusStatus):
        record = self.records.get(status.task_id)
        if record is None or record.is_terminal:
            return
        if status.stage == ConsensusStage.FINALIZED:
            self.transition(record, LifecycleState.SETTLED, "finalized on-chain")
        elif status.expired:
            self.transition(record, LifecycleState.ABANDONED, "validation window lapsed")

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status["tasks_created"] = self.tasks_created
        return status
