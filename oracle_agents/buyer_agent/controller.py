"""
Buyer role: escrows payment for committed tasks and settles them.

- TaskCommitted within budget -> lockFunds(taskId) with buyer_amount
- consensus observed (monitor callback or TaskFinalized) -> releaseFunds
- fallback scan over recent tasks for finalized but unreleased escrows
"""

import logging
from typing import Any, Dict, Optional

from web3 import Web3

from ..config import Config
from ..core.lifecycle import LifecycleState, TaskLifecycleController, TaskRecord
from ..infrastructure.contract_abis import COMMIT_REGISTRY, ESCROW_MANAGER
from ..infrastructure.errors import NetworkError, StaleStateError
from ..infrastructure.models import EscrowState, LogEntry, TaskState
from ..oracle_agent.consensus import ConsensusAggregator, ConsensusStage, ConsensusStatus

logger = logging.getLogger(__name__)


class BuyerController(TaskLifecycleController):
    """Lifecycle controller for one buyer identity."""

    role = "buyer"

    def __init__(
        self,
        gateway,
        submitter,
        consensus: ConsensusAggregator,
        role_config: Optional[Config] = None,
        name: str = "buyer"
    ):
        super().__init__(name, gateway, submitter, role_config)
        self.consensus = consensus
        self.consensus.subscribe(self.on_consensus_status)
        self.max_stake = Web3.to_wei(self.config.buyer_max_stake, "ether")
        self.amount = Web3.to_wei(self.config.buyer_amount, "ether")
        self.settled_count = 0

    async def start(self):
        await super().start()
        self.add_timer(self.config.settlement_scan_interval, self.settlement_scan, "settlement-scan")

    def _owns(self, escrow) -> bool:
        return escrow.exists and escrow.buyer.lower() == self.address.lower()

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    async def on_task_committed(self, entry: LogEntry):
        """TaskCommitted handler: buy tasks whose stake is within budget."""
        task_id = int(entry.args["taskId"])
        stake = int(entry.args.get("stake", 0))

        if stake > self.max_stake:
            self.log_activity(f"Skipping task {task_id}: stake {stake} above max {self.max_stake}")
            return
        if task_id in self.records:
            return

        self.log_activity(f"TaskCommitted: task {task_id} stake {stake}, locking funds")
        self.spawn(self.lock_funds(task_id), f"lock-{task_id}")

    async def lock_funds(self, task_id: int) -> bool:
        record = self.record(task_id, LifecycleState.AWAITING_REVEAL)
        if record.is_terminal:
            return False
        if "lock" in record.tx_hashes and record.pending_action != "lock":
            return False
        return await self.run_guarded(record, "lockFunds", self._lock_funds)

    async def _lock_funds(self, record: TaskRecord):
        task_id = record.task_id

        escrow = await self.get_escrow(task_id)
        if escrow.exists:
            if self._owns(escrow):
                self.clear_pending(record, "escrow visible on-chain")
                record.tx_hashes.setdefault("lock", "")
                self.consensus.watch(task_id)
                logger.info(f"[{self.name}] Task {task_id} already escrowed by us")
                return
            self.transition(record, LifecycleState.ABANDONED, f"escrowed by {escrow.buyer}")
            raise StaleStateError(f"Task {task_id} already escrowed by another buyer")

        task = await self.get_task(task_id)
        if task.state != TaskState.COMMITTED:
            self.transition(record, LifecycleState.ABANDONED, f"task is {task.state.name.lower()}")
            raise StaleStateError(f"Task {task_id} is {task.state.name.lower()}, not buying")

        await self.submit_for(record, "lock", ESCROW_MANAGER, "lockFunds", task_id, value=self.amount)

        self.log_activity(f"✅ Funds locked for task {task_id}")
        self.consensus.watch(task_id)

    async def on_task_revealed(self, entry: LogEntry):
        task_id = int(entry.args["taskId"])
        record = self.records.get(task_id)
        if record is None:
            return
        if record.pending_action == "lock":
            # The provider only reveals against a mined escrow
            record.resume_state = LifecycleState.AWAITING_CONSENSUS
            self.spawn(self.lock_funds(task_id), f"lock-{task_id}")
        elif record.state == LifecycleState.AWAITING_REVEAL:
            self.transition(record, LifecycleState.AWAITING_CONSENSUS, "provider revealed")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def on_consensus_status(self, status: ConsensusStatus):
        if status.task_id not in self.records:
            return
        if status.stage in (ConsensusStage.CONSENSUS_REACHED, ConsensusStage.FINALIZED):
            self.spawn(self.settle(status.task_id), f"settle-{status.task_id}")
        elif status.expired:
            logger.info(f"[{self.name}] ⌛ Task {status.task_id} lapsed without consensus")

    async def on_task_finalized(self, entry: LogEntry):
        """TaskFinalized handler."""
        task_id = int(entry.args["taskId"])
        if task_id not in self.records:
            return
        final_score = entry.args.get("finalScore")
        self.spawn(
            self.settle(task_id, int(final_score) if final_score is not None else None),
            f"settle-{task_id}"
        )

    async def settle(self, task_id: int, final_score: Optional[int] = None) -> bool:
        """
        Release escrowed funds for a finalized task. Idempotent.

        Returns:
            True when a settlement attempt ran
        """
        record = self.record(task_id, LifecycleState.AWAITING_CONSENSUS)
        if record.is_terminal:
            return False

        async def action(r: TaskRecord):
            await self._settle(r, final_score)

        return await self.run_guarded(record, "settle", action)

    async def _settle(self, record: TaskRecord, final_score: Optional[int]):
        task_id = record.task_id

        escrow = await self.get_escrow(task_id)
        if not self._owns(escrow):
            raise StaleStateError(f"Escrow for task {task_id} is not held by {self.address}")
        if escrow.state != EscrowState.LOCKED:
            if "release" in record.tx_hashes:
                self.settled_count += 1
            self.clear_pending(record, "release visible on-chain")
            self.transition(record, LifecycleState.SETTLED, f"escrow already {escrow.state.name.lower()}")
            return

        task = await self.get_task(task_id)
        if task.state == TaskState.SETTLED:
            self.clear_pending(record, "task settled on-chain")
            self.transition(record, LifecycleState.SETTLED, "task already settled")
            return

        # The cached monitor view is not trusted, re-read the ledger
        if not (await self.consensus.has_consensus(task_id) or await self.consensus.is_finalized(task_id)):
            raise StaleStateError(f"No consensus on-chain for task {task_id} yet")

        score = task.final_score if task.final_score is not None else final_score
        if score is None:
            raise StaleStateError(f"Final score for task {task_id} not recorded yet")

        self.transition(record, LifecycleState.SETTLING, f"consensus reached, score {score}")
        await self.submit_for(record, "release", ESCROW_MANAGER, "releaseFunds", task_id, task.provider, score)

        record.final_score = score
        self.settled_count += 1
        self.transition(record, LifecycleState.SETTLED, "funds released")
        self.consensus.unwatch(task_id)

    async def settlement_scan(self):
        """Settle finalized tasks among the most recent ones that we escrowed."""
        total = int(await self.gateway.call(COMMIT_REGISTRY, "getTotalTasks"))
        start = max(1, total - self.config.settlement_scan_depth + 1)

        for task_id in range(start, total + 1):
            record = self.records.get(task_id)
            if record is not None and record.is_terminal:
                continue
            try:
                if not await self.consensus.has_consensus(task_id):
                    continue
                escrow = await self.get_escrow(task_id)
            except NetworkError as e:
                logger.debug(f"[{self.name}] Settlement scan skipped task {task_id}: {e}")
                continue
            if self._owns(escrow) and escrow.state == EscrowState.LOCKED:
                logger.info(f"[{self.name}] 🔁 Settlement scan found unreleased task {task_id}")
                await self.settle(task_id)

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        status["settled"] = self.settled_count
        return status
