"""
Client-side task lifecycle shared by the provider and buyer roles.

States:
- AWAITING_REVEAL: own commit confirmed, reveal once a paying escrow exists
- AWAITING_CONSENSUS: revealed, waiting for the oracle network
- SETTLING: finalization observed, releasing funds
- AWAITING_CONFIRMATION: a transaction was broadcast but has no receipt yet;
  it is resolved by hash before anything else is sent for the task
- FAILED_RETRY: transient failure, back to the previous state after a backoff
- SETTLED / ABANDONED: terminal
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config import Config
from ..infrastructure.contract_abis import COMMIT_REGISTRY, ESCROW_MANAGER
from ..infrastructure.errors import (
    InsufficientFundsError,
    NetworkError,
    RevertError,
    SettlementError,
    StaleStateError,
    SubmissionError,
    TransactionPendingError,
)
from ..infrastructure.models import Escrow, Receipt, Task
from .base_role import BaseRole

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Client-side view of a task."""
    AWAITING_REVEAL = "awaiting_reveal"
    AWAITING_CONSENSUS = "awaiting_consensus"
    SETTLING = "settling"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    FAILED_RETRY = "failed_retry"
    SETTLED = "settled"
    ABANDONED = "abandoned"


TERMINAL_STATES = {LifecycleState.SETTLED, LifecycleState.ABANDONED}


@dataclass
class TaskRecord:
    """Per-task state owned by one role controller."""
    task_id: int
    state: LifecycleState
    cid: Optional[str] = None
    previous_state: Optional[LifecycleState] = None
    retry_count: int = 0
    final_score: Optional[int] = None
    last_error: Optional[str] = None
    tx_hashes: Dict[str, str] = field(default_factory=dict)
    # Broadcast whose outcome is still open; tx hash is None when the node
    # only reported the nonce as used
    pending_action: Optional[str] = None
    pending_tx: Optional[str] = None
    resume_state: Optional[LifecycleState] = None
    confirmation_checks: int = 0
    updated_at: datetime = field(default_factory=datetime.now)
    history: List[Tuple[str, str, str]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: LifecycleState, reason: str, owner: str = ""):
        if new_state == self.state:
            return
        old_state = self.state
        self.state = new_state
        self.updated_at = datetime.now()
        self.history.append((old_state.value, new_state.value, reason))
        logger.info(
            f"[{owner}] Task {self.task_id}: {old_state.value} → {new_state.value} ({reason})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "state": self.state.value,
            "cid": self.cid,
            "retry_count": self.retry_count,
            "final_score": self.final_score,
            "last_error": self.last_error,
            "tx_hashes": dict(self.tx_hashes),
            "pending": {"action": self.pending_action, "tx_hash": self.pending_tx}
            if self.pending_action else None,
            "updated_at": self.updated_at.isoformat(),
        }


class InFlightGuard:
    """
    Membership set with check-then-set under one lock.

    Prevents two concurrent attempts of the same side effect for a task
    when overlapping triggers (event, sweep, retry) fire together.
    """

    def __init__(self):
        self._active: Set[int] = set()
        self._lock = asyncio.Lock()

    async def acquire(self, task_id: int) -> bool:
        async with self._lock:
            if task_id in self._active:
                return False
            self._active.add(task_id)
            return True

    async def release(self, task_id: int):
        async with self._lock:
            self._active.discard(task_id)

    def __contains__(self, task_id: int) -> bool:
        return task_id in self._active

    def __len__(self) -> int:
        return len(self._active)


TaskAction = Callable[[TaskRecord], Awaitable[None]]


class TaskLifecycleController(BaseRole):
    """
    Base controller for roles that drive tasks through the lifecycle.

    Subclasses implement the ledger side effects; this class owns task
    records, the in-flight guard and the Failed/Retry backoff.
    """

    def __init__(self, name: str, gateway, submitter, role_config: Optional[Config] = None):
        super().__init__(name, role_config)
        self.gateway = gateway
        self.submitter = submitter
        self.records: Dict[int, TaskRecord] = {}
        self.guard = InFlightGuard()
        self.retry_backoff = self.config.retry_backoff
        self.max_retries = self.config.max_retries
        self.confirmation_poll = self.config.poll_interval

    @property
    def address(self) -> str:
        return self.submitter.address

    def record(self, task_id: int, initial_state: LifecycleState) -> TaskRecord:
        if task_id not in self.records:
            self.records[task_id] = TaskRecord(task_id=task_id, state=initial_state)
        return self.records[task_id]

    def transition(self, record: TaskRecord, new_state: LifecycleState, reason: str):
        record.transition(new_state, reason, owner=self.name)
        self.last_activity = record.updated_at

    async def get_task(self, task_id: int) -> Task:
        return Task.from_contract(task_id, await self.gateway.call(COMMIT_REGISTRY, "getTask", task_id))

    async def get_escrow(self, task_id: int) -> Escrow:
        return Escrow.from_contract(await self.gateway.call(ESCROW_MANAGER, "getEscrow", task_id))

    # ------------------------------------------------------------------
    # Submission and pending outcomes
    # ------------------------------------------------------------------

    async def submit_for(self, record: TaskRecord, key: str, contract_name: str, method_name: str,
                         *args, value: int = 0) -> Receipt:
        """
        Send the transaction for one lifecycle step of a task.

        Nothing is sent while an earlier broadcast for the task is unresolved.
        A broadcast without a receipt parks the task in AWAITING_CONFIRMATION.

        Raises:
            TransactionPendingError: earlier or current broadcast has no receipt yet
        """
        if record.pending_action is not None:
            if record.state != LifecycleState.AWAITING_CONFIRMATION:
                self.transition(record, LifecycleState.AWAITING_CONFIRMATION, f"{record.pending_action} unresolved")
            raise TransactionPendingError(
                f"{record.pending_action} for task {record.task_id} is unresolved, not sending {key}",
                tx_hash=record.pending_tx
            )

        result = await self.submitter.execute(contract_name, method_name, *args, value=value)
        if result.tx_hash:
            record.tx_hashes[key] = result.tx_hash
        if result.pending:
            self.await_confirmation(record, key, result.tx_hash)
        return result.unwrap()

    def await_confirmation(self, record: TaskRecord, key: str, tx_hash: Optional[str]):
        record.pending_action = key
        record.pending_tx = tx_hash
        record.resume_state = record.state
        record.confirmation_checks = 0
        self.transition(
            record, LifecycleState.AWAITING_CONFIRMATION,
            f"{key} broadcast {tx_hash or '(hash unknown)'} without receipt"
        )

    def clear_pending(self, record: TaskRecord, reason: str):
        """Close the open broadcast and return to the state it was sent from."""
        if record.pending_action is None:
            return
        resume = record.resume_state
        record.pending_action = None
        record.pending_tx = None
        record.resume_state = None
        if record.state == LifecycleState.AWAITING_CONFIRMATION and resume is not None:
            self.transition(record, resume, reason)

    async def resolve_pending(self, record: TaskRecord):
        """
        Look up the receipt of the open broadcast.

        Without a tx hash only the ledger can tell, so the step re-reads it
        and submit_for keeps refusing to send.

        Raises:
            TransactionPendingError: still no receipt
            SettlementError: the transaction was mined and reverted
        """
        if record.pending_action is None or record.pending_tx is None:
            return

        key, tx_hash = record.pending_action, record.pending_tx
        receipt = await self.gateway.wait_for_confirmation(tx_hash, self.confirmation_poll)
        if receipt is None:
            raise TransactionPendingError(f"{key} {tx_hash} still has no receipt", tx_hash=tx_hash)

        if receipt.succeeded:
            self.clear_pending(record, f"{key} confirmed in block {receipt.block_number}")
            return
        self.clear_pending(record, f"{key} reverted in block {receipt.block_number}")
        raise SettlementError(f"{key} reverted on-chain in block {receipt.block_number}", tx_hash=tx_hash)

    async def run_guarded(self, record: TaskRecord, action_name: str, action: TaskAction) -> bool:
        """
        Run one lifecycle side effect for a task.

        Returns:
            False when another attempt for the same task is already in flight
        """
        if not await self.guard.acquire(record.task_id):
            logger.info(f"[{self.name}] ⚠️ {action_name} for task {record.task_id} already in flight, skipping")
            return False

        try:
            await self.resolve_pending(record)
            await action(record)
        except TransactionPendingError as e:
            record.last_error = str(e)
            logger.info(f"[{self.name}] ⏳ {action_name} for task {record.task_id}: {e}")
            self.schedule_confirmation_check(record, action_name, action)
        except StaleStateError as e:
            logger.warning(f"[{self.name}] ⚠️ {action_name} for task {record.task_id} skipped: {e}")
            record.last_error = str(e)
        except SettlementError as e:
            record.last_error = str(e)
            self.log_error(f"{action_name} for task {record.task_id} reverted on-chain", e)
        except RevertError as e:
            record.last_error = e.reason
            if e.is_time_window:
                self.schedule_retry(record, action_name, action, e)
            else:
                self.log_error(f"{action_name} for task {record.task_id} rejected", e)
        except (NetworkError, InsufficientFundsError, SubmissionError) as e:
            record.last_error = str(e)
            if record.pending_action is not None:
                self.schedule_confirmation_check(record, action_name, action)
            else:
                self.schedule_retry(record, action_name, action, e)
        finally:
            await self.guard.release(record.task_id)
        return True

    def schedule_retry(self, record: TaskRecord, action_name: str, action: TaskAction, error: Exception):
        """Enter FAILED_RETRY and come back to the previous state after the backoff."""
        if record.retry_count >= self.max_retries:
            self.log_error(f"{action_name} for task {record.task_id} gave up after {record.retry_count} retries", error)
            self.transition(record, LifecycleState.ABANDONED, f"retries exhausted: {error}")
            return

        record.retry_count += 1
        if record.state != LifecycleState.FAILED_RETRY:
            record.previous_state = record.state
        self.transition(
            record, LifecycleState.FAILED_RETRY,
            f"{action_name} failed ({type(error).__name__}), retry {record.retry_count} in {self.retry_backoff}s"
        )
        self.spawn(self._retry_later(record, action_name, action), f"retry-{action_name}-{record.task_id}")

    async def _retry_later(self, record: TaskRecord, action_name: str, action: TaskAction):
        if not await self.sleep_unless_stopped(self.retry_backoff):
            return
        if record.state != LifecycleState.FAILED_RETRY:
            # Another trigger already moved the task on
            return
        self.transition(record, record.previous_state, f"🔁 retrying {action_name}")
        await self.run_guarded(record, action_name, action)

    def schedule_confirmation_check(self, record: TaskRecord, action_name: str, action: TaskAction):
        """Look for the receipt again after the backoff, a bounded number of times."""
        if record.confirmation_checks >= self.max_retries:
            self.log_error(
                f"{record.pending_action} for task {record.task_id} still unresolved after "
                f"{record.confirmation_checks} checks, waiting for the next trigger"
            )
            return
        record.confirmation_checks += 1
        self.spawn(self._check_later(record, action_name, action), f"confirm-{action_name}-{record.task_id}")

    async def _check_later(self, record: TaskRecord, action_name: str, action: TaskAction):
        if not await self.sleep_unless_stopped(self.retry_backoff):
            return
        if record.pending_action is None:
            return
        await self.run_guarded(record, action_name, action)

    def get_health_status(self) -> Dict[str, Any]:
        status = super().get_health_status()
        counts: Dict[str, int] = {}
        for record in self.records.values():
            counts[record.state.value] = counts.get(record.state.value, 0) + 1
        status["tasks"] = counts
        status["address"] = self.address
        status["submitter"] = self.submitter.get_stats()
        return status
