"""Data classes for ledger records observed by the agents."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class TaskState(IntEnum):
    """Task states as stored by CommitRegistry."""
    COMMITTED = 0
    REVEALED = 1
    VALIDATED = 2
    SETTLED = 3
    DISPUTED = 4
    CANCELLED = 5


class EscrowState(IntEnum):
    """Escrow states as stored by EscrowManager."""
    LOCKED = 0
    RELEASED = 1
    DISPUTED = 2
    REFUNDED = 3


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "to_0x_hex"):
        return value.to_0x_hex()
    return str(value) if value is not None else ""


@dataclass
class Task:
    """A provider's committed artifact."""
    id: int
    commit_hash: str
    provider: str
    market_id: int
    stake: int
    timestamp: int
    state: TaskState
    cid: str = ""
    final_score: Optional[int] = None
    verifier: str = ZERO_ADDRESS
    reveal_deadline: int = 0
    validation_deadline: int = 0

    @classmethod
    def from_contract(cls, task_id: int, raw: Sequence[Any]) -> "Task":
        """
        Build from the getTask() tuple.

        Order: commitHash, provider, marketId, stake, timestamp, state, cid,
        validationScore, verifier, revealDeadline, validationDeadline.
        """
        state = TaskState(int(raw[5]))
        score = int(raw[7])
        return cls(
            id=task_id,
            commit_hash=_hex(raw[0]),
            provider=raw[1],
            market_id=int(raw[2]),
            stake=int(raw[3]),
            timestamp=int(raw[4]),
            state=state,
            cid=raw[6] or "",
            final_score=score if state >= TaskState.VALIDATED else None,
            verifier=raw[8],
            reveal_deadline=int(raw[9]),
            validation_deadline=int(raw[10]),
        )

    @property
    def exists(self) -> bool:
        return self.provider != ZERO_ADDRESS

    def is_owned_by(self, address: str) -> bool:
        return self.provider.lower() == address.lower()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "commit_hash": self.commit_hash,
            "provider": self.provider,
            "market_id": self.market_id,
            "stake": self.stake,
            "state": self.state.name.lower(),
            "cid": self.cid,
            "final_score": self.final_score,
            "reveal_deadline": self.reveal_deadline,
            "validation_deadline": self.validation_deadline,
        }


@dataclass
class Escrow:
    """Buyer funds locked against a task."""
    task_id: int
    buyer: str
    provider: str
    amount: int
    timestamp: int
    state: EscrowState
    dispute_deadline: int = 0
    disputer: str = ZERO_ADDRESS

    @classmethod
    def from_contract(cls, raw: Sequence[Any]) -> "Escrow":
        """
        Build from the getEscrow() tuple.

        Order: taskId, buyer, provider, amount, timestamp, state,
        disputeDeadline, disputer.
        """
        return cls(
            task_id=int(raw[0]),
            buyer=raw[1],
            provider=raw[2],
            amount=int(raw[3]),
            timestamp=int(raw[4]),
            state=EscrowState(int(raw[5])),
            dispute_deadline=int(raw[6]),
            disputer=raw[7],
        )

    @property
    def exists(self) -> bool:
        """An unset escrow slot has a zero buyer and zero amount."""
        return self.buyer != ZERO_ADDRESS and self.amount > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "buyer": self.buyer,
            "provider": self.provider,
            "amount": self.amount,
            "state": self.state.name.lower(),
            "dispute_deadline": self.dispute_deadline,
        }


@dataclass(frozen=True)
class VerificationSubmission:
    """One oracle's opinion on a task."""
    task_id: int
    oracle: str
    score: int
    signature: bytes
    timestamp: int


@dataclass(frozen=True, order=True)
class ProcessedEventKey:
    """Identity of a log entry across overlapping poll windows."""
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass
class LogEntry:
    """A raw log returned by getLogs, decoded lazily by the ingestion loop."""
    block_number: int
    transaction_hash: str
    log_index: int
    address: str
    topics: List[str]
    data: str
    raw: Any = None
    event: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_web3(cls, log: Any) -> "LogEntry":
        """Build from a web3 log dict."""
        return cls(
            block_number=int(log["blockNumber"]),
            transaction_hash=_hex(log["transactionHash"]),
            log_index=int(log["logIndex"]),
            address=log["address"],
            topics=[_hex(t) for t in log["topics"]],
            data=_hex(log["data"]),
            raw=log,
        )

    @property
    def key(self) -> ProcessedEventKey:
        return ProcessedEventKey(self.block_number, self.transaction_hash, self.log_index)


@dataclass
class Receipt:
    """Confirmed transaction receipt."""
    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    effective_gas_price: int = 0
    logs: List[Any] = field(default_factory=list)

    @classmethod
    def from_web3(cls, receipt: Any) -> "Receipt":
        return cls(
            tx_hash=_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            status=int(receipt["status"]),
            gas_used=int(receipt["gasUsed"]),
            effective_gas_price=int(receipt.get("effectiveGasPrice", 0) or 0),
            logs=list(receipt.get("logs", [])),
        )

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def cost_wei(self) -> int:
        return self.gas_used * self.effective_gas_price
