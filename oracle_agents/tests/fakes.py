"""
In-memory stand-ins for the ledger, the content store and the faucet.

FakeGateway implements the LedgerGateway surface the agents use and
applies the effects of confirmed transactions to a small ledger model,
so controllers can be driven end to end without a node.
"""

import asyncio
import dataclasses
import json
import math
import statistics
from typing import Any, Callable, Dict, List, Optional, Tuple

from oracle_agents.config import Config
from oracle_agents.infrastructure.content_store import UploadResult
from oracle_agents.infrastructure.errors import NetworkError, ParseError, RevertError
from oracle_agents.infrastructure.models import (
    ZERO_ADDRESS,
    EscrowState,
    LogEntry,
    Receipt,
    TaskState,
)
from oracle_agents.infrastructure.transaction_submitter import Funder

# Deterministic test keys (the well-known anvil development accounts)
PROVIDER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
BUYER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
ORACLE_KEYS = [
    "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
    "0x7c852118294e51e653712a81e05800f419141751be58f605c371e15141b007a6",
    "0x47e179ec197488593b187f80a00eb0da91f1b9d0b13f8733639f19c30a34926a",
]
FUNDING_KEY = "0x8b3a350cf5c34c9194ca85829a2df0ec3153be0318b5e2d3348e872092edffba"

EVENT_TOPICS = {
    "TaskCommitted": "0x" + "01" * 32,
    "TaskRevealed": "0x" + "02" * 32,
    "FundsLocked": "0x" + "03" * 32,
    "VerificationSubmitted": "0x" + "04" * 32,
    "TaskFinalized": "0x" + "05" * 32,
    "ConsensusReached": "0x" + "06" * 32,
}


def make_log(event: str, block: int, log_index: int = 0, tx_hash: Optional[str] = None,
             args: Optional[Dict[str, Any]] = None, data: str = "0x") -> LogEntry:
    """Raw log entry as the ingestion loop receives it; args are applied by decode_log."""
    return LogEntry(
        block_number=block,
        transaction_hash=tx_hash or f"0x{block:060x}{log_index:04x}",
        log_index=log_index,
        address="0x" + "aa" * 20,
        topics=[EVENT_TOPICS.get(event, "0x")],
        data=data,
        raw={"event": event, "args": dict(args or {})},
    )


@dataclasses.dataclass
class FakeTask:
    provider: str
    market_id: int
    stake: int
    commit_hash: bytes = b"\x00" * 32
    timestamp: int = 1_700_000_000
    state: TaskState = TaskState.COMMITTED
    cid: str = ""
    score: int = 0
    reveal_deadline: int = 4_000_000_000
    validation_deadline: int = 4_000_000_000
    can_reveal: bool = True
    can_validate: bool = True

    def as_tuple(self) -> Tuple:
        return (
            self.commit_hash, self.provider, self.market_id, self.stake, self.timestamp,
            int(self.state), self.cid, self.score, ZERO_ADDRESS,
            self.reveal_deadline, self.validation_deadline,
        )


@dataclasses.dataclass
class FakeEscrow:
    task_id: int
    buyer: str
    provider: str
    amount: int
    state: EscrowState = EscrowState.LOCKED

    def as_tuple(self) -> Tuple:
        return (self.task_id, self.buyer, self.provider, self.amount, 1_700_000_000,
                int(self.state), 0, ZERO_ADDRESS)


class FakeGateway:
    """LedgerGateway replacement backed by dictionaries."""

    def __init__(self, current_block: int = 200, finalize_after: int = 3,
                 quorum: int = 2, tolerance: float = 0.15):
        self.current_block = current_block
        self.finalize_after = finalize_after
        self.quorum = quorum
        self.tolerance = tolerance

        self.tasks: Dict[int, FakeTask] = {}
        self.escrows: Dict[int, FakeEscrow] = {}
        self.verifications: Dict[int, List[Tuple]] = {}
        self.consensus: Dict[int, int] = {}
        self.time_remaining: Dict[int, int] = {}
        self.active_oracles: set = set()
        self.balances: Dict[str, int] = {}
        self.default_balance = 10 ** 21
        self.nonces: Dict[str, int] = {}

        self.logs: Dict[str, List[LogEntry]] = {}
        self.log_queries: List[Tuple[str, int, int]] = []
        self.fail_block_number = 0
        self.fail_range: Optional[Callable[[int, int], bool]] = None

        self.submitted: List[Dict[str, Any]] = []
        self.simulated: List[Tuple[str, str]] = []
        self.reverts: Dict[str, str] = {}
        self.submit_errors: List[Exception] = []
        self.mined_reverts: set = set()
        self.unconfirmed: set = set()
        # Methods whose broadcasts stay in the mempool until mine() is called
        self.unmined: set = set()
        self.mempool: Dict[str, Tuple] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.transfers: List[Tuple[str, int]] = []
        self.call_errors: Dict[str, Exception] = {}

    # ------------------------------------------------------------------
    # Helpers for tests
    # ------------------------------------------------------------------

    def add_task(self, task_id: int, provider: str, **kwargs) -> FakeTask:
        kwargs.setdefault("market_id", 1)
        kwargs.setdefault("stake", 10 ** 16)
        task = FakeTask(provider=provider, **kwargs)
        self.tasks[task_id] = task
        return task

    def add_escrow(self, task_id: int, buyer: str, amount: int = 5 * 10 ** 16, **kwargs) -> FakeEscrow:
        escrow = FakeEscrow(task_id, buyer, self.tasks[task_id].provider, amount, **kwargs)
        self.escrows[task_id] = escrow
        return escrow

    def add_log(self, event: str, block: int, log_index: int = 0, **kwargs) -> LogEntry:
        entry = make_log(event, block, log_index, **kwargs)
        self.logs.setdefault(event, []).append(entry)
        return entry

    def methods_submitted(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [s for s in self.submitted if method is None or s["method"] == method]

    # ------------------------------------------------------------------
    # Gateway surface
    # ------------------------------------------------------------------

    async def initialize(self, addresses=None) -> bool:
        return True

    async def is_connected(self) -> bool:
        return True

    async def block_number(self) -> int:
        if self.fail_block_number:
            self.fail_block_number -= 1
            raise NetworkError("block number unavailable")
        return self.current_block

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address.lower(), self.default_balance)

    async def gas_price(self) -> int:
        return 1

    async def pending_nonce(self, address: str) -> int:
        return self.nonces.get(address.lower(), 0)

    async def estimate_gas(self, contract_name, method_name, *args, sender, value=0) -> int:
        return 100_000

    async def call(self, contract_name: str, method_name: str, *args) -> Any:
        if method_name in self.call_errors:
            raise self.call_errors[method_name]
        task_id = args[0] if args else None

        if method_name == "getTask":
            task = self.tasks.get(task_id)
            if task is None:
                return FakeTask(provider=ZERO_ADDRESS, market_id=0, stake=0).as_tuple()
            return task.as_tuple()
        if method_name == "canReveal":
            task = self.tasks.get(task_id)
            return bool(task and task.state == TaskState.COMMITTED and task.can_reveal)
        if method_name == "canValidate":
            task = self.tasks.get(task_id)
            return bool(task and task.state == TaskState.REVEALED and task.can_validate)
        if method_name == "getTotalTasks":
            return max(self.tasks) if self.tasks else 0
        if method_name == "getEscrow":
            escrow = self.escrows.get(task_id)
            if escrow is None:
                return (task_id, ZERO_ADDRESS, ZERO_ADDRESS, 0, 0, 0, 0, ZERO_ADDRESS)
            return escrow.as_tuple()
        if method_name == "getSubmissionCount":
            return len(self.verifications.get(task_id, []))
        if method_name == "hasConsensus":
            return task_id in self.consensus
        if method_name == "taskFinalized":
            return task_id in self.consensus
        if method_name == "getTimeRemaining":
            return self.time_remaining.get(task_id, 3600)
        if method_name == "getTaskSubmissions":
            return list(self.verifications.get(task_id, []))
        if method_name == "isActiveOracle":
            return args[0].lower() in self.active_oracles
        if method_name == "getActiveOracleCount":
            return len(self.active_oracles)
        raise AssertionError(f"Unexpected call {contract_name}.{method_name}")

    async def simulate(self, contract_name, method_name, *args, sender, value=0):
        self.simulated.append((contract_name, method_name))
        if method_name in self.reverts:
            raise RevertError(self.reverts[method_name])
        reason = self._precondition(method_name, args, sender)
        if reason:
            raise RevertError(reason)
        return None

    def _precondition(self, method_name: str, args, sender: str) -> Optional[str]:
        task_id = args[0] if args else None
        if method_name == "revealTask":
            task = self.tasks.get(task_id)
            if not task or task.state != TaskState.COMMITTED or not task.can_reveal:
                return "Reveal window closed"
        if method_name == "lockFunds" and task_id in self.escrows:
            return "Escrow already exists"
        if method_name == "releaseFunds":
            escrow = self.escrows.get(task_id)
            if not escrow or escrow.state != EscrowState.LOCKED:
                return "Escrow not locked"
        if method_name == "submitVerification":
            if any(v[0].lower() == sender.lower() for v in self.verifications.get(task_id, [])):
                return "Already submitted"
        return None

    async def submit(self, contract_name, method_name, *args, account, nonce, gas, value=0, gas_price=None) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)

        tx_hash = f"0x{len(self.submitted) + 1:064x}"
        self.submitted.append({
            "contract": contract_name,
            "method": method_name,
            "args": args,
            "value": value,
            "sender": account.address,
            "nonce": nonce,
            "tx_hash": tx_hash,
        })
        self.nonces[account.address.lower()] = nonce + 1

        if method_name in self.unmined:
            self.mempool[tx_hash] = (method_name, args, value, account.address)
            return tx_hash
        self._mine_one(tx_hash, method_name, args, value, account.address)
        return tx_hash

    def _mine_one(self, tx_hash: str, method_name: str, args, value: int, sender: str):
        logs: List[LogEntry] = []
        status = 0 if method_name in self.mined_reverts else 1
        if status:
            logs = self._apply(method_name, args, value, sender, tx_hash)
        self.current_block += 1
        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash, block_number=self.current_block, status=status,
            gas_used=50_000, effective_gas_price=1, logs=logs,
        )

    def mine(self):
        """Include every mempool transaction, in broadcast order."""
        pending, self.mempool = self.mempool, {}
        for tx_hash, (method_name, args, value, sender) in pending.items():
            self._mine_one(tx_hash, method_name, args, value, sender)

    def _apply(self, method_name: str, args, value: int, sender: str, tx_hash: str) -> List[LogEntry]:
        block = self.current_block + 1
        if method_name == "commitTask":
            task_id = (max(self.tasks) if self.tasks else 0) + 1
            self.add_task(task_id, sender, commit_hash=args[0], market_id=args[1], stake=args[2])
            return [make_log("TaskCommitted", block, 0, tx_hash=tx_hash, args={
                "taskId": task_id, "commitHash": args[0], "provider": sender,
                "marketId": args[1], "stake": args[2], "timestamp": 0,
            })]
        if method_name == "revealTask":
            task = self.tasks[args[0]]
            task.state = TaskState.REVEALED
            task.cid = args[1]
        elif method_name == "lockFunds":
            self.add_escrow(args[0], sender, amount=value)
        elif method_name == "releaseFunds":
            self.escrows[args[0]].state = EscrowState.RELEASED
            self.tasks[args[0]].state = TaskState.SETTLED
        elif method_name == "submitVerification":
            task_id, score, signature = args
            self.verifications.setdefault(task_id, []).append((sender, score, signature, 0, True))
            self._evaluate(task_id)
        elif method_name == "registerOracle":
            self.active_oracles.add(sender.lower())
        return []

    def _evaluate(self, task_id: int):
        """Ledger-side rule: median within tolerance, checked once enough oracles answered."""
        submissions = self.verifications[task_id]
        if task_id in self.consensus or len(submissions) < self.finalize_after:
            return
        scores = [s[1] for s in submissions]
        median = statistics.median(scores)
        within = [s for s in scores if abs(s - median) <= self.tolerance * median]
        if len(within) >= self.quorum:
            final = math.floor(median + 0.5)
            self.consensus[task_id] = final
            task = self.tasks[task_id]
            task.state = TaskState.VALIDATED
            task.score = final

    async def transfer(self, account, to: str, value: int, nonce: int, gas: int = 21000) -> str:
        self.transfers.append((to, value))
        key = to.lower()
        self.balances[key] = self.balances.get(key, 0) + value
        return f"0x{len(self.transfers):064x}"

    async def wait_for_confirmation(self, tx_hash: str, timeout=None) -> Optional[Receipt]:
        if tx_hash in self.unconfirmed or tx_hash in self.mempool:
            return None
        for entry in self.submitted:
            if entry["tx_hash"] == tx_hash and entry["method"] in self.unconfirmed:
                return None
        return self.receipts.get(tx_hash) or Receipt(tx_hash, self.current_block, 1, 21_000, 1)

    def topic(self, contract_name: str, event_name: str) -> str:
        return EVENT_TOPICS[event_name]

    async def get_logs(self, contract_name: str, event_name: str, from_block: int, to_block: int) -> List[LogEntry]:
        self.log_queries.append((event_name, from_block, to_block))
        if self.fail_range is not None and self.fail_range(from_block, to_block):
            raise NetworkError(f"query [{from_block}, {to_block}] rejected")
        entries = [
            dataclasses.replace(entry, args={})
            for entry in self.logs.get(event_name, [])
            if from_block <= entry.block_number <= to_block
        ]
        entries.sort(key=lambda e: (e.block_number, e.log_index))
        return entries

    def decode_log(self, contract_name: str, event_name: str, entry: LogEntry) -> LogEntry:
        if entry.data == "0xbad" or not isinstance(entry.raw, dict):
            raise ParseError(f"Cannot decode {event_name} log {entry.transaction_hash}:{entry.log_index}")
        entry.event = event_name
        entry.args = dict(entry.raw["args"])
        return entry


class FakeContentStore:
    """Content store keeping artifacts per (cid, owner)."""

    def __init__(self):
        self.blobs: Dict[str, Tuple[str, bytes]] = {}
        self.fail_get = False

    async def put(self, data, owner: str, task_ref: int = 0) -> UploadResult:
        if isinstance(data, dict):
            data = json.dumps(data, sort_keys=True)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        cid = f"bafkfake{len(self.blobs) + 1}"
        self.blobs[cid] = (owner.lower(), payload)
        return UploadResult(success=True, cid=cid, size=len(payload))

    async def get(self, cid: str, owner: str, task_ref: int = 0) -> bytes:
        if self.fail_get or cid not in self.blobs:
            raise NetworkError(f"Decrypt of {cid} failed: HTTP 404")
        stored_owner, payload = self.blobs[cid]
        if stored_owner != owner.lower():
            raise NetworkError(f"Decrypt of {cid} failed: wrong key")
        return payload


class FakeFunder(Funder):
    """Funder that credits the fake ledger."""

    def __init__(self, gateway: FakeGateway, succeed: bool = True):
        self.gateway = gateway
        self.succeed = succeed
        self.calls: List[Tuple[str, int]] = []

    async def top_up(self, address: str, required_wei: int) -> bool:
        self.calls.append((address, required_wei))
        if self.succeed:
            self.gateway.balances[address.lower()] = required_wei * 2
        return self.succeed


async def no_sleep(delay: float):
    return None


def make_config(**overrides) -> Config:
    """Config with fast timings and the test identities, independent of the environment."""
    cfg = Config()
    values = {
        "chain_id": 31337,
        "commit_registry_address": "0x" + "11" * 20,
        "escrow_manager_address": "0x" + "22" * 20,
        "verification_aggregator_address": "0x" + "33" * 20,
        "oracle_registry_address": "0x" + "44" * 20,
        "provider_private_key": PROVIDER_KEY,
        "buyer_private_key": BUYER_KEY,
        "funding_private_key": None,
        "oracle_private_keys": list(ORACLE_KEYS),
        "oracle_count": 3,
        "consensus_quorum": 2 / 3,
        "score_tolerance": 0.15,
        "oracle_stake": 0.1,
        "market_id": 1,
        "task_creation_interval": 0,
        "provider_stake": 0.05,
        "buyer_max_stake": 0.1,
        "buyer_amount": 0.05,
        "reveal_sweep_interval": 0.05,
        "settlement_scan_interval": 0.05,
        "settlement_scan_depth": 50,
        "poll_interval": 0.01,
        "lookback_blocks": 100,
        "max_block_range": 1000,
        "seen_window_ticks": 20,
        "gas_multiplier": 1.2,
        "retry_backoff": 0.01,
        "max_retries": 3,
        "auto_fund": False,
        "faucet_url": None,
        "min_balance": 0.05,
        "fund_amount": 0.2,
        "balance_wait_attempts": 2,
        "balance_wait_interval": 0,
        "scorer": "heuristic",
        "google_api_key": None,
        "market_expectations": {},
    }
    values.update(overrides)
    for key, value in values.items():
        setattr(cfg, key, value)
    return cfg


async def drain(role):
    """Wait until a role has no background work left, including spawned retries."""
    while role._work:
        await asyncio.gather(*list(role._work))
