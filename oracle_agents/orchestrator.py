"""
Agent orchestrator: builds and supervises every role in one process.

Owns the shared LedgerGateway, one EventIngestionLoop per ledger topic,
the provider and buyer controllers, the consensus monitor and M oracle
nodes. Roles start concurrently; a role that fails to start is recorded
and reported, the others keep running.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .buyer_agent.controller import BuyerController
from .config import Config, config as default_config
from .core.base_role import DEFAULT_DRAIN_TIMEOUT, BaseRole
from .infrastructure.content_store import ContentStore
from .infrastructure.contract_abis import COMMIT_REGISTRY, ESCROW_MANAGER, VERIFICATION_AGGREGATOR
from .infrastructure.errors import ConfigurationError
from .infrastructure.event_ingestion import EventIngestionLoop
from .infrastructure.funding import FaucetFunder
from .infrastructure.ledger_gateway import LedgerGateway
from .infrastructure.models import LogEntry
from .infrastructure.transaction_submitter import Funder, NonceManager, TransactionSubmitter
from .oracle_agent.consensus import ConsensusAggregator
from .oracle_agent.oracle_node import OracleNode
from .oracle_agent.scorer import Scorer, create_scorer
from .provider_agent.artifact_generator import ArtifactGenerator
from .provider_agent.controller import ProviderController

logger = logging.getLogger(__name__)

TOPICS: List[Tuple[str, str]] = [
    (COMMIT_REGISTRY, "TaskCommitted"),
    (COMMIT_REGISTRY, "TaskRevealed"),
    (ESCROW_MANAGER, "FundsLocked"),
    (VERIFICATION_AGGREGATOR, "VerificationSubmitted"),
    (VERIFICATION_AGGREGATOR, "ConsensusReached"),
    (VERIFICATION_AGGREGATOR, "TaskFinalized"),
]


class AgentOrchestrator:
    """
    Supervisor for provider, buyer and oracle roles.

    Startup is "start all, collect failures"; shutdown stops ingestion
    first, then lets each role drain its in-flight transactions.
    """

    def __init__(
        self,
        orchestrator_config: Optional[Config] = None,
        gateway=None,
        content_store: Optional[ContentStore] = None,
        scorer: Optional[Scorer] = None,
        funder: Optional[Funder] = None,
        generator: Optional[ArtifactGenerator] = None
    ):
        self.config = orchestrator_config or default_config
        self.gateway = gateway or LedgerGateway(self.config)
        self.nonces = NonceManager(self.gateway)
        if funder is None and self.config.auto_fund:
            funder = FaucetFunder(self.gateway, self.config, nonce_manager=self.nonces)
        self.funder = funder
        self.content_store = content_store or ContentStore(self.config)
        self.scorer = scorer or create_scorer(self.config)
        self.generator = generator

        self.loops: Dict[str, EventIngestionLoop] = {
            f"{contract}.{event}": EventIngestionLoop(self.gateway, contract, event, self.config)
            for contract, event in TOPICS
        }
        self.consensus = ConsensusAggregator(self.gateway, self.config)

        self.provider: Optional[ProviderController] = None
        self.buyer: Optional[BuyerController] = None
        self.oracles: List[OracleNode] = []
        self.roles: Dict[str, BaseRole] = {}
        self.failures: Dict[str, str] = {}

        self.running = False
        self._built = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _account(self, private_key: Optional[str], role_name: str) -> LocalAccount:
        if not private_key:
            raise ConfigurationError(f"{role_name}: private key not configured")
        return Account.from_key(private_key)

    def _submitter(self, account: LocalAccount) -> TransactionSubmitter:
        return TransactionSubmitter(
            self.gateway, account, self.config, funder=self.funder, nonce_manager=self.nonces
        )

    def build_roles(self):
        """Create every role. A role whose identity is missing is recorded as failed."""
        if self._built:
            return
        self._built = True

        builders: List[Tuple[str, Callable[[], BaseRole]]] = [
            ("provider", self._build_provider),
            ("buyer", self._build_buyer),
        ]
        for index in range(1, self.config.oracle_count + 1):
            builders.append((f"oracle-{index}", lambda i=index: self._build_oracle(i)))

        for name, build in builders:
            try:
                self.roles[name] = build()
            except (ConfigurationError, ValueError) as e:
                self.failures[name] = str(e)
                logger.error(f"❌ Cannot build {name}: {e}")

        self._wire()

    def _build_provider(self) -> ProviderController:
        account = self._account(self.config.provider_private_key, "provider")
        self.provider = ProviderController(
            self.gateway,
            self._submitter(account),
            self.content_store,
            consensus=self.consensus,
            generator=self.generator,
            role_config=self.config,
        )
        return self.provider

    def _build_buyer(self) -> BuyerController:
        account = self._account(self.config.buyer_private_key, "buyer")
        self.buyer = BuyerController(self.gateway, self._submitter(account), self.consensus, self.config)
        return self.buyer

    def _build_oracle(self, index: int) -> OracleNode:
        keys = self.config.oracle_private_keys
        key = keys[index - 1] if index <= len(keys) else None
        account = self._account(key, f"oracle-{index}")
        node = OracleNode(
            index,
            account,
            self.gateway,
            self._submitter(account),
            self.content_store,
            self.scorer,
            self.consensus,
            self.config,
        )
        self.oracles.append(node)
        return node

    def _subscribe(self, contract: str, event: str, handler: Callable[[LogEntry], Awaitable[None]]):
        self.loops[f"{contract}.{event}"].subscribe(handler)

    def _wire(self):
        """Connect ingestion loops and the consensus monitor to role handlers."""
        if self.buyer is not None:
            self._subscribe(COMMIT_REGISTRY, "TaskCommitted", self.buyer.on_task_committed)
            self._subscribe(COMMIT_REGISTRY, "TaskRevealed", self.buyer.on_task_revealed)
            self._subscribe(VERIFICATION_AGGREGATOR, "TaskFinalized", self.buyer.on_task_finalized)

        if self.provider is not None:
            self._subscribe(ESCROW_MANAGER, "FundsLocked", self.provider.on_funds_locked)

        for node in self.oracles:
            self._subscribe(COMMIT_REGISTRY, "TaskRevealed", node.on_task_revealed)
            self.consensus.subscribe(node.on_consensus_status)

        self._subscribe(VERIFICATION_AGGREGATOR, "VerificationSubmitted", self._on_verification_submitted)
        self._subscribe(VERIFICATION_AGGREGATOR, "ConsensusReached", self.consensus.on_finalized_event)
        self._subscribe(VERIFICATION_AGGREGATOR, "TaskFinalized", self.consensus.on_finalized_event)

    async def _on_verification_submitted(self, entry: LogEntry):
        task_id = int(entry.args["taskId"])
        logger.info(
            f"📝 Verification for task {task_id}: score {entry.args.get('score')} "
            f"by {entry.args.get('verifier')}"
        )
        self.consensus.watch(task_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _start_role(self, name: str, role: BaseRole):
        if self.funder is not None and self.config.auto_fund:
            address = getattr(role, "address", None)
            if address:
                await self.funder.ensure_funded(address)
        await role.start()

    async def start(self):
        """Start every role concurrently, then the monitor and the ingestion loops."""
        logger.info("🚀 Starting oracle agent network")
        if not await self.gateway.initialize():
            logger.warning("⚠️ Ledger not reachable yet, loops will keep retrying")

        self.build_roles()

        names = list(self.roles)
        results = await asyncio.gather(
            *(self._start_role(name, self.roles[name]) for name in names),
            return_exceptions=True
        )
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                self.failures[name] = f"{type(result).__name__}: {result}"
                logger.error(f"❌ Role {name} failed to start: {result}")

        await self.consensus.start()
        for loop in self.loops.values():
            loop.start()

        self.running = True
        running = [name for name, role in self.roles.items() if role.running]
        total = len(set(self.roles) | set(self.failures))
        logger.info(f"✅ {len(running)}/{total} roles running, {len(self.loops)} event loops")

    async def stop(self, drain_timeout: float = DEFAULT_DRAIN_TIMEOUT):
        """Stop ingestion, then drain every role. Safe to call twice."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Stopping oracle agent network...")

        for loop in self.loops.values():
            loop.stop()
        await asyncio.gather(
            *(loop.wait_stopped() for loop in self.loops.values()),
            return_exceptions=True
        )

        results = await asyncio.gather(
            *(role.stop(drain_timeout) for role in self.roles.values()),
            self.consensus.stop(drain_timeout),
            return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"❌ Error while stopping a role: {result}")

        self.running = False
        logger.info("🛑 Oracle agent network stopped")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def health_check(self) -> Dict[str, Any]:
        """Aggregate per-role and per-loop state."""
        roles: Dict[str, Any] = {
            name: role.get_health_status() for name, role in self.roles.items()
        }
        for name, error in self.failures.items():
            roles.setdefault(name, {"name": name, "running": False})
            roles[name]["startup_error"] = error

        loops = {name: loop.get_status() for name, loop in self.loops.items()}

        running = [name for name, status in roles.items() if status.get("running")]
        if roles and len(running) == len(roles) and all(l["running"] for l in loops.values()):
            status = "healthy"
        elif running:
            status = "degraded"
        else:
            status = "unhealthy"

        return {
            "status": status,
            "running": self.running,
            "roles": roles,
            "loops": loops,
            "consensus": self.consensus.get_health_status(),
        }

    def oracle_status(self) -> List[Dict[str, Any]]:
        report = []
        for node in self.oracles:
            health = node.get_health_status()
            report.append({
                "id": node.oracle_id,
                "address": node.address,
                "running": health["running"],
                "registered": health["registered"],
                "last_activity": health["last_activity"],
                "error_count": health["error_count"],
                "last_error": health["last_error"],
                "queue": health["queue"],
            })
        return report

    def get_status(self) -> Dict[str, Any]:
        """Health plus task-level detail for operators."""
        status = self.health_check()
        status["tasks"] = {
            name: [record.to_dict() for record in role.records.values()]
            for name, role in self.roles.items()
            if hasattr(role, "records")
        }
        status["consensus"]["tasks"] = {
            task_id: s.to_dict() for task_id, s in self.consensus.latest.items()
        }
        status["config"] = {
            "oracle_count": self.config.oracle_count,
            "quorum": self.config.quorum_size(),
            "score_tolerance": self.config.score_tolerance,
            "poll_interval": self.config.poll_interval,
        }
        return status
