"""
Transaction submission with preflight checks.

Workflow for every state-changing call:
1. Estimate gas and check the balance covers value + gas * multiplier,
   topping up once through the funder when it does not
2. Simulate the call; a revert stops here and nothing is broadcast
3. Broadcast with an explicit nonce, sequenced per signer
4. Wait for the receipt with the confirmation timeout
5. Report a mined-but-reverted receipt as a SettlementError
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from eth_account.signers.local import LocalAccount

from ..config import Config, config as default_config
from .errors import (
    InsufficientFundsError,
    NetworkError,
    RevertError,
    SettlementError,
    TransactionPendingError,
)
from .models import Receipt

logger = logging.getLogger(__name__)

# Used for the funding requirement when the node refuses to estimate
DEFAULT_GAS_LIMIT = 500_000

# Node messages meaning an earlier broadcast with this nonce was accepted
_NONCE_CONSUMED_HINTS = ("nonce too low", "already known", "known transaction")


class SubmissionStatus(str, Enum):
    """Outcome of TransactionSubmitter.execute."""
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class SubmissionResult:
    """Result of one execute() call."""
    status: SubmissionStatus
    method: str
    tx_hash: Optional[str] = None
    receipt: Optional[Receipt] = None
    error: Optional[Exception] = None
    attempts: int = 0
    funded: bool = False

    @property
    def ok(self) -> bool:
        return self.status == SubmissionStatus.CONFIRMED

    @property
    def pending(self) -> bool:
        return self.status == SubmissionStatus.PENDING

    def unwrap(self) -> Receipt:
        """Return the receipt, raise the failure, or raise TransactionPendingError."""
        if self.ok:
            return self.receipt
        if self.error is not None:
            raise self.error
        raise TransactionPendingError(f"{self.method} is still pending", tx_hash=self.tx_hash)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "method": self.method,
            "tx_hash": self.tx_hash,
            "block_number": self.receipt.block_number if self.receipt else None,
            "error": str(self.error) if self.error else None,
            "attempts": self.attempts,
            "funded": self.funded,
        }


class NonceManager:
    """
    Hands out sequential nonces per signer.

    One instance is shared by every submitter that signs with the same
    identity so concurrent broadcasts never collide.
    """

    def __init__(self, gateway):
        self.gateway = gateway
        self._locks: Dict[str, asyncio.Lock] = {}
        self._next: Dict[str, int] = {}

    def lock_for(self, address: str) -> asyncio.Lock:
        key = address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def current(self, address: str) -> int:
        """Next unused nonce. Call while holding lock_for(address)."""
        key = address.lower()
        if key not in self._next:
            self._next[key] = await self.gateway.pending_nonce(address)
        return self._next[key]

    def advance(self, address: str, used_nonce: int):
        self._next[address.lower()] = used_nonce + 1

    def reset(self, address: str):
        """Forget the cached nonce; the next call re-reads the ledger."""
        self._next.pop(address.lower(), None)


class Funder:
    """Interface of the external top-up collaborator."""

    async def top_up(self, address: str, required_wei: int) -> bool:
        raise NotImplementedError


class TransactionSubmitter:
    """
    Execute contract calls for one signing identity.

    Retries cover funding (one top-up cycle) and network errors around
    broadcast and confirmation. Reverts are terminal for the attempt.
    """

    def __init__(
        self,
        gateway,
        account: LocalAccount,
        submitter_config: Optional[Config] = None,
        funder: Optional[Funder] = None,
        nonce_manager: Optional[NonceManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = submitter_config or default_config
        self.gateway = gateway
        self.account = account
        self.address = account.address
        self.funder = funder
        self.nonces = nonce_manager or NonceManager(gateway)
        self.gas_multiplier = self.config.gas_multiplier
        self.max_retries = max(1, self.config.max_retries)
        self.max_backoff = self.config.retry_backoff
        self._sleep = sleep

        # Gas accounting
        self.transaction_count = 0
        self.failed_count = 0
        self.total_gas_used = 0
        self.total_cost_wei = 0

    def _backoff(self, attempt: int) -> float:
        return min(self.max_backoff, float(2 ** (attempt - 1)))

    def _fail(self, method: str, error: Exception, **kwargs) -> SubmissionResult:
        self.failed_count += 1
        return SubmissionResult(SubmissionStatus.FAILED, method, error=error, **kwargs)

    async def execute(
        self,
        contract_name: str,
        method_name: str,
        *args,
        value: int = 0,
        confirmation_timeout: Optional[float] = None
    ) -> SubmissionResult:
        """
        Run the full preflight, broadcast and confirmation pipeline.

        Args:
            contract_name: logical contract name registered on the gateway
            method_name: contract function to call
            *args: function arguments
            value: wei sent with the call
            confirmation_timeout: overrides the gateway confirmation timeout

        Returns:
            SubmissionResult. ``error`` holds a RevertError, SettlementError,
            InsufficientFundsError or NetworkError when status is FAILED.
        """
        label = f"{contract_name}.{method_name}"

        # Step 1: gas and balance
        try:
            gas, gas_price = await self._estimate(contract_name, method_name, *args, value=value)
        except RevertError as e:
            logger.warning(f"❌ {label} reverts in estimation: {e.reason}")
            return self._fail(label, e)
        except NetworkError as e:
            logger.warning(f"⚠️ {label} estimation failed: {e}")
            return self._fail(label, e)

        required = value + gas * gas_price
        try:
            funded = await self._ensure_balance(required)
        except InsufficientFundsError as e:
            logger.error(f"❌ {label}: {e}")
            return self._fail(label, e)
        except NetworkError as e:
            logger.warning(f"⚠️ {label} balance check failed: {e}")
            return self._fail(label, e)

        # Step 2: simulation
        try:
            await self.gateway.simulate(
                contract_name, method_name, *args, sender=self.address, value=value
            )
        except RevertError as e:
            logger.warning(f"❌ {label} simulation reverted, not submitting: {e.reason}")
            return self._fail(label, e, funded=funded)
        except NetworkError as e:
            logger.warning(f"⚠️ {label} simulation failed: {e}")
            return self._fail(label, e, funded=funded)

        # Step 3: broadcast
        try:
            tx_hash, attempts = await self._broadcast(
                contract_name, method_name, *args, value=value, gas=gas, gas_price=gas_price
            )
        except (NetworkError, RevertError, InsufficientFundsError) as e:
            logger.error(f"❌ {label} broadcast failed: {e}")
            return self._fail(label, e, funded=funded)

        if tx_hash is None:
            logger.warning(f"⏳ {label}: an earlier broadcast consumed the nonce, outcome pending")
            return SubmissionResult(
                SubmissionStatus.PENDING, label, attempts=attempts, funded=funded
            )

        # Step 4: confirmation
        receipt = None
        for attempt in range(1, self.max_retries + 1):
            try:
                receipt = await self.gateway.wait_for_confirmation(tx_hash, confirmation_timeout)
                break
            except NetworkError as e:
                if attempt == self.max_retries:
                    logger.warning(f"⏳ {label} {tx_hash}: cannot confirm, reporting pending: {e}")
                    return SubmissionResult(
                        SubmissionStatus.PENDING, label, tx_hash=tx_hash,
                        error=e, attempts=attempts, funded=funded
                    )
                logger.info(f"🔁 {label} confirmation retry {attempt}: {e}")
                await self._sleep(self._backoff(attempt))

        if receipt is None:
            return SubmissionResult(
                SubmissionStatus.PENDING, label, tx_hash=tx_hash, attempts=attempts, funded=funded
            )

        self.transaction_count += 1
        self.total_gas_used += receipt.gas_used
        self.total_cost_wei += receipt.cost_wei

        # Step 5: mined but reverted
        if not receipt.succeeded:
            error = SettlementError(
                f"{label} reverted on-chain in block {receipt.block_number}", tx_hash=tx_hash
            )
            logger.error(f"❌ {error}")
            return self._fail(
                label, error, tx_hash=tx_hash, receipt=receipt, attempts=attempts, funded=funded
            )

        logger.info(f"✅ {label} confirmed in block {receipt.block_number}: {tx_hash}")
        return SubmissionResult(
            SubmissionStatus.CONFIRMED, label, tx_hash=tx_hash,
            receipt=receipt, attempts=attempts, funded=funded
        )

    async def _estimate(self, contract_name: str, method_name: str, *args, value: int):
        gas_price = await self.gateway.gas_price()
        try:
            estimate = await self.gateway.estimate_gas(
                contract_name, method_name, *args, sender=self.address, value=value
            )
        except InsufficientFundsError:
            # Node refuses to estimate when value exceeds the balance
            estimate = DEFAULT_GAS_LIMIT
        return int(estimate * self.gas_multiplier), gas_price

    async def _ensure_balance(self, required: int) -> bool:
        """
        Check the signer can pay ``required`` wei.

        Returns:
            True when a top-up was needed and succeeded

        Raises:
            InsufficientFundsError: still short after one top-up cycle
        """
        balance = await self.gateway.get_balance(self.address)
        if balance >= required:
            return False

        if self.funder is None:
            raise InsufficientFundsError(required, balance, self.address)

        logger.info(
            f"💰 Balance {balance} < required {required} for {self.address}, requesting top-up"
        )
        await self.funder.top_up(self.address, required)

        balance = await self.gateway.get_balance(self.address)
        if balance < required:
            raise InsufficientFundsError(required, balance, self.address)
        return True

    async def _broadcast(
        self,
        contract_name: str,
        method_name: str,
        *args,
        value: int,
        gas: int,
        gas_price: int
    ):
        """
        Broadcast under the signer's nonce lock.

        A network failure is retried with the same nonce, so at most one of
        the attempts can ever be mined.

        Returns:
            (tx_hash, attempts). tx_hash is None when the node reports the
            nonce as already used by one of our earlier attempts.
        """
        async with self.nonces.lock_for(self.address):
            nonce = await self.nonces.current(self.address)
            for attempt in range(1, self.max_retries + 1):
                try:
                    tx_hash = await self.gateway.submit(
                        contract_name, method_name, *args,
                        account=self.account, nonce=nonce, gas=gas,
                        value=value, gas_price=gas_price
                    )
                    self.nonces.advance(self.address, nonce)
                    return tx_hash, attempt
                except NetworkError as e:
                    message = str(e).lower()
                    if attempt > 1 and any(hint in message for hint in _NONCE_CONSUMED_HINTS):
                        self.nonces.advance(self.address, nonce)
                        return None, attempt
                    if any(hint in message for hint in _NONCE_CONSUMED_HINTS):
                        # Another process used this identity; resync and use a fresh nonce
                        self.nonces.reset(self.address)
                        nonce = await self.nonces.current(self.address)
                    if attempt == self.max_retries:
                        self.nonces.reset(self.address)
                        raise
                    logger.info(f"🔁 Broadcast retry {attempt} for nonce {nonce}: {e}")
                    await self._sleep(self._backoff(attempt))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "transactions": self.transaction_count,
            "failed": self.failed_count,
            "total_gas_used": self.total_gas_used,
            "total_cost_wei": self.total_cost_wei,
            "total_cost_eth": self.total_cost_wei / 1e18,
        }
