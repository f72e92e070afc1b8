"""Thin asynchronous gateway to the ledger shared by every agent role."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

from ..config import Config, config as default_config
from .contract_abis import ContractABIs, contract_abis, event_topic
from .errors import (
    InsufficientFundsError,
    NetworkError,
    ParseError,
    RevertError,
    decode_revert_reason,
)
from .models import LogEntry, Receipt

logger = logging.getLogger(__name__)

# Chains that need the extraData PoA middleware (BSC, Polygon, Amoy)
POA_CHAIN_IDS = {56, 97, 137, 80002}

_NETWORK_EXCEPTIONS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)


def translate_error(exc: Exception) -> Exception:
    """
    Map web3/transport exceptions onto the agent error taxonomy.

    Exceptions already in the taxonomy, and unknown programming errors,
    are returned unchanged.
    """
    if isinstance(exc, ContractLogicError):
        data = getattr(exc, "data", None)
        if data:
            reason = decode_revert_reason(data)
        else:
            reason = getattr(exc, "message", None) or str(exc)
            reason = reason.replace("execution reverted: ", "")
        return RevertError(reason, data)

    message = str(exc).lower()
    if isinstance(exc, (Web3RPCError, ValueError)) and "insufficient funds" in message:
        return InsufficientFundsError(required=0, available=0)

    if isinstance(exc, Web3RPCError) and "execution reverted" in message:
        return RevertError(str(exc))

    if isinstance(exc, _NETWORK_EXCEPTIONS) or isinstance(exc, Web3Exception):
        return NetworkError(f"{type(exc).__name__}: {exc}")

    return exc


class LedgerGateway:
    """
    Asynchronous access to the ledger contracts.

    Provides:
    - read calls and preflight simulation
    - transaction submission for any signer
    - confirmation waits with their own timeout
    - log queries by block range

    Nothing is cached: every method reflects ledger state at call time.
    """

    def __init__(
        self,
        gateway_config: Optional[Config] = None,
        w3: Optional[AsyncWeb3] = None,
        abis: Optional[ContractABIs] = None
    ):
        self.config = gateway_config or default_config
        self.abis = abis or contract_abis
        self.w3: Optional[AsyncWeb3] = w3
        self.contracts: Dict[str, Any] = {}
        self.rpc_timeout = self.config.rpc_timeout
        self.confirmation_timeout = self.config.confirmation_timeout
        self._initialized = False

    async def initialize(self, addresses: Optional[Dict[str, str]] = None) -> bool:
        """
        Connect to the RPC endpoint and register contracts.

        Args:
            addresses: contract name -> address; defaults to the configured addresses

        Returns:
            True when the node answered
        """
        if self._initialized:
            return True

        if self.w3 is None:
            self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.rpc_timeout)}
            ))
            if self.config.chain_id in POA_CHAIN_IDS:
                self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        addresses = addresses or {
            "CommitRegistry": self.config.commit_registry_address,
            "EscrowManager": self.config.escrow_manager_address,
            "VerificationAggregator": self.config.verification_aggregator_address,
            "OracleRegistry": self.config.oracle_registry_address,
        }
        for name, address in addresses.items():
            if address:
                self.register_contract(name, address)
            else:
                logger.warning(f"{name} address not configured")

        connected = await self.is_connected()
        if connected:
            chain_id = await self.w3.eth.chain_id
            logger.info(f"✅ Connected to ledger - Chain ID: {chain_id}")
        else:
            logger.error(f"❌ Failed to connect to ledger at {self.config.rpc_url}")

        self._initialized = connected
        return connected

    def register_contract(self, name: str, address: str, abi: Optional[List[Dict]] = None) -> Any:
        """Register a contract under a logical name."""
        if self.w3 is None:
            raise RuntimeError("Ledger gateway not initialized")

        contract = self.w3.eth.contract(
            address=to_checksum_address(address),
            abi=abi or self.abis.get_abi(name)
        )
        self.contracts[name] = contract
        logger.info(f"Registered contract {name} at {address}")
        return contract

    def contract(self, name: str) -> Any:
        if name not in self.contracts:
            raise ValueError(f"Contract {name} not registered")
        return self.contracts[name]

    async def _rpc(self, awaitable, timeout: Optional[float] = None) -> Any:
        """Run one RPC with a bounded wait, translating failures."""
        try:
            return await asyncio.wait_for(awaitable, timeout or self.rpc_timeout)
        except Exception as e:
            translated = translate_error(e)
            if translated is e:
                raise
            raise translated from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def is_connected(self) -> bool:
        """Check if the node answers."""
        if not self.w3:
            return False
        try:
            await self._rpc(self.w3.eth.block_number)
            return True
        except NetworkError:
            return False

    async def block_number(self) -> int:
        return await self._rpc(self.w3.eth.block_number)

    async def get_balance(self, address: str) -> int:
        return await self._rpc(self.w3.eth.get_balance(to_checksum_address(address)))

    async def gas_price(self) -> int:
        return await self._rpc(self.w3.eth.gas_price)

    async def pending_nonce(self, address: str) -> int:
        return await self._rpc(
            self.w3.eth.get_transaction_count(to_checksum_address(address), "pending")
        )

    async def call(self, contract_name: str, method_name: str, *args) -> Any:
        """Read-only contract call against the latest block."""
        method = getattr(self.contract(contract_name).functions, method_name)
        return await self._rpc(method(*args).call())

    async def simulate(
        self,
        contract_name: str,
        method_name: str,
        *args,
        sender: str,
        value: int = 0
    ) -> Any:
        """
        Dry-run a state-changing call as ``sender``.

        Raises:
            RevertError: the call would revert; carries the decoded reason
        """
        method = getattr(self.contract(contract_name).functions, method_name)
        return await self._rpc(method(*args).call({"from": sender, "value": value}))

    async def estimate_gas(
        self,
        contract_name: str,
        method_name: str,
        *args,
        sender: str,
        value: int = 0
    ) -> int:
        method = getattr(self.contract(contract_name).functions, method_name)
        return await self._rpc(method(*args).estimate_gas({"from": sender, "value": value}))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit(
        self,
        contract_name: str,
        method_name: str,
        *args,
        account: LocalAccount,
        nonce: int,
        gas: int,
        value: int = 0,
        gas_price: Optional[int] = None
    ) -> str:
        """Sign and broadcast a contract transaction. Returns the tx hash."""
        method = getattr(self.contract(contract_name).functions, method_name)
        transaction = await self._rpc(method(*args).build_transaction({
            "from": account.address,
            "value": value,
            "gas": gas,
            "gasPrice": gas_price or await self.gas_price(),
            "nonce": nonce,
            "chainId": self.config.chain_id,
        }))
        return await self._send_signed(account, transaction)

    async def transfer(
        self,
        account: LocalAccount,
        to: str,
        value: int,
        nonce: int,
        gas: int = 21000
    ) -> str:
        """Send native value between accounts."""
        transaction = {
            "from": account.address,
            "to": to_checksum_address(to),
            "value": value,
            "gas": gas,
            "gasPrice": await self.gas_price(),
            "nonce": nonce,
            "chainId": self.config.chain_id,
        }
        return await self._send_signed(account, transaction)

    async def _send_signed(self, account: LocalAccount, transaction: Dict[str, Any]) -> str:
        signed = account.sign_transaction(transaction)
        tx_hash = await self._rpc(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        tx_hex = Web3.to_hex(tx_hash)
        logger.info(f"Sent transaction {tx_hex} (nonce {transaction['nonce']})")
        return tx_hex

    async def wait_for_confirmation(
        self,
        tx_hash: str,
        timeout: Optional[float] = None
    ) -> Optional[Receipt]:
        """
        Wait for a receipt.

        Returns:
            The receipt, or None when the confirmation timeout elapsed first
        """
        wait = timeout or self.confirmation_timeout
        try:
            raw = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=wait)
        except TimeExhausted:
            logger.warning(f"⏳ No receipt for {tx_hash} after {wait}s")
            return None
        except Exception as e:
            translated = translate_error(e)
            if translated is e:
                raise
            raise translated from e
        return Receipt.from_web3(raw)

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def topic(self, contract_name: str, event_name: str) -> str:
        return event_topic(self.abis.get_event_abi(contract_name, event_name))

    async def get_logs(
        self,
        contract_name: str,
        event_name: str,
        from_block: int,
        to_block: int
    ) -> List[LogEntry]:
        """Fetch raw logs for one event in an inclusive block range."""
        contract = self.contract(contract_name)
        raw_logs = await self._rpc(self.w3.eth.get_logs({
            "address": contract.address,
            "topics": [self.topic(contract_name, event_name)],
            "fromBlock": from_block,
            "toBlock": to_block,
        }))
        entries = [LogEntry.from_web3(log) for log in raw_logs]
        entries.sort(key=lambda e: (e.block_number, e.log_index))
        return entries

    def decode_log(self, contract_name: str, event_name: str, entry: LogEntry) -> LogEntry:
        """
        Decode a raw log in place.

        Raises:
            ParseError: the log does not match the event ABI
        """
        event = getattr(self.contract(contract_name).events, event_name)
        try:
            decoded = event().process_log(entry.raw)
        except Exception as e:
            raise ParseError(
                f"Cannot decode {event_name} log {entry.transaction_hash}:{entry.log_index}: {e}"
            ) from e
        entry.event = event_name
        entry.args = dict(decoded["args"])
        return entry
