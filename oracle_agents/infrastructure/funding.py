"""
Balance top-up for agent identities.

Tries the faucet first (POST with the address, then POST with address and
chain id, then GET with the address as query parameter) and falls back to
a transfer from the funding wallet. Requests are queued so the funding
wallet never signs two transfers concurrently.
"""

import asyncio
import logging
from typing import Callable, Awaitable, Optional

import aiohttp
from eth_account import Account
from web3 import Web3

from ..config import Config, config as default_config
from .errors import NetworkError, OracleAgentError
from .transaction_submitter import Funder, NonceManager

logger = logging.getLogger(__name__)


class FaucetFunder(Funder):
    """Top up balances via an HTTP faucet or a funding wallet."""

    def __init__(
        self,
        gateway,
        funder_config: Optional[Config] = None,
        nonce_manager: Optional[NonceManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = funder_config or default_config
        self.gateway = gateway
        self.faucet_url = self.config.faucet_url
        self.funding_account = (
            Account.from_key(self.config.funding_private_key)
            if self.config.funding_private_key else None
        )
        self.nonces = nonce_manager or NonceManager(gateway)
        self.min_balance = Web3.to_wei(self.config.min_balance, "ether")
        self.fund_amount = Web3.to_wei(self.config.fund_amount, "ether")
        self.wait_attempts = self.config.balance_wait_attempts
        self.wait_interval = self.config.balance_wait_interval
        self._queue_lock = asyncio.Lock()
        self._sleep = sleep

        if not self.faucet_url and not self.funding_account:
            logger.warning("Neither FAUCET_URL nor FUNDING_PRIVATE_KEY configured, top-ups will fail")

    async def ensure_funded(self, address: str) -> bool:
        """Top up when the balance is below MIN_BALANCE. Used at startup."""
        balance = await self.gateway.get_balance(address)
        if balance >= self.min_balance:
            return True
        return await self.top_up(address, self.min_balance)

    async def top_up(self, address: str, required_wei: int) -> bool:
        """
        Bring ``address`` to at least ``required_wei``.

        Returns:
            True when the balance reached the target
        """
        async with self._queue_lock:
            target = max(required_wei, self.min_balance)

            if self.faucet_url:
                try:
                    await self._request_faucet(address)
                    if await self._wait_for_balance(address, target):
                        logger.info(f"✅ Funded {address} via faucet")
                        return True
                    logger.warning(f"⚠️ Faucet accepted request but balance of {address} did not arrive")
                except (aiohttp.ClientError, asyncio.TimeoutError, OracleAgentError) as e:
                    logger.warning(f"⚠️ Faucet funding failed for {address}: {e}")

            if self.funding_account:
                try:
                    await self._transfer_from_wallet(address, target)
                    if await self._wait_for_balance(address, target):
                        logger.info(f"✅ Funded {address} from funding wallet")
                        return True
                except OracleAgentError as e:
                    logger.error(f"❌ Funding wallet transfer to {address} failed: {e}")

            logger.error(f"❌ Could not fund {address}")
            return False

    async def _request_faucet(self, address: str):
        """Try the common faucet request shapes until one is accepted."""
        patterns = [
            ("POST", self.faucet_url, {"address": address}),
            ("POST", self.faucet_url, {"address": address, "chainId": self.config.chain_id}),
            ("GET", f"{self.faucet_url}?address={address}", None),
        ]
        errors = []
        async with aiohttp.ClientSession() as session:
            for method, url, body in patterns:
                async with session.request(
                    method,
                    url,
                    json=body,
                    timeout=aiohttp.ClientTimeout(total=30)
                ) as response:
                    if response.status < 300:
                        logger.info(f"Faucet accepted {method} request for {address}")
                        return
                    errors.append(f"{method} {response.status}: {(await response.text())[:120]}")
        raise NetworkError(f"Faucet rejected all request patterns: {'; '.join(errors)}")

    async def _transfer_from_wallet(self, address: str, target: int):
        balance = await self.gateway.get_balance(address)
        amount = max(self.fund_amount, target - balance)
        sender = self.funding_account.address

        async with self.nonces.lock_for(sender):
            nonce = await self.nonces.current(sender)
            try:
                tx_hash = await self.gateway.transfer(self.funding_account, address, amount, nonce)
            except NetworkError:
                self.nonces.reset(sender)
                raise
            self.nonces.advance(sender, nonce)

        logger.info(f"💸 Sent {Web3.from_wei(amount, 'ether')} ETH to {address}: {tx_hash}")
        await self.gateway.wait_for_confirmation(tx_hash)

    async def _wait_for_balance(self, address: str, target: int) -> bool:
        for attempt in range(1, self.wait_attempts + 1):
            if await self.gateway.get_balance(address) >= target:
                return True
            logger.debug(f"Waiting for balance of {address} ({attempt}/{self.wait_attempts})")
            await self._sleep(self.wait_interval)
        return await self.gateway.get_balance(address) >= target
