"""
Tests for TransactionSubmitter.

Prerequisites:
- None (ledger faked, backoff sleeps skipped)

Run with: python -m pytest oracle_agents/tests/test_transaction_submitter.py
"""

import asyncio
import logging
import unittest

from eth_account import Account

from oracle_agents.infrastructure.contract_abis import COMMIT_REGISTRY
from oracle_agents.infrastructure.errors import (
    InsufficientFundsError,
    NetworkError,
    RevertError,
    SettlementError,
    TransactionPendingError,
)
from oracle_agents.infrastructure.transaction_submitter import (
    NonceManager,
    SubmissionStatus,
    TransactionSubmitter,
)
from oracle_agents.tests.fakes import (
    PROVIDER_KEY,
    FakeFunder,
    FakeGateway,
    make_config,
    no_sleep,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def build(gateway=None, funder=None, nonce_manager=None):
    gateway = gateway or FakeGateway()
    account = Account.from_key(PROVIDER_KEY)
    gateway.add_task(1, account.address)
    gateway.add_task(2, account.address)
    submitter = TransactionSubmitter(
        gateway, account, make_config(), funder=funder,
        nonce_manager=nonce_manager, sleep=no_sleep
    )
    return gateway, submitter


class TestExecute(unittest.TestCase):
    """Test the happy path and preflight safety."""

    def test_confirmed(self):
        gateway, submitter = build()
        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertTrue(result.ok)
        self.assertEqual(result.status, SubmissionStatus.CONFIRMED)
        self.assertEqual(result.receipt.status, 1)
        self.assertEqual(gateway.simulated, [(COMMIT_REGISTRY, "revealTask")])
        self.assertEqual(len(gateway.methods_submitted("revealTask")), 1)
        self.assertEqual(submitter.get_stats()["transactions"], 1)
        print(f"\n✓ revealTask confirmed: {result.tx_hash}")

    def test_simulation_revert_never_broadcasts(self):
        gateway, submitter = build()
        gateway.reverts["revealTask"] = "Reveal window closed"

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertEqual(result.status, SubmissionStatus.FAILED)
        self.assertIsInstance(result.error, RevertError)
        self.assertEqual(result.error.reason, "Reveal window closed")
        self.assertTrue(result.error.is_time_window)
        self.assertEqual(gateway.submitted, [])
        with self.assertRaises(RevertError):
            result.unwrap()
        print("\n✓ Reverting simulation stops before broadcast")

    def test_mined_revert_is_settlement_error(self):
        gateway, submitter = build()
        gateway.mined_reverts.add("revealTask")

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertEqual(result.status, SubmissionStatus.FAILED)
        self.assertIsInstance(result.error, SettlementError)
        self.assertEqual(result.error.tx_hash, result.tx_hash)
        self.assertIsNotNone(result.tx_hash)
        self.assertEqual(submitter.failed_count, 1)

    def test_unconfirmed_is_pending(self):
        gateway, submitter = build()
        gateway.unconfirmed.add("revealTask")

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertEqual(result.status, SubmissionStatus.PENDING)
        self.assertTrue(result.pending)
        self.assertIsNotNone(result.tx_hash)
        with self.assertRaises(TransactionPendingError):
            result.unwrap()
        print("\n✓ Confirmation timeout reported as pending with the tx hash")


class TestFunding(unittest.TestCase):
    """Test the single top-up cycle."""

    def test_top_up_then_submit(self):
        gateway = FakeGateway()
        funder = FakeFunder(gateway)
        gateway, submitter = build(gateway, funder=funder)
        gateway.balances[submitter.address.lower()] = 0

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertTrue(result.ok)
        self.assertTrue(result.funded)
        self.assertEqual(len(funder.calls), 1)
        self.assertEqual(len(gateway.submitted), 1)
        print("\n✓ One top-up, then the transaction went through")

    def test_top_up_failure(self):
        gateway = FakeGateway()
        funder = FakeFunder(gateway, succeed=False)
        gateway, submitter = build(gateway, funder=funder)
        gateway.balances[submitter.address.lower()] = 0

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertEqual(result.status, SubmissionStatus.FAILED)
        self.assertIsInstance(result.error, InsufficientFundsError)
        self.assertEqual(len(funder.calls), 1)
        self.assertEqual(gateway.submitted, [])

    def test_no_funder(self):
        gateway, submitter = build()
        gateway.balances[submitter.address.lower()] = 10

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertIsInstance(result.error, InsufficientFundsError)
        self.assertEqual(result.error.available, 10)

    def test_value_counts_toward_requirement(self):
        gateway, submitter = build()
        gateway.balances[submitter.address.lower()] = 10 ** 16

        result = run_async(submitter.execute(
            COMMIT_REGISTRY, "commitTask", b"\x01" * 32, 1, 5 * 10 ** 16, value=5 * 10 ** 16
        ))

        self.assertIsInstance(result.error, InsufficientFundsError)
        self.assertEqual(result.error.required, 5 * 10 ** 16 + int(100_000 * 1.2))


class TestNonces(unittest.TestCase):
    """Test nonce sequencing and broadcast retries."""

    def test_concurrent_submissions_get_distinct_nonces(self):
        async def _test():
            gateway = FakeGateway()
            nonces = NonceManager(gateway)
            gateway, first = build(gateway, nonce_manager=nonces)
            second = TransactionSubmitter(
                gateway, first.account, make_config(), nonce_manager=nonces, sleep=no_sleep
            )
            results = await asyncio.gather(
                first.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"),
                second.execute(COMMIT_REGISTRY, "revealTask", 2, "bafk2"),
            )
            return gateway, results

        gateway, results = run_async(_test())
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(sorted(s["nonce"] for s in gateway.submitted), [0, 1])
        print("\n✓ Shared nonce manager sequences concurrent submissions")

    def test_network_error_retries_same_nonce(self):
        gateway, submitter = build()
        gateway.nonces[submitter.address.lower()] = 4
        gateway.submit_errors = [NetworkError("connection reset")]

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertTrue(result.ok)
        self.assertEqual(result.attempts, 2)
        self.assertEqual([s["nonce"] for s in gateway.submitted], [4])

    def test_consumed_nonce_on_retry_is_pending(self):
        gateway, submitter = build()
        gateway.submit_errors = [NetworkError("timeout"), NetworkError("nonce too low")]

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertEqual(result.status, SubmissionStatus.PENDING)
        self.assertIsNone(result.tx_hash)
        self.assertEqual(gateway.submitted, [])

    def test_broadcast_gives_up_after_max_retries(self):
        gateway, submitter = build()
        gateway.submit_errors = [NetworkError("connection reset")] * 3

        result = run_async(submitter.execute(COMMIT_REGISTRY, "revealTask", 1, "bafk1"))

        self.assertEqual(result.status, SubmissionStatus.FAILED)
        self.assertIsInstance(result.error, NetworkError)
        self.assertEqual(gateway.submitted, [])


if __name__ == '__main__':
    unittest.main()
