"""
Tests for revert decoding, score signatures and content-store key derivation.

Prerequisites:
- None (pure functions)

Run with: python -m pytest oracle_agents/tests/test_errors.py
"""

import asyncio
import logging
import unittest

from eth_abi import encode
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError

from oracle_agents.infrastructure.content_store import derive_key, derive_nonce
from oracle_agents.infrastructure.errors import (
    InsufficientFundsError,
    NetworkError,
    RevertError,
    SettlementError,
    decode_revert_reason,
    is_time_window_reason,
)
from oracle_agents.infrastructure.ledger_gateway import translate_error
from oracle_agents.infrastructure.signatures import (
    commit_hash,
    recover_signer,
    score_message_hash,
    sign_score,
)
from oracle_agents.tests.fakes import ORACLE_KEYS

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class TestRevertDecoding(unittest.TestCase):
    """Test decoding of revert payloads."""

    def test_error_string(self):
        data = "0x08c379a0" + encode(["string"], ["Reveal window closed"]).hex()
        self.assertEqual(decode_revert_reason(data), "Reveal window closed")
        self.assertEqual(decode_revert_reason(bytes.fromhex(data[2:])), "Reveal window closed")
        print("\n✓ Error(string) payload decoded")

    def test_panic(self):
        data = "0x4e487b71" + encode(["uint256"], [0x11]).hex()
        self.assertEqual(decode_revert_reason(data), "panic 0x11: arithmetic overflow or underflow")

    def test_empty_and_text(self):
        self.assertEqual(decode_revert_reason("0x"), "execution reverted")
        self.assertEqual(decode_revert_reason(None), "execution reverted")
        self.assertEqual(decode_revert_reason("Not provider"), "Not provider")

    def test_custom_error_kept_as_hex(self):
        self.assertEqual(
            decode_revert_reason("0xdeadbeef"),
            "execution reverted (custom error 0xdeadbeef)"
        )

    def test_time_window_reasons(self):
        self.assertTrue(is_time_window_reason("Reveal deadline passed"))
        self.assertTrue(is_time_window_reason("Validation window closed"))
        self.assertFalse(is_time_window_reason("Not provider"))
        self.assertFalse(is_time_window_reason(None))
        self.assertTrue(RevertError("Reveal window closed").is_time_window)
        print("\n✓ Time-window reverts recognised as retriable")

    def test_error_hierarchy(self):
        error = SettlementError("reverted on-chain", tx_hash="0xabc")
        self.assertIsInstance(error, RevertError)
        self.assertEqual(error.tx_hash, "0xabc")

        funds = InsufficientFundsError(100, 5, "0x1")
        self.assertEqual(funds.required, 100)
        self.assertIn("required 100 wei", str(funds))


class TestTranslateError(unittest.TestCase):
    """Test mapping of web3 and transport exceptions."""

    def test_contract_logic_error_message(self):
        error = translate_error(ContractLogicError("execution reverted: Not provider"))
        self.assertIsInstance(error, RevertError)
        self.assertEqual(error.reason, "Not provider")

    def test_contract_logic_error_data(self):
        data = "0x08c379a0" + encode(["string"], ["Escrow not locked"]).hex()
        error = translate_error(ContractLogicError("execution reverted", data=data))
        self.assertEqual(error.reason, "Escrow not locked")

    def test_timeout_is_network_error(self):
        self.assertIsInstance(translate_error(asyncio.TimeoutError()), NetworkError)

    def test_programming_errors_pass_through(self):
        error = KeyError("taskId")
        self.assertIs(translate_error(error), error)


class TestScoreSignatures(unittest.TestCase):
    """Test signing and recovering verification scores."""

    def test_sign_and_recover(self):
        account = Account.from_key(ORACLE_KEYS[0])
        signature = sign_score(account, 7, 87)

        self.assertEqual(len(signature), 65)
        self.assertEqual(recover_signer(7, 87, signature), account.address)
        self.assertNotEqual(recover_signer(7, 86, signature), account.address)
        print("\n✓ Score signature recovers to the oracle address")

    def test_message_hash_matches_packed_encoding(self):
        expected = Web3.solidity_keccak(["uint256", "uint8"], [7, 87])
        self.assertEqual(score_message_hash(7, 87), expected)

    def test_score_out_of_range(self):
        account = Account.from_key(ORACLE_KEYS[0])
        with self.assertRaises(ValueError):
            sign_score(account, 7, 101)
        with self.assertRaises(ValueError):
            score_message_hash(7, -1)

    def test_commit_hash(self):
        first = commit_hash("bafk1", 1_700_000_000_000)
        self.assertEqual(first, commit_hash("bafk1", 1_700_000_000_000))
        self.assertNotEqual(first, commit_hash("bafk1", 1_700_000_000_001))
        self.assertEqual(len(first), 32)


class TestContentKeys(unittest.TestCase):
    """Test deterministic key and nonce derivation."""

    def test_derivation_is_deterministic(self):
        owner = "0x" + "ab" * 20
        key = derive_key(owner, 0, "secret")

        self.assertEqual(key, derive_key(owner, 0, "secret"))
        self.assertEqual(len(key), 64)
        self.assertEqual(len(derive_nonce(owner, 0, "secret")), 24)
        self.assertNotEqual(key, derive_key(owner, 1, "secret"))
        self.assertNotEqual(key, derive_key(owner, 0, "other"))


if __name__ == '__main__':
    unittest.main()
