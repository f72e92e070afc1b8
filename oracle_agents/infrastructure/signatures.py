"""
Score signatures for VerificationAggregator.

The aggregator recovers the oracle from an EIP-191 signature over
``keccak256(abi.encodePacked(uint256 taskId, uint8 score))``.
"""

import logging

from eth_abi.packed import encode_packed
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from web3 import Web3

logger = logging.getLogger(__name__)


def score_message_hash(task_id: int, score: int) -> bytes:
    """keccak256 of the packed (taskId, score) pair."""
    if not 0 <= score <= 100:
        raise ValueError(f"Score must be in [0, 100], got {score}")
    return Web3.keccak(encode_packed(["uint256", "uint8"], [task_id, score]))


def sign_score(account: LocalAccount, task_id: int, score: int) -> bytes:
    """
    Sign a verification score.

    Returns:
        65-byte signature (r || s || v)
    """
    message_hash = score_message_hash(task_id, score)
    signed = account.sign_message(encode_defunct(primitive=message_hash))
    logger.debug(f"Signed score {score} for task {task_id} as {account.address}")
    return bytes(signed.signature)


def recover_signer(task_id: int, score: int, signature: bytes) -> str:
    """Address that produced ``signature`` for this (task, score)."""
    message_hash = score_message_hash(task_id, score)
    return Account.recover_message(encode_defunct(primitive=message_hash), signature=signature)


def commit_hash(cid: str, timestamp_ms: int) -> bytes:
    """Commitment bound at task creation: keccak256(cid || timestamp)."""
    return Web3.keccak(text=f"{cid}{timestamp_ms}")
