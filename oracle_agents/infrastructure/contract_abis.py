"""
Contract ABI registry for the oracle network.

Minimal ABIs for the four ledger contracts are defined inline. When the
``CONTRACTS_OUT_DIR`` environment variable points at a Foundry ``out/``
directory, full compiled ABIs are loaded from there instead.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from web3 import Web3

logger = logging.getLogger(__name__)

COMMIT_REGISTRY = "CommitRegistry"
ESCROW_MANAGER = "EscrowManager"
VERIFICATION_AGGREGATOR = "VerificationAggregator"
ORACLE_REGISTRY = "OracleRegistry"

CONTRACT_NAMES = (COMMIT_REGISTRY, ESCROW_MANAGER, VERIFICATION_AGGREGATOR, ORACLE_REGISTRY)


def _param(name: str, type_: str, indexed: Optional[bool] = None, components=None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"name": name, "type": type_, "internalType": type_}
    if indexed is not None:
        entry["indexed"] = indexed
    if components is not None:
        entry["components"] = components
    return entry


def _function(name: str, inputs, outputs=(), mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _event(name: str, inputs) -> Dict[str, Any]:
    return {"type": "event", "name": name, "inputs": list(inputs), "anonymous": False}


_TASK_STRUCT = [
    _param("commitHash", "bytes32"),
    _param("provider", "address"),
    _param("marketId", "uint256"),
    _param("stake", "uint256"),
    _param("timestamp", "uint256"),
    _param("state", "uint8"),
    _param("cid", "string"),
    _param("validationScore", "uint8"),
    _param("verifier", "address"),
    _param("revealDeadline", "uint256"),
    _param("validationDeadline", "uint256"),
]

_ESCROW_STRUCT = [
    _param("taskId", "uint256"),
    _param("buyer", "address"),
    _param("provider", "address"),
    _param("amount", "uint256"),
    _param("timestamp", "uint256"),
    _param("state", "uint8"),
    _param("disputeDeadline", "uint256"),
    _param("disputer", "address"),
]

_SUBMISSION_STRUCT = [
    _param("verifier", "address"),
    _param("score", "uint8"),
    _param("signature", "bytes"),
    _param("timestamp", "uint256"),
    _param("counted", "bool"),
]

TASK_ID = _param("taskId", "uint256")

INLINE_ABIS: Dict[str, List[Dict[str, Any]]] = {
    COMMIT_REGISTRY: [
        _function(
            "commitTask",
            [_param("commitHash", "bytes32"), _param("marketId", "uint256"), _param("stake", "uint256")],
            [_param("", "uint256")],
            "payable",
        ),
        _function("revealTask", [TASK_ID, _param("cid", "string")]),
        _function("settleTask", [TASK_ID]),
        _function("getTask", [TASK_ID], [_param("", "tuple", components=_TASK_STRUCT)], "view"),
        _function("canReveal", [TASK_ID], [_param("", "bool")], "view"),
        _function("canValidate", [TASK_ID], [_param("", "bool")], "view"),
        _function("getTotalTasks", [], [_param("", "uint256")], "view"),
        _event("TaskCommitted", [
            _param("taskId", "uint256", True),
            _param("commitHash", "bytes32", False),
            _param("provider", "address", True),
            _param("marketId", "uint256", False),
            _param("stake", "uint256", False),
            _param("timestamp", "uint256", False),
        ]),
        _event("TaskRevealed", [
            _param("taskId", "uint256", True),
            _param("cid", "string", False),
            _param("timestamp", "uint256", False),
        ]),
    ],
    ESCROW_MANAGER: [
        _function("lockFunds", [TASK_ID], [], "payable"),
        _function(
            "releaseFunds",
            [TASK_ID, _param("provider", "address"), _param("score", "uint8")],
        ),
        _function("getEscrow", [TASK_ID], [_param("", "tuple", components=_ESCROW_STRUCT)], "view"),
        _event("FundsLocked", [
            _param("taskId", "uint256", True),
            _param("buyer", "address", True),
            _param("provider", "address", False),
            _param("amount", "uint256", False),
            _param("timestamp", "uint256", False),
        ]),
        _event("FundsReleased", [
            _param("taskId", "uint256", True),
            _param("provider", "address", True),
            _param("amount", "uint256", False),
            _param("timestamp", "uint256", False),
        ]),
    ],
    VERIFICATION_AGGREGATOR: [
        _function(
            "submitVerification",
            [TASK_ID, _param("score", "uint8"), _param("signature", "bytes")],
        ),
        _function("getSubmissionCount", [TASK_ID], [_param("", "uint256")], "view"),
        _function("hasConsensus", [TASK_ID], [_param("", "bool")], "view"),
        _function("getTimeRemaining", [TASK_ID], [_param("", "uint256")], "view"),
        _function("taskFinalized", [TASK_ID], [_param("", "bool")], "view"),
        _function(
            "getTaskSubmissions",
            [TASK_ID],
            [_param("", "tuple[]", components=_SUBMISSION_STRUCT)],
            "view",
        ),
        _event("VerificationSubmitted", [
            _param("taskId", "uint256", True),
            _param("verifier", "address", True),
            _param("score", "uint8", False),
            _param("timestamp", "uint256", False),
        ]),
        _event("ConsensusReached", [
            _param("taskId", "uint256", True),
            _param("finalScore", "uint8", False),
            _param("submissionCount", "uint256", False),
            _param("timestamp", "uint256", False),
        ]),
        _event("TaskFinalized", [
            _param("taskId", "uint256", True),
            _param("finalScore", "uint8", False),
            _param("verifiers", "address[]", False),
            _param("timestamp", "uint256", False),
        ]),
    ],
    ORACLE_REGISTRY: [
        _function("registerOracle", [], [], "payable"),
        _function("isActiveOracle", [_param("oracle", "address")], [_param("", "bool")], "view"),
        _function("getActiveOracleCount", [], [_param("", "uint256")], "view"),
        _function(
            "getOracle",
            [_param("oracle", "address")],
            [
                _param("oracleAddress", "address"),
                _param("stake", "uint256"),
                _param("reputation", "uint256"),
                _param("active", "bool"),
                _param("registeredAt", "uint256"),
                _param("totalVerifications", "uint256"),
                _param("accurateVerifications", "uint256"),
                _param("slashCount", "uint256"),
            ],
            "view",
        ),
        _event("OracleRegistered", [
            _param("oracleAddress", "address", True),
            _param("stake", "uint256", False),
            _param("timestamp", "uint256", False),
        ]),
    ],
}


class ContractABIs:
    """
    Load and manage contract ABIs.

    Compiled Foundry artifacts take precedence over the inline definitions
    so that a redeployed contract with extra methods is picked up without a
    code change.
    """

    def __init__(self, out_dir: Optional[Path] = None):
        env_dir = os.getenv("CONTRACTS_OUT_DIR")
        self.out_dir = out_dir or (Path(env_dir) if env_dir else None)
        self._abis: Dict[str, List[Dict[str, Any]]] = {}

    def _load_artifact(self, contract_name: str) -> Optional[List[Dict[str, Any]]]:
        if not self.out_dir:
            return None

        # Foundry layout: out/<Name>.sol/<Name>.json
        artifact_path = self.out_dir / f"{contract_name}.sol" / f"{contract_name}.json"
        if not artifact_path.exists():
            logger.debug(f"Contract artifact not found: {artifact_path}")
            return None

        with open(artifact_path, "r") as f:
            artifact = json.load(f)

        abi = artifact.get("abi")
        if abi:
            logger.info(f"Loaded {contract_name} ABI from {artifact_path}")
        return abi

    def get_abi(self, contract_name: str) -> List[Dict[str, Any]]:
        """Get the ABI for a contract."""
        if contract_name not in self._abis:
            abi = self._load_artifact(contract_name)
            if abi is None:
                if contract_name not in INLINE_ABIS:
                    raise ValueError(f"Unknown contract: {contract_name}")
                abi = INLINE_ABIS[contract_name]
            self._abis[contract_name] = abi
        return self._abis[contract_name]

    def get_event_abi(self, contract_name: str, event_name: str) -> Dict[str, Any]:
        for entry in self.get_abi(contract_name):
            if entry.get("type") == "event" and entry.get("name") == event_name:
                return entry
        raise ValueError(f"Event {event_name} not found in {contract_name} ABI")

    def list_events(self, contract_name: str) -> List[str]:
        return [e["name"] for e in self.get_abi(contract_name) if e.get("type") == "event"]

    def list_functions(self, contract_name: str) -> List[str]:
        return [e["name"] for e in self.get_abi(contract_name) if e.get("type") == "function"]


def _canonical_type(param: Dict[str, Any]) -> str:
    type_ = param["type"]
    if type_.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param.get("components", []))
        return f"({inner}){type_[len('tuple'):]}"
    return type_


def event_signature(event_abi: Dict[str, Any]) -> str:
    """Canonical signature, e.g. ``TaskRevealed(uint256,string,uint256)``."""
    types = ",".join(_canonical_type(p) for p in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Dict[str, Any]) -> str:
    """topic0 for an event: keccak256 of its canonical signature."""
    return "0x" + Web3.keccak(text=event_signature(event_abi)).hex().removeprefix("0x")


# Global ABI registry
contract_abis = ContractABIs()
