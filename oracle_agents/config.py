"""Configuration management for oracle network agents."""

import os
import re
import logging
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

# The .env file lives next to the package unless overridden
PACKAGE_DIR = Path(__file__).parent
ENV_FILE_PATH = Path(os.getenv("ORACLE_AGENTS_ENV_FILE", PACKAGE_DIR / ".env"))

load_dotenv(ENV_FILE_PATH)

logger = logging.getLogger(__name__)

MIN_ORACLE_COUNT = 3

# Overlay keys whose values stay mappings instead of being flattened
NESTED_KEYS = {"market_expectations"}

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and ${VAR:-default} references inside YAML values."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.getenv(m.group(1), m.group(2) if m.group(2) is not None else ""),
            value
        )
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    return value


def load_yaml_overrides(path: Optional[str]) -> Dict[str, Any]:
    """
    Load a YAML overlay file.

    Keys are attribute names of Config (e.g. ``poll_interval``). Nested
    sections are flattened one level, so ``oracle: {count: 5}`` becomes
    ``oracle_count``.
    """
    if not path:
        return {}

    yaml_path = Path(path)
    if not yaml_path.exists():
        logger.warning(f"Config overlay not found: {yaml_path}")
        return {}

    with open(yaml_path, "r") as f:
        raw = yaml.safe_load(f) or {}

    flat: Dict[str, Any] = {}
    for key, value in _substitute_env(raw).items():
        if isinstance(value, dict) and key not in NESTED_KEYS:
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        else:
            flat[key] = value
    return flat


def _parse_fraction(raw: str) -> float:
    """Accept both '2/3' and '0.6667'."""
    return float(Fraction(raw.strip()))


class Config:
    """Configuration for the provider, buyer and oracle agents."""

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        """Load configuration from environment variables, then apply overrides."""

        # Blockchain connection
        self.rpc_url = os.getenv("BLOCKCHAIN_RPC_URL", "http://localhost:8545")
        self.chain_id = int(os.getenv("BLOCKCHAIN_CHAIN_ID", "31337"))
        self.rpc_timeout = float(os.getenv("RPC_TIMEOUT", "30"))
        self.confirmation_timeout = float(os.getenv("CONFIRMATION_TIMEOUT", "120"))

        # Contract addresses (set these after deployment)
        self.commit_registry_address = os.getenv("COMMIT_REGISTRY_ADDRESS")
        self.escrow_manager_address = os.getenv("ESCROW_MANAGER_ADDRESS")
        self.verification_aggregator_address = os.getenv("VERIFICATION_AGGREGATOR_ADDRESS")
        self.oracle_registry_address = os.getenv("ORACLE_REGISTRY_ADDRESS")

        # Identities
        self.provider_private_key = os.getenv("PROVIDER_PRIVATE_KEY")
        self.buyer_private_key = os.getenv("BUYER_PRIVATE_KEY")
        self.funding_private_key = os.getenv("FUNDING_PRIVATE_KEY")

        # Oracle network
        self.oracle_count = int(os.getenv("ORACLE_COUNT", str(MIN_ORACLE_COUNT)))
        self.consensus_quorum = _parse_fraction(os.getenv("CONSENSUS_QUORUM", "2/3"))
        self.score_tolerance = float(os.getenv("SCORE_TOLERANCE", "0.15"))
        self.submission_window = int(os.getenv("SUBMISSION_WINDOW", "3600"))
        self.oracle_stake = float(os.getenv("ORACLE_STAKE", "0.1"))
        self.oracle_private_keys: List[str] = []

        # Provider / buyer behaviour
        self.market_id = int(os.getenv("MARKET_ID", "1"))
        self.task_creation_interval = float(os.getenv("TASK_CREATION_INTERVAL", "300"))
        self.provider_stake = float(os.getenv("PROVIDER_STAKE", "0.05"))
        self.buyer_max_stake = float(os.getenv("BUYER_MAX_STAKE", "0.1"))
        self.buyer_amount = float(os.getenv("BUYER_AMOUNT", "0.05"))
        self.reveal_sweep_interval = float(os.getenv("REVEAL_SWEEP_INTERVAL", "10"))
        self.settlement_scan_interval = float(os.getenv("SETTLEMENT_SCAN_INTERVAL", "60"))
        self.settlement_scan_depth = int(os.getenv("SETTLEMENT_SCAN_DEPTH", "50"))

        # Event ingestion
        self.poll_interval = float(os.getenv("POLL_INTERVAL", "5"))
        self.lookback_blocks = int(os.getenv("LOOKBACK_BLOCKS", "100"))
        self.max_block_range = int(os.getenv("MAX_BLOCK_RANGE", "1000"))
        self.seen_window_ticks = int(os.getenv("SEEN_WINDOW_TICKS", "20"))

        # Transactions
        self.gas_multiplier = float(os.getenv("GAS_MULTIPLIER", "1.2"))
        self.retry_backoff = float(os.getenv("RETRY_BACKOFF", "30"))
        self.max_retries = int(os.getenv("MAX_RETRIES", "5"))

        # Funding
        self.auto_fund = os.getenv("AUTO_FUND", "false").lower() == "true"
        self.faucet_url = os.getenv("FAUCET_URL")
        self.min_balance = float(os.getenv("MIN_BALANCE", "0.05"))
        self.fund_amount = float(os.getenv("FUND_AMOUNT", "0.2"))
        self.balance_wait_attempts = int(os.getenv("BALANCE_WAIT_ATTEMPTS", "6"))
        self.balance_wait_interval = float(os.getenv("BALANCE_WAIT_INTERVAL", "5"))

        # Content store
        self.storage_url = os.getenv("STORAGE_URL", "http://localhost:3001")
        self.content_secret = os.getenv("CONTENT_SECRET", "development-secret")

        # Scoring
        self.scorer = os.getenv("SCORER", "heuristic")
        self.google_api_key = os.getenv("GOOGLE_API_KEY")
        self.llm_model = os.getenv("LLM_MODEL", "gemini-2.5-flash")
        # market id -> {"keywords": [...], "required_fields": [...], "min_length": n}
        self.market_expectations: Dict[int, Dict[str, Any]] = {}

        # Health endpoint
        self.health_host = os.getenv("HEALTH_HOST", "0.0.0.0")
        self.health_port = int(os.getenv("HEALTH_PORT", "8000"))

        # Environment
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.environment = os.getenv("ENVIRONMENT", "development")

        overlay = load_yaml_overrides(os.getenv("ORACLE_AGENTS_CONFIG"))
        overlay.update(overrides or {})
        for key, value in overlay.items():
            if key == "oracle_private_keys":
                continue
            if not hasattr(self, key):
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            current = getattr(self, key)
            if isinstance(current, bool) and isinstance(value, str):
                setattr(self, key, value.lower() == "true")
            elif isinstance(current, bool) or current is None:
                setattr(self, key, value)
            elif key == "consensus_quorum" and isinstance(value, str):
                setattr(self, key, _parse_fraction(value))
            else:
                setattr(self, key, type(current)(value))

        if self.oracle_count < MIN_ORACLE_COUNT:
            logger.warning(
                f"ORACLE_COUNT={self.oracle_count} is below the minimum, using {MIN_ORACLE_COUNT}"
            )
            self.oracle_count = MIN_ORACLE_COUNT

        self.oracle_private_keys = list(overlay.get("oracle_private_keys") or [])
        if not self.oracle_private_keys:
            self.oracle_private_keys = [
                key for key in (
                    os.getenv(f"ORACLE_{i}_PRIVATE_KEY") for i in range(1, self.oracle_count + 1)
                ) if key
            ]

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def quorum_size(self, oracle_count: Optional[int] = None) -> int:
        """Number of submissions the quorum fraction requires for a given network size."""
        count = oracle_count if oracle_count is not None else self.oracle_count
        required = Fraction(self.consensus_quorum).limit_denominator(1000) * count
        return max(1, -(-required.numerator // required.denominator))

    def validate(self) -> List[str]:
        """
        Validate that required configuration is present.

        Returns:
            List of error messages, empty when the configuration is usable
        """
        errors = []

        if not self.rpc_url:
            errors.append("BLOCKCHAIN_RPC_URL is required")

        for name in (
            "commit_registry_address",
            "escrow_manager_address",
            "verification_aggregator_address",
            "oracle_registry_address",
        ):
            if not getattr(self, name):
                errors.append(f"{name.upper()} is required")

        if len(self.oracle_private_keys) < self.oracle_count:
            errors.append(
                f"{self.oracle_count} oracle keys required, "
                f"found {len(self.oracle_private_keys)} (ORACLE_<i>_PRIVATE_KEY)"
            )

        if not 0 < self.consensus_quorum <= 1:
            errors.append("CONSENSUS_QUORUM must be in (0, 1]")

        if not 0 <= self.score_tolerance < 1:
            errors.append("SCORE_TOLERANCE must be in [0, 1)")

        if self.gas_multiplier < 1:
            errors.append("GAS_MULTIPLIER must be at least 1.0")

        if errors:
            print("⚠️  Configuration errors:")
            for error in errors:
                print(f"   - {error}")

        return errors

    def display(self):
        """Display current configuration (hiding sensitive data)."""
        print("Configuration:")
        print(f"  RPC URL: {self.rpc_url}")
        print(f"  Chain ID: {self.chain_id}")
        print(f"  CommitRegistry: {self.commit_registry_address or '✗ Not set'}")
        print(f"  EscrowManager: {self.escrow_manager_address or '✗ Not set'}")
        print(f"  VerificationAggregator: {self.verification_aggregator_address or '✗ Not set'}")
        print(f"  OracleRegistry: {self.oracle_registry_address or '✗ Not set'}")
        print(f"  Provider Key: {'✓ Set' if self.provider_private_key else '✗ Not set'}")
        print(f"  Buyer Key: {'✓ Set' if self.buyer_private_key else '✗ Not set'}")
        print(f"  Oracle Keys: {len(self.oracle_private_keys)}/{self.oracle_count}")
        print(f"  Quorum: {self.consensus_quorum:.4f} ({self.quorum_size()} of {self.oracle_count})")
        print(f"  Tolerance: {self.score_tolerance:.0%} of median")
        print(f"  Poll Interval: {self.poll_interval}s (lookback {self.lookback_blocks} blocks)")
        print(f"  Gas Multiplier: {self.gas_multiplier}x")
        print(f"  Faucet: {self.faucet_url or '✗ Not set'}")
        print(f"  Scorer: {self.scorer}")
        print(f"  Health: {self.health_host}:{self.health_port}")
        print(f"  Environment: {self.environment}")


# Global configuration instance
config = Config()
