"""
Error taxonomy shared by every ledger-facing component.

NetworkError is retriable, RevertError is not (the same call reverts again),
InsufficientFundsError gets one top-up cycle, StaleStateError is a benign
race and ParseError is isolated to a single log.
"""

from typing import Any, Optional

from eth_abi import decode

# Solidity Error(string) and Panic(uint256) selectors
ERROR_STRING_SELECTOR = "08c379a0"
PANIC_SELECTOR = "4e487b71"

PANIC_CODES = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to uninitialized function",
}

_TIME_WINDOW_HINTS = ("deadline", "window", "expired", "too early", "too late", "not yet", "timeout")


class OracleAgentError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(OracleAgentError):
    """Unrecoverable startup problem (missing key, missing address)."""


class NetworkError(OracleAgentError):
    """RPC or connectivity failure. Always retriable."""


class RevertError(OracleAgentError):
    """A call reverted in simulation or on-chain."""

    def __init__(self, reason: str, data: Optional[Any] = None):
        super().__init__(reason)
        self.reason = reason
        self.data = data

    @property
    def is_time_window(self) -> bool:
        """True when the revert reason suggests retrying later may succeed."""
        return is_time_window_reason(self.reason)


class SettlementError(RevertError):
    """Transaction was mined but the receipt reports failure."""

    def __init__(self, reason: str, tx_hash: Optional[str] = None, data: Optional[Any] = None):
        super().__init__(reason, data)
        self.tx_hash = tx_hash


class InsufficientFundsError(OracleAgentError):
    """Signer balance cannot cover value plus gas."""

    def __init__(self, required: int, available: int, address: Optional[str] = None):
        super().__init__(
            f"Insufficient funds for {address or 'signer'}: "
            f"required {required} wei, available {available} wei"
        )
        self.required = required
        self.available = available
        self.address = address


class StaleStateError(OracleAgentError):
    """Ledger state changed between decision and submission."""


class ParseError(OracleAgentError):
    """A single log entry could not be decoded."""


class SubmissionError(OracleAgentError):
    """TransactionSubmitter.execute did not end with a confirmed receipt."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class TransactionPendingError(SubmissionError):
    """Broadcast without a receipt yet. The transaction must not be sent again."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


def _strip_hex(data: Any) -> Optional[str]:
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).hex()
    if isinstance(data, str):
        text = data[2:] if data.startswith("0x") else data
        try:
            bytes.fromhex(text)
        except ValueError:
            return None
        return text
    return None


def decode_revert_reason(data: Any) -> str:
    """
    Decode revert data into a human readable reason.

    Handles Error(string) and Panic(uint256) payloads. Anything else is
    returned as raw hex, or as text when the node already returned a message.
    """
    hex_data = _strip_hex(data)

    if hex_data is None:
        return str(data) if data else "execution reverted"

    if not hex_data:
        return "execution reverted"

    selector, payload = hex_data[:8].lower(), bytes.fromhex(hex_data[8:])

    if selector == ERROR_STRING_SELECTOR:
        try:
            (reason,) = decode(["string"], payload)
            return reason
        except Exception:
            return f"execution reverted (undecodable Error payload 0x{hex_data})"

    if selector == PANIC_SELECTOR:
        try:
            (code,) = decode(["uint256"], payload)
            return f"panic 0x{code:02x}: {PANIC_CODES.get(code, 'unknown panic')}"
        except Exception:
            return f"panic (undecodable payload 0x{hex_data})"

    return f"execution reverted (custom error 0x{hex_data})"


def is_time_window_reason(reason: Optional[str]) -> bool:
    """Whether a revert reason is about timing and may resolve by waiting."""
    if not reason:
        return False
    lowered = reason.lower()
    return any(hint in lowered for hint in _TIME_WINDOW_HINTS)
