"""Shared ledger infrastructure: gateway, ingestion, submission, storage."""

from .contract_abis import contract_abis, ContractABIs
from .content_store import ContentStore, UploadResult
from .errors import (
    OracleAgentError,
    ConfigurationError,
    NetworkError,
    RevertError,
    SettlementError,
    InsufficientFundsError,
    StaleStateError,
    ParseError,
    SubmissionError,
    TransactionPendingError,
)
from .event_ingestion import EventIngestionLoop
from .funding import FaucetFunder
from .ledger_gateway import LedgerGateway
from .models import Task, TaskState, Escrow, EscrowState, LogEntry, Receipt, ProcessedEventKey
from .transaction_submitter import (
    TransactionSubmitter,
    SubmissionResult,
    SubmissionStatus,
    NonceManager,
)
