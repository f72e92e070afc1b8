"""
Oracle Agent Network - provider, buyer and oracle agents for a ledger-backed data market.

Structure:
- infrastructure/: ledger gateway, event ingestion, transaction submission, content store
- core/: role runtime and the task lifecycle shared by provider and buyer
- provider_agent/: commits artifacts and reveals them once paid
- buyer_agent/: escrows payment and settles finalized tasks
- oracle_agent/: oracle nodes, scorers and the consensus monitor
- orchestrator.py: runs every role in one process
- config.py: shared configuration
"""

__version__ = "0.1.0"

from .config import Config, config
from .orchestrator import AgentOrchestrator

__all__ = [
    "Config",
    "config",
    "AgentOrchestrator",
    "__version__"
]
