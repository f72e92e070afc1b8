"""Oracle Agent - independent verifiers and the consensus monitor."""

from .consensus import ConsensusAggregator, ConsensusStage, ConsensusStatus, median_consensus
from .oracle_node import OracleNode, VerificationState
from .scorer import Scorer, ScoreBreakdown, HeuristicScorer, LLMScorer, create_scorer
