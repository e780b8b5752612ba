"""Deduplication engine for recman."""

from .cluster_store import (
    MAX_CAS_ATTEMPTS,
    ClusterConflictError,
    ClusterStore,
    ClusterTooSmallError,
    find_member_from_source,
    source_id_from_record_id,
)
from .consistency import ConsistencyChecker, ConsistencyRunSummary
from .controller import ALL_SOURCES, DedupController, DedupRunSummary, SourceRunStats
from .engine import (
    CANDIDATE_RULES,
    CandidateMatch,
    CandidateRule,
    MatchEngine,
    MatchOutcome,
)
from .handler import DedupHandler, DedupServices, build_dedup_services
from .match_contract import (
    MATCH_STATUSES,
    NO_STRATEGY_MATCH_REASON,
    MatchContractError,
    MatchDecision,
    MatchResult,
    MatchStatus,
    MatchStrategy,
    MatchStrategyChain,
    abstain,
    distinct,
    duplicate,
    execute_match_chain,
)
from .propagation import UpdatePropagator
from .record_writer import RecordWriter
from .verification import (
    DEFAULT_MATCH_STRATEGIES,
    MatchProfile,
    authors_match,
    build_match_profile,
    verify_match,
)

__all__ = [
    "ALL_SOURCES",
    "CANDIDATE_RULES",
    "DEFAULT_MATCH_STRATEGIES",
    "MATCH_STATUSES",
    "MAX_CAS_ATTEMPTS",
    "NO_STRATEGY_MATCH_REASON",
    "CandidateMatch",
    "CandidateRule",
    "ClusterConflictError",
    "ClusterStore",
    "ClusterTooSmallError",
    "ConsistencyChecker",
    "ConsistencyRunSummary",
    "DedupController",
    "DedupHandler",
    "DedupRunSummary",
    "DedupServices",
    "MatchContractError",
    "MatchDecision",
    "MatchEngine",
    "MatchOutcome",
    "MatchProfile",
    "MatchResult",
    "MatchStatus",
    "MatchStrategy",
    "MatchStrategyChain",
    "RecordWriter",
    "SourceRunStats",
    "UpdatePropagator",
    "abstain",
    "authors_match",
    "build_dedup_services",
    "build_match_profile",
    "distinct",
    "duplicate",
    "execute_match_chain",
    "find_member_from_source",
    "source_id_from_record_id",
    "verify_match",
]
