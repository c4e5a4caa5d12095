"""Public interface for the ``ledger_recon`` package.

Symbol re-exports only; no runtime logic lives here.
"""

from .cascade import CascadeStep, Direction, PhasePlan, default_plans
from .config import MatchPolicy, Settings, load_settings
from .entities import EntityCluster, EntityResolver, Resolution, deduplicate, entity_code
from .index import IndexGroup, TransactionIndex
from .merger import WriteBackMerger, WriteOutcome
from .models import (
    Capability,
    MatchCandidate,
    MatchState,
    RecordAttributes,
    RecordUpdate,
    TransactionRecord,
)
from .normalizers import NameNormalizer, normalize, normalize_email, normalize_for_compare
from .orchestrator import Reconciler, RunMode, RunScope, RunState
from .report import RunReport
from .similarity import similarity
from .store import DateRange, FetchError, InMemoryStore, SqlTransactionStore, TransactionStore
from .tables import LookupTables, default_tables, load_tables

__all__ = [
    # Normalization / resolution
    "NameNormalizer",
    "normalize",
    "normalize_email",
    "normalize_for_compare",
    "similarity",
    "EntityCluster",
    "EntityResolver",
    "Resolution",
    "deduplicate",
    "entity_code",
    "LookupTables",
    "default_tables",
    "load_tables",
    # Matching
    "TransactionIndex",
    "IndexGroup",
    "CascadeStep",
    "Direction",
    "PhasePlan",
    "default_plans",
    "MatchPolicy",
    "Settings",
    "load_settings",
    # Runs
    "Reconciler",
    "RunMode",
    "RunScope",
    "RunState",
    "RunReport",
    "WriteBackMerger",
    "WriteOutcome",
    # Storage
    "DateRange",
    "FetchError",
    "InMemoryStore",
    "SqlTransactionStore",
    "TransactionStore",
    # Models
    "Capability",
    "MatchCandidate",
    "MatchState",
    "RecordAttributes",
    "RecordUpdate",
    "TransactionRecord",
]
