"""
Event Deduplication for SceneScout

Fuzzy-matches event records arriving from multiple providers, decides which
ones describe the same real-world event, and merges them into a canonical
record under a configurable conflict-resolution policy with a full audit
trail.

Components:
- Fingerprint Engine: normalized fingerprints and five-dimension similarity
- Match Finder: ranked duplicate candidates above threshold
- Conflict Resolver: per-field value selection with source trust scores
- Event Merger: merge decisions, validation and atomic execution
- Merge History: append-only audit log with analytics
- Deduplication System: facade with caching, batching and health checks

Usage:
    from scenescout.deduplication import DeduplicationSystem

    system = DeduplicationSystem()
    check = system.check_for_duplicates(new_event, existing_events)
"""

from .config import DedupConfig, load_config
from .errors import ConfigurationError, DeduplicationError, HistoryStoreError, MergeExecutionError
from .fingerprint import FingerprintEngine
from .string_similarity import register_algorithm, string_similarity
from .match_finder import MatchFinder
from .conflict_resolver import ConflictResolver, SourceRegistry
from .event_merger import EventMerger
from .merge_history import InMemoryHistoryStore, MergeHistoryTracker, SQLiteHistoryStore
from .models import (
    BatchResult,
    DataSource,
    DuplicateCheckResult,
    EventRecord,
    FieldCandidate,
    FieldResolution,
    Fingerprint,
    Match,
    MergeDecision,
    MergeHistoryEntry,
    MergeResult,
    MergeStatus,
    SimilarityScore,
    ValidationResult,
)
from .system import DeduplicationSystem

__version__ = "1.0.0"

__all__ = [
    # Facade
    "DeduplicationSystem",
    # Configuration
    "DedupConfig",
    "load_config",
    # Components
    "FingerprintEngine",
    "MatchFinder",
    "ConflictResolver",
    "SourceRegistry",
    "EventMerger",
    "MergeHistoryTracker",
    "InMemoryHistoryStore",
    "SQLiteHistoryStore",
    "string_similarity",
    "register_algorithm",
    # Models
    "EventRecord",
    "Fingerprint",
    "SimilarityScore",
    "Match",
    "DataSource",
    "FieldCandidate",
    "FieldResolution",
    "MergeDecision",
    "MergeStatus",
    "MergeResult",
    "MergeHistoryEntry",
    "ValidationResult",
    "DuplicateCheckResult",
    "BatchResult",
    # Errors
    "DeduplicationError",
    "ConfigurationError",
    "MergeExecutionError",
    "HistoryStoreError",
]
