# src/contextcore/__init__.py
"""
ContextCore - bounded working memory for long-running agent sessions.

Token accounting, type-aware retention, noise stripping, structural rot
scoring, hierarchical DAG compaction with lossless expansion, disk
archival, and a concurrency-bounded batch operator for model calls.
"""

from importlib.metadata import PackageNotFoundError, version

from .config import EngineConfig, load_engine_config
from .context import (
    ArchiveTier,
    CleaningStrategy,
    ContextEngine,
    DAGCompactor,
    EntryStore,
    Escalator,
    HealthAssessment,
    RetentionPolicy,
    RotDetector,
    SummaryNode,
    TokenEstimator,
)
from .exceptions import (
    ArchiveError,
    BatchError,
    CompactionError,
    ConfigError,
    ContextCoreError,
    DAGIntegrityError,
    ModelClientError,
    ResponseParseError,
    SchemaValidationError,
    SnapshotError,
    StorageError,
)
from .models import Entry, EntryType
from .operators import BatchOperator, llm_map

try:
    __version__ = version("contextcore")
except PackageNotFoundError:
    __version__ = "0.0.0"


__all__ = [
    # ==========================================================================
    # Engine
    # ==========================================================================
    "ContextEngine",
    "EngineConfig",
    "load_engine_config",

    # ==========================================================================
    # Data Models
    # ==========================================================================
    "Entry",
    "EntryType",
    "SummaryNode",
    "HealthAssessment",

    # ==========================================================================
    # Components
    # ==========================================================================
    "ArchiveTier",
    "CleaningStrategy",
    "DAGCompactor",
    "EntryStore",
    "Escalator",
    "RetentionPolicy",
    "RotDetector",
    "TokenEstimator",
    "BatchOperator",
    "llm_map",

    # ==========================================================================
    # Exceptions
    # ==========================================================================
    "ContextCoreError",
    "ConfigError",
    "StorageError",
    "SnapshotError",
    "ArchiveError",
    "CompactionError",
    "DAGIntegrityError",
    "BatchError",
    "SchemaValidationError",
    "ResponseParseError",
    "ModelClientError",
]
