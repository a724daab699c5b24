# src/contextcore/context/__init__.py
"""
Context engine components.

Leaf-first: ``tokens`` → ``store`` → ``retention`` / ``cleaning`` →
``rot`` → ``dag`` / ``archive`` → ``escalation`` → ``engine``.
"""

from .archive import ArchiveMetadata, ArchivePointer, ArchiveResult, ArchiveTier, PayloadStatus, RestoreResult
from .cleaning import CleaningAction, CleaningMode, CleaningResult, CleaningStrategy
from .dag import (
    CompactionResult,
    DAGCompactor,
    ExpansionResult,
    Pointer,
    PointerKind,
    SummaryNode,
    ValidationReport,
)
from .engine import ContextEngine, MaintenanceReport
from .escalation import EscalationResult, Escalator
from .retention import RetentionPlan, RetentionPolicy, RetentionRule, WindowSummary, compress_text
from .rot import DegradationIndicator, HealthAssessment, IndicatorType, RotDetector, Severity
from .store import EntryStore
from .tokens import TokenCache, TokenCounter, TokenEstimator

__all__ = [
    "ArchiveMetadata",
    "ArchivePointer",
    "ArchiveResult",
    "ArchiveTier",
    "PayloadStatus",
    "RestoreResult",
    "CleaningAction",
    "CleaningMode",
    "CleaningResult",
    "CleaningStrategy",
    "CompactionResult",
    "DAGCompactor",
    "ExpansionResult",
    "Pointer",
    "PointerKind",
    "SummaryNode",
    "ValidationReport",
    "ContextEngine",
    "MaintenanceReport",
    "EscalationResult",
    "Escalator",
    "RetentionPlan",
    "RetentionPolicy",
    "RetentionRule",
    "WindowSummary",
    "compress_text",
    "DegradationIndicator",
    "HealthAssessment",
    "IndicatorType",
    "RotDetector",
    "Severity",
    "EntryStore",
    "TokenCache",
    "TokenCounter",
    "TokenEstimator",
]
