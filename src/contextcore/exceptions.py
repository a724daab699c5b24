# src/contextcore/exceptions.py
"""
Custom exceptions for the ContextCore library.

This module defines a hierarchy of exception classes so that callers can
tell configuration problems, persistence failures, DAG integrity violations
and batch-operator failures apart.

Input problems (unknown ids, empty candidate sets) are reported through
structured result objects rather than exceptions; the classes below are
raised for conditions that need operator attention.
"""


class ContextCoreError(Exception):
    """Base class for all ContextCore specific errors."""
    def __init__(self, message: str = "An unspecified error occurred in ContextCore."):
        super().__init__(message)

class ConfigError(ContextCoreError):
    """Raised for errors related to configuration loading or validation."""
    def __init__(self, message: str = "Configuration error."):
        super().__init__(message)

class StorageError(ContextCoreError):
    """Base class for errors related to on-disk persistence."""
    def __init__(self, message: str = "Storage error."):
        super().__init__(message)

class SnapshotError(StorageError):
    """Raised when the entry-store snapshot cannot be written."""
    def __init__(self, path: str = "", message: str = "Snapshot write failed."):
        self.path = path
        super().__init__(f"{message} Path: '{path}'" if path else message)

class ArchiveError(StorageError):
    """Raised when an archive unit or the archive index cannot be written."""
    def __init__(self, pointer_id: str = "", message: str = "Archive write failed."):
        self.pointer_id = pointer_id
        super().__init__(f"{message} Pointer: '{pointer_id}'" if pointer_id else message)

class CompactionError(ContextCoreError):
    """Base class for errors related to DAG compaction."""
    def __init__(self, message: str = "Compaction error."):
        super().__init__(message)

class DAGIntegrityError(CompactionError):
    """
    Raised when the summary DAG violates its structural invariants
    (a cycle, a level that does not strictly increase, or a dangling pointer).
    """
    def __init__(self, node_id: str = "Unknown", message: str = "DAG integrity violation."):
        self.node_id = node_id
        super().__init__(f"{message} Node: '{node_id}'")

class BatchError(ContextCoreError):
    """Base class for errors raised while processing a single batch item."""
    def __init__(self, message: str = "Batch item error."):
        super().__init__(message)

class SchemaValidationError(BatchError):
    """
    Raised when a model response parses but does not match the output schema.

    ``details`` holds the per-field validation errors; ``attempt`` is the
    1-based attempt that produced the response (0 until the batch operator
    records it).
    """
    def __init__(self, details: list | None = None, message: str = "Schema validation failed.", attempt: int = 0):
        self.details = details or []
        self.attempt = attempt
        super().__init__(message)

class ResponseParseError(BatchError):
    """Raised when a model response cannot be parsed as JSON."""
    def __init__(self, raw: str = "", message: str = "Failed to parse response.", attempt: int = 0):
        self.raw = raw
        self.attempt = attempt
        super().__init__(message)

class ModelClientError(ContextCoreError):
    """Raised for errors originating from the external model client."""
    def __init__(self, message: str = "Model client error."):
        super().__init__(message)
