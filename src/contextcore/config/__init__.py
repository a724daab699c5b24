# src/contextcore/config/__init__.py
"""
Configuration package for the ContextCore library.

Every engine component takes its own pydantic section from
:class:`EngineConfig`. Hosts either construct the models directly or load
the ``[contextcore]`` table of a TOML file with :func:`load_engine_config`.
"""

from .engine_config import (
    ArchiveConfig,
    BatchConfig,
    CleaningConfig,
    DAGConfig,
    EngineConfig,
    EscalationConfig,
    NoisePattern,
    RetentionConfig,
    RotConfig,
    StoreConfig,
    TokenConfig,
    load_engine_config,
)

__all__ = [
    "ArchiveConfig",
    "BatchConfig",
    "CleaningConfig",
    "DAGConfig",
    "EngineConfig",
    "EscalationConfig",
    "NoisePattern",
    "RetentionConfig",
    "RotConfig",
    "StoreConfig",
    "TokenConfig",
    "load_engine_config",
]
