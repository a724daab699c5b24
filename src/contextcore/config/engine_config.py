# src/contextcore/config/engine_config.py
"""
Context engine configuration models.

Each component of the engine receives its own section; nothing reads
configuration from module-level state. The hierarchy:

    EngineConfig (root)
    ├── TokenConfig       - Encoding, cache size, exact counting
    ├── StoreConfig       - Snapshot path and FIFO backstop
    ├── RetentionConfig   - Budget ceiling and per-type windows/ratios
    ├── CleaningConfig    - Noise pattern table and stale-tool horizon
    ├── RotConfig         - Health thresholds, penalty caps, severity bands
    ├── DAGConfig         - Level cap, preview size, condensing fan-in
    ├── ArchiveConfig     - Archive directory, threshold, chunking
    ├── BatchConfig       - Worker pool size and retry policy
    └── EscalationConfig  - Target size for model-assisted digests

Usage:
    >>> from contextcore.config import EngineConfig, load_engine_config
    >>> config = EngineConfig()
    >>> config.retention.keep_recent_by_type["tool_result"]
    5

    >>> config = load_engine_config(config_dict={
    ...     "contextcore": {"batch": {"concurrency": 3}}
    ... })
    >>> config.batch.concurrency
    3
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..exceptions import ConfigError
from ..models import EntryType

# =============================================================================
# TOKENS
# =============================================================================


class TokenConfig(BaseModel):
    """
    Token estimation settings.

    Examples:
        >>> TokenConfig().encoding
        'cl100k'
    """

    encoding: str = Field(
        default="cl100k",
        description="Declared encoding; selects the characters-per-token ratio",
    )
    chars_per_token: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Explicit ratio overriding the encoding's default",
    )
    message_overhead: int = Field(
        default=5,
        ge=0,
        description="Framing tokens added per message by estimate_messages",
    )
    cache_size: int = Field(
        default=1000,
        ge=0,
        description="LRU cache capacity (0 disables caching)",
    )
    exact: bool = Field(
        default=False,
        description="Count with the tiktoken encoder instead of the ratio",
    )

    @field_validator("encoding")
    @classmethod
    def validate_encoding(cls, v: str) -> str:
        allowed = {"cl100k", "p50k", "r50k", "o200k", "character"}
        v = v.lower().removesuffix("_base")
        if v not in allowed:
            raise ValueError(f"encoding must be one of {sorted(allowed)}, got {v!r}")
        return v


# =============================================================================
# STORE
# =============================================================================


class StoreConfig(BaseModel):
    """Entry store settings."""

    path: Optional[str] = Field(
        default=None,
        description="Snapshot file (JSON). None keeps the store in memory only.",
    )
    max_entries: int = Field(
        default=1000,
        ge=1,
        description="Hard count ceiling; the oldest entries are trimmed FIFO beyond it",
    )
    auto_save: bool = Field(
        default=False,
        description="Save the snapshot after every add/update",
    )

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: Optional[str]) -> Optional[str]:
        """Expand ~ and environment variables in path."""
        if v is None:
            return v
        return os.path.expanduser(os.path.expandvars(v))


# =============================================================================
# RETENTION
# =============================================================================


def _default_keep_recent() -> Dict[str, int]:
    return {
        EntryType.USER.value: 20,
        EntryType.ASSISTANT.value: 15,
        EntryType.SYSTEM.value: 10,
        EntryType.TOOL_INVOCATION.value: 5,
        EntryType.TOOL_RESULT.value: 5,
        EntryType.DECISION.value: 30,
        EntryType.FILE_REFERENCE.value: 10,
        EntryType.ERROR.value: 5,
        EntryType.SUMMARY.value: 10,
    }


def _default_compression_ratios() -> Dict[str, float]:
    return {
        EntryType.USER.value: 0.6,
        EntryType.ASSISTANT.value: 0.5,
        EntryType.SYSTEM.value: 1.0,
        EntryType.TOOL_INVOCATION.value: 0.15,
        EntryType.TOOL_RESULT.value: 0.15,
        EntryType.DECISION.value: 1.0,
        EntryType.FILE_REFERENCE.value: 0.4,
        EntryType.ERROR.value: 0.2,
        EntryType.SUMMARY.value: 1.0,
    }


def _check_type_keys(mapping: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for key, value in mapping.items():
        try:
            normalized[EntryType(key).value] = value
        except ValueError:
            raise ValueError(f"Unknown entry type {key!r}") from None
    return normalized


class RetentionConfig(BaseModel):
    """
    Budget ceiling and the per-type retention table.

    ``keep_recent_by_type`` and ``compression_ratios`` accept any entry
    type spelling understood by :class:`EntryType`; types missing from the
    tables use ``default_keep_recent`` / ``default_compression_ratio``.
    """

    max_total_tokens: int = Field(
        default=100_000,
        ge=1,
        description="Token ceiling of the active context",
    )
    threshold: float = Field(
        default=1.0,
        gt=0.0,
        le=1.0,
        description="Fraction of the ceiling at which action is needed",
    )
    max_entries: int = Field(
        default=100,
        ge=1,
        description="Entry count at which action is needed regardless of tokens",
    )
    keep_recent_by_type: Dict[str, int] = Field(
        default_factory=_default_keep_recent,
        description="Per-type count of most recent entries kept verbatim",
    )
    compression_ratios: Dict[str, float] = Field(
        default_factory=_default_compression_ratios,
        description="Per-type fraction of characters retained when downsizing",
    )
    never_summarize: List[str] = Field(
        default_factory=lambda: [EntryType.DECISION.value, EntryType.SYSTEM.value],
        description="Types that are never eviction candidates",
    )
    default_keep_recent: int = Field(default=5, ge=0)
    default_compression_ratio: float = Field(default=0.3, ge=0.0, le=1.0)

    @field_validator("keep_recent_by_type")
    @classmethod
    def validate_keep_recent(cls, v: Dict[str, int]) -> Dict[str, int]:
        v = _check_type_keys(v)
        for key, count in v.items():
            if count < 0:
                raise ValueError(f"keep_recent_by_type[{key!r}] must be >= 0")
        return {**_default_keep_recent(), **v}

    @field_validator("compression_ratios")
    @classmethod
    def validate_ratios(cls, v: Dict[str, float]) -> Dict[str, float]:
        v = _check_type_keys(v)
        for key, ratio in v.items():
            if not 0.0 <= ratio <= 1.0:
                raise ValueError(f"compression_ratios[{key!r}] must be within [0, 1]")
        return {**_default_compression_ratios(), **v}

    @field_validator("never_summarize")
    @classmethod
    def validate_never_summarize(cls, v: List[str]) -> List[str]:
        return list(_check_type_keys({key: True for key in v}))


# =============================================================================
# CLEANING
# =============================================================================


class NoisePattern(BaseModel):
    """One row of the noise pattern table."""

    name: str
    pattern: str
    ignore_case: bool = True

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"Invalid noise pattern {v!r}: {exc}") from exc
        return v

    @classmethod
    def for_tag(cls, tag: str) -> "NoisePattern":
        """Pattern matching a ``<tag>...</tag>`` region, shortest match."""
        escaped = re.escape(tag)
        return cls(name=tag, pattern=rf"<{escaped}>[\s\S]*?</{escaped}>")


def _default_noise_patterns() -> List[NoisePattern]:
    return [NoisePattern.for_tag(tag) for tag in ("thought", "thinking", "reflection", "internal_thought")]


class CleaningConfig(BaseModel):
    """Noise stripping and stale tool-result pruning."""

    noise_patterns: List[NoisePattern] = Field(
        default_factory=_default_noise_patterns,
        description="Internal-reasoning regions removed by noise stripping",
    )
    extra_patterns: List[str] = Field(
        default_factory=list,
        description="Additional raw regexes stripped as noise (matched case-sensitively)",
    )
    stale_tool_horizon: int = Field(
        default=10,
        ge=0,
        description="Tool results with at least this many newer tool results are stale",
    )
    placeholder: str = Field(
        default="[Tool output pruned]",
        min_length=1,
        description="Replacement payload for pruned tool results",
    )
    essential_tools: List[str] = Field(
        default_factory=lambda: ["Read", "Glob", "Grep"],
        description="Tools whose results are never pruned",
    )
    keep_latest_per_type: bool = Field(
        default=True,
        description="Leave the most recent entry of each type unstripped",
    )

    @field_validator("extra_patterns")
    @classmethod
    def validate_extra_patterns(cls, v: List[str]) -> List[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid extra pattern {pattern!r}: {exc}") from exc
            if re.fullmatch(pattern, ""):
                raise ValueError(f"Extra pattern {pattern!r} matches the empty string")
        return v


# =============================================================================
# ROT DETECTOR
# =============================================================================


class RotConfig(BaseModel):
    """
    Structural health scoring.

    The score starts at 100. Each factor deducts at most its cap:
    noise markers (``noise_penalty_per_marker`` each), a flat
    ``stale_penalty`` when the stale ratio exceeds its ceiling, one point
    per ``length_penalty_step`` characters of average entry length above
    the ceiling, and one point per ``token_penalty_step`` tokens above the
    token ceiling.
    """

    token_ceiling: int = Field(default=100_000, ge=1)
    health_threshold: int = Field(default=50, ge=0, le=100)
    stale_ratio_ceiling: float = Field(default=0.3, ge=0.0, le=1.0)
    max_avg_entry_length: int = Field(default=5000, ge=1)
    escalation_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Fraction of the token ceiling above which escalation is advised",
    )

    noise_penalty_per_marker: int = Field(default=5, ge=0)
    noise_penalty_cap: int = Field(default=30, ge=0, le=100)
    stale_penalty: int = Field(default=20, ge=0, le=100)
    length_penalty_step: int = Field(default=500, ge=1)
    length_penalty_cap: int = Field(default=20, ge=0, le=100)
    token_penalty_step: int = Field(default=5000, ge=1)
    token_penalty_cap: int = Field(default=30, ge=0, le=100)

    # Severity bands
    noise_medium: int = Field(default=5, ge=0)
    noise_high: int = Field(default=10, ge=0)
    stale_high: float = Field(default=0.5, ge=0.0, le=1.0)
    length_medium: int = Field(default=7000, ge=0)
    length_high: int = Field(default=10_000, ge=0)
    tokens_medium: int = Field(default=120_000, ge=0)
    tokens_high: int = Field(default=150_000, ge=0)


# =============================================================================
# DAG
# =============================================================================


class DAGConfig(BaseModel):
    """Hierarchical compaction settings."""

    max_level: int = Field(
        default=5,
        ge=1,
        le=32,
        description="Highest level a condensed summary may reach",
    )
    preview_chars: int = Field(
        default=200,
        ge=0,
        description="Characters of each entry included in a structural digest",
    )
    max_preview_lines: int = Field(
        default=50,
        ge=1,
        description="Entries previewed per digest; the rest are counted only",
    )
    condense_min_children: int = Field(
        default=3,
        ge=2,
        description="Active summaries of one level needed before condensing them",
    )
    condense_max_children: int = Field(
        default=5,
        ge=2,
        description="Summaries folded into one condensed node",
    )


# =============================================================================
# ARCHIVE
# =============================================================================


class ArchiveConfig(BaseModel):
    """On-disk archival tier."""

    directory: str = Field(
        default=".contextcore/archives",
        description="Archive directory; created on demand",
    )
    token_limit: int = Field(default=80_000, ge=1)
    threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    preserve_recent: int = Field(default=20, ge=0)
    chunk_size: int = Field(default=10, ge=1)
    lossless: bool = Field(
        default=True,
        description="Store entry content verbatim (otherwise metadata only)",
    )

    @field_validator("directory")
    @classmethod
    def expand_directory(cls, v: str) -> str:
        return os.path.expanduser(os.path.expandvars(v))


# =============================================================================
# BATCH / ESCALATION
# =============================================================================


class BatchConfig(BaseModel):
    """Concurrency-limited batch operator."""

    concurrency: int = Field(default=5, ge=1, description="Worker pool size")
    max_retries: int = Field(default=3, ge=0, description="Retries on schema/parse errors")
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base backoff in seconds; attempt n waits retry_delay * n",
    )
    prompt_template: str = Field(default="Process the following item: {item}")


class EscalationConfig(BaseModel):
    """Model-assisted digesting when cleaning cannot restore health."""

    enabled: bool = Field(default=True)
    target_tokens: int = Field(default=8000, ge=1)
    prompt_chars_per_entry: int = Field(default=2000, ge=1)
    min_reduction: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="A model result is accepted only below this fraction of the input size",
    )


# =============================================================================
# ROOT
# =============================================================================


class EngineConfig(BaseModel):
    """
    Root configuration for the context engine.

    Usage:
        >>> config = EngineConfig()
        >>> config = EngineConfig(**toml_dict["contextcore"])
    """

    tokens: TokenConfig = Field(default_factory=TokenConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    cleaning: CleaningConfig = Field(default_factory=CleaningConfig)
    rot: RotConfig = Field(default_factory=RotConfig)
    dag: DAGConfig = Field(default_factory=DAGConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)


# =============================================================================
# HELPER: LOAD FROM TOML DICT
# =============================================================================


def load_engine_config(
    config_dict: dict[str, Any] | None = None,
    config_path: Path | str | None = None,
) -> EngineConfig:
    """
    Load engine configuration from a dictionary or TOML file.

    Args:
        config_dict: Pre-parsed configuration. The ``"contextcore"`` key is
            used when present, otherwise the dict itself. Applied on top of
            the file's values.
        config_path: TOML file; its ``[contextcore]`` table is read.

    Returns:
        Validated EngineConfig with defaults for unspecified settings.

    Raises:
        FileNotFoundError: If config_path does not exist.
        ConfigError: If the file is not valid TOML or validation fails.
    """
    data: dict[str, Any] = {}

    if config_path is not None:
        import tomllib

        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        try:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
        data = raw.get("contextcore", {})

    if config_dict is not None:
        overrides = config_dict.get("contextcore", config_dict)
        data = _deep_merge(data, overrides)

    try:
        return EngineConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid context engine configuration: {exc}") from exc


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged
