# src/contextcore/context/rot.py
"""
Rot Detector: structural health scoring for the active context.

The health score measures *degradation*, not size alone. It starts at 100
and deducts, each factor capped:

- un-stripped noise markers (per-marker penalty),
- a flat penalty when the stale tool-result ratio exceeds its ceiling,
- average entry length above a ceiling (one point per step),
- total tokens above the token ceiling (one point per step).

The score is floored at 0. Alongside it, each exceeded threshold yields a
:class:`DegradationIndicator` with a low/medium/high severity.

:meth:`RotDetector.should_escalate` is the gate the engine uses to decide
whether cleaning is enough or whether compaction and model-assisted
digesting are needed.

Assessments are derived purely from the entries passed in and are never
persisted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..config import RotConfig
from ..models import Entry
from .cleaning import CleaningStrategy

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IndicatorType(str, Enum):
    NOISE_MARKERS = "noise_markers"
    STALE_TOOLS = "stale_tools"
    ENTRY_BLOAT = "entry_bloat"
    TOKEN_GROWTH = "token_growth"


@dataclass
class DegradationIndicator:
    """One exceeded threshold."""

    type: IndicatorType
    severity: Severity
    description: str
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "value": self.value,
        }


@dataclass
class ContextMetrics:
    """Raw measurements behind a health assessment."""

    total_tokens: int = 0
    entry_count: int = 0
    noise_markers: int = 0
    stale_tool_results: int = 0
    stale_ratio: float = 0.0
    avg_entry_length: float = 0.0


@dataclass
class HealthAssessment:
    """
    Score in [0, 100], the indicators that lowered it, and the metrics.

    Attributes:
        score: Health score (100 is pristine).
        is_healthy: ``score >= health_threshold``.
        indicators: Exceeded thresholds, with severity.
        metrics: Measurements the score was computed from.
    """

    score: int
    is_healthy: bool
    indicators: List[DegradationIndicator] = field(default_factory=list)
    metrics: ContextMetrics = field(default_factory=ContextMetrics)

    @property
    def issues(self) -> List[str]:
        return [i.description for i in self.indicators]

    @property
    def has_high_severity(self) -> bool:
        return any(i.severity is Severity.HIGH for i in self.indicators)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "is_healthy": self.is_healthy,
            "indicators": [i.to_dict() for i in self.indicators],
            "metrics": self.metrics.__dict__.copy(),
        }


class RotDetector:
    """
    Scores entry sets for structural degradation.

    Args:
        config: Thresholds, penalty caps and severity bands.
        cleaner: Supplies the noise pattern table and the stale-tool rule,
            so the detector counts exactly what cleaning would remove.
    """

    def __init__(
        self,
        config: Optional[RotConfig] = None,
        cleaner: Optional[CleaningStrategy] = None,
    ) -> None:
        self.config = config or RotConfig()
        self.cleaner = cleaner or CleaningStrategy()

    def measure(self, entries: Sequence[Entry], total_tokens: Optional[int] = None) -> ContextMetrics:
        count = len(entries)
        stale = len(self.cleaner.stale_tool_ids(entries))
        return ContextMetrics(
            total_tokens=sum(e.tokens for e in entries) if total_tokens is None else total_tokens,
            entry_count=count,
            noise_markers=sum(self.cleaner.count_noise_markers(e.content) for e in entries),
            stale_tool_results=stale,
            stale_ratio=stale / count if count else 0.0,
            avg_entry_length=sum(len(e.content) for e in entries) / count if count else 0.0,
        )

    def score(self, metrics: ContextMetrics) -> int:
        cfg = self.config
        score = 100

        if metrics.noise_markers > 0:
            score -= min(cfg.noise_penalty_cap, metrics.noise_markers * cfg.noise_penalty_per_marker)

        if metrics.stale_ratio > cfg.stale_ratio_ceiling:
            score -= cfg.stale_penalty

        if metrics.avg_entry_length > cfg.max_avg_entry_length:
            excess = metrics.avg_entry_length - cfg.max_avg_entry_length
            score -= min(cfg.length_penalty_cap, math.floor(excess / cfg.length_penalty_step))

        if metrics.total_tokens > cfg.token_ceiling:
            excess = metrics.total_tokens - cfg.token_ceiling
            score -= min(cfg.token_penalty_cap, math.floor(excess / cfg.token_penalty_step))

        return max(0, score)

    def indicators(self, metrics: ContextMetrics) -> List[DegradationIndicator]:
        cfg = self.config
        found: List[DegradationIndicator] = []

        if metrics.noise_markers > 0:
            found.append(DegradationIndicator(
                IndicatorType.NOISE_MARKERS,
                _band(metrics.noise_markers, cfg.noise_medium, cfg.noise_high),
                f"{metrics.noise_markers} internal-reasoning blocks left in context",
                metrics.noise_markers,
            ))

        if metrics.stale_ratio > cfg.stale_ratio_ceiling:
            found.append(DegradationIndicator(
                IndicatorType.STALE_TOOLS,
                _band(metrics.stale_ratio, cfg.stale_ratio_ceiling, cfg.stale_high),
                f"{round(metrics.stale_ratio * 100)}% of entries are stale tool results",
                metrics.stale_ratio,
            ))

        if metrics.avg_entry_length > cfg.max_avg_entry_length:
            found.append(DegradationIndicator(
                IndicatorType.ENTRY_BLOAT,
                _band(metrics.avg_entry_length, cfg.length_medium, cfg.length_high),
                f"Average entry length ({round(metrics.avg_entry_length)} chars) exceeds "
                f"{cfg.max_avg_entry_length}",
                metrics.avg_entry_length,
            ))

        if metrics.total_tokens > cfg.token_ceiling:
            found.append(DegradationIndicator(
                IndicatorType.TOKEN_GROWTH,
                _band(metrics.total_tokens, cfg.tokens_medium, cfg.tokens_high),
                f"Context size ({metrics.total_tokens} tokens) exceeds {cfg.token_ceiling}",
                metrics.total_tokens,
            ))

        return found

    def assess(self, entries: Sequence[Entry], total_tokens: Optional[int] = None) -> HealthAssessment:
        """Measure, score and collect indicators for ``entries``."""
        metrics = self.measure(entries, total_tokens)
        score = self.score(metrics)
        assessment = HealthAssessment(
            score=score,
            is_healthy=score >= self.config.health_threshold,
            indicators=self.indicators(metrics),
            metrics=metrics,
        )
        logger.debug(
            "Health %d (%d entries, %d tokens, %d noise markers, stale ratio %.2f)",
            score, metrics.entry_count, metrics.total_tokens, metrics.noise_markers, metrics.stale_ratio,
        )
        return assessment

    def is_healthy(self, entries: Sequence[Entry], total_tokens: Optional[int] = None) -> bool:
        return self.assess(entries, total_tokens).is_healthy

    def should_escalate(
        self,
        entries: Sequence[Entry],
        total_tokens: Optional[int] = None,
        assessment: Optional[HealthAssessment] = None,
    ) -> bool:
        """Unhealthy, any high-severity indicator, or tokens above ``escalation_ratio`` of the ceiling."""
        assessment = assessment or self.assess(entries, total_tokens)
        if not assessment.is_healthy or assessment.has_high_severity:
            return True
        return assessment.metrics.total_tokens > self.config.escalation_ratio * self.config.token_ceiling


def _band(value: float, medium: float, high: float) -> Severity:
    if value > high:
        return Severity.HIGH
    if value > medium:
        return Severity.MEDIUM
    return Severity.LOW
