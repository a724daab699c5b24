# src/contextcore/context/retention.py
"""
Type-aware retention policy.

Decides *whether* the active context needs action and *which* entries are
eviction candidates:

- ``needs_action``: total tokens above ``ceiling * threshold`` or more
  entries than ``max_entries``.
- Per-type sliding window: every type keeps its ``keep_recent_by_type``
  newest entries verbatim; older ones become candidates, except for
  ``never_summarize`` types which are never candidates, whatever the
  budget pressure.
- Per-type compression ratio: when content is downsized, the fraction of
  characters retained (15% for tool output, 100% for decisions). Lines
  are truncated proportionally and a trailing marker records the
  original and compacted sizes.

Example::

    policy = RetentionPolicy(RetentionConfig())
    if policy.needs_action(entries):
        plan = policy.partition(entries)
        dag.compact(plan.candidates)
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..config import RetentionConfig
from ..models import Entry, EntryType
from .tokens import TokenCounter, TokenEstimator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionRule:
    """Effective policy for one entry type."""

    keep_recent: int
    compression_ratio: float
    never_summarize: bool


@dataclass
class RetentionPlan:
    """
    Partition of an entry list.

    Attributes:
        kept: Entries inside their type's recent window.
        candidates: Eviction candidates, in chronological order.
        protected: Entries of never-summarize types.
    """

    kept: List[Entry] = field(default_factory=list)
    candidates: List[Entry] = field(default_factory=list)
    protected: List[Entry] = field(default_factory=list)

    @property
    def candidate_ids(self) -> List[str]:
        return [e.id for e in self.candidates]

    @property
    def candidate_tokens(self) -> int:
        return sum(e.tokens for e in self.candidates)


@dataclass
class TypeDigest:
    """Downsized text for the candidates of one type."""

    entry_type: EntryType
    entry_ids: List[str]
    content: str
    original_chars: int
    compressed_chars: int


@dataclass
class WindowSummary:
    """Result of :meth:`RetentionPolicy.summarize_window`."""

    digests: List[TypeDigest] = field(default_factory=list)
    kept: List[Entry] = field(default_factory=list)
    protected: List[Entry] = field(default_factory=list)
    tokens_before: int = 0
    tokens_after: int = 0

    @property
    def tokens_reclaimed(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)


class RetentionPolicy:
    """Applies :class:`RetentionConfig` to entry lists. Stateless apart from config."""

    def __init__(self, config: Optional[RetentionConfig] = None) -> None:
        self.config = config or RetentionConfig()
        self._never = {EntryType(t) for t in self.config.never_summarize}

    def rule_for(self, entry_type: EntryType | str) -> RetentionRule:
        entry_type = EntryType(entry_type)
        return RetentionRule(
            keep_recent=self.config.keep_recent_by_type.get(entry_type.value, self.config.default_keep_recent),
            compression_ratio=self.config.compression_ratios.get(
                entry_type.value, self.config.default_compression_ratio
            ),
            never_summarize=entry_type in self._never,
        )

    @property
    def token_budget(self) -> int:
        return math.floor(self.config.max_total_tokens * self.config.threshold)

    def needs_action(self, entries: Sequence[Entry], total_tokens: Optional[int] = None) -> bool:
        """
        True when the budget or the entry ceiling is exceeded.

        ``total_tokens`` overrides the sum of the entries' cached counts
        (the engine passes the cost of its whole active view, summaries
        included).
        """
        tokens = sum(e.tokens for e in entries) if total_tokens is None else total_tokens
        return tokens > self.token_budget or len(entries) > self.config.max_entries

    def partition(self, entries: Sequence[Entry]) -> RetentionPlan:
        """Split ``entries`` into kept, candidate and protected sets."""
        by_type: Dict[EntryType, List[Entry]] = defaultdict(list)
        for entry in entries:
            by_type[entry.type].append(entry)

        candidate_ids = set()
        protected_ids = set()
        for entry_type, typed in by_type.items():
            rule = self.rule_for(entry_type)
            if rule.never_summarize:
                protected_ids.update(e.id for e in typed)
                continue
            older = typed[: max(0, len(typed) - rule.keep_recent)]
            candidate_ids.update(e.id for e in older)

        plan = RetentionPlan()
        for entry in entries:
            if entry.id in protected_ids:
                plan.protected.append(entry)
            elif entry.id in candidate_ids:
                plan.candidates.append(entry)
            else:
                plan.kept.append(entry)

        logger.debug(
            "Retention partition: %d kept, %d candidates, %d protected",
            len(plan.kept), len(plan.candidates), len(plan.protected),
        )
        return plan

    def eviction_candidates(self, entries: Sequence[Entry]) -> List[Entry]:
        return self.partition(entries).candidates

    def compress_content(self, content: str, entry_type: EntryType | str) -> str:
        """Downsize ``content`` with the compression ratio of ``entry_type``."""
        entry_type = EntryType(entry_type)
        return compress_text(content, self.rule_for(entry_type).compression_ratio, entry_type.value)

    def summarize_window(
        self,
        entries: Sequence[Entry],
        counter: Optional[TokenCounter] = None,
    ) -> WindowSummary:
        """
        Partition ``entries`` and downsize the candidates type by type.

        Each type's candidates are concatenated and compressed with that
        type's ratio. The entries themselves are not modified.
        """
        counter = counter or TokenEstimator()
        plan = self.partition(entries)

        grouped: Dict[EntryType, List[Entry]] = defaultdict(list)
        for entry in plan.candidates:
            grouped[entry.type].append(entry)

        summary = WindowSummary(kept=plan.kept, protected=plan.protected)
        summary.tokens_before = sum(e.tokens for e in entries)
        for entry_type, typed in grouped.items():
            joined = "\n".join(e.content for e in typed)
            compressed = self.compress_content(joined, entry_type)
            summary.digests.append(
                TypeDigest(
                    entry_type=entry_type,
                    entry_ids=[e.id for e in typed],
                    content=compressed,
                    original_chars=len(joined),
                    compressed_chars=len(compressed),
                )
            )

        summary.tokens_after = (
            sum(e.tokens for e in plan.kept)
            + sum(e.tokens for e in plan.protected)
            + sum(counter.estimate(d.content) for d in summary.digests)
        )
        return summary


def compress_text(content: str, ratio: float, label: str = "entry") -> str:
    """
    Keep roughly ``ratio`` of ``content``'s characters.

    Blank lines are dropped, each line is cut to an equal share of the
    target length, and lines stop once the target is reached. When the
    result falls noticeably short of the target, a marker with the
    original and compacted sizes is appended.
    """
    if ratio >= 1.0 or not content:
        return content

    max_length = math.floor(len(content) * ratio)
    lines = content.split("\n")
    max_line_length = max(4, max_length // len(lines))

    kept: List[str] = []
    current = 0
    for line in lines:
        if not line.strip():
            continue
        if current >= max_length:
            break
        if len(line) > max_line_length:
            line = line[: max_line_length - 3] + "..."
        kept.append(line)
        current += len(line)

    result = "\n".join(kept)
    if len(result) < len(content) * ratio * 0.9:
        result += f"\n\n[{label} entries summarized: {len(content)} → {len(result)} chars]"
    return result
