# src/contextcore/context/cleaning.py
"""
Cleaning strategies: cheap, model-free context reduction.

Two strategies, both pure functions over an entry list that return a new
list plus the concrete actions taken:

1. **Noise stripping**: removes internal-reasoning regions
   (``<thinking>...</thinking>`` and friends) matched by the configured
   pattern table (plus any ``extra_patterns`` regexes) from every entry
   except the most recent one of its type.

2. **Stale tool pruning**: replaces the payload of tool results that have
   at least ``stale_tool_horizon`` newer tool results with a fixed
   placeholder and marks them ``extensions["pruned"] = True``. Results of
   essential tools (Read, Glob, Grep by default) are never pruned.

Both are idempotent: cleaning already-cleaned output changes nothing.
Noise patterns are data (``CleaningConfig.noise_patterns``), so adding a
new kind of noise is a configuration change.

Example::

    cleaner = CleaningStrategy(CleaningConfig(), estimator)
    result = cleaner.clean(entries)
    result.removed_noise_blocks, result.pruned_tool_results, result.tokens_reclaimed
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import CleaningConfig
from ..models import Entry, EntryType
from .tokens import TokenCounter, TokenEstimator

logger = logging.getLogger(__name__)


class CleaningMode(str, Enum):
    """Selectable cleaning strategies."""

    NOISE = "noise"
    STALE_TOOL = "stale-tool"
    COMBINED = "combined"


@dataclass
class CleaningAction:
    """One change made to one entry."""

    kind: str
    entry_id: str
    count: int
    tokens_reclaimed: int


@dataclass
class CleaningResult:
    """
    Output of a cleaning pass.

    Attributes:
        entries: The cleaned entry list (same order and ids as the input).
        actions: Per-entry changes.
        removed_noise_blocks: Noise regions removed.
        pruned_tool_results: Tool results replaced by the placeholder.
        tokens_before: Cost of the input entries.
        tokens_after: Cost of the cleaned entries.
    """

    entries: List[Entry]
    actions: List[CleaningAction] = field(default_factory=list)
    removed_noise_blocks: int = 0
    pruned_tool_results: int = 0
    tokens_before: int = 0
    tokens_after: int = 0

    @property
    def tokens_reclaimed(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)

    @property
    def changed(self) -> bool:
        return bool(self.actions)

    def changed_entries(self) -> List[Entry]:
        ids = {a.entry_id for a in self.actions}
        return [e for e in self.entries if e.id in ids]


class CleaningStrategy:
    """
    Applies noise stripping and stale tool pruning.

    Args:
        config: Pattern table, horizon, placeholder and essential tools.
        counter: Token counter used to re-price changed entries.
    """

    def __init__(
        self,
        config: Optional[CleaningConfig] = None,
        counter: Optional[TokenCounter] = None,
    ) -> None:
        self.config = config or CleaningConfig()
        self.counter = counter or TokenEstimator()
        self._patterns: List[Tuple[str, re.Pattern[str]]] = [
            (p.name, re.compile(p.pattern, re.IGNORECASE if p.ignore_case else 0))
            for p in self.config.noise_patterns
        ]
        self._patterns.extend(
            (f"extra_{i}", re.compile(pattern)) for i, pattern in enumerate(self.config.extra_patterns)
        )

    # -------------------------------------------------------------------------
    # Noise
    # -------------------------------------------------------------------------

    def count_noise_markers(self, text: str) -> int:
        return sum(len(pattern.findall(text)) for _, pattern in self._patterns)

    def has_noise(self, text: str) -> bool:
        return any(pattern.search(text) for _, pattern in self._patterns)

    def strip_text(self, text: str) -> Tuple[str, int]:
        """
        Remove every noise region from ``text``.

        Substitution repeats until no pattern matches, since removing one
        region can join the halves of another marker.
        """
        removed = 0
        while True:
            round_removed = 0
            for _, pattern in self._patterns:
                text, n = pattern.subn("", text)
                round_removed += n
            if round_removed == 0:
                break
            removed += round_removed
        if removed:
            text = re.sub(r"\n{3,}", "\n\n", text).strip()
        return text, removed

    def strip_noise(self, entries: Sequence[Entry]) -> CleaningResult:
        """Strip noise regions from all but the latest entry of each type."""
        latest = self._latest_by_type(entries) if self.config.keep_latest_per_type else {}
        result = CleaningResult(entries=[], tokens_before=_tokens(entries))

        for entry in entries:
            if latest.get(entry.type) == entry.id:
                result.entries.append(entry)
                continue
            stripped, removed = self.strip_text(entry.content)
            if not removed:
                result.entries.append(entry)
                continue
            cleaned = entry.with_content(stripped, self.counter)
            result.entries.append(cleaned)
            result.removed_noise_blocks += removed
            result.actions.append(
                CleaningAction("strip_noise", entry.id, removed, max(0, entry.tokens - cleaned.tokens))
            )

        result.tokens_after = _tokens(result.entries)
        if result.removed_noise_blocks:
            logger.debug("Stripped %d noise blocks from %d entries", result.removed_noise_blocks, len(result.actions))
        return result

    @staticmethod
    def _latest_by_type(entries: Sequence[Entry]) -> Dict[EntryType, str]:
        latest: Dict[EntryType, str] = {}
        for entry in entries:
            latest[entry.type] = entry.id
        return latest

    # -------------------------------------------------------------------------
    # Stale tool results
    # -------------------------------------------------------------------------

    def stale_tool_ids(self, entries: Sequence[Entry]) -> List[str]:
        """
        Ids of tool results outside the recency horizon that are still
        unpruned and not from an essential tool.
        """
        tool_results = [e for e in entries if e.type == EntryType.TOOL_RESULT]
        horizon = self.config.stale_tool_horizon
        cutoff = max(0, len(tool_results) - horizon)
        essential = set(self.config.essential_tools)
        return [
            e.id
            for e in tool_results[:cutoff]
            if not e.is_pruned and e.tool_name not in essential
        ]

    def prune_stale_tool_results(self, entries: Sequence[Entry]) -> CleaningResult:
        stale = set(self.stale_tool_ids(entries))
        result = CleaningResult(entries=[], tokens_before=_tokens(entries))

        for entry in entries:
            if entry.id not in stale:
                result.entries.append(entry)
                continue
            pruned = entry.with_content(
                self.config.placeholder,
                self.counter,
                extensions={"pruned": True, "original_tokens": entry.tokens},
            )
            result.entries.append(pruned)
            result.pruned_tool_results += 1
            result.actions.append(
                CleaningAction("prune_tool_result", entry.id, 1, max(0, entry.tokens - pruned.tokens))
            )

        result.tokens_after = _tokens(result.entries)
        if result.pruned_tool_results:
            logger.debug("Pruned %d stale tool results", result.pruned_tool_results)
        return result

    # -------------------------------------------------------------------------
    # Combined
    # -------------------------------------------------------------------------

    def clean(self, entries: Sequence[Entry], mode: CleaningMode | str = CleaningMode.COMBINED) -> CleaningResult:
        """Run the selected strategy (or both, noise first) and merge the results."""
        mode = CleaningMode(mode)
        if mode is CleaningMode.NOISE:
            return self.strip_noise(entries)
        if mode is CleaningMode.STALE_TOOL:
            return self.prune_stale_tool_results(entries)

        noise = self.strip_noise(entries)
        stale = self.prune_stale_tool_results(noise.entries)
        return CleaningResult(
            entries=stale.entries,
            actions=noise.actions + stale.actions,
            removed_noise_blocks=noise.removed_noise_blocks,
            pruned_tool_results=stale.pruned_tool_results,
            tokens_before=noise.tokens_before,
            tokens_after=stale.tokens_after,
        )


def _tokens(entries: Sequence[Entry]) -> int:
    return sum(e.tokens for e in entries)
