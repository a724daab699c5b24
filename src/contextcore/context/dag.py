# src/contextcore/context/dag.py
"""
Hierarchical DAG compaction with lossless expansion by identifier.

The compactor owns the *active view*: the ordered list of ids (raw entry
ids and summary ids) that currently make up the context. Compaction
replaces a set of active ids with one :class:`SummaryNode`:

- A level-1 node points at raw entries only.
- A level-N node (N > 1) points at level-(N-1) summaries only.

Each compaction:

1. Prefers condensing existing same-level summaries in the active view
   into one node a level higher (bounded by ``max_level``) over
   summarizing raw entries again.
2. Builds a deterministic structural digest (counts by type plus bounded
   per-entry previews). An externally produced digest (from the model
   client) may be supplied instead; nothing semantic is generated here.
3. Records ordered, timestamped pointers to every compacted id.
4. Removes the compacted ids from the active view and inserts the new
   summary id where the earliest of them stood.

``expand(summary_id)`` resolves pointers with an explicit work-list,
yielding the original entry ids in their original relative order, and
puts them back where the summary stood. Nodes are immutable once
created and disappear only through expansion or :meth:`reset`.

Example::

    dag = DAGCompactor(DAGConfig(), estimator)
    for entry in entries:
        dag.track(entry)
    result = dag.compact(plan.candidates)
    dag.expand(result.node.id).entry_ids == plan.candidate_ids   # True
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import DAGConfig
from ..exceptions import DAGIntegrityError
from ..models import Entry, EntryType, utc_now
from .tokens import TokenCounter, TokenEstimator

logger = logging.getLogger(__name__)


def new_summary_id() -> str:
    return f"sum_{uuid.uuid4().hex[:16]}"


# =============================================================================
# Data Models
# =============================================================================


class PointerKind(str, Enum):
    ENTRY = "entry"
    SUMMARY = "summary"


@dataclass(frozen=True)
class Pointer:
    """Timestamped reference from a summary node to one child."""

    kind: PointerKind
    target_id: str
    index: int
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target_id": self.target_id,
            "index": self.index,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pointer":
        return cls(
            kind=PointerKind(data["kind"]),
            target_id=data["target_id"],
            index=int(data["index"]),
            timestamp=data["timestamp"],
        )


@dataclass(frozen=True)
class SummaryNode:
    """
    Immutable DAG node replacing a set of entries or summaries.

    Attributes:
        id: Summary id (``sum_...``).
        level: 1 for nodes over raw entries, N+1 for nodes over level-N nodes.
        pointers: Ordered child references; all ENTRY at level 1, all
            SUMMARY above.
        digest: Text that stands in for the children in the active view.
        token_count: Cost of ``digest``.
        child_count: Number of direct children.
        entry_count: Number of raw entries reachable from this node.
        covered_tokens: Cost of the raw entries reachable from this node.
        created_at: ISO timestamp of compaction.
    """

    id: str
    level: int
    pointers: Tuple[Pointer, ...]
    digest: str
    token_count: int
    child_count: int
    entry_count: int
    covered_tokens: int
    created_at: str

    @property
    def child_ids(self) -> List[str]:
        return [p.target_id for p in self.pointers]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "pointers": [p.to_dict() for p in self.pointers],
            "digest": self.digest,
            "token_count": self.token_count,
            "child_count": self.child_count,
            "entry_count": self.entry_count,
            "covered_tokens": self.covered_tokens,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummaryNode":
        return cls(
            id=data["id"],
            level=int(data["level"]),
            pointers=tuple(Pointer.from_dict(p) for p in data["pointers"]),
            digest=data.get("digest", ""),
            token_count=int(data.get("token_count", 0)),
            child_count=int(data.get("child_count", len(data["pointers"]))),
            entry_count=int(data.get("entry_count", 0)),
            covered_tokens=int(data.get("covered_tokens", 0)),
            created_at=data.get("created_at", ""),
        )


@dataclass
class CompactionResult:
    """
    Outcome of :meth:`DAGCompactor.compact`.

    ``compacted`` is False for the structured no-op (nothing eligible);
    ``reason`` then says why.
    """

    compacted: bool
    reason: str = ""
    node: Optional[SummaryNode] = None
    compacted_ids: List[str] = field(default_factory=list)
    condensed: bool = False
    tokens_before: int = 0
    tokens_after: int = 0

    @property
    def tokens_reclaimed(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)


@dataclass
class ExpansionResult:
    """
    Outcome of :meth:`DAGCompactor.expand`.

    ``unrestored_ids`` lists covered entries whose content could not be
    brought back (for instance from a lossy archive); ``reason`` then
    says so even though the expansion itself succeeded.
    """

    success: bool
    summary_id: str
    reason: str = ""
    entry_ids: List[str] = field(default_factory=list)
    removed_summary_ids: List[str] = field(default_factory=list)
    position: int = -1
    unrestored_ids: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.success and not self.unrestored_ids


@dataclass
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)


# =============================================================================
# Compactor
# =============================================================================


class DAGCompactor:
    """
    Maintains the active view and the summary DAG for one session.

    Args:
        config: Level cap, preview size and condensing fan-in.
        counter: Token counter used to price digests.
    """

    def __init__(
        self,
        config: Optional[DAGConfig] = None,
        counter: Optional[TokenCounter] = None,
    ) -> None:
        self.config = config or DAGConfig()
        self.counter = counter or TokenEstimator()
        self.nodes: Dict[str, SummaryNode] = {}
        self.active_ids: List[str] = []
        self.compaction_count = 0
        self._entry_tokens: Dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Active view
    # -------------------------------------------------------------------------

    def track(self, entry: Entry) -> None:
        """Append ``entry`` to the active view, or refresh its token count if already tracked."""
        if entry.id not in self._entry_tokens and entry.id not in self.active_ids:
            self.active_ids.append(entry.id)
        self._entry_tokens[entry.id] = entry.tokens

    def untrack(self, entry_id: str) -> None:
        """Drop an entry id from the active view (e.g. after a FIFO trim)."""
        if entry_id in self.active_ids:
            self.active_ids.remove(entry_id)
        self._entry_tokens.pop(entry_id, None)

    def forget(self, entry_ids: Sequence[str]) -> int:
        """
        Drop cached token counts of entries no longer held in memory.

        Ids still in the active view keep theirs. Returns the number dropped.
        """
        dropped = 0
        for entry_id in entry_ids:
            if entry_id not in self.active_ids and self._entry_tokens.pop(entry_id, None) is not None:
                dropped += 1
        return dropped

    def is_active(self, item_id: str) -> bool:
        return item_id in self.active_ids

    def active_summaries(self) -> List[SummaryNode]:
        return [self.nodes[i] for i in self.active_ids if i in self.nodes]

    def active_entry_ids(self) -> List[str]:
        return [i for i in self.active_ids if i not in self.nodes]

    def active_tokens(self) -> int:
        """Cost of the active view: tracked entries plus active summary digests."""
        total = 0
        for item_id in self.active_ids:
            node = self.nodes.get(item_id)
            total += node.token_count if node is not None else self._entry_tokens.get(item_id, 0)
        return total

    # -------------------------------------------------------------------------
    # Compaction
    # -------------------------------------------------------------------------

    def condensable_group(self) -> List[SummaryNode]:
        """
        The oldest run of same-level active summaries eligible for
        condensing, or an empty list.

        The lowest level with at least ``condense_min_children`` active
        nodes below ``max_level`` wins.
        """
        by_level: Dict[int, List[SummaryNode]] = {}
        for node in self.active_summaries():
            by_level.setdefault(node.level, []).append(node)

        for level in sorted(by_level):
            group = by_level[level]
            if level < self.config.max_level and len(group) >= self.config.condense_min_children:
                return group[: self.config.condense_max_children]
        return []

    def compact(
        self,
        candidates: Sequence[Entry],
        digest: Optional[str] = None,
        prefer_condense: bool = True,
    ) -> CompactionResult:
        """
        Replace eligible items of the active view with one summary node.

        Args:
            candidates: Eviction candidates. Only those currently active
                and tracked are eligible.
            digest: Digest text to use instead of the structural one
                (applies to raw-entry compaction only).
            prefer_condense: Condense active summaries first when a
                group qualifies.

        Returns:
            A CompactionResult; ``compacted=False`` with a reason when
            nothing was eligible. Never raises for empty input.
        """
        tokens_before = self.active_tokens()

        if prefer_condense:
            group = self.condensable_group()
            if group:
                node = self._condense(group)
                return self._commit(node, [n.id for n in group], tokens_before, condensed=True)

        active = set(self.active_ids)
        eligible = list({
            e.id: e for e in candidates
            if e.id in self._entry_tokens and e.id in active and e.id not in self.nodes
        }.values())
        if not eligible:
            return CompactionResult(
                compacted=False,
                reason="no eligible candidates" if not candidates else "candidates are not in the active view",
                tokens_before=tokens_before,
                tokens_after=tokens_before,
            )

        position = {item_id: i for i, item_id in enumerate(self.active_ids)}
        eligible.sort(key=lambda e: position[e.id])
        node = self._summarize_entries(eligible, digest)
        return self._commit(node, [e.id for e in eligible], tokens_before, condensed=False)

    def _summarize_entries(self, entries: Sequence[Entry], digest: Optional[str]) -> SummaryNode:
        pointers = tuple(
            Pointer(PointerKind.ENTRY, e.id, i, e.created_at.isoformat())
            for i, e in enumerate(entries)
        )
        text = digest if digest is not None else self.structural_digest(entries)
        return SummaryNode(
            id=new_summary_id(),
            level=1,
            pointers=pointers,
            digest=text,
            token_count=self.counter.estimate(text),
            child_count=len(entries),
            entry_count=len(entries),
            covered_tokens=sum(self._entry_tokens.get(e.id, e.tokens) for e in entries),
            created_at=utc_now().isoformat(),
        )

    def _condense(self, children: Sequence[SummaryNode]) -> SummaryNode:
        level = children[0].level + 1
        pointers = tuple(
            Pointer(PointerKind.SUMMARY, child.id, i, child.created_at)
            for i, child in enumerate(children)
        )
        entry_count = sum(c.entry_count for c in children)
        header = (
            f"[Condensed summary of {len(children)} summaries covering "
            f"{entry_count} original entries, levels: "
            f"{', '.join(str(c.level) for c in children)}]"
        )
        lines = [header]
        for child in children:
            first_line = child.digest.split("\n", 1)[0]
            lines.append(f"- {child.id}: {_preview(first_line, self.config.preview_chars)}")
        text = "\n".join(lines)
        return SummaryNode(
            id=new_summary_id(),
            level=level,
            pointers=pointers,
            digest=text,
            token_count=self.counter.estimate(text),
            child_count=len(children),
            entry_count=entry_count,
            covered_tokens=sum(c.covered_tokens for c in children),
            created_at=utc_now().isoformat(),
        )

    def _commit(
        self,
        node: SummaryNode,
        replaced_ids: List[str],
        tokens_before: int,
        condensed: bool,
    ) -> CompactionResult:
        replaced = set(replaced_ids)
        insert_at = min(self.active_ids.index(i) for i in replaced_ids)
        remaining = [i for i in self.active_ids[:insert_at] if i not in replaced]
        self.active_ids = remaining + [node.id] + [i for i in self.active_ids[insert_at:] if i not in replaced]
        self.nodes[node.id] = node
        self.compaction_count += 1

        tokens_after = self.active_tokens()
        logger.info(
            "Compacted %d %s into level-%d %s (%d -> %d active tokens)",
            len(replaced_ids), "summaries" if condensed else "entries",
            node.level, node.id, tokens_before, tokens_after,
        )
        return CompactionResult(
            compacted=True,
            node=node,
            compacted_ids=list(replaced_ids),
            condensed=condensed,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )

    def structural_digest(self, entries: Sequence[Entry]) -> str:
        """
        Deterministic placeholder text: a count line by type followed by
        bounded previews of up to ``max_preview_lines`` entries.
        """
        counts = Counter(e.type for e in entries)
        parts = [
            f"{counts[t]} {t.value}"
            for t in EntryType
            if counts[t]
        ]
        lines = [f"[{len(entries)} entries: {', '.join(parts)}]"]
        shown = entries[: self.config.max_preview_lines]
        for entry in shown:
            lines.append(f"[{entry.type.value.upper()}] {_preview(entry.content, self.config.preview_chars)}")
        hidden = len(entries) - len(shown)
        if hidden > 0:
            lines.append(f"[... {hidden} more entries not previewed]")
        lines.append("[Expand this summary to restore the original entries]")
        return "\n".join(lines)

    # -------------------------------------------------------------------------
    # Expansion
    # -------------------------------------------------------------------------

    def resolve(self, summary_id: str) -> Tuple[List[str], List[str], str]:
        """
        Walk the DAG below ``summary_id`` with an explicit stack.

        Returns ``(entry_ids, summary_ids, error)``; ``error`` is empty on
        success. A summary reached twice, a dangling summary pointer or a
        level that does not decrease downward is reported as an error.
        """
        entry_ids: List[str] = []
        summary_ids: List[str] = []
        seen = set()
        root = self.nodes[summary_id]
        stack: List[Tuple[Pointer, int]] = [
            (p, root.level) for p in reversed(root.pointers)
        ]
        seen.add(summary_id)
        summary_ids.append(summary_id)

        while stack:
            pointer, parent_level = stack.pop()
            if pointer.kind is PointerKind.ENTRY:
                entry_ids.append(pointer.target_id)
                continue
            child = self.nodes.get(pointer.target_id)
            if child is None:
                return entry_ids, summary_ids, f"dangling pointer to {pointer.target_id}"
            if child.id in seen:
                return entry_ids, summary_ids, f"cycle detected at {child.id}"
            if child.level >= parent_level:
                return entry_ids, summary_ids, f"level violation at {child.id}"
            seen.add(child.id)
            summary_ids.append(child.id)
            stack.extend((p, child.level) for p in reversed(child.pointers))

        return entry_ids, summary_ids, ""

    def provenance(self, summary_id: str) -> List[str]:
        """Original entry ids covered by ``summary_id`` (empty if unknown)."""
        if summary_id not in self.nodes:
            return []
        entry_ids, _, error = self.resolve(summary_id)
        return [] if error else entry_ids

    def expand(self, summary_id: str) -> ExpansionResult:
        """
        Replace an active summary with the original entry ids it covers.

        Unknown ids, summaries outside the active view and corrupted
        subtrees yield ``success=False`` with a reason.
        """
        if summary_id not in self.nodes:
            return ExpansionResult(False, summary_id, reason=f"unknown summary id {summary_id}")
        if summary_id not in self.active_ids:
            return ExpansionResult(False, summary_id, reason=f"summary {summary_id} is not in the active view")

        entry_ids, summary_ids, error = self.resolve(summary_id)
        if error:
            logger.warning("Refusing to expand %s: %s", summary_id, error)
            return ExpansionResult(False, summary_id, reason=error)

        position = self.active_ids.index(summary_id)
        self.active_ids[position:position + 1] = entry_ids
        for node_id in summary_ids:
            del self.nodes[node_id]

        logger.info("Expanded %s into %d entries", summary_id, len(entry_ids))
        return ExpansionResult(
            success=True,
            summary_id=summary_id,
            entry_ids=entry_ids,
            removed_summary_ids=summary_ids,
            position=position,
        )

    # -------------------------------------------------------------------------
    # Integrity / state
    # -------------------------------------------------------------------------

    def validate(self) -> ValidationReport:
        """Check level homogeneity, level ordering, dangling pointers and cycles."""
        errors: List[str] = []
        for node in self.nodes.values():
            if not 1 <= node.level <= self.config.max_level:
                errors.append(f"{node.id}: level {node.level} outside 1..{self.config.max_level}")
            expected = PointerKind.ENTRY if node.level == 1 else PointerKind.SUMMARY
            for pointer in node.pointers:
                if pointer.kind is not expected:
                    errors.append(f"{node.id}: level-{node.level} node has a {pointer.kind.value} pointer")
                elif expected is PointerKind.SUMMARY:
                    child = self.nodes.get(pointer.target_id)
                    if child is None:
                        errors.append(f"{node.id}: dangling pointer to {pointer.target_id}")
                    elif child.level >= node.level:
                        errors.append(f"{node.id}: child {child.id} has level {child.level}")
            if not errors:
                _, _, error = self.resolve(node.id)
                if error:
                    errors.append(f"{node.id}: {error}")

        for item_id in self.active_ids:
            if item_id.startswith("sum_") and item_id not in self.nodes:
                errors.append(f"active id {item_id} has no summary node")
        return ValidationReport(valid=not errors, errors=errors)

    def stats(self) -> Dict[str, Any]:
        per_level = Counter(node.level for node in self.nodes.values())
        return {
            "active_items": len(self.active_ids),
            "active_summaries": len(self.active_summaries()),
            "active_tokens": self.active_tokens(),
            "summary_nodes": len(self.nodes),
            "nodes_per_level": dict(sorted(per_level.items())),
            "compaction_count": self.compaction_count,
        }

    def reset(self) -> None:
        self.nodes = {}
        self.active_ids = []
        self.compaction_count = 0
        self._entry_tokens = {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_ids": list(self.active_ids),
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "entry_tokens": dict(self._entry_tokens),
            "compaction_count": self.compaction_count,
        }

    def restore(self, data: Dict[str, Any]) -> None:
        """
        Replace the state with a :meth:`to_dict` document.

        Raises:
            DAGIntegrityError: If the restored DAG fails :meth:`validate`;
                the previous state is kept.
        """
        nodes = {raw["id"]: SummaryNode.from_dict(raw) for raw in data.get("nodes", [])}
        active_ids = list(data.get("active_ids", []))
        entry_tokens = {k: int(v) for k, v in data.get("entry_tokens", {}).items()}
        compaction_count = int(data.get("compaction_count", 0))

        previous = (self.nodes, self.active_ids, self._entry_tokens, self.compaction_count)
        self.nodes, self.active_ids, self._entry_tokens, self.compaction_count = (
            nodes, active_ids, entry_tokens, compaction_count
        )
        report = self.validate()
        if not report.valid:
            self.nodes, self.active_ids, self._entry_tokens, self.compaction_count = previous
            raise DAGIntegrityError(report.errors[0].split(":", 1)[0], "; ".join(report.errors))


def _preview(text: str, limit: int) -> str:
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "..."
