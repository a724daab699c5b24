# src/contextcore/context/engine.py
"""
Context Engine: the maintenance pipeline over one session's working memory.

Wires the components together, each explicitly constructed per engine:

    TokenEstimator ─┬─ EntryStore ── ArchiveTier (FIFO overflow, compacted content)
                    ├─ CleaningStrategy ── RotDetector
                    ├─ RetentionPolicy
                    ├─ DAGCompactor (active view)
                    └─ Escalator (optional, needs a model client)

``run_maintenance()`` runs one pass:

1. Clean the active entries (noise stripping, stale tool pruning) and
   patch the changed entries in the store.
2. Assess health. If the budget is exceeded or the rot detector advises
   escalation, compact eviction candidates into summary nodes, asking
   the escalator for a semantic digest when escalation is advised.
   Escalation failures fall back to the structural digest.
3. Archive the raw content of compacted entries once the store itself
   crosses the archive threshold.
4. Assess health again and return a :class:`MaintenanceReport`.

Example::

    engine = ContextEngine(EngineConfig(), client=my_model_client)
    engine.ingest("user", "Fix the failing test in tests/test_api.py")
    report = await engine.run_maintenance()
    prompt_context = engine.render()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..config import EngineConfig
from ..exceptions import DAGIntegrityError
from ..logging_config import log_display
from ..models import Entry, EntryType
from ..operators.batch import ModelClient
from .archive import ArchiveResult, ArchiveTier
from .cleaning import CleaningResult, CleaningStrategy
from .dag import CompactionResult, DAGCompactor, ExpansionResult, SummaryNode
from .escalation import EscalationResult, Escalator
from .retention import RetentionPolicy
from .rot import HealthAssessment, RotDetector
from .store import EntryStore
from .tokens import TokenEstimator

logger = logging.getLogger(__name__)

MAX_COMPACTION_ROUNDS = 4


@dataclass
class MaintenanceReport:
    """What one maintenance pass did."""

    cleaning: Optional[CleaningResult] = None
    health_before: Optional[HealthAssessment] = None
    health_after: Optional[HealthAssessment] = None
    compactions: List[CompactionResult] = field(default_factory=list)
    escalation_attempted: bool = False
    escalation: Optional[EscalationResult] = None
    archive: Optional[ArchiveResult] = None
    tokens_before: int = 0
    tokens_after: int = 0

    @property
    def compacted(self) -> bool:
        return any(c.compacted for c in self.compactions)

    @property
    def escalation_succeeded(self) -> bool:
        return self.escalation is not None and self.escalation.semantic

    @property
    def tokens_reclaimed(self) -> int:
        return max(0, self.tokens_before - self.tokens_after)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "noise_blocks_removed": self.cleaning.removed_noise_blocks if self.cleaning else 0,
            "tool_results_pruned": self.cleaning.pruned_tool_results if self.cleaning else 0,
            "health_before": self.health_before.score if self.health_before else None,
            "health_after": self.health_after.score if self.health_after else None,
            "summaries_created": [c.node.id for c in self.compactions if c.node is not None],
            "escalation_attempted": self.escalation_attempted,
            "escalation_level": self.escalation.level if self.escalation else None,
            "archived": self.archive.archived if self.archive else 0,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
        }


class ContextEngine:
    """
    One session's context engine.

    Args:
        config: Engine configuration (all sections).
        client: Optional model client used for escalation digests.
        archive_enabled: Keep an archival tier for compacted and trimmed
            content.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        client: Optional[ModelClient] = None,
        archive_enabled: bool = True,
    ) -> None:
        self.config = config or EngineConfig()
        self.estimator = TokenEstimator(self.config.tokens)
        self.archive = ArchiveTier(self.config.archive, self.estimator) if archive_enabled else None
        self.store = EntryStore(self.config.store, self.estimator, on_trim=self._on_trim)
        self.retention = RetentionPolicy(self.config.retention)
        self.cleaner = CleaningStrategy(self.config.cleaning, self.estimator)
        self.rot = RotDetector(self.config.rot, self.cleaner)
        self.dag = DAGCompactor(self.config.dag, self.estimator)
        self.escalator: Optional[Escalator] = None
        if client is not None and self.config.escalation.enabled:
            self.escalator = Escalator(client, self.config.escalation, self.estimator)

    # -------------------------------------------------------------------------
    # Ingestion / views
    # -------------------------------------------------------------------------

    def ingest(self, entry_type: EntryType | str, content: str, **fields: Any) -> Entry:
        """Create, store and activate a new entry."""
        entry = self.store.create(entry_type, content, **fields)
        self.dag.track(entry)
        return entry

    def add(self, entry: Entry) -> str:
        entry_id = self.store.add(entry)
        stored = self.store.get(entry_id)
        if stored is not None:
            self.dag.track(stored)
        return entry_id

    def update(self, entry_id: str, patch: Dict[str, Any]) -> Optional[Entry]:
        updated = self.store.update(entry_id, patch)
        if updated is not None:
            self.dag.track(updated)
        return updated

    def active_entries(self) -> List[Entry]:
        """Raw entries currently in the active view, in order."""
        found = (self.store.get(entry_id) for entry_id in self.dag.active_entry_ids())
        return [e for e in found if e is not None]

    def active_view(self) -> List[Union[Entry, SummaryNode]]:
        view: List[Union[Entry, SummaryNode]] = []
        for item_id in self.dag.active_ids:
            node = self.dag.nodes.get(item_id)
            if node is not None:
                view.append(node)
                continue
            entry = self.store.get(item_id)
            if entry is not None:
                view.append(entry)
        return view

    def active_tokens(self) -> int:
        return self.dag.active_tokens()

    def render(self) -> str:
        """The active view as prompt text."""
        parts = []
        for item in self.active_view():
            if isinstance(item, SummaryNode):
                parts.append(f"[summary {item.id} level {item.level}]\n{item.digest}")
            else:
                parts.append(f"[{item.type.value}] {item.content}")
        return "\n\n".join(parts)

    def health(self) -> HealthAssessment:
        return self.rot.assess(self.active_entries(), self.active_tokens())

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def run_maintenance(self) -> MaintenanceReport:
        report = MaintenanceReport(tokens_before=self.active_tokens())

        report.cleaning = self.clean()
        report.health_before = self.health()
        escalate = self.rot.should_escalate(
            self.active_entries(), assessment=report.health_before
        )
        over_budget = self.retention.needs_action(self.active_entries(), self.active_tokens())

        if over_budget or escalate:
            await self._compact(report, escalate)

        report.archive = self._archive_compacted()
        report.health_after = self.health()
        report.tokens_after = self.active_tokens()

        log_display(
            logger,
            logging.INFO,
            "Maintenance: health %d -> %d, tokens %d -> %d, %d compactions",
            report.health_before.score, report.health_after.score,
            report.tokens_before, report.tokens_after, len(report.compactions),
        )
        return report

    def clean(self) -> CleaningResult:
        """Clean the active entries and patch the changed ones in the store."""
        result = self.cleaner.clean(self.active_entries())
        for changed in result.changed_entries():
            self.update(changed.id, {"content": changed.content, "extensions": changed.extensions})
        return result

    async def _compact(self, report: MaintenanceReport, escalate: bool) -> None:
        for _ in range(MAX_COMPACTION_ROUNDS):
            plan = self.retention.partition(self.active_entries())
            condensing = bool(self.dag.condensable_group())
            if not plan.candidates and not condensing:
                if not report.compactions:
                    report.compactions.append(self.dag.compact([]))
                break

            digest = None
            if escalate and not condensing and self.escalator is not None and not report.escalation_attempted:
                report.escalation_attempted = True
                report.escalation = await self._escalate(plan.candidates)
                if report.escalation is not None and report.escalation.semantic:
                    digest = report.escalation.content

            result = self.dag.compact(plan.candidates, digest=digest)
            report.compactions.append(result)
            if not result.compacted:
                break
            if not self.retention.needs_action(self.active_entries(), self.active_tokens()):
                break

    async def _escalate(self, candidates: List[Entry]) -> Optional[EscalationResult]:
        try:
            return await self.escalator.summarize(candidates)
        except Exception as exc:
            logger.warning("Escalation failed, keeping structural digest: %s", exc)
            return None

    def _archive_compacted(self) -> Optional[ArchiveResult]:
        if self.archive is None or not self.archive.needs_compression(self.store.entries):
            return None
        inactive = [e for e in self.store.entries if not self.dag.is_active(e.id)]
        if not inactive:
            return None
        result = self._archive_by_position(inactive)
        self.store.remove(result.archived_ids)
        self.dag.forget(result.archived_ids)
        logger.info("Archived %d compacted entries in %d units", result.archived, len(result.pointers))
        return result

    def _archive_by_position(self, entries: List[Entry]) -> ArchiveResult:
        """Archive ``entries`` one run of consecutive session positions at a time."""
        result = ArchiveResult()
        run: List[Entry] = []
        last = -1
        for entry in entries:
            position = self.store.position(entry.id)
            if run and position != last + 1:
                result.merge(self.archive.archive(run, start_index=self.store.position(run[0].id)))
                run = []
            run.append(entry)
            last = position
        if run:
            result.merge(self.archive.archive(run, start_index=self.store.position(run[0].id)))
        return result

    def _on_trim(self, trimmed: List[Entry]) -> None:
        if self.archive is not None:
            self._archive_by_position(trimmed)
        else:
            logger.warning("FIFO trim dropped %d entries with no archive configured", len(trimmed))
        for entry in trimmed:
            self.dag.untrack(entry.id)

    # -------------------------------------------------------------------------
    # Expansion / persistence
    # -------------------------------------------------------------------------

    def expand(self, summary_id: str) -> ExpansionResult:
        """
        Expand a summary in the active view, restoring archived content of
        entries no longer held in memory.

        Entries that cannot be restored (lossy units, missing files, no
        archive) are dropped from the active view and listed in
        ``unrestored_ids``, with a ``reason``.
        """
        result = self.dag.expand(summary_id)
        if not result.success:
            return result

        missing = [i for i in result.entry_ids if i not in self.store]
        if missing and self.archive is not None:
            restored = self.archive.restore_entries(missing)
            for entry_id in missing:
                if entry_id in restored:
                    pointer = self.archive.find_pointer(entry_id)
                    self.store.add(restored[entry_id], position=pointer.position_of(entry_id))
                    stored = self.store.get(entry_id)
                    if stored is not None:
                        self.dag.track(stored)

        result.unrestored_ids = [i for i in missing if i not in self.store]
        if result.unrestored_ids:
            for entry_id in result.unrestored_ids:
                self.dag.untrack(entry_id)
            result.reason = (
                f"{len(result.unrestored_ids)} of {len(result.entry_ids)} entries "
                f"could not be restored from the archive"
            )
            logger.warning("Expanded %s partially: %s", summary_id, result.reason)
        return result

    def save(self) -> None:
        self.store.metadata["dag"] = self.dag.to_dict()
        self.store.save()

    def load(self) -> int:
        """
        Load the snapshot and the DAG state saved with it, then apply the
        FIFO backstop. Returns the number of entries held afterwards.
        """
        self.store.load(trim=False)
        self._restore_dag()
        self.store.trim()
        return len(self.store)

    def _restore_dag(self) -> None:
        dag_state = self.store.metadata.get("dag")
        if dag_state:
            try:
                self.dag.restore(dag_state)
                return
            except (KeyError, TypeError, ValueError, DAGIntegrityError) as exc:
                logger.warning("Corrupt DAG state in snapshot: %s, rebuilding active view", exc)

        self.dag.reset()
        for entry in self.store.entries:
            self.dag.track(entry)

    def reset(self) -> None:
        self.store.clear()
        self.dag.reset()
        self.estimator.invalidate()
