# tests/context/test_dag.py
"""
Tests for the DAG Compactor.

Covers:
- Tracking and active-view accounting, pruning of cached token counts
- Level-1 compaction: pointers, placement, structural digest, external digest
- No-op compaction (empty input, inactive candidates)
- Condensing into higher levels and the max_level cap
- Expansion: order, placement, removal of subtree nodes, failure reasons
- resolve() on corrupted graphs (dangling, cycle, level violation)
- validate(), stats(), to_dict()/restore()
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from contextcore.context.dag import Pointer, PointerKind, SummaryNode
from contextcore.exceptions import DAGIntegrityError


def _node(node_id, level, children, kind=PointerKind.SUMMARY):
    return SummaryNode(
        id=node_id,
        level=level,
        pointers=tuple(Pointer(kind, c, i, "2026-01-01T00:00:00+00:00") for i, c in enumerate(children)),
        digest=f"digest of {node_id}",
        token_count=3,
        child_count=len(children),
        entry_count=len(children),
        covered_tokens=0,
        created_at="2026-01-01T00:00:00+00:00",
    )


# =============================================================================
# Active view
# =============================================================================


class TestActiveView:
    """Tests for tracking entries."""

    def test_track_appends_once(self, tracked_dag, make_entry):
        entry = make_entry("user", "abcd")
        dag = tracked_dag([entry])
        dag.track(entry.model_copy(update={"tokens": 7}))
        assert dag.active_ids == [entry.id]
        assert dag.active_tokens() == 7

    def test_untrack(self, tracked_dag, make_entry):
        entry = make_entry("user", "a")
        dag = tracked_dag([entry])
        dag.untrack(entry.id)
        assert dag.active_ids == []
        assert entry.id not in dag.to_dict()["entry_tokens"]
        dag.untrack("ent_unknown")

    def test_forget_drops_only_inactive_counts(self, tracked_dag, tool_results):
        entries = tool_results(4)
        dag = tracked_dag(entries)
        dag.compact(entries[:2])
        assert dag.forget([e.id for e in entries]) == 2
        assert set(dag.to_dict()["entry_tokens"]) == {e.id for e in entries[2:]}
        assert dag.forget([entries[0].id]) == 0

    def test_active_tokens_counts_entries(self, tracked_dag, tool_results):
        entries = tool_results(3, content_size=29)  # 40 chars, 10 tokens
        assert tracked_dag(entries).active_tokens() == 30


# =============================================================================
# Compaction
# =============================================================================


class TestCompact:
    """Tests for level-1 compaction."""

    def test_compacts_candidates_in_order(self, tracked_dag, make_entry, tool_results):
        entries = tool_results(60)
        dag = tracked_dag(entries)
        candidates = entries[:55]
        result = dag.compact(candidates)

        assert result.compacted is True
        node = result.node
        assert node.level == 1
        assert node.child_ids == [e.id for e in candidates]
        assert all(p.kind is PointerKind.ENTRY for p in node.pointers)
        assert [p.index for p in node.pointers] == list(range(55))
        assert node.pointers[0].timestamp == candidates[0].created_at.isoformat()
        assert dag.active_ids == [node.id] + [e.id for e in entries[55:]]

    def test_node_inserted_at_earliest_position(self, tracked_dag, make_entry):
        entries = [make_entry("user", f"m{i}") for i in range(5)]
        dag = tracked_dag(entries)
        result = dag.compact([entries[3], entries[1]])
        assert dag.active_ids == [entries[0].id, result.node.id, entries[2].id, entries[4].id]
        assert result.node.child_ids == [entries[1].id, entries[3].id]

    def test_duplicate_candidates_collapsed(self, tracked_dag, make_entry):
        entries = [make_entry("user", f"m{i}") for i in range(3)]
        dag = tracked_dag(entries)
        result = dag.compact([entries[0], entries[0], entries[1]])
        assert result.node.child_ids == [entries[0].id, entries[1].id]

    def test_tokens_reduced(self, tracked_dag, tool_results):
        entries = tool_results(60, content_size=400)
        dag = tracked_dag(entries)
        result = dag.compact(entries[:55])
        assert result.tokens_after < result.tokens_before
        assert result.tokens_reclaimed == result.tokens_before - result.tokens_after
        assert result.node.covered_tokens == sum(e.tokens for e in entries[:55])
        assert result.node.entry_count == 55

    def test_structural_digest(self, tracked_dag, make_entry):
        entries = [
            make_entry("tool_result", "line one\n  line   two"),
            make_entry("user", "hello"),
            make_entry("tool_result", "x" * 300),
        ]
        dag = tracked_dag(entries, preview_chars=10)
        digest = dag.compact(entries).node.digest
        assert digest.split("\n") == [
            "[3 entries: 1 user, 2 tool_result]",
            "[TOOL_RESULT] line one l...",
            "[USER] hello",
            "[TOOL_RESULT] xxxxxxxxxx...",
            "[Expand this summary to restore the original entries]",
        ]

    def test_structural_digest_preview_limit(self, tracked_dag, tool_results):
        entries = tool_results(8)
        dag = tracked_dag(entries, max_preview_lines=5)
        digest = dag.compact(entries).node.digest
        assert "[... 3 more entries not previewed]" in digest
        assert digest.count("[TOOL_RESULT]") == 5

    def test_external_digest(self, tracked_dag, tool_results, estimator):
        entries = tool_results(4)
        dag = tracked_dag(entries)
        node = dag.compact(entries, digest="Agent listed the repo files.").node
        assert node.digest == "Agent listed the repo files."
        assert node.token_count == estimator.estimate("Agent listed the repo files.")

    def test_empty_candidates_is_noop(self, tracked_dag, make_entry):
        dag = tracked_dag([make_entry("user", "a")])
        result = dag.compact([])
        assert result.compacted is False
        assert result.reason == "no eligible candidates"
        assert result.node is None
        assert dag.nodes == {}

    def test_untracked_candidates_is_noop(self, tracked_dag, make_entry):
        dag = tracked_dag([make_entry("user", "a")])
        result = dag.compact([make_entry("user", "stranger")])
        assert result.compacted is False
        assert result.reason == "candidates are not in the active view"

    def test_already_compacted_not_eligible(self, tracked_dag, tool_results):
        entries = tool_results(4)
        dag = tracked_dag(entries)
        dag.compact(entries[:2])
        result = dag.compact(entries[:2])
        assert result.compacted is False


class TestCondense:
    """Tests for condensing summaries into higher levels."""

    def _three_summaries(self, tracked_dag, tool_results):
        entries = tool_results(9)
        dag = tracked_dag(entries)
        for i in range(3):
            dag.compact(entries[i * 3:(i + 1) * 3], prefer_condense=False)
        return dag, entries

    def test_condense_preferred(self, tracked_dag, tool_results, make_entry):
        dag, entries = self._three_summaries(tracked_dag, tool_results)
        extra = make_entry("user", "new")
        dag.track(extra)
        level_one = [n.id for n in dag.active_summaries()]

        result = dag.compact([extra])
        assert result.condensed is True
        assert result.node.level == 2
        assert result.node.child_ids == level_one
        assert all(p.kind is PointerKind.SUMMARY for p in result.node.pointers)
        assert result.node.entry_count == 9
        assert dag.active_ids == [result.node.id, extra.id]

    def test_condensed_digest(self, tracked_dag, tool_results):
        dag, _ = self._three_summaries(tracked_dag, tool_results)
        digest = dag.compact([]).node.digest
        lines = digest.split("\n")
        assert lines[0] == "[Condensed summary of 3 summaries covering 9 original entries, levels: 1, 1, 1]"
        assert all(line.startswith("- sum_") for line in lines[1:])
        assert lines[1].endswith("[3 entries: 3 tool_result]")

    def test_not_enough_summaries(self, tracked_dag, tool_results):
        entries = tool_results(4)
        dag = tracked_dag(entries)
        dag.compact(entries[:2], prefer_condense=False)
        assert dag.condensable_group() == []

    def test_max_level_respected(self, tracked_dag, tool_results):
        entries = tool_results(9)
        dag = tracked_dag(entries, max_level=1)
        for i in range(3):
            dag.compact(entries[i * 3:(i + 1) * 3])
        assert dag.condensable_group() == []
        assert all(n.level <= 1 for n in dag.nodes.values())

    def test_levels_never_exceed_cap(self, tracked_dag, tool_results):
        entries = tool_results(90)
        dag = tracked_dag(entries, max_level=2)
        for i in range(30):
            dag.compact(entries[i * 3:(i + 1) * 3], prefer_condense=False)
        for _ in range(20):
            dag.compact([])
        assert max(n.level for n in dag.nodes.values()) == 2
        assert dag.validate().valid


# =============================================================================
# Expansion
# =============================================================================


class TestExpand:
    """Tests for lossless expansion."""

    def test_expand_restores_position_and_order(self, tracked_dag, make_entry):
        entries = [make_entry("user", f"m{i}") for i in range(6)]
        dag = tracked_dag(entries)
        original = list(dag.active_ids)
        node = dag.compact(entries[1:4]).node

        result = dag.expand(node.id)
        assert result.success is True
        assert result.entry_ids == [e.id for e in entries[1:4]]
        assert result.position == 1
        assert dag.active_ids == original
        assert node.id not in dag.nodes

    def test_expand_condensed_returns_all_entries(self, tracked_dag, tool_results):
        entries = tool_results(9)
        dag = tracked_dag(entries)
        for i in range(3):
            dag.compact(entries[i * 3:(i + 1) * 3], prefer_condense=False)
        top = dag.compact([]).node

        assert dag.provenance(top.id) == [e.id for e in entries]
        result = dag.expand(top.id)
        assert result.entry_ids == [e.id for e in entries]
        assert len(result.removed_summary_ids) == 4
        assert dag.nodes == {}
        assert dag.active_ids == [e.id for e in entries]

    def test_unknown_id(self, tracked_dag):
        result = tracked_dag([]).expand("sum_missing")
        assert result.success is False
        assert result.reason == "unknown summary id sum_missing"

    def test_inactive_summary(self, tracked_dag, tool_results):
        entries = tool_results(9)
        dag = tracked_dag(entries)
        child = dag.compact(entries[:3], prefer_condense=False).node
        for i in range(1, 3):
            dag.compact(entries[i * 3:(i + 1) * 3], prefer_condense=False)
        dag.compact([])
        result = dag.expand(child.id)
        assert result.success is False
        assert "not in the active view" in result.reason

    def test_provenance_unknown(self, tracked_dag):
        assert tracked_dag([]).provenance("sum_x") == []


class TestIntegrity:
    """Tests for resolve/validate on corrupted graphs."""

    def test_dangling_pointer(self, tracked_dag):
        dag = tracked_dag([])
        dag.nodes["sum_a"] = _node("sum_a", 2, ["sum_gone"])
        dag.active_ids = ["sum_a"]
        result = dag.expand("sum_a")
        assert result.success is False
        assert result.reason == "dangling pointer to sum_gone"
        assert "sum_a" in dag.nodes

    def test_cycle_detected(self, tracked_dag):
        dag = tracked_dag([])
        dag.nodes["sum_a"] = _node("sum_a", 3, ["sum_b"])
        dag.nodes["sum_b"] = _node("sum_b", 2, ["sum_a"])
        _, _, error = dag.resolve("sum_a")
        assert error == "cycle detected at sum_a"

    def test_self_reference_is_cycle(self, tracked_dag):
        dag = tracked_dag([])
        dag.nodes["sum_a"] = _node("sum_a", 2, ["sum_a"])
        assert dag.resolve("sum_a")[2] == "cycle detected at sum_a"

    def test_level_violation(self, tracked_dag):
        dag = tracked_dag([])
        dag.nodes["sum_a"] = _node("sum_a", 2, ["sum_b"])
        dag.nodes["sum_b"] = _node("sum_b", 2, ["ent_1"], kind=PointerKind.ENTRY)
        assert dag.resolve("sum_a")[2] == "level violation at sum_b"
        assert dag.validate().valid is False

    def test_mixed_pointer_kinds_invalid(self, tracked_dag):
        dag = tracked_dag([])
        dag.nodes["sum_a"] = _node("sum_a", 1, ["sum_b"])
        report = dag.validate()
        assert report.valid is False
        assert "summary pointer" in report.errors[0]

    def test_active_summary_without_node(self, tracked_dag):
        dag = tracked_dag([])
        dag.active_ids = ["sum_ghost"]
        assert dag.validate().errors == ["active id sum_ghost has no summary node"]

    def test_compacted_dag_is_valid(self, tracked_dag, tool_results):
        entries = tool_results(20)
        dag = tracked_dag(entries)
        for i in range(4):
            dag.compact(entries[i * 5:(i + 1) * 5], prefer_condense=False)
        dag.compact([])
        assert dag.validate().valid is True


# =============================================================================
# State
# =============================================================================


class TestState:
    """Tests for stats, reset and persistence of the DAG state."""

    def test_stats(self, tracked_dag, tool_results):
        entries = tool_results(6)
        dag = tracked_dag(entries)
        dag.compact(entries[:3])
        stats = dag.stats()
        assert stats["active_items"] == 4
        assert stats["active_summaries"] == 1
        assert stats["summary_nodes"] == 1
        assert stats["nodes_per_level"] == {1: 1}
        assert stats["compaction_count"] == 1

    def test_reset(self, tracked_dag, tool_results):
        entries = tool_results(4)
        dag = tracked_dag(entries)
        dag.compact(entries[:2])
        dag.reset()
        assert dag.nodes == {}
        assert dag.active_ids == []
        assert dag.active_tokens() == 0

    def test_round_trip_then_expand(self, tracked_dag, tool_results):
        entries = tool_results(6)
        dag = tracked_dag(entries)
        node = dag.compact(entries[:3]).node
        state = dag.to_dict()

        restored = tracked_dag([])
        restored.restore(state)
        assert restored.active_ids == dag.active_ids
        assert restored.active_tokens() == dag.active_tokens()
        assert restored.expand(node.id).entry_ids == [e.id for e in entries[:3]]

    def test_restore_invalid_keeps_previous_state(self, tracked_dag, tool_results):
        entries = tool_results(3)
        dag = tracked_dag(entries)
        before = list(dag.active_ids)
        bad = {
            "active_ids": ["sum_a"],
            "nodes": [_node("sum_a", 2, ["sum_missing"]).to_dict()],
        }
        with pytest.raises(DAGIntegrityError) as exc_info:
            dag.restore(bad)
        assert "sum_a" in str(exc_info.value)
        assert dag.active_ids == before
