# tests/context/test_cleaning.py
"""
Tests for the Cleaning Strategy.

Covers:
- Noise stripping: all default tags, nested/rejoined markers, whitespace collapse
- Latest entry of each type left untouched
- Stale tool pruning: horizon, placeholder cost, essential tools, already pruned
- Combined mode, idempotence, token accounting
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from contextcore.config import CleaningConfig, NoisePattern
from contextcore.context.cleaning import CleaningMode, CleaningStrategy
from contextcore.models import ToolCallMetadata


@pytest.fixture
def cleaner(estimator):
    return CleaningStrategy(CleaningConfig(), estimator)


# =============================================================================
# Noise
# =============================================================================


class TestStripText:
    """Tests for noise removal on raw text."""

    def test_removes_thought_block(self, cleaner):
        text, removed = cleaner.strip_text("Answer: <thought>hmm</thought>42")
        assert text == "Answer: 42"
        assert removed == 1

    def test_all_default_tags(self, cleaner):
        text = (
            "<thinking>a</thinking>x<reflection>b</reflection>"
            "y<internal_thought>c</internal_thought>z<thought>d</thought>"
        )
        assert cleaner.strip_text(text) == ("xyz", 4)

    def test_case_insensitive_and_multiline(self, cleaner):
        assert cleaner.strip_text("<THOUGHT>\nline\nline\n</Thought>done") == ("done", 1)

    def test_rejoined_markers_removed(self, cleaner):
        assert cleaner.strip_text("<thou<thought>a</thought>ght>b</thought>") == ("", 2)

    def test_collapses_blank_lines(self, cleaner):
        text, _ = cleaner.strip_text("before\n\n<thought>x</thought>\n\n\nafter")
        assert text == "before\n\nafter"

    def test_clean_text_unchanged(self, cleaner):
        assert cleaner.strip_text("  plain\n\n\n text ") == ("  plain\n\n\n text ", 0)

    def test_count_and_has_noise(self, cleaner):
        text = "<thought>a</thought><thinking>b</thinking>"
        assert cleaner.count_noise_markers(text) == 2
        assert cleaner.has_noise(text) is True
        assert cleaner.has_noise("nothing") is False

    def test_custom_pattern(self, estimator):
        config = CleaningConfig(noise_patterns=[NoisePattern(name="scratch", pattern=r"\[scratch\].*?\[/scratch\]")])
        cleaner = CleaningStrategy(config, estimator)
        assert cleaner.strip_text("a[scratch]zz[/scratch]b") == ("ab", 1)

    def test_extra_patterns_stripped(self, estimator):
        config = CleaningConfig(extra_patterns=[r"<!--[\s\S]*?-->"])
        cleaner = CleaningStrategy(config, estimator)
        assert cleaner.strip_text("keep<!-- internal\nnote -->this") == ("keepthis", 1)
        assert cleaner.count_noise_markers("<!--a--><thought>b</thought>") == 2

    def test_extra_patterns_case_sensitive(self, estimator):
        cleaner = CleaningStrategy(CleaningConfig(extra_patterns=[r"DEBUG:[^\n]*"]), estimator)
        assert cleaner.strip_text("debug: stays") == ("debug: stays", 0)
        assert cleaner.strip_text("ok\nDEBUG: gone") == ("ok", 1)


class TestStripNoise:
    """Tests for noise stripping over entry lists."""

    def test_latest_entry_of_type_untouched(self, cleaner, make_entry):
        older = make_entry("assistant", "<thought>plan</thought>Done.")
        latest = make_entry("assistant", "<thought>still thinking</thought>Working.")
        result = cleaner.strip_noise([older, latest])
        assert result.entries[0].content == "Done."
        assert result.entries[1] is latest
        assert result.removed_noise_blocks == 1

    def test_tokens_recomputed(self, cleaner, make_entry):
        older = make_entry("assistant", "<thought>" + "x" * 100 + "</thought>ok")
        result = cleaner.strip_noise([older, make_entry("assistant", "latest")])
        assert result.entries[0].tokens == 1
        assert result.tokens_reclaimed == older.tokens - 1
        assert result.actions[0].kind == "strip_noise"

    def test_ids_and_order_preserved(self, cleaner, make_entry):
        entries = [make_entry("user", f"<thought>x</thought>{i}") for i in range(4)]
        result = cleaner.strip_noise(entries)
        assert [e.id for e in result.entries] == [e.id for e in entries]

    def test_keep_latest_disabled(self, estimator, make_entry):
        cleaner = CleaningStrategy(CleaningConfig(keep_latest_per_type=False), estimator)
        result = cleaner.strip_noise([make_entry("user", "<thought>x</thought>hi")])
        assert result.entries[0].content == "hi"


# =============================================================================
# Stale tool results
# =============================================================================


class TestStaleToolPruning:
    """Tests for stale tool-result pruning."""

    def test_horizon(self, cleaner, tool_results):
        entries = tool_results(15)
        assert cleaner.stale_tool_ids(entries) == [e.id for e in entries[:5]]

    def test_within_horizon_untouched(self, cleaner, tool_results):
        assert cleaner.stale_tool_ids(tool_results(10)) == []

    def test_placeholder_and_markers(self, cleaner, tool_results):
        entries = tool_results(11)
        result = cleaner.prune_stale_tool_results(entries)
        pruned = result.entries[0]
        assert pruned.content == "[Tool output pruned]"
        assert pruned.tokens == 5
        assert pruned.extensions["pruned"] is True
        assert pruned.extensions["original_tokens"] == entries[0].tokens
        assert pruned.is_pruned
        assert result.pruned_tool_results == 1

    def test_essential_tools_never_pruned(self, cleaner, make_entry, tool_results):
        read = make_entry("tool_result", "file contents", metadata=ToolCallMetadata(tool_name="Read"))
        entries = [read] + tool_results(12)
        stale = cleaner.stale_tool_ids(entries)
        assert read.id not in stale
        assert stale == [e.id for e in entries[1:3]]

    def test_other_types_ignored(self, cleaner, make_entry):
        entries = [make_entry("user", f"u{i}") for i in range(30)]
        assert cleaner.stale_tool_ids(entries) == []

    def test_already_pruned_skipped(self, cleaner, tool_results):
        once = cleaner.prune_stale_tool_results(tool_results(12))
        twice = cleaner.prune_stale_tool_results(once.entries)
        assert twice.pruned_tool_results == 0
        assert twice.entries == once.entries


# =============================================================================
# Combined
# =============================================================================


class TestClean:
    """Tests for the mode dispatcher."""

    def _session(self, make_entry, tool_results):
        return (
            [make_entry("assistant", "<thinking>plan</thinking>Step 1")]
            + tool_results(12)
            + [make_entry("assistant", "Step 2")]
        )

    def test_combined(self, cleaner, make_entry, tool_results):
        result = cleaner.clean(self._session(make_entry, tool_results))
        assert result.removed_noise_blocks == 1
        assert result.pruned_tool_results == 2
        assert len(result.actions) == 3
        assert result.changed is True
        assert result.tokens_after < result.tokens_before

    def test_mode_by_string(self, cleaner, make_entry, tool_results):
        entries = self._session(make_entry, tool_results)
        assert cleaner.clean(entries, "noise").pruned_tool_results == 0
        assert cleaner.clean(entries, "stale-tool").removed_noise_blocks == 0
        assert cleaner.clean(entries, CleaningMode.STALE_TOOL).pruned_tool_results == 2

    def test_unknown_mode_rejected(self, cleaner):
        with pytest.raises(ValueError):
            cleaner.clean([], "aggressive")

    def test_idempotent(self, cleaner, make_entry, tool_results):
        once = cleaner.clean(self._session(make_entry, tool_results))
        twice = cleaner.clean(once.entries)
        assert twice.entries == once.entries
        assert twice.changed is False

    def test_changed_entries(self, cleaner, make_entry, tool_results):
        result = cleaner.clean(self._session(make_entry, tool_results))
        assert {e.id for e in result.changed_entries()} == {a.entry_id for a in result.actions}

    def test_empty_input(self, cleaner):
        result = cleaner.clean([])
        assert result.entries == []
        assert result.tokens_reclaimed == 0
