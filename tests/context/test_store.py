# tests/context/test_store.py
"""
Tests for the Entry Store.

Covers:
- add/create: token stamping, duplicate ids, ordering
- update: merge semantics, extensions merge, immutable fields, invalid patches
- FIFO trimming and the on_trim hook
- Session positions across removal, re-insertion and import
- Reads: get, by_type, search, summary, total_tokens
- export/import, with the FIFO backstop deferred on import
- Atomic save, load of missing/corrupt snapshots, auto-save
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from contextcore.config import StoreConfig
from contextcore.context.store import EntryStore
from contextcore.exceptions import SnapshotError
from contextcore.models import Entry, EntryType, ToolCallMetadata


@pytest.fixture
def store(estimator):
    return EntryStore(StoreConfig(), estimator)


# =============================================================================
# Writes
# =============================================================================


class TestAdd:
    """Tests for adding entries."""

    def test_add_stamps_tokens(self, store):
        entry_id = store.add(Entry(type=EntryType.USER, content="abcdefgh", tokens=99))
        assert store.get(entry_id).tokens == 2

    def test_create_returns_stored_entry(self, store):
        entry = store.create("user", "hello")
        assert entry is store.get(entry.id)
        assert entry.id.startswith("ent_")
        assert entry.tokens == 2

    def test_create_accepts_type_aliases(self, store):
        entry = store.create("tool-output", "ok")
        assert entry.type == EntryType.TOOL_RESULT

    def test_duplicate_id_rejected(self, store):
        store.add(Entry(id="ent_x", type=EntryType.USER, content="a"))
        with pytest.raises(ValueError, match="Duplicate"):
            store.add(Entry(id="ent_x", type=EntryType.USER, content="b"))

    def test_preserves_insertion_order(self, store):
        ids = [store.create("user", f"m{i}").id for i in range(5)]
        assert [e.id for e in store.entries] == ids

    def test_entries_is_a_copy(self, store):
        store.create("user", "a")
        store.entries.clear()
        assert len(store) == 1


class TestUpdate:
    """Tests for patching entries."""

    def test_update_content_recomputes_tokens(self, store):
        entry = store.create("user", "abcd")
        updated = store.update(entry.id, {"content": "a" * 40})
        assert updated.tokens == 10
        assert store.get(entry.id).content == "a" * 40

    def test_stored_entries_cannot_drift_from_their_count(self, store):
        entry = store.create("tool_result", "x" * 4000)
        with pytest.raises(ValidationError):
            store.get(entry.id).content = "y" * 8000
        assert store.get(entry.id).tokens == 1000

        updated = store.update(entry.id, {"content": "y" * 8000})
        assert updated.tokens == 2000
        assert store.total_tokens() == 2000

    def test_update_keeps_position(self, store):
        first = store.create("user", "one")
        store.create("user", "two")
        store.update(first.id, {"content": "uno"})
        assert store.entries[0].content == "uno"

    def test_extensions_merged(self, store):
        entry = store.create("user", "a", extensions={"a": 1})
        updated = store.update(entry.id, {"extensions": {"b": 2}})
        assert updated.extensions == {"a": 1, "b": 2}

    def test_immutable_fields_ignored(self, store):
        entry = store.create("user", "abcd")
        updated = store.update(entry.id, {"id": "ent_other", "tokens": 500, "content": "abcdefgh"})
        assert updated.id == entry.id
        assert updated.tokens == 2
        assert updated.created_at == entry.created_at

    def test_unknown_id_returns_none(self, store):
        assert store.update("ent_missing", {"content": "x"}) is None

    def test_invalid_patch_returns_none(self, store):
        entry = store.create("user", "a")
        assert store.update(entry.id, {"type": "not-a-type"}) is None
        assert store.get(entry.id).type == EntryType.USER

    def test_update_bumps_updated_at(self, store):
        entry = store.create("user", "a")
        updated = store.update(entry.id, {"content": "b"})
        assert updated.updated_at >= entry.updated_at


class TestRemoveAndTrim:
    """Tests for removal and FIFO trimming."""

    def test_remove_counts_only_known(self, store):
        entry = store.create("user", "a")
        assert store.remove([entry.id, "ent_missing"]) == 1
        assert entry.id not in store
        assert store.remove([]) == 0

    def test_fifo_trim_drops_oldest(self, estimator):
        store = EntryStore(StoreConfig(max_entries=3), estimator)
        ids = [store.create("user", f"m{i}").id for i in range(5)]
        assert [e.id for e in store.entries] == ids[2:]
        assert ids[0] not in store

    def test_on_trim_receives_dropped_entries(self, estimator):
        hook = MagicMock()
        store = EntryStore(StoreConfig(max_entries=2), estimator, on_trim=hook)
        first = store.create("user", "first")
        store.create("user", "second")
        store.create("user", "third")
        hook.assert_called_once()
        (trimmed,), _ = hook.call_args
        assert [e.id for e in trimmed] == [first.id]

    def test_positions_survive_removal(self, store):
        ids = [store.create("user", f"m{i}").id for i in range(4)]
        store.remove([ids[1]])
        assert [store.position(i) for i in ids] == [0, None, 2, 3]
        assert store.position(store.create("user", "m4").id) == 4

    def test_add_at_position_keeps_chronological_order(self, store):
        ids = [store.create("user", f"m{i}").id for i in range(4)]
        removed = store.get(ids[1])
        store.remove([ids[1]])
        store.add(removed, position=1)
        assert [e.id for e in store.entries] == ids
        assert store.position(store.create("user", "m4").id) == 4

    def test_trimmed_entries_lose_positions(self, estimator):
        store = EntryStore(StoreConfig(max_entries=2), estimator)
        ids = [store.create("user", f"m{i}").id for i in range(3)]
        assert store.position(ids[0]) is None
        assert store.position(ids[2]) == 2

    def test_clear(self, store):
        store.create("user", "a")
        store.metadata["k"] = "v"
        store.clear()
        assert len(store) == 0
        assert store.metadata == {}


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    """Tests for queries over the store."""

    def test_by_type(self, store):
        store.create("user", "u")
        tool = store.create("tool_result", "t")
        assert store.by_type("tool_result") == [tool]
        assert len(store.by_type(EntryType.USER, EntryType.TOOL_RESULT)) == 2

    def test_search_content_case_insensitive(self, store):
        hit = store.create("assistant", "Fixed the Parser bug")
        store.create("assistant", "unrelated")
        assert store.search("parser") == [hit]

    def test_search_metadata(self, store):
        hit = store.create("tool_invocation", "call", metadata=ToolCallMetadata(tool_name="Grep"))
        assert store.search("grep") == [hit]

    def test_search_extensions(self, store):
        hit = store.create("user", "x", extensions={"ticket": "PROJ-42"})
        assert store.search("proj-42") == [hit]

    def test_search_empty_query(self, store):
        store.create("user", "anything")
        assert store.search("") == []

    def test_summary(self, store):
        store.create("user", "abcd")
        store.create("user", "abcd")
        store.create("tool_result", "abcdefgh")
        summary = store.summary()
        assert summary["total_entries"] == 3
        assert summary["total_tokens"] == 4
        assert summary["by_type"] == {"user": 2, "tool_result": 1}
        assert summary["session_id"].startswith("ses_")


# =============================================================================
# Export / persistence
# =============================================================================


class TestExportImport:
    """Tests for the portable document form."""

    def test_export_shape(self, store):
        store.create("user", "a")
        doc = store.export()
        assert set(doc) == {
            "session_id", "entries", "positions", "next_position", "metadata", "created_at", "updated_at",
        }
        assert doc["entries"][0]["type"] == "user"

    def test_import_replaces_contents(self, store, estimator):
        entry = store.create("user", "abcd", extensions={"k": 1})
        store.metadata["note"] = "x"
        doc = store.export()

        other = EntryStore(StoreConfig(), estimator)
        other.create("user", "will be replaced")
        assert other.import_(doc) == 1
        assert other.get(entry.id).extensions == {"k": 1}
        assert other.session_id == store.session_id
        assert other.metadata == {"note": "x"}

    def test_import_keeps_positions(self, store, estimator):
        ids = [store.create("user", f"m{i}").id for i in range(3)]
        store.remove([ids[0]])

        other = EntryStore(StoreConfig(), estimator)
        other.import_(store.export())
        assert [other.position(i) for i in ids[1:]] == [1, 2]
        assert other.position(other.create("user", "next").id) == 3

    def test_import_without_positions_numbers_in_order(self, store):
        doc = {"entries": [{"type": "user", "content": "a"}, {"type": "user", "content": "b"}]}
        store.import_(doc)
        assert [store.position(e.id) for e in store.entries] == [0, 1]

    def test_import_does_not_trim(self, estimator):
        source = EntryStore(StoreConfig(), estimator)
        for i in range(5):
            source.create("user", f"m{i}")
        hook = MagicMock()
        target = EntryStore(StoreConfig(max_entries=3), estimator, on_trim=hook)
        assert target.import_(source.export()) == 5
        hook.assert_not_called()

        assert target.trim() == 2
        hook.assert_called_once()
        assert len(target) == 3

    def test_import_malformed_raises(self, store):
        with pytest.raises(KeyError):
            store.import_({"session_id": "ses_x"})


class TestPersistence:
    """Tests for save/load."""

    def test_save_and_load(self, tmp_path, estimator):
        path = tmp_path / "session.json"
        store = EntryStore(StoreConfig(path=str(path)), estimator)
        entry = store.create("decision", "Use SQLite", extensions={"why": "simple"})
        store.save()

        fresh = EntryStore(StoreConfig(path=str(path)), estimator)
        assert fresh.load() == 1
        loaded = fresh.get(entry.id)
        assert loaded.content == "Use SQLite"
        assert loaded.created_at == entry.created_at
        assert fresh.session_id == store.session_id

    def test_load_trim_flag(self, tmp_path, estimator):
        path = tmp_path / "session.json"
        store = EntryStore(StoreConfig(path=str(path)), estimator)
        ids = [store.create("user", f"m{i}").id for i in range(5)]
        store.save()

        hook = MagicMock()
        deferred = EntryStore(StoreConfig(path=str(path), max_entries=3), estimator, on_trim=hook)
        assert deferred.load(trim=False) == 5
        hook.assert_not_called()

        trimmed = EntryStore(StoreConfig(path=str(path), max_entries=3), estimator, on_trim=hook)
        assert trimmed.load() == 5
        assert [e.id for e in trimmed.entries] == ids[2:]
        hook.assert_called_once()

    def test_save_leaves_no_tmp_file(self, tmp_path, estimator):
        path = tmp_path / "session.json"
        EntryStore(StoreConfig(path=str(path)), estimator).save()
        assert path.exists()
        assert not (tmp_path / "session.json.tmp").exists()

    def test_save_creates_parent_dirs(self, tmp_path, store):
        target = tmp_path / "nested" / "dir" / "s.json"
        assert store.save(target) == target
        assert target.exists()

    def test_save_without_path_raises(self, store):
        with pytest.raises(ValueError):
            store.save()

    def test_save_failure_raises_snapshot_error(self, tmp_path, store):
        with patch.object(Path, "replace", side_effect=OSError("disk full")):
            with pytest.raises(SnapshotError):
                store.save(tmp_path / "s.json")
        assert not (tmp_path / "s.json.tmp").exists()

    def test_load_missing_file_is_empty(self, tmp_path, estimator):
        store = EntryStore(StoreConfig(path=str(tmp_path / "absent.json")), estimator)
        assert store.load() == 0
        assert len(store) == 0

    def test_load_corrupt_file_is_empty(self, tmp_path, estimator):
        path = tmp_path / "session.json"
        path.write_text("{not json", encoding="utf-8")
        store = EntryStore(StoreConfig(path=str(path)), estimator)
        store.create("user", "stale")
        assert store.load() == 0
        assert len(store) == 0

    def test_load_wrong_shape_is_empty(self, tmp_path, estimator):
        path = tmp_path / "session.json"
        path.write_text(json.dumps({"entries": [{"type": "nope"}]}), encoding="utf-8")
        store = EntryStore(StoreConfig(path=str(path)), estimator)
        assert store.load() == 0

    def test_auto_save(self, tmp_path, estimator):
        path = tmp_path / "auto.json"
        store = EntryStore(StoreConfig(path=str(path), auto_save=True), estimator)
        store.create("user", "persist me")
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["entries"][0]["content"] == "persist me"
