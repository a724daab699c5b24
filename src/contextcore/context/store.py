# src/contextcore/context/store.py
"""
Entry Store: the ordered, typed log of context entries for one session.

Entries are kept in chronological (insertion) order. Every write path
stamps the entry's token count from the store's estimator so the cached
count always matches the content. Each entry also gets a session
position: a monotonic ordinal that survives removal of its neighbours,
so archived ranges can be reported against the whole session. A FIFO
backstop drops the oldest entries once ``max_entries`` is exceeded;
trimmed entries are handed to the ``on_trim`` callback (the engine
archives them) before they leave.

Persistence is a single JSON snapshot::

    {
      "session_id": "...",
      "entries": [ ...Entry.to_dict()... ],
      "positions": {"ent_...": 0, ...},
      "next_position": 42,
      "metadata": { ... },           # free-form, e.g. the DAG state
      "created_at": "...",
      "updated_at": "..."
    }

``save()`` writes atomically (tmp file then rename) and re-raises I/O
errors as :class:`SnapshotError`. ``load()`` on a missing or corrupt file
starts a fresh, empty session instead of failing.

The store is single-writer: callers must serialize mutations themselves.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..config import StoreConfig
from ..exceptions import SnapshotError
from ..models import Entry, EntryType, utc_now
from .tokens import TokenCounter, TokenEstimator

logger = logging.getLogger(__name__)

# Fields a patch may not touch.
_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "tokens"})


class EntryStore:
    """
    Ordered log of :class:`Entry` records with snapshot persistence.

    Args:
        config: Snapshot path, FIFO ceiling and auto-save flag.
        estimator: Token counter used to stamp entries.
        on_trim: Called with the entries dropped by the FIFO backstop.
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        estimator: Optional[TokenCounter] = None,
        on_trim: Optional[Callable[[List[Entry]], None]] = None,
    ) -> None:
        self.config = config or StoreConfig()
        self.estimator = estimator or TokenEstimator()
        self.on_trim = on_trim
        self.session_id = f"ses_{uuid.uuid4().hex[:12]}"
        self.metadata: Dict[str, Any] = {}
        self.created_at: datetime = utc_now()
        self.updated_at: datetime = self.created_at
        self._entries: List[Entry] = []
        self._index: Dict[str, Entry] = {}
        self._positions: Dict[str, int] = {}
        self._next_position = 0

    @property
    def path(self) -> Optional[Path]:
        return Path(self.config.path) if self.config.path else None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add(self, entry: Entry, position: Optional[int] = None) -> str:
        """
        Add ``entry`` (token count re-stamped) and return its id.

        New entries are appended at the next session position. Passing
        ``position`` puts a previously removed entry back at its original
        ordinal, in chronological order among the held entries.
        """
        if entry.id in self._index:
            raise ValueError(f"Duplicate entry id: {entry.id}")

        stamped = entry.model_copy(update={"tokens": self.estimator.estimate(entry.content)})
        if position is None:
            position = self._next_position
            self._entries.append(stamped)
        else:
            insert_at = next(
                (i for i, e in enumerate(self._entries) if self._positions[e.id] > position),
                len(self._entries),
            )
            self._entries.insert(insert_at, stamped)
        self._next_position = max(self._next_position, position + 1)
        self._positions[stamped.id] = position
        self._index[stamped.id] = stamped
        self._touch()
        logger.debug("Added %s entry %s (%d tokens)", stamped.type.value, stamped.id, stamped.tokens)

        self._trim()
        self._maybe_save()
        return stamped.id

    def create(self, entry_type: EntryType | str, content: str, **fields: Any) -> Entry:
        """Build an entry from parts, add it, and return the stored copy."""
        entry_id = self.add(Entry(type=EntryType(entry_type), content=content, **fields))
        return self._index[entry_id]

    def update(self, entry_id: str, patch: Dict[str, Any]) -> Optional[Entry]:
        """
        Merge ``patch`` into the entry and return the new version.

        Returns None when the id is unknown or the patched entry does not
        validate. ``extensions`` are merged key by key; ``id``,
        ``created_at`` and ``tokens`` cannot be patched.
        """
        current = self._index.get(entry_id)
        if current is None:
            logger.debug("Update of unknown entry %s ignored", entry_id)
            return None

        ignored = _IMMUTABLE_FIELDS.intersection(patch)
        if ignored:
            logger.warning("Ignoring immutable fields %s in patch for %s", sorted(ignored), entry_id)

        data = current.model_dump()
        for key, value in patch.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            if key == "extensions" and isinstance(value, dict):
                data["extensions"] = {**data["extensions"], **value}
            else:
                data[key] = value
        data["updated_at"] = utc_now()

        try:
            updated = Entry.model_validate(data)
        except ValidationError as exc:
            logger.warning("Rejected patch for %s: %s", entry_id, exc)
            return None
        updated = updated.model_copy(update={"tokens": self.estimator.estimate(updated.content)})

        position = self._entries.index(current)
        self._entries[position] = updated
        self._index[entry_id] = updated
        self._touch()
        self._maybe_save()
        return updated

    def remove(self, entry_ids: Iterable[str]) -> int:
        """Drop entries by id (used once their content is archived). Returns the count removed."""
        doomed = {entry_id for entry_id in entry_ids if entry_id in self._index}
        if not doomed:
            return 0
        self._entries = [e for e in self._entries if e.id not in doomed]
        for entry_id in doomed:
            del self._index[entry_id]
            del self._positions[entry_id]
        self._touch()
        self._maybe_save()
        return len(doomed)

    def clear(self) -> None:
        self._entries = []
        self._index = {}
        self._positions = {}
        self._next_position = 0
        self.metadata = {}
        self._touch()

    def trim(self) -> int:
        """Apply the FIFO backstop now. Returns the number of entries dropped."""
        dropped = self._trim()
        if dropped:
            self._maybe_save()
        return dropped

    def _trim(self) -> int:
        overflow = len(self._entries) - self.config.max_entries
        if overflow <= 0:
            return 0
        trimmed = self._entries[:overflow]
        if self.on_trim is not None:
            self.on_trim(list(trimmed))
        self._entries = self._entries[overflow:]
        for entry in trimmed:
            del self._index[entry.id]
            del self._positions[entry.id]
        logger.info("FIFO trim dropped %d oldest entries", len(trimmed))
        return len(trimmed)

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def _maybe_save(self) -> None:
        if self.config.auto_save and self.path is not None:
            self.save()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[Entry]:
        return self._index.get(entry_id)

    def position(self, entry_id: str) -> Optional[int]:
        """Session ordinal of a held entry, or None."""
        return self._positions.get(entry_id)

    @property
    def entries(self) -> List[Entry]:
        return list(self._entries)

    def by_type(self, *entry_types: EntryType | str) -> List[Entry]:
        wanted = {EntryType(t) for t in entry_types}
        return [e for e in self._entries if e.type in wanted]

    def search(self, query: str) -> List[Entry]:
        """Case-insensitive substring search over content and metadata."""
        needle = query.lower()
        if not needle:
            return []
        results = []
        for entry in self._entries:
            if needle in entry.content.lower():
                results.append(entry)
                continue
            if entry.metadata is not None and needle in entry.metadata.model_dump_json().lower():
                results.append(entry)
            elif entry.extensions and needle in json.dumps(entry.extensions, default=str).lower():
                results.append(entry)
        return results

    def total_tokens(self) -> int:
        return sum(e.tokens for e in self._entries)

    def summary(self) -> Dict[str, Any]:
        """Counts by type, total tokens and timestamps."""
        by_type = Counter(e.type.value for e in self._entries)
        return {
            "session_id": self.session_id,
            "total_entries": len(self._entries),
            "total_tokens": self.total_tokens(),
            "by_type": dict(by_type),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._index

    # -------------------------------------------------------------------------
    # Export / import
    # -------------------------------------------------------------------------

    def export(self) -> Dict[str, Any]:
        """Portable snapshot document."""
        return {
            "session_id": self.session_id,
            "entries": [e.to_dict() for e in self._entries],
            "positions": dict(self._positions),
            "next_position": self._next_position,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def import_(self, data: Dict[str, Any]) -> int:
        """
        Replace the store's contents with an exported document.

        Returns the number of entries imported. Raises ``KeyError``,
        ``TypeError`` or ``ValueError`` on malformed documents, leaving the
        store untouched. Documents without positions number their entries
        in list order. The FIFO backstop is not applied here; call
        :meth:`trim` once dependent state has been restored.
        """
        entries = [Entry.from_dict(raw) for raw in data["entries"]]
        entries = [e.model_copy(update={"tokens": self.estimator.estimate(e.content)}) for e in entries]
        saved_positions = data.get("positions") or {}
        positions = {e.id: int(saved_positions.get(e.id, i)) for i, e in enumerate(entries)}
        next_position = max([int(data.get("next_position", 0)), *(p + 1 for p in positions.values())])

        self._entries = entries
        self._index = {e.id: e for e in entries}
        self._positions = positions
        self._next_position = next_position
        self.session_id = data.get("session_id", self.session_id)
        self.metadata = dict(data.get("metadata") or {})
        if data.get("created_at"):
            self.created_at = datetime.fromisoformat(data["created_at"])
        self._touch()
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def save(self, path: Optional[Path] = None) -> Path:
        """
        Write the snapshot atomically (tmp then rename).

        Raises:
            ValueError: If no path is configured or given.
            SnapshotError: If the write fails; the tmp file is removed.
        """
        target = Path(path) if path is not None else self.path
        if target is None:
            raise ValueError("No snapshot path configured")

        tmp_path = target.with_suffix(target.suffix + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            data = json.dumps(self.export(), indent=2, default=str)
            tmp_path.write_text(data, encoding="utf-8")
            tmp_path.replace(target)
            logger.debug("Saved %d entries to %s", len(self._entries), target)
        except OSError as exc:
            logger.error("Failed to save snapshot %s: %s", target, exc)
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
            raise SnapshotError(str(target)) from exc
        return target

    def load(self, path: Optional[Path] = None, trim: bool = True) -> int:
        """
        Load the snapshot, replacing the in-memory contents.

        A missing, unreadable or corrupt file yields an empty store.
        With ``trim=False`` the FIFO backstop (and so ``on_trim``) is left
        for the caller to apply via :meth:`trim`. Returns the number of
        entries loaded.
        """
        source = Path(path) if path is not None else self.path
        self.clear()
        if source is None or not source.exists():
            logger.info("No snapshot at %s, starting fresh session", source)
            return 0

        try:
            raw = json.loads(source.read_text(encoding="utf-8"))
            count = self.import_(raw)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Corrupt snapshot %s: %s, starting fresh session", source, exc)
            self.clear()
            return 0
        if trim:
            self._trim()
        return count
