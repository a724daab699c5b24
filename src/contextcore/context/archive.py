# src/contextcore/context/archive.py
"""
Archival tier: disk-backed storage for compacted raw content.

Entries leaving the hot in-memory set are written to the archive
directory in units of ``chunk_size``. Each unit becomes one file,
``log_<pointer_id>.json``, and one :class:`ArchivePointer` recorded in
``index.json``. Structural metadata (decisions mentioned, file
references, tool-call counts, token totals, index range, timestamps) is
always extracted; with ``lossless=True`` the entries themselves are
stored verbatim and :meth:`ArchiveTier.load_pointer` restores them.

Every file is written atomically (tmp then rename) and the directory is
created on demand. Write failures are logged and raised as
:class:`ArchiveError`.

Example::

    tier = ArchiveTier(ArchiveConfig(directory="/tmp/archives"), estimator)
    result = tier.compress(entries)
    if result.archived:
        restored = tier.load_pointer(result.pointers[0]).entries
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError

from ..config import ArchiveConfig
from ..exceptions import ArchiveError
from ..models import Entry, EntryType, utc_now
from .tokens import TokenCounter, TokenEstimator

logger = logging.getLogger(__name__)

DECISION_PATTERN = re.compile(
    r"(?:decided|chose|selected|opted|implemented|created|added|fixed)\s+([^.\n]+)",
    re.IGNORECASE,
)
FILE_PATTERN = re.compile(r"[a-zA-Z0-9_\-/]+\.[a-zA-Z]{1,10}\b")

MAX_DECISIONS_PER_ENTRY = 3
MAX_FILES_PER_ENTRY = 5
INDEX_FILENAME = "index.json"


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class ArchiveMetadata:
    """Structural facts extracted from one archived unit."""

    start_index: int = 0
    end_index: int = 0
    total_tokens: int = 0
    tool_invocation_count: int = 0
    tool_result_count: int = 0
    user_count: int = 0
    assistant_count: int = 0
    first_timestamp: Optional[str] = None
    last_timestamp: Optional[str] = None
    key_decisions: List[str] = field(default_factory=list)
    file_references: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiveMetadata":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ArchivePointer:
    """
    Write-once reference to one archive unit.

    Attributes:
        pointer_id: Unique id (``arc_...``).
        archive_path: File holding the unit.
        entry_ids: Ids of the archived entries, in order.
        compressed_at: ISO timestamp of archival.
        lossless: Whether the file holds the entries verbatim.
        metadata: Extracted structural metadata.
    """

    pointer_id: str
    archive_path: str
    entry_ids: List[str]
    compressed_at: str
    lossless: bool
    metadata: ArchiveMetadata

    @property
    def entry_count(self) -> int:
        return len(self.entry_ids)

    def position_of(self, entry_id: str) -> Optional[int]:
        """Session position of ``entry_id``; units cover contiguous ranges."""
        if entry_id not in self.entry_ids:
            return None
        return self.metadata.start_index + self.entry_ids.index(entry_id)

    @property
    def reasoning_summary(self) -> str:
        """One-line stand-in for the archived unit."""
        parts = []
        if self.metadata.key_decisions:
            parts.append("Decisions: " + "; ".join(self.metadata.key_decisions[:3]))
        if self.metadata.file_references:
            parts.append("Files: " + ", ".join(self.metadata.file_references[:5]))
        parts.append(f"Entries: {self.entry_count}")
        return f"[ARCHIVED {self.pointer_id}] " + " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pointer_id": self.pointer_id,
            "archive_path": self.archive_path,
            "entry_ids": list(self.entry_ids),
            "compressed_at": self.compressed_at,
            "lossless": self.lossless,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchivePointer":
        return cls(
            pointer_id=data["pointer_id"],
            archive_path=data["archive_path"],
            entry_ids=list(data["entry_ids"]),
            compressed_at=data.get("compressed_at", ""),
            lossless=bool(data.get("lossless", True)),
            metadata=ArchiveMetadata.from_dict(data.get("metadata", {})),
        )


@dataclass
class ArchiveResult:
    """
    Outcome of :meth:`ArchiveTier.compress` / :meth:`ArchiveTier.archive`.

    Attributes:
        archived: Number of entries moved to disk.
        pointers: One pointer per written unit.
        retained: Entries left in memory, in order.
        pre_tokens: Cost of the input entries.
        post_tokens: Cost of the retained entries plus the pointer stand-ins.
    """

    archived: int = 0
    pointers: List[ArchivePointer] = field(default_factory=list)
    retained: List[Entry] = field(default_factory=list)
    pre_tokens: int = 0
    post_tokens: int = 0

    @property
    def metadata_per_archive(self) -> List[ArchiveMetadata]:
        return [p.metadata for p in self.pointers]

    @property
    def reduction_pct(self) -> float:
        """``1 - post/pre``, clamped to [0, 1]; 0 when nothing was measured."""
        if self.pre_tokens <= 0:
            return 0.0
        return min(1.0, max(0.0, 1.0 - self.post_tokens / self.pre_tokens))

    @property
    def archived_ids(self) -> List[str]:
        return [entry_id for p in self.pointers for entry_id in p.entry_ids]

    def merge(self, other: "ArchiveResult") -> None:
        """Fold another archive run into this result."""
        self.archived += other.archived
        self.pointers.extend(other.pointers)
        self.pre_tokens += other.pre_tokens
        self.post_tokens += other.post_tokens


@dataclass
class RestoreResult:
    """Outcome of :meth:`ArchiveTier.load_pointer`."""

    success: bool
    pointer_id: str
    entries: List[Entry] = field(default_factory=list)
    metadata: Optional[ArchiveMetadata] = None
    reason: str = ""


@dataclass
class PayloadStatus:
    total_tokens: int
    total_bytes: int
    token_limit: int
    utilization: float
    needs_compression: bool


# =============================================================================
# Archive tier
# =============================================================================


class ArchiveTier:
    """
    Writes, indexes and restores archive units.

    Args:
        config: Directory, threshold, chunking and lossless flag.
        counter: Token counter for accounting.
    """

    def __init__(
        self,
        config: Optional[ArchiveConfig] = None,
        counter: Optional[TokenCounter] = None,
    ) -> None:
        self.config = config or ArchiveConfig()
        self.counter = counter or TokenEstimator()
        self.directory = Path(self.config.directory)
        self._index: Optional[Dict[str, ArchivePointer]] = None

    # -------------------------------------------------------------------------
    # Budget checks
    # -------------------------------------------------------------------------

    @property
    def trigger_tokens(self) -> int:
        return int(self.config.token_limit * self.config.threshold)

    def payload_status(self, entries: Sequence[Entry]) -> PayloadStatus:
        tokens = sum(e.tokens for e in entries)
        size = sum(len(e.content.encode("utf-8")) for e in entries)
        return PayloadStatus(
            total_tokens=tokens,
            total_bytes=size,
            token_limit=self.config.token_limit,
            utilization=tokens / self.config.token_limit,
            needs_compression=self._over_trigger(tokens),
        )

    def needs_compression(self, entries: Sequence[Entry]) -> bool:
        """True once the entries reach ``token_limit * threshold`` tokens."""
        return self._over_trigger(sum(e.tokens for e in entries))

    def _over_trigger(self, tokens: int) -> bool:
        return tokens > 0 and tokens >= self.trigger_tokens

    # -------------------------------------------------------------------------
    # Archiving
    # -------------------------------------------------------------------------

    def compress(self, entries: Sequence[Entry]) -> ArchiveResult:
        """
        Archive everything but the ``preserve_recent`` newest entries when
        the set reaches the threshold; below it a no-op with ``archived == 0``.
        """
        pre_tokens = sum(e.tokens for e in entries)
        if not self.needs_compression(entries):
            return ArchiveResult(retained=list(entries), pre_tokens=pre_tokens, post_tokens=pre_tokens)

        keep = self.config.preserve_recent
        split = max(0, len(entries) - keep)
        older, recent = list(entries[:split]), list(entries[split:])
        if not older:
            return ArchiveResult(retained=list(entries), pre_tokens=pre_tokens, post_tokens=pre_tokens)

        result = self.archive(older, start_index=0)
        result.retained = recent
        result.pre_tokens = pre_tokens
        result.post_tokens = sum(e.tokens for e in recent) + sum(
            self.counter.estimate(p.reasoning_summary) for p in result.pointers
        )
        logger.info(
            "Archived %d entries in %d units (%.0f%% reduction)",
            result.archived, len(result.pointers), result.reduction_pct * 100,
        )
        return result

    def archive(self, entries: Sequence[Entry], start_index: int = 0) -> ArchiveResult:
        """
        Write ``entries`` to disk unconditionally, ``chunk_size`` per unit.

        ``entries`` are taken as one contiguous range starting at session
        position ``start_index``; the units' index ranges are numbered
        from it.
        """
        entries = list(entries)
        result = ArchiveResult(pre_tokens=sum(e.tokens for e in entries))
        if not entries:
            return result

        index = self._load_index()
        size = self.config.chunk_size
        for offset in range(0, len(entries), size):
            chunk = entries[offset:offset + size]
            pointer = self._write_unit(chunk, start_index + offset)
            index[pointer.pointer_id] = pointer
            result.pointers.append(pointer)
            result.archived += len(chunk)

        self._write_index(index)
        result.post_tokens = sum(self.counter.estimate(p.reasoning_summary) for p in result.pointers)
        return result

    def extract_metadata(self, entries: Sequence[Entry], start_index: int = 0) -> ArchiveMetadata:
        meta = ArchiveMetadata(
            start_index=start_index,
            end_index=start_index + len(entries) - 1,
            total_tokens=sum(e.tokens for e in entries),
        )
        seen_files = set()
        for entry in entries:
            if entry.type == EntryType.TOOL_INVOCATION:
                meta.tool_invocation_count += 1
            elif entry.type == EntryType.TOOL_RESULT:
                meta.tool_result_count += 1
            elif entry.type == EntryType.USER:
                meta.user_count += 1
            elif entry.type == EntryType.ASSISTANT:
                meta.assistant_count += 1

            for match in DECISION_PATTERN.findall(entry.content)[:MAX_DECISIONS_PER_ENTRY]:
                meta.key_decisions.append(match.strip()[:200])

            found = 0
            for match in FILE_PATTERN.findall(entry.content):
                if found >= MAX_FILES_PER_ENTRY:
                    break
                if match not in seen_files:
                    seen_files.add(match)
                    meta.file_references.append(match)
                    found += 1

        if entries:
            meta.first_timestamp = entries[0].created_at.isoformat()
            meta.last_timestamp = entries[-1].created_at.isoformat()
        return meta

    def _write_unit(self, chunk: Sequence[Entry], start_index: int) -> ArchivePointer:
        pointer_id = f"arc_{uuid.uuid4().hex[:16]}"
        path = self.directory / f"log_{pointer_id}.json"
        pointer = ArchivePointer(
            pointer_id=pointer_id,
            archive_path=str(path),
            entry_ids=[e.id for e in chunk],
            compressed_at=utc_now().isoformat(),
            lossless=self.config.lossless,
            metadata=self.extract_metadata(chunk, start_index),
        )
        document = {
            "archived_at": pointer.compressed_at,
            "pointer_id": pointer_id,
            "metadata": pointer.metadata.to_dict(),
            "entry_ids": pointer.entry_ids,
            "entries": [e.to_dict() for e in chunk] if self.config.lossless else [],
        }
        self._atomic_write(path, document, pointer_id)
        logger.debug("Wrote archive unit %s (%d entries)", path, len(chunk))
        return pointer

    def _atomic_write(self, path: Path, document: Dict[str, Any], pointer_id: str = "") -> None:
        tmp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            logger.error("Failed to write archive file %s: %s", path, exc)
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
            raise ArchiveError(pointer_id) from exc

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.directory / INDEX_FILENAME

    def _load_index(self) -> Dict[str, ArchivePointer]:
        if self._index is not None:
            return self._index
        self._index = {}
        if self.index_path.exists():
            try:
                raw = json.loads(self.index_path.read_text(encoding="utf-8"))
                self._index = {pid: ArchivePointer.from_dict(p) for pid, p in raw["pointers"].items()}
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
                logger.warning("Corrupt archive index %s: %s, rebuilding from units", self.index_path, exc)
                self._index = self._rebuild_index()
        return self._index

    def _rebuild_index(self) -> Dict[str, ArchivePointer]:
        index: Dict[str, ArchivePointer] = {}
        for path in sorted(self.directory.glob("log_*.json")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                index[raw["pointer_id"]] = ArchivePointer(
                    pointer_id=raw["pointer_id"],
                    archive_path=str(path),
                    entry_ids=list(raw.get("entry_ids", [])),
                    compressed_at=raw.get("archived_at", ""),
                    lossless=bool(raw.get("entries")),
                    metadata=ArchiveMetadata.from_dict(raw.get("metadata", {})),
                )
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable archive unit %s: %s", path, exc)
        return index

    def _write_index(self, index: Dict[str, ArchivePointer]) -> None:
        document = {
            "updated_at": utc_now().isoformat(),
            "pointers": {pid: p.to_dict() for pid, p in index.items()},
        }
        self._atomic_write(self.index_path, document)

    def pointers(self) -> List[ArchivePointer]:
        return list(self._load_index().values())

    def get_pointer(self, pointer_id: str) -> Optional[ArchivePointer]:
        return self._load_index().get(pointer_id)

    def find_pointer(self, entry_id: str) -> Optional[ArchivePointer]:
        """Pointer of the unit holding ``entry_id``, if archived."""
        for pointer in self._load_index().values():
            if entry_id in pointer.entry_ids:
                return pointer
        return None

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def load_pointer(self, pointer: Union[ArchivePointer, str]) -> RestoreResult:
        """
        Read one archive unit back.

        Lossless units return their entries verbatim; lossy units return
        metadata only. Unknown pointers and unreadable files yield
        ``success=False`` with a reason.
        """
        if isinstance(pointer, str):
            found = self.get_pointer(pointer)
            if found is None:
                return RestoreResult(False, pointer, reason=f"unknown pointer {pointer}")
            pointer = found

        path = Path(pointer.archive_path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            entries = [Entry.from_dict(e) for e in raw.get("entries", [])]
        except (OSError, json.JSONDecodeError, TypeError, ValidationError) as exc:
            logger.warning("Cannot read archive unit %s: %s", path, exc)
            return RestoreResult(False, pointer.pointer_id, metadata=pointer.metadata, reason=str(exc))

        return RestoreResult(True, pointer.pointer_id, entries=entries, metadata=pointer.metadata)

    def expand(self, items: Iterable[Union[Entry, ArchivePointer]]) -> List[Entry]:
        """Replace pointers in ``items`` with their archived entries, keeping order."""
        expanded: List[Entry] = []
        for item in items:
            if isinstance(item, ArchivePointer):
                restored = self.load_pointer(item)
                expanded.extend(restored.entries)
            else:
                expanded.append(item)
        return expanded

    def restore_entries(self, entry_ids: Sequence[str]) -> Dict[str, Entry]:
        """Archived entries for ``entry_ids`` (lossless units only), keyed by id."""
        wanted = set(entry_ids)
        restored: Dict[str, Entry] = {}
        loaded = set()
        for entry_id in entry_ids:
            if entry_id in restored:
                continue
            pointer = self.find_pointer(entry_id)
            if pointer is None or pointer.pointer_id in loaded:
                continue
            loaded.add(pointer.pointer_id)
            for entry in self.load_pointer(pointer).entries:
                if entry.id in wanted:
                    restored[entry.id] = entry
        return restored
