# src/contextcore/models.py
"""
Core data models for the ContextCore library.

This module defines the Pydantic models used to represent context entries:
the entry type enumeration, the tagged union of known metadata shapes, and
the :class:`Entry` record itself. Summary nodes and archive pointers live
next to the components that create them (``context.dag`` and
``context.archive``).
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from .context.tokens import TokenCounter


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    return f"ent_{uuid.uuid4().hex[:16]}"


class EntryType(str, Enum):
    """
    Kinds of context entries.

    The first three are conversational messages keyed by role; the rest
    are structural records produced by the agent loop.
    """
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_RESULT = "tool_result"
    DECISION = "decision"
    FILE_REFERENCE = "file_reference"
    ERROR = "error"
    SUMMARY = "summary"

    @classmethod
    def _missing_(cls, value: object):  # type: ignore[misc]
        """
        Accepts case and separator variants ("Tool-Result", "TOOL_RESULT")
        and a few aliases used by agent frameworks.
        """
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
            normalized = _TYPE_ALIASES.get(normalized, normalized)
            for member in cls:
                if member.value == normalized:
                    return member
        return None


_TYPE_ALIASES = {
    "agent": "assistant",
    "tool_call": "tool_invocation",
    "tool_use": "tool_invocation",
    "tool_output": "tool_result",
    "file": "file_reference",
}

DEFAULT_CHARS_PER_TOKEN = 4.0

MESSAGE_TYPES = frozenset({EntryType.USER, EntryType.ASSISTANT, EntryType.SYSTEM})


# =============================================================================
# Metadata shapes
# =============================================================================


class ToolCallMetadata(BaseModel):
    """Metadata for tool invocations and their results."""
    kind: Literal["tool"] = "tool"
    tool_name: str
    call_id: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)


class FileMetadata(BaseModel):
    """Metadata for entries that reference a file on disk."""
    kind: Literal["file"] = "file"
    path: str
    operation: Optional[str] = None
    line_range: Optional[List[int]] = None


class DecisionMetadata(BaseModel):
    """Metadata for durable decisions."""
    kind: Literal["decision"] = "decision"
    rationale: Optional[str] = None
    alternatives: List[str] = Field(default_factory=list)


class ErrorMetadata(BaseModel):
    """Metadata for error entries."""
    kind: Literal["error"] = "error"
    error_type: Optional[str] = None
    recoverable: bool = True


EntryMetadata = Annotated[
    Union[ToolCallMetadata, FileMetadata, DecisionMetadata, ErrorMetadata],
    Field(discriminator="kind"),
]


# =============================================================================
# Entry
# =============================================================================


class Entry(BaseModel):
    """
    One atomic unit of conversational or tool context.

    Entries are immutable: content changes only through :meth:`with_content`
    or ``EntryStore.update``, which both return a new entry with a fresh
    token count.

    Attributes:
        id: Unique identifier.
        type: The entry kind (see :class:`EntryType`).
        content: Text payload.
        created_at: Creation time (UTC); also the entry's chronological key.
        updated_at: Time of the last explicit patch (UTC).
        tokens: Cached token cost of ``content``. When not given it is
            stamped at construction with the default estimate
            (``DEFAULT_CHARS_PER_TOKEN``); the entry store re-stamps it
            with its own estimator.
        metadata: One of the known metadata shapes, discriminated by ``kind``.
        extensions: Open map for anything the known shapes do not cover.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_entry_id, description="Unique identifier for the entry.")
    type: EntryType = Field(description="Kind of entry.")
    content: str = Field(default="", description="Text payload of the entry.")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp (UTC).")
    updated_at: datetime = Field(default_factory=utc_now, description="Last patch timestamp (UTC).")
    tokens: int = Field(default=0, ge=0, description="Token cost of the content.")
    metadata: Optional[EntryMetadata] = Field(default=None, description="Typed metadata.")
    extensions: Dict[str, Any] = Field(default_factory=dict, description="Open extension map.")

    @model_validator(mode="before")
    @classmethod
    def stamp_tokens(cls, data: Any) -> Any:
        """Price the content when no token count was supplied."""
        if isinstance(data, dict) and data.get("tokens") is None:
            content = data.get("content") or ""
            data = {**data, "tokens": math.ceil(len(content) / DEFAULT_CHARS_PER_TOKEN)}
        return data

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def ensure_utc_timestamp(cls, v: Any) -> Any:
        """Parse ISO strings (including a trailing ``Z``) and make naive datetimes UTC."""
        if isinstance(v, str):
            v = datetime.fromisoformat(v[:-1] + "+00:00" if v.endswith("Z") else v)
        if isinstance(v, datetime):
            if v.tzinfo is None:
                return v.replace(tzinfo=timezone.utc)
            return v.astimezone(timezone.utc)
        return v

    @property
    def tool_name(self) -> Optional[str]:
        if isinstance(self.metadata, ToolCallMetadata):
            return self.metadata.tool_name
        return None

    @property
    def is_pruned(self) -> bool:
        return bool(self.extensions.get("pruned", False))

    def with_content(
        self,
        content: str,
        counter: "TokenCounter",
        extensions: Optional[Dict[str, Any]] = None,
    ) -> "Entry":
        """Return a copy carrying ``content`` and a token count computed from it."""
        update: Dict[str, Any] = {
            "content": content,
            "tokens": counter.estimate(content),
            "updated_at": utc_now(),
        }
        if extensions is not None:
            update["extensions"] = {**self.extensions, **extensions}
        return self.model_copy(update=update)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        return cls.model_validate(data)
