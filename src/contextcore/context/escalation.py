# src/contextcore/context/escalation.py
"""
Escalation: model-assisted digesting when cleaning cannot restore health.

Three levels, tried in order until one produces a digest that is at least
``1 - min_reduction`` smaller than the input:

1. Model call asking for a detailed summary at the target size.
2. Model call asking for terse bullet points at half the target.
3. Deterministic truncation at a quarter of the target. No model call,
   never fails.

A model error at level 1 or 2 is logged and the next level is tried.
Only levels 1 and 2 yield *semantic* digests; the engine falls back to
its structural digest when escalation ends at level 3.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..config import EscalationConfig
from ..models import Entry
from ..operators.batch import ModelClient
from .tokens import TokenCounter, TokenEstimator

logger = logging.getLogger(__name__)

TRUNCATION_HEADER = "# Context Summary (Truncated)"
MAX_TRUNCATED_ENTRIES = 20

DETAILED_PROMPT = """Summarize the following agent context in at most {target} tokens.
Preserve concrete details: decisions and their reasons, file paths, identifiers,
error messages, open tasks and the current state of the work.

{transcript}

Summary:"""

BULLET_PROMPT = """Condense the following agent context into terse bullet points,
at most {target} tokens. Keep only decisions, file paths, unresolved errors and next steps.

{transcript}

Bullet points:"""


@dataclass
class EscalationResult:
    """
    Outcome of :meth:`Escalator.summarize`.

    Attributes:
        success: False only when the input was unusable.
        level: 1-3 for the level that produced ``content``; 0 when no
            reduction was attempted.
        strategy: ``detailed``, ``bullets``, ``truncation``, ``empty_input``
            or ``no_reduction_needed``.
        content: The digest.
        original_tokens: Cost of the input transcript.
        result_tokens: Cost of ``content``.
        errors: Messages from levels that failed or were rejected.
    """

    success: bool
    level: int
    strategy: str
    content: str = ""
    original_tokens: int = 0
    result_tokens: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def semantic(self) -> bool:
        return self.level in (1, 2)


class Escalator:
    """
    Runs the three escalation levels against a model client.

    Args:
        client: ``async call(prompt, schema) -> str``; None restricts
            escalation to deterministic truncation.
        config: Target size, per-entry prompt cap and acceptance ratio.
        counter: Token counter for sizing.
    """

    def __init__(
        self,
        client: Optional[ModelClient] = None,
        config: Optional[EscalationConfig] = None,
        counter: Optional[TokenCounter] = None,
    ) -> None:
        self.client = client
        self.config = config or EscalationConfig()
        self.counter = counter or TokenEstimator()

    def transcript(self, entries: Sequence[Entry]) -> str:
        limit = self.config.prompt_chars_per_entry
        lines = []
        for entry in entries:
            content = entry.content
            if len(content) > limit:
                content = content[:limit] + "..."
            lines.append(f"[{entry.type.value}] {content}")
        return "\n\n".join(lines)

    async def summarize(self, entries: Sequence[Entry], target_tokens: Optional[int] = None) -> EscalationResult:
        target = target_tokens or self.config.target_tokens
        if not entries:
            return EscalationResult(success=True, level=0, strategy="empty_input")

        transcript = self.transcript(entries)
        original_tokens = self.counter.estimate(transcript)
        if original_tokens <= target:
            return EscalationResult(
                success=True,
                level=0,
                strategy="no_reduction_needed",
                content=transcript,
                original_tokens=original_tokens,
                result_tokens=original_tokens,
            )

        errors: List[str] = []
        if self.client is not None:
            for level, strategy, template, level_target in (
                (1, "detailed", DETAILED_PROMPT, target),
                (2, "bullets", BULLET_PROMPT, max(1, target // 2)),
            ):
                prompt = template.format(target=level_target, transcript=transcript)
                try:
                    content = (await self.client.call(prompt, None)).strip()
                except Exception as exc:
                    logger.warning("Escalation level %d failed: %s", level, exc)
                    errors.append(f"level {level}: {type(exc).__name__}: {exc}")
                    continue

                if content and len(content) < len(transcript) * self.config.min_reduction:
                    result_tokens = self.counter.estimate(content)
                    logger.info(
                        "Escalation level %d reduced %d -> %d tokens", level, original_tokens, result_tokens
                    )
                    return EscalationResult(
                        success=True,
                        level=level,
                        strategy=strategy,
                        content=content,
                        original_tokens=original_tokens,
                        result_tokens=result_tokens,
                        errors=errors,
                    )
                errors.append(f"level {level}: insufficient reduction ({len(content)} of {len(transcript)} chars)")

        content = self.truncate(entries, max(1, target // 4))
        return EscalationResult(
            success=True,
            level=3,
            strategy="truncation",
            content=content,
            original_tokens=original_tokens,
            result_tokens=self.counter.estimate(content),
            errors=errors,
        )

    def truncate(self, entries: Sequence[Entry], target_tokens: int) -> str:
        """Keep the newest entries, each cut to an equal share of the budget."""
        chars_per_token = getattr(self.counter, "chars_per_token", 4.0)
        recent = list(entries[-MAX_TRUNCATED_ENTRIES:])
        omitted = len(entries) - len(recent)
        notice = f"[Truncated: {omitted} earlier entries omitted, {len(entries)} total]"

        available = int(target_tokens * chars_per_token) - len(TRUNCATION_HEADER) - len(notice)
        per_entry = max(20, available // len(recent))

        lines = [TRUNCATION_HEADER]
        for entry in recent:
            prefix = f"[{entry.type.value}] "
            body = " ".join(entry.content.split())
            room = max(0, per_entry - len(prefix))
            if len(body) > room:
                body = body[: max(0, room - 3)] + "..."
            lines.append(prefix + body)
        lines.append(notice)
        return "\n".join(lines)
