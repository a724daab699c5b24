# src/contextcore/context/tokens.py
"""
Token estimation for context entries.

Costs are approximated as ``ceil(len(text) / chars_per_token)`` with the
ratio chosen by the declared encoding. With ``exact=True`` the matching
``tiktoken`` encoder is used instead. Results are memoized in a bounded
LRU cache keyed by a hash of the encoding and the text.

The estimator is an explicitly constructed component: each engine (or
test) owns its own instance and cache, so concurrent sessions never share
hidden counters.

Example::

    estimator = TokenEstimator(TokenConfig(encoding="cl100k"))
    estimator.estimate("hello world")          # 3
    estimator.estimate_messages(entries)       # content + 5 per message
    estimator.cache_stats()["hit_rate"]
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

import tiktoken

from ..config import TokenConfig

logger = logging.getLogger(__name__)


ENCODING_CHARS_PER_TOKEN: Dict[str, float] = {
    "cl100k": 4.0,
    "p50k": 4.0,
    "r50k": 4.0,
    "o200k": 4.0,
    "character": 1.0,
}

TIKTOKEN_ENCODINGS: Dict[str, str] = {
    "cl100k": "cl100k_base",
    "p50k": "p50k_base",
    "r50k": "r50k_base",
    "o200k": "o200k_base",
}


class TokenCounter(Protocol):
    """Anything that can price a string in tokens."""

    def estimate(self, text: str) -> int: ...


# =============================================================================
# Cache
# =============================================================================


class TokenCache:
    """Thread-safe LRU cache of token counts.

    Attributes:
        maxsize: Maximum number of items to store (0 disables caching).
        hits: Total cache hits since the last full invalidation.
        misses: Total cache misses since the last full invalidation.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self.maxsize = maxsize
        self._cache: OrderedDict[str, int] = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[int]:
        if self.maxsize == 0:
            self.misses += 1
            return None

        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self.hits += 1
                return self._cache[key]
            self.misses += 1
            return None

    def set(self, key: str, value: int) -> None:
        if self.maxsize == 0:
            return

        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            elif len(self._cache) >= self.maxsize:
                self._cache.popitem(last=False)
            self._cache[key] = value

    def discard(self, key: str) -> bool:
        """Remove one key. Returns True if it was present."""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        """Clear all items and reset statistics."""
        with self._lock:
            self._cache.clear()
            self.hits = 0
            self.misses = 0

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @property
    def stats(self) -> Dict[str, Any]:
        """Size, capacity, hits, misses and hit rate."""
        with self._lock:
            total = self.hits + self.misses
            hit_rate = self.hits / total if total > 0 else 0.0
            return {
                "size": len(self._cache),
                "max_size": self.maxsize,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(hit_rate, 4),
            }


# =============================================================================
# Estimator
# =============================================================================


class TokenEstimator:
    """
    Deterministic token-cost estimator with a memoizing LRU cache.

    Args:
        config: Encoding, ratio override, per-message overhead and cache size.
        cache: Optional cache to use instead of a private one.
    """

    def __init__(
        self,
        config: Optional[TokenConfig] = None,
        cache: Optional[TokenCache] = None,
    ) -> None:
        self.config = config or TokenConfig()
        self.cache = cache if cache is not None else TokenCache(self.config.cache_size)
        self._encoder: Optional[Any] = None

    @property
    def encoding(self) -> str:
        return self.config.encoding

    @property
    def chars_per_token(self) -> float:
        if self.config.chars_per_token is not None:
            return self.config.chars_per_token
        return ENCODING_CHARS_PER_TOKEN[self.config.encoding]

    def cache_key(self, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{self.encoding}:{int(self.config.exact)}:{digest}"

    def estimate(self, text: str) -> int:
        """Token cost of ``text``; 0 for empty input."""
        if not text:
            return 0

        key = self.cache_key(text)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        count = self._count(text)
        self.cache.set(key, count)
        return count

    def estimate_batch(self, texts: Iterable[str]) -> int:
        return sum(self.estimate(text) for text in texts)

    def estimate_messages(self, messages: Iterable[Any]) -> int:
        """
        Cost of a message sequence: each message's content plus the fixed
        framing overhead. Accepts entries (anything with ``content``) or
        mappings with a ``"content"`` key.
        """
        total = 0
        for message in messages:
            if isinstance(message, Mapping):
                content = message.get("content") or ""
            else:
                content = getattr(message, "content", "") or ""
            if not isinstance(content, str):
                content = json.dumps(content, default=str)
            total += self.estimate(content) + self.config.message_overhead
        return total

    def estimate_object(self, obj: Any) -> int:
        """Cost of the JSON serialization of ``obj``."""
        return self.estimate(json.dumps(obj, default=str, sort_keys=True))

    def invalidate(self, text: Optional[str] = None) -> None:
        """Drop the cached count for ``text``, or everything (and the counters) when None."""
        if text is None:
            self.cache.clear()
            logger.debug("Token cache cleared")
        else:
            self.cache.discard(self.cache_key(text))

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats

    def _count(self, text: str) -> int:
        if self.config.exact and self.encoding in TIKTOKEN_ENCODINGS:
            return len(self._get_encoder().encode(text, disallowed_special=()))
        return math.ceil(len(text) / self.chars_per_token)

    def _get_encoder(self) -> Any:
        if self._encoder is None:
            name = TIKTOKEN_ENCODINGS[self.encoding]
            self._encoder = tiktoken.get_encoding(name)
            logger.debug("Loaded tiktoken encoding %s", name)
        return self._encoder
