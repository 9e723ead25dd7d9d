"""
In-memory response cache for the resilience layer.

- Bounded: at most max_size entries, oldest-inserted evicted first (FIFO)
- TTL per entry; expired entries are purged lazily on read
- find_similar() does a token-overlap lookup used as a last resort before
  emergency responses

Cache keys are built from the recent conversation:
    "<user msg n-1> | <user msg n> | <current message>"
"""
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Iterable, Optional, Sequence, Set

from resilient_ai.core.logging import get_logger
from resilient_ai.core.metrics import (
    record_cache_eviction,
    record_cache_hit,
    record_cache_miss,
)
from resilient_ai.services.ai.schema import AIResponse, Message, MessageRole

logger = get_logger(__name__)

KEY_SEPARATOR = " | "
KEY_HISTORY_DEPTH = 2

_TOKEN_PATTERN = re.compile(r"\w+")


def build_cache_key(
    message: str,
    history: Sequence[Message],
    roles: Iterable[MessageRole] = (MessageRole.USER,),
) -> str:
    """
    Build the cache key for a message in the context of its history.

    The last KEY_HISTORY_DEPTH history messages authored by one of `roles`
    are joined with the current message. With no such messages the key is
    the raw message.
    """
    allowed = set(roles)
    recent = [m.content for m in history if m.role in allowed][-KEY_HISTORY_DEPTH:]
    if not recent:
        return message
    return KEY_SEPARATOR.join(recent + [message])


def _tokenize(text: str) -> Set[str]:
    return set(_TOKEN_PATTERN.findall(text.lower()))


def _similarity(left: Set[str], right: Set[str]) -> float:
    """Jaccard similarity of two token sets."""
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: AIResponse
    expires_at: float


class ResponseCache:
    """
    Bounded FIFO cache of normalized AI responses.

    All state is guarded by one lock. Nothing here awaits, so the lock is
    never held across a suspension point.
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl_seconds: float = 3600.0,
        similarity_threshold: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        if not 0.0 < similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")

        self.max_size = max_size
        self.default_ttl_seconds = default_ttl_seconds
        self.similarity_threshold = similarity_threshold
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: str) -> Optional[AIResponse]:
        """Return the cached response for key, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                self._expirations += 1
                record_cache_eviction("expired")
                entry = None

            if entry is None:
                self._misses += 1
                record_cache_miss("exact")
                return None

            self._hits += 1
            record_cache_hit("exact")
            return entry.value

    def set(self, key: str, value: AIResponse, ttl_seconds: Optional[float] = None) -> None:
        """
        Store value under key.

        Overwriting an existing key re-inserts it as the newest entry. A new
        key at capacity evicts exactly the oldest entry.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        with self._lock:
            entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                record_cache_eviction("capacity")
                logger.debug("response_cache_evicted", key=evicted_key)
            self._entries[key] = entry

    def find_similar(self, message: str) -> Optional[AIResponse]:
        """
        Return the response whose key best overlaps message.

        Only scores at or above similarity_threshold qualify. Among equal
        scores the most recently inserted entry wins.
        """
        tokens = _tokenize(message)
        with self._lock:
            now = self._clock()
            best: Optional[CacheEntry] = None
            best_score = 0.0
            for entry in reversed(self._entries.values()):
                if entry.expires_at <= now:
                    continue
                score = _similarity(tokens, _tokenize(entry.key))
                if score >= self.similarity_threshold and score > best_score:
                    best, best_score = entry, score

        if best is None:
            record_cache_miss("similar")
            return None

        record_cache_hit("similar")
        logger.info("response_cache_similar_hit", key=best.key, score=round(best_score, 3))
        return best.value

    def delete(self, key: str) -> bool:
        """Remove key. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict:
        """Cache statistics for monitoring."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }
