from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

import redis

from app.models import ConversationTurn
from llm.schemas import ActionKind, StructuredIntent

logger = logging.getLogger(__name__)

AI_PREFIX = "ai:"
CONV_PREFIX = "conv:"
RATE_PREFIX = "rate:"
STATS_PREFIX = "stats:"

DEFAULT_TTL = 3600
CONTEXT_TURNS_IN_KEY = 3

# never served from cache: they depend on session state, not on text
UNCACHEABLE_ACTIONS = frozenset(
    {ActionKind.CONFIRM_CANCELLATION, ActionKind.CANCEL_ABORT, ActionKind.ERROR}
)


class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...

    def incr(self, key: str, ttl: int | None = None) -> int: ...

    def delete(self, key: str) -> None: ...


class MemoryCache:
    """
    In-process LRU with per-entry expiry. Bounded by max_entries.

    Counters written through incr() live outside the LRU, so a burst of
    cached responses can never evict a rate-limit window. Expired counters
    are swept whenever a new one is created.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._store: "OrderedDict[str, tuple[float | None, Any]]" = OrderedDict()
        self._counters: Dict[str, Tuple[Optional[float], int]] = {}
        self._max_entries = max_entries
        self._lock = Lock()

    def _evict(self) -> None:
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)

    def _sweep_counters(self, now: float) -> None:
        expired = [k for k, (exp, _) in self._counters.items() if exp is not None and exp <= now]
        for k in expired:
            del self._counters[k]

    def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            counter = self._counters.get(key)
            if counter is not None:
                if counter[0] is not None and counter[0] <= now:
                    del self._counters[key]
                    return None
                return counter[1]
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= now:
                self._store.pop(key, None)
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = time.time() + ttl if ttl is not None else None
        with self._lock:
            self._counters.pop(key, None)
            self._store[key] = (expires_at, value)
            self._store.move_to_end(key)
            self._evict()

    def incr(self, key: str, ttl: int | None = None) -> int:
        now = time.time()
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or (entry[0] is not None and entry[0] <= now):
                self._sweep_counters(now)
                self._store.pop(key, None)
                value = 1
                expires_at = now + ttl if ttl is not None else None
            else:
                expires_at, current = entry
                value = current + 1
            self._counters[key] = (expires_at, value)
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._counters.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)


class RedisCache:
    def __init__(self, url: str) -> None:
        self._redis = redis.Redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Any | None:
        value = self._redis.get(key)
        if value is None:
            return None
        return json.loads(value)

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        if ttl is not None:
            self._redis.setex(key, ttl, payload)
        else:
            self._redis.set(key, payload)

    def incr(self, key: str, ttl: int | None = None) -> int:
        value = int(self._redis.incr(key))
        # only the first increment in a window sets the expiry
        if ttl is not None and value == 1:
            self._redis.expire(key, ttl)
        return value

    def delete(self, key: str) -> None:
        self._redis.delete(key)


def build_cache_backend(kind: str, redis_url: str, max_entries: int = 1000) -> CacheBackend:
    if kind == "redis":
        return RedisCache(redis_url)
    return MemoryCache(max_entries=max_entries)


def _turn_dict(turn: Any) -> Dict[str, Any]:
    if isinstance(turn, ConversationTurn):
        return {"role": turn.role, "content": turn.content}
    if isinstance(turn, dict):
        return {"role": turn.get("role"), "content": turn.get("content")}
    return {"role": None, "content": str(turn)}


class ResponseCache:
    """
    Context-sensitive cache of parsed intents (never of reply text).

    Every backend failure degrades to a miss; the caller then asks the model.
    """

    def __init__(self, backend: CacheBackend, ttl: int = DEFAULT_TTL) -> None:
        self._backend = backend
        self._ttl = ttl

    @staticmethod
    def key(
        message: str,
        context: Sequence[Any] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        turns = list(context)
        material = {
            "message": (message or "").lower().strip(),
            "context_length": len(turns),
            "last_context": [_turn_dict(t) for t in turns[-CONTEXT_TURNS_IN_KEY:]],
            "metadata": metadata or {},
        }
        blob = json.dumps(material, sort_keys=True, default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:32]

    def get(self, key: str) -> Optional[StructuredIntent]:
        try:
            data = self._backend.get(AI_PREFIX + key)
        except Exception as exc:
            logger.warning("response cache get failed: %s", exc)
            return None

        if data is None:
            self._bump("misses")
            return None

        try:
            intent = StructuredIntent.model_validate(data)
        except ValueError as exc:
            logger.warning("dropping unreadable cache entry %s: %s", key, exc)
            return None

        self._bump("hits")
        return intent

    def put(self, key: str, intent: StructuredIntent, ttl: Optional[int] = None) -> bool:
        if intent.action in UNCACHEABLE_ACTIONS:
            return False
        try:
            self._backend.set(AI_PREFIX + key, intent.model_dump(mode="json"), ttl or self._ttl)
        except Exception as exc:
            logger.warning("response cache put failed: %s", exc)
            return False
        self._bump("writes")
        return True

    def _bump(self, counter: str) -> None:
        try:
            self._backend.incr(f"{STATS_PREFIX}ai:{counter}")
        except Exception as exc:
            logger.debug("cache stats counter failed: %s", exc)

    def stats(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for counter in ("hits", "misses", "writes"):
            try:
                out[counter] = int(self._backend.get(f"{STATS_PREFIX}ai:{counter}") or 0)
            except Exception as exc:
                logger.warning("cache stats read failed: %s", exc)
                out[counter] = 0
        return out
