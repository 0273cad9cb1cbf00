# tools/sessions.py
import logging
import re
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

from app.config import get_firestore_client
from app.models import ConversationContext, ConversationTurn, now_iso
from policies.sanitizer import extract_order_ids
from tools.cache import CONV_PREFIX, CacheBackend

logger = logging.getLogger(__name__)

SESSIONS_COLLECTION = "sessions"
CONTEXT_CACHE_TTL = 1800

SUMMARY_TOPICS = {
    "cancellation": re.compile(r"\bcancel", re.IGNORECASE),
    "tracking": re.compile(r"\b(track|tracking|shipment|where is)\b", re.IGNORECASE),
    "refund": re.compile(r"\brefund", re.IGNORECASE),
    "return": re.compile(r"\breturn", re.IGNORECASE),
}


def context_key(user_id: str, session_id: str) -> str:
    # sessions are namespaced by user so a guessed session id exposes nothing
    return f"{user_id}:{session_id}"


class SessionStore(Protocol):
    def load(self, key: str) -> Optional[Dict[str, Any]]: ...

    def save(self, key: str, data: Dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...


class FirestoreSessionStore:
    """Session docs in Firestore collection: sessions"""

    def __init__(self, client=None, collection: str = SESSIONS_COLLECTION) -> None:
        self._db = client or get_firestore_client()
        self._collection = collection

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self._db.collection(self._collection).document(key).get()
        return (doc.to_dict() or {}) if doc.exists else None

    def save(self, key: str, data: Dict[str, Any]) -> None:
        self._db.collection(self._collection).document(key).set(data)

    def delete(self, key: str) -> None:
        self._db.collection(self._collection).document(key).delete()


class InMemorySessionStore:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._data.get(key)
            return dict(data) if data is not None else None

    def save(self, key: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = dict(data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


def build_session_store(kind: str) -> SessionStore:
    if kind == "firestore":
        return FirestoreSessionStore()
    return InMemorySessionStore()


class ConversationContextManager:
    """
    Bounded per-(user, session) conversation history plus the little bit of
    state a two-step cancellation needs.

    Reads go cache -> store -> fresh context. Failures degrade to a fresh
    context; a broken session store never fails the request.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[CacheBackend] = None,
        max_history: int = 50,
        cache_ttl: int = CONTEXT_CACHE_TTL,
    ) -> None:
        self._store = store
        self._cache = cache
        self._max_history = max_history
        self._cache_ttl = cache_ttl

    # -----------------------------
    # read / write
    # -----------------------------
    def get_context(self, session_id: str, user_id: str) -> ConversationContext:
        key = context_key(user_id, session_id)

        if self._cache is not None:
            try:
                cached = self._cache.get(CONV_PREFIX + key)
                if cached:
                    return ConversationContext.model_validate(cached)
            except Exception as exc:
                logger.warning("context cache read failed for %s: %s", key, exc)

        try:
            data = self._store.load(key)
        except Exception as exc:
            logger.warning("session store read failed for %s: %s", key, exc)
            data = None

        if data:
            ctx = ConversationContext.model_validate(data)
        else:
            ctx = ConversationContext(user_id=user_id, session_id=session_id)
        self._write_cache(key, ctx)
        return ctx

    def save_context(self, ctx: ConversationContext) -> None:
        key = context_key(ctx.user_id, ctx.session_id)
        ctx = ctx.model_copy(update={"history": ctx.history[-self._max_history:], "last_seen": now_iso()})
        try:
            self._store.save(key, ctx.model_dump(mode="json"))
        except Exception as exc:
            logger.warning("session store write failed for %s: %s", key, exc)
        self._write_cache(key, ctx)

    def _write_cache(self, key: str, ctx: ConversationContext) -> None:
        if self._cache is None:
            return
        try:
            self._cache.set(CONV_PREFIX + key, ctx.model_dump(mode="json"), self._cache_ttl)
        except Exception as exc:
            logger.warning("context cache write failed for %s: %s", key, exc)

    def add_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversationContext:
        ctx = self.get_context(session_id, user_id)
        history = ctx.history + [ConversationTurn(role=role, content=content, metadata=metadata or {})]
        ctx = ctx.model_copy(update={"history": history[-self._max_history:]})
        self.save_context(ctx)
        return ctx

    def update(self, session_id: str, user_id: str, **fields: Any) -> ConversationContext:
        ctx = self.get_context(session_id, user_id)
        ctx = ctx.model_copy(update=fields)
        self.save_context(ctx)
        return ctx

    def set_pending_cancellation(self, session_id: str, user_id: str, order_id: Optional[str]) -> None:
        self.update(session_id, user_id, pending_cancellation=order_id)

    def clear(self, session_id: str, user_id: str) -> None:
        key = context_key(user_id, session_id)
        try:
            self._store.delete(key)
        except Exception as exc:
            logger.warning("session store delete failed for %s: %s", key, exc)
        if self._cache is not None:
            try:
                self._cache.delete(CONV_PREFIX + key)
            except Exception as exc:
                logger.warning("context cache delete failed for %s: %s", key, exc)

    # -----------------------------
    # views
    # -----------------------------
    def history(self, session_id: str, user_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        turns = self.get_context(session_id, user_id).history
        return turns[-limit:] if limit else turns

    def summary(self, session_id: str, user_id: str, limit: int = 10) -> Dict[str, Any]:
        ctx = self.get_context(session_id, user_id)
        recent = ctx.history[-limit:]

        topics: List[str] = []
        order_ids: List[str] = []
        intents: List[str] = []
        for turn in recent:
            if turn.role == "user":
                for topic, pattern in SUMMARY_TOPICS.items():
                    if pattern.search(turn.content) and topic not in topics:
                        topics.append(topic)
                for oid in extract_order_ids(turn.content).order_ids:
                    if oid not in order_ids:
                        order_ids.append(oid)
            action = turn.metadata.get("action")
            if turn.role == "assistant" and action and action not in intents:
                intents.append(action)

        return {
            "session_id": session_id,
            "message_count": len(ctx.history),
            "user_messages": sum(1 for t in ctx.history if t.role == "user"),
            "assistant_messages": sum(1 for t in ctx.history if t.role == "assistant"),
            "topics": topics,
            "order_ids": order_ids,
            "intents": intents,
            "pending_cancellation": ctx.pending_cancellation,
            "last_order_inquiry": ctx.last_order_inquiry,
            "created_at": ctx.created_at,
            "last_seen": ctx.last_seen,
        }
