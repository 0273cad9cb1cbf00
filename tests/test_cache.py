from app.models import ConversationTurn
from conftest import BrokenCache
from llm.schemas import ActionKind, StructuredIntent
from tools.cache import MemoryCache, ResponseCache


def _intent(action=ActionKind.STATUS_CHECK, order_id="ORD-2024-002"):
    return StructuredIntent(action=action, order_id=order_id, confidence=0.9, message="Checking that order now.")


def test_key_normalizes_message_text():
    assert ResponseCache.key("Show My Orders  ") == ResponseCache.key("show my orders")
    assert len(ResponseCache.key("show my orders")) == 32


def test_key_depends_on_context_and_metadata():
    history = [ConversationTurn(role="user", content="Cancel my order ORD-2024-001")]
    plain = ResponseCache.key("yes")

    assert ResponseCache.key("yes", history) != plain
    assert ResponseCache.key("yes", metadata={"user_id": "a"}) != ResponseCache.key("yes", metadata={"user_id": "b"})


def test_key_only_looks_at_last_three_turns_verbatim():
    turns = [ConversationTurn(role="user", content=f"msg {i}") for i in range(5)]
    changed_old = [ConversationTurn(role="user", content="different")] + turns[1:]

    # same length and same last three turns -> same key
    assert ResponseCache.key("hi", turns) == ResponseCache.key("hi", changed_old)


def test_put_then_get_returns_the_intent():
    cache = ResponseCache(MemoryCache())
    key = ResponseCache.key("what's the status of ORD-2024-002")

    assert cache.get(key) is None
    assert cache.put(key, _intent())
    assert cache.get(key) == _intent()
    assert cache.stats() == {"hits": 1, "misses": 1, "writes": 1}


def test_session_dependent_actions_are_not_cached():
    cache = ResponseCache(MemoryCache())

    for action in (ActionKind.CONFIRM_CANCELLATION, ActionKind.CANCEL_ABORT, ActionKind.ERROR):
        assert cache.put("k-" + action.value, _intent(action)) is False
        assert cache.get("k-" + action.value) is None


def test_broken_backend_degrades_to_miss():
    cache = ResponseCache(BrokenCache())

    assert cache.get("anything") is None
    assert cache.put("anything", _intent()) is False
    assert cache.stats() == {"hits": 0, "misses": 0, "writes": 0}


def test_unreadable_entry_is_a_miss():
    backend = MemoryCache()
    backend.set("ai:bad", {"action": "not-an-action"})

    assert ResponseCache(backend).get("bad") is None


def test_memory_cache_expires_entries(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr("tools.cache.time.time", lambda: now[0])
    cache = MemoryCache()

    cache.set("k", "v", ttl=10)
    assert cache.get("k") == "v"
    now[0] += 11
    assert cache.get("k") is None


def test_memory_cache_evicts_least_recently_used():
    cache = MemoryCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_memory_cache_incr_starts_new_window_after_expiry(monkeypatch):
    now = [0.0]
    monkeypatch.setattr("tools.cache.time.time", lambda: now[0])
    cache = MemoryCache()

    assert cache.incr("n", ttl=5) == 1
    assert cache.incr("n", ttl=5) == 2
    now[0] = 6.0
    assert cache.incr("n", ttl=5) == 1


def test_cached_responses_never_evict_counters():
    cache = MemoryCache(max_entries=2)
    assert cache.incr("rate:user123:1", ttl=60) == 1

    for i in range(5):
        cache.set(f"ai:{i}", {"n": i})

    assert len(cache) == 2
    assert cache.get("rate:user123:1") == 1
    assert cache.incr("rate:user123:1", ttl=60) == 2


def test_expired_counters_are_swept(monkeypatch):
    now = [0.0]
    monkeypatch.setattr("tools.cache.time.time", lambda: now[0])
    cache = MemoryCache()
    cache.incr("rate:a:0", ttl=5)

    now[0] = 10.0
    cache.incr("rate:a:1", ttl=5)

    assert "rate:a:0" not in cache._counters
