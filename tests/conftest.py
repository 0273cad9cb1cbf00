import json
import time
from typing import Any, Callable, List, Optional

import pytest

from app.config import Settings
from app.graph import ChatPipeline
from app.handlers import ActionHandlers
from app.models import RequestContext
from app.services import Services
from llm.client import StubTextGenerator
from llm.synthesizer import IntentSynthesizer
from policies.rules import RuleLimits
from policies.validator import ActionValidator
from tools.cache import MemoryCache, ResponseCache
from tools.logs import AuditLogger, InMemoryAuditStore
from tools.orders import InMemoryOrderStore, OrderStoreUnavailable, demo_orders
from tools.sessions import ConversationContextManager, InMemorySessionStore

USER = "user123"
OTHER_USER = "user456"


def intent_json(
    action: str,
    order_id: Optional[str] = None,
    confidence: Any = 0.9,
    message: str = "Working on your request now.",
    product_name: Optional[str] = None,
    requires_confirmation: bool = False,
) -> str:
    return json.dumps(
        {
            "action": action,
            "orderId": order_id,
            "productName": product_name,
            "confidence": confidence,
            "message": message,
            "requiresConfirmation": requires_confirmation,
        }
    )


class ScriptedGenerator:
    """Replays canned model replies (the last one repeats). Exceptions are raised."""

    def __init__(self, *replies: Any, delay: float = 0.0) -> None:
        self.replies = list(replies)
        self.prompts: List[str] = []
        self.delay = delay

    def generate(self, prompt: str, *, temperature: float = 0.1, max_output_tokens: int = 2048) -> str:
        self.prompts.append(prompt)
        if self.delay:
            time.sleep(self.delay)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class DownOrderStore:
    def find_by_order_id(self, order_id):
        raise OrderStoreUnavailable("orders backend down")

    def find_by_owner(self, owner_id):
        raise OrderStoreUnavailable("orders backend down")

    def update_status(self, order_id, new_status, reason=None, *, owner_id=None, allowed_from=()):
        raise OrderStoreUnavailable("orders backend down")


class BrokenAuditStore:
    def append(self, record):
        raise RuntimeError("audit store down")

    def find(self, filters, since, limit=None):
        raise RuntimeError("audit store down")


class BrokenCache:
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl=None):
        raise ConnectionError("cache down")

    def incr(self, key, ttl=None):
        raise ConnectionError("cache down")

    def delete(self, key):
        raise ConnectionError("cache down")


@pytest.fixture
def orders():
    return InMemoryOrderStore(demo_orders(USER, OTHER_USER))


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def audit(audit_store):
    return AuditLogger(audit_store)


@pytest.fixture
def cache_backend():
    return MemoryCache()


@pytest.fixture
def sessions(cache_backend):
    return ConversationContextManager(InMemorySessionStore(), cache_backend)


@pytest.fixture
def ctx():
    return RequestContext(user_id=USER, session_id="s1", ip_address="127.0.0.1")


@pytest.fixture
def validator(orders, audit):
    return ActionValidator(orders, audit)


@pytest.fixture
def make_services(orders, audit_store, cache_backend):
    built: List[Services] = []

    def _make(
        generator=None,
        *,
        order_store=None,
        audit_backend=None,
        cache=None,
        settings: Optional[Settings] = None,
        timeout: float = 2.0,
    ) -> Services:
        settings = settings or Settings()
        order_store = order_store or orders
        cache = cache or cache_backend
        logger_ = AuditLogger(audit_backend or audit_store)
        sessions_ = ConversationContextManager(InMemorySessionStore(), cache)
        services = Services(
            settings=settings,
            orders=order_store,
            audit=logger_,
            cache_backend=cache,
            cache=ResponseCache(cache, settings.cache_ttl_seconds),
            sessions=sessions_,
            synthesizer=IntentSynthesizer(generator or StubTextGenerator(), timeout_seconds=timeout),
            validator=ActionValidator(
                order_store,
                logger_,
                RuleLimits(
                    max_cancellations_per_day=settings.max_cancellations_per_day,
                    rate_limit_per_5_min=settings.rate_limit_per_5_min,
                ),
            ),
            handlers=ActionHandlers(order_store, sessions_, logger_),
        )
        built.append(services)
        return services

    yield _make

    for services in built:
        services.close()


@pytest.fixture
def make_pipeline(make_services) -> Callable[..., ChatPipeline]:
    def _make(generator=None, **kwargs) -> ChatPipeline:
        return ChatPipeline(make_services(generator, **kwargs))

    return _make
