import logging
from dataclasses import dataclass
from typing import Optional

from app.config import Settings, get_settings
from app.handlers import ActionHandlers
from llm.client import build_text_generator
from llm.synthesizer import IntentSynthesizer
from policies.rules import RuleLimits
from policies.validator import ActionValidator
from tools.cache import CacheBackend, ResponseCache, build_cache_backend
from tools.logs import AuditLogger, build_audit_store
from tools.orders import OrderStore, build_order_store
from tools.sessions import ConversationContextManager, build_session_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one pipeline run needs. Built once at startup and shared."""
    settings: Settings
    orders: OrderStore
    audit: AuditLogger
    cache_backend: CacheBackend
    cache: ResponseCache
    sessions: ConversationContextManager
    synthesizer: IntentSynthesizer
    validator: ActionValidator
    handlers: ActionHandlers

    def close(self) -> None:
        self.synthesizer.close()


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()

    orders = build_order_store(settings.store_backend, seed_demo=settings.seed_demo_orders)
    audit = AuditLogger(build_audit_store(settings.store_backend))
    cache_backend = build_cache_backend(settings.cache_backend, settings.redis_url, settings.cache_max_entries)
    sessions = ConversationContextManager(
        build_session_store(settings.store_backend),
        cache_backend,
        max_history=settings.max_conversation_history,
    )
    synthesizer = IntentSynthesizer(
        build_text_generator(settings),
        timeout_seconds=settings.llm_timeout_seconds,
        temperature=settings.llm_temperature,
        max_output_tokens=settings.llm_max_output_tokens,
    )
    validator = ActionValidator(
        orders,
        audit,
        RuleLimits(
            max_cancellations_per_day=settings.max_cancellations_per_day,
            rate_limit_per_5_min=settings.rate_limit_per_5_min,
        ),
    )

    logger.info(
        "services ready (llm=%s store=%s cache=%s)",
        settings.llm_mode, settings.store_backend, settings.cache_backend,
    )
    return Services(
        settings=settings,
        orders=orders,
        audit=audit,
        cache_backend=cache_backend,
        cache=ResponseCache(cache_backend, settings.cache_ttl_seconds),
        sessions=sessions,
        synthesizer=synthesizer,
        validator=validator,
        handlers=ActionHandlers(orders, sessions, audit),
    )
