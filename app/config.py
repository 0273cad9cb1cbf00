import os
from dataclasses import dataclass
from functools import lru_cache

from google.cloud import firestore


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    llm_mode: str = "stub"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    ollama_model: str = "llama3.1:8b"
    llm_timeout_seconds: float = 10.0
    llm_temperature: float = 0.1
    llm_max_output_tokens: int = 2048

    store_backend: str = "memory"
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: int = 3600
    cache_max_entries: int = 1000

    max_conversation_history: int = 50
    api_key: str = ""
    user_rate_limit: int = 100
    user_rate_window_seconds: int = 3600
    max_cancellations_per_day: int = 5
    rate_limit_per_5_min: int = 50
    risk_block_threshold: int = 70
    seed_demo_orders: bool = True
    log_level: str = "INFO"


def load_settings() -> Settings:
    """
    Build settings from environment variables.
    Bad numeric values fail fast at startup.
    """
    return Settings(
        llm_mode=_env_str("LLM_MODE", "stub").lower(),
        gemini_api_key=_env_str("GEMINI_API_KEY", ""),
        gemini_model=_env_str("GEMINI_MODEL", "gemini-1.5-flash"),
        ollama_model=_env_str("OLLAMA_MODEL", "llama3.1:8b"),
        llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 10.0),
        llm_temperature=_env_float("LLM_TEMPERATURE", 0.1),
        llm_max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 2048),
        store_backend=_env_str("STORE_BACKEND", "memory").lower(),
        cache_backend=_env_str("CACHE_BACKEND", "memory").lower(),
        redis_url=_env_str("REDIS_URL", "redis://localhost:6379/0"),
        cache_ttl_seconds=_env_int("CACHE_TTL_SECONDS", 3600),
        cache_max_entries=_env_int("CACHE_MAX_ENTRIES", 1000),
        max_conversation_history=_env_int("MAX_CONVERSATION_HISTORY", 50),
        api_key=_env_str("API_KEY", ""),
        user_rate_limit=_env_int("USER_RATE_LIMIT", 100),
        user_rate_window_seconds=_env_int("USER_RATE_WINDOW_SECONDS", 3600),
        max_cancellations_per_day=_env_int("MAX_CANCELLATIONS_PER_DAY", 5),
        rate_limit_per_5_min=_env_int("RATE_LIMIT_PER_5_MIN", 50),
        risk_block_threshold=_env_int("RISK_BLOCK_THRESHOLD", 70),
        seed_demo_orders=_env_str("SEED_DEMO_ORDERS", "1") not in {"0", "false", "no"},
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_firestore_client():
    """
    Central Firestore client used by the Firestore-backed stores.
    Auth is provided via GOOGLE_APPLICATION_CREDENTIALS env var.
    """
    cred_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

    if not cred_path:
        raise RuntimeError(
            "GOOGLE_APPLICATION_CREDENTIALS is not set. "
            "Run: export GOOGLE_APPLICATION_CREDENTIALS=/path/to/service-account.json "
            "or set STORE_BACKEND=memory"
        )

    return firestore.Client()
