import logging
import time
from typing import Any, Dict

from tools.cache import RATE_PREFIX, CacheBackend

logger = logging.getLogger(__name__)


def _window_bucket(window_seconds: int, now: float) -> int:
    # fixed window: every caller in the same window shares one counter
    return int(now // window_seconds)


def check_rate_limit(
    cache: CacheBackend,
    identifier: str,
    limit: int = 100,
    window_seconds: int = 3600,
) -> Dict[str, Any]:
    """
    Rate limit: `limit` requests per `window_seconds` per identifier (user id).
    Counter key: rate:{identifier}:{bucket}, incremented atomically by the cache.

    A broken cache allows the request (the limit is an abuse guard, not a
    correctness check).
    """
    now = time.time()
    bucket = _window_bucket(window_seconds, now)
    key = f"{RATE_PREFIX}{identifier}:{bucket}"

    try:
        count = cache.incr(key, ttl=window_seconds)
    except Exception as exc:
        logger.warning("rate limit counter unavailable, allowing request: %s", exc)
        return {
            "allowed": True,
            "count": 0,
            "limit": limit,
            "remaining": limit,
            "bucket": bucket,
            "key": key,
            "reset_at": int((bucket + 1) * window_seconds),
        }

    return {
        "allowed": count <= limit,
        "count": count,
        "limit": limit,
        "remaining": max(0, limit - count),
        "bucket": bucket,
        "key": key,
        "reset_at": int((bucket + 1) * window_seconds),
    }
