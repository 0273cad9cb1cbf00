import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from app.config import get_settings

logger = logging.getLogger(__name__)

DEV_CALLER = "dev"


@dataclass(frozen=True)
class Caller:
    """Who is calling the API. key_id never holds the key itself."""

    key_id: str
    ip: str


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _key_id(key: str) -> str:
    # enough to tell keys apart in logs
    return f"key-{key[-4:]}" if len(key) > 4 else "key"


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Caller:
    """
    Require X-API-Key on protected endpoints when API_KEY is configured.
    With no API_KEY set every caller is let through as the dev caller.
    """
    expected = get_settings().api_key
    ip = client_ip(request)
    if not expected:
        return Caller(key_id=DEV_CALLER, ip=ip)

    presented = (x_api_key or "").strip()
    if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("rejected request with %s API key from %s", "bad" if presented else "no", ip)
        raise HTTPException(
            status_code=401,
            detail={"error": "unauthorized", "message": "Missing or invalid X-API-Key"},
        )

    return Caller(key_id=_key_id(presented), ip=ip)
