# app/main.py
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.graph import ChatPipeline, build_graph
from app.models import (
    MAX_MESSAGE_CHARS,
    CancelOrderRequest,
    ChatRequest,
    ChatResponse,
    RequestContext,
    ResponseMetadata,
)
from app.security import Caller, require_api_key
from app.services import build_services
from llm.schemas import FALLBACK_MESSAGE, ActionKind, StructuredIntent, normalize_order_id
from policies.validator import ValidationResult
from tools.rate_limit import check_rate_limit

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="OrderDesk Bot")


@lru_cache(maxsize=1)
def get_pipeline() -> ChatPipeline:
    return build_graph(build_services(get_settings()))


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "invalid_request", "message": message})


@app.post("/chat", response_model=ChatResponse)
def chat(
    req: ChatRequest,
    request: Request,
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """
    Protected endpoint:
    - Requires X-API-Key (unless API_KEY is not set -> dev mode)
    - Rejects missing fields and messages over 1000 chars (400)
    - Rate limited per user (429)
    """
    missing = [name for name in ("message", "session_id", "user_id") if not (getattr(req, name) or "").strip()]
    if missing:
        raise _bad_request(f"Missing required fields: {', '.join(missing)}")
    if len(req.message) > MAX_MESSAGE_CHARS:
        raise _bad_request(f"Message too long. Max is {MAX_MESSAGE_CHARS} chars.")

    settings = pipeline.services.settings
    rl = check_rate_limit(
        pipeline.services.cache_backend,
        req.user_id,
        limit=settings.user_rate_limit,
        window_seconds=settings.user_rate_window_seconds,
    )
    if not rl["allowed"]:
        logger.info("rate limited user=%s count=%s limit=%s", req.user_id, rl["count"], rl["limit"])
        raise HTTPException(
            status_code=429,
            detail={
                "error": "rate_limited",
                "message": "Too many requests. Please wait and try again.",
                "resetAt": rl["reset_at"],
            },
        )

    try:
        return pipeline.run(
            req.message,
            user_id=req.user_id,
            session_id=req.session_id,
            ip_address=caller.ip,
            user_agent=request.headers.get("user-agent"),
            rate_limit_remaining=rl["remaining"],
        )
    except Exception:
        logger.exception("chat pipeline failed for session %s", req.session_id)
        envelope = ChatResponse(
            action=ActionKind.ERROR.value,
            confidence=0.0,
            message=FALLBACK_MESSAGE,
            requires_confirmation=False,
            metadata=ResponseMetadata(
                validated=False,
                validation_reasons=["Internal error"],
                session_id=req.session_id,
                rate_limit_remaining=rl["remaining"],
            ),
        )
        return JSONResponse(status_code=500, content=envelope.model_dump(mode="json", by_alias=True))


@app.get("/health")
def health():
    settings = get_settings()
    return {
        "status": "ok",
        "llm_mode": settings.llm_mode,
        "store_backend": settings.store_backend,
        "cache_backend": settings.cache_backend,
    }


@app.get("/history/{session_id}")
def history(
    session_id: str,
    user_id: str = Query(...),
    limit: Optional[int] = Query(default=None, ge=1),
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    turns = pipeline.services.sessions.history(session_id, user_id, limit)
    return {
        "sessionId": session_id,
        "userId": user_id,
        "history": [t.model_dump(mode="json") for t in turns],
    }


@app.get("/summary/{session_id}")
def summary(
    session_id: str,
    user_id: str = Query(...),
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    return pipeline.services.sessions.summary(session_id, user_id)


@app.delete("/context/{session_id}")
def clear_context(
    session_id: str,
    user_id: str = Query(...),
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    pipeline.services.sessions.clear(session_id, user_id)
    return {"cleared": True, "sessionId": session_id}


def _cancel_failure_status(result: ValidationResult) -> int:
    failed = {c.name: c for c in result.checks if not c.passed}
    ownership = failed.get("orderBelongsToUser")
    if ownership is not None and ownership.details.get("owner_mismatch"):
        return 403
    exists = failed.get("orderExists")
    if exists is not None:
        return 503 if exists.details.get("store_error") else 404
    return 409


_OUTCOME_STATUS = {"cancelled": 200, "not_found": 404, "not_cancellable": 409, "unavailable": 503}


@app.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    body: CancelOrderRequest,
    request: Request,
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    """
    Cancellation without the chat flow. Same validator, same conditional write.
    """
    services = pipeline.services
    oid = normalize_order_id(order_id)
    if not oid or not body.user_id.strip():
        raise _bad_request("order id and userId are required")

    ctx = RequestContext(
        user_id=body.user_id,
        session_id=body.session_id,
        ip_address=caller.ip,
        user_agent=request.headers.get("user-agent"),
    )
    intent = StructuredIntent(
        action=ActionKind.CONFIRM_CANCELLATION,
        order_id=oid,
        confidence=1.0,
        message="Direct cancellation request",
        requires_confirmation=False,
    )

    result = services.validator.validate(intent, ctx)
    if not result.is_valid:
        raise HTTPException(
            status_code=_cancel_failure_status(result),
            detail={
                "error": "validation_failed",
                "message": result.first_reason,
                "validationReasons": result.reasons,
                "riskScore": result.risk_score,
            },
        )

    outcome = services.handlers.cancel(oid, ctx, body.reason)
    status = _OUTCOME_STATUS.get(outcome.code or "", 500)
    payload: Dict[str, Any] = {
        "success": outcome.mutated,
        "orderId": oid,
        "message": outcome.message,
        "riskScore": result.risk_score,
    }
    if status != 200:
        raise HTTPException(status_code=status, detail={"error": outcome.code, **payload})
    return payload


@app.get("/stats/validation")
def validation_stats(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    audit = pipeline.services.audit
    stats = audit.validation_stats(hours)
    stats["security_events"] = len(audit.security_events(hours))
    return stats


@app.get("/stats/cache")
def cache_stats(
    caller: Caller = Depends(require_api_key),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    return pipeline.services.cache.stats()
