import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

from google.cloud import firestore

from app.config import get_firestore_client
from app.models import (
    AUDIT_RETENTION_DAYS,
    AuditAction,
    AuditRecord,
    AuditResult,
    AuditSeverity,
    parse_ts,
)

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "action_logs"
PRUNE_EVERY = 500


class AuditStore(Protocol):
    def append(self, record: AuditRecord) -> None: ...

    def find(self, filters: Dict[str, Any], since: datetime, limit: Optional[int] = None) -> List[AuditRecord]: ...


def _matches(record: Dict[str, Any], filters: Dict[str, Any], since: datetime) -> bool:
    for key, expected in filters.items():
        if record.get(key) != expected:
            return False
    ts = parse_ts(record.get("timestamp"))
    return ts is not None and ts >= since


class FirestoreAuditStore:
    """
    Append-only audit trail in Firestore collection: action_logs

    Every query is bounded by a timestamp range, so reads stay proportional
    to the window. Equality filters plus the range need composite indexes
    (field(s) ascending, timestamp descending), listed in DESIGN.md.
    Old documents are removed by a Firestore TTL policy on `expire_at`.
    """

    def __init__(self, client=None, collection: str = AUDIT_COLLECTION,
                 retention_days: int = AUDIT_RETENTION_DAYS) -> None:
        self._db = client or get_firestore_client()
        self._collection = collection
        self._retention = timedelta(days=retention_days)

    def append(self, record: AuditRecord) -> None:
        data = record.model_dump(mode="json")
        # TTL policies need a real timestamp field
        data["expire_at"] = (parse_ts(record.timestamp) or datetime.now(timezone.utc)) + self._retention
        self._db.collection(self._collection).add(data)

    def find(self, filters: Dict[str, Any], since: datetime, limit: Optional[int] = None) -> List[AuditRecord]:
        q = self._db.collection(self._collection)
        for key, value in filters.items():
            q = q.where(key, "==", value)
        q = q.where("timestamp", ">=", since.isoformat().replace("+00:00", "Z"))
        q = q.order_by("timestamp", direction=firestore.Query.DESCENDING)
        if limit:
            q = q.limit(limit)

        out: List[AuditRecord] = []
        for doc in q.stream():
            data = doc.to_dict() or {}
            data.pop("expire_at", None)
            if _matches(data, filters, since):
                out.append(AuditRecord.model_validate(data))
        out.sort(key=lambda r: r.timestamp, reverse=True)
        return out[:limit] if limit else out


class InMemoryAuditStore:
    """
    Process-local audit trail. Records older than the retention window are
    dropped every `prune_every` appends.
    """

    def __init__(self, retention_days: int = AUDIT_RETENTION_DAYS, prune_every: int = PRUNE_EVERY) -> None:
        self._records: List[Dict[str, Any]] = []
        self._lock = Lock()
        self._retention = timedelta(days=retention_days)
        self._prune_every = max(1, prune_every)
        self._appends = 0

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record.model_dump(mode="json"))
            self._appends += 1
            if self._appends % self._prune_every == 0:
                self._prune_locked(datetime.now(timezone.utc))

    def prune(self, now: Optional[datetime] = None) -> int:
        with self._lock:
            return self._prune_locked(now or datetime.now(timezone.utc))

    def _prune_locked(self, now: datetime) -> int:
        cutoff = now - self._retention
        before = len(self._records)
        self._records = [r for r in self._records if (parse_ts(r.get("timestamp")) or now) >= cutoff]
        dropped = before - len(self._records)
        if dropped:
            logger.debug("pruned %d audit records older than %s", dropped, cutoff.isoformat())
        return dropped

    def find(self, filters: Dict[str, Any], since: datetime, limit: Optional[int] = None) -> List[AuditRecord]:
        with self._lock:
            rows = [r for r in self._records if _matches(r, filters, since)]
        out = [AuditRecord.model_validate(r) for r in rows]
        out.sort(key=lambda r: r.timestamp, reverse=True)
        return out[:limit] if limit else out

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return [AuditRecord.model_validate(r) for r in self._records]


def build_audit_store(kind: str) -> AuditStore:
    if kind == "firestore":
        return FirestoreAuditStore()
    return InMemoryAuditStore()


def _filter_values(filters: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if hasattr(v, "value") else v) for k, v in filters.items() if v is not None}


class AuditLogger:
    """
    Front door to the audit trail.

    log_action never raises. count_recent_events degrades to 0 when the
    store is down, so abuse rules fail open while mutation rules stay closed.
    """

    def __init__(self, store: AuditStore) -> None:
        self._store = store

    def log_action(self, record: AuditRecord) -> None:
        try:
            self._store.append(record)
        except Exception as exc:
            logger.warning(
                "audit write failed (action=%s session=%s): %s",
                record.action.value, record.session_id, exc,
            )

    def log(
        self,
        *,
        user_id: str,
        session_id: str,
        action: AuditAction,
        result: AuditResult,
        severity: AuditSeverity = AuditSeverity.INFO,
        order_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        try:
            record = AuditRecord(
                user_id=user_id or "unknown",
                session_id=session_id or "unknown",
                action=action,
                result=result,
                severity=severity,
                order_id=order_id,
                details=details or {},
                error_message=error_message,
                ip_address=ip_address,
            )
        except ValueError as exc:
            logger.warning("audit record rejected: %s", exc)
            return
        self.log_action(record)

    def count_recent_events(self, filters: Dict[str, Any], window: timedelta) -> int:
        since = datetime.now(timezone.utc) - window
        try:
            return len(self._store.find(_filter_values(filters), since))
        except Exception as exc:
            logger.warning("audit count failed, assuming 0 recent events: %s", exc)
            return 0

    def find(self, filters: Dict[str, Any], window: timedelta, limit: Optional[int] = None) -> List[AuditRecord]:
        since = datetime.now(timezone.utc) - window
        try:
            return self._store.find(_filter_values(filters), since, limit)
        except Exception as exc:
            logger.warning("audit query failed: %s", exc)
            return []

    def find_by_user(self, user_id: str, hours: int = 24, limit: int = 100) -> List[AuditRecord]:
        return self.find({"user_id": user_id}, timedelta(hours=hours), limit)

    def find_by_session(self, session_id: str, hours: int = 24, limit: int = 100) -> List[AuditRecord]:
        return self.find({"session_id": session_id}, timedelta(hours=hours), limit)

    def find_by_order(self, order_id: str, hours: int = 24 * 90, limit: int = 100) -> List[AuditRecord]:
        return self.find({"order_id": order_id}, timedelta(hours=hours), limit)

    def security_events(self, hours: int = 24, limit: int = 100) -> List[AuditRecord]:
        return self.find({"action": AuditAction.SECURITY_VIOLATION}, timedelta(hours=hours), limit)

    def validation_stats(self, hours: int = 24) -> Dict[str, Any]:
        records = self.find({"action": AuditAction.VALIDATION_CHECK}, timedelta(hours=hours))
        total = len(records)
        if not total:
            return {
                "hours": hours,
                "total_validations": 0,
                "success_rate": 0.0,
                "average_risk_score": 0.0,
                "average_validation_time_ms": 0.0,
                "failures_by_action": {},
            }

        passed = sum(1 for r in records if r.result == AuditResult.SUCCESS)
        risk = [float(r.details.get("risk_score", 0)) for r in records]
        timing = [float(r.details.get("validation_time_ms", 0)) for r in records]

        failures: Dict[str, int] = {}
        for r in records:
            if r.result != AuditResult.SUCCESS:
                action = str(r.details.get("intent_action", "unknown"))
                failures[action] = failures.get(action, 0) + 1

        return {
            "hours": hours,
            "total_validations": total,
            "success_rate": round(passed / total, 4),
            "average_risk_score": round(sum(risk) / total, 2),
            "average_validation_time_ms": round(sum(timing) / total, 2),
            "failures_by_action": failures,
        }
