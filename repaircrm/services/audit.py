"""
Append-only audit trail for assignments, check-ins and users.

Each entry carries a SHA-256 over its canonical JSON and the JWT secret, so an
edited row no longer verifies.
"""
import hashlib
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


HASHED_FIELDS = ("entity_type", "entity_id", "action", "actor_id", "actor_role", "source", "timestamp_utc", "changes", "context")


def _canonical(entry: Dict[str, Any]) -> str:
    data = {
        "entity_type": entry["entity_type"],
        "entity_id": str(entry["entity_id"]),
        "action": entry["action"],
        "actor_id": None if entry.get("actor_id") is None else str(entry["actor_id"]),
        "actor_role": entry.get("actor_role"),
        "source": entry.get("source"),
        "timestamp_utc": entry["timestamp_utc"].replace(tzinfo=None).isoformat(),
        "changes": entry.get("changes"),
        "context": entry.get("context"),
    }
    return json.dumps({k: data[k] for k in HASHED_FIELDS if data[k] is not None}, sort_keys=True, default=str)


def compute_integrity_hash(entry: Dict[str, Any], secret: str) -> str:
    return hashlib.sha256(f"{_canonical(entry)}:{secret}".encode()).hexdigest()


def _entry_of(log: AuditLog) -> Dict[str, Any]:
    return {
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "action": log.action,
        "actor_id": log.actor_id,
        "actor_role": log.actor_role,
        "source": log.source,
        "timestamp_utc": log.timestamp_utc,
        "changes": log.changes_json,
        "context": log.context,
    }


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an entry to the caller's transaction; it is written together with the
    change it describes when the caller commits.

    Args:
        entity_type: work_assignment|work_checkin|user
        action: CREATE|UPDATE|DELETE|CHECK_IN|CHECK_OUT
        actor_role: admin|technician|service_engineer|system
        source: api|system (defaults to system)
        changes_json: before/after diff
        integrity_secret: defaults to JWT_SECRET; no hash when empty
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "system",
        changes_json=changes_json,
        timestamp_utc=datetime.utcnow(),
        context=context,
    )
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret
    if secret:
        log.integrity_hash = compute_integrity_hash(_entry_of(log), secret)
    db.add(log)
    return log


def verify_audit_log(log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret
    if not log.integrity_hash or not secret:
        return False
    return compute_integrity_hash(_entry_of(log), secret) == log.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.desc(), AuditLog.id.desc()).limit(limit).offset(offset).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """{field: {"before": old, "after": new}} for every field that changed."""
    return {
        key: {"before": before.get(key), "after": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }
