import json
import logging
import uuid
from sqlalchemy.orm import Session
from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_audit(db: Session, actor: str, action: str, entity_type: str, entity_id: str, details: dict | None = None):
    """Add an audit row to the current session; the caller's commit persists it."""
    db.add(AuditLog(
        id=str(uuid.uuid4()),
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
    ))


def alert_reconciliation(db: Session, action: str, entity_type: str, entity_id: str, details: dict) -> None:
    """Record a gap an operator has to resolve by hand.

    Always logged with the full payload first, so the case survives even when the
    database write that follows fails.
    """
    logger.error("RECONCILIATION %s %s=%s %s", action, entity_type, entity_id,
                 json.dumps(details, ensure_ascii=False, default=str))
    try:
        log_audit(db, "system", f"reconciliation.{action}", entity_type, entity_id, details)
        db.commit()
    except Exception:
        logger.exception("could not persist reconciliation alert %s for %s=%s", action, entity_type, entity_id)
        db.rollback()
