from sqlalchemy.orm import Session

from territory.context import get_correlation_id
from territory.models.audit import AuditLog


def write_audit_log(
    db: Session,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict | None = None,
    correlation_id: str | None = None,
) -> AuditLog:
    event = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        event_metadata=metadata or {},
        correlation_id=correlation_id or get_correlation_id(),
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event
