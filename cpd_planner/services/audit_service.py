from __future__ import annotations

from sqlalchemy.orm import Session

from cpd_planner.models import AuditLog


def log_audit(
    db: Session,
    *,
    organization_id: int | None,
    action: str,
    actor_name: str | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            organization_id=organization_id,
            actor_name=actor_name,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )
