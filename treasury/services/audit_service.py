from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from treasury.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    request_id: int | None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            request_id=request_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def list_audit_entries(db: Session, *, request_id: int, limit: int = 100) -> list[AuditLog]:
    return db.execute(
        select(AuditLog)
        .where(AuditLog.request_id == request_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .limit(limit)
    ).scalars().all()
