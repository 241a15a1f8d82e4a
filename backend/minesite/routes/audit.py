from datetime import datetime
from sqlalchemy.orm import Session
from fastapi import APIRouter, Depends
from ..database import get_db
from ..auth import Actor
from ..rbac import require_validator
from .. import models, schemas, audit

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/", response_model=list[schemas.AuditLogOut])
async def list_logs(
    actor_email: str | None = None,
    action: str | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    query = db.query(models.AuditLog)
    if actor_email:
        query = query.filter(models.AuditLog.actor == actor_email)
    if action:
        query = query.filter(models.AuditLog.action == action)
    return query.order_by(models.AuditLog.created_at.desc()).limit(min(max(limit, 1), 1000)).all()


@router.get("/report", response_model=list[schemas.AuditReportItem])
async def audit_report(
    start: datetime,
    end: datetime,
    actor_email: str | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    data = audit.generate_report(db, start, end, actor_email)
    return data
