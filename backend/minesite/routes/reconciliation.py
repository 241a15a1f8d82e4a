"""Monthly reconciliation routes."""

# purpose: expose reconciliation upsert, recalculation, locking and read-only month views
# status: production
# depends_on: minesite.services.reconciliation

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..auth import Actor
from ..database import get_db
from ..rbac import require_validator, resolve_site
from ..schemas.reconciliation import MONTH_PATTERN
from ..services.errors import ReportingError
from ..services.reconciliation import ReconciliationAllocator
from .errors import rejection

router = APIRouter(prefix="/api/site-admin/reconciliation", tags=["reconciliation"])


def _result(record: models.Reconciliation) -> schemas.ReconcileResult:
    return schemas.ReconcileResult(
        reconciliation_id=record.id,
        actual_total=record.actual_total_snapshot or 0.0,
        delta=record.delta_snapshot or 0.0,
        allocations=[schemas.DailyAllocationOut.model_validate(day) for day in record.days],
    )


@router.get("/metrics", response_model=list[schemas.MetricDefinition])
def list_metrics(actor: Actor = Depends(require_validator)):
    return [
        schemas.MetricDefinition(key=metric.key, label=metric.label, unit=metric.unit)
        for metric in ReconciliationAllocator.metrics()
    ]


@router.get("/status", response_model=schemas.MonthStatus)
def month_status(
    site: str,
    month_ym: str = Query(..., pattern=MONTH_PATTERN),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    row = resolve_site(db, actor, site)
    state, count = ReconciliationAllocator(db).month_status(row.id, month_ym)
    return schemas.MonthStatus(site=row.name, month_ym=month_ym, state=state, metrics=count)


@router.get("/month-summary", response_model=schemas.MonthSummary)
def month_summary(
    site: str,
    metric_key: str,
    month_ym: str = Query(..., pattern=MONTH_PATTERN),
    basis: schemas.Basis | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    """Report actual, reconciled, delta and allocations without writing anything."""

    row = resolve_site(db, actor, site)
    try:
        actual, record, delta = ReconciliationAllocator(db).month_summary(
            row.id, month_ym, metric_key, basis
        )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    return schemas.MonthSummary(
        site=row.name,
        month_ym=month_ym,
        metric_key=metric_key,
        basis=basis or (record.basis if record is not None else "validated_only"),
        actual_total=actual,
        reconciliation=schemas.ReconciliationOut.model_validate(record) if record is not None else None,
        delta=delta,
        allocations=[schemas.DailyAllocationOut.model_validate(day) for day in record.days]
        if record is not None
        else [],
    )


@router.post("/upsert", response_model=schemas.ReconcileResult)
def upsert_reconciliation(
    payload: schemas.ReconciliationUpsert,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        record = ReconciliationAllocator(db).upsert(
            site.id,
            payload.month_ym,
            payload.metric_key,
            reconciled_total=payload.reconciled_total,
            basis=payload.basis,
            method=payload.method,
            notes=payload.notes,
            actor=actor.email,
        )
        result = _result(record)
        audit.log_action(
            db,
            actor.email,
            "reconciliation.upsert",
            "reconciliation",
            record.id,
            {
                "month_ym": payload.month_ym,
                "metric_key": payload.metric_key,
                "reconciled_total": payload.reconciled_total,
                "delta": result.delta,
            },
        )
    except (ReportingError, ValueError) as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/recalculate", response_model=schemas.ReconcileResult)
def recalculate_reconciliation(
    payload: schemas.ReconciliationKey,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        record = ReconciliationAllocator(db).recalculate(site.id, payload.month_ym, payload.metric_key)
        result = _result(record)
        audit.log_action(
            db,
            actor.email,
            "reconciliation.recalculate",
            "reconciliation",
            record.id,
            {"delta": result.delta},
        )
    except (ReportingError, ValueError) as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/custom-allocations", response_model=schemas.ReconcileResult)
def set_custom_allocations(
    payload: schemas.CustomAllocationsIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        record = ReconciliationAllocator(db).set_custom_allocations(
            site.id,
            payload.month_ym,
            payload.metric_key,
            {item.date: item.allocated_value for item in payload.allocations},
        )
        result = _result(record)
        audit.log_action(
            db,
            actor.email,
            "reconciliation.upsert",
            "reconciliation",
            record.id,
            {"method": "custom", "days": len(payload.allocations)},
        )
    except (ReportingError, ValueError) as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/lock", response_model=schemas.ReconciliationOut)
def lock_reconciliation(
    payload: schemas.ReconciliationKey,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        record = ReconciliationAllocator(db).lock(site.id, payload.month_ym, payload.metric_key)
        audit.log_action(db, actor.email, "reconciliation.lock", "reconciliation", record.id)
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return schemas.ReconciliationOut.model_validate(record)


@router.post("/unlock", response_model=schemas.ReconciliationOut)
def unlock_reconciliation(
    payload: schemas.ReconciliationKey,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        record = ReconciliationAllocator(db).unlock(site.id, payload.month_ym, payload.metric_key)
        audit.log_action(db, actor.email, "reconciliation.unlock", "reconciliation", record.id)
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return schemas.ReconciliationOut.model_validate(record)
