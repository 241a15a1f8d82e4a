"""Shift capture and validation snapshot routes."""

# purpose: expose operator finalize plus administrator edit/validate/unvalidate of shift snapshots
# status: production
# depends_on: minesite.services.validation

from __future__ import annotations

from datetime import date as date_type

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import audit, models, schemas
from ..auth import Actor, get_current_actor
from ..database import get_db
from ..rbac import require_validator, resolve_site
from ..services.errors import ReportingError
from ..services.validation import ShiftRef, ShiftSnapshotStore
from .errors import rejection

router = APIRouter(prefix="/api/site-admin", tags=["validation"])


def _ref(site: models.Site, key: schemas.ShiftKey, operator: str | None = None) -> ShiftRef:
    return ShiftRef(
        site_id=site.id,
        date=key.date,
        dn=key.dn,
        operator=key.operator if operator is None else operator,
    ).normalized()


def _mutation_result(
    shift: models.ValidatedShift,
    activity: models.ValidatedActivity | None = None,
) -> schemas.ShiftMutationResult:
    return schemas.ShiftMutationResult(
        shift_id=shift.id,
        activity_id=activity.id if activity is not None else None,
        validated=shift.validated,
        totals=shift.totals or {},
    )


@router.post("/shifts/finalize", response_model=schemas.ShiftMutationResult)
def finalize_shift(
    payload: schemas.ShiftFinalize,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Operator submission: replaces the shift's activities with the finalized set."""

    site = resolve_site(db, actor, payload.site)
    operator = payload.operator.strip() or actor.email
    if operator != actor.email and actor.role == "operator":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="operators can only finalize their own shifts",
        )
    ref = _ref(site, payload, operator)
    try:
        shift = ShiftSnapshotStore(db).finalize_shift(
            ref,
            payload.activities,
            operator_name=payload.operator_name,
        )
        result = _mutation_result(shift)
        audit.log_action(
            db,
            actor.email,
            "shift.finalize",
            "validated_shift",
            shift.id,
            {"activities": len(payload.activities)},
        )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/validated/create-shift", response_model=schemas.ShiftMutationResult)
def create_shift(
    payload: schemas.ShiftCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        shift = ShiftSnapshotStore(db).create_shift(
            _ref(site, payload),
            operator_name=payload.operator_name,
        )
        result = _mutation_result(shift)
        audit.log_action(db, actor.email, "shift.create", "validated_shift", shift.id)
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/validated/add-activity", response_model=schemas.ShiftMutationResult)
def add_activity(
    payload: schemas.ActivityCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        shift, activity = ShiftSnapshotStore(db).add_activity(_ref(site, payload), payload.payload)
        result = _mutation_result(shift, activity)
        audit.log_action(
            db,
            actor.email,
            "shift.add_activity",
            "validated_activity",
            activity.id,
            {"shift_id": str(shift.id)},
        )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/validated/delete-activity", response_model=schemas.ShiftMutationResult)
def delete_activity(
    payload: schemas.ActivityDelete,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    try:
        shift = ShiftSnapshotStore(db).delete_activity(payload.id, site_id=site.id)
        result = _mutation_result(shift)
        audit.log_action(
            db,
            actor.email,
            "shift.delete_activity",
            "validated_activity",
            payload.id,
            {"shift_id": str(shift.id)},
        )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return result


@router.post("/validated/delete-shift", response_model=schemas.DayActionResult)
def delete_shift(
    payload: schemas.ShiftDelete,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    ref = _ref(site, payload)
    try:
        removed = ShiftSnapshotStore(db).delete_shift(ref)
        audit.log_action(
            db,
            actor.email,
            "shift.delete",
            "validated_shift",
            None,
            {"date": ref.date.isoformat(), "dn": ref.dn, "operator": ref.operator, "activities": removed},
        )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return schemas.DayActionResult(site=site.name, date=ref.date, shifts=1)


@router.post("/update-validated", response_model=schemas.DayActionResult)
def update_validated(
    payload: schemas.ActivityEditBatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    """Rewrite activity payloads of one day; every shift of the day reverts to unvalidated."""

    site = resolve_site(db, actor, payload.site)
    try:
        shifts = ShiftSnapshotStore(db).edit_activities(
            site.id,
            payload.date,
            [(edit.id, edit.payload) for edit in payload.edits],
        )
        audit.log_action(
            db,
            actor.email,
            "shift.edit_activities",
            "validated_day",
            None,
            {"date": payload.date.isoformat(), "edits": len(payload.edits)},
        )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    db.commit()
    return schemas.DayActionResult(site=site.name, date=payload.date, shifts=len(shifts))


@router.post("/validate", response_model=schemas.DayActionResult)
def validate_day(
    payload: schemas.DayAction,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    shifts = ShiftSnapshotStore(db).validate(
        site.id,
        payload.date,
        dn=payload.dn,
        operator=payload.operator,
    )
    audit.log_action(
        db,
        actor.email,
        "day.validate",
        "validated_day",
        None,
        {"date": payload.date.isoformat(), "dn": payload.dn, "operator": payload.operator},
    )
    db.commit()
    return schemas.DayActionResult(site=site.name, date=payload.date, shifts=len(shifts))


@router.post("/unvalidate", response_model=schemas.DayActionResult)
def unvalidate_day(
    payload: schemas.DayAction,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    site = resolve_site(db, actor, payload.site)
    shifts = ShiftSnapshotStore(db).unvalidate(site.id, payload.date)
    audit.log_action(
        db,
        actor.email,
        "day.unvalidate",
        "validated_day",
        None,
        {"date": payload.date.isoformat()},
    )
    db.commit()
    return schemas.DayActionResult(site=site.name, date=payload.date, shifts=len(shifts))


@router.get("/day", response_model=schemas.DayOut)
def get_day(
    site: str,
    date: date_type,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    row = resolve_site(db, actor, site)
    marker, shifts = ShiftSnapshotStore(db).get_day(row.id, date)
    return schemas.DayOut(
        site=row.name,
        date=date,
        status=marker.status if marker is not None else None,
        shifts=[schemas.ValidatedShiftOut.model_validate(shift) for shift in shifts],
    )


@router.get("/calendar", response_model=schemas.CalendarOut)
def get_calendar(
    site: str,
    year: int = Query(..., ge=1900, le=9999),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    row = resolve_site(db, actor, site)
    days = ShiftSnapshotStore(db).calendar(row.id, year)
    return schemas.CalendarOut(
        site=row.name,
        year=year,
        days=[schemas.CalendarDay(date=day, status=state) for day, state in days],
    )
