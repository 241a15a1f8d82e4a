"""Bucket and truckload factor routes."""

# purpose: expose monthly factor overview and projected-gradient solve/save per equipment kind
# status: production
# depends_on: minesite.services.factors

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import audit, schemas
from ..auth import Actor
from ..database import get_db
from ..rbac import require_validator, resolve_site
from ..schemas.reconciliation import MONTH_PATTERN
from ..services.errors import ReportingError
from ..services.factors import FactorSolver
from .errors import rejection

router = APIRouter(prefix="/api/site-admin", tags=["factors"])


def _overview(kind: str, site: str, month_ym: str, db: Session, actor: Actor):
    row = resolve_site(db, actor, site)
    return FactorSolver(db, kind).month_overview(row, month_ym)


def _solve(kind: str, payload: schemas.FactorSolveRequest, db: Session, actor: Actor):
    site = resolve_site(db, actor, payload.site)
    try:
        result = FactorSolver(db, kind).solve(
            site,
            payload.month_ym,
            assignments=payload.assignments,
            configs=payload.configs,
            save=payload.save,
            actor=actor.email,
            lam=payload.lam,
            iterations=payload.iterations,
        )
        if payload.save:
            audit.log_action(
                db,
                actor.email,
                "factors.save",
                f"{kind}_factors",
                None,
                {
                    "month_ym": payload.month_ym,
                    "configs": len(result.configs),
                    "units": len(result.units),
                },
            )
    except ReportingError as exc:
        raise rejection(db, exc) from exc
    if payload.save:
        db.commit()
    else:
        db.rollback()
    return result


@router.get("/bucket-factors/month", response_model=schemas.FactorMonthOverview)
def bucket_factors_month(
    site: str,
    month_ym: str = Query(..., pattern=MONTH_PATTERN),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    return _overview("loader", site, month_ym, db, actor)


@router.post("/bucket-factors/solve", response_model=schemas.FactorSolveOut)
def bucket_factors_solve(
    payload: schemas.FactorSolveRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    """Solve loader bucket factors; ``save=true`` persists configs, assignments and factors."""

    return _solve("loader", payload, db, actor)


@router.get("/truck-factors/month", response_model=schemas.FactorMonthOverview)
def truck_factors_month(
    site: str,
    month_ym: str = Query(..., pattern=MONTH_PATTERN),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    return _overview("truck", site, month_ym, db, actor)


@router.post("/truck-factors/solve", response_model=schemas.FactorSolveOut)
def truck_factors_solve(
    payload: schemas.FactorSolveRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_validator),
):
    return _solve("truck", payload, db, actor)
