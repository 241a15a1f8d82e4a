"""Bucket and truckload conversion factors inferred from reconciled ore tonnes."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.orm import Session

from .. import models
from ..schemas.factors import (
    ConfigOverride,
    ConfigResult,
    FactorConfigOut,
    FactorMonthOverview,
    FactorSolveOut,
    MonthlyFactorOut,
    PredictedTotals,
    ReconciledTargets,
    Residuals,
    UnitCount,
    UnitResult,
)
from .errors import InvalidBoundsError, MissingTargetError, NoDataError
from .factor_solver import Bounds, solve_projected_gradient
from .reconciliation import (
    DEVELOPMENT_ORE_KEY,
    PRODUCTION_ORE_KEY,
    ReconciliationAllocator,
    month_range,
)
from .totals import hauling_figures, number_or_zero, payload_values

# purpose: back-infer one tonnes-per-count factor per config group from two reconciled month totals
# inputs: injected session, equipment kind, month, unit -> config assignments, config overrides
# outputs: FactorSolveOut preview or persisted FactorConfig / FactorAssignment / MonthlyFactor rows
# status: production
# depends_on: minesite.services.factor_solver, minesite.services.reconciliation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EquipmentKindProfile:
    kind: str
    activity: str
    noun: str


KIND_PROFILES: dict[str, EquipmentKindProfile] = {
    "loader": EquipmentKindProfile(kind="loader", activity="Loading", noun="loading buckets"),
    "truck": EquipmentKindProfile(kind="truck", activity="Hauling", noun="hauling trucks"),
}


def _unit_id(values: Mapping[str, Any]) -> str:
    return str(values.get("Equipment") or values.get("equipment") or "").strip()


def _material(values: Mapping[str, Any]) -> str:
    return str(values.get("Material") or values.get("material") or "").strip().lower()


def loader_counts(payload: Mapping[str, Any], sub_activity: str) -> tuple[float, float]:
    """Primary production/development bucket counts of one Loading payload."""

    values = payload_values(payload)
    material = _material(values)
    if material and material != "ore":
        return 0.0, 0.0
    sub = sub_activity.strip().lower()
    if sub.startswith("production"):
        return number_or_zero(values.get("Stope to Truck")) + number_or_zero(values.get("Stope to SP")), 0.0
    if sub.startswith("development"):
        return 0.0, number_or_zero(values.get("Heading to Truck")) + number_or_zero(values.get("Heading to SP"))
    return 0.0, 0.0


def truck_counts(payload: Mapping[str, Any], sub_activity: str) -> tuple[float, float]:
    """Production/development truckload counts of one Hauling payload."""

    values = payload_values(payload)
    trucks, _, _ = hauling_figures(payload)
    sub = sub_activity.strip().lower()
    if sub.startswith("production"):
        return trucks, 0.0
    if sub.startswith("development"):
        material = _material(values)
        if material and material != "ore":
            return 0.0, 0.0
        return 0.0, trucks
    return 0.0, 0.0


_COUNTERS = {"loader": loader_counts, "truck": truck_counts}


@dataclass
class ConfigPlan:
    code: str
    prod: float
    dev: float
    bounds: Bounds
    prior: float


class FactorSolver:
    """Solve, preview and save monthly conversion factors for one equipment kind."""

    def __init__(self, db: Session, kind: str) -> None:
        if kind not in KIND_PROFILES:
            raise ValueError(f"unknown equipment kind {kind!r}")
        self.db = db
        self.kind = kind
        self.profile = KIND_PROFILES[kind]
        self.reconciliations = ReconciliationAllocator(db)

    # -- inputs ------------------------------------------------------------

    def unit_counts(self, site_id, month_ym: str) -> dict[str, tuple[float, float]]:
        """Return ``unit_id -> (prod_count, dev_count)`` for units with any count in the month."""

        months = month_range(month_ym)
        rows = (
            self.db.query(models.ValidatedActivity.payload, models.ValidatedActivity.sub_activity)
            .filter(
                models.ValidatedActivity.site_id == site_id,
                models.ValidatedActivity.date >= months.first,
                models.ValidatedActivity.date < months.end,
                models.ValidatedActivity.activity == self.profile.activity,
            )
            .all()
        )
        counter = _COUNTERS[self.kind]
        parts: dict[str, tuple[list[float], list[float]]] = defaultdict(lambda: ([], []))
        for payload, sub_activity in rows:
            unit = _unit_id(payload_values(payload or {}))
            if not unit:
                continue
            prod, dev = counter(payload or {}, sub_activity or "")
            parts[unit][0].append(prod)
            parts[unit][1].append(dev)

        counts = {}
        for unit in sorted(parts):
            prod, dev = math.fsum(parts[unit][0]), math.fsum(parts[unit][1])
            if prod > 0 or dev > 0:
                counts[unit] = (prod, dev)
        return counts

    def targets(self, site_id, month_ym: str) -> ReconciledTargets:
        return ReconciledTargets(
            prod=self.reconciliations.reconciled_total(site_id, month_ym, PRODUCTION_ORE_KEY),
            dev=self.reconciliations.reconciled_total(site_id, month_ym, DEVELOPMENT_ORE_KEY),
        )

    def config_defs(self, site_id) -> dict[str, models.FactorConfig]:
        rows = (
            self.db.query(models.FactorConfig)
            .filter(
                models.FactorConfig.site_id == site_id,
                models.FactorConfig.equipment_kind == self.kind,
            )
            .all()
        )
        return {row.config_code: row for row in rows}

    def stored_assignment(self, site_id, month_ym: str) -> dict[str, str]:
        rows = (
            self.db.query(models.FactorAssignment)
            .filter(
                models.FactorAssignment.site_id == site_id,
                models.FactorAssignment.equipment_kind == self.kind,
                models.FactorAssignment.month_ym == month_ym,
            )
            .all()
        )
        return {row.unit_id: row.config_code for row in rows}

    def history_factor(self, site_id, config_code: str, month_ym: str) -> float | None:
        """Most recently saved factor for ``config_code`` in a month before ``month_ym``."""

        row = (
            self.db.query(models.MonthlyFactor)
            .filter(
                models.MonthlyFactor.site_id == site_id,
                models.MonthlyFactor.equipment_kind == self.kind,
                models.MonthlyFactor.config_code == config_code,
                models.MonthlyFactor.month_ym < month_ym,
            )
            .order_by(models.MonthlyFactor.month_ym.desc(), models.MonthlyFactor.created_at.desc())
            .first()
        )
        if row is None:
            return None
        value = row.config_factor if row.config_factor is not None else row.factor
        return float(value) if value is not None else None

    def plan_config(
        self,
        code: str,
        prod: float,
        dev: float,
        override: ConfigOverride | None,
        stored: models.FactorConfig | None,
        history: float | None,
    ) -> ConfigPlan:
        """Merge override, stored definition and history into bounds and a prior."""

        override = override or ConfigOverride()
        estimate = override.estimate
        if estimate is None and stored is not None:
            estimate = stored.estimate_factor
        minimum = override.min if override.min is not None else (stored.min_factor if stored else None)
        maximum = override.max if override.max is not None else (stored.max_factor if stored else None)

        lo = max(0.0, float(minimum)) if minimum is not None else 0.0
        hi = float(maximum) if maximum is not None else math.inf
        if lo > hi:
            raise InvalidBoundsError(f"config {code}: min factor {lo} exceeds max factor {hi}")

        if override.lock:
            if estimate is None:
                raise InvalidBoundsError(f"config {code}: cannot lock without an estimate")
            lo = hi = max(0.0, float(estimate))

        if estimate is not None:
            prior = max(0.0, float(estimate))
        elif history is not None:
            prior = max(0.0, history)
        elif math.isfinite(hi):
            prior = (lo + hi) / 2.0
        else:
            prior = lo
        return ConfigPlan(code=code, prod=prod, dev=dev, bounds=Bounds(lo=lo, hi=hi), prior=prior)

    # -- solve -------------------------------------------------------------

    def solve(
        self,
        site: models.Site,
        month_ym: str,
        *,
        assignments: Mapping[str, str] | None = None,
        configs: Mapping[str, ConfigOverride] | None = None,
        save: bool = False,
        actor: str | None = None,
        lam: float | None = None,
        iterations: int | None = None,
    ) -> FactorSolveOut:
        assignments = assignments or {}
        configs = configs or {}
        month_range(month_ym)

        targets = self.targets(site.id, month_ym)
        if targets.prod is None or targets.dev is None:
            raise MissingTargetError(
                "missing reconciled ore tonnes (production and/or development) for this month"
            )

        units = self.unit_counts(site.id, month_ym)
        if not units:
            raise NoDataError(f"no {self.profile.noun} found for this month (cannot solve)")

        unit_to_config = {
            unit: (str(assignments.get(unit) or "").strip() or unit) for unit in units
        }
        grouped: dict[str, tuple[list[float], list[float]]] = defaultdict(lambda: ([], []))
        for unit, (prod, dev) in units.items():
            grouped[unit_to_config[unit]][0].append(prod)
            grouped[unit_to_config[unit]][1].append(dev)

        stored = self.config_defs(site.id)
        plans = [
            self.plan_config(
                code,
                math.fsum(grouped[code][0]),
                math.fsum(grouped[code][1]),
                configs.get(code),
                stored.get(code),
                self.history_factor(site.id, code, month_ym),
            )
            for code in sorted(grouped)
        ]

        A = [[plan.prod for plan in plans], [plan.dev for plan in plans]]
        b = [float(targets.prod), float(targets.dev)]
        result = solve_projected_gradient(
            A,
            b,
            [plan.bounds for plan in plans],
            [plan.prior for plan in plans],
            lam=lam,
            iterations=iterations,
        )

        config_rows = [
            ConfigResult(
                config_code=plan.code,
                prod_count=plan.prod,
                dev_count=plan.dev,
                factor=factor,
                min_factor=plan.bounds.lo,
                max_factor=plan.bounds.hi if math.isfinite(plan.bounds.hi) else None,
                estimate_factor=plan.prior,
                prod_tonnes_pred=plan.prod * factor,
                dev_tonnes_pred=plan.dev * factor,
            )
            for plan, factor in zip(plans, result.x)
        ]
        factor_by_config = {row.config_code: row.factor for row in config_rows}
        unit_rows = [
            UnitResult(
                unit_id=unit,
                config_code=unit_to_config[unit],
                prod_count=prod,
                dev_count=dev,
                factor=factor_by_config[unit_to_config[unit]],
                prod_tonnes_pred=prod * factor_by_config[unit_to_config[unit]],
                dev_tonnes_pred=dev * factor_by_config[unit_to_config[unit]],
            )
            for unit, (prod, dev) in units.items()
        ]

        underdetermined = len(plans) > 2
        warning = None
        if underdetermined:
            warning = (
                f"Underdetermined for a single month (2 equations, {len(plans)} configs). "
                "Config estimates and bounds are used to select a plausible solution."
            )
            logger.warning("%s factor solve for %s %s: %s", self.kind, site.name, month_ym, warning)

        out = FactorSolveOut(
            site=site.name,
            month_ym=month_ym,
            equipment_kind=self.kind,
            reconciled=targets,
            assignment=unit_to_config,
            configs=config_rows,
            units=unit_rows,
            totals=PredictedTotals(prod_pred=result.predicted[0], dev_pred=result.predicted[1]),
            residuals=Residuals(prod=result.residual[0], dev=result.residual[1]),
            underdetermined=underdetermined,
            warning=warning,
            iterations=result.iterations,
            converged=result.converged,
        )
        if save:
            self._save(site, month_ym, out, configs, stored, actor)
            out.saved = True
        return out

    def _save(
        self,
        site: models.Site,
        month_ym: str,
        out: FactorSolveOut,
        overrides: Mapping[str, ConfigOverride],
        stored: dict[str, models.FactorConfig],
        actor: str | None,
    ) -> None:
        for key in (PRODUCTION_ORE_KEY, DEVELOPMENT_ORE_KEY):
            record = self.reconciliations.get(site.id, month_ym, key, for_update=True)
            self.reconciliations.ensure_unlocked(record)

        for row in out.configs:
            override = overrides.get(row.config_code)
            existing = stored.get(row.config_code)
            provided = override is not None and any(
                value is not None for value in (override.estimate, override.min, override.max)
            )
            if not provided and existing is None:
                continue
            if existing is None:
                existing = models.FactorConfig(
                    site_id=site.id,
                    equipment_kind=self.kind,
                    config_code=row.config_code,
                )
                self.db.add(existing)
            if override is not None:
                existing.estimate_factor = override.estimate
                existing.min_factor = max(0.0, override.min) if override.min is not None else None
                existing.max_factor = override.max
            existing.updated_by = actor

        current = {
            row.unit_id: row
            for row in self.db.query(models.FactorAssignment).filter(
                models.FactorAssignment.site_id == site.id,
                models.FactorAssignment.equipment_kind == self.kind,
                models.FactorAssignment.month_ym == month_ym,
            )
        }
        for unit, code in out.assignment.items():
            assignment = current.get(unit)
            if assignment is None:
                assignment = models.FactorAssignment(
                    site_id=site.id,
                    equipment_kind=self.kind,
                    month_ym=month_ym,
                    unit_id=unit,
                )
                self.db.add(assignment)
            assignment.config_code = code
            assignment.updated_by = actor

        self.db.query(models.MonthlyFactor).filter(
            models.MonthlyFactor.site_id == site.id,
            models.MonthlyFactor.equipment_kind == self.kind,
            models.MonthlyFactor.month_ym == month_ym,
        ).delete(synchronize_session=False)
        configs_by_code = {row.config_code: row for row in out.configs}
        for unit in out.units:
            config = configs_by_code[unit.config_code]
            self.db.add(
                models.MonthlyFactor(
                    site_id=site.id,
                    equipment_kind=self.kind,
                    month_ym=month_ym,
                    unit_id=unit.unit_id,
                    config_code=unit.config_code,
                    factor=unit.factor,
                    config_factor=config.factor,
                    prod_count=unit.prod_count,
                    dev_count=unit.dev_count,
                    prod_tonnes=unit.prod_tonnes_pred,
                    dev_tonnes=unit.dev_tonnes_pred,
                    min_factor=config.min_factor,
                    max_factor=config.max_factor,
                    created_by=actor,
                )
            )
        self.db.flush()
        logger.info(
            "Saved %d %s factors for %s %s",
            len(out.units),
            self.kind,
            site.name,
            month_ym,
        )

    # -- read-only view ----------------------------------------------------

    def month_overview(self, site: models.Site, month_ym: str) -> FactorMonthOverview:
        month_range(month_ym)
        units = self.unit_counts(site.id, month_ym)
        assignment = self.stored_assignment(site.id, month_ym)
        stored = self.config_defs(site.id)
        saved = (
            self.db.query(models.MonthlyFactor)
            .filter(
                models.MonthlyFactor.site_id == site.id,
                models.MonthlyFactor.equipment_kind == self.kind,
                models.MonthlyFactor.month_ym == month_ym,
            )
            .order_by(models.MonthlyFactor.unit_id.asc())
            .all()
        )
        saved_by_unit = {row.unit_id: row for row in saved}

        rows = []
        for unit, (prod, dev) in units.items():
            code = assignment.get(unit, unit)
            config = stored.get(code)
            factor_row = saved_by_unit.get(unit)
            factor = factor_row.factor if factor_row is not None else None
            rows.append(
                UnitCount(
                    unit_id=unit,
                    config_code=code,
                    prod_count=prod,
                    dev_count=dev,
                    estimate_factor=config.estimate_factor if config else None,
                    min_factor=config.min_factor if config else None,
                    max_factor=config.max_factor if config else None,
                    factor=factor,
                    prod_tonnes_pred=prod * factor if factor is not None else None,
                    dev_tonnes_pred=dev * factor if factor is not None else None,
                )
            )

        return FactorMonthOverview(
            site=site.name,
            month_ym=month_ym,
            equipment_kind=self.kind,
            reconciled=self.targets(site.id, month_ym),
            units=rows,
            configs=[FactorConfigOut.model_validate(row) for _, row in sorted(stored.items())],
            assignment={unit: assignment.get(unit, unit) for unit in units},
            saved=[MonthlyFactorOut.model_validate(row) for row in saved],
        )
