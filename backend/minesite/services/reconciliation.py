"""Monthly reconciliation of captured totals against confirmed production figures."""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models
from .errors import LockedReconciliationError, NotFoundError, UnsupportedMetricError
from .totals import lenient_number, metric_total, payload_values

# purpose: compute month deltas between confirmed and captured totals and spread them across days
# inputs: injected session, site id, month (YYYY-MM), metric key, basis, method, reconciled total
# outputs: Reconciliation rows with actual/delta snapshots and per-day allocations summing to delta
# status: production
# depends_on: minesite.services.totals, validated_shifts, validated_activities

logger = logging.getLogger(__name__)

LOCKED_MESSAGE = "reconciliation is locked"
SPREAD_DECIMALS = 4

PRODUCTION_ORE_KEY = "hauling|production_ore_tonnes_hauled"
DEVELOPMENT_ORE_KEY = "hauling|development_ore_tonnes_hauled"


@dataclass(frozen=True)
class MetricSource:
    """Where a named reconciliation metric reads its captured figure from."""

    key: str
    label: str
    unit: str
    activity: str
    field: str
    sub_activities: tuple[str, ...] = ()
    ore_only: bool = False


METRICS: tuple[MetricSource, ...] = (
    MetricSource(
        key="firing|development|cut_length",
        label="Firing Development Cut Length",
        unit="m",
        activity="Firing",
        field="Cut Length",
        sub_activities=("Development",),
    ),
    MetricSource(
        key="hauling|ore_tonnes_hauled",
        label="Hauling Ore Tonnes Hauled (Dev + Prod)",
        unit="t",
        activity="Hauling",
        field="Tonnes Hauled",
        sub_activities=("Development", "Production"),
        ore_only=True,
    ),
    MetricSource(
        key=PRODUCTION_ORE_KEY,
        label="Hauling Production Ore Tonnes Hauled",
        unit="t",
        activity="Hauling",
        field="Tonnes Hauled",
        sub_activities=("Production",),
        ore_only=True,
    ),
    MetricSource(
        key=DEVELOPMENT_ORE_KEY,
        label="Hauling Development Ore Tonnes Hauled",
        unit="t",
        activity="Hauling",
        field="Tonnes Hauled",
        sub_activities=("Development",),
        ore_only=True,
    ),
    MetricSource(
        key="hoisting|ore_tonnes_hoisted",
        label="Hoisting Ore Tonnes Hoisted",
        unit="t",
        activity="Hoisting",
        field="Ore Tonnes",
    ),
    MetricSource(
        key="hoisting|waste_tonnes_hoisted",
        label="Hoisting Waste Tonnes Hoisted",
        unit="t",
        activity="Hoisting",
        field="Waste Tonnes",
    ),
)

_METRICS_BY_KEY = {metric.key: metric for metric in METRICS}


@dataclass(frozen=True)
class MonthRange:
    first: date
    end: date  # exclusive
    days: int

    def dates(self) -> list[date]:
        return [self.first + timedelta(days=offset) for offset in range(self.days)]

    @property
    def last(self) -> date:
        return self.end - timedelta(days=1)


def month_range(month_ym: str) -> MonthRange:
    try:
        year_text, month_text = month_ym.split("-")
        year, month = int(year_text), int(month_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"invalid month {month_ym!r}") from exc
    if not 1 <= month <= 12:
        raise ValueError(f"invalid month {month_ym!r}")
    days = calendar.monthrange(year, month)[1]
    first = date(year, month, 1)
    return MonthRange(first=first, end=first + timedelta(days=days), days=days)


def is_ore(values: Mapping) -> bool:
    material = values.get("Material")
    return "ore" in str(material or "").strip().lower()


def split_metric_key(metric_key: str) -> tuple[str, str, str] | None:
    parts = [part.strip() for part in metric_key.split("|")]
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


# bounded correction passes when the running sum rounds past delta
_REMAINDER_PASSES = 4


def _remainder(delta: float, values: Sequence[float]) -> float:
    """Last-day value so that the date-ordered ``sum`` of all days equals ``delta``."""

    last = delta - sum(values)
    for _ in range(_REMAINDER_PASSES):
        total = sum([*values, last])
        if total == delta:
            break
        adjusted = last + (delta - total)
        if adjusted == last:
            adjusted = math.nextafter(last, math.copysign(math.inf, delta - total))
        last = adjusted
    return last


def spread_daily(delta: float, dates: Sequence[date]) -> list[tuple[date, float]]:
    """Spread ``delta`` evenly; the last day absorbs the rounding remainder.

    Summing the allocations in date order gives back ``delta`` exactly.
    """

    if not dates:
        return []
    per_day = round(delta / len(dates), SPREAD_DECIMALS)
    allocations = [(day, per_day) for day in dates[:-1]]
    allocations.append((dates[-1], _remainder(delta, [value for _, value in allocations])))
    return allocations


def month_end(delta: float, dates: Sequence[date]) -> list[tuple[date, float]]:
    if not dates:
        return []
    return [(day, 0.0) for day in dates[:-1]] + [(dates[-1], delta)]


def absorb_remainder(
    delta: float,
    dates: Sequence[date],
    values: Mapping[date, float],
) -> list[tuple[date, float]]:
    """Keep the given per-day values and let the last day absorb ``delta`` minus their sum."""

    if not dates:
        return []
    allocations = [(day, float(values.get(day, 0.0))) for day in dates[:-1]]
    allocations.append((dates[-1], _remainder(delta, [value for _, value in allocations])))
    return allocations


class ReconciliationAllocator:
    """Upserts, recalculates and locks reconciliation records over an injected session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # -- metric definitions ------------------------------------------------

    @staticmethod
    def metrics() -> list[MetricSource]:
        return list(METRICS)

    @staticmethod
    def check_metric(metric_key: str) -> None:
        if metric_key in _METRICS_BY_KEY or split_metric_key(metric_key):
            return
        raise UnsupportedMetricError(f"unsupported metric_key {metric_key!r}")

    def actual_total(
        self,
        site_id: UUID,
        month_ym: str,
        metric_key: str,
        basis: str = "validated_only",
    ) -> float:
        """Sum the captured figure for a metric over the month, honouring ``basis``."""

        self.check_metric(metric_key)
        months = month_range(month_ym)
        source = _METRICS_BY_KEY.get(metric_key)
        if source is not None:
            numbers = self._payload_numbers(site_id, months, source, basis)
        else:
            activity, sub_activity, metric = split_metric_key(metric_key)
            numbers = [
                metric_total(totals or {}, activity, sub_activity, metric)
                for totals in self._shift_totals(site_id, months, basis)
            ]
        total = math.fsum(numbers)
        return total if math.isfinite(total) else 0.0

    def _payload_numbers(
        self,
        site_id: UUID,
        months: MonthRange,
        source: MetricSource,
        basis: str,
    ) -> list[float]:
        query = (
            self.db.query(models.ValidatedActivity.payload)
            .join(models.ValidatedShift, models.ValidatedShift.id == models.ValidatedActivity.shift_id)
            .filter(
                models.ValidatedActivity.site_id == site_id,
                models.ValidatedActivity.date >= months.first,
                models.ValidatedActivity.date < months.end,
                models.ValidatedActivity.activity == source.activity,
            )
        )
        if source.sub_activities:
            query = query.filter(models.ValidatedActivity.sub_activity.in_(source.sub_activities))
        if basis == "validated_only":
            query = query.filter(models.ValidatedShift.validated.is_(True))

        numbers = []
        for (payload,) in query.all():
            values = payload_values(payload or {})
            if source.ore_only and not is_ore(values):
                continue
            number = lenient_number(values.get(source.field))
            if number is not None:
                numbers.append(number)
        return numbers

    def _shift_totals(self, site_id: UUID, months: MonthRange, basis: str) -> Iterable[dict]:
        query = self.db.query(models.ValidatedShift.totals).filter(
            models.ValidatedShift.site_id == site_id,
            models.ValidatedShift.date >= months.first,
            models.ValidatedShift.date < months.end,
        )
        if basis == "validated_only":
            query = query.filter(models.ValidatedShift.validated.is_(True))
        return [totals for (totals,) in query.all()]

    # -- record access -----------------------------------------------------

    def get(
        self,
        site_id: UUID,
        month_ym: str,
        metric_key: str,
        *,
        for_update: bool = False,
    ) -> models.Reconciliation | None:
        query = self.db.query(models.Reconciliation).filter(
            models.Reconciliation.site_id == site_id,
            models.Reconciliation.month_ym == month_ym,
            models.Reconciliation.metric_key == metric_key,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _require(self, site_id: UUID, month_ym: str, metric_key: str) -> models.Reconciliation:
        record = self.get(site_id, month_ym, metric_key, for_update=True)
        if record is None:
            raise NotFoundError(f"no reconciliation for {metric_key} in {month_ym}")
        return record

    def ensure_unlocked(self, record: models.Reconciliation | None) -> None:
        if record is not None and record.is_locked:
            logger.warning(
                "Rejected change to locked reconciliation %s (%s %s)",
                record.id,
                record.month_ym,
                record.metric_key,
            )
            raise LockedReconciliationError(LOCKED_MESSAGE)

    def reconciled_total(self, site_id: UUID, month_ym: str, metric_key: str) -> float | None:
        record = self.get(site_id, month_ym, metric_key)
        if record is None or record.reconciled_total is None:
            return None
        return float(record.reconciled_total)

    # -- mutations ---------------------------------------------------------

    def upsert(
        self,
        site_id: UUID,
        month_ym: str,
        metric_key: str,
        *,
        reconciled_total: float,
        basis: str = "validated_only",
        method: str = "spread_daily",
        notes: str | None = None,
        actor: str | None = None,
    ) -> models.Reconciliation:
        """Create or update a record and reallocate its delta in the same transaction."""

        self.check_metric(metric_key)
        months = month_range(month_ym)
        record = self.get(site_id, month_ym, metric_key, for_update=True)
        self.ensure_unlocked(record)
        if record is None:
            record = self._insert(site_id, month_ym, metric_key, actor)

        record.reconciled_total = float(reconciled_total)
        record.basis = basis
        record.method = method
        record.notes = notes
        record.created_by = record.created_by or actor
        return self._compute(record, months)

    def _insert(
        self,
        site_id: UUID,
        month_ym: str,
        metric_key: str,
        actor: str | None,
    ) -> models.Reconciliation:
        record = models.Reconciliation(
            site_id=site_id,
            month_ym=month_ym,
            metric_key=metric_key,
            reconciled_total=0.0,
            created_by=actor,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def recalculate(self, site_id: UUID, month_ym: str, metric_key: str) -> models.Reconciliation:
        """Re-run the allocation with the stored total, basis and method."""

        record = self._require(site_id, month_ym, metric_key)
        self.ensure_unlocked(record)
        return self._compute(record, month_range(month_ym))

    def set_custom_allocations(
        self,
        site_id: UUID,
        month_ym: str,
        metric_key: str,
        allocations: Mapping[date, float],
    ) -> models.Reconciliation:
        """Store hand-edited day values; the month's last day absorbs the remainder."""

        months = month_range(month_ym)
        outside = sorted(day for day in allocations if not months.first <= day < months.end)
        if outside:
            raise ValueError(f"allocation date {outside[0].isoformat()} is outside {month_ym}")
        record = self._require(site_id, month_ym, metric_key)
        self.ensure_unlocked(record)
        record.method = "custom"
        return self._compute(record, months, custom_values=allocations)

    def _compute(
        self,
        record: models.Reconciliation,
        months: MonthRange,
        custom_values: Mapping[date, float] | None = None,
    ) -> models.Reconciliation:
        actual = self.actual_total(record.site_id, record.month_ym, record.metric_key, record.basis)
        delta = float(record.reconciled_total) - actual
        dates = months.dates()

        if record.method == "month_end":
            allocations = month_end(delta, dates)
        elif record.method == "custom":
            if custom_values is None:
                custom_values = {row.date: row.allocated_value for row in record.days}
            allocations = absorb_remainder(delta, dates, custom_values)
        else:
            allocations = spread_daily(delta, dates)

        record.days.clear()
        self.db.flush()
        for day, value in allocations:
            record.days.append(models.ReconciliationDay(date=day, allocated_value=value))

        record.actual_total_snapshot = actual
        record.delta_snapshot = delta
        record.computed_at = datetime.now(timezone.utc)
        self.db.flush()
        logger.info(
            "Reconciled %s %s: actual=%s reconciled=%s delta=%s (%s)",
            record.month_ym,
            record.metric_key,
            actual,
            record.reconciled_total,
            delta,
            record.method,
        )
        return record

    def lock(self, site_id: UUID, month_ym: str, metric_key: str) -> models.Reconciliation:
        record = self._require(site_id, month_ym, metric_key)
        record.is_locked = True
        self.db.flush()
        logger.info("Locked reconciliation %s %s", month_ym, metric_key)
        return record

    def unlock(self, site_id: UUID, month_ym: str, metric_key: str) -> models.Reconciliation:
        record = self._require(site_id, month_ym, metric_key)
        record.is_locked = False
        self.db.flush()
        logger.info("Unlocked reconciliation %s %s", month_ym, metric_key)
        return record

    # -- read-only views ---------------------------------------------------

    def month_summary(
        self,
        site_id: UUID,
        month_ym: str,
        metric_key: str,
        basis: str | None = None,
    ) -> tuple[float, models.Reconciliation | None, float | None]:
        """Return ``(actual_total, record, delta)`` without writing anything."""

        record = self.get(site_id, month_ym, metric_key)
        effective_basis = basis or (record.basis if record is not None else "validated_only")
        actual = self.actual_total(site_id, month_ym, metric_key, effective_basis)
        delta = None if record is None else float(record.reconciled_total) - actual
        return actual, record, delta

    def month_status(self, site_id: UUID, month_ym: str) -> tuple[str, int]:
        month_range(month_ym)
        records = (
            self.db.query(models.Reconciliation.is_locked)
            .filter(
                models.Reconciliation.site_id == site_id,
                models.Reconciliation.month_ym == month_ym,
            )
            .all()
        )
        if not records:
            return "open", 0
        if any(locked for (locked,) in records):
            return "closed", len(records)
        return "in_progress", len(records)
