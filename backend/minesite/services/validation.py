"""Validation snapshot lifecycle for per-operator shift records."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session, selectinload

from .. import models
from .errors import ImmutableShiftError, NotFoundError
from .totals import aggregate, payload_keys

# purpose: own Captured -> Validated -> Captured transitions with totals recomputed on every mutation
# inputs: injected SQLAlchemy session (caller owns commit/rollback), shift keys, activity payloads
# outputs: ValidatedShift / ValidatedActivity rows with fresh totals and day markers
# status: production
# depends_on: minesite.services.totals.aggregate

logger = logging.getLogger(__name__)

IMMUTABLE_MESSAGE = "validated shifts are immutable; unvalidate the day before editing"


@dataclass(frozen=True)
class ShiftRef:
    """Natural key of a shift snapshot: (site, date, shift designator, operator)."""

    site_id: UUID
    date: date
    dn: str
    operator: str = ""

    def normalized(self) -> "ShiftRef":
        return ShiftRef(
            site_id=self.site_id,
            date=self.date,
            dn=(self.dn or "").strip() or "DS",
            operator=(self.operator or "").strip(),
        )


def _payload_dict(payload: Any) -> dict[str, Any]:
    if hasattr(payload, "model_dump"):
        return payload.model_dump(exclude_none=True)
    if isinstance(payload, Mapping):
        return dict(payload)
    raise TypeError(f"unsupported payload type {type(payload).__name__}")


class ShiftSnapshotStore:
    """Mutations of validated shift snapshots guarded by the ``validated`` flag.

    Every guard reads the shift row with ``SELECT ... FOR UPDATE`` inside the
    caller's transaction, so a concurrent ``validate`` cannot interleave between
    the immutability check and the write. The store never commits.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # -- lookups -----------------------------------------------------------

    def _shift_query(self, ref: ShiftRef):
        return self.db.query(models.ValidatedShift).filter(
            models.ValidatedShift.site_id == ref.site_id,
            models.ValidatedShift.date == ref.date,
            models.ValidatedShift.dn == ref.dn,
            models.ValidatedShift.operator == ref.operator,
        )

    def _lock_shift(self, ref: ShiftRef) -> models.ValidatedShift | None:
        return self._shift_query(ref).with_for_update().first()

    def _lock_day(
        self,
        site_id: UUID,
        day: date,
        *,
        dn: str | None = None,
        operator: str | None = None,
    ) -> list[models.ValidatedShift]:
        query = self.db.query(models.ValidatedShift).filter(
            models.ValidatedShift.site_id == site_id,
            models.ValidatedShift.date == day,
        )
        if dn:
            query = query.filter(models.ValidatedShift.dn == dn.strip())
        if operator is not None:
            query = query.filter(models.ValidatedShift.operator == operator.strip())
        return (
            query.order_by(models.ValidatedShift.dn.asc(), models.ValidatedShift.operator.asc())
            .with_for_update()
            .all()
        )

    def get_shift(self, ref: ShiftRef) -> models.ValidatedShift | None:
        return self._shift_query(ref.normalized()).first()

    # -- guards and derived state -----------------------------------------

    def _guard(self, shift: models.ValidatedShift | None) -> None:
        if shift is not None and shift.validated:
            logger.warning(
                "Rejected mutation of validated shift %s (%s %s %s)",
                shift.id,
                shift.date,
                shift.dn,
                shift.operator,
            )
            raise ImmutableShiftError(IMMUTABLE_MESSAGE)

    def _recompute_totals(self, shift: models.ValidatedShift) -> dict:
        self.db.flush()
        payloads = [
            row.payload
            for row in self.db.query(models.ValidatedActivity)
            .filter(models.ValidatedActivity.shift_id == shift.id)
            .order_by(models.ValidatedActivity.created_at.asc())
            .all()
        ]
        shift.totals = aggregate(payloads)
        return shift.totals

    def _mark_day(self, site_id: UUID, day: date, status: str) -> models.ValidatedDay:
        marker = self.db.get(models.ValidatedDay, (site_id, day))
        if marker is None:
            marker = models.ValidatedDay(site_id=site_id, date=day, status=status)
            self.db.add(marker)
        else:
            marker.status = status
        return marker

    def _new_activity(
        self,
        shift: models.ValidatedShift,
        payload: Mapping[str, Any],
    ) -> models.ValidatedActivity:
        activity, sub_activity = payload_keys(payload)
        row = models.ValidatedActivity(
            site_id=shift.site_id,
            date=shift.date,
            dn=shift.dn,
            operator=shift.operator,
            activity=activity,
            sub_activity=sub_activity,
            payload=dict(payload),
        )
        shift.activities.append(row)
        return row

    # -- transitions -------------------------------------------------------

    def create_or_get_shift(
        self,
        ref: ShiftRef,
        *,
        operator_name: str | None = None,
    ) -> models.ValidatedShift:
        """Return the locked shift for ``ref``, creating an empty Captured record if absent."""

        ref = ref.normalized()
        shift = self._lock_shift(ref)
        if shift is not None:
            if operator_name and not shift.operator_name and not shift.validated:
                shift.operator_name = operator_name
            return shift

        shift = models.ValidatedShift(
            site_id=ref.site_id,
            date=ref.date,
            dn=ref.dn,
            operator=ref.operator,
            operator_name=operator_name or ref.operator,
            validated=False,
            totals={},
        )
        # a concurrent insert of the same natural key fails the flush with IntegrityError
        self.db.add(shift)
        self.db.flush()
        return shift

    def create_shift(
        self,
        ref: ShiftRef,
        *,
        operator_name: str | None = None,
    ) -> models.ValidatedShift:
        """Administrator "create empty shift" for an operator who never uploaded."""

        ref = ref.normalized()
        shift = self.create_or_get_shift(ref, operator_name=operator_name)
        self._guard(shift)
        self._mark_day(shift.site_id, shift.date, "unvalidated")
        self.db.flush()
        return shift

    def finalize_shift(
        self,
        ref: ShiftRef,
        payloads: Iterable[Any],
        *,
        operator_name: str | None = None,
    ) -> models.ValidatedShift:
        """Replace a shift's activity set with an operator's finalized submission."""

        ref = ref.normalized()
        rows = [_payload_dict(payload) for payload in payloads]
        shift = self.create_or_get_shift(ref, operator_name=operator_name)
        self._guard(shift)
        shift.activities.clear()
        for payload in rows:
            self._new_activity(shift, payload)
        self._recompute_totals(shift)
        shift.validated = False
        self._mark_day(shift.site_id, shift.date, "unvalidated")
        self.db.flush()
        logger.info("Finalized shift %s with %d activities", shift.id, len(rows))
        return shift

    def add_activity(
        self,
        ref: ShiftRef,
        payload: Any,
        *,
        operator_name: str | None = None,
    ) -> tuple[models.ValidatedShift, models.ValidatedActivity]:
        ref = ref.normalized()
        data = _payload_dict(payload)
        shift = self.create_or_get_shift(ref, operator_name=operator_name)
        self._guard(shift)
        activity = self._new_activity(shift, data)
        self._recompute_totals(shift)
        shift.validated = False
        self._mark_day(shift.site_id, shift.date, "unvalidated")
        self.db.flush()
        return shift, activity

    def delete_activity(
        self,
        activity_id: UUID,
        *,
        site_id: UUID | None = None,
    ) -> models.ValidatedShift:
        activity = self.db.get(models.ValidatedActivity, activity_id)
        if activity is None or (site_id is not None and activity.site_id != site_id):
            raise NotFoundError(f"activity {activity_id} not found")
        shift = (
            self.db.query(models.ValidatedShift)
            .filter(models.ValidatedShift.id == activity.shift_id)
            .with_for_update()
            .one()
        )
        self._guard(shift)
        shift.activities.remove(activity)
        self._recompute_totals(shift)
        shift.validated = False
        self._mark_day(shift.site_id, shift.date, "unvalidated")
        self.db.flush()
        return shift

    def delete_shift(self, ref: ShiftRef) -> int:
        """Remove a shift with its activities; returns the number of activities dropped."""

        ref = ref.normalized()
        shift = self._lock_shift(ref)
        if shift is None:
            raise NotFoundError("shift not found")
        self._guard(shift)
        removed = len(shift.activities)
        self.db.delete(shift)
        self._mark_day(ref.site_id, ref.date, "unvalidated")
        self.db.flush()
        logger.info("Deleted shift %s %s %s (%d activities)", ref.date, ref.dn, ref.operator, removed)
        return removed

    def edit_activities(
        self,
        site_id: UUID,
        day: date,
        edits: Sequence[tuple[UUID, Any]],
    ) -> list[models.ValidatedShift]:
        """Rewrite activity payloads for one site/day; the whole day then needs re-validation."""

        if not edits:
            return []
        shifts = self._lock_day(site_id, day)
        by_id = {shift.id: shift for shift in shifts}
        ids = [activity_id for activity_id, _ in edits]
        activities = {
            row.id: row
            for row in self.db.query(models.ValidatedActivity)
            .filter(
                models.ValidatedActivity.id.in_(ids),
                models.ValidatedActivity.site_id == site_id,
                models.ValidatedActivity.date == day,
            )
            .all()
        }
        missing = [str(activity_id) for activity_id in ids if activity_id not in activities]
        if missing:
            raise NotFoundError(f"activities not found: {', '.join(missing)}")
        for row in activities.values():
            self._guard(by_id.get(row.shift_id))

        for activity_id, payload in edits:
            data = _payload_dict(payload)
            row = activities[activity_id]
            row.activity, row.sub_activity = payload_keys(data)
            row.payload = data

        for shift in shifts:
            self._recompute_totals(shift)
            shift.validated = False
        self._mark_day(site_id, day, "unvalidated")
        self.db.flush()
        return shifts

    def validate(
        self,
        site_id: UUID,
        day: date,
        *,
        dn: str | None = None,
        operator: str | None = None,
    ) -> list[models.ValidatedShift]:
        """Recompute totals one final time and freeze every matching shift."""

        shifts = self._lock_day(site_id, day, dn=dn, operator=operator)
        for shift in shifts:
            self._recompute_totals(shift)
            shift.validated = True
        self.db.flush()
        pending = (
            self.db.query(sa.func.count(models.ValidatedShift.id))
            .filter(
                models.ValidatedShift.site_id == site_id,
                models.ValidatedShift.date == day,
                models.ValidatedShift.validated.is_(False),
            )
            .scalar()
        )
        if shifts and not pending:
            self._mark_day(site_id, day, "validated")
        self.db.flush()
        logger.info("Validated %d shifts for %s on %s", len(shifts), site_id, day)
        return shifts

    def unvalidate(self, site_id: UUID, day: date) -> list[models.ValidatedShift]:
        """Reopen a whole day; the only path that makes validated shifts editable again."""

        shifts = self._lock_day(site_id, day)
        for shift in shifts:
            shift.validated = False
        self._mark_day(site_id, day, "unvalidated")
        self.db.flush()
        logger.info("Unvalidated %d shifts for %s on %s", len(shifts), site_id, day)
        return shifts

    # -- read-only views ---------------------------------------------------

    def get_day(
        self,
        site_id: UUID,
        day: date,
    ) -> tuple[models.ValidatedDay | None, list[models.ValidatedShift]]:
        shifts = (
            self.db.query(models.ValidatedShift)
            .options(selectinload(models.ValidatedShift.activities))
            .filter(
                models.ValidatedShift.site_id == site_id,
                models.ValidatedShift.date == day,
            )
            .order_by(models.ValidatedShift.dn.asc(), models.ValidatedShift.operator.asc())
            .all()
        )
        return self.db.get(models.ValidatedDay, (site_id, day)), shifts

    def calendar(self, site_id: UUID, year: int) -> list[tuple[date, str]]:
        """Return ``(date, status)`` per captured date: green when every shift is validated."""

        rows = (
            self.db.query(models.ValidatedShift.date, models.ValidatedShift.validated)
            .filter(
                models.ValidatedShift.site_id == site_id,
                models.ValidatedShift.date >= date(year, 1, 1),
                models.ValidatedShift.date <= date(year, 12, 31),
            )
            .all()
        )
        flags: dict[date, list[bool]] = defaultdict(list)
        for day, validated in rows:
            flags[day].append(bool(validated))
        return [
            (day, "green" if all(values) else "red")
            for day, values in sorted(flags.items())
        ]
