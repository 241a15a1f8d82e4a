import uuid
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    JSON,
    Text,
    Float,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Site(Base):
    __tablename__ = "sites"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class ValidatedShift(Base):
    __tablename__ = "validated_shifts"

    # purpose: per (site, date, dn, operator) snapshot whose totals are always derived from its activities
    # status: production
    # depends_on: sites, validated_activities

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date = Column(Date, nullable=False, index=True)
    dn = Column(String, nullable=False)
    operator = Column(String, nullable=False, default="")
    operator_name = Column(String)
    validated = Column(Boolean, default=False, nullable=False)
    totals = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    activities = relationship(
        "ValidatedActivity",
        back_populates="shift",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ValidatedActivity.created_at.asc()",
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "site_id",
            "date",
            "dn",
            "operator",
            name="uq_validated_shift_natural_key",
        ),
    )


class ValidatedActivity(Base):
    __tablename__ = "validated_activities"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shift_id = Column(
        UUID(as_uuid=True),
        ForeignKey("validated_shifts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # denormalized from the owning shift for month-range filtering
    site_id = Column(UUID(as_uuid=True), ForeignKey("sites.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    dn = Column(String, nullable=False)
    operator = Column(String, nullable=False, default="")
    activity = Column(String, nullable=False, index=True)
    sub_activity = Column(String, nullable=False, default="")
    payload = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    shift = relationship("ValidatedShift", back_populates="activities")


class ValidatedDay(Base):
    __tablename__ = "validated_days"
    site_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        primary_key=True,
    )
    date = Column(Date, primary_key=True)
    status = Column(String, nullable=False, default="unvalidated")
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('validated', 'unvalidated')",
            name="ck_validated_day_status",
        ),
    )


class Reconciliation(Base):
    __tablename__ = "reconciliations"

    # purpose: month-level externally confirmed total with its per-day delta allocation
    # status: production
    # depends_on: sites, reconciliation_days

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month_ym = Column(String(7), nullable=False)
    metric_key = Column(String, nullable=False)
    reconciled_total = Column(Float, nullable=False, default=0.0)
    basis = Column(String, nullable=False, default="validated_only")
    method = Column(String, nullable=False, default="spread_daily")
    notes = Column(Text)
    is_locked = Column(Boolean, default=False, nullable=False)
    actual_total_snapshot = Column(Float)
    delta_snapshot = Column(Float)
    created_by = Column(String)
    computed_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    days = relationship(
        "ReconciliationDay",
        back_populates="reconciliation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReconciliationDay.date.asc()",
    )

    __table_args__ = (
        sa.CheckConstraint(
            "basis IN ('validated_only', 'captured_all')",
            name="ck_reconciliation_basis",
        ),
        sa.CheckConstraint(
            "method IN ('spread_daily', 'month_end', 'custom')",
            name="ck_reconciliation_method",
        ),
        sa.UniqueConstraint(
            "site_id",
            "month_ym",
            "metric_key",
            name="uq_reconciliation_site_month_metric",
        ),
    )


class ReconciliationDay(Base):
    __tablename__ = "reconciliation_days"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reconciliation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reconciliations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date = Column(Date, nullable=False)
    allocated_value = Column(Float, nullable=False, default=0.0)

    reconciliation = relationship("Reconciliation", back_populates="days")

    __table_args__ = (
        sa.UniqueConstraint("reconciliation_id", "date"),
    )


class FactorConfig(Base):
    __tablename__ = "factor_configs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    equipment_kind = Column(String, nullable=False)
    config_code = Column(String, nullable=False)
    estimate_factor = Column(Float)
    min_factor = Column(Float)
    max_factor = Column(Float)
    updated_by = Column(String)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.CheckConstraint(
            "equipment_kind IN ('loader', 'truck')",
            name="ck_factor_config_kind",
        ),
        sa.UniqueConstraint("site_id", "equipment_kind", "config_code"),
    )


class FactorAssignment(Base):
    __tablename__ = "factor_assignments"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    equipment_kind = Column(String, nullable=False)
    month_ym = Column(String(7), nullable=False)
    unit_id = Column(String, nullable=False)
    config_code = Column(String, nullable=False)
    updated_by = Column(String)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("site_id", "equipment_kind", "month_ym", "unit_id"),
    )


class MonthlyFactor(Base):
    __tablename__ = "monthly_factors"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id = Column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    equipment_kind = Column(String, nullable=False)
    month_ym = Column(String(7), nullable=False)
    unit_id = Column(String, nullable=False)
    config_code = Column(String, nullable=False)
    factor = Column(Float, nullable=False)
    config_factor = Column(Float)
    prod_count = Column(Float, nullable=False, default=0.0)
    dev_count = Column(Float, nullable=False, default=0.0)
    prod_tonnes = Column(Float, nullable=False, default=0.0)
    dev_tonnes = Column(Float, nullable=False, default=0.0)
    min_factor = Column(Float)
    max_factor = Column(Float)
    method = Column(String, nullable=False, default="projected_gradient")
    created_by = Column(String)
    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("site_id", "equipment_kind", "month_ym", "unit_id"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor = Column(String)
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(String)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=_utcnow)
