"""Pydantic schemas for monthly reconciliation."""

from __future__ import annotations

from datetime import date as date_type, datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"

Basis = Literal["validated_only", "captured_all"]
Method = Literal["spread_daily", "month_end", "custom"]


class ReconciliationKey(BaseModel):
    site: str = Field(min_length=1)
    month_ym: str = Field(pattern=MONTH_PATTERN)
    metric_key: str = Field(min_length=1)


class ReconciliationUpsert(ReconciliationKey):
    basis: Basis = "validated_only"
    method: Method = "spread_daily"
    reconciled_total: float = Field(allow_inf_nan=False)
    notes: Optional[str] = None


class DailyAllocationIn(BaseModel):
    date: date_type
    allocated_value: float = Field(allow_inf_nan=False)


class CustomAllocationsIn(ReconciliationKey):
    allocations: list[DailyAllocationIn] = Field(default_factory=list)


class DailyAllocationOut(BaseModel):
    date: date_type
    allocated_value: float

    model_config = ConfigDict(from_attributes=True)


class ReconciliationOut(BaseModel):
    id: UUID
    metric_key: str
    month_ym: str
    reconciled_total: float
    basis: Basis
    method: Method
    notes: Optional[str] = None
    is_locked: bool
    actual_total_snapshot: Optional[float] = None
    delta_snapshot: Optional[float] = None
    computed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReconcileResult(BaseModel):
    reconciliation_id: UUID
    actual_total: float
    delta: float
    allocations: list[DailyAllocationOut] = Field(default_factory=list)


class MonthSummary(BaseModel):
    site: str
    month_ym: str
    metric_key: str
    basis: Basis
    actual_total: float
    reconciliation: Optional[ReconciliationOut] = None
    delta: Optional[float] = None
    allocations: list[DailyAllocationOut] = Field(default_factory=list)


class MonthStatus(BaseModel):
    site: str
    month_ym: str
    state: Literal["open", "in_progress", "closed"]
    metrics: int


class MetricDefinition(BaseModel):
    key: str
    label: str
    unit: str
