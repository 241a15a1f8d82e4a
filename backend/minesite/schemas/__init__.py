"""Pydantic schemas consolidating backend API contracts."""

# purpose: aggregate request and response schemas for FastAPI surfaces and services
# status: production

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from uuid import UUID

from .factors import (
    ConfigOverride,
    ConfigResult,
    EquipmentKind,
    FactorConfigOut,
    FactorMonthOverview,
    FactorSolveOut,
    FactorSolveRequest,
    MonthlyFactorOut,
    PredictedTotals,
    ReconciledTargets,
    Residuals,
    UnitCount,
    UnitResult,
)
from .reconciliation import (
    Basis,
    CustomAllocationsIn,
    DailyAllocationIn,
    DailyAllocationOut,
    MetricDefinition,
    Method,
    MonthStatus,
    MonthSummary,
    ReconcileResult,
    ReconciliationKey,
    ReconciliationOut,
    ReconciliationUpsert,
)
from .validation import (
    ActivityCreate,
    ActivityDelete,
    ActivityEdit,
    ActivityEditBatch,
    ActivityPayload,
    CalendarDay,
    CalendarOut,
    DayAction,
    DayActionResult,
    DayOut,
    ShiftCreate,
    ShiftDelete,
    ShiftFinalize,
    ShiftKey,
    ShiftMutationResult,
    ValidatedActivityOut,
    ValidatedShiftOut,
)


class AuditLogOut(BaseModel):
    id: UUID
    actor: Optional[str] = None
    action: str
    target_type: str | None = None
    target_id: str | None = None
    details: Dict[str, Any] = {}
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AuditReportItem(BaseModel):
    action: str
    count: int
