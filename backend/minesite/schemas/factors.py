"""Pydantic schemas for bucket and truckload conversion factors."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .reconciliation import MONTH_PATTERN

EquipmentKind = Literal["loader", "truck"]


class ConfigOverride(BaseModel):
    estimate: Optional[float] = Field(default=None, allow_inf_nan=False)
    min: Optional[float] = Field(default=None, allow_inf_nan=False)
    max: Optional[float] = Field(default=None, allow_inf_nan=False)
    lock: bool = False


class FactorSolveRequest(BaseModel):
    site: str = Field(min_length=1)
    month_ym: str = Field(pattern=MONTH_PATTERN)
    save: bool = False
    assignments: dict[str, str] = Field(default_factory=dict)
    configs: dict[str, ConfigOverride] = Field(default_factory=dict)
    lam: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    iterations: Optional[int] = Field(default=None, gt=0, le=100_000)


class ReconciledTargets(BaseModel):
    prod: Optional[float] = None
    dev: Optional[float] = None


class ConfigResult(BaseModel):
    config_code: str
    prod_count: float
    dev_count: float
    factor: float
    min_factor: float
    max_factor: Optional[float] = None
    estimate_factor: float
    prod_tonnes_pred: float
    dev_tonnes_pred: float


class UnitResult(BaseModel):
    unit_id: str
    config_code: str
    prod_count: float
    dev_count: float
    factor: float
    prod_tonnes_pred: float
    dev_tonnes_pred: float


class PredictedTotals(BaseModel):
    prod_pred: float
    dev_pred: float


class Residuals(BaseModel):
    prod: float
    dev: float


class FactorSolveOut(BaseModel):
    site: str
    month_ym: str
    equipment_kind: EquipmentKind
    reconciled: ReconciledTargets
    assignment: dict[str, str] = Field(default_factory=dict)
    configs: list[ConfigResult] = Field(default_factory=list)
    units: list[UnitResult] = Field(default_factory=list)
    totals: PredictedTotals
    residuals: Residuals
    underdetermined: bool
    warning: Optional[str] = None
    iterations: int
    converged: bool
    saved: bool = False


class FactorConfigOut(BaseModel):
    config_code: str
    estimate_factor: Optional[float] = None
    min_factor: Optional[float] = None
    max_factor: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


class MonthlyFactorOut(BaseModel):
    unit_id: str
    config_code: str
    factor: float
    config_factor: Optional[float] = None
    prod_count: float
    dev_count: float
    prod_tonnes: float
    dev_tonnes: float
    min_factor: Optional[float] = None
    max_factor: Optional[float] = None
    method: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UnitCount(BaseModel):
    unit_id: str
    config_code: str
    prod_count: float
    dev_count: float
    estimate_factor: Optional[float] = None
    min_factor: Optional[float] = None
    max_factor: Optional[float] = None
    factor: Optional[float] = None
    prod_tonnes_pred: Optional[float] = None
    dev_tonnes_pred: Optional[float] = None


class FactorMonthOverview(BaseModel):
    site: str
    month_ym: str
    equipment_kind: EquipmentKind
    reconciled: ReconciledTargets
    units: list[UnitCount] = Field(default_factory=list)
    configs: list[FactorConfigOut] = Field(default_factory=list)
    assignment: dict[str, str] = Field(default_factory=dict)
    saved: list[MonthlyFactorOut] = Field(default_factory=list)
