"""Pydantic schemas for the shift validation snapshot."""

from __future__ import annotations

from datetime import date as date_type, datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ActivityPayload(BaseModel):
    activity: str
    sub_activity: str = ""
    # free-form field labels; numeric coercion happens only during aggregation
    values: dict[str, Any] = Field(default_factory=dict)
    loads: Optional[list[dict[str, Any]]] = None

    model_config = ConfigDict(extra="allow")


class ShiftKey(BaseModel):
    site: str = Field(min_length=1)
    date: date_type
    dn: str = Field(default="DS", min_length=1)
    operator: str = ""


class ShiftCreate(ShiftKey):
    operator_name: Optional[str] = None


class ShiftFinalize(ShiftKey):
    operator_name: Optional[str] = None
    activities: list[ActivityPayload] = Field(default_factory=list)


class ActivityCreate(ShiftKey):
    payload: ActivityPayload


class ActivityDelete(BaseModel):
    site: str = Field(min_length=1)
    id: UUID


class ShiftDelete(ShiftKey):
    pass


class ActivityEdit(BaseModel):
    id: UUID
    payload: ActivityPayload


class ActivityEditBatch(BaseModel):
    site: str = Field(min_length=1)
    date: date_type
    edits: list[ActivityEdit] = Field(default_factory=list)


class DayAction(BaseModel):
    site: str = Field(min_length=1)
    date: date_type
    dn: Optional[str] = None
    operator: Optional[str] = None


class ValidatedActivityOut(BaseModel):
    id: UUID
    shift_id: UUID
    activity: str
    sub_activity: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ValidatedShiftOut(BaseModel):
    id: UUID
    date: date_type
    dn: str
    operator: str
    operator_name: Optional[str] = None
    validated: bool
    totals: dict[str, dict[str, dict[str, float]]] = Field(default_factory=dict)
    activities: list[ValidatedActivityOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ShiftMutationResult(BaseModel):
    ok: bool = True
    shift_id: Optional[UUID] = None
    activity_id: Optional[UUID] = None
    validated: bool = False
    totals: dict[str, dict[str, dict[str, float]]] = Field(default_factory=dict)


class DayActionResult(BaseModel):
    ok: bool = True
    site: str
    date: date_type
    shifts: int


class DayOut(BaseModel):
    site: str
    date: date_type
    status: Optional[Literal["validated", "unvalidated"]] = None
    shifts: list[ValidatedShiftOut] = Field(default_factory=list)


class CalendarDay(BaseModel):
    date: date_type
    status: Literal["green", "red"]


class CalendarOut(BaseModel):
    site: str
    year: int
    days: list[CalendarDay] = Field(default_factory=list)
