"""
Row and payload models for the dashboard data views.

PostgREST returns embedded relations either as an object or as a one-element
list depending on the foreign key; the `patient_name` helpers accept both.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import field_validator


def _embedded(value: Any) -> Optional[dict]:
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else None


def flatten_patient_name(row: dict) -> Optional[str]:
    """Pull `patients.full_name` (or `calls.patients.full_name`) out of a joined row."""
    patient = _embedded(row.get("patients"))
    if patient is None:
        call = _embedded(row.get("calls"))
        patient = _embedded(call.get("patients")) if call else None
    return patient.get("full_name") if patient else None


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Patient(_Row):
    id: str
    full_name: str = ""
    phone_number: Optional[str] = None
    last_visit: Optional[str] = None
    condition_type: Optional[str] = None
    doctor_id: Optional[str] = None

    @field_validator("id", "doctor_id", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)


class Doctor(_Row):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = "doctor"

    @property
    def label(self) -> str:
        return self.name or self.email or self.id


class Call(_Row):
    id: str
    patient_id: Optional[str] = None
    call_time: Optional[str] = None
    call_status: Optional[str] = None
    transcript: Optional[str] = None
    patient_name: Optional[str] = None

    @field_validator("id", "patient_id", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)

    @classmethod
    def from_row(cls, row: dict) -> "Call":
        return cls(**row, patient_name=flatten_patient_name(row))


class Alert(_Row):
    """An escalated symptom report with the calling patient's name."""

    id: str
    call_id: Optional[str] = None
    risk_level: Optional[str] = None
    escalate: bool = False
    notes: Optional[str] = None
    patient_name: Optional[str] = None

    @field_validator("id", "call_id", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)

    @classmethod
    def from_row(cls, row: dict) -> "Alert":
        return cls(**{k: v for k, v in row.items() if k != "calls"}, patient_name=flatten_patient_name(row))


class SymptomReport(_Row):
    id: str
    symptoms: Any = None
    created_at: Optional[str] = None
    call_id: Optional[str] = None
    call_time: Optional[str] = None

    @field_validator("id", "call_id", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)

    @classmethod
    def from_row(cls, row: dict) -> "SymptomReport":
        call = _embedded(row.get("calls"))
        values = {k: v for k, v in row.items() if k != "calls"}
        return cls(**values, call_time=call.get("call_time") if call else None)


class DashboardStats(BaseModel):
    num_calls: int = 0
    num_escalated: int = 0
    avg_risk: str = "N/A"


class CallVolume(BaseModel):
    labels: list[str] = Field(default_factory=list)
    data: list[int] = Field(default_factory=list)


class PatientPayload(BaseModel):
    """Create/update body for a patient; blank optional fields become None."""

    full_name: str = Field(..., min_length=1, max_length=200)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    last_visit: Optional[str] = None
    condition_type: Optional[str] = Field(default=None, max_length=100)
    doctor_id: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("full_name must not be blank")
        return v

    @field_validator("phone_number", "last_visit", "condition_type", "doctor_id")
    @classmethod
    def _strip_empty(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v


__all__ = [
    "Alert",
    "Call",
    "CallVolume",
    "DashboardStats",
    "Doctor",
    "Patient",
    "PatientPayload",
    "SymptomReport",
    "flatten_patient_name",
]
