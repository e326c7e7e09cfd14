"""
Measure Engine Data Models
Pydantic schemas shared by the engine, the stores and the admin layer.

Usage:
    from measure_engine.models import MeasureDefinition, Measurement, MeasureType
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .tokens import DependencyToken, base_measure_name, parse_dependency_token


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeasureType(str, Enum):
    NUMERIC = "numeric"
    TEXT = "text"
    BOOLEAN = "boolean"
    CALCULATED = "calculated"


# =============================================================================
# DEFINITIONS
# =============================================================================

class MeasureDefinition(BaseModel):
    """
    A tracked measure. Identity is the unique ``name``; formula and
    dependencies only apply to calculated measures and may be edited by an
    administrator, which triggers a full backfill.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    measure_type: MeasureType = MeasureType.NUMERIC
    formula: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    decimal_places: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True
    display_name: Optional[str] = None
    unit: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Measure name cannot be empty")
        return v

    @model_validator(mode="after")
    def calculated_requires_formula(self) -> "MeasureDefinition":
        if self.measure_type == MeasureType.CALCULATED and not (self.formula or "").strip():
            raise ValueError("Formula is required for calculated measures")
        return self

    @property
    def is_calculated(self) -> bool:
        return self.measure_type == MeasureType.CALCULATED

    @property
    def dependency_tokens(self) -> List[DependencyToken]:
        """Declared dependencies parsed into tokens (raises ConfigurationError if malformed)."""
        return [parse_dependency_token(dep) for dep in self.dependencies]

    @property
    def base_dependencies(self) -> List[str]:
        """Dependency measure names with modifiers stripped, de-duplicated, in declared order."""
        seen: List[str] = []
        for dep in self.dependencies:
            name = base_measure_name(dep)
            if name not in seen:
                seen.append(name)
        return seen


# =============================================================================
# OBSERVATIONS
# =============================================================================

class Measurement(BaseModel):
    """A single time-stamped observation for one patient and one measure."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str
    measure_id: str
    measured_at: datetime
    value: Optional[float] = None
    recorded_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    sequence: int = 0  # creation order, breaks measured_at ties


# =============================================================================
# RESULTS
# =============================================================================

class CalculatedValue(BaseModel):
    measure_name: str
    value: float
    measured_at: datetime


class CascadeResult(BaseModel):
    """Outcome of recalculate_dependents."""
    count: int = 0
    calculated: List[CalculatedValue] = Field(default_factory=list)
    skipped_cycles: List[str] = Field(default_factory=list)


class BackfillResult(BaseModel):
    """Outcome of recalculate_all_values_for_measure."""
    measure_name: str
    patients_affected: int = 0
    values_calculated: int = 0
    values_removed: int = 0
    cancelled: bool = False
