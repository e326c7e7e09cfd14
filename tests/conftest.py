"""
Shared fixtures for measure engine tests.
"""

import pytest
from datetime import datetime, timedelta, timezone

from measure_engine import (
    DerivedMeasureEngine,
    EngineSettings,
    InMemoryMeasureCatalog,
    InMemoryMeasurementStore,
    MeasureDefinition,
    MeasureType,
    extract_dependencies,
)

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def day(n: float) -> datetime:
    """Timestamp n days after T0."""
    return T0 + timedelta(days=n)


def numeric(name: str) -> MeasureDefinition:
    return MeasureDefinition(name=name, measure_type=MeasureType.NUMERIC)


def calculated(name: str, formula: str, decimal_places: int = 2) -> MeasureDefinition:
    return MeasureDefinition(
        name=name,
        measure_type=MeasureType.CALCULATED,
        formula=formula,
        dependencies=extract_dependencies(formula),
        decimal_places=decimal_places,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    """weight, height, bmi and a chained bmi_x10 (bmi_x10 <- bmi <- weight/height)."""
    return InMemoryMeasureCatalog([
        numeric("weight"),
        numeric("height"),
        calculated("bmi", "{weight} / ({height} * {height})", 2),
        calculated("bmi_x10", "{bmi} * 10", 1),
    ])


@pytest.fixture
def store():
    return InMemoryMeasurementStore()


@pytest.fixture
def engine(catalog, store, clock):
    return DerivedMeasureEngine(catalog, store, settings=EngineSettings(), clock=clock)


@pytest.fixture
def record(catalog, store):
    """Record a raw measurement by measure name."""
    def _record(patient_id: str, name: str, at: datetime, value: float):
        definition = catalog.find_definition_by_name(name)
        return store.insert(patient_id, definition.id, at, value, recorded_by="nurse-1")
    return _record


@pytest.fixture
def stored(catalog, store):
    """All stored values for (patient, measure name), oldest first."""
    def _stored(patient_id: str, name: str):
        definition = catalog.find_definition_by_name(name)
        rows = [
            m for m in store.measurements
            if m.patient_id == patient_id and m.measure_id == definition.id
        ]
        return sorted(rows, key=lambda m: (m.measured_at, m.sequence))
    return _stored
