"""
Measure Engine Collaborators
============================
Interfaces the engine consumes (measure catalog, measurement store) and
in-memory implementations used by tests, scripts and embedding hosts that
keep their own persistence.

A PostgreSQL implementation lives in measure_engine.postgres.
"""

import abc
import itertools
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence

from .models import MeasureDefinition, Measurement, MeasureType


# =============================================================================
# INTERFACES
# =============================================================================

class MeasureCatalog(abc.ABC):
    """Read side of measure definitions, plus the admin write."""

    @abc.abstractmethod
    def find_calculated_definitions(self) -> List[MeasureDefinition]:
        """All active calculated-type definitions."""

    @abc.abstractmethod
    def find_definition_by_name(self, name: str) -> Optional[MeasureDefinition]:
        pass

    @abc.abstractmethod
    def find_definition_by_id(self, definition_id: str) -> Optional[MeasureDefinition]:
        pass

    @abc.abstractmethod
    def save_definition(self, definition: MeasureDefinition) -> MeasureDefinition:
        """Insert or replace a definition by id."""


class MeasurementStore(abc.ABC):
    """
    Time-stamped numeric observations per patient per measure.

    Ordering for "most recent" lookups is measured_at descending, then
    creation order descending.
    """

    @abc.abstractmethod
    def find_exact_at(self, patient_id: str, measure_id: str, timestamp: datetime) -> Optional[Measurement]:
        """Latest-created measurement with measured_at == timestamp."""

    @abc.abstractmethod
    def find_most_recent_before(
        self, patient_id: str, measure_id: str, timestamp: datetime, offset: int = 0
    ) -> Optional[Measurement]:
        """
        Measurement at or before timestamp. offset=0 is the most recent,
        offset=1 the second most recent, and so on.
        """

    @abc.abstractmethod
    def find_in_range(
        self, patient_id: str, measure_id: str, start: datetime, end: datetime
    ) -> List[Measurement]:
        """Measurements with start <= measured_at <= end, oldest first."""

    @abc.abstractmethod
    def find_distinct_timestamps_for_dependencies(
        self, patient_id: str, measure_ids: Sequence[str]
    ) -> List[datetime]:
        """Distinct measured_at values (ascending) for any of the given measures."""

    @abc.abstractmethod
    def find_patients_with_measures(self, measure_ids: Sequence[str]) -> List[str]:
        """Patients with at least one measurement for any of the given measures."""

    @abc.abstractmethod
    def insert(
        self,
        patient_id: str,
        measure_id: str,
        timestamp: datetime,
        value: Optional[float],
        recorded_by: Optional[str] = None,
    ) -> Measurement:
        """Record a new observation (raw recording flows)."""

    @abc.abstractmethod
    def upsert(
        self,
        patient_id: str,
        measure_id: str,
        timestamp: datetime,
        value: float,
        recorded_by: Optional[str] = None,
    ) -> Measurement:
        """Update the measurement at (patient, measure, timestamp) or insert one. Atomic."""

    @abc.abstractmethod
    def delete_at(self, patient_id: str, measure_id: str, timestamp: datetime) -> int:
        """Delete every measurement at (patient, measure, timestamp). Returns the count."""


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryMeasureCatalog(MeasureCatalog):
    def __init__(self, definitions: Iterable[MeasureDefinition] = ()):
        self._by_id: Dict[str, MeasureDefinition] = {}
        for definition in definitions:
            self.save_definition(definition)

    def find_calculated_definitions(self) -> List[MeasureDefinition]:
        return [
            d for d in self._by_id.values()
            if d.measure_type == MeasureType.CALCULATED and d.is_active
        ]

    def find_definition_by_name(self, name: str) -> Optional[MeasureDefinition]:
        for definition in self._by_id.values():
            if definition.name == name:
                return definition
        return None

    def find_definition_by_id(self, definition_id: str) -> Optional[MeasureDefinition]:
        return self._by_id.get(definition_id)

    def save_definition(self, definition: MeasureDefinition) -> MeasureDefinition:
        self._by_id[definition.id] = definition
        return definition


class InMemoryMeasurementStore(MeasurementStore):
    def __init__(self):
        self._rows: List[Measurement] = []
        self._sequence = itertools.count(1)
        self._lock = Lock()

    @property
    def measurements(self) -> List[Measurement]:
        return list(self._rows)

    def _series(self, patient_id: str, measure_id: str) -> List[Measurement]:
        return [r for r in self._rows if r.patient_id == patient_id and r.measure_id == measure_id]

    @staticmethod
    def _newest_first(rows: List[Measurement]) -> List[Measurement]:
        return sorted(rows, key=lambda r: (r.measured_at, r.sequence), reverse=True)

    def find_exact_at(self, patient_id, measure_id, timestamp):
        rows = [r for r in self._series(patient_id, measure_id) if r.measured_at == timestamp]
        return self._newest_first(rows)[0] if rows else None

    def find_most_recent_before(self, patient_id, measure_id, timestamp, offset=0):
        rows = self._newest_first(
            [r for r in self._series(patient_id, measure_id) if r.measured_at <= timestamp]
        )
        return rows[offset] if len(rows) > offset else None

    def find_in_range(self, patient_id, measure_id, start, end):
        rows = [r for r in self._series(patient_id, measure_id) if start <= r.measured_at <= end]
        return sorted(rows, key=lambda r: (r.measured_at, r.sequence))

    def find_distinct_timestamps_for_dependencies(self, patient_id, measure_ids):
        wanted = set(measure_ids)
        return sorted({
            r.measured_at for r in self._rows
            if r.patient_id == patient_id and r.measure_id in wanted
        })

    def find_patients_with_measures(self, measure_ids):
        wanted = set(measure_ids)
        return sorted({r.patient_id for r in self._rows if r.measure_id in wanted})

    def insert(self, patient_id, measure_id, timestamp, value, recorded_by=None):
        with self._lock:
            row = Measurement(
                patient_id=patient_id,
                measure_id=measure_id,
                measured_at=timestamp,
                value=value,
                recorded_by=recorded_by,
                sequence=next(self._sequence),
            )
            self._rows.append(row)
            return row

    def upsert(self, patient_id, measure_id, timestamp, value, recorded_by=None):
        with self._lock:
            existing = self.find_exact_at(patient_id, measure_id, timestamp)
            if existing is not None:
                existing.value = value
                existing.recorded_by = recorded_by
                return existing
            row = Measurement(
                patient_id=patient_id,
                measure_id=measure_id,
                measured_at=timestamp,
                value=value,
                recorded_by=recorded_by,
                sequence=next(self._sequence),
            )
            self._rows.append(row)
            return row

    def delete_at(self, patient_id, measure_id, timestamp):
        with self._lock:
            before = len(self._rows)
            self._rows = [
                r for r in self._rows
                if not (r.patient_id == patient_id and r.measure_id == measure_id and r.measured_at == timestamp)
            ]
            return before - len(self._rows)
