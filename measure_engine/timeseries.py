"""
Time-series resolution of dependency tokens.

    weight           value at exactly T
    current:weight   most recent at or before T
    previous:weight  the one before current (second most recent at or before T)
    delta:weight     current - previous
    avg30:weight     mean of values in [T - 30 days, T]

Anything that cannot be resolved is None ("missing"), never 0.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from .models import MeasureDefinition, Measurement
from .store import MeasureCatalog, MeasurementStore
from .tokens import DependencyToken, Modifier

logger = logging.getLogger(__name__)


def _value(measurement: Optional[Measurement]) -> Optional[float]:
    if measurement is None or measurement.value is None:
        return None
    return float(measurement.value)


class TimeSeriesResolver:
    def __init__(self, catalog: MeasureCatalog, store: MeasurementStore):
        self.catalog = catalog
        self.store = store

    def _definition(self, name: str, known: Dict[str, Optional[MeasureDefinition]]) -> Optional[MeasureDefinition]:
        if name not in known:
            known[name] = self.catalog.find_definition_by_name(name)
            if known[name] is None:
                logger.warning(f"Dependency not found: {name}")
        return known[name]

    def current(self, patient_id: str, measure_id: str, at: datetime) -> Optional[float]:
        return _value(self.store.find_most_recent_before(patient_id, measure_id, at, offset=0))

    def previous(self, patient_id: str, measure_id: str, at: datetime) -> Optional[float]:
        return _value(self.store.find_most_recent_before(patient_id, measure_id, at, offset=1))

    def average(self, patient_id: str, measure_id: str, at: datetime, days: int) -> Optional[float]:
        values = [
            float(m.value)
            for m in self.store.find_in_range(patient_id, measure_id, at - timedelta(days=days), at)
            if m.value is not None
        ]
        if not values:
            return None
        return sum(values) / len(values)

    def resolve(
        self,
        token: DependencyToken,
        patient_id: str,
        at: datetime,
        known: Optional[Dict[str, Optional[MeasureDefinition]]] = None,
    ) -> Optional[float]:
        """Value of one token for a patient relative to timestamp ``at``."""
        definition = self._definition(token.measure_name, known if known is not None else {})
        if definition is None:
            return None
        measure_id = definition.id

        if token.modifier is Modifier.EXACT:
            return _value(self.store.find_exact_at(patient_id, measure_id, at))
        if token.modifier is Modifier.CURRENT:
            return self.current(patient_id, measure_id, at)
        if token.modifier is Modifier.PREVIOUS:
            return self.previous(patient_id, measure_id, at)
        if token.modifier is Modifier.DELTA:
            current = self.current(patient_id, measure_id, at)
            previous = self.previous(patient_id, measure_id, at)
            if current is None or previous is None:
                return None
            return current - previous
        if token.modifier is Modifier.AVERAGE:
            return self.average(patient_id, measure_id, at, token.window_days)

        logger.warning(f"Unknown time-series modifier: {token.modifier}")
        return None

    def resolve_all(
        self, tokens: Iterable[DependencyToken], patient_id: str, at: datetime
    ) -> Dict[str, Optional[float]]:
        """Value map keyed by full token text ("current:weight" and "weight" are distinct)."""
        known: Dict[str, Optional[MeasureDefinition]] = {}
        return {token.text: self.resolve(token, patient_id, at, known) for token in tokens}
