"""
Derived Measure Engine v1.0
===========================
Computes calculated measures (BMI, weight change, rolling averages, ...)
from the measures their formulas reference.

This module:
- Caches calculated measure definitions (TTL, explicit invalidation)
- Finds the calculated measures affected by a changed measure
- Orders them so dependencies are computed first
- Resolves dependency values, including time-series modifiers
- Writes results back through the measurement store
- Rebuilds a measure's full history when its formula changes

Failures for a single measure (missing dependency, formula error, cycle)
never abort a cascade; they are logged and the measure is skipped for that
round. Store failures propagate.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .cache import DefinitionCache
from .config import EngineSettings
from .errors import (
    ConfigurationError,
    DefinitionNotFoundError,
    MeasureEngineError,
    MeasureErrorCode,
    StoreError,
)
from .formula import evaluate_formula, utc_today
from .graph import topological_order
from .models import BackfillResult, CalculatedValue, CascadeResult, MeasureDefinition
from .store import MeasureCatalog, MeasurementStore
from .timeseries import TimeSeriesResolver

logger = logging.getLogger("measure_engine")
logger.setLevel(logging.INFO)


class EvaluationStatus(str, Enum):
    CALCULATED = "CALCULATED"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    FORMULA_ERROR = "FORMULA_ERROR"


@dataclass
class Evaluation:
    """Detailed outcome of evaluating one calculated measure at one timestamp."""
    status: EvaluationStatus
    value: Optional[float] = None
    missing: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[MeasureErrorCode] = None

    @property
    def has_value(self) -> bool:
        return self.status == EvaluationStatus.CALCULATED


class DerivedMeasureEngine:
    """
    Engine instance owning its own definition cache.

    Args:
        catalog: Measure definitions
        store: Measurement reads and writes
        settings: Cache TTL, cycle policy, default precision
        clock: Monotonic clock for the cache (tests inject a fake)
        today: Date provider for today()/age_years() in formulas
    """

    def __init__(
        self,
        catalog: MeasureCatalog,
        store: MeasurementStore,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = utc_today,
    ):
        self.catalog = catalog
        self.store = store
        self.settings = settings or EngineSettings()
        self.resolver = TimeSeriesResolver(catalog, store)
        self._today = today
        self._cache = DefinitionCache(
            loader=catalog.find_calculated_definitions,
            ttl_seconds=self.settings.cache_ttl_seconds,
            clock=clock,
        )

    # ===== DEFINITIONS =====

    def list_calculated_definitions(self) -> List[MeasureDefinition]:
        return self._cache.get()

    def clear_cache(self) -> None:
        self._cache.invalidate()

    def dependents_of(self, measure_name: str) -> List[MeasureDefinition]:
        """Calculated definitions that directly reference measure_name (any modifier)."""
        return [
            d for d in self.list_calculated_definitions()
            if measure_name in d.base_dependencies
        ]

    def transitive_dependents(self, measure_name: str) -> List[MeasureDefinition]:
        """Every calculated definition reachable from measure_name, in discovery order."""
        found: List[MeasureDefinition] = []
        seen = {measure_name}
        frontier = [measure_name]
        while frontier:
            current = frontier.pop(0)
            for definition in self.dependents_of(current):
                if definition.name in seen:
                    continue
                seen.add(definition.name)
                found.append(definition)
                frontier.append(definition.name)
        return found

    # ===== EVALUATION =====

    def evaluate_detailed(self, definition: MeasureDefinition, patient_id: str, measured_at: datetime) -> Evaluation:
        """
        Evaluate one calculated measure for one patient at one timestamp.

        Raises ConfigurationError if the definition is not a calculated
        measure. Store failures propagate as StoreError.
        """
        if not definition.is_calculated or not definition.formula:
            raise ConfigurationError(f"Measure {definition.name} is not a calculated type or has no formula")

        try:
            tokens = definition.dependency_tokens
        except ConfigurationError as e:
            logger.warning(f"Invalid dependencies for {definition.name}: {e.message}")
            return Evaluation(EvaluationStatus.FORMULA_ERROR, error=e.message, error_code=e.error_code)

        values = self.resolver.resolve_all(tokens, patient_id, measured_at)
        missing = [token for token, value in values.items() if value is None]
        if missing:
            logger.debug(f"Missing dependencies for {definition.name} ({', '.join(missing)}), skipping calculation")
            return Evaluation(EvaluationStatus.MISSING_DEPENDENCY, missing=missing)

        decimal_places = definition.decimal_places
        if decimal_places is None:
            decimal_places = self.settings.default_decimal_places

        result = evaluate_formula(definition.formula, values, decimal_places, today=self._today())
        if not result.success:
            logger.warning(f"Formula evaluation failed for {definition.name}: {result.error}")
            return Evaluation(EvaluationStatus.FORMULA_ERROR, error=result.error, error_code=result.error_code)

        return Evaluation(EvaluationStatus.CALCULATED, value=result.result)

    def evaluate(self, definition: MeasureDefinition, patient_id: str, measured_at: datetime) -> Optional[float]:
        """Calculated value, or None when there is no result this round."""
        return self.evaluate_detailed(definition, patient_id, measured_at).value

    # ===== CASCADE =====

    def recalculate_dependents(
        self,
        patient_id: str,
        changed_measure_name: str,
        measured_at: datetime,
        actor: Optional[str] = None,
    ) -> CascadeResult:
        """
        Recompute every calculated measure depending (directly or
        transitively) on changed_measure_name at measured_at.

        Results are upserted in dependency order, so later measures read
        the values written earlier in the same call. A measure with no
        result keeps whatever value it had.
        """
        dependents = self.transitive_dependents(changed_measure_name)
        if not dependents:
            return CascadeResult()

        order = topological_order(dependents, on_cycle=self.settings.cycle_policy)
        result = CascadeResult(skipped_cycles=order.cyclic)

        for definition in order.ordered:
            try:
                evaluation = self.evaluate_detailed(definition, patient_id, measured_at)
            except StoreError as e:
                logger.error(f"Store failure while calculating {definition.name}: {e.message}")
                raise
            except MeasureEngineError as e:
                logger.warning(f"Error calculating {definition.name}: {e.message}")
                continue

            if not evaluation.has_value:
                continue

            try:
                self.store.upsert(patient_id, definition.id, measured_at, evaluation.value, recorded_by=actor)
            except StoreError as e:
                logger.error(f"Store failure while saving {definition.name}: {e.message}")
                raise

            result.calculated.append(
                CalculatedValue(measure_name=definition.name, value=evaluation.value, measured_at=measured_at)
            )
            logger.info(f"Calculated {definition.name} = {evaluation.value} for patient {patient_id}")

        result.count = len(result.calculated)
        return result

    # ===== BACKFILL =====

    def recalculate_all_values_for_measure(
        self,
        definition_id: str,
        actor: Optional[str] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> BackfillResult:
        """
        Rebuild the full history of a calculated measure after its formula
        or dependencies changed.

        Every patient with a dependency measurement (or an existing value of
        the measure) is visited; at each relevant timestamp the value is
        recomputed and rewritten, and stale values whose dependencies are
        now missing are removed. Each write is independent, so a cancelled
        or failed run keeps what it already wrote.

        This is an offline job. should_cancel is polled between patients.
        """
        definition = self.catalog.find_definition_by_id(definition_id)
        if definition is None:
            raise DefinitionNotFoundError(f"Measure definition not found: {definition_id}")
        if not definition.is_calculated:
            raise ConfigurationError(f"Measure {definition.name} is not a calculated type")

        dependency_ids: List[str] = []
        for name in definition.base_dependencies:
            dependency = self.catalog.find_definition_by_name(name)
            if dependency is None:
                logger.warning(f"Dependency not found: {name} (for {definition.name})")
                continue
            dependency_ids.append(dependency.id)

        logger.info(f"Starting bulk recalculation for {definition.name}...")
        result = BackfillResult(measure_name=definition.name)
        patient_ids = self.store.find_patients_with_measures(dependency_ids + [definition.id])

        for patient_id in patient_ids:
            if should_cancel is not None and should_cancel():
                result.cancelled = True
                logger.warning(f"Bulk recalculation for {definition.name} cancelled")
                break

            calculated, removed = self._backfill_patient(definition, dependency_ids, patient_id, actor)
            result.values_calculated += calculated
            result.values_removed += removed
            if calculated:
                result.patients_affected += 1

        logger.info(
            f"Bulk recalculation complete for {definition.name}: "
            f"{result.patients_affected} patients, {result.values_calculated} values, "
            f"{result.values_removed} removed"
        )
        return result

    def _backfill_patient(
        self,
        definition: MeasureDefinition,
        dependency_ids: List[str],
        patient_id: str,
        actor: Optional[str],
    ) -> Tuple[int, int]:
        timestamps = set(self.store.find_distinct_timestamps_for_dependencies(patient_id, [definition.id]))
        if dependency_ids:
            timestamps.update(self.store.find_distinct_timestamps_for_dependencies(patient_id, dependency_ids))

        calculated = 0
        removed = 0
        for measured_at in sorted(timestamps):
            try:
                evaluation = self.evaluate_detailed(definition, patient_id, measured_at)
            except StoreError:
                raise
            except MeasureEngineError as e:
                logger.warning(f"Error recalculating {definition.name} for patient {patient_id} at {measured_at}: {e.message}")
                continue

            if evaluation.status == EvaluationStatus.CALCULATED:
                existing = self.store.find_in_range(patient_id, definition.id, measured_at, measured_at)
                if len(existing) > 1:
                    # collapse duplicates so the upsert leaves exactly one row
                    self.store.delete_at(patient_id, definition.id, measured_at)
                self.store.upsert(patient_id, definition.id, measured_at, evaluation.value, recorded_by=actor)
                calculated += 1
            elif evaluation.status == EvaluationStatus.MISSING_DEPENDENCY:
                removed += self.store.delete_at(patient_id, definition.id, measured_at)

        return calculated, removed
