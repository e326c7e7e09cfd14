"""
Derived Measure Engine v1.0
===========================
Calculated health measures (BMI, weight change, rolling averages) computed
from the measures their formulas reference.

Usage:
    from measure_engine import get_engine

    engine = get_engine()
    engine.recalculate_dependents(patient_id, "weight", measured_at, actor=user_id)
"""

import logging
from typing import Optional

from measure_engine.admin import FormulaUpdateResult, MeasureDefinitionAdmin
from measure_engine.config import CyclePolicy, EngineSettings
from measure_engine.engine import DerivedMeasureEngine, Evaluation, EvaluationStatus
from measure_engine.errors import (
    ConfigurationError,
    CycleDetectedError,
    DefinitionNotFoundError,
    FormulaArithmeticError,
    MeasureEngineError,
    MeasureErrorCode,
    MissingValueError,
    StoreError,
)
from measure_engine.formula import (
    FormulaResult,
    FormulaValidation,
    available_operators,
    evaluate_formula,
    extract_dependencies,
    validate_formula,
)
from measure_engine.graph import DependencyOrder, detect_circular_dependencies, topological_order
from measure_engine.models import (
    BackfillResult,
    CalculatedValue,
    CascadeResult,
    MeasureDefinition,
    Measurement,
    MeasureType,
)
from measure_engine.store import (
    InMemoryMeasureCatalog,
    InMemoryMeasurementStore,
    MeasureCatalog,
    MeasurementStore,
)
from measure_engine.templates import FORMULA_TEMPLATES, get_template, get_templates
from measure_engine.tokens import DependencyToken, Modifier, parse_dependency_token

__version__ = "1.0.0"


def get_engine(
    catalog: Optional[MeasureCatalog] = None,
    store: Optional[MeasurementStore] = None,
    settings: Optional[EngineSettings] = None,
) -> DerivedMeasureEngine:
    """
    Build an engine. Missing collaborators default to the PostgreSQL stores
    when DATABASE_URL is set, otherwise to in-memory ones.
    """
    settings = settings or EngineSettings.from_env()
    logging.getLogger("measure_engine").setLevel(settings.log_level)

    if catalog is None or store is None:
        if settings.database_url:
            from measure_engine.postgres import PostgresMeasureCatalog, PostgresMeasurementStore
            catalog = catalog or PostgresMeasureCatalog(settings.database_url)
            store = store or PostgresMeasurementStore(settings.database_url)
        else:
            catalog = catalog or InMemoryMeasureCatalog()
            store = store or InMemoryMeasurementStore()

    return DerivedMeasureEngine(catalog, store, settings=settings)


__all__ = [
    "BackfillResult",
    "CalculatedValue",
    "CascadeResult",
    "ConfigurationError",
    "CycleDetectedError",
    "CyclePolicy",
    "DefinitionNotFoundError",
    "DependencyOrder",
    "DependencyToken",
    "DerivedMeasureEngine",
    "EngineSettings",
    "FORMULA_TEMPLATES",
    "Evaluation",
    "EvaluationStatus",
    "FormulaArithmeticError",
    "FormulaResult",
    "FormulaUpdateResult",
    "FormulaValidation",
    "InMemoryMeasureCatalog",
    "InMemoryMeasurementStore",
    "MeasureCatalog",
    "MeasureDefinition",
    "MeasureDefinitionAdmin",
    "MeasureEngineError",
    "MeasureErrorCode",
    "MeasureType",
    "Measurement",
    "MeasurementStore",
    "MissingValueError",
    "Modifier",
    "StoreError",
    "available_operators",
    "detect_circular_dependencies",
    "evaluate_formula",
    "extract_dependencies",
    "get_engine",
    "get_template",
    "get_templates",
    "parse_dependency_token",
    "topological_order",
    "validate_formula",
]
