"""
Measure Engine Error Taxonomy
=============================
Exceptions raised by the formula evaluator, the derived measure engine and
the storage adapters.

Per-measure failures (configuration, arithmetic, missing values, cycles) are
caught inside cascades and logged. StoreError is the only one that is
allowed to abort a cascade or backfill.
"""

from enum import Enum
from typing import List, Optional


class MeasureErrorCode(str, Enum):
    CONFIGURATION = "CONFIGURATION"
    ARITHMETIC = "ARITHMETIC"
    MISSING_VALUE = "MISSING_VALUE"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    STORE = "STORE"
    NOT_FOUND = "NOT_FOUND"


class MeasureEngineError(Exception):
    """Base exception for measure engine failures."""

    error_code = MeasureErrorCode.CONFIGURATION

    def __init__(self, message: str, error_code: Optional[MeasureErrorCode] = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        super().__init__(f"{self.error_code.value}: {message}")


class ConfigurationError(MeasureEngineError):
    """Malformed formula, unknown function or token syntax, bad settings."""
    error_code = MeasureErrorCode.CONFIGURATION


class FormulaArithmeticError(MeasureEngineError):
    """Division by zero or a non-finite intermediate/final result."""
    error_code = MeasureErrorCode.ARITHMETIC


class MissingValueError(MeasureEngineError):
    """A referenced token has no value in the value map."""
    error_code = MeasureErrorCode.MISSING_VALUE

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Missing value for variable: {token}")


class CycleDetectedError(MeasureEngineError):
    """Calculated measures depend on each other in a loop."""
    error_code = MeasureErrorCode.CYCLE_DETECTED

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class StoreError(MeasureEngineError):
    """Catalog or measurement store I/O failure."""
    error_code = MeasureErrorCode.STORE


class DefinitionNotFoundError(MeasureEngineError):
    """A measure definition id or name does not exist."""
    error_code = MeasureErrorCode.NOT_FOUND
