"""
Calculated measure administration.

Creating or editing a calculated measure validates the formula, derives
its dependency list, checks that every dependency exists and that no
dependency loop is introduced, then invalidates the engine cache. A
formula change rebuilds the measure's history.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .engine import DerivedMeasureEngine
from .errors import ConfigurationError, CycleDetectedError, DefinitionNotFoundError
from .formula import validate_formula
from .graph import detect_circular_dependencies
from .models import BackfillResult, MeasureDefinition, MeasureType
from .store import MeasureCatalog
from .templates import get_template
from .tokens import base_measure_name

logger = logging.getLogger(__name__)


@dataclass
class FormulaUpdateResult:
    definition: MeasureDefinition
    formula_changed: bool
    backfill: Optional[BackfillResult] = None


class MeasureDefinitionAdmin:
    def __init__(self, catalog: MeasureCatalog, engine: DerivedMeasureEngine):
        self.catalog = catalog
        self.engine = engine

    def _checked_dependencies(self, name: str, formula: str, exclude_id: Optional[str] = None) -> List[str]:
        validation = validate_formula(formula)
        if not validation.valid:
            raise ConfigurationError(f"Invalid formula: {validation.error}")

        for dep in validation.dependencies:
            base = base_measure_name(dep)
            if base == name:
                raise CycleDetectedError([name, name])
            if self.catalog.find_definition_by_name(base) is None:
                raise ConfigurationError(f"Dependency not found: {base} (from {dep})")

        others: Dict[str, List[str]] = {
            d.name: d.base_dependencies
            for d in self.catalog.find_calculated_definitions()
            if d.id != exclude_id and d.name != name
        }
        proposed = []
        for dep in validation.dependencies:
            base = base_measure_name(dep)
            if base not in proposed:
                proposed.append(base)
        cycle = detect_circular_dependencies(name, proposed, others)
        if cycle:
            raise CycleDetectedError(cycle)
        return validation.dependencies

    def create_calculated_definition(
        self,
        name: str,
        formula: str,
        decimal_places: Optional[int] = 2,
        **attrs,
    ) -> MeasureDefinition:
        """Validate and save a new calculated measure."""
        if self.catalog.find_definition_by_name(name) is not None:
            raise ConfigurationError(f"Measure with name '{name}' already exists")

        dependencies = self._checked_dependencies(name, formula)
        definition = MeasureDefinition(
            name=name,
            measure_type=MeasureType.CALCULATED,
            formula=formula,
            dependencies=dependencies,
            decimal_places=decimal_places,
            **attrs,
        )
        saved = self.catalog.save_definition(definition)
        self.engine.clear_cache()
        logger.info(f"Created calculated measure {name} depending on {', '.join(dependencies)}")
        return saved

    def create_from_template(
        self,
        template_id: str,
        name: Optional[str] = None,
        **attrs,
    ) -> MeasureDefinition:
        """
        Create a calculated measure from a built-in template.

        The template's formula must reference measures that exist in the
        catalog under the template's names (e.g. weight, height for bmi).
        """
        template = get_template(template_id)
        if template is None:
            raise DefinitionNotFoundError(f"Formula template not found: {template_id}")

        attrs.setdefault("display_name", template["name"])
        attrs.setdefault("unit", template["unit"])
        return self.create_calculated_definition(
            name or template["id"],
            template["formula"],
            decimal_places=attrs.pop("decimal_places", template["decimal_places"]),
            **attrs,
        )

    def update_formula(
        self,
        definition_id: str,
        formula: str,
        actor: Optional[str] = None,
        decimal_places: Optional[int] = None,
        run_backfill: bool = True,
    ) -> FormulaUpdateResult:
        """
        Change a calculated measure's formula (and optionally precision).

        When the formula text changed and run_backfill is set, the measure's
        history is recomputed before returning. Hosts that schedule the
        backfill themselves pass run_backfill=False and call
        engine.recalculate_all_values_for_measure later.
        """
        current = self.catalog.find_definition_by_id(definition_id)
        if current is None:
            raise DefinitionNotFoundError(f"Measure definition not found: {definition_id}")
        if not current.is_calculated:
            raise ConfigurationError(f"Measure {current.name} is not a calculated type")

        dependencies = self._checked_dependencies(current.name, formula, exclude_id=current.id)
        formula_changed = formula != current.formula
        changes = {"formula": formula, "dependencies": dependencies}
        if decimal_places is not None:
            changes["decimal_places"] = decimal_places

        updated = self.catalog.save_definition(current.model_copy(update=changes))
        self.engine.clear_cache()

        backfill = None
        if formula_changed and run_backfill:
            logger.info(f"Formula changed for {current.name}, triggering bulk recalculation...")
            backfill = self.engine.recalculate_all_values_for_measure(updated.id, actor=actor)

        return FormulaUpdateResult(definition=updated, formula_changed=formula_changed, backfill=backfill)
