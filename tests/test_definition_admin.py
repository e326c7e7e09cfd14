"""
Calculated Measure Administration Tests
Creating calculated measures and editing formulas (validation, dependency
checks, cycle refusal, cache invalidation, backfill on change).
"""

import pytest

from conftest import day
from measure_engine import (
    ConfigurationError,
    CycleDetectedError,
    DefinitionNotFoundError,
    MeasureDefinitionAdmin,
)


@pytest.fixture
def admin(catalog, engine):
    return MeasureDefinitionAdmin(catalog, engine)


# ============================================================
# TEST: CREATE
# ============================================================

class TestCreate:

    def test_creates_with_derived_dependencies(self, admin, catalog):
        definition = admin.create_calculated_definition(
            "weight_change", "{current:weight} - {previous:weight}", decimal_places=1, unit="kg"
        )
        assert definition.dependencies == ["current:weight", "previous:weight"]
        assert definition.base_dependencies == ["weight"]
        assert definition.unit == "kg"
        assert catalog.find_definition_by_name("weight_change") is not None

    def test_new_definition_visible_immediately(self, admin, engine):
        assert len(engine.list_calculated_definitions()) == 2
        admin.create_calculated_definition("weight_x2", "{weight} * 2")
        assert len(engine.list_calculated_definitions()) == 3

    def test_duplicate_name(self, admin):
        with pytest.raises(ConfigurationError, match="already exists"):
            admin.create_calculated_definition("bmi", "{weight} * 2")

    def test_invalid_formula(self, admin):
        with pytest.raises(ConfigurationError, match="Invalid formula"):
            admin.create_calculated_definition("broken", "{weight} +")

    def test_unknown_dependency(self, admin):
        with pytest.raises(ConfigurationError, match="Dependency not found: steps"):
            admin.create_calculated_definition("pace", "{avg7:steps} / 7")

    def test_self_reference(self, admin):
        with pytest.raises(CycleDetectedError):
            admin.create_calculated_definition("loop", "{loop} + 1")


# ============================================================
# TEST: UPDATE FORMULA
# ============================================================

class TestUpdateFormula:

    def test_change_triggers_backfill(self, admin, catalog, record, stored):
        record("p1", "weight", day(0), 70)
        record("p1", "height", day(0), 1.75)
        bmi = catalog.find_definition_by_name("bmi")

        outcome = admin.update_formula(bmi.id, "{weight} * 2", actor="admin-1")
        assert outcome.formula_changed
        assert outcome.definition.dependencies == ["weight"]
        assert outcome.backfill.values_calculated == 1
        assert [m.value for m in stored("p1", "bmi")] == [140]
        assert stored("p1", "bmi")[0].recorded_by == "admin-1"

    def test_unchanged_formula_skips_backfill(self, admin, catalog):
        bmi = catalog.find_definition_by_name("bmi")
        outcome = admin.update_formula(bmi.id, bmi.formula, decimal_places=3)
        assert not outcome.formula_changed
        assert outcome.backfill is None
        assert catalog.find_definition_by_id(bmi.id).decimal_places == 3

    def test_backfill_can_be_deferred(self, admin, catalog):
        bmi = catalog.find_definition_by_name("bmi")
        outcome = admin.update_formula(bmi.id, "{weight} * 2", run_backfill=False)
        assert outcome.formula_changed
        assert outcome.backfill is None

    def test_refuses_cycle(self, admin, catalog):
        bmi = catalog.find_definition_by_name("bmi")
        with pytest.raises(CycleDetectedError) as exc:
            admin.update_formula(bmi.id, "{bmi_x10} / 10")
        assert exc.value.cycle == ["bmi", "bmi_x10", "bmi"]
        assert catalog.find_definition_by_id(bmi.id).formula == bmi.formula

    def test_unknown_definition(self, admin):
        with pytest.raises(DefinitionNotFoundError):
            admin.update_formula("missing-id", "{weight}")

    def test_non_calculated(self, admin, catalog):
        weight = catalog.find_definition_by_name("weight")
        with pytest.raises(ConfigurationError):
            admin.update_formula(weight.id, "{height}")


# ============================================================
# TEST: TEMPLATES
# ============================================================

class TestCreateFromTemplate:

    def test_creates_from_template(self, admin, record, engine):
        definition = admin.create_from_template("bmi", name="body_mass_index")
        assert definition.name == "body_mass_index"
        assert definition.formula == "{weight} / ({height} * {height})"
        assert definition.decimal_places == 2
        assert definition.unit == "kg/m²"
        assert definition.display_name == "BMI (Body Mass Index)"

        record("p1", "weight", day(0), 70)
        record("p1", "height", day(0), 1.75)
        assert engine.evaluate(definition, "p1", day(0)) == 22.86

    def test_overrides(self, admin):
        definition = admin.create_from_template("weight_change", decimal_places=2, display_name="Delta")
        assert definition.name == "weight_change"
        assert definition.decimal_places == 2
        assert definition.display_name == "Delta"

    def test_unknown_template(self, admin):
        with pytest.raises(DefinitionNotFoundError, match="template not found"):
            admin.create_from_template("nope")

    def test_template_dependencies_must_exist(self, admin):
        with pytest.raises(ConfigurationError, match="Dependency not found: height_cm"):
            admin.create_from_template("bmi_cm")
