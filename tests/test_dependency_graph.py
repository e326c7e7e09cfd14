"""
Dependency Ordering Tests
Topological ordering of calculated measures and cycle handling.
"""

import pytest

from conftest import calculated
from measure_engine.config import CyclePolicy
from measure_engine.errors import CycleDetectedError
from measure_engine.graph import detect_circular_dependencies, topological_order


def names(definitions):
    return [d.name for d in definitions]


# ============================================================
# TEST: ORDERING
# ============================================================

class TestTopologicalOrder:

    def test_dependencies_come_first(self):
        a = calculated("a", "{weight} * 2")
        b = calculated("b", "{a} + 1")
        c = calculated("c", "{b} + {a}")
        order = topological_order([c, b, a])
        assert names(order.ordered) == ["a", "b", "c"]
        assert order.cyclic == []

    def test_time_series_dependency_orders_too(self):
        a = calculated("a", "{weight} * 2")
        b = calculated("b", "{delta:a}")
        assert names(topological_order([b, a]).ordered) == ["a", "b"]

    def test_outside_dependencies_ignored(self):
        a = calculated("a", "{weight} + {height}")
        assert names(topological_order([a]).ordered) == ["a"]

    def test_deterministic(self):
        defs = [calculated("x", "{w}"), calculated("y", "{w}"), calculated("z", "{x} + {y}")]
        first = names(topological_order(defs).ordered)
        for _ in range(5):
            assert names(topological_order(defs).ordered) == first

    def test_duplicate_names_counted_once(self):
        a = calculated("a", "{weight}")
        assert names(topological_order([a, a]).ordered) == ["a"]


# ============================================================
# TEST: CYCLES
# ============================================================

class TestCycles:

    def test_skip_leaves_cycle_out(self):
        x = calculated("x", "{y} + 1")
        y = calculated("y", "{x} + 1")
        ok = calculated("ok", "{weight} * 2")
        order = topological_order([x, y, ok])
        assert names(order.ordered) == ["ok"]
        assert sorted(order.cyclic) == ["x", "y"]
        assert order.cycles == [["x", "y", "x"]]

    def test_downstream_of_cycle_still_ordered(self):
        x = calculated("x", "{y} + 1")
        y = calculated("y", "{x} + 1")
        z = calculated("z", "{x} * 2")
        order = topological_order([z, x, y])
        assert names(order.ordered) == ["z"]
        assert sorted(order.cyclic) == ["x", "y"]

    def test_raise_policy(self):
        x = calculated("x", "{y} + 1")
        y = calculated("y", "{x} + 1")
        with pytest.raises(CycleDetectedError) as exc:
            topological_order([x, y], on_cycle=CyclePolicy.RAISE)
        assert exc.value.cycle == ["x", "y", "x"]
        assert "x -> y -> x" in str(exc.value)

    def test_self_loop(self):
        s = calculated("s", "{s} + 1")
        order = topological_order([s])
        assert order.ordered == []
        assert order.cyclic == ["s"]

    def test_skip_logs_warning(self, caplog):
        x = calculated("x", "{y}")
        y = calculated("y", "{x}")
        with caplog.at_level("WARNING"):
            topological_order([x, y])
        assert "Circular dependency detected" in caplog.text


class TestDetectCircularDependencies:

    def test_no_cycle(self):
        assert detect_circular_dependencies("c", ["a"], {"a": ["weight"], "b": ["a"]}) is None

    def test_closing_a_loop(self):
        assert detect_circular_dependencies("a", ["b"], {"b": ["a"]}) == ["a", "b", "a"]

    def test_longer_loop(self):
        cycle = detect_circular_dependencies("a", ["b"], {"b": ["c"], "c": ["a"]})
        assert cycle == ["a", "b", "c", "a"]

    def test_replaces_existing_entry(self):
        # the measure's own stored dependencies are superseded by the proposed list
        assert detect_circular_dependencies("a", ["weight"], {"a": ["b"], "b": ["a"]}) is None
