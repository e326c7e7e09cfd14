"""
Time-Series Resolution Tests
current / previous / delta / avgN / exact token resolution against the
in-memory measurement store.

Weight history used throughout: 80 at day 0, 78 at day 10, 76 at day 20.
"""

import pytest

from conftest import day
from measure_engine.timeseries import TimeSeriesResolver
from measure_engine.tokens import parse_dependency_token


@pytest.fixture
def resolver(catalog, store):
    return TimeSeriesResolver(catalog, store)


@pytest.fixture
def weights(record):
    record("p1", "weight", day(0), 80)
    record("p1", "weight", day(10), 78)
    record("p1", "weight", day(20), 76)


def resolve(resolver, text, at, patient_id="p1"):
    return resolver.resolve(parse_dependency_token(text), patient_id, at)


# ============================================================
# TEST: MODIFIERS
# ============================================================

@pytest.mark.usefixtures("weights")
class TestModifiers:

    def test_current(self, resolver):
        assert resolve(resolver, "current:weight", day(20)) == 76

    def test_current_between_points(self, resolver):
        assert resolve(resolver, "current:weight", day(15)) == 78

    def test_previous(self, resolver):
        assert resolve(resolver, "previous:weight", day(20)) == 78

    def test_delta(self, resolver):
        assert resolve(resolver, "delta:weight", day(20)) == -2

    def test_average_window(self, resolver):
        assert resolve(resolver, "avg30:weight", day(20)) == 78

    def test_average_bounds_inclusive(self, resolver):
        # [day 10, day 20] includes both ends
        assert resolve(resolver, "avg10:weight", day(20)) == 77

    def test_exact(self, resolver):
        assert resolve(resolver, "weight", day(10)) == 78
        assert resolve(resolver, "weight", day(15)) is None

    def test_future_points_ignored(self, resolver):
        assert resolve(resolver, "current:weight", day(5)) == 80
        assert resolve(resolver, "previous:weight", day(5)) is None
        assert resolve(resolver, "delta:weight", day(5)) is None


# ============================================================
# TEST: MISSING DATA
# ============================================================

class TestMissing:

    def test_empty_history(self, resolver):
        assert resolve(resolver, "current:weight", day(0)) is None
        assert resolve(resolver, "avg30:weight", day(0)) is None

    def test_empty_average_window(self, resolver, record):
        record("p1", "weight", day(0), 80)
        assert resolve(resolver, "avg7:weight", day(30)) is None

    def test_other_patient_not_visible(self, resolver, record):
        record("p2", "weight", day(0), 80)
        assert resolve(resolver, "current:weight", day(0)) is None

    def test_unknown_measure(self, resolver, caplog):
        with caplog.at_level("WARNING"):
            assert resolve(resolver, "current:nope", day(0)) is None
        assert "Dependency not found: nope" in caplog.text


# ============================================================
# TEST: TIES & VALUE MAPS
# ============================================================

class TestTiesAndValueMaps:

    def test_same_timestamp_latest_recorded_wins(self, resolver, record):
        record("p1", "weight", day(0), 80)
        record("p1", "weight", day(0), 81)
        assert resolve(resolver, "current:weight", day(0)) == 81
        assert resolve(resolver, "previous:weight", day(0)) == 80
        assert resolve(resolver, "weight", day(0)) == 81

    @pytest.mark.usefixtures("weights")
    def test_resolve_all_keys_by_token_text(self, resolver):
        tokens = [parse_dependency_token(t) for t in ("weight", "current:weight", "previous:weight")]
        values = resolver.resolve_all(tokens, "p1", day(20))
        assert values == {"weight": 76, "current:weight": 76, "previous:weight": 78}
