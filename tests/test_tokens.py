"""
Dependency Token Tests
Parsing of bare and modifier-prefixed formula placeholders.
"""

import pytest

from measure_engine.errors import ConfigurationError
from measure_engine.tokens import Modifier, base_measure_name, parse_dependency_token


class TestParseDependencyToken:

    def test_bare_name(self):
        token = parse_dependency_token("weight")
        assert token.text == "weight"
        assert token.measure_name == "weight"
        assert token.modifier is Modifier.EXACT
        assert not token.is_time_series

    @pytest.mark.parametrize("text,modifier", [
        ("current:weight", Modifier.CURRENT),
        ("previous:weight", Modifier.PREVIOUS),
        ("delta:weight", Modifier.DELTA),
    ])
    def test_modifiers(self, text, modifier):
        token = parse_dependency_token(text)
        assert token.modifier is modifier
        assert token.measure_name == "weight"
        assert token.is_time_series

    def test_average_window(self):
        token = parse_dependency_token("avg30:weight")
        assert token.modifier is Modifier.AVERAGE
        assert token.window_days == 30

    def test_whitespace_normalized(self):
        assert parse_dependency_token(" previous : weight ").text == "previous:weight"

    @pytest.mark.parametrize("text", ["median:weight", "avg:weight", "avg0:weight", "AVG30:weight"])
    def test_invalid_modifier(self, text):
        with pytest.raises(ConfigurationError) as exc:
            parse_dependency_token(text)
        assert "Invalid time-series modifier" in exc.value.message

    @pytest.mark.parametrize("text", ["1weight", "body-weight", "current:", ""])
    def test_invalid_measure_name(self, text):
        with pytest.raises(ConfigurationError):
            parse_dependency_token(text)


class TestBaseMeasureName:

    def test_strips_modifier(self):
        assert base_measure_name("avg7:steps") == "steps"
        assert base_measure_name("steps") == "steps"
