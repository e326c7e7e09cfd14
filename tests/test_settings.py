"""
Engine Settings Tests
Environment parsing and engine construction from settings.
"""

import logging

import pytest
from pydantic import ValidationError

from measure_engine import (
    ConfigurationError,
    CyclePolicy,
    EngineSettings,
    InMemoryMeasureCatalog,
    InMemoryMeasurementStore,
    get_engine,
)

ENV_VARS = (
    "DATABASE_URL",
    "MEASURE_CACHE_TTL_SECONDS",
    "MEASURE_CYCLE_POLICY",
    "MEASURE_DEFAULT_DECIMAL_PLACES",
    "MEASURE_ENGINE_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:

    def test_defaults(self):
        settings = EngineSettings.from_env()
        assert settings.database_url is None
        assert settings.cache_ttl_seconds == 300
        assert settings.cycle_policy == CyclePolicy.SKIP
        assert settings.default_decimal_places == 2
        assert settings.log_level == "INFO"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("MEASURE_CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("MEASURE_CYCLE_POLICY", "RAISE")
        monkeypatch.setenv("MEASURE_DEFAULT_DECIMAL_PLACES", "4")
        monkeypatch.setenv("MEASURE_ENGINE_LOG_LEVEL", "debug")
        settings = EngineSettings.from_env()
        assert settings.cache_ttl_seconds == 60
        assert settings.cycle_policy == CyclePolicy.RAISE
        assert settings.default_decimal_places == 4
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("name,value", [
        ("MEASURE_CYCLE_POLICY", "ignore"),
        ("MEASURE_CACHE_TTL_SECONDS", "-1"),
        ("MEASURE_DEFAULT_DECIMAL_PLACES", "two"),
        ("MEASURE_ENGINE_LOG_LEVEL", "verbose"),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            EngineSettings.from_env()


class TestGetEngine:

    def test_in_memory_without_database(self):
        engine = get_engine()
        assert isinstance(engine.catalog, InMemoryMeasureCatalog)
        assert isinstance(engine.store, InMemoryMeasurementStore)

    def test_explicit_collaborators(self):
        catalog = InMemoryMeasureCatalog()
        store = InMemoryMeasurementStore()
        engine = get_engine(catalog=catalog, store=store, settings=EngineSettings(cache_ttl_seconds=0))
        assert engine.catalog is catalog
        assert engine.store is store
        assert engine.settings.cache_ttl_seconds == 0

    def test_log_level_validated_on_construction(self):
        with pytest.raises(ValidationError):
            EngineSettings(log_level="verbose")
        assert EngineSettings(log_level="warning").log_level == "WARNING"

    def test_configured_log_level_applied(self, monkeypatch):
        monkeypatch.setenv("MEASURE_ENGINE_LOG_LEVEL", "warning")
        get_engine()
        assert logging.getLogger("measure_engine").level == logging.WARNING
        logging.getLogger("measure_engine").setLevel(logging.INFO)
