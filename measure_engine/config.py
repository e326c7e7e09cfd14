"""
Measure Engine Settings
Environment-driven configuration for the derived measure engine.

Environment Variables:
- DATABASE_URL: PostgreSQL DSN used by the psycopg2 stores
- MEASURE_CACHE_TTL_SECONDS: definition cache TTL (default 300)
- MEASURE_CYCLE_POLICY: "skip" or "raise" (default "skip")
- MEASURE_DEFAULT_DECIMAL_PLACES: precision fallback (default 2)
- MEASURE_ENGINE_LOG_LEVEL: logger level (default INFO)
"""

import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

DEFAULT_CACHE_TTL_SECONDS = 5 * 60
DEFAULT_DECIMAL_PLACES = 2
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")


class CyclePolicy(str, Enum):
    """What topological ordering does when calculated measures form a loop."""
    SKIP = "skip"
    RAISE = "raise"


class EngineSettings(BaseModel):
    database_url: Optional[str] = None
    cache_ttl_seconds: float = Field(default=DEFAULT_CACHE_TTL_SECONDS, ge=0)
    cycle_policy: CyclePolicy = CyclePolicy.SKIP
    default_decimal_places: int = Field(default=DEFAULT_DECIMAL_PLACES, ge=0)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}. Use one of {', '.join(LOG_LEVELS)}")
        return v

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from the process environment."""
        raw = {
            "database_url": os.getenv("DATABASE_URL"),
            "cache_ttl_seconds": os.getenv("MEASURE_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS),
            "cycle_policy": os.getenv("MEASURE_CYCLE_POLICY", CyclePolicy.SKIP.value).lower(),
            "default_decimal_places": os.getenv("MEASURE_DEFAULT_DECIMAL_PLACES", DEFAULT_DECIMAL_PLACES),
            "log_level": os.getenv("MEASURE_ENGINE_LOG_LEVEL", "INFO").upper(),
        }
        try:
            return cls(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid measure engine settings: {e}") from e
