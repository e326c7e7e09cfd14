"""
PostgreSQL stores for the measure engine (psycopg2).

One connection per operation, RealDictCursor rows. Measurements are
unique per (patient_id, measure_definition_id, measured_at) among live
rows, and calculated values are written with INSERT ... ON CONFLICT so
concurrent cascades cannot duplicate them. Soft-deleted rows
(deleted_at IS NOT NULL) are invisible to every query.

Usage:
    from measure_engine.postgres import PostgresMeasureCatalog, PostgresMeasurementStore

    store = PostgresMeasurementStore(os.getenv("DATABASE_URL"))
    store.ensure_tables()
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from .errors import StoreError
from .models import MeasureDefinition, Measurement, MeasureType
from .store import MeasureCatalog, MeasurementStore

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS measure_definitions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        name VARCHAR(100) NOT NULL UNIQUE,
        display_name VARCHAR(200),
        measure_type VARCHAR(20) NOT NULL DEFAULT 'numeric',
        unit VARCHAR(50),
        formula TEXT,
        dependencies JSONB NOT NULL DEFAULT '[]'::jsonb,
        decimal_places INTEGER,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_formula_change TIMESTAMPTZ,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        deleted_at TIMESTAMPTZ
    );

    CREATE INDEX IF NOT EXISTS idx_measure_definitions_type
        ON measure_definitions(measure_type);

    CREATE TABLE IF NOT EXISTS patient_measures (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        seq BIGSERIAL,
        patient_id VARCHAR(64) NOT NULL,
        measure_definition_id UUID NOT NULL REFERENCES measure_definitions(id),
        measured_at TIMESTAMPTZ NOT NULL,
        numeric_value DOUBLE PRECISION,
        recorded_by VARCHAR(64),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        deleted_at TIMESTAMPTZ
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_patient_measures_point
        ON patient_measures(patient_id, measure_definition_id, measured_at)
        WHERE deleted_at IS NULL;
    CREATE INDEX IF NOT EXISTS idx_patient_measures_series
        ON patient_measures(patient_id, measure_definition_id, measured_at DESC);
"""

MEASUREMENT_COLUMNS = (
    "id, seq, patient_id, measure_definition_id, measured_at, "
    "numeric_value, recorded_by, created_at"
)
NEWEST_FIRST = "ORDER BY measured_at DESC, created_at DESC, seq DESC"


class _PostgresBase:
    def __init__(self, db_url: Optional[str] = None):
        self._db_url = db_url or os.getenv("DATABASE_URL")

    def _get_conn(self):
        if not self._db_url:
            raise StoreError("DATABASE_URL is not configured")
        try:
            return psycopg2.connect(self._db_url, cursor_factory=RealDictCursor)
        except psycopg2.Error as e:
            logger.error(f"DB connection failed: {e}")
            raise StoreError(f"DB connection failed: {e}") from e

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """Cursor whose work is committed on success and rolled back on failure."""
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
            cur.close()
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Query failed: {e}")
            raise StoreError(f"Query failed: {e}") from e
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        with self._cursor() as cur:
            cur.execute(SCHEMA_SQL)


# =============================================================================
# CATALOG
# =============================================================================

def _row_to_definition(row: Dict[str, Any]) -> MeasureDefinition:
    return MeasureDefinition(
        id=str(row["id"]),
        name=row["name"],
        display_name=row.get("display_name"),
        measure_type=MeasureType(row["measure_type"]),
        unit=row.get("unit"),
        formula=row.get("formula"),
        dependencies=list(row.get("dependencies") or []),
        decimal_places=row.get("decimal_places"),
        is_active=row.get("is_active", True),
    )


class PostgresMeasureCatalog(_PostgresBase, MeasureCatalog):
    _SELECT = (
        "SELECT id, name, display_name, measure_type, unit, formula, dependencies, "
        "decimal_places, is_active FROM measure_definitions WHERE deleted_at IS NULL"
    )

    def find_calculated_definitions(self) -> List[MeasureDefinition]:
        with self._cursor() as cur:
            cur.execute(
                f"{self._SELECT} AND measure_type = %s AND is_active = TRUE ORDER BY name",
                (MeasureType.CALCULATED.value,),
            )
            return [_row_to_definition(row) for row in cur.fetchall()]

    def find_definition_by_name(self, name: str) -> Optional[MeasureDefinition]:
        with self._cursor() as cur:
            cur.execute(f"{self._SELECT} AND name = %s", (name,))
            row = cur.fetchone()
        return _row_to_definition(row) if row else None

    def find_definition_by_id(self, definition_id: str) -> Optional[MeasureDefinition]:
        with self._cursor() as cur:
            cur.execute(f"{self._SELECT} AND id = %s", (definition_id,))
            row = cur.fetchone()
        return _row_to_definition(row) if row else None

    def save_definition(self, definition: MeasureDefinition) -> MeasureDefinition:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO measure_definitions
                (id, name, display_name, measure_type, unit, formula, dependencies,
                 decimal_places, is_active, last_formula_change)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s,
                        CASE WHEN %s IS NOT NULL THEN NOW() END)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    display_name = EXCLUDED.display_name,
                    measure_type = EXCLUDED.measure_type,
                    unit = EXCLUDED.unit,
                    formula = EXCLUDED.formula,
                    dependencies = EXCLUDED.dependencies,
                    decimal_places = EXCLUDED.decimal_places,
                    is_active = EXCLUDED.is_active,
                    last_formula_change = CASE
                        WHEN measure_definitions.formula IS DISTINCT FROM EXCLUDED.formula THEN NOW()
                        ELSE measure_definitions.last_formula_change
                    END,
                    updated_at = NOW()
            """, (
                definition.id,
                definition.name,
                definition.display_name,
                definition.measure_type.value,
                definition.unit,
                definition.formula,
                Json(definition.dependencies),
                definition.decimal_places,
                definition.is_active,
                definition.formula,
            ))
        return definition


# =============================================================================
# MEASUREMENTS
# =============================================================================

def _row_to_measurement(row: Dict[str, Any]) -> Measurement:
    return Measurement(
        id=str(row["id"]),
        sequence=row.get("seq") or 0,
        patient_id=str(row["patient_id"]),
        measure_id=str(row["measure_definition_id"]),
        measured_at=row["measured_at"],
        value=row.get("numeric_value"),
        recorded_by=row.get("recorded_by"),
        created_at=row["created_at"],
    )


class PostgresMeasurementStore(_PostgresBase, MeasurementStore):
    def find_exact_at(self, patient_id, measure_id, timestamp):
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT {MEASUREMENT_COLUMNS} FROM patient_measures
                WHERE patient_id = %s AND measure_definition_id = %s
                  AND measured_at = %s AND deleted_at IS NULL
                ORDER BY created_at DESC, seq DESC
                LIMIT 1
            """, (patient_id, measure_id, timestamp))
            row = cur.fetchone()
        return _row_to_measurement(row) if row else None

    def find_most_recent_before(self, patient_id, measure_id, timestamp, offset=0):
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT {MEASUREMENT_COLUMNS} FROM patient_measures
                WHERE patient_id = %s AND measure_definition_id = %s
                  AND measured_at <= %s AND deleted_at IS NULL
                {NEWEST_FIRST}
                LIMIT 1 OFFSET %s
            """, (patient_id, measure_id, timestamp, offset))
            row = cur.fetchone()
        return _row_to_measurement(row) if row else None

    def find_in_range(self, patient_id, measure_id, start, end):
        with self._cursor() as cur:
            cur.execute(f"""
                SELECT {MEASUREMENT_COLUMNS} FROM patient_measures
                WHERE patient_id = %s AND measure_definition_id = %s
                  AND measured_at >= %s AND measured_at <= %s AND deleted_at IS NULL
                ORDER BY measured_at ASC, seq ASC
            """, (patient_id, measure_id, start, end))
            return [_row_to_measurement(row) for row in cur.fetchall()]

    def find_distinct_timestamps_for_dependencies(self, patient_id, measure_ids):
        if not measure_ids:
            return []
        with self._cursor() as cur:
            cur.execute("""
                SELECT DISTINCT measured_at FROM patient_measures
                WHERE patient_id = %s AND measure_definition_id::text = ANY(%s)
                  AND deleted_at IS NULL
                ORDER BY measured_at ASC
            """, (patient_id, list(measure_ids)))
            return [row["measured_at"] for row in cur.fetchall()]

    def find_patients_with_measures(self, measure_ids):
        if not measure_ids:
            return []
        with self._cursor() as cur:
            cur.execute("""
                SELECT DISTINCT patient_id FROM patient_measures
                WHERE measure_definition_id::text = ANY(%s) AND deleted_at IS NULL
                ORDER BY patient_id
            """, (list(measure_ids),))
            return [str(row["patient_id"]) for row in cur.fetchall()]

    def insert(self, patient_id, measure_id, timestamp, value, recorded_by=None):
        with self._cursor() as cur:
            cur.execute(f"""
                INSERT INTO patient_measures
                (patient_id, measure_definition_id, measured_at, numeric_value, recorded_by)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {MEASUREMENT_COLUMNS}
            """, (patient_id, measure_id, timestamp, value, recorded_by))
            return _row_to_measurement(cur.fetchone())

    def upsert(self, patient_id, measure_id, timestamp, value, recorded_by=None):
        with self._cursor() as cur:
            cur.execute(f"""
                INSERT INTO patient_measures
                (patient_id, measure_definition_id, measured_at, numeric_value, recorded_by)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (patient_id, measure_definition_id, measured_at)
                    WHERE deleted_at IS NULL
                DO UPDATE SET
                    numeric_value = EXCLUDED.numeric_value,
                    recorded_by = EXCLUDED.recorded_by,
                    updated_at = NOW()
                RETURNING {MEASUREMENT_COLUMNS}
            """, (patient_id, measure_id, timestamp, value, recorded_by))
            return _row_to_measurement(cur.fetchone())

    def delete_at(self, patient_id, measure_id, timestamp):
        with self._cursor() as cur:
            cur.execute("""
                UPDATE patient_measures SET deleted_at = NOW()
                WHERE patient_id = %s AND measure_definition_id = %s
                  AND measured_at = %s AND deleted_at IS NULL
            """, (patient_id, measure_id, timestamp))
            return cur.rowcount
