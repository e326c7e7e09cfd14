#!/usr/bin/env python3
"""
Calculated Measure Backfill
===========================
Recomputes the full history of a calculated measure after its formula or
dependencies changed. Intended to run as an offline/administrative job.

Usage:
    python scripts/backfill_measure.py --measure bmi [--actor admin-id]
    python scripts/backfill_measure.py --measure-id <uuid>

Environment:
    DATABASE_URL    PostgreSQL DSN (required)

Ctrl+C stops between patients; values already written are kept.
"""

import argparse
import json
import logging
import signal
import sys

from measure_engine import DefinitionNotFoundError, EngineSettings, MeasureEngineError, get_engine
from measure_engine.postgres import PostgresMeasureCatalog, PostgresMeasurementStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill a calculated measure's history")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--measure", help="Calculated measure name")
    target.add_argument("--measure-id", help="Calculated measure definition id")
    parser.add_argument("--actor", default=None, help="User id recorded as recorded_by")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = EngineSettings.from_env()
    if not settings.database_url:
        logger.error("DATABASE_URL is not set")
        return 2

    catalog = PostgresMeasureCatalog(settings.database_url)
    store = PostgresMeasurementStore(settings.database_url)
    engine = get_engine(catalog=catalog, store=store, settings=settings)

    cancel_requested = {"value": False}

    def _request_cancel(signum, frame):
        logger.warning("Cancellation requested, stopping after the current patient...")
        cancel_requested["value"] = True

    signal.signal(signal.SIGINT, _request_cancel)
    signal.signal(signal.SIGTERM, _request_cancel)

    try:
        definition_id = args.measure_id
        if definition_id is None:
            definition = catalog.find_definition_by_name(args.measure)
            if definition is None:
                raise DefinitionNotFoundError(f"Measure not found: {args.measure}")
            definition_id = definition.id

        result = engine.recalculate_all_values_for_measure(
            definition_id,
            actor=args.actor,
            should_cancel=lambda: cancel_requested["value"],
        )
    except MeasureEngineError as e:
        logger.error(str(e))
        return 1

    print(json.dumps(result.model_dump(), indent=2))
    return 3 if result.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())
