#!/usr/bin/env python3
"""
Example usage of the fleet trip analytics pipeline.

This script loads raw vehicle status documents from a JSON Lines file (one
document per line, each with a `vehicle_id` field next to `signals`), replays
them through the pipeline, and prints trips, parking sessions and a weekly
productivity report.

Usage:
    python examples/pipeline_example.py status_documents.jsonl 2024-01-15
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from fleet_trip_analytics import FleetAnalyticsPipeline, InMemoryTelemetrySource

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

logger = logging.getLogger(__name__)


def load_documents(path: Path) -> dict[str, list[dict[str, Any]]]:
    """Group raw status documents by vehicle id."""
    documents: dict[str, list[dict[str, Any]]] = defaultdict(list)
    with path.open(encoding='utf-8') as f:
        for line in f:
            if not line.strip():
                continue
            document: dict[str, Any] = json.loads(line)
            documents[str(document.pop('vehicle_id'))].append(document)
    return documents


def main() -> None:
    """Run the fleet trip analytics pipeline example."""
    documents_path = Path(sys.argv[1])
    week_start: date = date.fromisoformat(sys.argv[2])

    documents = load_documents(documents_path)
    source = InMemoryTelemetrySource(documents)

    start = datetime(week_start.year, week_start.month, week_start.day, tzinfo=UTC)
    end = start + timedelta(days=7)

    with FleetAnalyticsPipeline.from_config(
        'config/analytics_config.yaml', source
    ) as pipeline:
        logger.info('Backfilling %d vehicles from %s to %s', len(documents), start, end)
        summary = pipeline.run_backfill(documents.keys(), start, end)
        logger.info(
            'Backfill complete: %d/%d windows, %d trips',
            summary.chunks_succeeded,
            summary.chunks_total,
            summary.completed_trips,
        )

        for vehicle_id in documents:
            consolidation = pipeline.consolidate_vehicle(vehicle_id, start, end)
            logger.info('\n%s: %d trips', vehicle_id, len(consolidation.trips))
            for trip in consolidation.trips:
                print(
                    f'  {trip.ignition_on_time:%a %H:%M} -> {trip.ignition_off_time or "active"}'
                    f'  {trip.distance_traveled or trip.gps_distance_miles:.1f} mi'
                )

            sessions = pipeline.analyze_parking(vehicle_id, start, end)
            logger.info('%s: %d parking sessions', vehicle_id, len(sessions))
            for session in sessions[:5]:
                print(
                    f'  parked {session.total_parking_minutes:.0f} min,'
                    f' {len(session.ignition_cycles)} ignition cycles'
                )

            report = pipeline.productivity.get_weekly_report(vehicle_id, week_start)
            logger.info(
                '%s: %.1f h on job, %.1f h off job (%.0f%% productive)',
                vehicle_id,
                report.total_on_job_hours,
                report.total_off_job_hours,
                report.productivity_percentage,
            )
            for client in report.client_analysis[:5]:
                print(f'  {client.client_name}: {client.total_minutes:.0f} min')
            for recommendation in report.insights.recommended_improvements:
                print(f'  * {recommendation}')


if __name__ == '__main__':
    main()
