from __future__ import annotations

import argparse
import json
import sys

from tubefeed.config import ConfigurationError
from tubefeed.dependencies import get_ingestion_service, get_settings
from tubefeed.logging_config import configure_application_logging
from tubefeed.services.ingestion_service import OUTCOME_OK, stats_to_dict


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a single ingestion cycle outside the scheduler, or print stats.",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print stored-video stats as JSON instead of running a cycle.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        settings = get_settings()
        configure_application_logging(settings, console_stream=sys.stderr)
        service = get_ingestion_service()
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    if args.stats:
        print(json.dumps(stats_to_dict(service.get_stats()), indent=2, sort_keys=True))
        return 0

    result = service.run_background_cycle()
    print(
        json.dumps(
            {
                "outcome": result.outcome,
                "error_type": result.error_type,
                "candidates": result.candidates,
                "inserted": result.inserted,
                "duplicates": result.duplicates,
                "missing_details": list(result.missing_details),
                "duration_ms": result.duration_ms,
            },
            indent=2,
            sort_keys=True,
        )
    )
    return 0 if result.outcome == OUTCOME_OK else 1


if __name__ == "__main__":
    raise SystemExit(main())
