from __future__ import annotations

import argparse
import asyncio
import json
import sys

from abuseguard.core.logging import configure_logging
from abuseguard.domain.enforcement import DetectorKind
from abuseguard.persistence.db import get_database
from abuseguard.services.scheduler import run_detection_cycle, run_detector_scan


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one detection pass and apply its actions")
    parser.add_argument(
        "--detector",
        choices=[kind.value for kind in DetectorKind],
        default=None,
        help="Run a single detector instead of all of them",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    database = get_database()
    try:
        if args.detector:
            reports = [await run_detector_scan(database, DetectorKind(args.detector))]
        else:
            reports = await run_detection_cycle(database)
    finally:
        await database.dispose()
    print(json.dumps(reports, indent=2, sort_keys=True))
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface scan failures clearly
        print(f"run_detection failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
