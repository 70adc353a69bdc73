"""Run one externally scheduled tick: folder sync or pending-file processing.

Usage:
    python scripts/run_tick.py sync
    python scripts/run_tick.py process [--limit N]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add the parent directory to the path so we can import from app
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.services.container import build_services


async def run_sync() -> int:
    services = build_services(settings)
    await services.init()
    try:
        results = await services.coordinator.run_scheduled_sync()
    finally:
        await services.aclose()

    print("=" * 50)
    for result in results:
        line = f"{result.folder_id}: {result.status}"
        if result.summary:
            line += f" (new={result.summary.new} updated={result.summary.updated} skipped={result.summary.skipped})"
        if result.error:
            line += f" - {result.error}"
        print(line)
    print("=" * 50)
    return 1 if any(r.status == "failed" for r in results) else 0


async def run_process(limit: int) -> int:
    services = build_services(settings)
    await services.init()
    try:
        summary = await services.coordinator.process_pending(limit=limit)
    finally:
        await services.aclose()

    print("=" * 50)
    print(f"Claimed: {summary.claimed}  Processed: {summary.processed}  Failed: {summary.failed}")
    for result in summary.results:
        if result.status == "failed":
            print(f"  FAILED {result.name}: {result.error}")
    print("=" * 50)
    return 1 if summary.failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one knowledge ingestion tick")
    parser.add_argument("tick", choices=["sync", "process"])
    parser.add_argument("--limit", type=int, default=settings.PROCESS_BATCH_SIZE)
    args = parser.parse_args()

    if args.tick == "sync":
        return asyncio.run(run_sync())
    return asyncio.run(run_process(args.limit))


if __name__ == "__main__":
    sys.exit(main())
