from __future__ import annotations

import argparse
import asyncio
import json

from velosync.core.logging import configure_logging
from velosync.services.pipeline import get_pipeline


async def _drain(cycles: int) -> None:
    # Run drain cycles outside the scheduler, e.g. to work down a backlog after an outage.
    pipeline = await get_pipeline()
    for _ in range(cycles):
        report = await pipeline.drain.run_cycle()
        print(json.dumps(report.as_dict(), sort_keys=True))
        if report.budget <= 0 or report.halted_scope is not None:
            break


def main() -> None:
    parser = argparse.ArgumentParser(description="Run drain cycles against the durable queue")
    parser.add_argument("--cycles", type=int, default=1)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_drain(max(1, args.cycles)))


if __name__ == "__main__":
    main()
