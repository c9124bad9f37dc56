from __future__ import annotations

import argparse
import asyncio

from velosync.core.logging import configure_logging
from velosync.services.pipeline import get_pipeline
from velosync.services.tiers import tier_limits


async def _enqueue(subject_ids: list[str], history_days: int | None) -> None:
    pipeline = await get_pipeline()
    for subject_id in subject_ids:
        # Clamp to the subject's tier entitlement.
        tier = await pipeline.admission.resolve_tier(subject_id)
        entitled_days = tier_limits(tier, settings=pipeline.settings).history_days
        days = min(history_days or entitled_days, entitled_days)
        job = await pipeline.intake.request_backfill(subject_id, history_days=days)
        print(f"subject_id={subject_id} tier={tier} history_days={days} after={job.params['after_epoch_s']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Enqueue history backfill jobs for subjects")
    parser.add_argument("subject_ids", nargs="+")
    parser.add_argument("--history-days", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_enqueue(args.subject_ids, args.history_days))


if __name__ == "__main__":
    main()
