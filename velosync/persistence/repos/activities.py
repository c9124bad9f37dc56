from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from velosync.domain.models import ActivitySummary


# Columns refreshed on conflict; identity columns stay untouched.
_UPDATABLE_COLUMNS = (
    "name",
    "activity_type",
    "start_date",
    "distance_m",
    "moving_time_s",
    "elapsed_time_s",
    "total_elevation_gain_m",
    "average_watts",
    "average_heartrate",
    "max_heartrate",
    "private",
    "visibility",
)


async def upsert_summary(session: AsyncSession, values: dict[str, Any]) -> None:
    # Idempotent upsert keyed on the upstream activity id so redelivery converges.
    stmt = insert(ActivitySummary).values(**values)
    update_set = {column: stmt.excluded[column] for column in _UPDATABLE_COLUMNS if column in values}
    update_set["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(index_elements=[ActivitySummary.id], set_=update_set)
    await session.execute(stmt)


async def delete_summary(session: AsyncSession, activity_id: str) -> int:
    result = await session.execute(delete(ActivitySummary).where(ActivitySummary.id == activity_id))
    return int(result.rowcount or 0)


async def delete_for_subject(session: AsyncSession, subject_id: str) -> int:
    result = await session.execute(
        delete(ActivitySummary).where(ActivitySummary.subject_id == subject_id)
    )
    return int(result.rowcount or 0)


def summary_to_dict(row: ActivitySummary) -> dict[str, Any]:
    data: dict[str, Any] = {"id": row.id, "subject_id": row.subject_id}
    for column in _UPDATABLE_COLUMNS:
        data[column] = getattr(row, column)
    if row.start_date is not None:
        data["start_date"] = row.start_date.isoformat()
    return data


async def get_summary(
    session: AsyncSession, activity_id: str, *, subject_id: str
) -> ActivitySummary | None:
    # Scope lookups by subject so one athlete never reads another's summaries.
    result = await session.execute(
        select(ActivitySummary).where(
            ActivitySummary.id == activity_id,
            ActivitySummary.subject_id == subject_id,
        )
    )
    return result.scalar_one_or_none()
