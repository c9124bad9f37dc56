from __future__ import annotations

from datetime import datetime
from typing import Any

from velosync.core.errors import PermanentJobFailure


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise PermanentJobFailure(f"Unparseable start_date: {value!r}") from exc


def _float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def summarize_activity(payload: dict[str, Any], *, subject_id: str) -> dict[str, Any]:
    """Reduce an upstream activity payload to the scalar fields kept indefinitely.

    Polylines, lat/lng pairs and stream samples are deliberately absent: the
    persistent store only ever receives what this function returns.
    """
    activity_id = payload.get("id")
    if activity_id is None:
        raise PermanentJobFailure("Activity payload is missing an id")
    return {
        "id": str(activity_id),
        "subject_id": subject_id,
        "name": payload.get("name"),
        "activity_type": payload.get("sport_type") or payload.get("type"),
        "start_date": _parse_datetime(payload.get("start_date")),
        "distance_m": _float(payload.get("distance")),
        "moving_time_s": _int(payload.get("moving_time")),
        "elapsed_time_s": _int(payload.get("elapsed_time")),
        "total_elevation_gain_m": _float(payload.get("total_elevation_gain")),
        "average_watts": _float(payload.get("average_watts")),
        "average_heartrate": _float(payload.get("average_heartrate")),
        "max_heartrate": _float(payload.get("max_heartrate")),
        "private": bool(payload.get("private", False)),
        "visibility": payload.get("visibility") or "everyone",
    }
