from __future__ import annotations

import math
from typing import Any, Mapping

MEAN_LABEL = "Mean"

Point = dict[str, float]
ProcessedResult = dict[str, list[Point]]


def _coerce_value(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return value


def _coerce_timestamp(raw: Any) -> int | float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return raw if math.isfinite(raw) else None
    if isinstance(raw, str):
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            value = float(raw)
        except ValueError:
            return None
        return value if math.isfinite(value) else None
    return None


def _series_points(series: Any) -> list[Any]:
    # Upstream wraps each member as {"data": [[t, v], ...]}; accept a bare list too.
    if isinstance(series, Mapping):
        series = series.get("data")
    if isinstance(series, (list, tuple)):
        return list(series)
    return []


def process_series(raw: Mapping[str, Any]) -> ProcessedResult:
    """Convert raw label -> series data into {label: [{x, y}, ...]} plus a Mean series.

    Points are ordered by ascending timestamp. Non-numeric values become 0.0.
    Mean is the average at each timestamp over the members that have a point
    at exactly that timestamp.
    """
    processed: ProcessedResult = {}
    for label, series in raw.items():
        if label == MEAN_LABEL:
            continue
        points: list[Point] = []
        for item in _series_points(series):
            if not isinstance(item, (list, tuple)) or len(item) < 2:
                continue
            timestamp = _coerce_timestamp(item[0])
            if timestamp is None:
                continue
            points.append({"x": timestamp, "y": _coerce_value(item[1])})
        if not points:
            continue
        points.sort(key=lambda point: point["x"])
        processed[str(label)] = points

    if processed:
        processed[MEAN_LABEL] = compute_mean(processed)
    return processed


def compute_mean(members: Mapping[str, list[Point]]) -> list[Point]:
    by_time: dict[int | float, list[float]] = {}
    for points in members.values():
        seen: set[int | float] = set()
        for point in points:
            # First point wins if a member repeats a timestamp.
            if point["x"] in seen:
                continue
            seen.add(point["x"])
            by_time.setdefault(point["x"], []).append(point["y"])
    return [
        {"x": timestamp, "y": sum(values) / len(values)}
        for timestamp, values in sorted(by_time.items())
        if values
    ]


def member_count(result: Mapping[str, Any]) -> int:
    return sum(1 for label in result if label != MEAN_LABEL)


__all__ = ["MEAN_LABEL", "ProcessedResult", "compute_mean", "member_count", "process_series"]
