"""Time interval helpers for appearance spans and atom ranges.

Intervals are ``(start_s, end_s)`` tuples in seconds. Atom ranges are
half-open (``start <= t < end``); appearance spans built from detection
timestamps are closed and may have zero length (a single sighting).
"""

from __future__ import annotations

from typing import Iterable, TypeAlias

Interval: TypeAlias = tuple[float, float]


def merge_intervals(intervals: Iterable[Interval], *, gap_tolerance_s: float = 0.0) -> list[Interval]:
    """Merge overlapping intervals, bridging gaps up to ``gap_tolerance_s``.

    Reversed intervals are swapped and unparseable ones skipped. The result
    is sorted by start time.
    """
    gap = max(float(gap_tolerance_s or 0.0), 0.0)

    normalized: list[Interval] = []
    for start, end in intervals:
        try:
            s = float(start)
            e = float(end)
        except (TypeError, ValueError):
            continue
        if e < s:
            s, e = e, s
        normalized.append((s, e))

    if not normalized:
        return []

    normalized.sort()
    merged: list[list[float]] = [[normalized[0][0], normalized[0][1]]]
    for start, end in normalized[1:]:
        prev = merged[-1]
        if start - prev[1] <= gap:
            prev[1] = max(prev[1], end)
        else:
            merged.append([start, end])

    return [(start, end) for start, end in merged]


def timestamps_to_spans(timestamps: Iterable[float], *, gap_tolerance_s: float = 0.5) -> list[Interval]:
    """Group point sightings into contiguous spans.

    Consecutive timestamps no more than ``gap_tolerance_s`` apart share a
    span; a lone sighting becomes a zero-length span.
    """
    return merge_intervals(((t, t) for t in timestamps), gap_tolerance_s=gap_tolerance_s)


def interval_duration(interval: Interval, *, min_duration_s: float = 0.0) -> float:
    """Duration of one interval, floored at ``min_duration_s`` when > 0."""
    try:
        start, end = interval
        duration = abs(float(end) - float(start))
    except (TypeError, ValueError):
        return 0.0
    minimum = float(min_duration_s or 0.0)
    if minimum > 0.0 and duration < minimum:
        return minimum
    return duration


def compute_union_duration(
    intervals: Iterable[Interval],
    *,
    gap_tolerance_s: float = 0.0,
    min_duration_s: float = 0.0,
) -> float:
    """Union duration of ``intervals`` in seconds (overlaps counted once)."""
    merged = merge_intervals(intervals, gap_tolerance_s=gap_tolerance_s)
    return sum(interval_duration(interval, min_duration_s=min_duration_s) for interval in merged)


__all__ = [
    "Interval",
    "merge_intervals",
    "timestamps_to_spans",
    "interval_duration",
    "compute_union_duration",
]
