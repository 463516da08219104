"""
times.py — Leaderboard time strings, and per-stage deltas from cumulative totals.

The upstream leaderboard reports each driver's running total at the end of
every stage. Race rows store the time spent on the stage itself, so the
total of the previous stage is subtracted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from results.dirt_client import EventResult

# Upstream encodings for "did not finish"; not real driving times.
DNF_TIMES = (900.0, 1800.0)


def parse_time(text: str) -> float:
    """Parse 'h:mm:ss.fff', 'mm:ss.fff' or 'ss.fff' to seconds.

    Components are read right to left: seconds, minutes, hours.
    """
    parts = text.strip().split(":")
    if len(parts) > 3:
        raise ValueError(f"Invalid leaderboard time: {text!r}")
    seconds = 0.0
    for multiplier, part in zip((1, 60, 3600), reversed(parts)):
        seconds += float(part) * multiplier
    return round(seconds, 3)


def format_time(seconds: float | None) -> str:
    """Format seconds back to the leaderboard notation (h:mm:ss.fff / mm:ss.fff)."""
    if seconds is None:
        return ""
    millis = int(round(seconds * 1000))
    hours, millis = divmod(millis, 3600_000)
    minutes, millis = divmod(millis, 60_000)
    secs, millis = divmod(millis, 1000)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}.{millis:03d}"
    return f"{minutes:02d}:{secs:02d}.{millis:03d}"


def stage_deltas(cumulative: list[float]) -> list[float]:
    """Turn running totals [t1, t2, ...] into per-stage times."""
    deltas = []
    previous = 0.0
    for total in cumulative:
        deltas.append(round(total - previous, 3))
        previous = total
    return deltas


# ---------------------------------------------------------------------------
# Driver times
# ---------------------------------------------------------------------------

@dataclass
class DriverTime:
    nickname: str
    car: str
    uses_assists: bool = False
    stage_times: dict[int, float] = field(default_factory=dict)

    @property
    def stage_count(self) -> int:
        return len(self.stage_times)


def derive_driver_times(event: "EventResult") -> dict[str, DriverTime]:
    """Build a per-driver view of an assembled event.

    A driver is followed stage by stage until the first stage they are
    missing from; cumulative times up to there become per-stage deltas.
    The car is taken from the latest stage the driver appears on.
    """
    per_stage = [
        {entry.name: entry for entry in stage.entries}
        for stage in event.stages
    ]
    if not per_stage:
        return {}

    drivers: dict[str, DriverTime] = {}
    for name in per_stage[0]:
        cumulative = []
        car = ""
        for stage_entries in per_stage:
            entry = stage_entries.get(name)
            if entry is None:
                break
            cumulative.append(parse_time(entry.time))
            car = entry.vehicle_name

        deltas = stage_deltas(cumulative)
        drivers[name] = DriverTime(
            nickname=name,
            car=car,
            uses_assists=name in event.assisted_names,
            stage_times={i + 1: delta for i, delta in enumerate(deltas)},
        )
    return drivers
