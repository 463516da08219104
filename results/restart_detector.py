"""
restart_detector.py — Flag drivers whose new stage times contradict the ledger.

The leaderboard has no "restarted" marker. When a driver re-drives a stage
the old time silently disappears upstream while the ledger still holds it,
so a recorded stage time that has no exact match in the fresh data means
the driver restarted.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from typing import Iterable, Optional

from results.database import get_rally, set_restarters
from results.race_ledger import RaceRow
from results.times import DriverTime

logger = logging.getLogger("dirtleague.ledger")


def detect_restarts(previous: Iterable[RaceRow],
                    driver_times: dict[str, DriverTime],
                    stage_offset: int = 0,
                    stage_count: Optional[int] = None) -> set[str]:
    """Return nicknames whose recorded history is not reproduced by the new data.

    previous: rows already recorded for the rally.
    stage_offset / stage_count: the rally stage numbers covered by this
    event; rows outside that window belong to other events and are ignored.
    Drivers without recorded rows are never flagged.
    """
    history: dict[str, dict[int, set[float]]] = defaultdict(lambda: defaultdict(set))
    for row in previous:
        if row.stage <= stage_offset:
            continue
        if stage_count is not None and row.stage > stage_offset + stage_count:
            continue
        history[row.user_name][row.stage - stage_offset].add(round(row.time, 3))

    restarters = set()
    for name, driver in driver_times.items():
        recorded = history.get(name)
        if not recorded:
            continue

        if driver.stage_count < len(recorded):
            restarters.add(name)
            continue

        for stage, times in recorded.items():
            new_time = driver.stage_times.get(stage)
            if new_time is None or round(new_time, 3) not in times:
                restarters.add(name)
                break

    if restarters:
        logger.info("Restart detected: %s", ", ".join(sorted(restarters)))
    return restarters


def merge_restarters(conn: sqlite3.Connection, rally_id: str,
                     names: Iterable[str]) -> list[str]:
    """Union names into the rally's restarters list. Returns the names added."""
    rally = get_rally(conn, rally_id)
    if rally is None:
        raise KeyError(f"Unknown rally {rally_id}")

    current = list(rally["restarters"])
    added = sorted(set(names) - set(current))
    if added:
        set_restarters(conn, rally_id, current + added)
    return added
