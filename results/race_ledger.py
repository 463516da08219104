"""
race_ledger.py — Idempotent recording of per-driver, per-stage race rows.

Rows are never deleted. A row is identified by (user_name, stage, time, car)
within a rally; replaying the same fetch cycle inserts nothing, and a row
that only differs in its assists flag is corrected in place.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from results.database import journal_change
from results.times import DriverTime

logger = logging.getLogger("dirtleague.ledger")


@dataclass
class RaceRow:
    rally_id: str
    user_name: str
    stage: int
    time: float
    car: str
    assists: bool = False
    timestamp: str = ""
    id: int | None = None

    @classmethod
    def from_db(cls, row: sqlite3.Row) -> "RaceRow":
        return cls(
            rally_id=row["rally_id"],
            user_name=row["user_name"],
            stage=row["stage"],
            time=row["time"],
            car=row["car"],
            assists=bool(row["assists"]),
            timestamp=row["timestamp"] or "",
            id=row["id"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rally_id": self.rally_id,
            "user_name": self.user_name,
            "stage": self.stage,
            "time": self.time,
            "car": self.car,
            "assists": self.assists,
            "timestamp": self.timestamp,
        }


def insert_race(conn: sqlite3.Connection, rally_id: str, user_name: str,
                stage: int, time: float, car: str, assists: bool) -> bool:
    """Record one stage time. Returns True only if a new row was added."""
    time = round(time, 3)
    existing = conn.execute(
        """SELECT id, assists FROM races
           WHERE rally_id=? AND user_name=? AND stage=? AND time=? AND car=?
           LIMIT 1""",
        (rally_id, user_name, stage, time, car)
    ).fetchone()

    if existing is not None:
        if bool(existing["assists"]) != bool(assists):
            conn.execute(
                "UPDATE races SET assists=? WHERE id=?",
                (int(assists), existing["id"])
            )
            journal_change(conn, "races", existing["id"], "changed",
                           {"rally_id": rally_id, "assists": bool(assists)})
            logger.info("Corrected assists flag for %s stage %s in %s",
                        user_name, stage, rally_id)
        return False

    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cur = conn.execute(
        """INSERT INTO races (rally_id, user_name, stage, time, car, assists, timestamp)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (rally_id, user_name, stage, time, car, int(assists), timestamp)
    )
    journal_change(conn, "races", cur.lastrowid, "added", {"rally_id": rally_id})
    return True


def record_driver_times(conn: sqlite3.Connection, rally_id: str,
                        driver_times: dict[str, DriverTime],
                        stage_offset: int = 0) -> int:
    """Insert every stage time of every driver. Returns the number of new rows.

    stage_offset shifts upstream stage numbers when a rally is made of
    several events.
    """
    inserted = 0
    for driver in driver_times.values():
        for stage, time in sorted(driver.stage_times.items()):
            if insert_race(conn, rally_id, driver.nickname, stage + stage_offset,
                           time, driver.car, driver.uses_assists):
                inserted += 1
    if inserted:
        logger.info("Rally %s: %d new race rows", rally_id, inserted)
    return inserted
