"""
state.py — In-memory cache of store contents used by scoring and restart detection.

Owned by one coordinator (the poller). It is filled once with load() and
kept current with catch_up(), which replays change_journal entries newer
than the last one seen and re-reads the touched records.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Optional

from results import database
from results.race_ledger import RaceRow

logger = logging.getLogger("dirtleague.state")

Listener = Callable[[dict], None]


class ResultsState:

    def __init__(self):
        self.rallies: dict[str, dict] = {}
        self.seasons: dict[str, dict] = {}
        self.nicks: dict[str, str] = {}
        self.races: dict[str, list[RaceRow]] = {}
        self.cursor = 0
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener(change) for every applied change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def load(self, conn: sqlite3.Connection) -> None:
        self.cursor = database.get_last_change_id(conn)
        self.seasons = database.get_seasons(conn)
        self.rallies = database.get_rallies(conn)
        self.nicks = database.get_nicks(conn)
        self.races = {
            rally_id: [RaceRow.from_db(r) for r in database.get_races(conn, rally_id)]
            for rally_id in self.rallies
        }
        logger.debug("State loaded: %d rallies, %d seasons, %d nicks",
                     len(self.rallies), len(self.seasons), len(self.nicks))

    def catch_up(self, conn: sqlite3.Connection) -> int:
        """Apply journal entries written since the last call. Returns how many."""
        changes = database.get_changes(conn, self.cursor)
        for change in changes:
            self._apply(conn, change)
            self.cursor = change["id"]
            for listener in list(self._listeners):
                listener(change)
        return len(changes)

    def season(self, conn: sqlite3.Connection, season_id: str) -> Optional[dict]:
        """Cached season, read from the store on a miss."""
        if season_id not in self.seasons:
            season = database.get_season(conn, season_id)
            if season is None:
                return None
            self.seasons[season_id] = season
        return self.seasons[season_id]

    def races_for(self, rally_id: str) -> list[RaceRow]:
        return self.races.get(rally_id, [])

    def _apply(self, conn: sqlite3.Connection, change: dict) -> None:
        collection = change["collection"]
        key = change["key"]

        if collection == "seasons":
            season = database.get_season(conn, key)
            if season is None:
                self.seasons.pop(key, None)
            else:
                self.seasons[key] = season

        elif collection == "rallies":
            rally = database.get_rally(conn, key)
            if rally is None:
                self.rallies.pop(key, None)
                return
            self.rallies[key] = rally
            self.races.setdefault(key, [])
            self.season(conn, rally["season"])

        elif collection == "nicks":
            if change["action"] == "removed":
                self.nicks.pop(key, None)
            else:
                self.nicks[key] = change["data"]["driver"]

        elif collection == "races":
            row = database.get_race(conn, int(key))
            if row is None:
                return
            race = RaceRow.from_db(row)
            rows = self.races.setdefault(race.rally_id, [])
            if change["action"] == "added":
                if all(r.id != race.id for r in rows):
                    rows.append(race)
            else:
                for i, r in enumerate(rows):
                    if r.id == race.id:
                        rows[i] = race
