"""
database.py — SQLite schema init and CRUD for seasons, rallies, nicknames,
race rows, standings, raw event cache and the change journal.

Single-file database with WAL mode for concurrent reads.
Every mutation of rallies, nicks, races and standings is appended to
change_journal so readers can poll for added/changed/removed records.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Optional

DB_DIR = Path(__file__).parent.parent / "data"
DB_NAME = "dirtleague.db"


def get_db_path() -> Path:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS seasons (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS season_classes (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    season_id   TEXT NOT NULL REFERENCES seasons(id),
    class_id    TEXT NOT NULL,
    cars_json   TEXT NOT NULL DEFAULT '[]',
    assists     INTEGER,
    UNIQUE(season_id, class_id)
);

CREATE TABLE IF NOT EXISTS rallies (
    id              TEXT PRIMARY KEY,
    season_id       TEXT NOT NULL REFERENCES seasons(id),
    name            TEXT NOT NULL DEFAULT '',
    stages          INTEGER NOT NULL,
    status          TEXT NOT NULL DEFAULT 'active',
    restarters_json TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT DEFAULT (datetime('now')),
    updated_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS rally_events (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    rally_id    TEXT NOT NULL REFERENCES rallies(id),
    event_id    INTEGER NOT NULL,
    event_order INTEGER NOT NULL,
    UNIQUE(rally_id, event_id)
);

CREATE TABLE IF NOT EXISTS penalties (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    rally_id    TEXT NOT NULL REFERENCES rallies(id),
    driver      TEXT NOT NULL,
    dq          INTEGER NOT NULL DEFAULT 0,
    message     TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS teams (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    rally_id    TEXT NOT NULL REFERENCES rallies(id),
    class_id    TEXT NOT NULL,
    team_id     TEXT NOT NULL,
    car         TEXT NOT NULL,
    private     INTEGER NOT NULL DEFAULT 0,
    UNIQUE(rally_id, class_id, team_id)
);

CREATE TABLE IF NOT EXISTS team_drivers (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    team_row_id INTEGER NOT NULL REFERENCES teams(id),
    driver      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nicks (
    nick        TEXT PRIMARY KEY,
    driver      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS races (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    rally_id    TEXT NOT NULL REFERENCES rallies(id),
    user_name   TEXT NOT NULL,
    stage       INTEGER NOT NULL,
    time        REAL NOT NULL,
    car         TEXT NOT NULL,
    assists     INTEGER NOT NULL DEFAULT 0,
    timestamp   TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS standings (
    rally_id    TEXT PRIMARY KEY REFERENCES rallies(id),
    data_json   TEXT NOT NULL,
    updated_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS event_cache (
    event_id    INTEGER PRIMARY KEY,
    data_json   TEXT NOT NULL,
    fetched_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stage_meta (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        INTEGER NOT NULL,
    stage           INTEGER NOT NULL,
    entry_count     INTEGER NOT NULL,
    request_count   INTEGER NOT NULL,
    elapsed_time_ms INTEGER NOT NULL,
    UNIQUE(event_id, stage)
);

CREATE TABLE IF NOT EXISTS change_journal (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    collection  TEXT NOT NULL,
    key         TEXT NOT NULL,
    action      TEXT NOT NULL,
    data_json   TEXT NOT NULL DEFAULT '{}',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_races_rally_user ON races(rally_id, user_name, stage);
CREATE INDEX IF NOT EXISTS idx_rally_events_rally ON rally_events(rally_id, event_order);
CREATE INDEX IF NOT EXISTS idx_journal_collection ON change_journal(collection, id);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


# ======================================================================
# SETTINGS
# ======================================================================

def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
        (key, value)
    )
    conn.commit()


# ======================================================================
# CHANGE JOURNAL
# ======================================================================

def journal_change(conn: sqlite3.Connection, collection: str, key: str,
                   action: str, data: Optional[dict] = None) -> int:
    """Record a mutation for subscribers and commit it.

    Callers leave their own write uncommitted so the row and its journal
    entry land in one transaction.

    collection values: seasons, rallies, nicks, races, standings
    action values: added, changed, removed

    Returns the journal entry id.
    """
    cur = conn.execute(
        "INSERT INTO change_journal (collection, key, action, data_json) VALUES (?, ?, ?, ?)",
        (collection, str(key), action, json.dumps(data or {}))
    )
    conn.commit()
    return cur.lastrowid


def get_changes(conn: sqlite3.Connection, after_id: int = 0,
                collection: Optional[str] = None) -> list[dict]:
    """Read journal entries newer than after_id, oldest first."""
    if collection is None:
        rows = conn.execute(
            "SELECT * FROM change_journal WHERE id > ? ORDER BY id ASC",
            (after_id,)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM change_journal WHERE id > ? AND collection=? ORDER BY id ASC",
            (after_id, collection)
        ).fetchall()
    changes = []
    for r in rows:
        change = dict(r)
        change["data"] = json.loads(change.pop("data_json"))
        changes.append(change)
    return changes


def get_last_change_id(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(id) AS last_id FROM change_journal").fetchone()
    return row["last_id"] or 0


# ======================================================================
# SEASONS
# ======================================================================

def create_season(conn: sqlite3.Connection, season_id: str, name: str = "",
                  classes: Optional[dict] = None) -> None:
    """Insert a season with its classes.

    classes: {class_id: {"cars": [...], "assists": True | False | None}}
    """
    conn.execute("INSERT INTO seasons (id, name) VALUES (?, ?)", (season_id, name))
    for class_id, cls in (classes or {}).items():
        assists = cls.get("assists")
        conn.execute(
            "INSERT INTO season_classes (season_id, class_id, cars_json, assists) VALUES (?, ?, ?, ?)",
            (season_id, class_id, json.dumps(list(cls.get("cars", []))),
             None if assists is None else int(assists))
        )
    journal_change(conn, "seasons", season_id, "added")


def set_season_class(conn: sqlite3.Connection, season_id: str, class_id: str,
                     cars: list[str], assists: Optional[bool] = None) -> None:
    """Add a class to a season or replace its cars and assists policy."""
    conn.execute(
        """INSERT INTO season_classes (season_id, class_id, cars_json, assists)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(season_id, class_id)
           DO UPDATE SET cars_json=excluded.cars_json, assists=excluded.assists""",
        (season_id, class_id, json.dumps(list(cars)),
         None if assists is None else int(assists))
    )
    journal_change(conn, "seasons", season_id, "changed", {"class": class_id})


def get_season(conn: sqlite3.Connection, season_id: str) -> Optional[dict]:
    row = conn.execute("SELECT * FROM seasons WHERE id=?", (season_id,)).fetchone()
    if row is None:
        return None
    classes = {}
    for c in conn.execute(
        "SELECT * FROM season_classes WHERE season_id=? ORDER BY id ASC", (season_id,)
    ).fetchall():
        classes[c["class_id"]] = {
            "cars": json.loads(c["cars_json"]),
            "assists": None if c["assists"] is None else bool(c["assists"]),
        }
    return {"id": row["id"], "name": row["name"], "classes": classes}


def get_seasons(conn: sqlite3.Connection) -> dict[str, dict]:
    ids = [r["id"] for r in conn.execute("SELECT id FROM seasons ORDER BY id").fetchall()]
    return {season_id: get_season(conn, season_id) for season_id in ids}


# ======================================================================
# RALLIES
# ======================================================================

def create_rally(conn: sqlite3.Connection, rally_id: str, season_id: str,
                 stages: int, event_ids: Optional[list[int]] = None,
                 name: str = "") -> None:
    """Insert a rally and the upstream events it is made of, in order."""
    conn.execute(
        "INSERT INTO rallies (id, season_id, name, stages) VALUES (?, ?, ?, ?)",
        (rally_id, season_id, name, stages)
    )
    for order, event_id in enumerate(event_ids or [], start=1):
        conn.execute(
            "INSERT INTO rally_events (rally_id, event_id, event_order) VALUES (?, ?, ?)",
            (rally_id, event_id, order)
        )
    journal_change(conn, "rallies", rally_id, "added")


def add_penalty(conn: sqlite3.Connection, rally_id: str, driver: str,
                dq: bool = False, message: str = "") -> int:
    cur = conn.execute(
        "INSERT INTO penalties (rally_id, driver, dq, message) VALUES (?, ?, ?, ?)",
        (rally_id, driver, int(dq), message)
    )
    journal_change(conn, "rallies", rally_id, "changed", {"penalty": driver})
    return cur.lastrowid


def add_team(conn: sqlite3.Connection, rally_id: str, class_id: str,
             team_id: str, car: str, drivers: list[str],
             private: bool = False) -> int:
    cur = conn.execute(
        """INSERT INTO teams (rally_id, class_id, team_id, car, private)
           VALUES (?, ?, ?, ?, ?)""",
        (rally_id, class_id, team_id, car, int(private))
    )
    team_row_id = cur.lastrowid
    for driver in drivers:
        conn.execute(
            "INSERT INTO team_drivers (team_row_id, driver) VALUES (?, ?)",
            (team_row_id, driver)
        )
    journal_change(conn, "rallies", rally_id, "changed", {"team": team_id})
    return team_row_id


def get_rally(conn: sqlite3.Connection, rally_id: str) -> Optional[dict]:
    """Rally with its events, restarters, penalties and teams by class."""
    row = conn.execute("SELECT * FROM rallies WHERE id=?", (rally_id,)).fetchone()
    if row is None:
        return None

    event_ids = [r["event_id"] for r in conn.execute(
        "SELECT event_id FROM rally_events WHERE rally_id=? ORDER BY event_order ASC",
        (rally_id,)
    ).fetchall()]

    penalties = [
        {"driver": p["driver"], "dq": bool(p["dq"]), "message": p["message"]}
        for p in conn.execute(
            "SELECT * FROM penalties WHERE rally_id=? ORDER BY id ASC", (rally_id,)
        ).fetchall()
    ]

    teams: dict[str, dict[str, dict]] = {}
    for t in conn.execute(
        "SELECT * FROM teams WHERE rally_id=? ORDER BY id ASC", (rally_id,)
    ).fetchall():
        drivers = [d["driver"] for d in conn.execute(
            "SELECT driver FROM team_drivers WHERE team_row_id=? ORDER BY id ASC",
            (t["id"],)
        ).fetchall()]
        teams.setdefault(t["class_id"], {})[t["team_id"]] = {
            "car": t["car"],
            "drivers": drivers,
            "private": bool(t["private"]),
        }

    return {
        "id": row["id"],
        "season": row["season_id"],
        "name": row["name"],
        "stages": row["stages"],
        "status": row["status"],
        "event_ids": event_ids,
        "restarters": json.loads(row["restarters_json"]),
        "penalties": penalties,
        "teams": teams,
    }


def get_rallies(conn: sqlite3.Connection, active_only: bool = False) -> dict[str, dict]:
    if active_only:
        rows = conn.execute(
            "SELECT id FROM rallies WHERE status='active' ORDER BY created_at, id"
        ).fetchall()
    else:
        rows = conn.execute("SELECT id FROM rallies ORDER BY created_at, id").fetchall()
    return {r["id"]: get_rally(conn, r["id"]) for r in rows}


def update_rally(conn: sqlite3.Connection, rally_id: str, **kwargs) -> None:
    """Patch rally columns (name, stages, status)."""
    allowed = {"name", "stages", "status"}
    fields = {k: v for k, v in kwargs.items() if k in allowed}
    if not fields:
        return
    sets = ", ".join(f"{k}=?" for k in fields)
    conn.execute(
        f"UPDATE rallies SET {sets}, updated_at=datetime('now') WHERE id=?",
        (*fields.values(), rally_id)
    )
    journal_change(conn, "rallies", rally_id, "changed", fields)


def set_restarters(conn: sqlite3.Connection, rally_id: str,
                   restarters: list[str]) -> None:
    conn.execute(
        "UPDATE rallies SET restarters_json=?, updated_at=datetime('now') WHERE id=?",
        (json.dumps(restarters), rally_id)
    )
    journal_change(conn, "rallies", rally_id, "changed", {"restarters": restarters})


# ======================================================================
# NICKNAMES
# ======================================================================

def set_nick(conn: sqlite3.Connection, nick: str, driver: str) -> None:
    """Map an in-game nickname to a driver."""
    existing = conn.execute("SELECT driver FROM nicks WHERE nick=?", (nick,)).fetchone()
    conn.execute(
        "INSERT OR REPLACE INTO nicks (nick, driver) VALUES (?, ?)", (nick, driver)
    )
    journal_change(conn, "nicks", nick, "changed" if existing else "added",
                   {"driver": driver})


def delete_nick(conn: sqlite3.Connection, nick: str) -> None:
    conn.execute("DELETE FROM nicks WHERE nick=?", (nick,))
    journal_change(conn, "nicks", nick, "removed")


def get_nicks(conn: sqlite3.Connection) -> dict[str, str]:
    return {r["nick"]: r["driver"] for r in conn.execute("SELECT * FROM nicks").fetchall()}


# ======================================================================
# RACES / STANDINGS
# ======================================================================

def get_races(conn: sqlite3.Connection, rally_id: str) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM races WHERE rally_id=? ORDER BY id ASC", (rally_id,)
    ).fetchall()


def get_race(conn: sqlite3.Connection, race_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM races WHERE id=?", (race_id,)).fetchone()


def save_standings(conn: sqlite3.Connection, rally_id: str, data: dict) -> None:
    """Replace the stored standings of a rally."""
    conn.execute(
        """INSERT OR REPLACE INTO standings (rally_id, data_json, updated_at)
           VALUES (?, ?, datetime('now'))""",
        (rally_id, json.dumps(data))
    )
    journal_change(conn, "standings", rally_id, "changed")


def get_standings(conn: sqlite3.Connection, rally_id: str) -> Optional[dict]:
    row = conn.execute(
        "SELECT data_json FROM standings WHERE rally_id=?", (rally_id,)
    ).fetchone()
    return json.loads(row["data_json"]) if row else None


# ======================================================================
# EVENT CACHE
# ======================================================================

def save_event_cache(conn: sqlite3.Connection, event_id: int, data: dict) -> None:
    """Keep the latest assembled leaderboard of an event."""
    conn.execute(
        """INSERT OR REPLACE INTO event_cache (event_id, data_json, fetched_at)
           VALUES (?, ?, datetime('now'))""",
        (event_id, json.dumps(data))
    )
    conn.commit()


def get_event_cache(conn: sqlite3.Connection, event_id: int) -> Optional[dict]:
    row = conn.execute(
        "SELECT data_json FROM event_cache WHERE event_id=?", (event_id,)
    ).fetchone()
    return json.loads(row["data_json"]) if row else None


def save_stage_meta(conn: sqlite3.Connection, event_id: int,
                    stages: list[dict]) -> None:
    """stages: [{"stage", "entry_count", "request_count", "elapsed_time_ms"}]"""
    for s in stages:
        conn.execute(
            """INSERT OR REPLACE INTO stage_meta
               (event_id, stage, entry_count, request_count, elapsed_time_ms)
               VALUES (?, ?, ?, ?, ?)""",
            (event_id, s["stage"], s["entry_count"], s["request_count"],
             s["elapsed_time_ms"])
        )
    conn.commit()


def get_stage_meta(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM stage_meta WHERE event_id=? ORDER BY stage ASC", (event_id,)
    ).fetchall()
