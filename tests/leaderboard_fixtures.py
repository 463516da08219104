"""
leaderboard_fixtures.py — Shared helpers for the test modules.

FakeDirtApi serves synthetic events through httpx.MockTransport, so the
real DirtClient code paths (params, pagination, JSON parsing) are exercised
without network access.
"""

import asyncio
import math
import os
import sys
import tempfile
from pathlib import Path

import httpx

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from results import database
from results.dirt_client import DirtClient
from results.times import format_time


def make_db_path() -> Path:
    """Create a fresh temp database and return its path."""
    db_path = Path(tempfile.mkdtemp()) / "test.db"
    conn = database.get_connection(db_path)
    database.init_db(conn)
    conn.close()
    return db_path


def make_db():
    """Create a fresh temp database connection."""
    return database.get_connection(make_db_path())


def build_stages(drivers: dict[str, tuple[str, list[float]]]) -> list[list[dict]]:
    """Turn {name: (car, [cumulative per stage])} into upstream stage leaderboards."""
    stage_count = max(len(times) for _, times in drivers.values())
    stages = []
    for stage in range(stage_count):
        rows = [
            (times[stage], name, car)
            for name, (car, times) in drivers.items()
            if len(times) > stage
        ]
        rows.sort()
        stages.append([
            {
                "Position": pos,
                "PlayerId": 1000 + pos,
                "Name": name,
                "VehicleName": car,
                "Time": format_time(total),
                "DiffFirst": "",
                "TierID": 1,
            }
            for pos, (total, name, car) in enumerate(rows, start=1)
        ])
    return stages


class FakeEvent:
    def __init__(self, name: str, drivers: dict[str, tuple[str, list[float]]],
                 assisted: tuple[str, ...] = (), page_size: int = 2):
        self.name = name
        self.stages = build_stages(drivers)
        self.assisted = set(assisted)
        self.page_size = page_size
        self.total_override: dict[int, int] = {}


class FakeDirtApi:
    """Upstream leaderboard stand-in.

    fail: {(stage, page)} answered with a connection error
    malformed: {(stage, page)} answered with a non-JSON body
    empty: answer every request without an event name
    delays: {(stage, page): seconds} to reorder sibling completion
    """

    def __init__(self, events: dict[int, FakeEvent]):
        self.events = events
        self.requests: list[tuple[int, int, int, str]] = []
        self.fail: set[tuple[int, int]] = set()
        self.malformed: set[tuple[int, int]] = set()
        self.empty = False
        self.delays: dict[tuple[int, int], float] = {}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        event_id = int(params["eventId"])
        stage = int(params["stageId"])
        page = int(params["page"])
        assists = params["assists"]
        self.requests.append((event_id, stage, page, assists))

        await asyncio.sleep(self.delays.get((stage, page), 0.001))

        if (stage, page) in self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if (stage, page) in self.malformed:
            return httpx.Response(200, text="<html>maintenance</html>")

        event = self.events[event_id]
        name = None if self.empty else event.name
        if stage == 0:
            return httpx.Response(200, json={
                "EventName": name,
                "TotalStages": len(event.stages),
            })

        rows = event.stages[stage - 1]
        if assists == "on":
            rows = [r for r in rows if r["Name"] in event.assisted]
        size = event.page_size
        return httpx.Response(200, json={
            "EventName": name,
            "Page": page,
            "Pages": max(1, math.ceil(len(rows) / size)),
            "LeaderboardTotal": event.total_override.get(stage, len(rows)),
            "Entries": rows[(page - 1) * size:page * size],
        })

    def client(self) -> DirtClient:
        transport = httpx.MockTransport(self.handler)
        return DirtClient(
            base_url="https://dirt.test/uk",
            client=httpx.AsyncClient(transport=transport),
        )


# A three-stage event: alice and bob finish, carol stops after stage 2.
RALLY_DRIVERS = {
    "alice": ("Car A", [100.0, 250.0, 400.0]),
    "bob": ("Car A", [105.0, 258.5, 410.0]),
    "carol": ("Car B", [120.0, 280.0]),
}


def setup_rally(conn, rally_id: str = "r1", event_ids=(501,), stages: int = 3):
    """Season with one class (Car A, assists forbidden), one rally, two teams."""
    database.create_season(conn, "s1", "Season 1", {
        "pro": {"cars": ["Car A"], "assists": False},
    })
    database.create_rally(conn, rally_id, "s1", stages, list(event_ids), name="Rally 1")
    database.add_team(conn, rally_id, "pro", "red", "Car A", ["Alice"])
    database.add_team(conn, rally_id, "pro", "blue", "Car A", ["Bob"])
    database.set_nick(conn, "alice", "Alice")
    database.set_nick(conn, "bob", "Bob")
