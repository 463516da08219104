"""
test_poller.py — End-to-end cycles: fetch, detect restarts, record, rescore.

Tests:
1. First cycle records every stage time and stores standings
2. Repeating a cycle with unchanged data inserts nothing
3. A changed stage time flags the driver and removes them from standings
4. Fetch failures are counted, not raised
5. One failing rally does not stop the others
6. Configuration changes trigger a rescore
7. Multi-event rallies offset stage numbers, also past a failed event
8. start()/stop() lifecycle
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(__file__))

from leaderboard_fixtures import (
    FakeDirtApi, FakeEvent, RALLY_DRIVERS, make_db_path, setup_rally,
)
from results import database
from results.poller import RallyPoller


def _setup(**kwargs):
    db_path = make_db_path()
    conn = database.get_connection(db_path)
    setup_rally(conn, **kwargs)
    conn.close()
    return db_path


def _read(db_path, fn, *args):
    conn = database.get_connection(db_path)
    try:
        return fn(conn, *args)
    finally:
        conn.close()


def _cycles(api, db_path, count=1, between=None):
    """Run count poll cycles; between(i) is called after cycle i."""
    async def scenario():
        poller = RallyPoller(api.client(), db_path=db_path)
        results = []
        for i in range(count):
            results.append(await poller.run_cycle())
            if between:
                between(i)
        return poller, results
    return asyncio.run(scenario())


def _score_names(standings, class_id="pro"):
    return [(d["name"], d["score"]) for d in standings[class_id]["drivers"]]


# ======================================================================
# Single event
# ======================================================================

def test_first_cycle_records_and_scores():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    poller, (inserted,) = _cycles(api, db_path)

    # alice 3 + bob 3 + carol 2
    assert inserted == 8
    races = _read(db_path, database.get_races, "r1")
    alice = sorted((r["stage"], r["time"]) for r in races if r["user_name"] == "alice")
    assert alice == [(1, 100.0), (2, 150.0), (3, 150.0)]

    standings = _read(db_path, database.get_standings, "r1")
    # alice 400 total, fastest power stage; carol's car is in no class
    assert _score_names(standings) == [("Alice", 28), ("Bob", 20)]
    assert standings["pro"]["teams"] == [
        {"id": "red", "score": 28}, {"id": "blue", "score": 20},
    ]

    assert _read(db_path, database.get_event_cache, 501)["event_name"] == "Rally Finland"
    assert len(_read(db_path, database.get_stage_meta, 501)) == 3
    status = poller.get_status()
    assert status["cycle_count"] == 1
    assert status["row_count"] == 8
    assert status["last_poll"]


def test_repeated_cycle_inserts_nothing():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    poller, results = _cycles(api, db_path, count=2)

    assert results == [8, 0]
    assert len(_read(db_path, database.get_races, "r1")) == 8
    assert _read(db_path, database.get_rally, "r1")["restarters"] == []


def test_changed_time_flags_restarter():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    def restart_alice(i):
        if i == 0:
            api.events[501] = FakeEvent("Rally Finland", {
                "alice": ("Car A", [101.0, 251.0, 401.0]),
                "bob": ("Car A", [105.0, 258.5, 410.0]),
            })

    poller, results = _cycles(api, db_path, count=2, between=restart_alice)

    # only alice's new stage 1 time is a new row
    assert results == [8, 1]
    assert _read(db_path, database.get_rally, "r1")["restarters"] == ["alice"]
    standings = _read(db_path, database.get_standings, "r1")
    assert _score_names(standings) == [("Bob", 28)]
    assert standings["pro"]["teams"] == [{"id": "blue", "score": 28}]


def test_inactive_rally_is_skipped():
    db_path = _setup()
    conn = database.get_connection(db_path)
    database.update_rally(conn, "r1", status="finished")
    conn.close()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    poller, (inserted,) = _cycles(api, db_path)

    assert inserted == 0
    assert api.requests == []


# ======================================================================
# Failures
# ======================================================================

def test_fetch_failure_is_counted_not_raised():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})
    api.fail = {(2, 1)}

    poller, (inserted,) = _cycles(api, db_path)

    assert inserted == 0
    assert poller.get_status()["error_count"] == 1
    assert poller.get_status()["cycle_count"] == 1
    assert _read(db_path, database.get_standings, "r1") is None


def _second_rally(db_path, event_id=502):
    conn = database.get_connection(db_path)
    database.create_rally(conn, "r2", "s1", 3, [event_id], name="Rally 2")
    database.add_team(conn, "r2", "pro", "red", "Car A", ["Alice"])
    conn.close()


def test_rally_with_bad_times_does_not_block_others():
    db_path = _setup()
    _second_rally(db_path)
    bad = FakeEvent("Rally Finland", RALLY_DRIVERS)
    bad.stages[0][0] = dict(bad.stages[0][0], Time="DNF")
    api = FakeDirtApi({501: bad, 502: FakeEvent("Rally Sweden", RALLY_DRIVERS)})

    poller, (inserted,) = _cycles(api, db_path)

    assert inserted == 8
    assert _read(db_path, database.get_races, "r1") == []
    assert len(_read(db_path, database.get_races, "r2")) == 8
    assert poller.get_status()["error_count"] == 1


def test_unexpected_rally_error_does_not_block_others():
    db_path = _setup()
    _second_rally(db_path)
    # event 501 is unknown to the fake upstream, so its handler raises KeyError
    api = FakeDirtApi({502: FakeEvent("Rally Sweden", RALLY_DRIVERS)})

    poller, (inserted,) = _cycles(api, db_path)

    assert inserted == 8
    assert len(_read(db_path, database.get_races, "r2")) == 8
    standings = _read(db_path, database.get_standings, "r2")
    assert _score_names(standings) == [("Alice", 28)]
    status = poller.get_status()
    assert status["error_count"] == 1
    assert status["cycle_count"] == 1


# ======================================================================
# Configuration changes
# ======================================================================

def test_penalty_triggers_rescore_without_new_rows():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    def disqualify_bob(i):
        if i == 0:
            conn = database.get_connection(db_path)
            database.add_penalty(conn, "r1", "Bob", dq=True, message="jump start")
            conn.close()

    poller, results = _cycles(api, db_path, count=2, between=disqualify_bob)

    assert results == [8, 0]
    standings = _read(db_path, database.get_standings, "r1")
    assert _score_names(standings) == [("Alice", 28)]


def test_season_change_triggers_rescore():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    def move_car_a(i):
        if i == 0:
            conn = database.get_connection(db_path)
            database.set_season_class(conn, "s1", "pro", ["Car B"], assists=False)
            conn.close()

    poller, results = _cycles(api, db_path, count=2, between=move_car_a)

    assert results == [8, 0]
    standings = _read(db_path, database.get_standings, "r1")
    assert standings["pro"]["drivers"] == []


def test_unchanged_cycle_does_not_rescore():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    poller, results = _cycles(api, db_path, count=2)

    changes = _read(db_path, database.get_changes, 0, "standings")
    assert len(changes) == 1


# ======================================================================
# Multi-event rallies
# ======================================================================

LEG_TWO = {
    "alice": ("Car A", [50.0, 100.0]),
    "bob": ("Car A", [55.0, 110.0]),
}


def test_second_event_stages_follow_the_first():
    db_path = _setup(event_ids=(501, 502), stages=5)
    api = FakeDirtApi({
        501: FakeEvent("Leg 1", RALLY_DRIVERS),
        502: FakeEvent("Leg 2", LEG_TWO),
    })

    poller, (inserted,) = _cycles(api, db_path)

    assert inserted == 8 + 4
    races = _read(db_path, database.get_races, "r1")
    alice = sorted((r["stage"], r["time"]) for r in races if r["user_name"] == "alice")
    assert alice == [(1, 100.0), (2, 150.0), (3, 150.0), (4, 50.0), (5, 50.0)]

    standings = _read(db_path, database.get_standings, "r1")
    # totals: alice 500, bob 520; power stage 5: alice 50, bob 55
    assert _score_names(standings) == [("Alice", 28), ("Bob", 20)]


def test_failed_event_keeps_known_offset():
    db_path = _setup(event_ids=(501, 502), stages=5)
    api = FakeDirtApi({
        501: FakeEvent("Leg 1", RALLY_DRIVERS),
        502: FakeEvent("Leg 2", LEG_TWO),
    })

    def break_leg_one(i):
        if i == 0:
            # leg 1 stage 1 has three drivers, so only it has a second page
            api.fail = {(1, 2)}
            api.events[502] = FakeEvent("Leg 2", dict(LEG_TWO, dave=("Car A", [60.0, 120.0])),
                                        page_size=3)

    poller, results = _cycles(api, db_path, count=2, between=break_leg_one)

    assert results == [12, 2]
    races = _read(db_path, database.get_races, "r1")
    assert sorted(r["stage"] for r in races if r["user_name"] == "dave") == [4, 5]
    assert poller.get_status()["error_count"] == 1


def test_unknown_failed_event_stops_the_rally():
    db_path = _setup(event_ids=(501, 502), stages=5)
    api = FakeDirtApi({
        501: FakeEvent("Leg 1", RALLY_DRIVERS),
        502: FakeEvent("Leg 2", LEG_TWO),
    })
    api.fail = {(1, 2)}

    poller, (inserted,) = _cycles(api, db_path)

    assert inserted == 0
    assert all(r[0] == 501 for r in api.requests)


# ======================================================================
# Lifecycle
# ======================================================================

def test_start_and_stop():
    db_path = _setup()
    api = FakeDirtApi({501: FakeEvent("Rally Finland", RALLY_DRIVERS)})

    async def scenario():
        poller = RallyPoller(api.client(), db_path=db_path, interval=0.01)
        await poller.start()
        assert poller.is_running
        for _ in range(200):
            if poller.get_status()["cycle_count"]:
                break
            await asyncio.sleep(0.01)
        await poller.stop()
        return poller

    poller = asyncio.run(scenario())
    status = poller.get_status()
    assert status["is_running"] is False
    assert status["status"] == "stopped"
    assert status["cycle_count"] >= 1
    assert status["row_count"] == 8
