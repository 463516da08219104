"""
routes.py — REST API endpoints for DirtLeague.

All endpoints under /api/. Wraps store reads from results/database.py,
scoring from results/scoring.py and the background poller.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from results.database import (
    get_connection, get_rallies, get_rally, get_races, get_standings,
    get_nicks, set_nick, set_setting, save_standings,
)
from results.race_ledger import RaceRow
from results.scoring import ScoringEngine, standings_to_dict
from results.state import ResultsState
from results.times import format_time

logger = logging.getLogger("dirtleague.api")

router = APIRouter()


# ─── Helper ──────────────────────────────────────────────────────────

def _get_conn(request: Request):
    return get_connection(getattr(request.app.state, "db_path", None))


def _require_rally(conn, rally_id: str) -> dict:
    rally = get_rally(conn, rally_id)
    if rally is None:
        raise HTTPException(404, f"Rally {rally_id} not found")
    return rally


# ─── Pydantic models ─────────────────────────────────────────────────

class NickUpdate(BaseModel):
    driver: str


# ═══════════════════════════════════════════════════════════════════════
# STATUS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/status")
async def system_status(request: Request):
    conn = _get_conn(request)
    try:
        rallies = get_rallies(conn)
        active = sum(1 for r in rallies.values() if r["status"] == "active")
    finally:
        conn.close()
    return {
        "ok": True,
        "rallies": len(rallies),
        "active_rallies": active,
        "poller": _poller_status(request),
    }


# ═══════════════════════════════════════════════════════════════════════
# RALLIES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/rallies")
async def list_rallies(request: Request, active_only: bool = False):
    conn = _get_conn(request)
    try:
        return list(get_rallies(conn, active_only=active_only).values())
    finally:
        conn.close()


@router.get("/rallies/{rally_id}")
async def get_rally_endpoint(request: Request, rally_id: str):
    conn = _get_conn(request)
    try:
        return _require_rally(conn, rally_id)
    finally:
        conn.close()


@router.get("/rallies/{rally_id}/standings")
async def get_standings_endpoint(request: Request, rally_id: str):
    conn = _get_conn(request)
    try:
        _require_rally(conn, rally_id)
        standings = get_standings(conn, rally_id)
        if standings is None:
            raise HTTPException(404, f"No standings for rally {rally_id} yet")
        return standings
    finally:
        conn.close()


@router.get("/rallies/{rally_id}/races")
async def list_races(request: Request, rally_id: str):
    conn = _get_conn(request)
    try:
        _require_rally(conn, rally_id)
        races = []
        for row in get_races(conn, rally_id):
            race = RaceRow.from_db(row).to_dict()
            race["time_text"] = format_time(race["time"])
            races.append(race)
        return races
    finally:
        conn.close()


@router.post("/rallies/{rally_id}/recalculate")
async def recalculate_endpoint(request: Request, rally_id: str):
    """Force a full standings recalculation."""
    conn = _get_conn(request)
    try:
        _require_rally(conn, rally_id)
        poller = getattr(request.app.state, "poller", None)
        if poller is not None:
            data = poller.rescore(conn, rally_id)
        else:
            state = ResultsState()
            state.load(conn)
            standings = ScoringEngine(state).calculate(rally_id)
            data = None
            if standings is not None:
                data = standings_to_dict(standings)
                save_standings(conn, rally_id, data)
        if data is None:
            raise HTTPException(409, f"Rally {rally_id} calculation already running")
        logger.info("Standings recalculated for %s", rally_id)
        return data
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# NICKNAMES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/nicks")
async def list_nicks(request: Request):
    conn = _get_conn(request)
    try:
        return get_nicks(conn)
    finally:
        conn.close()


@router.put("/nicks/{nick}")
async def set_nick_endpoint(request: Request, nick: str, body: NickUpdate):
    conn = _get_conn(request)
    try:
        set_nick(conn, nick, body.driver)
        return {"ok": True, "nick": nick, "driver": body.driver}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# POLLER
# ═══════════════════════════════════════════════════════════════════════

def _poller_status(request: Request) -> dict:
    poller = getattr(request.app.state, "poller", None)
    if poller:
        return poller.get_status()
    return {
        "is_running": False,
        "status": "stopped",
        "cycle_count": 0,
        "error_count": 0,
        "row_count": 0,
        "last_poll": None,
        "interval": None,
    }


@router.post("/poller/start")
async def poller_start(request: Request):
    poller = getattr(request.app.state, "poller", None)
    if poller is None:
        raise HTTPException(400, "Poller not configured")
    await poller.start()
    conn = _get_conn(request)
    try:
        set_setting(conn, "poller_enabled", "true")
    finally:
        conn.close()
    return {"ok": True}


@router.post("/poller/stop")
async def poller_stop(request: Request):
    poller = getattr(request.app.state, "poller", None)
    if poller and poller.is_running:
        await poller.stop()
    conn = _get_conn(request)
    try:
        set_setting(conn, "poller_enabled", "false")
    finally:
        conn.close()
    return {"ok": True}


@router.get("/poller/status")
async def poller_status(request: Request):
    return _poller_status(request)
