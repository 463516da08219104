"""
poller.py — Async background task that refreshes every active rally.

Each cycle fetches the upstream events of every active rally, caches the
assembled leaderboards, flags restarters, records new stage times and, when
anything new was recorded, recomputes and stores the rally standings.
Runs as an asyncio task within FastAPI.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from results import database
from results.dirt_client import AlreadyBusyError, DirtClient, FetchError
from results.race_ledger import record_driver_times
from results.restart_detector import detect_restarts, merge_restarters
from results.scoring import ScoringEngine, standings_to_dict
from results.state import ResultsState
from results.times import derive_driver_times

logger = logging.getLogger("dirtleague.poller")

DEFAULT_INTERVAL = 60.0  # seconds between cycles


class RallyPoller:
    """Periodic fetch → detect → record → score loop."""

    def __init__(self, client: DirtClient,
                 db_path: Optional[Path] = None,
                 interval: float = DEFAULT_INTERVAL,
                 state: Optional[ResultsState] = None):
        self.client = client
        self.db_path = db_path
        self.interval = interval
        self.state = state or ResultsState()
        self.engine = ScoringEngine(self.state)
        # rallies whose configuration changed since they were last scored
        self._dirty: set[str] = set()
        self.state.subscribe(self._on_change)
        self._loaded = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._status = "stopped"
        self._cycle_count = 0
        self._error_count = 0
        self._row_count = 0
        self._last_poll: Optional[str] = None

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict:
        return {
            "is_running": self._running,
            "status": self._status,
            "cycle_count": self._cycle_count,
            "error_count": self._error_count,
            "row_count": self._row_count,
            "last_poll": self._last_poll,
            "interval": self.interval,
        }

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._status = "starting"
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._status = "stopped"

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
                self._status = "online"
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._error_count += 1
                self._status = f"error ({self._error_count})"
                logger.warning("Poll cycle failed: %s", e)

            await asyncio.sleep(self.interval)

        self._status = "stopped"

    def _on_change(self, change: dict) -> None:
        collection = change["collection"]
        if collection == "rallies":
            if change["action"] == "removed":
                self._dirty.discard(change["key"])
            else:
                self._dirty.add(change["key"])
        elif collection == "nicks":
            self._dirty.update(self.state.rallies)
        elif collection == "seasons":
            self._dirty.update(rally_id for rally_id, rally in self.state.rallies.items()
                               if rally["season"] == change["key"])

    def _refresh_state(self, conn) -> None:
        if not self._loaded:
            self.state.load(conn)
            self._loaded = True
        else:
            self.state.catch_up(conn)

    async def run_cycle(self) -> int:
        """Refresh every active rally once. Returns the number of new race rows."""
        conn = database.get_connection(self.db_path)
        try:
            self._refresh_state(conn)

            inserted = 0
            for rally in database.get_rallies(conn, active_only=True).values():
                try:
                    inserted += await self.process_rally(conn, rally)
                except Exception as e:
                    conn.rollback()
                    self._error_count += 1
                    logger.warning("Rally %s failed: %s", rally["id"], e)
        finally:
            conn.close()

        self._cycle_count += 1
        self._row_count += inserted
        self._last_poll = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        return inserted

    async def process_rally(self, conn, rally: dict) -> int:
        """Fetch each event of a rally in order; rescore if anything changed."""
        rally_id = rally["id"]
        offset = 0
        inserted = 0
        restarted = False

        for event_id in rally["event_ids"]:
            try:
                event = await self.client.fetch(event_id)
            except AlreadyBusyError:
                logger.debug("Event %s busy, skipping this cycle", event_id)
                event = None
            except FetchError as e:
                self._error_count += 1
                logger.warning("Event %s fetch failed: %s", event_id, e)
                event = None

            if event is None:
                # Later events need this event's stage count for their offset
                known = database.get_stage_meta(conn, event_id)
                if not known:
                    break
                offset += len(known)
                continue

            database.save_event_cache(conn, event_id, event.to_dict())
            database.save_stage_meta(conn, event_id, [
                {"stage": s.stage, "entry_count": s.entry_count,
                 "request_count": s.request_count,
                 "elapsed_time_ms": s.elapsed_time_ms}
                for s in event.stages
            ])

            driver_times = derive_driver_times(event)
            self._refresh_state(conn)
            restarters = detect_restarts(self.state.races_for(rally_id), driver_times,
                                         stage_offset=offset,
                                         stage_count=event.stage_count)
            if restarters and merge_restarters(conn, rally_id, restarters):
                restarted = True

            inserted += record_driver_times(conn, rally_id, driver_times, offset)
            offset += event.stage_count

        if inserted or restarted or rally_id in self._dirty:
            self.rescore(conn, rally_id)
        return inserted

    def rescore(self, conn, rally_id: str) -> Optional[dict]:
        """Recalculate and store standings. Returns them, or None if busy/unknown."""
        self._refresh_state(conn)
        standings = self.engine.calculate(rally_id)
        if standings is None:
            return None
        self._dirty.discard(rally_id)
        data = standings_to_dict(standings)
        database.save_standings(conn, rally_id, data)
        return data
