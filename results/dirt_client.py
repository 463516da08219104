"""
dirt_client.py — Async DiRT Rally leaderboard client.

Fetches an event summary, then every stage and every leaderboard page of
each stage concurrently, and assembles them into one EventResult.
A second paginated pass over the assists-enabled leaderboard yields the
names of drivers who used assists.

Uses httpx+asyncio. One fetch per event id may be in flight at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from results.times import parse_time

logger = logging.getLogger("dirtleague.fetch")

DEFAULT_BASE_URL = "https://www.dirtgame.com/uk"
EVENT_PATH = "/api/event"
DEFAULT_TIMEOUT = 15.0
DEFAULT_USER_AGENT = "DirtLeague/1.0"

ASSISTS_ANY = "any"
ASSISTS_ON = "on"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class FetchError(Exception):
    """An event fetch failed; no partial result is produced."""


class TransportError(FetchError):
    """Network failure or non-2xx status while fetching a page."""


class EmptyResponseError(FetchError):
    """Upstream answered without an event name (transient empty payload)."""


class MalformedResponseError(FetchError):
    """Response body is not valid JSON or lacks required fields."""


class ConsistencyError(FetchError):
    """Assembled leaderboard disagrees with the totals reported upstream."""


class AlreadyBusyError(Exception):
    """A fetch for this event id is already running. Skip, try next cycle."""


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LeaderboardEntry:
    position: int
    player_id: int
    name: str
    vehicle_name: str
    time: str
    diff_first: str = ""
    tier_id: Optional[int] = None

    @classmethod
    def from_api(cls, row: dict) -> "LeaderboardEntry":
        """Build from an upstream Entries row. Raises ValueError on an unreadable Time."""
        time_text = str(row["Time"])
        parse_time(time_text)
        return cls(
            position=int(row["Position"]),
            player_id=int(row.get("PlayerId") or 0),
            name=str(row["Name"]),
            vehicle_name=str(row.get("VehicleName") or ""),
            time=time_text,
            diff_first=str(row.get("DiffFirst") or ""),
            tier_id=row.get("TierID"),
        )


@dataclass
class ResultPage:
    event_id: int
    stage: int
    page: int
    response_time_ms: int
    event_name: str
    entries: list[LeaderboardEntry] = field(default_factory=list)
    total_entries: int = 0
    total_pages: int = 1
    total_stages: Optional[int] = None


@dataclass
class StageResult:
    stage: int
    entries: list[LeaderboardEntry]
    request_count: int
    elapsed_time_ms: int
    total_time_ms: int

    @property
    def entry_count(self) -> int:
        return len(self.entries)


@dataclass
class EventResult:
    event_id: int
    event_name: str
    stages: list[StageResult]
    assisted_names: set[str]
    request_count: int
    elapsed_time_ms: int
    timestamp: str

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    def to_dict(self) -> dict:
        """Plain representation for the raw-response cache."""
        return {
            "event_id": self.event_id,
            "event_name": self.event_name,
            "timestamp": self.timestamp,
            "request_count": self.request_count,
            "elapsed_time_ms": self.elapsed_time_ms,
            "assisted_names": sorted(self.assisted_names),
            "stages": [
                {
                    "stage": s.stage,
                    "request_count": s.request_count,
                    "elapsed_time_ms": s.elapsed_time_ms,
                    "entries": [asdict(e) for e in s.entries],
                }
                for s in self.stages
            ],
        }


def merge_pages(pages: list[ResultPage]) -> list[LeaderboardEntry]:
    """Concatenate page entries and order them by leaderboard position.

    Siblings complete in any order, so pages are sorted by their reported
    number before merging.
    """
    entries: list[LeaderboardEntry] = []
    for page in sorted(pages, key=lambda p: p.page):
        entries.extend(page.entries)
    entries.sort(key=lambda e: e.position)
    return entries


def _check_unique_entries(event_id: int, stage: int,
                          entries: list[LeaderboardEntry]) -> None:
    """A leaderboard that shifted between page requests repeats rows."""
    positions: set[int] = set()
    names: set[str] = set()
    for entry in entries:
        if entry.position in positions:
            raise ConsistencyError(
                f"Event {event_id} stage {stage}: position {entry.position} appears twice"
            )
        if entry.name in names:
            raise ConsistencyError(
                f"Event {event_id} stage {stage}: {entry.name} appears twice"
            )
        positions.add(entry.position)
        names.add(entry.name)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class DirtClient:
    """Fan-out/join fetcher for event leaderboards.

    The busy set may be injected so several clients can share it; by default
    each client owns its own.
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL,
                 client: Optional[httpx.AsyncClient] = None,
                 busy: Optional[set[int]] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 user_agent: str = DEFAULT_USER_AGENT):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
        )
        self._active: set[int] = busy if busy is not None else set()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DirtClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def is_busy(self, event_id: int) -> bool:
        return event_id in self._active

    async def fetch(self, event_id: int) -> EventResult:
        """Fetch every stage and page of an event and assemble the result.

        Raises AlreadyBusyError if this event is already being fetched, and a
        FetchError subclass if any page fails or the assembly is inconsistent.
        """
        if event_id in self._active:
            raise AlreadyBusyError(f"Event {event_id} is already being fetched")
        self._active.add(event_id)
        try:
            return await self._fetch_event(event_id)
        finally:
            self._active.discard(event_id)

    async def _fetch_event(self, event_id: int) -> EventResult:
        start = time.monotonic()
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        summary = await self._fetch_page(event_id)
        if summary.total_stages is None:
            raise MalformedResponseError(f"Event {event_id}: summary has no TotalStages")
        stage_count = summary.total_stages

        stages = await asyncio.gather(*(
            self._fetch_stage(event_id, stage) for stage in range(1, stage_count + 1)
        ))
        stages = sorted(stages, key=lambda s: s.stage)
        logger.info("Event %s: all %d stages fetched", event_id, stage_count)

        _check_stage_counts(event_id, stages)

        assisted: set[str] = set()
        request_count = 1 + sum(s.request_count for s in stages)
        if stage_count:
            assists_stage = await self._fetch_stage(event_id, 1, assists=ASSISTS_ON)
            assisted = {entry.name for entry in assists_stage.entries}
            request_count += assists_stage.request_count

        result = EventResult(
            event_id=event_id,
            event_name=summary.event_name,
            stages=stages,
            assisted_names=assisted,
            request_count=request_count,
            elapsed_time_ms=_elapsed_ms(start),
            timestamp=timestamp,
        )
        logger.info("Event %s fetched: %d requests in %d ms",
                    event_id, result.request_count, result.elapsed_time_ms)
        return result

    async def _fetch_stage(self, event_id: int, stage: int,
                           assists: str = ASSISTS_ANY) -> StageResult:
        """Fetch page 1 of a stage, then the remaining pages concurrently."""
        start = time.monotonic()
        first = await self._fetch_page(event_id, stage, 1, assists)

        rest = await asyncio.gather(*(
            self._fetch_page(event_id, stage, page, assists)
            for page in range(2, first.total_pages + 1)
        ))
        pages = [first, *rest]
        entries = merge_pages(pages)
        _check_unique_entries(event_id, stage, entries)

        if len(entries) != first.total_entries:
            raise ConsistencyError(
                f"Event {event_id} stage {stage}: merged {len(entries)} entries, "
                f"leaderboard reports {first.total_entries}"
            )

        logger.debug("Event %s stage %s (%s): %d pages, %d entries",
                     event_id, stage, assists, len(pages), len(entries))
        return StageResult(
            stage=stage,
            entries=entries,
            request_count=len(pages),
            elapsed_time_ms=_elapsed_ms(start),
            total_time_ms=sum(p.response_time_ms for p in pages),
        )

    async def _fetch_page(self, event_id: int, stage: int = 0, page: int = 1,
                          assists: str = ASSISTS_ANY) -> ResultPage:
        """Single request for one (event, stage, page)."""
        params = {
            "assists": assists,
            "eventId": event_id,
            "leaderboard": "true",
            "noCache": int(time.time() * 1000),
            "stageId": stage,
            "page": page,
        }
        start = time.monotonic()
        try:
            resp = await self._client.get(f"{self.base_url}{EVENT_PATH}", params=params)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(
                f"Event {event_id} stage {stage} page {page}: {e}"
            ) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Event {event_id} stage {stage} page {page}: invalid JSON"
            ) from e

        if not isinstance(data, dict) or not data.get("EventName"):
            raise EmptyResponseError(
                f"Event {event_id} stage {stage} page {page}: empty response"
            )

        try:
            entries = [LeaderboardEntry.from_api(row) for row in data.get("Entries") or []]
            result = ResultPage(
                event_id=event_id,
                stage=stage,
                page=page,
                response_time_ms=_elapsed_ms(start),
                event_name=data["EventName"],
                entries=entries,
                total_entries=int(data.get("LeaderboardTotal") or 0),
                total_pages=int(data.get("Pages") or 1),
                total_stages=(int(data["TotalStages"])
                              if data.get("TotalStages") is not None else None),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(
                f"Event {event_id} stage {stage} page {page}: {e!r}"
            ) from e
        return result


def _check_stage_counts(event_id: int, stages: list[StageResult]) -> None:
    """Drivers can drop out of later stages but never reappear."""
    for previous, current in zip(stages, stages[1:]):
        if current.entry_count > previous.entry_count:
            raise ConsistencyError(
                f"Event {event_id}: stage {current.stage} has {current.entry_count} "
                f"entries, more than stage {previous.stage} ({previous.entry_count})"
            )
