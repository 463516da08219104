"""
scoring.py — Championship points for a rally: driver and team standings per class.

Finishers of the final (power) stage are filtered through registration,
car/class, assists, disqualification, restart and team checks. Survivors
get finish points by rally total time and bonus points by power-stage time,
then team scores are summed from their drivers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Optional

from results.race_ledger import RaceRow
from results.state import ResultsState
from results.times import DNF_TIMES

logger = logging.getLogger("dirtleague.scoring")

FINISH_POINTS = [25, 18, 15, 12, 10, 8, 6, 4, 2, 1]
POWER_STAGE_POINTS = [3, 2, 1]


class StandingsInputError(Exception):
    """Configuration referenced by a race row is missing; the row is skipped."""


@dataclass
class StandingsDriver:
    name: str
    team: str
    time: float
    power_time: float
    score: int = 0


@dataclass
class StandingsTeam:
    id: str
    score: int


@dataclass
class ClassStandings:
    drivers: list[StandingsDriver] = field(default_factory=list)
    teams: list[StandingsTeam] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "drivers": [asdict(d) for d in self.drivers],
            "teams": [asdict(t) for t in self.teams],
        }


def standings_to_dict(standings: dict[str, ClassStandings]) -> dict:
    return {class_id: cls.to_dict() for class_id, cls in standings.items()}


# ---------------------------------------------------------------------------
# Sort keys
# ---------------------------------------------------------------------------

def total_time_key(driver: StandingsDriver) -> float:
    return driver.time


def power_time_key(driver: StandingsDriver) -> float:
    return driver.power_time


def score_key(driver: StandingsDriver) -> tuple[int, float]:
    """Highest score first; equal scores go to the faster rally total."""
    return -driver.score, driver.time


def team_score_key(team: StandingsTeam) -> int:
    return -team.score


def award_points(drivers: list[StandingsDriver], key, points: list[int]) -> None:
    """Sort drivers by key and add points to the leading len(points) of them."""
    drivers.sort(key=key)
    for driver, point in zip(drivers, points):
        driver.score += point


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def class_for_car(car: str, season: dict) -> Optional[str]:
    for class_id, cls in season["classes"].items():
        if car in cls.get("cars", []):
            return class_id
    return None


def assists_allowed(assists: bool, class_id: str, season: dict) -> bool:
    """A class with assists=False rejects rows that used them; None means no policy."""
    try:
        policy = season["classes"][class_id].get("assists")
    except KeyError:
        raise StandingsInputError(f"Class {class_id} missing from season {season.get('id')}")
    if policy is None:
        return True
    return not (assists and policy is False)


def is_disqualified(driver: str, rally: dict) -> bool:
    return any(p["driver"] == driver and p.get("dq") is True
               for p in rally.get("penalties", []))


def is_restarter(driver: str, nick: str, rally: dict) -> bool:
    restarters = rally.get("restarters", [])
    return driver in restarters or nick in restarters


def driver_team_id(driver: str, class_id: str, rally: dict) -> Optional[str]:
    for team_id, team in rally.get("teams", {}).get(class_id, {}).items():
        if driver in team["drivers"]:
            return team_id
    return None


def get_team(team_id: str, class_id: str, rally: dict) -> dict:
    try:
        return rally["teams"][class_id][team_id]
    except KeyError:
        raise StandingsInputError(f"Team {team_id} missing from class {class_id}")


def total_times(races: list[RaceRow], nicks: dict[str, str]) -> dict[str, float]:
    """Sum every recorded stage time per registered driver."""
    totals: dict[str, float] = defaultdict(float)
    for race in races:
        driver = nicks.get(race.user_name)
        if driver:
            totals[driver] += race.time
    return {driver: round(total, 3) for driver, total in totals.items()}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ScoringEngine:
    """Rally classification. At most one calculation per rally id at a time."""

    def __init__(self, state: ResultsState, busy: Optional[set[str]] = None):
        self.state = state
        self._active: set[str] = busy if busy is not None else set()

    def is_busy(self, rally_id: str) -> bool:
        return rally_id in self._active

    def calculate(self, rally_id: str) -> Optional[dict[str, ClassStandings]]:
        """Class-separated standings, or None if the rally is busy or unknown."""
        if rally_id in self._active:
            logger.debug("Rally %s calculation already running", rally_id)
            return None
        self._active.add(rally_id)
        try:
            return self._calculate(rally_id)
        finally:
            self._active.discard(rally_id)

    def _calculate(self, rally_id: str) -> Optional[dict[str, ClassStandings]]:
        rally = self.state.rallies.get(rally_id)
        if rally is None:
            logger.warning("Rally %s not found, nothing to score", rally_id)
            return None
        season = self.state.seasons.get(rally["season"])
        if season is None:
            logger.warning("Rally %s: season %s not found", rally_id, rally["season"])
            season = {"id": rally["season"], "classes": {}}

        races = self.state.races_for(rally_id)
        nicks = self.state.nicks
        totals = total_times(races, nicks)

        standings = {class_id: ClassStandings() for class_id in season["classes"]}

        finishers = [r for r in races
                     if r.stage == rally["stages"] and r.time not in DNF_TIMES]
        for race in finishers:
            try:
                entry = self._eligible_driver(race, rally, season, nicks, totals)
            except StandingsInputError as e:
                logger.warning("Rally %s: skipping %s: %s", rally_id, race.user_name, e)
                continue
            if entry is None:
                continue
            class_id, driver = entry
            standings[class_id].drivers.append(driver)

        for class_id, cls in standings.items():
            award_points(cls.drivers, total_time_key, FINISH_POINTS)
            award_points(cls.drivers, power_time_key, POWER_STAGE_POINTS)
            cls.drivers.sort(key=score_key)
            cls.teams = self._team_standings(cls.drivers, class_id, rally)

        logger.info("Rally %s scored: %s", rally_id, ", ".join(
            f"{class_id}={len(cls.drivers)}" for class_id, cls in standings.items()
        ) or "no classes")
        return standings

    def _eligible_driver(self, race: RaceRow, rally: dict, season: dict,
                         nicks: dict[str, str], totals: dict[str, float]
                         ) -> Optional[tuple[str, StandingsDriver]]:
        """Return (class_id, driver) for a scoring row, None if it is excluded."""
        driver = nicks.get(race.user_name)
        if not driver:
            return None  # not registered

        class_id = class_for_car(race.car, season)
        if class_id is None:
            return None  # car not allowed in any class
        if not assists_allowed(race.assists, class_id, season):
            return None
        if is_disqualified(driver, rally):
            return None
        if is_restarter(driver, race.user_name, rally):
            return None

        team_id = driver_team_id(driver, class_id, rally)
        if team_id is None:
            return None
        if get_team(team_id, class_id, rally)["car"] != race.car:
            return None  # not the car assigned to the team

        if driver not in totals:
            raise StandingsInputError(f"No total time for {driver}")
        return class_id, StandingsDriver(
            name=driver,
            team=team_id,
            time=totals[driver],
            power_time=race.time,
        )

    @staticmethod
    def _team_standings(drivers: list[StandingsDriver], class_id: str,
                        rally: dict) -> list[StandingsTeam]:
        """Sum driver scores per team, in driver order; private teams are left out."""
        teams: list[StandingsTeam] = []
        seen: dict[str, StandingsTeam] = {}
        for driver in drivers:
            team = seen.get(driver.team)
            if team is not None:
                team.score += driver.score
                continue
            if get_team(driver.team, class_id, rally).get("private"):
                continue
            team = StandingsTeam(id=driver.team, score=driver.score)
            seen[driver.team] = team
            teams.append(team)
        teams.sort(key=team_score_key)
        return teams
