"""
gridsim/grid.py
---------------
Pure race logic: qualifying order, lap records, leaderboard aggregation and
the derived race state. No I/O here; races.py feeds rows in and ships the
results out.

Two index spaces
----------------
- EntrantIndex : position in races.entrants (registration order).
- GridSlot     : position in races.starting_positions.

starting_positions[slot] is the EntrantIndex placed at that slot. Lap records
(laps.entrant_index) and leaderboard entries are keyed by GridSlot; only the
entrant listing and qualifying itself speak EntrantIndex.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, NewType, Optional, Sequence

from .car_client import DriverIdentity, LapOutcome, UNKNOWN_DRIVER

EntrantIndex = NewType("EntrantIndex", int)
GridSlot = NewType("GridSlot", int)

DEFAULT_GRID_PENALTY_S = 5.0


class RaceState(str, Enum):
    UNQUALIFIED = "unqualified"
    QUALIFIED = "qualified"
    RACING = "racing"
    FINISHED = "finished"


def race_state(grid_set: bool, max_lap: int, total_laps: int) -> RaceState:
    """Derive the lifecycle state from the two persisted facts."""
    if not grid_set:
        return RaceState.UNQUALIFIED
    if max_lap <= 0:
        return RaceState.QUALIFIED
    if max_lap >= total_laps:
        return RaceState.FINISHED
    return RaceState.RACING


# ---------- qualifying ----------
def qualifying_order(skills: Sequence[float]) -> List[EntrantIndex]:
    """
    Registration indices ordered by skill, highest first.
    sorted() is stable, so equal skills keep registration order.
    """
    order = sorted(range(len(skills)), key=lambda i: -float(skills[i]))
    return [EntrantIndex(i) for i in order]


def entrant_at(slot: GridSlot, starting_positions: Sequence[int],
               entrants: Sequence[str]) -> Optional[str]:
    """URI of the entrant occupying `slot`, or None when the arrays disagree."""
    if not 0 <= slot < len(starting_positions):
        return None
    idx = starting_positions[slot]
    if not isinstance(idx, int) or not 0 <= idx < len(entrants):
        return None
    return entrants[idx]


# ---------- lap records ----------
@dataclass(frozen=True)
class LapRecord:
    lap_number: int
    slot: GridSlot
    time: float
    crashed: bool

    def as_row(self, race_id: int) -> tuple:
        return (race_id, self.lap_number, int(self.slot), self.time, int(self.crashed))


def lap_record(lap_number: int, slot: GridSlot, outcome: LapOutcome) -> LapRecord:
    """Reduce one car-service outcome to the row we persist."""
    if outcome.crashed:
        return LapRecord(lap_number, slot, 0.0, True)
    return LapRecord(lap_number, slot, outcome.time + outcome.randomness, False)


def next_lap_number(max_lap: Optional[int]) -> int:
    return int(max_lap or 0) + 1


def group_laps(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Fold flat lap rows (already ordered by lap_number, entrant_index) into
    [{number, lapTimes: [{entrant, time, crashed}]}].
    """
    laps: List[Dict[str, Any]] = []
    for row in rows:
        if not laps or laps[-1]["number"] != row["lap_number"]:
            laps.append({"number": int(row["lap_number"]), "lapTimes": []})
        laps[-1]["lapTimes"].append({
            "entrant": int(row["entrant_index"]),
            "time": float(row["lap_time"]),
            "crashed": bool(row["crashed"]),
        })
    return laps


# ---------- leaderboard ----------
@dataclass
class Standing:
    slot: GridSlot
    uri: Optional[str]
    laps: int = 0
    time: float = 0.0
    driver: DriverIdentity = field(default=UNKNOWN_DRIVER)

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "uri": self.uri,
            "gridSlot": int(self.slot),
            "laps": self.laps,
            "time": round(self.time, 3),
        }
        out.update(self.driver.as_dict())
        return out


def initial_standings(entrants: Sequence[str], starting_positions: Sequence[int],
                      grid_penalty_s: float = DEFAULT_GRID_PENALTY_S) -> List[Standing]:
    """One standing per grid slot, seeded with the starting-position penalty."""
    rows: List[Standing] = []
    for pos, value in enumerate(starting_positions):
        slot = GridSlot(pos)
        rows.append(Standing(
            slot=slot,
            uri=entrant_at(slot, starting_positions, entrants),
            time=float(value) * grid_penalty_s,
        ))
    return rows


def accumulate(standings: List[Standing], lap_rows: Iterable[Mapping[str, Any]]) -> List[Standing]:
    """Add every non-crashed lap to its slot. Unknown slots and crashes are ignored."""
    for row in lap_rows:
        if row["crashed"]:
            continue
        slot = int(row["entrant_index"])
        if not 0 <= slot < len(standings):
            continue
        standings[slot].laps += 1
        standings[slot].time += float(row["lap_time"])
    return standings


def rank(standings: Iterable[Standing]) -> List[Standing]:
    """Most laps first, then lowest cumulative time."""
    return sorted(standings, key=lambda s: (-s.laps, s.time))
