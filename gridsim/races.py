"""
GridSim - gridsim/races.py
--------------------------
Race endpoints: entrant registry, qualifying, lap simulation and leaderboards.

Endpoints
- GET    /race                       all races with grouped laps
- GET    /race/{id}                  one race (+ derived state)
- GET    /race/{id}/entrant          entrants with live driver identity
- POST   /race/{id}/entrant          body {entrant: uri}              (API key)
- DELETE /race/{id}/entrant?carURI=  remove an entrant                (API key)
- POST   /race/{id}/qualify          freeze the starting grid         (API key)
- GET    /race/{id}/lap              flat lap log
- POST   /race/{id}/lap              simulate and append the next lap (API key)
- GET    /race/{id}/leaderboard      standings as of the latest lap
- GET    /race/{id}/lap/{number}     standings as of lap {number}

Behavior
1) Every per-entrant car-service call inside one request is gathered
   concurrently. Failures never escape: they come back as Fetched fallbacks
   (skill 0, crashed lap, unknown driver) and are logged by car_client.
2) Lap records are keyed by grid slot. The entrant for slot p is
   entrants[starting_positions[p]].
3) The latest lap is always MAX(lap_number) from the log; nothing is cached.
4) POST /race/{id}/lap is serialized per race with an in-process asyncio.Lock
   so two concurrent calls can't compute the same lap number.

Data sources
- races(id, track_id, entrants JSON, starting_positions JSON)
- tracks(id, name, type, laps, base_lap_time)
- laps(race_id, lap_number, entrant_index, lap_time, crashed)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, field_validator

from .car_client import UNKNOWN_DRIVER, CarServiceClient, DriverIdentity, Fetched
from .config_loader import get_db_path, get_race_rules
from .db_schema import dump_json_list, load_json_list
from .errors import BadRequest, Conflict, Internal, NotFound, envelope
from .grid import (
    GridSlot,
    LapRecord,
    accumulate,
    entrant_at,
    group_laps,
    initial_standings,
    lap_record,
    next_lap_number,
    qualifying_order,
    race_state,
    rank,
)
from .security import require_api_key
from .tracks import track_uri

log = logging.getLogger("gridsim.races")

router = APIRouter(prefix="/race", tags=["races"])

RACE_SELECT = """
    SELECT races.id AS race_id, races.track_id, races.entrants, races.starting_positions,
           tracks.name AS track_name, tracks.type AS track_type,
           tracks.laps AS total_laps, tracks.base_lap_time
    FROM races
    JOIN tracks ON races.track_id = tracks.id
"""

# race_id -> lock guarding lap-number allocation
_LAP_LOCKS: Dict[int, asyncio.Lock] = {}


def _lap_lock(race_id: int) -> asyncio.Lock:
    return _LAP_LOCKS.setdefault(race_id, asyncio.Lock())


# ------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------
def get_car_client(request: Request) -> CarServiceClient:
    """Shared client created by the app lifespan (see server.py)."""
    return request.app.state.car_client


@contextlib.asynccontextmanager
async def _db() -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        yield db


async def _fetch_one(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
    cur = await db.execute(sql, params)
    row = await cur.fetchone()
    await cur.close()
    return row


async def _fetch_all(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
    cur = await db.execute(sql, params)
    rows = await cur.fetchall()
    await cur.close()
    return list(rows)


async def _load_race(db: aiosqlite.Connection, race_id: int) -> Dict[str, Any]:
    row = await _fetch_one(db, RACE_SELECT + " WHERE races.id = ?", (race_id,))
    if not row:
        raise NotFound("Race not found")
    return _race_from_row(row)


def _race_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id": int(row["race_id"]),
        "track_id": int(row["track_id"]),
        "track_name": row["track_name"],
        "track_type": row["track_type"],
        "total_laps": int(row["total_laps"]),
        "base_lap_time": float(row["base_lap_time"]),
        "entrants": [str(u) for u in load_json_list(row["entrants"])],
        "starting_positions": [int(p) for p in load_json_list(row["starting_positions"])],
    }


async def _max_lap(db: aiosqlite.Connection, race_id: int) -> int:
    row = await _fetch_one(db, "SELECT MAX(lap_number) AS n FROM laps WHERE race_id = ?", (race_id,))
    return int(row["n"]) if row and row["n"] is not None else 0


async def _lap_rows(db: aiosqlite.Connection, race_id: int,
                    lap_bound: Optional[int] = None) -> List[aiosqlite.Row]:
    sql = ("SELECT race_id, lap_number, entrant_index, lap_time, crashed "
           "FROM laps WHERE race_id = ?")
    params: tuple = (race_id,)
    if lap_bound is not None:
        sql += " AND lap_number <= ?"
        params = (race_id, lap_bound)
    sql += " ORDER BY lap_number, entrant_index"
    return await _fetch_all(db, sql, params)


def _race_payload(race: Dict[str, Any], lap_rows: List[Any]) -> Dict[str, Any]:
    return {
        "id": race["id"],
        "track": {
            "id": race["track_id"],
            "name": race["track_name"],
            "uri": track_uri(race["track_id"]),
        },
        "entrants": race["entrants"],
        "startingPositions": race["starting_positions"],
        "laps": group_laps(lap_rows),
    }


# ------------------------------------------------------------
# Race catalogue
# ------------------------------------------------------------
@router.get("")
async def list_races() -> Dict[str, Any]:
    async with _db() as db:
        race_rows = await _fetch_all(db, RACE_SELECT + " ORDER BY races.id")
        races = [_race_from_row(r) for r in race_rows]
        if not races:
            return envelope([])

        ids = [r["id"] for r in races]
        placeholders = ",".join("?" for _ in ids)
        lap_rows = await _fetch_all(
            db,
            f"""
            SELECT race_id, lap_number, entrant_index, lap_time, crashed
            FROM laps
            WHERE race_id IN ({placeholders})
            ORDER BY race_id, lap_number, entrant_index
            """,
            tuple(ids),
        )

    by_race: Dict[int, List[Any]] = {}
    for row in lap_rows:
        by_race.setdefault(int(row["race_id"]), []).append(row)
    return envelope([_race_payload(r, by_race.get(r["id"], [])) for r in races])


@router.get("/{race_id}")
async def get_race(race_id: int) -> Dict[str, Any]:
    async with _db() as db:
        race = await _load_race(db, race_id)
        lap_rows = await _lap_rows(db, race_id)

    payload = _race_payload(race, lap_rows)
    max_lap = max((int(r["lap_number"]) for r in lap_rows), default=0)
    payload["totalLaps"] = race["total_laps"]
    payload["state"] = race_state(bool(race["starting_positions"]), max_lap, race["total_laps"]).value
    return envelope(payload)


# ------------------------------------------------------------
# Entrant registry
# ------------------------------------------------------------
class EntrantIn(BaseModel):
    entrant: str

    @field_validator("entrant")
    @classmethod
    def _uri_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("entrant URI is required")
        return v


@router.get("/{race_id}/entrant")
async def list_entrants(race_id: int,
                        cars: CarServiceClient = Depends(get_car_client)) -> Dict[str, Any]:
    async with _db() as db:
        race = await _load_race(db, race_id)

    entrants = race["entrants"]
    grid = race["starting_positions"]
    profiles = await asyncio.gather(*(cars.fetch_car(uri) for uri in entrants))

    out: List[Dict[str, Any]] = []
    for index, (uri, fetched) in enumerate(zip(entrants, profiles)):
        driver = fetched.value if fetched.ok and fetched.value is not None else None
        row = driver.as_dict() if driver else {"number": None, "shortName": "Unknown", "name": "Unknown"}
        row["uri"] = uri
        row["startingPosition"] = grid[index] if index < len(grid) else None
        out.append(row)
    return envelope(out)


async def add_entrant(race_id: int, uri: str, cars: CarServiceClient) -> List[str]:
    async with _db() as db:
        race = await _load_race(db, race_id)
        entrants = race["entrants"]

        if race["starting_positions"]:
            raise Conflict("Cannot add entrants after qualifying has taken place")
        if uri in entrants:
            raise Conflict("Entrant with the same URI already exists")

        car = await cars.fetch_car(uri)
        if not car.ok:
            raise Conflict("Error fetching car details, car does not exist or API returned an error")
        if car.value is None:
            raise Conflict("The car you are attempting to enter has no driver")

        number = car.value.number
        if number is not None:
            existing = await asyncio.gather(*(cars.fetch_car(u) for u in entrants))
            for other_uri, other in zip(entrants, existing):
                if other.ok and other.value is not None and other.value.number == number:
                    log.info("driver number clash race=%s number=%s with %s", race_id, number, other_uri)
                    raise Conflict(f"Driver with number {number} already exists in the race")

        entrants.append(uri)
        await db.execute(
            "UPDATE races SET entrants = ? WHERE id = ?",
            (dump_json_list(entrants), race_id),
        )
        await db.commit()

    log.info("entrant added race=%s uri=%s count=%d", race_id, uri, len(entrants))
    return entrants


@router.post("/{race_id}/entrant", dependencies=[Depends(require_api_key)])
async def create_entrant(race_id: int, body: EntrantIn,
                         cars: CarServiceClient = Depends(get_car_client)) -> Dict[str, Any]:
    entrants = await add_entrant(race_id, body.entrant, cars)
    return envelope({"message": "Entrant added successfully", "entrants": entrants})


async def remove_entrant(race_id: int, uri: str) -> List[str]:
    async with _db() as db:
        race = await _load_race(db, race_id)
        entrants = race["entrants"]
        grid = race["starting_positions"]

        if uri not in entrants:
            raise NotFound("Entrant not found in this race")
        if grid and len(grid) == len(entrants):
            raise Conflict("Cannot remove entrants after qualifying has taken place")

        index = entrants.index(uri)
        del entrants[index]
        # legacy rows can carry a partial grid; keep the arrays parallel
        if index < len(grid):
            del grid[index]

        await db.execute(
            "UPDATE races SET entrants = ?, starting_positions = ? WHERE id = ?",
            (dump_json_list(entrants), dump_json_list(grid), race_id),
        )
        await db.commit()

    log.info("entrant removed race=%s uri=%s", race_id, uri)
    return entrants


@router.delete("/{race_id}/entrant", dependencies=[Depends(require_api_key)])
async def delete_entrant(race_id: int, car_uri: str = Query(..., alias="carURI")) -> Dict[str, Any]:
    entrants = await remove_entrant(race_id, car_uri)
    return envelope({"message": "Entrant removed successfully", "entrants": entrants})


# ------------------------------------------------------------
# Qualifying
# ------------------------------------------------------------
async def qualify(race_id: int, cars: CarServiceClient) -> List[int]:
    async with _db() as db:
        race = await _load_race(db, race_id)
        entrants = race["entrants"]

        if not entrants:
            raise Conflict("No entrants available for this race")
        if race["starting_positions"]:
            raise Conflict("Starting positions already populated")

        category = race["track_type"]
        fetched = await asyncio.gather(*(cars.fetch_skill(uri, category) for uri in entrants))
        skills = [f.value for f in fetched]
        grid = [int(i) for i in qualifying_order(skills)]

        # the empty-grid predicate makes a concurrent second qualify a no-op
        cur = await db.execute(
            "UPDATE races SET starting_positions = ? "
            "WHERE id = ? AND (starting_positions IS NULL OR starting_positions = '[]')",
            (dump_json_list(grid), race_id),
        )
        await db.commit()
        if cur.rowcount == 0:
            raise Conflict("Starting positions already populated")

    log.info("qualified race=%s category=%s skills=%s grid=%s", race_id, category, skills, grid)
    return grid


@router.post("/{race_id}/qualify", dependencies=[Depends(require_api_key)])
async def qualify_race(race_id: int,
                       cars: CarServiceClient = Depends(get_car_client)) -> Dict[str, Any]:
    grid = await qualify(race_id, cars)
    return envelope({"message": "Starting positions assigned successfully", "startingPositions": grid})


# ------------------------------------------------------------
# Lap simulation
# ------------------------------------------------------------
@router.get("/{race_id}/lap")
async def list_laps(race_id: int) -> Dict[str, Any]:
    async with _db() as db:
        await _load_race(db, race_id)
        rows = await _lap_rows(db, race_id)
    if not rows:
        raise NotFound("No lap data found for this race")
    return envelope([
        {
            "lap_number": int(r["lap_number"]),
            "entrant_index": int(r["entrant_index"]),
            "lap_time": float(r["lap_time"]),
            "crashed": bool(r["crashed"]),
        }
        for r in rows
    ])


async def _simulate_slot(cars: CarServiceClient, race: Dict[str, Any],
                         slot: GridSlot, lap_number: int) -> LapRecord:
    uri = entrant_at(slot, race["starting_positions"], race["entrants"])
    if uri is None:
        log.warning("race=%s slot=%s has no entrant; recording a crash", race["id"], slot)
        return LapRecord(lap_number, slot, 0.0, True)
    fetched = await cars.fetch_lap(uri, race["base_lap_time"], race["track_type"])
    return lap_record(lap_number, slot, fetched.value)


async def record_lap(race_id: int, cars: CarServiceClient) -> List[LapRecord]:
    # only existing races get a lock entry
    async with _db() as db:
        await _load_race(db, race_id)

    async with _lap_lock(race_id):
        async with _db() as db:
            race = await _load_race(db, race_id)
            if not race["entrants"]:
                raise BadRequest("No entrants available for this race")
            if not race["starting_positions"]:
                raise BadRequest("Starting positions have not been populated yet")

            lap_number = next_lap_number(await _max_lap(db, race_id))
            if lap_number > race["total_laps"]:
                raise BadRequest("Exceeding total number of laps for the track")

            slots = [GridSlot(p) for p in range(len(race["starting_positions"]))]
            records = await asyncio.gather(
                *(_simulate_slot(cars, race, slot, lap_number) for slot in slots)
            )

            try:
                await db.executemany(
                    "INSERT INTO laps (race_id, lap_number, entrant_index, lap_time, crashed) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [rec.as_row(race_id) for rec in records],
                )
            except aiosqlite.IntegrityError as ex:
                await db.rollback()
                log.error("lap %s of race=%s already recorded by another writer", lap_number, race_id)
                raise Internal(f"Lap {lap_number} was recorded concurrently; nothing was stored") from ex
            await db.commit()

    crashed = sum(1 for r in records if r.crashed)
    log.info("lap recorded race=%s lap=%s/%s cars=%d crashed=%d",
             race_id, lap_number, race["total_laps"], len(records), crashed)
    return list(records)


@router.post("/{race_id}/lap", dependencies=[Depends(require_api_key)])
async def create_lap(race_id: int,
                     cars: CarServiceClient = Depends(get_car_client)) -> Dict[str, Any]:
    records = await record_lap(race_id, cars)
    lap_number = records[0].lap_number if records else None
    return envelope({
        "message": "Lap recorded successfully",
        "lap": lap_number,
        "lapTimes": [
            {"entrant": int(r.slot), "time": r.time, "crashed": r.crashed} for r in records
        ],
    })


# ------------------------------------------------------------
# Leaderboard
# ------------------------------------------------------------
async def leaderboard(race_id: int, cars: CarServiceClient,
                      lap_bound: Optional[int] = None) -> Dict[str, Any]:
    async with _db() as db:
        race = await _load_race(db, race_id)
        if lap_bound is None:
            lap_bound = await _max_lap(db, race_id)
        lap_rows = await _lap_rows(db, race_id, lap_bound)

    penalty = get_race_rules()["grid_penalty_s"]
    standings = initial_standings(race["entrants"], race["starting_positions"], penalty)
    accumulate(standings, lap_rows)

    drivers = await asyncio.gather(*(
        cars.fetch_driver(s.uri) if s.uri else _unknown_driver() for s in standings
    ))
    for standing, fetched in zip(standings, drivers):
        standing.driver = fetched.value

    return {"lap": lap_bound, "entrants": [s.as_dict() for s in rank(standings)]}


async def _unknown_driver() -> Fetched[DriverIdentity]:
    return Fetched.fallback(UNKNOWN_DRIVER, "no entrant at slot")


@router.get("/{race_id}/leaderboard")
async def get_leaderboard(race_id: int,
                          cars: CarServiceClient = Depends(get_car_client)) -> Dict[str, Any]:
    return envelope(await leaderboard(race_id, cars))


@router.get("/{race_id}/lap/{number}")
async def get_lap_leaderboard(race_id: int, number: int,
                              cars: CarServiceClient = Depends(get_car_client)) -> Dict[str, Any]:
    if number < 0:
        raise BadRequest("lap number must be zero or positive")
    return envelope(await leaderboard(race_id, cars, number))
