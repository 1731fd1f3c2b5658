"""
GridSim - gridsim/tracks.py
---------------------------
Track registry endpoints. Plain CRUD over the `tracks` table plus creating
races on a track.

Endpoints
- GET    /track                 list tracks
- POST   /track                 create a track            (API key)
- GET    /track/{id}            one track
- DELETE /track/{id}            delete; refused while races reference it (API key)
- GET    /track/{id}/races      track details with its races
- POST   /track/{id}/races      create an empty race on the track (API key)

All handlers are sync (run in FastAPI's threadpool) and use short-lived
sqlite3 connections, same as the rest of the read/modify paths that don't
fan out to car services.
"""

import logging
import sqlite3
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from .config_loader import get_db_path, get_public_base_url
from .db_schema import connect, load_json_list
from .errors import BadRequest, NotFound, envelope
from .security import require_api_key

log = logging.getLogger("gridsim.tracks")

router = APIRouter(prefix="/track", tags=["tracks"])

TRACK_TYPES = ("race", "street")


# --- DB connection helper ---
def get_conn() -> sqlite3.Connection:
    return connect(get_db_path())


def track_uri(track_id: int) -> str:
    return f"{get_public_base_url()}/track/{track_id}"


def _track_row_to_dict(r: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": int(r["id"]),
        "name": r["name"],
        "type": r["type"],
        "laps": int(r["laps"]),
        "baseLapTime": float(r["base_lap_time"]),
    }


class TrackIn(BaseModel):
    name: str
    type: str
    laps: int
    base_lap_time: float = Field(alias="baseLapTime")

    @field_validator("name")
    @classmethod
    def _name_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required.")
        return v

    @field_validator("type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        if v not in TRACK_TYPES:
            raise ValueError("Invalid type, expected 'race' or 'street'")
        return v

    @field_validator("laps")
    @classmethod
    def _positive_laps(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("laps must be a positive integer")
        return v

    @field_validator("base_lap_time")
    @classmethod
    def _positive_base(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("baseLapTime must be a positive number")
        return v


@router.get("")
def list_tracks() -> Dict[str, Any]:
    conn = get_conn()
    try:
        rows = conn.execute(
            "SELECT id, name, type, laps, base_lap_time FROM tracks ORDER BY id"
        ).fetchall()
    finally:
        conn.close()
    return envelope([_track_row_to_dict(r) for r in rows])


@router.post("", dependencies=[Depends(require_api_key)])
def create_track(body: TrackIn) -> Dict[str, Any]:
    conn = get_conn()
    try:
        cur = conn.execute(
            "INSERT INTO tracks (name, type, laps, base_lap_time) VALUES (?, ?, ?, ?)",
            (body.name, body.type, body.laps, body.base_lap_time),
        )
        conn.commit()
        track_id = int(cur.lastrowid)
    finally:
        conn.close()
    log.info("track created id=%s name=%r", track_id, body.name)
    return envelope({
        "id": track_id,
        "name": body.name,
        "type": body.type,
        "laps": body.laps,
        "baseLapTime": body.base_lap_time,
    })


@router.get("/{track_id}")
def get_track(track_id: int) -> Dict[str, Any]:
    conn = get_conn()
    try:
        row = conn.execute(
            "SELECT id, name, type, laps, base_lap_time FROM tracks WHERE id = ?",
            (track_id,),
        ).fetchone()
    finally:
        conn.close()
    if not row:
        raise NotFound("Track not found")
    return envelope(_track_row_to_dict(row))


@router.delete("/{track_id}", dependencies=[Depends(require_api_key)])
def delete_track(track_id: int) -> Dict[str, Any]:
    conn = get_conn()
    try:
        if not conn.execute("SELECT 1 FROM tracks WHERE id = ?", (track_id,)).fetchone():
            raise NotFound("Track not found")
        race_count = conn.execute(
            "SELECT COUNT(*) AS n FROM races WHERE track_id = ?", (track_id,)
        ).fetchone()["n"]
        if race_count > 0:
            raise BadRequest("Track cannot be deleted as it has associated races.")
        conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,))
        conn.commit()
    finally:
        conn.close()
    log.info("track deleted id=%s", track_id)
    return envelope("Track deleted successfully")


@router.get("/{track_id}/races")
def get_track_races(track_id: int) -> Dict[str, Any]:
    conn = get_conn()
    try:
        track = conn.execute(
            "SELECT id, name, type, laps, base_lap_time FROM tracks WHERE id = ?",
            (track_id,),
        ).fetchone()
        if not track:
            raise NotFound("Track not found")
        races = conn.execute(
            "SELECT id, entrants, starting_positions FROM races WHERE track_id = ? ORDER BY id",
            (track_id,),
        ).fetchall()
    finally:
        conn.close()

    out: List[Dict[str, Any]] = [
        {
            "raceId": int(r["id"]),
            "entrants": load_json_list(r["entrants"]),
            "startingPositions": load_json_list(r["starting_positions"]),
        }
        for r in races
    ]
    result = _track_row_to_dict(track)
    result["races"] = out
    return envelope(result)


@router.post("/{track_id}/races", dependencies=[Depends(require_api_key)])
def create_track_race(track_id: int) -> Dict[str, Any]:
    conn = get_conn()
    try:
        if not conn.execute("SELECT 1 FROM tracks WHERE id = ?", (track_id,)).fetchone():
            raise NotFound("Track not found")
        cur = conn.execute(
            "INSERT INTO races (track_id, entrants, starting_positions) VALUES (?, '[]', '[]')",
            (track_id,),
        )
        conn.commit()
        race_id = int(cur.lastrowid)
    finally:
        conn.close()
    log.info("race created id=%s track_id=%s", race_id, track_id)
    return envelope({"id": race_id, "track": {"id": track_id, "uri": track_uri(track_id)}})
