from __future__ import annotations
import json
import sqlite3
from pathlib import Path
from typing import Any, List, Optional


"""
gridsim/db_schema.py
--------------------
Centralized, idempotent SQLite schema management for GridSim.

Design goals
- Three tables: tracks, races, laps.
  * races.entrants / races.starting_positions are JSON arrays stored as TEXT.
  * laps is append-only; (race_id, lap_number, entrant_index) is unique so a
    lap can never be recorded twice for the same grid slot.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.

IMPORTANT:
SQLite only enforces FOREIGN KEY constraints when 'PRAGMA foreign_keys=ON' is set
on the connection performing writes. Use connect() below or set it yourself.
"""

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 1

# ------------------------
# DDL: Tracks
# ------------------------
TRACKS_DDL = """
CREATE TABLE IF NOT EXISTS tracks (
    id            INTEGER PRIMARY KEY,
    name          TEXT NOT NULL,
    type          TEXT NOT NULL CHECK (type IN ('race', 'street')),
    laps          INTEGER NOT NULL CHECK (laps > 0),
    base_lap_time REAL NOT NULL CHECK (base_lap_time > 0)
);
CREATE INDEX IF NOT EXISTS idx_tracks_name ON tracks(name);
"""

# ------------------------
# DDL: Races
# ------------------------
RACES_DDL = """
CREATE TABLE IF NOT EXISTS races (
    id                 INTEGER PRIMARY KEY,
    track_id           INTEGER NOT NULL,
    entrants           TEXT NOT NULL DEFAULT '[]',  -- JSON array of car URIs (registration order)
    starting_positions TEXT NOT NULL DEFAULT '[]',  -- JSON array: grid slot -> registration index
    FOREIGN KEY (track_id) REFERENCES tracks(id) ON DELETE RESTRICT
);
CREATE INDEX IF NOT EXISTS idx_races_track ON races(track_id);
"""

# ------------------------
# DDL: Lap log (append-only)
# ------------------------
LAPS_DDL = """
CREATE TABLE IF NOT EXISTS laps (
    id            INTEGER PRIMARY KEY,
    race_id       INTEGER NOT NULL,
    lap_number    INTEGER NOT NULL,            -- 1-based within the race
    entrant_index INTEGER NOT NULL,            -- grid slot, NOT registration index
    lap_time      REAL NOT NULL DEFAULT 0,     -- 0 when crashed
    crashed       INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (race_id) REFERENCES races(id) ON DELETE CASCADE,
    UNIQUE (race_id, lap_number, entrant_index)
);
CREATE INDEX IF NOT EXISTS idx_laps_race_lap ON laps(race_id, lap_number);
"""


# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()

def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    # children before parents
    cur.execute("DROP TABLE IF EXISTS laps")
    cur.execute("DROP TABLE IF EXISTS races")
    cur.execute("DROP TABLE IF EXISTS tracks")
    conn.commit()

def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        _exec_script(conn, TRACKS_DDL)
        _exec_script(conn, RACES_DDL)
        _exec_script(conn, LAPS_DDL)

        # Record user_version for lightweight migrations.
        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()

def connect(db_path: str | Path) -> sqlite3.Connection:
    """Synchronous connection with Row access and FK enforcement."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn

# --------------------------------------------------------------------
# JSON array columns (races.entrants / races.starting_positions)
# --------------------------------------------------------------------
def load_json_list(raw: Optional[Any]) -> List[Any]:
    """Decode a JSON-array column. NULL, blanks and non-arrays read as []."""
    if raw is None:
        return []
    if isinstance(raw, list):
        return list(raw)
    try:
        val = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return val if isinstance(val, list) else []

def dump_json_list(values: List[Any]) -> str:
    return json.dumps(list(values))
