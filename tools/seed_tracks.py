"""
Seed tracks into the GridSim SQLite DB from a YAML file.

Why this exists:
- Races can only be created on an existing track.
- Fresh installs start with an empty DB, so we load a known calendar.
- Safe to re-run: tracks are matched by name and existing ones are left alone
  (tracks are immutable once created).

YAML shape:
  tracks:
    - {name: "Bahrain Grand Prix", type: race, laps: 57, baseLapTime: 92.6}

Usage:
  (.venv) python tools/seed_tracks.py [tools/tracks.yaml] [--db path/to/races.sqlite]
"""
from __future__ import annotations
import argparse
import sys
from pathlib import Path

import yaml

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from gridsim.config_loader import get_db_path
from gridsim.db_schema import connect, ensure_schema

TRACK_TYPES = ("race", "street")


def _parse(entry: dict, idx: int) -> tuple:
    try:
        name = str(entry["name"]).strip()
        typ = str(entry["type"]).strip().lower()
        laps = int(entry["laps"])
        base = float(entry["baseLapTime"])
    except (KeyError, TypeError, ValueError) as ex:
        raise SystemExit(f"track #{idx}: {type(ex).__name__}: {ex}")
    if not name or typ not in TRACK_TYPES or laps <= 0 or base <= 0:
        raise SystemExit(f"track #{idx} ({name!r}): invalid name/type/laps/baseLapTime")
    return name, typ, laps, base


def main() -> None:
    ap = argparse.ArgumentParser(description="Seed GridSim tracks from YAML")
    ap.add_argument("file", nargs="?", default=str(ROOT / "tools" / "tracks.yaml"))
    ap.add_argument("--db", default=None, help="override sqlite path")
    args = ap.parse_args()

    data = yaml.safe_load(Path(args.file).read_text(encoding="utf-8")) or {}
    rows = [_parse(t, i) for i, t in enumerate(data.get("tracks") or [], 1)]

    db = Path(args.db) if args.db else get_db_path()
    ensure_schema(db)

    added = 0
    conn = connect(db)
    try:
        for name, typ, laps, base in rows:
            if conn.execute("SELECT 1 FROM tracks WHERE name = ?", (name,)).fetchone():
                continue
            conn.execute(
                "INSERT INTO tracks (name, type, laps, base_lap_time) VALUES (?, ?, ?, ?)",
                (name, typ, laps, base),
            )
            added += 1
        conn.commit()
    finally:
        conn.close()
    print(f"Seeded {added} new track(s) of {len(rows)} into {db}")


if __name__ == "__main__":
    main()
