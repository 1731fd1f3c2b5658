import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from gridsim.config_loader import get_db_path
from gridsim.db_schema import load_json_list
from gridsim.grid import race_state

con = sqlite3.connect(get_db_path())
con.row_factory = sqlite3.Row

rows = con.execute("""
    SELECT r.id, t.name, t.laps, r.entrants, r.starting_positions,
           (SELECT MAX(lap_number) FROM laps l WHERE l.race_id = r.id) AS max_lap
    FROM races r JOIN tracks t ON t.id = r.track_id
    ORDER BY r.id
""").fetchall()

print("All races:")
for r in rows:
    grid = load_json_list(r["starting_positions"])
    max_lap = r["max_lap"] or 0
    state = race_state(bool(grid), max_lap, r["laps"]).value
    print(f"  Race {r['id']} @ {r['name']}: {len(load_json_list(r['entrants']))} entrants, "
          f"lap {max_lap}/{r['laps']} - {state}")

con.close()
