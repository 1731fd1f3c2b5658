"""Track registry endpoints."""

from conftest import AUTH, make_race, make_track
from gridsim import tracks


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"code": 200, "result": {"ok": True}}


def test_create_and_read_track(client):
    track_id = make_track(client, laps=57, base=92.6, typ="street", name="Bahrain")

    resp = client.get(f"/track/{track_id}")
    assert resp.status_code == 200
    assert resp.json()["result"] == {
        "id": track_id, "name": "Bahrain", "type": "street", "laps": 57, "baseLapTime": 92.6,
    }

    listing = client.get("/track").json()
    assert listing["code"] == 200
    assert [t["id"] for t in listing["result"]] == [track_id]


def test_create_track_requires_api_key(client):
    body = {"name": "X", "type": "race", "laps": 3, "baseLapTime": 90}
    assert client.post("/track", json=body).status_code == 401
    resp = client.post("/track", json=body, headers={"X-API-KEY": "wrong"})
    assert resp.status_code == 401
    assert resp.json() == {"code": 401, "result": "Unauthorized"}
    assert client.get("/track").json()["result"] == []


def test_create_track_validation(client):
    bad = [
        {"name": "X", "type": "oval", "laps": 3, "baseLapTime": 90},
        {"name": "X", "type": "race", "laps": 0, "baseLapTime": 90},
        {"name": "X", "type": "race", "laps": 3, "baseLapTime": -1},
        {"name": "X", "type": "race", "laps": 3},
        {"name": "  ", "type": "race", "laps": 3, "baseLapTime": 90},
    ]
    for body in bad:
        resp = client.post("/track", json=body, headers=AUTH)
        assert resp.status_code == 400, body
        assert resp.json()["code"] == 400


def test_get_missing_track(client):
    resp = client.get("/track/99")
    assert resp.status_code == 404
    assert resp.json() == {"code": 404, "result": "Track not found"}


def test_delete_track_without_races(client):
    track_id = make_track(client)
    resp = client.delete(f"/track/{track_id}", headers=AUTH)
    assert resp.status_code == 200
    assert client.get(f"/track/{track_id}").status_code == 404


def test_delete_track_with_races_is_refused(client):
    track_id = make_track(client)
    make_race(client, track_id)
    resp = client.delete(f"/track/{track_id}", headers=AUTH)
    assert resp.status_code == 400
    assert client.get(f"/track/{track_id}").status_code == 200


def test_delete_missing_track(client):
    assert client.delete("/track/5", headers=AUTH).status_code == 404


def test_track_races(client):
    track_id = make_track(client)
    first = make_race(client, track_id)
    second = make_race(client, track_id)

    resp = client.get(f"/track/{track_id}/races")
    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["name"] == "Test Circuit"
    assert [r["raceId"] for r in result["races"]] == [first, second]
    assert result["races"][0] == {"raceId": first, "entrants": [], "startingPositions": []}


def test_create_race_on_missing_track(client):
    assert client.post("/track/42/races", headers=AUTH).status_code == 404
    assert client.get("/track/42/races").status_code == 404


class _RecordingConn:
    """Forwards to a real sqlite3 connection and remembers close()."""

    def __init__(self, conn):
        self._conn = conn
        self.closed = False

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def close(self):
        self.closed = True
        self._conn.close()


def test_track_routes_close_their_connections(client, monkeypatch):
    opened = []
    real_get_conn = tracks.get_conn

    def recording_get_conn():
        conn = _RecordingConn(real_get_conn())
        opened.append(conn)
        return conn

    monkeypatch.setattr(tracks, "get_conn", recording_get_conn)

    track_id = make_track(client)
    race_id = make_race(client, track_id)
    assert client.get("/track").status_code == 200
    assert client.get(f"/track/{track_id}").status_code == 200
    assert client.get(f"/track/{track_id}/races").json()["result"]["races"][0]["raceId"] == race_id
    assert client.get("/track/404").status_code == 404
    assert client.delete(f"/track/{track_id}", headers=AUTH).status_code == 400

    assert len(opened) == 7
    assert all(conn.closed for conn in opened)
