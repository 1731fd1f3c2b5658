"""
Shared fixtures: a throwaway SQLite file per test, a fixed API key, and a fake
car-service fleet served through httpx.MockTransport.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from gridsim import races
from gridsim.car_client import CarServiceClient
from gridsim.server import app

API_KEY = "test-key"
AUTH = {"X-API-KEY": API_KEY}
CAR_HOST = "http://cars.test"


def car_uri(name: str) -> str:
    return f"{CAR_HOST}/car/{name}"


class FakeCars:
    """
    In-memory stand-in for the external car services.

    cars[uri] = {
        "driver": {...} | None,     # None -> car without a driver
        "skill": {"race": 5, ...},
        "laps": [ {...}, ... ],     # consumed one per /lap call, then DEFAULT_LAP
        "down": bool,               # every endpoint answers 503
        "timeout": bool,            # every endpoint raises ConnectTimeout
    }
    """

    DEFAULT_LAP = {"time": 90.0, "randomness": 0.5, "crashed": False}

    def __init__(self) -> None:
        self.cars: Dict[str, Dict[str, Any]] = {}
        self.calls: List[httpx.Request] = []

    def add(self, name: str, number: Optional[int], skill: Optional[Dict[str, float]] = None,
            laps: Optional[List[Dict[str, Any]]] = None, **flags: Any) -> str:
        uri = car_uri(name)
        driver = None if number is None else {
            "number": number,
            "shortName": name[:3].upper(),
            "name": f"Driver {name}",
        }
        self.cars[uri] = {"driver": driver, "skill": skill or {}, "laps": list(laps or []), **flags}
        return uri

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        kind = "profile"
        for suffix in ("/driver", "/lap"):
            if path.endswith(suffix):
                kind = suffix[1:]
                path = path[: -len(suffix)]
                break
        car = self.cars.get(f"{CAR_HOST}{path}")
        if car is None:
            return httpx.Response(404, json={"code": 404, "result": "Car not found"})
        if car.get("timeout"):
            raise httpx.ConnectTimeout("timed out", request=request)
        if car.get("down"):
            return httpx.Response(503, json={"code": 503, "result": "unavailable"})

        if kind == "driver":
            if car["driver"] is None:
                return httpx.Response(404, json={"code": 404, "result": "No driver"})
            return httpx.Response(200, json={"code": 200, "result": car["driver"]})
        if kind == "lap":
            lap = car["laps"].pop(0) if car["laps"] else dict(self.DEFAULT_LAP)
            return httpx.Response(200, json={"code": 200, "result": lap})
        return httpx.Response(200, json={
            "code": 200,
            "result": {"driver": car["driver"]},
            "skill": car["skill"],
        })

    def lap_calls(self) -> List[httpx.Request]:
        return [r for r in self.calls if r.url.path.endswith("/lap")]


@pytest.fixture
def fake_cars() -> FakeCars:
    return FakeCars()


@pytest.fixture
def cars_client(fake_cars: FakeCars) -> CarServiceClient:
    return CarServiceClient(httpx.AsyncClient(transport=httpx.MockTransport(fake_cars.handler)))


@pytest.fixture
def client(tmp_path, monkeypatch, cars_client):
    monkeypatch.setenv("GRIDSIM_DB", str(tmp_path / "races.sqlite"))
    monkeypatch.setenv("GRIDSIM_API_KEY", API_KEY)
    races._LAP_LOCKS.clear()
    app.dependency_overrides[races.get_car_client] = lambda: cars_client
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


def make_track(client: TestClient, laps: int = 3, base: float = 90.0, typ: str = "race",
               name: str = "Test Circuit") -> int:
    resp = client.post(
        "/track",
        json={"name": name, "type": typ, "laps": laps, "baseLapTime": base},
        headers=AUTH,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["result"]["id"]


def make_race(client: TestClient, track_id: int) -> int:
    resp = client.post(f"/track/{track_id}/races", headers=AUTH)
    assert resp.status_code == 200, resp.text
    return resp.json()["result"]["id"]


def enter(client: TestClient, race_id: int, uri: str):
    return client.post(f"/race/{race_id}/entrant", json={"entrant": uri}, headers=AUTH)
