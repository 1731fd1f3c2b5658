"""Car-service client: every failure mode comes back as a fallback, never an exception."""

import asyncio

import httpx

from gridsim.car_client import CRASHED_LAP, UNKNOWN_DRIVER, CarServiceClient


def _client(handler):
    return CarServiceClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def _run(coro):
    return asyncio.run(coro)


def test_skill_read_from_top_level_or_result():
    def handler(request):
        if request.url.path == "/top":
            return httpx.Response(200, json={"result": {}, "skill": {"race": 7}})
        return httpx.Response(200, json={"result": {"skill": {"race": "4.5"}}})

    cars = _client(handler)
    top = _run(cars.fetch_skill("http://c/top", "race"))
    nested = _run(cars.fetch_skill("http://c/nested", "race"))
    assert (top.ok, top.value) == (True, 7.0)
    assert (nested.ok, nested.value) == (True, 4.5)


def test_skill_defaults_to_zero():
    def handler(request):
        if request.url.path == "/down":
            return httpx.Response(500)
        if request.url.path == "/garbage":
            return httpx.Response(200, content=b"not json")
        if request.url.path == "/nan":
            return httpx.Response(200, json={"skill": {"race": "NaN"}})
        return httpx.Response(200, json={"skill": {"street": 3}})

    cars = _client(handler)
    for path in ("/down", "/garbage", "/other", "/nan"):
        fetched = _run(cars.fetch_skill(f"http://c{path}", "race"))
        assert fetched.value == 0.0
        assert fetched.ok is False
        assert fetched.error


def test_lap_outcomes():
    payloads = {
        "/ok/lap": {"result": {"time": 80, "randomness": 1.5, "crashed": False}},
        "/crash/lap": {"result": {"time": 80, "randomness": 1.5, "crashed": True}},
        "/nocrashflag/lap": {"result": {"time": 80, "randomness": 1.5}},
        "/notime/lap": {"result": {"randomness": 1.5, "crashed": False}},
        "/nan/lap": {"result": {"time": "NaN", "randomness": 0, "crashed": False}},
        "/inf/lap": {"result": {"time": 80, "randomness": "Infinity", "crashed": False}},
    }

    def handler(request):
        if request.url.path == "/slow/lap":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json=payloads[request.url.path])

    cars = _client(handler)
    ok = _run(cars.fetch_lap("http://c/ok", 80.0, "race"))
    assert ok.ok and not ok.value.crashed
    assert ok.value.time + ok.value.randomness == 81.5

    for name in ("crash", "nocrashflag", "notime", "nan", "inf", "slow"):
        assert _run(cars.fetch_lap(f"http://c/{name}", 80.0, "race")).value == CRASHED_LAP


def test_driver_identity_and_fallback():
    def handler(request):
        if request.url.path == "/car/1/driver":
            return httpx.Response(200, json={"result": {"number": "7", "shortName": "RAI", "name": "Kimi"}})
        return httpx.Response(404)

    cars = _client(handler)
    found = _run(cars.fetch_driver("http://c/car/1"))
    assert found.ok
    assert found.value.as_dict() == {"number": 7, "shortName": "RAI", "name": "Kimi"}

    missing = _run(cars.fetch_driver("http://c/car/2"))
    assert missing.ok is False
    assert missing.value == UNKNOWN_DRIVER


def test_car_profile_without_driver():
    cars = _client(lambda request: httpx.Response(200, json={"result": {"driver": None}}))
    fetched = _run(cars.fetch_car("http://c/car/9"))
    assert fetched.ok is True
    assert fetched.value is None
