"""
gridsim/car_client.py
---------------------
Async client for the external car services an entrant URI points at.

Every call is best-effort: a non-2xx status, a transport error, a timeout or a
malformed body never raises out of this module. Instead each fetch returns a
`Fetched` carrying either the real value or the caller's fallback, with
`ok=False` and a short `error` string explaining why. Callers decide what a
fallback means (skill 0, crashed lap, unknown driver).

Endpoints used
  GET {uri}                                -> {"result": {"driver": {...}}, "skill": {...}}
  GET {uri}/driver                         -> {"result": {number, shortName, name}}
  GET {uri}/lap?baseLapTime=&trackType=    -> {"result": {time, randomness, crashed}}

No retries: one failed call is one failed outcome.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

import httpx

log = logging.getLogger("gridsim.cars")

T = TypeVar("T")


@dataclass(frozen=True)
class Fetched(Generic[T]):
    value: T
    ok: bool = True
    error: Optional[str] = None

    @classmethod
    def fallback(cls, value: T, error: str) -> "Fetched[T]":
        return cls(value=value, ok=False, error=error)


@dataclass(frozen=True)
class DriverIdentity:
    number: Optional[int]
    short_name: str
    name: str

    def as_dict(self) -> Dict[str, Any]:
        return {"number": self.number, "shortName": self.short_name, "name": self.name}


UNKNOWN_DRIVER = DriverIdentity(number=None, short_name="Unknown", name="Unknown")


@dataclass(frozen=True)
class LapOutcome:
    time: float
    randomness: float
    crashed: bool


CRASHED_LAP = LapOutcome(time=0.0, randomness=0.0, crashed=True)


def _driver_from(payload: Any) -> Optional[DriverIdentity]:
    if not isinstance(payload, dict):
        return None
    number = payload.get("number")
    if number is not None:
        try:
            number = int(number)
        except (TypeError, ValueError):
            pass
    return DriverIdentity(
        number=number,
        short_name=str(payload.get("shortName") or "Unknown"),
        name=str(payload.get("name") or "Unknown"),
    )


class CarServiceClient:
    """
    Thin wrapper around one shared httpx.AsyncClient.
    The owner (server lifespan, or a test) is responsible for aclose().
    """

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @classmethod
    def from_config(cls, timeout_s: float = 5.0, verify_tls: bool = True) -> "CarServiceClient":
        return cls(httpx.AsyncClient(timeout=timeout_s, verify=verify_tls, follow_redirects=True))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET and decode; raises httpx.HTTPError / ValueError for the callers below to absorb."""
        resp = await self._client.get(url, params=params)
        resp.raise_for_status()
        return resp.json()

    # ---------- car profile ----------
    async def fetch_car(self, uri: str) -> Fetched[Optional[DriverIdentity]]:
        """Driver embedded in the car profile. Value is None when the car has no driver."""
        try:
            body = await self._get_json(uri)
        except (httpx.HTTPError, ValueError) as ex:
            log.warning("car profile fetch failed uri=%s err=%s", uri, type(ex).__name__)
            return Fetched.fallback(None, f"{type(ex).__name__}: {ex}")
        result = body.get("result") if isinstance(body, dict) else None
        driver = result.get("driver") if isinstance(result, dict) else None
        return Fetched(_driver_from(driver))

    async def fetch_skill(self, uri: str, category: str) -> Fetched[float]:
        """Skill rating for a track category; 0 on any failure or missing rating."""
        try:
            body = await self._get_json(uri)
        except (httpx.HTTPError, ValueError) as ex:
            log.warning("skill fetch failed uri=%s err=%s", uri, type(ex).__name__)
            return Fetched.fallback(0.0, f"{type(ex).__name__}: {ex}")

        skills: Any = None
        if isinstance(body, dict):
            skills = body.get("skill")
            if skills is None and isinstance(body.get("result"), dict):
                skills = body["result"].get("skill")
        if not isinstance(skills, dict) or skills.get(category) is None:
            return Fetched.fallback(0.0, f"no {category!r} skill rating")
        try:
            skill = float(skills[category])
        except (TypeError, ValueError):
            return Fetched.fallback(0.0, f"non-numeric {category!r} skill rating")
        if not math.isfinite(skill):
            return Fetched.fallback(0.0, f"non-finite {category!r} skill rating")
        return Fetched(skill)

    # ---------- driver identity ----------
    async def fetch_driver(self, uri: str) -> Fetched[DriverIdentity]:
        try:
            body = await self._get_json(f"{uri.rstrip('/')}/driver")
        except (httpx.HTTPError, ValueError) as ex:
            log.warning("driver fetch failed uri=%s err=%s", uri, type(ex).__name__)
            return Fetched.fallback(UNKNOWN_DRIVER, f"{type(ex).__name__}: {ex}")
        driver = _driver_from(body.get("result") if isinstance(body, dict) else None)
        if driver is None:
            return Fetched.fallback(UNKNOWN_DRIVER, "driver payload missing")
        return Fetched(driver)

    # ---------- lap simulation ----------
    async def fetch_lap(self, uri: str, base_lap_time: float, track_type: str) -> Fetched[LapOutcome]:
        try:
            body = await self._get_json(
                f"{uri.rstrip('/')}/lap",
                params={"baseLapTime": base_lap_time, "trackType": track_type},
            )
        except (httpx.HTTPError, ValueError) as ex:
            log.warning("lap fetch failed uri=%s err=%s", uri, type(ex).__name__)
            return Fetched.fallback(CRASHED_LAP, f"{type(ex).__name__}: {ex}")

        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict):
            return Fetched.fallback(CRASHED_LAP, "lap payload missing")
        if result.get("crashed") is not False:
            # anything but an explicit `false` counts as a crash
            return Fetched(CRASHED_LAP)
        try:
            time = float(result["time"])
            randomness = float(result.get("randomness") or 0.0)
        except (KeyError, TypeError, ValueError):
            return Fetched.fallback(CRASHED_LAP, "lap payload malformed")
        # NaN/inf can't be stored or ranked
        if not (math.isfinite(time) and math.isfinite(randomness)):
            log.warning("lap payload not finite uri=%s time=%r randomness=%r",
                        uri, result.get("time"), result.get("randomness"))
            return Fetched.fallback(CRASHED_LAP, "lap payload malformed")
        return Fetched(LapOutcome(time=time, randomness=randomness, crashed=False))
