from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Final, Protocol

import httpx

from .errors import ConfigMissing, ProviderFatal, ProviderTransient
from .logging_utils import log_event
from .models import Direction, Terrain, Topology

LatLngPair = tuple[float, float]

_RETRYABLE_STATUS: Final[set[int]] = {429, 500, 503}

VEHICLE_BY_TERRAIN: Final[dict[str, str]] = {
    "road": "racingbike",
    "gravel": "bike",
    "mtb": "mtb",
    "mixed": "bike",
}

HEADING_BY_DIRECTION: Final[dict[str, int]] = {
    "N": 0,
    "E": 90,
    "S": 180,
    "W": 270,
}


def bearing_for_direction(direction: Direction | str | None) -> int | None:
    if not direction:
        return None
    return HEADING_BY_DIRECTION.get(str(direction))


@dataclass(frozen=True)
class SearchParameters:
    """Round-trip generation knobs for one provider attempt."""

    target_length_m: int
    waypoint_count: int
    seed: int
    bearing_deg: int | None = None


@dataclass(frozen=True)
class RouteQuery:
    """The fixed part of a request: where, what kind of route, on which surface."""

    start: LatLngPair
    topology: Topology
    terrain: Terrain = "road"
    end: LatLngPair | None = None

    @property
    def is_loop(self) -> bool:
        return self.topology == "loop"


@dataclass(frozen=True)
class ProviderRoute:
    path: tuple[LatLngPair, ...]
    distance_km: float
    elevation_gain_m: float
    duration_min: float
    params_used: SearchParameters


class DirectionsProvider(Protocol):
    async def route(self, query: RouteQuery, params: SearchParameters) -> ProviderRoute: ...

    async def export_gpx(self, query: RouteQuery, params: SearchParameters) -> str: ...


def _format_provider_error(resp: httpx.Response) -> str:
    """Best-effort decode of GraphHopper JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            message = data.get("message")
            if message:
                return f"GraphHopper {resp.status_code}: {message}"
    except ValueError:
        # fall through to text
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > 240:
        body = body[:240] + "..."
    if body:
        return f"GraphHopper {resp.status_code}: {body}"
    return f"GraphHopper HTTP {resp.status_code}"


def build_query_params(
    query: RouteQuery,
    params: SearchParameters,
    *,
    api_key: str,
) -> list[tuple[str, str]]:
    """GraphHopper query string as ordered pairs (``point`` repeats for A-to-B routes)."""
    out: list[tuple[str, str]] = [
        ("key", api_key),
        ("vehicle", VEHICLE_BY_TERRAIN.get(query.terrain, "bike")),
        ("points_encoded", "false"),
        ("elevation", "true"),
        ("calc_points", "true"),
        ("instructions", "false"),
    ]
    start_lat, start_lng = query.start
    out.append(("point", f"{start_lat},{start_lng}"))

    if query.is_loop:
        out.extend(
            [
                ("algorithm", "round_trip"),
                ("round_trip.distance", str(int(params.target_length_m))),
                ("round_trip.seed", str(int(params.seed))),
                ("round_trip.points", str(int(params.waypoint_count))),
            ]
        )
        if params.bearing_deg is not None:
            out.append(("heading", str(int(params.bearing_deg))))
    else:
        if query.end is None:
            raise ValueError("point_to_point query needs an end coordinate")
        end_lat, end_lng = query.end
        out.append(("point", f"{end_lat},{end_lng}"))
    return out


def _payload_number(path: dict[str, Any], key: str) -> float:
    value = path.get(key)
    try:
        number = float(value or 0.0)
    except (TypeError, ValueError) as e:
        raise ProviderFatal(
            reason_code="provider_fatal",
            message=f"GraphHopper returned a non-numeric {key}: {value!r}",
            details={"field": key},
        ) from e
    if not math.isfinite(number):
        raise ProviderFatal(
            reason_code="provider_fatal",
            message=f"GraphHopper returned a non-finite {key}: {value!r}",
            details={"field": key},
        )
    return number


def parse_route_payload(data: Any, params: SearchParameters) -> ProviderRoute:
    paths = data.get("paths") if isinstance(data, dict) else None
    if not isinstance(paths, list) or not paths:
        raise ProviderFatal(
            reason_code="provider_fatal",
            message="Could not generate route for these coordinates",
            details={"paths": 0},
        )

    best = paths[0] if isinstance(paths[0], dict) else {}
    points = best.get("points") or {}
    coords = points.get("coordinates") if isinstance(points, dict) else None

    path: list[LatLngPair] = []
    for pt in coords or []:
        if (
            isinstance(pt, (list, tuple))
            and len(pt) >= 2
            and isinstance(pt[0], (int, float))
            and isinstance(pt[1], (int, float))
        ):
            # GraphHopper geometry is [lon, lat(, ele)]
            path.append((float(pt[1]), float(pt[0])))

    distance_m = _payload_number(best, "distance")
    if len(path) < 2 or distance_m <= 0:
        raise ProviderFatal(
            reason_code="provider_fatal",
            message="GraphHopper returned no usable path",
            details={"points": len(path), "distance_m": distance_m},
        )

    return ProviderRoute(
        path=tuple(path),
        distance_km=distance_m / 1000.0,
        elevation_gain_m=max(0.0, _payload_number(best, "ascend")),
        duration_min=max(0.0, _payload_number(best, "time")) / 1000.0 / 60.0,
        params_used=params,
    )


class GraphHopperClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_s: float = 30.0,
        max_retries: int = 1,
        retry_delay_s: float = 0.4,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max(0, int(max_retries))
        self.retry_delay_s = max(0.0, float(retry_delay_s))
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=5.0),
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _require_key(self) -> str:
        if not self.api_key:
            raise ConfigMissing(
                reason_code="config_missing",
                message="GRAPHHOPPER_API_KEY is not configured",
                details={"setting": "GRAPHHOPPER_API_KEY"},
            )
        return self.api_key

    async def route(self, query: RouteQuery, params: SearchParameters) -> ProviderRoute:
        """Fetch one route, retrying transient faults a fixed number of times.

        429/500/503 and transport errors are retried after a short fixed delay;
        any other non-2xx, or a 2xx without paths, is fatal for this attempt.
        """
        url = f"{self.base_url}/route"
        qp = build_query_params(query, params, api_key=self._require_key())
        attempts = self.max_retries + 1
        last_detail = "unknown error"

        for attempt in range(attempts):
            try:
                resp = await self._client.get(url, params=qp, headers={"accept": "application/json"})
            except (httpx.TimeoutException, httpx.TransportError) as e:
                msg = str(e).strip()
                last_detail = f"{type(e).__name__}: {msg}" if msg else f"{type(e).__name__}: {e!r}"
            else:
                if resp.status_code in _RETRYABLE_STATUS:
                    last_detail = _format_provider_error(resp)
                elif resp.status_code < 200 or resp.status_code >= 300:
                    detail = _format_provider_error(resp)
                    log_event("provider_error", level=logging.WARNING, status_code=resp.status_code, error=detail, fatal=True)
                    raise ProviderFatal(
                        reason_code="provider_fatal",
                        message=detail,
                        details={"status_code": resp.status_code},
                    )
                else:
                    try:
                        data = resp.json()
                    except ValueError as e:
                        raise ProviderFatal(
                            reason_code="provider_fatal",
                            message="GraphHopper returned invalid JSON",
                        ) from e
                    return parse_route_payload(data, params)

            if attempt < attempts - 1:
                log_event(
                    "provider_retry",
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error=last_detail,
                    delay_s=self.retry_delay_s,
                )
                await self._sleep(self.retry_delay_s)

        log_event("provider_error", level=logging.WARNING, error=last_detail, fatal=False, attempts=attempts)
        raise ProviderTransient(
            reason_code="provider_transient",
            message=f"GraphHopper request failed after {attempts} attempts: {last_detail}",
            details={"attempts": attempts},
        )

    async def export_gpx(self, query: RouteQuery, params: SearchParameters) -> str:
        """GPX document for the same request, or ``""`` if it cannot be fetched."""
        url = f"{self.base_url}/route"
        try:
            qp = build_query_params(query, params, api_key=self._require_key())
            qp.append(("type", "gpx"))
            resp = await self._client.get(url, params=qp, headers={"accept": "application/gpx+xml"})
        except (httpx.HTTPError, ConfigMissing, ValueError) as e:
            log_event("gpx_export_failed", level=logging.WARNING, error=f"{type(e).__name__}: {e}")
            return ""
        if resp.status_code < 200 or resp.status_code >= 300:
            log_event("gpx_export_failed", level=logging.WARNING, status_code=resp.status_code, error=_format_provider_error(resp))
            return ""
        return resp.text or ""
