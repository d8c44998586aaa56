from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import UnresolvableLocation
from .logging_utils import log_event


@dataclass(frozen=True)
class ResolvedLocation:
    lat: float
    lng: float
    display_name: str
    matched_candidate: str


def geocode_candidates(text: str, region_qualifier: str) -> list[str]:
    """Query variants for a free-text place, in the order they must be tried.

    1. the raw input
    2. raw input + region qualifier (unless the qualifier already appears)
    3. the last comma-separated component, when there is more than one
    4. that last component + region qualifier (unless already present)
    """
    base = str(text or "").strip()
    qualifier = str(region_qualifier or "").strip()

    def _qualified(value: str) -> str | None:
        if not qualifier or qualifier.lower() in value.lower():
            return None
        return f"{value}, {qualifier}"

    candidates: list[str] = []
    if base:
        candidates.append(base)
        q = _qualified(base)
        if q:
            candidates.append(q)

    parts = [p.strip() for p in base.split(",") if p.strip()]
    if len(parts) > 1:
        last = parts[-1]
        candidates.append(last)
        q = _qualified(last)
        if q:
            candidates.append(q)

    out: list[str] = []
    seen: set[str] = set()
    for cand in candidates:
        key = cand.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(cand)
    return out


class RateLimiter:
    """Keeps successive calls at least ``min_interval_s`` apart.

    Callers are serialised on a lock, so two calls can never start closer
    together than the interval even when issued concurrently.
    """

    def __init__(
        self,
        min_interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._min_interval_s = max(0.0, float(min_interval_s))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: float | None = None

    @property
    def min_interval_s(self) -> float:
        return self._min_interval_s

    async def wait(self) -> None:
        async with self._lock:
            if self._last_start is not None:
                remaining = self._min_interval_s - (self._clock() - self._last_start)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_start = self._clock()


class NominatimClient:
    """Adapter around the Nominatim ``/search`` endpoint.

    Raises ``httpx.HTTPError`` for transport failures and non-2xx statuses;
    deciding what a failure means is left to the resolver.
    """

    def __init__(
        self,
        *,
        base_url: str,
        user_agent: str,
        accept_language: str = "en",
        result_limit: int = 3,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.result_limit = max(1, int(result_limit))
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s, connect=5.0))
        self._headers = {
            "User-Agent": user_agent,
            "Accept-Language": accept_language,
            "accept": "application/json",
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def search(self, query: str, *, country_codes: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, str] = {
            "q": query,
            "format": "json",
            "limit": str(self.result_limit),
        }
        if country_codes:
            params["countrycodes"] = country_codes

        resp = await self._client.get(f"{self.base_url}/search", params=params, headers=self._headers)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]


def _first_usable(results: list[dict[str, Any]], *, fallback_name: str) -> tuple[float, float, str] | None:
    for item in results:
        try:
            lat = float(item["lat"])
            lng = float(item["lon"])
        except (KeyError, TypeError, ValueError):
            continue
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            continue
        return lat, lng, str(item.get("display_name") or fallback_name)
    return None


class LocationResolver:
    """Turns place names into coordinates, trying query variants in a fixed order.

    One resolver serves one request: results are memoised per distinct input
    string and every geocoder call goes through the same rate limiter.
    """

    def __init__(
        self,
        geocoder: NominatimClient,
        *,
        limiter: RateLimiter,
        region_qualifier: str = "",
        country_codes: str | None = None,
    ) -> None:
        self._geocoder = geocoder
        self._limiter = limiter
        self._region_qualifier = region_qualifier
        self._country_codes = country_codes or None
        self._resolved: dict[str, ResolvedLocation] = {}

    async def _lookup(self, query: str) -> list[dict[str, Any]]:
        await self._limiter.wait()
        results = await self._geocoder.search(query, country_codes=self._country_codes)
        if results or not self._country_codes:
            return results
        # Nothing inside the preferred country; widen the search once.
        await self._limiter.wait()
        return await self._geocoder.search(query)

    async def resolve(self, text: str) -> ResolvedLocation:
        key = str(text or "").strip()
        cached = self._resolved.get(key)
        if cached is not None:
            return cached

        candidates = geocode_candidates(key, self._region_qualifier)
        for candidate in candidates:
            log_event("geocode_attempt", location=key, candidate=candidate)
            try:
                results = await self._lookup(candidate)
            except (httpx.HTTPError, ValueError) as e:
                log_event(
                    "geocode_failed",
                    level=logging.WARNING,
                    location=key,
                    candidate=candidate,
                    error=f"{type(e).__name__}: {e}",
                )
                continue

            hit = _first_usable(results, fallback_name=candidate)
            if hit is None:
                log_event("geocode_failed", level=logging.WARNING, location=key, candidate=candidate, error="no results")
                continue

            lat, lng, display_name = hit
            resolved = ResolvedLocation(lat=lat, lng=lng, display_name=display_name, matched_candidate=candidate)
            self._resolved[key] = resolved
            log_event(
                "geocode_resolved",
                location=key,
                candidate=candidate,
                display_name=display_name,
                lat=lat,
                lng=lng,
            )
            return resolved

        raise UnresolvableLocation(
            reason_code="location_unresolvable",
            message=f"Could not resolve location: {key or '<empty>'}",
            details={"location": key, "candidates": candidates},
        )
