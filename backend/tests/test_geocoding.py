from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from cycleroute.errors import UnresolvableLocation
from cycleroute.geocoding import (
    LocationResolver,
    NominatimClient,
    RateLimiter,
    geocode_candidates,
)


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeGeocoder:
    """Answers only for queries listed in ``hits``; records every lookup."""

    def __init__(self, hits: dict[str, list[dict[str, Any]]] | None = None, *, failing: set[str] | None = None) -> None:
        self.hits = hits or {}
        self.failing = failing or set()
        self.queries: list[tuple[str, str | None]] = []

    async def search(self, query: str, *, country_codes: str | None = None) -> list[dict[str, Any]]:
        self.queries.append((query, country_codes))
        if query in self.failing:
            request = httpx.Request("GET", "https://nominatim.test/search")
            raise httpx.HTTPStatusError(
                "server error",
                request=request,
                response=httpx.Response(500, request=request),
            )
        return self.hits.get(query, [])


def _hit(name: str, lat: float = 55.6415, lon: float = 12.0803) -> list[dict[str, Any]]:
    return [{"lat": str(lat), "lon": str(lon), "display_name": name}]


def _resolver(geocoder: FakeGeocoder, *, clock: FakeClock | None = None, country_codes: str | None = None) -> LocationResolver:
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep) if clock else RateLimiter(0.0)
    return LocationResolver(
        geocoder,  # type: ignore[arg-type]
        limiter=limiter,
        region_qualifier="Denmark",
        country_codes=country_codes,
    )


def test_candidates_for_plain_name() -> None:
    assert geocode_candidates("Roskilde", "Denmark") == ["Roskilde", "Roskilde, Denmark"]


def test_candidates_for_comma_separated_address() -> None:
    assert geocode_candidates("Hovedgaden 12, Roskilde", "Denmark") == [
        "Hovedgaden 12, Roskilde",
        "Hovedgaden 12, Roskilde, Denmark",
        "Roskilde",
        "Roskilde, Denmark",
    ]


def test_candidates_skip_qualifier_when_already_present() -> None:
    cands = geocode_candidates("Roskilde, DENMARK", "Denmark")
    assert cands == ["Roskilde, DENMARK", "DENMARK"]
    assert all(c.lower().count("denmark") == 1 for c in cands)
    assert geocode_candidates("  Køge  ", "") == ["Køge"]
    assert geocode_candidates("", "Denmark") == []


def test_resolver_tries_raw_then_qualified_and_stops_at_first_success() -> None:
    geocoder = FakeGeocoder({"Roskilde, Denmark": _hit("Roskilde, Region Zealand, Denmark")})

    resolved = asyncio.run(_resolver(geocoder).resolve("Roskilde"))

    assert [q for q, _ in geocoder.queries] == ["Roskilde", "Roskilde, Denmark"]
    assert resolved.matched_candidate == "Roskilde, Denmark"
    assert resolved.display_name == "Roskilde, Region Zealand, Denmark"
    assert resolved.lat == pytest.approx(55.6415)
    assert resolved.lng == pytest.approx(12.0803)


def test_resolver_falls_back_to_last_component() -> None:
    geocoder = FakeGeocoder({"Roskilde": _hit("Roskilde")})

    resolved = asyncio.run(_resolver(geocoder).resolve("Nowhere Street 1, Roskilde"))

    assert [q for q, _ in geocoder.queries] == [
        "Nowhere Street 1, Roskilde",
        "Nowhere Street 1, Roskilde, Denmark",
        "Roskilde",
    ]
    assert resolved.matched_candidate == "Roskilde"


def test_http_failure_is_a_candidate_failure_not_fatal() -> None:
    geocoder = FakeGeocoder({"Roskilde, Denmark": _hit("Roskilde")}, failing={"Roskilde"})

    resolved = asyncio.run(_resolver(geocoder).resolve("Roskilde"))

    assert resolved.matched_candidate == "Roskilde, Denmark"


def test_unknown_place_is_unresolvable_after_all_candidates() -> None:
    geocoder = FakeGeocoder()

    with pytest.raises(UnresolvableLocation) as excinfo:
        asyncio.run(_resolver(geocoder).resolve("Xyzzyville"))

    assert [q for q, _ in geocoder.queries] == ["Xyzzyville", "Xyzzyville, Denmark"]
    assert excinfo.value.reason_code == "location_unresolvable"
    assert excinfo.value.details == {"location": "Xyzzyville", "candidates": ["Xyzzyville", "Xyzzyville, Denmark"]}
    assert "Roskilde, Denmark" in excinfo.value.user_message


def test_results_without_coordinates_count_as_empty() -> None:
    geocoder = FakeGeocoder({"Roskilde": [{"display_name": "broken"}, {"lat": "x", "lon": "1"}]})

    with pytest.raises(UnresolvableLocation):
        asyncio.run(_resolver(geocoder).resolve("Roskilde"))


def test_country_filter_is_widened_once_per_candidate() -> None:
    geocoder = FakeGeocoder()

    with pytest.raises(UnresolvableLocation):
        asyncio.run(_resolver(geocoder, country_codes="dk").resolve("Xyzzyville"))

    assert geocoder.queries == [
        ("Xyzzyville", "dk"),
        ("Xyzzyville", None),
        ("Xyzzyville, Denmark", "dk"),
        ("Xyzzyville, Denmark", None),
    ]


def test_resolution_is_memoised_per_input() -> None:
    geocoder = FakeGeocoder({"Roskilde": _hit("Roskilde")})
    resolver = _resolver(geocoder)

    async def _twice():
        return await resolver.resolve("Roskilde"), await resolver.resolve(" Roskilde ")

    first, second = asyncio.run(_twice())

    assert first is second
    assert len(geocoder.queries) == 1


def test_geocoder_calls_are_spaced_by_rate_limiter() -> None:
    clock = FakeClock()
    geocoder = FakeGeocoder()

    with pytest.raises(UnresolvableLocation):
        asyncio.run(_resolver(geocoder, clock=clock, country_codes="dk").resolve("Xyzzyville"))

    # four lookups, three enforced gaps of one second
    assert clock.sleeps == [1.0, 1.0, 1.0]


def test_rate_limiter_serialises_concurrent_callers() -> None:
    clock = FakeClock()
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
    starts: list[float] = []

    async def _call() -> None:
        await limiter.wait()
        starts.append(clock())

    async def _main() -> None:
        await asyncio.gather(_call(), _call(), _call())
        clock.now += 5.0
        await _call()

    asyncio.run(_main())

    assert starts[:3] == [100.0, 101.0, 102.0]
    assert starts[3] == 107.0
    assert clock.sleeps == [1.0, 1.0]


def test_nominatim_client_sends_query_filters_and_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.params.get("q") == "Roskilde":
            return httpx.Response(200, json=[{"lat": "55.64", "lon": "12.08", "display_name": "Roskilde"}])
        return httpx.Response(503, text="busy")

    async def _run() -> tuple[list[dict[str, Any]], bool]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = NominatimClient(
                base_url="https://nominatim.test/",
                user_agent="CyclingRouteApp/1.0",
                accept_language="da,en",
                result_limit=3,
                client=http,
            )
            found = await client.search("Roskilde", country_codes="dk")
            try:
                await client.search("Elsewhere")
            except httpx.HTTPStatusError:
                return found, True
            return found, False

    found, raised = asyncio.run(_run())

    assert found == [{"lat": "55.64", "lon": "12.08", "display_name": "Roskilde"}]
    assert raised is True
    first = seen[0]
    assert first.url.path == "/search"
    assert first.url.params["format"] == "json"
    assert first.url.params["limit"] == "3"
    assert first.url.params["countrycodes"] == "dk"
    assert first.headers["user-agent"] == "CyclingRouteApp/1.0"
    assert first.headers["accept-language"] == "da,en"
    assert "countrycodes" not in seen[1].url.params
