from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest

from cycleroute.errors import AllVariantsFailed, ConfigMissing, ProviderFatal
from cycleroute.geocoding import ResolvedLocation
from cycleroute.metrics_store import metrics_snapshot, reset_metrics
from cycleroute.models import RouteRequest
from cycleroute.routing_graphhopper import ProviderRoute, RouteQuery, SearchParameters
from cycleroute.variants import VariantOrchestrator

ROSKILDE = ResolvedLocation(lat=55.6415, lng=12.0803, display_name="Roskilde, Denmark", matched_candidate="Roskilde")
KOGE = ResolvedLocation(lat=55.4580, lng=12.1821, display_name="Køge, Denmark", matched_candidate="Køge")


class VariantAwareProvider:
    """Fails every call whose seed falls in a failing variant's block; otherwise hits the target."""

    def __init__(self, *, fail_variants: set[int] | None = None, distance_km: float = 50.0, gpx: str = "<gpx/>") -> None:
        self.fail_variants = fail_variants or set()
        self.distance_km = distance_km
        self.gpx = gpx
        self.calls: list[SearchParameters] = []
        self.queries: list[RouteQuery] = []
        self.gpx_calls: list[SearchParameters] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def route(self, query: RouteQuery, params: SearchParameters) -> ProviderRoute:
        self.calls.append(params)
        self.queries.append(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if params.seed // 100 in self.fail_variants:
                raise ProviderFatal(reason_code="provider_fatal", message="Could not generate route")
            return ProviderRoute(
                path=(query.start, (query.start[0] + 0.1, query.start[1]), query.start),
                distance_km=self.distance_km,
                elevation_gain_m=500.0,
                duration_min=150.0,
                params_used=params,
            )
        finally:
            self.in_flight -= 1

    async def export_gpx(self, query: RouteQuery, params: SearchParameters) -> str:
        self.gpx_calls.append(params)
        return self.gpx

    def variants_seen(self) -> list[int]:
        out: list[int] = []
        for p in self.calls:
            v = p.seed // 100
            if v not in out:
                out.append(v)
        return out


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _request(**overrides: Any) -> RouteRequest:
    payload: dict[str, Any] = {
        "distance_km": 50,
        "elevation_tier": "hilly",
        "terrain": "gravel",
        "topology": "loop",
        "start_text": "Roskilde",
    }
    payload.update(overrides)
    return RouteRequest(**payload)


def _orchestrator(provider: VariantAwareProvider, **kwargs: Any) -> VariantOrchestrator:
    kwargs.setdefault("max_attempts_loop", 3)
    kwargs.setdefault("rng", random.Random(11))
    kwargs.setdefault("sleep", _Sleeps())
    return VariantOrchestrator(provider, **kwargs)


def test_stops_after_desired_count() -> None:
    provider = VariantAwareProvider()

    results = asyncio.run(_orchestrator(provider).generate(_request(), ROSKILDE, desired_count=3, variant_cap=6))

    assert [r.variant for r in results] == [1, 2, 3]
    assert provider.variants_seen() == [1, 2, 3]
    assert all(r.status == "accepted" for r in results)
    assert all(r.candidate.export_payload == "<gpx/>" for r in results)
    assert len(provider.gpx_calls) == 3
    assert provider.queries[0].terrain == "gravel"
    assert provider.queries[0].end is None


def test_variant_seeds_are_offset_by_hundreds_with_jitter() -> None:
    provider = VariantAwareProvider()
    asyncio.run(_orchestrator(provider).generate(_request(), ROSKILDE, desired_count=3))

    first_seeds = [p.seed for p in provider.calls]
    for variant, seed in enumerate(first_seeds, start=1):
        assert variant * 100 <= seed < variant * 100 + 50


def test_failed_variants_are_skipped_after_their_retry_budget() -> None:
    provider = VariantAwareProvider(fail_variants={1, 2})
    sleeps = _Sleeps()

    results = asyncio.run(
        _orchestrator(provider, retry_budget=2, sleep=sleeps).generate(_request(), ROSKILDE, desired_count=3, variant_cap=6)
    )

    assert [r.variant for r in results] == [3, 4, 5]
    # two variants x two searches x three attempts each
    failed_calls = [p for p in provider.calls if p.seed // 100 in {1, 2}]
    assert len(failed_calls) == 2 * 2 * 3
    assert sleeps.calls == [pytest.approx(0.3), pytest.approx(0.3)]


def test_variant_cap_bounds_attempts() -> None:
    provider = VariantAwareProvider(fail_variants={1, 2, 3, 4})

    results = asyncio.run(_orchestrator(provider).generate(_request(), ROSKILDE, desired_count=3, variant_cap=5))

    assert [r.variant for r in results] == [5]
    assert provider.variants_seen() == [1, 2, 3, 4, 5]


def test_all_variants_failing_raises() -> None:
    provider = VariantAwareProvider(fail_variants=set(range(1, 10)))

    with pytest.raises(AllVariantsFailed) as excinfo:
        asyncio.run(_orchestrator(provider).generate(_request(), ROSKILDE, desired_count=3, variant_cap=6))

    assert excinfo.value.details == {"variants_attempted": 6}
    assert provider.variants_seen() == [1, 2, 3, 4, 5, 6]
    assert provider.gpx_calls == []


def test_exhausted_variants_still_count_as_results() -> None:
    provider = VariantAwareProvider(distance_km=80.0)

    results = asyncio.run(_orchestrator(provider).generate(_request(), ROSKILDE, desired_count=2))

    assert len(results) == 2
    assert all(r.status == "exhausted" for r in results)
    assert all(r.warning is not None for r in results)


def test_point_to_point_passes_end_and_makes_one_call_per_variant() -> None:
    provider = VariantAwareProvider(distance_km=38.0)
    request = _request(topology="point_to_point", end_text="Køge", distance_km=40)

    results = asyncio.run(_orchestrator(provider).generate(request, ROSKILDE, KOGE, desired_count=3))

    assert len(provider.calls) == 3
    assert provider.queries[0].end == (KOGE.lat, KOGE.lng)
    assert results[0].end == KOGE


def test_concurrent_variants_respect_limit_and_desired_count() -> None:
    provider = VariantAwareProvider(fail_variants={2})

    results = asyncio.run(
        _orchestrator(provider, concurrency=2).generate(_request(), ROSKILDE, desired_count=3, variant_cap=6)
    )

    assert [r.variant for r in results] == [1, 3, 4]
    assert provider.max_in_flight <= 2
    assert 5 not in provider.variants_seen()


def test_config_missing_propagates_instead_of_being_skipped() -> None:
    class Unconfigured(VariantAwareProvider):
        async def route(self, query: RouteQuery, params: SearchParameters) -> ProviderRoute:
            raise ConfigMissing(reason_code="config_missing", message="GRAPHHOPPER_API_KEY is not configured")

    with pytest.raises(ConfigMissing):
        asyncio.run(_orchestrator(Unconfigured()).generate(_request(), ROSKILDE))


def test_search_outcomes_are_recorded_in_metrics() -> None:
    reset_metrics()
    provider = VariantAwareProvider(fail_variants={1})
    asyncio.run(_orchestrator(provider, retry_budget=1).generate(_request(), ROSKILDE, desired_count=2))

    searches = metrics_snapshot()["searches"]
    assert searches["accepted"] == 2
    assert searches["failed"] == 1
    assert searches["provider_attempts"] == 3 + 1 + 1
    reset_metrics()
