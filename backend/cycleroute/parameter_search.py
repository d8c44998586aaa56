from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from typing import Final, Literal

from .errors import ConvergenceExhausted, ProviderError
from .logging_utils import log_event
from .models import ElevationTier, RouteRequest, Topology
from .routing_graphhopper import (
    DirectionsProvider,
    LatLngPair,
    ProviderRoute,
    RouteQuery,
    SearchParameters,
    bearing_for_direction,
)

SearchStatus = Literal["searching", "accepted", "exhausted"]

DEFAULT_TOLERANCE: Final[float] = 0.05
MIN_TARGET_LENGTH_M: Final[int] = 1_000
MAX_TARGET_LENGTH_M: Final[int] = 300_000
# Applied to the requested/actual ratio.
CORRECTION_EXPONENT: Final[float] = 1.2
MIN_WAYPOINTS: Final[int] = 3
MAX_WAYPOINTS: Final[int] = 10
ELEVATION_SHORTFALL_RATIO: Final[float] = 0.6
SEED_SPAN: Final[int] = 100

WAYPOINTS_BY_TIER: Final[dict[str, int]] = {
    "flat": 3,
    "hilly": 5,
    "mountainous": 8,
}

# Low end of the expected climbing rate for each tier, metres per km.
MIN_CLIMB_M_PER_KM: Final[dict[str, float]] = {
    "flat": 0.0,
    "hilly": 8.0,
    "mountainous": 15.0,
}


@dataclass(frozen=True)
class RouteCandidate:
    path: tuple[LatLngPair, ...]
    distance_km: float
    elevation_gain_m: float
    duration_min: float
    export_payload: str
    distance_error_fraction: float
    params_used: SearchParameters


@dataclass(frozen=True)
class SearchTarget:
    distance_km: float
    elevation_tier: ElevationTier
    topology: Topology
    bearing_deg: int | None = None
    tolerance: float = DEFAULT_TOLERANCE
    max_attempts: int = 10

    @classmethod
    def from_request(
        cls,
        request: RouteRequest,
        *,
        tolerance: float = DEFAULT_TOLERANCE,
        max_attempts_loop: int = 10,
    ) -> "SearchTarget":
        # A point-to-point route has no free length parameter to tune.
        max_attempts = max(1, int(max_attempts_loop)) if request.is_loop else 1
        return cls(
            distance_km=float(request.distance_km),
            elevation_tier=request.elevation_tier,
            topology=request.topology,
            bearing_deg=bearing_for_direction(request.direction) if request.is_loop else None,
            tolerance=float(tolerance),
            max_attempts=max_attempts,
        )


@dataclass(frozen=True)
class SearchState:
    target: SearchTarget
    params: SearchParameters
    seed_base: int = 0
    status: SearchStatus = "searching"
    attempts: int = 0
    best: RouteCandidate | None = None
    accepted: RouteCandidate | None = None
    failures: int = 0
    last_error: ProviderError | None = field(default=None, compare=False)

    @property
    def done(self) -> bool:
        return self.status != "searching"


def distance_error_fraction(actual_km: float, requested_km: float) -> float:
    if requested_km <= 0:
        raise ValueError("requested distance must be positive")
    return abs(float(actual_km) - float(requested_km)) / float(requested_km)


def waypoints_for_tier(tier: str) -> int:
    count = WAYPOINTS_BY_TIER.get(tier, WAYPOINTS_BY_TIER["hilly"])
    return max(MIN_WAYPOINTS, min(MAX_WAYPOINTS, count))


def clamp_target_length(length_m: float) -> int:
    return int(max(MIN_TARGET_LENGTH_M, min(MAX_TARGET_LENGTH_M, round(length_m))))


def corrected_target_length(current_m: float, *, requested_km: float, actual_km: float) -> int:
    if actual_km <= 0:
        return clamp_target_length(current_m)
    factor = (requested_km / actual_km) ** CORRECTION_EXPONENT
    return clamp_target_length(current_m * factor)


def elevation_shortfall(tier: str, *, distance_km: float, achieved_m: float) -> bool:
    expected_low = MIN_CLIMB_M_PER_KM.get(tier, 0.0) * distance_km
    return achieved_m < expected_low * ELEVATION_SHORTFALL_RATIO


def _next_seed(rng: random.Random, *, seed_base: int, current: int) -> int:
    seed = seed_base + rng.randrange(SEED_SPAN)
    if seed == current:
        seed = seed_base + ((seed - seed_base + 1) % SEED_SPAN)
    return seed


def initial_state(target: SearchTarget, *, seed: int, seed_base: int | None = None) -> SearchState:
    params = SearchParameters(
        target_length_m=clamp_target_length(target.distance_km * 1000.0),
        waypoint_count=waypoints_for_tier(target.elevation_tier),
        seed=int(seed),
        bearing_deg=target.bearing_deg,
    )
    base = int(seed_base) if seed_base is not None else int(seed) - (int(seed) % SEED_SPAN)
    return SearchState(target=target, params=params, seed_base=base)


def score_route(route: ProviderRoute, *, requested_km: float) -> RouteCandidate:
    return RouteCandidate(
        path=route.path,
        distance_km=route.distance_km,
        elevation_gain_m=route.elevation_gain_m,
        duration_min=route.duration_min,
        export_payload="",
        distance_error_fraction=distance_error_fraction(route.distance_km, requested_km),
        params_used=route.params_used,
    )


def advance(
    state: SearchState,
    outcome: ProviderRoute | ProviderError,
    rng: random.Random,
) -> SearchState:
    """Pure transition: fold one attempt's outcome into the search state."""
    if state.done:
        raise ValueError(f"search already {state.status}")

    target = state.target
    attempts = state.attempts + 1
    out_of_attempts = attempts >= target.max_attempts

    if isinstance(outcome, ProviderError):
        # A failed attempt keeps the length and only moves the seed.
        return replace(
            state,
            attempts=attempts,
            failures=state.failures + 1,
            last_error=outcome,
            status="exhausted" if out_of_attempts else "searching",
            params=replace(
                state.params,
                seed=_next_seed(rng, seed_base=state.seed_base, current=state.params.seed),
            ),
        )

    candidate = score_route(outcome, requested_km=target.distance_km)
    best = state.best
    if best is None or candidate.distance_error_fraction < best.distance_error_fraction:
        best = candidate

    if candidate.distance_error_fraction <= target.tolerance:
        return replace(state, attempts=attempts, best=best, accepted=candidate, status="accepted")

    if out_of_attempts:
        return replace(state, attempts=attempts, best=best, status="exhausted")

    waypoint_count = state.params.waypoint_count
    if elevation_shortfall(
        target.elevation_tier,
        distance_km=target.distance_km,
        achieved_m=candidate.elevation_gain_m,
    ):
        waypoint_count = min(MAX_WAYPOINTS, waypoint_count + 1)

    params = SearchParameters(
        target_length_m=corrected_target_length(
            state.params.target_length_m,
            requested_km=target.distance_km,
            actual_km=candidate.distance_km,
        ),
        waypoint_count=waypoint_count,
        seed=_next_seed(rng, seed_base=state.seed_base, current=state.params.seed),
        bearing_deg=state.params.bearing_deg,
    )
    return replace(state, attempts=attempts, best=best, params=params)


@dataclass(frozen=True)
class SearchResult:
    candidate: RouteCandidate
    status: SearchStatus
    attempts: int
    failures: int = 0
    warning: ConvergenceExhausted | None = None


async def run_parameter_search(
    provider: DirectionsProvider,
    query: RouteQuery,
    target: SearchTarget,
    *,
    seed: int,
    seed_base: int | None = None,
    rng: random.Random | None = None,
) -> SearchResult:
    """Call the provider until a route lands in the tolerance band or attempts run out.

    On exhaustion the lowest-error candidate seen is returned with a
    ``ConvergenceExhausted`` warning. Raises the last ``ProviderError`` only
    when no attempt produced a route at all.
    """
    rng = rng or random.Random()
    state = initial_state(target, seed=seed, seed_base=seed_base)

    while not state.done:
        params = state.params
        try:
            outcome: ProviderRoute | ProviderError = await provider.route(query, params)
        except ProviderError as e:
            outcome = e
        state = advance(state, outcome, rng)

        if isinstance(outcome, ProviderError):
            log_event(
                "search_attempt",
                attempt=state.attempts,
                max_attempts=target.max_attempts,
                target_length_m=params.target_length_m,
                waypoint_count=params.waypoint_count,
                seed=params.seed,
                error=str(outcome),
                reason_code=outcome.reason_code,
            )
        else:
            log_event(
                "search_attempt",
                attempt=state.attempts,
                max_attempts=target.max_attempts,
                target_length_m=params.target_length_m,
                waypoint_count=params.waypoint_count,
                seed=params.seed,
                requested_km=target.distance_km,
                actual_km=round(outcome.distance_km, 3),
                elevation_gain_m=round(outcome.elevation_gain_m, 1),
                distance_error=round(distance_error_fraction(outcome.distance_km, target.distance_km), 4),
            )

    if state.status == "accepted" and state.accepted is not None:
        log_event(
            "search_accepted",
            attempts=state.attempts,
            distance_km=round(state.accepted.distance_km, 3),
            distance_error=round(state.accepted.distance_error_fraction, 4),
        )
        return SearchResult(
            candidate=state.accepted,
            status="accepted",
            attempts=state.attempts,
            failures=state.failures,
        )

    if state.best is None:
        if state.last_error is None:
            raise RuntimeError("search ended without a route or a provider error")
        raise state.last_error

    warning = ConvergenceExhausted(
        reason_code="convergence_exhausted",
        message=(
            f"No route within {target.tolerance:.0%} of {target.distance_km:g} km after "
            f"{state.attempts} attempts; closest was {state.best.distance_km:.1f} km"
        ),
        details={
            "attempts": state.attempts,
            "distance_error": round(state.best.distance_error_fraction, 4),
        },
    )
    log_event(
        "search_exhausted",
        attempts=state.attempts,
        failures=state.failures,
        distance_km=round(state.best.distance_km, 3),
        distance_error=round(state.best.distance_error_fraction, 4),
    )
    return SearchResult(
        candidate=state.best,
        status="exhausted",
        attempts=state.attempts,
        failures=state.failures,
        warning=warning,
    )
