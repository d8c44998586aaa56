from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from .errors import AllVariantsFailed, ConvergenceExhausted, ProviderError
from .geocoding import ResolvedLocation
from .logging_utils import log_event
from .metrics_store import record_search
from .models import RouteRequest
from .parameter_search import (
    DEFAULT_TOLERANCE,
    SEED_SPAN,
    RouteCandidate,
    SearchStatus,
    SearchTarget,
    run_parameter_search,
)
from .routing_graphhopper import DirectionsProvider, RouteQuery

# Initial seed jitter inside a variant's block of SEED_SPAN seeds.
SEED_JITTER = 50


@dataclass(frozen=True)
class RouteResult:
    request: RouteRequest
    candidate: RouteCandidate
    variant: int
    status: SearchStatus
    attempts: int
    start: ResolvedLocation
    end: ResolvedLocation | None = None
    warning: ConvergenceExhausted | None = None


class VariantOrchestrator:
    """Runs independent searches with spread-out seeds to get diverse suggestions."""

    def __init__(
        self,
        provider: DirectionsProvider,
        *,
        tolerance: float = DEFAULT_TOLERANCE,
        max_attempts_loop: int = 10,
        retry_budget: int = 2,
        concurrency: int = 1,
        retry_pause_s: float = 0.3,
        retry_pause_step_s: float = 0.2,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.tolerance = tolerance
        self.max_attempts_loop = max(1, int(max_attempts_loop))
        self.retry_budget = max(1, int(retry_budget))
        self.concurrency = max(1, int(concurrency))
        self.retry_pause_s = retry_pause_s
        self.retry_pause_step_s = retry_pause_step_s
        self._rng = rng or random.Random()
        self._sleep = sleep

    def variant_seed(self, variant: int) -> int:
        return variant * SEED_SPAN + self._rng.randrange(SEED_JITTER)

    async def _run_variant(
        self,
        request: RouteRequest,
        query: RouteQuery,
        target: SearchTarget,
        variant: int,
        *,
        start: ResolvedLocation,
        end: ResolvedLocation | None,
    ) -> RouteResult | None:
        for attempt in range(self.retry_budget):
            try:
                result = await run_parameter_search(
                    self.provider,
                    query,
                    target,
                    seed=self.variant_seed(variant),
                    seed_base=variant * SEED_SPAN,
                    rng=self._rng,
                )
            except ProviderError as e:
                record_search("failed", attempts=target.max_attempts, failures=target.max_attempts)
                log_event(
                    "variant_failed",
                    level=logging.WARNING,
                    variant=variant,
                    attempt=attempt + 1,
                    retry_budget=self.retry_budget,
                    reason_code=e.reason_code,
                    error=str(e),
                )
                if attempt < self.retry_budget - 1:
                    await self._sleep(self.retry_pause_s + attempt * self.retry_pause_step_s)
                continue

            record_search(result.status, attempts=result.attempts, failures=result.failures)
            gpx = await self.provider.export_gpx(query, result.candidate.params_used)
            return RouteResult(
                request=request,
                candidate=replace(result.candidate, export_payload=gpx or ""),
                variant=variant,
                status=result.status,
                attempts=result.attempts,
                start=start,
                end=end,
                warning=result.warning,
            )
        return None

    async def generate(
        self,
        request: RouteRequest,
        start: ResolvedLocation,
        end: ResolvedLocation | None = None,
        *,
        desired_count: int = 3,
        variant_cap: int = 6,
    ) -> list[RouteResult]:
        """Collect up to ``desired_count`` results from at most ``variant_cap`` variants.

        Raises ``AllVariantsFailed`` only when no variant produced a route.
        """
        desired = max(1, int(desired_count))
        cap = max(1, int(variant_cap))
        target = SearchTarget.from_request(
            request,
            tolerance=self.tolerance,
            max_attempts_loop=self.max_attempts_loop,
        )
        query = RouteQuery(
            start=(start.lat, start.lng),
            end=(end.lat, end.lng) if (end is not None and not request.is_loop) else None,
            topology=request.topology,
            terrain=request.terrain,
        )

        results: list[RouteResult] = []
        in_flight: set[asyncio.Task[RouteResult | None]] = set()
        next_variant = 1
        attempted = 0

        try:
            while True:
                # Never launch more than could still be needed.
                while (
                    len(in_flight) < self.concurrency
                    and next_variant <= cap
                    and len(results) + len(in_flight) < desired
                ):
                    in_flight.add(
                        asyncio.ensure_future(
                            self._run_variant(request, query, target, next_variant, start=start, end=end)
                        )
                    )
                    next_variant += 1
                    attempted += 1

                if not in_flight:
                    break

                done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    outcome = task.result()
                    if outcome is not None:
                        results.append(outcome)
        finally:
            for task in in_flight:
                task.cancel()

        results.sort(key=lambda r: r.variant)
        results = results[:desired]

        if not results:
            raise AllVariantsFailed(
                reason_code="all_variants_failed",
                message="Could not generate any route variants",
                details={"variants_attempted": attempted},
            )

        log_event(
            "variants_generated",
            variants_attempted=attempted,
            route_count=len(results),
            accepted=sum(1 for r in results if r.status == "accepted"),
        )
        return results
