from __future__ import annotations

import asyncio
import random
import time
import uuid
from typing import Any

from .assembler import assemble_route
from .errors import GenerationTimeout, RouteEngineError, normalize_reason_code
from .geocoding import LocationResolver, NominatimClient, RateLimiter
from .logging_utils import log_event
from .models import GenerateRoutesResponse, RouteRequest
from .routing_graphhopper import DirectionsProvider
from .settings import EngineConfig
from .variants import RouteResult, VariantOrchestrator


class RouteGenerationService:
    """Request-scoped pipeline: resolve start/end, run the variants, assemble routes.

    Build one per request; the resolver memo and geocoder rate limiter live
    on the instance and are never shared between requests.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        geocoder: NominatimClient,
        provider: DirectionsProvider,
        limiter: RateLimiter | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.resolver = LocationResolver(
            geocoder,
            limiter=limiter or RateLimiter(config.geocoder_min_interval_s),
            region_qualifier=config.geocoder_region_qualifier,
            country_codes=config.geocoder_country_codes,
        )
        self.orchestrator = VariantOrchestrator(
            provider,
            tolerance=config.search_tolerance,
            max_attempts_loop=config.search_max_attempts_loop,
            retry_budget=config.variant_retry_budget,
            concurrency=config.variant_concurrency,
            rng=rng,
        )

    async def _run_variants(self, request: RouteRequest) -> list[RouteResult]:
        start = await self.resolver.resolve(request.start_text)
        end = None
        if not request.is_loop and request.end_text:
            end = await self.resolver.resolve(request.end_text)

        try:
            return await asyncio.wait_for(
                self.orchestrator.generate(
                    request,
                    start,
                    end,
                    desired_count=self.config.variant_desired_count,
                    variant_cap=self.config.variant_cap,
                ),
                timeout=self.config.route_generation_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise GenerationTimeout(
                reason_code="generation_timeout",
                message=f"Route generation exceeded {self.config.route_generation_timeout_s:g}s",
            ) from e

    async def generate(self, request: RouteRequest) -> GenerateRoutesResponse:
        """Raises ``RouteEngineError`` subclasses; see ``generate_routes`` for the dict contract."""
        self.config.require_api_key()
        results = await self._run_variants(request)
        return GenerateRoutesResponse(
            routes=[assemble_route(r) for r in results],
            warnings=[str(r.warning) for r in results if r.warning is not None],
        )

    async def generate_routes(self, request: RouteRequest) -> dict[str, Any]:
        """``{"routes": [...]}`` on success, ``{"error": ..., "reason_code": ...}`` otherwise."""
        request_id = str(uuid.uuid4())
        t0 = time.perf_counter()
        try:
            response = await self.generate(request)
        except RouteEngineError as e:
            reason_code = normalize_reason_code(e.reason_code)
            log_event(
                "generate_routes_request",
                request_id=request_id,
                topology=request.topology,
                distance_km=request.distance_km,
                subscription_tier=request.subscription_tier,
                reason_code=reason_code,
                error=str(e),
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
            )
            return {"error": e.user_message, "reason_code": reason_code}

        log_event(
            "generate_routes_request",
            request_id=request_id,
            topology=request.topology,
            distance_km=request.distance_km,
            elevation_tier=request.elevation_tier,
            terrain=request.terrain,
            subscription_tier=request.subscription_tier,
            route_count=len(response.routes),
            warning_count=len(response.warnings),
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return response.model_dump()
