from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import RouteEngineError, normalize_reason_code
from .geocoding import NominatimClient
from .logging_utils import log_event
from .metrics_store import metrics_snapshot, record_request
from .models import ErrorResponse, GeocodeRequest, GeocodeResponse, LatLng, RouteRequest
from .routing_graphhopper import GraphHopperClient
from .service import RouteGenerationService
from .settings import EngineConfig, settings

STATUS_BY_REASON: dict[str, int] = {
    "location_unresolvable": 422,
    "all_variants_failed": 502,
    "provider_fatal": 502,
    "provider_transient": 502,
    "config_missing": 503,
    "generation_timeout": 504,
    "route_generation_failed": 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = EngineConfig.from_settings(settings)
    app.state.geocoder = NominatimClient(
        base_url=config.nominatim_base_url,
        user_agent=config.geocoder_user_agent,
        accept_language=config.geocoder_accept_language,
        result_limit=config.geocoder_result_limit,
        timeout_s=config.geocoder_timeout_s,
    )
    app.state.provider = GraphHopperClient(
        base_url=config.graphhopper_base_url,
        api_key=config.graphhopper_api_key,
        timeout_s=config.provider_timeout_s,
        max_retries=config.provider_max_retries,
        retry_delay_s=config.provider_retry_delay_s,
    )
    yield
    await app.state.provider.aclose()
    await app.state.geocoder.aclose()


app = FastAPI(title="Cycle Route Engine", version="0.3.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def engine_config() -> EngineConfig:
    return EngineConfig.from_settings(settings)


def route_service(request: Request, config: Annotated[EngineConfig, Depends(engine_config)]) -> RouteGenerationService:
    geocoder: NominatimClient | None = getattr(request.app.state, "geocoder", None)
    provider: GraphHopperClient | None = getattr(request.app.state, "provider", None)
    if geocoder is None or provider is None:
        raise HTTPException(status_code=503, detail="Provider clients not initialised")
    # Fresh per request: resolver memo and geocoder rate limiter are request-scoped.
    return RouteGenerationService(config, geocoder=geocoder, provider=provider)


ServiceDep = Annotated[RouteGenerationService, Depends(route_service)]


def _error_response(err: RouteEngineError) -> JSONResponse:
    code = normalize_reason_code(err.reason_code)
    return JSONResponse(
        status_code=STATUS_BY_REASON.get(code, 500),
        content=ErrorResponse(error=err.user_message, reason_code=code).model_dump(),
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.post("/geocode", response_model=GeocodeResponse)
async def geocode(req: GeocodeRequest, service: ServiceDep):
    t0 = time.perf_counter()
    try:
        resolved = await service.resolver.resolve(req.location)
    except RouteEngineError as e:
        record_request("geocode", duration_ms=(time.perf_counter() - t0) * 1000, error=True)
        return _error_response(e)

    record_request("geocode", duration_ms=(time.perf_counter() - t0) * 1000)
    return GeocodeResponse(
        coords=LatLng(lat=resolved.lat, lng=resolved.lng),
        display_name=resolved.display_name,
        matched_candidate=resolved.matched_candidate,
    )


@app.post("/routes/generate")
async def generate_routes(req: RouteRequest, service: ServiceDep) -> JSONResponse:
    t0 = time.perf_counter()
    payload = await service.generate_routes(req)
    duration_ms = (time.perf_counter() - t0) * 1000

    if "error" in payload:
        record_request("routes_generate", duration_ms=duration_ms, error=True)
        status = STATUS_BY_REASON.get(str(payload.get("reason_code")), 500)
        log_event("routes_generate_failed", level=logging.WARNING, status_code=status, reason_code=payload.get("reason_code"))
        return JSONResponse(status_code=status, content=payload)

    record_request("routes_generate", duration_ms=duration_ms)
    return JSONResponse(status_code=200, content=payload)
