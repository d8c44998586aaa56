from __future__ import annotations

from .models import Difficulty, LatLng, Route, RouteRequest
from .variants import RouteResult

SAFETY_NOTES = "Watch out for traffic and weather conditions."

_DIRECTION_NAMES: dict[str, str] = {"N": "north", "E": "east", "S": "south", "W": "west"}


def route_name(request: RouteRequest, variant: int) -> str:
    if request.is_loop:
        base = f"{request.start_text} Loop"
    else:
        base = f"{request.start_text} to {request.end_text}"
    return base if variant <= 1 else f"{base} (Variant {variant})"


def route_description(request: RouteRequest) -> str:
    text = f"A {request.terrain} route of about {request.distance_km:g} km"
    heading = _DIRECTION_NAMES.get(request.direction)
    if heading:
        text += f" heading {heading}"
    return text


def difficulty_for(distance_km: float) -> Difficulty:
    if distance_km < 30:
        return "Easy"
    if distance_km < 60:
        return "Moderate"
    return "Hard"


def format_duration(duration_min: float) -> str:
    total = max(0, int(round(duration_min)))
    hours, minutes = divmod(total, 60)
    if hours and minutes:
        return f"{hours} h {minutes} min"
    if hours:
        return f"{hours} h"
    return f"{minutes} min"


def assemble_route(result: RouteResult) -> Route:
    request = result.request
    candidate = result.candidate
    distance_km = round(candidate.distance_km, 1)
    elevation_m = int(round(candidate.elevation_gain_m))

    return Route(
        name=route_name(request, result.variant),
        description=route_description(request),
        variant=result.variant,
        outcome=result.status,
        distance_km=distance_km,
        elevation_m=elevation_m,
        duration_min=int(round(candidate.duration_min)),
        estimated_time=format_duration(candidate.duration_min),
        difficulty=difficulty_for(request.distance_km),
        highlights=[
            f"Start: {result.start.display_name}",
            f"Distance: {distance_km} km",
            f"Elevation: {elevation_m} m",
        ],
        safety_notes=SAFETY_NOTES,
        terrain=request.terrain,
        start_point=result.start.display_name,
        coordinates=LatLng(lat=result.start.lat, lng=result.start.lng),
        path=[LatLng(lat=lat, lng=lng) for lat, lng in candidate.path],
        gpx_data=candidate.export_payload,
        requested_distance_km=request.distance_km,
        requested_elevation_tier=request.elevation_tier,
        distance_error_fraction=round(candidate.distance_error_fraction, 4),
    )
