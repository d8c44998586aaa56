from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ElevationTier = Literal["flat", "hilly", "mountainous"]
Terrain = Literal["road", "gravel", "mtb", "mixed"]
Topology = Literal["loop", "point_to_point"]
Direction = Literal["none", "N", "E", "S", "W"]
SearchOutcome = Literal["accepted", "exhausted"]
Difficulty = Literal["Easy", "Moderate", "Hard"]

_DIRECTION_ALIASES: dict[str, str] = {
    "": "none",
    "none": "none",
    "n": "N",
    "north": "N",
    "e": "E",
    "east": "E",
    "s": "S",
    "south": "S",
    "w": "W",
    "west": "W",
}

_TOPOLOGY_ALIASES: dict[str, str] = {
    "loop": "loop",
    "round_trip": "loop",
    "point_to_point": "point_to_point",
    "pointtopoint": "point_to_point",
    "point-to-point": "point_to_point",
}

_CAMEL_KEYS: dict[str, str] = {
    "distanceKm": "distance_km",
    "distance": "distance_km",
    "elevationTier": "elevation_tier",
    "routeType": "topology",
    "startText": "start_text",
    "startLocation": "start_text",
    "endText": "end_text",
    "endLocation": "end_text",
    "homeAddress": "home_address",
    "subscriptionTier": "subscription_tier",
}


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class RouteRequest(BaseModel):
    """A rider's route preferences, as handed over by the profile/CRUD layer."""

    distance_km: float = Field(..., gt=0)
    elevation_tier: ElevationTier = "hilly"
    terrain: Terrain = "road"
    topology: Topology = "loop"
    direction: Direction = "none"
    start_text: str = Field(default="", max_length=300)
    end_text: str | None = Field(default=None, max_length=300)
    # Passed through by the collaborating profile layer; neither affects convergence.
    home_address: str | None = Field(default=None, max_length=300)
    subscription_tier: str | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_client_aliases(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        for alias, field in _CAMEL_KEYS.items():
            if alias in data and field not in data:
                data[field] = data.pop(alias)
        return data

    @field_validator("direction", mode="before")
    @classmethod
    def normalise_direction(cls, v: object) -> object:
        if v is None:
            return "none"
        if isinstance(v, str):
            return _DIRECTION_ALIASES.get(v.strip().lower(), v)
        return v

    @field_validator("topology", mode="before")
    @classmethod
    def normalise_topology(cls, v: object) -> object:
        if isinstance(v, str):
            return _TOPOLOGY_ALIASES.get(v.strip().lower(), v)
        return v

    @field_validator("start_text", "end_text", "home_address")
    @classmethod
    def strip_text(cls, v: str | None) -> str | None:
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_topology_endpoints(self) -> "RouteRequest":
        if not self.start_text and self.home_address:
            self.start_text = self.home_address
        if not self.start_text:
            raise ValueError("start_text is required (or a stored home_address)")
        has_end = bool(self.end_text)
        if self.topology == "point_to_point" and not has_end:
            raise ValueError("end_text is required for point_to_point routes")
        if self.topology == "loop" and has_end:
            raise ValueError("end_text must be empty for loop routes")
        if not has_end:
            self.end_text = None
        return self

    @property
    def is_loop(self) -> bool:
        return self.topology == "loop"


class Route(BaseModel):
    """Caller-facing route record: requested values alongside what was achieved."""

    name: str
    description: str
    variant: int = Field(..., ge=1)
    outcome: SearchOutcome
    distance_km: float
    elevation_m: int
    duration_min: int
    estimated_time: str
    difficulty: Difficulty
    highlights: list[str]
    safety_notes: str
    terrain: Terrain
    start_point: str
    coordinates: LatLng
    path: list[LatLng]
    gpx_data: str = ""
    requested_distance_km: float
    requested_elevation_tier: ElevationTier
    distance_error_fraction: float = Field(..., ge=0.0)


class GenerateRoutesResponse(BaseModel):
    routes: list[Route]
    warnings: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    reason_code: str


class GeocodeRequest(BaseModel):
    location: str = Field(..., min_length=1, max_length=300)


class GeocodeResponse(BaseModel):
    coords: LatLng
    display_name: str
    matched_candidate: str
