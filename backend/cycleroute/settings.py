from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigMissing


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping provider credentials out of code."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    graphhopper_api_key: str = Field(default="", alias="GRAPHHOPPER_API_KEY")
    graphhopper_base_url: str = Field(
        default="https://graphhopper.com/api/1",
        alias="GRAPHHOPPER_BASE_URL",
    )
    nominatim_base_url: str = Field(
        default="https://nominatim.openstreetmap.org",
        alias="NOMINATIM_BASE_URL",
    )

    out_dir: str = Field(default="./out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Nominatim usage policy allows at most one request per second.
    geocoder_user_agent: str = Field(default="CyclingRouteApp/1.0", alias="GEOCODER_USER_AGENT")
    geocoder_accept_language: str = Field(default="da,en", alias="GEOCODER_ACCEPT_LANGUAGE")
    geocoder_country_codes: str = Field(default="dk", alias="GEOCODER_COUNTRY_CODES")
    geocoder_region_qualifier: str = Field(default="Denmark", alias="GEOCODER_REGION_QUALIFIER")
    geocoder_min_interval_s: float = Field(default=1.0, ge=0.0, le=30.0, alias="GEOCODER_MIN_INTERVAL_S")
    geocoder_result_limit: int = Field(default=3, ge=1, le=50, alias="GEOCODER_RESULT_LIMIT")
    geocoder_timeout_s: float = Field(default=10.0, ge=1.0, le=120.0, alias="GEOCODER_TIMEOUT_S")

    provider_timeout_s: float = Field(default=30.0, ge=1.0, le=300.0, alias="PROVIDER_TIMEOUT_S")
    provider_max_retries: int = Field(default=1, ge=0, le=5, alias="PROVIDER_MAX_RETRIES")
    provider_retry_delay_s: float = Field(default=0.4, ge=0.0, le=10.0, alias="PROVIDER_RETRY_DELAY_S")

    search_tolerance: float = Field(default=0.05, gt=0.0, le=0.5, alias="SEARCH_TOLERANCE")
    search_max_attempts_loop: int = Field(default=10, ge=1, le=25, alias="SEARCH_MAX_ATTEMPTS_LOOP")

    variant_desired_count: int = Field(default=3, ge=1, le=10, alias="VARIANT_DESIRED_COUNT")
    variant_cap: int = Field(default=6, ge=1, le=20, alias="VARIANT_CAP")
    variant_retry_budget: int = Field(default=2, ge=1, le=5, alias="VARIANT_RETRY_BUDGET")
    # Variants in flight at once against the directions provider.
    variant_concurrency: int = Field(default=1, ge=1, le=3, alias="VARIANT_CONCURRENCY")

    route_generation_timeout_s: float = Field(
        default=120.0,
        ge=1.0,
        le=900.0,
        alias="ROUTE_GENERATION_TIMEOUT_S",
    )

    @model_validator(mode="after")
    def _normalise_urls(self) -> "Settings":
        self.graphhopper_base_url = self.graphhopper_base_url.strip().rstrip("/")
        self.nominatim_base_url = self.nominatim_base_url.strip().rstrip("/")
        self.graphhopper_api_key = self.graphhopper_api_key.strip()
        self.geocoder_region_qualifier = self.geocoder_region_qualifier.strip()
        if self.variant_desired_count > self.variant_cap:
            self.variant_desired_count = self.variant_cap
        return self


@dataclass(frozen=True)
class EngineConfig:
    """Explicit configuration handed to the engine components at construction."""

    graphhopper_api_key: str
    graphhopper_base_url: str
    nominatim_base_url: str
    geocoder_user_agent: str
    geocoder_accept_language: str
    geocoder_country_codes: str
    geocoder_region_qualifier: str
    geocoder_min_interval_s: float
    geocoder_result_limit: int
    geocoder_timeout_s: float
    provider_timeout_s: float
    provider_max_retries: int
    provider_retry_delay_s: float
    search_tolerance: float
    search_max_attempts_loop: int
    variant_desired_count: int
    variant_cap: int
    variant_retry_budget: int
    variant_concurrency: int
    route_generation_timeout_s: float

    @classmethod
    def from_settings(cls, source: Settings) -> "EngineConfig":
        return cls(
            graphhopper_api_key=source.graphhopper_api_key,
            graphhopper_base_url=source.graphhopper_base_url,
            nominatim_base_url=source.nominatim_base_url,
            geocoder_user_agent=source.geocoder_user_agent,
            geocoder_accept_language=source.geocoder_accept_language,
            geocoder_country_codes=source.geocoder_country_codes,
            geocoder_region_qualifier=source.geocoder_region_qualifier,
            geocoder_min_interval_s=source.geocoder_min_interval_s,
            geocoder_result_limit=source.geocoder_result_limit,
            geocoder_timeout_s=source.geocoder_timeout_s,
            provider_timeout_s=source.provider_timeout_s,
            provider_max_retries=source.provider_max_retries,
            provider_retry_delay_s=source.provider_retry_delay_s,
            search_tolerance=source.search_tolerance,
            search_max_attempts_loop=source.search_max_attempts_loop,
            variant_desired_count=source.variant_desired_count,
            variant_cap=source.variant_cap,
            variant_retry_budget=source.variant_retry_budget,
            variant_concurrency=source.variant_concurrency,
            route_generation_timeout_s=source.route_generation_timeout_s,
        )

    def require_api_key(self) -> str:
        if not self.graphhopper_api_key:
            raise ConfigMissing(
                reason_code="config_missing",
                message="GRAPHHOPPER_API_KEY is not configured",
                details={"setting": "GRAPHHOPPER_API_KEY"},
            )
        return self.graphhopper_api_key


settings = Settings()
