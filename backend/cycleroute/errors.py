from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "location_unresolvable",
        "provider_transient",
        "provider_fatal",
        "convergence_exhausted",
        "all_variants_failed",
        "config_missing",
        "generation_timeout",
        "route_generation_failed",
    }
)

# Shown to the rider instead of the internal message.
USER_HINTS: dict[str, str] = {
    "location_unresolvable": (
        "Could not resolve the location. Try a larger town or add a region "
        'qualifier (e.g. "Roskilde, Denmark").'
    ),
    "all_variants_failed": (
        "Could not generate any route for these settings. Try a different "
        "distance or start point."
    ),
    "config_missing": "Route generation is not configured on this server.",
    "generation_timeout": "Route generation took too long. Please try again.",
    "route_generation_failed": "Failed to generate route suggestions.",
}


@dataclass(eq=False)
class RouteEngineError(Exception):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message

    @property
    def user_message(self) -> str:
        hint = USER_HINTS.get(normalize_reason_code(self.reason_code))
        if hint is None:
            return self.message
        return f"{self.message}. {hint}" if self.message else hint


class UnresolvableLocation(RouteEngineError):
    """Every geocoding candidate for a place name failed."""


class ProviderError(RouteEngineError):
    """The directions provider could not produce a route for one attempt."""


class ProviderTransient(ProviderError):
    """A retryable provider fault (429/500/503, timeout) that outlived its retries."""


class ProviderFatal(ProviderError):
    pass


class ConvergenceExhausted(RouteEngineError):
    """Warning: tolerance unmet, the best-so-far candidate was returned instead."""


class AllVariantsFailed(RouteEngineError):
    pass


class ConfigMissing(RouteEngineError):
    pass


class GenerationTimeout(RouteEngineError):
    pass


def normalize_reason_code(reason_code: str, *, default: str = "route_generation_failed") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
