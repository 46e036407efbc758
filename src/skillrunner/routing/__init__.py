"""Provider routing: profiles, fallback chain and rate limits."""

from skillrunner.routing.config import (
    ModelConfig,
    ProfileConfig,
    ProviderRouting,
    RateLimits,
    RoutingConfiguration,
)
from skillrunner.routing.limits import RateLimiter
from skillrunner.routing.router import ModelSelection, Router

__all__ = [
    "ModelConfig",
    "ModelSelection",
    "ProfileConfig",
    "ProviderRouting",
    "RateLimiter",
    "RateLimits",
    "Router",
    "RoutingConfiguration",
]
