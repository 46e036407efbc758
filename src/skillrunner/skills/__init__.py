"""Skill definitions and loading."""

from skillrunner.skills.models import (
    DEFAULT_PROFILE,
    PROFILES,
    FailurePolicy,
    Phase,
    RoutingProfile,
    Skill,
    SkillRouting,
    validate_profile,
)
from skillrunner.skills.loader import SkillRegistry, parse_skill

__all__ = [
    "DEFAULT_PROFILE",
    "PROFILES",
    "FailurePolicy",
    "Phase",
    "RoutingProfile",
    "Skill",
    "SkillRegistry",
    "SkillRouting",
    "parse_skill",
    "validate_profile",
]
