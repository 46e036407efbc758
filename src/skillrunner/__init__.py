"""SkillRunner: multi-phase AI skill workflows routed across local and cloud models."""

__version__ = "0.4.0"
