"""Observability module for SkillRunner.

Provides structured logging for the CLI and the workflow engine.
"""

from skillrunner.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_logs_dir",
]
