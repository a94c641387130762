"""Core utilities package."""

from .logging import get_logger, resource_extra, setup_logging

__all__ = [
    "setup_logging",
    "get_logger",
    "resource_extra",
]
