"""Monitoring module for logging and metrics."""

from .logger import get_logger, setup_logger, StructuredLogger
from .metrics_tracker import MetricsTracker

__all__ = [
    "get_logger",
    "setup_logger",
    "StructuredLogger",
    "MetricsTracker",
]
