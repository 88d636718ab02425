"""Health Monitor."""

from .index import HealthMonitor, HealthReport, main

__all__ = ["HealthMonitor", "HealthReport", "main"]
