"""Relay health monitoring."""

from relay.health.monitor import HealthMonitor, HealthReport

__all__ = [
    "HealthMonitor",
    "HealthReport",
]
