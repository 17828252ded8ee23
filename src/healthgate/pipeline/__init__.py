"""Deterministic adapters for Healthgate.

This module implements the local image registry view, container lifecycle
management, the HTTP readiness probe, and the clock used for bounded polling.
"""

from __future__ import annotations

from healthgate.pipeline.clock import Clock, SystemClock
from healthgate.pipeline.container import (
    ContainerAction,
    ContainerRuntime,
    ContainerStatus,
    DockerHealth,
)
from healthgate.pipeline.health import HealthProbe
from healthgate.pipeline.registry import ImageRegistry, ImageResolution, ImageSource

__all__ = [
    # Timing
    "Clock",
    "SystemClock",
    # Container management
    "ContainerAction",
    "ContainerRuntime",
    "ContainerStatus",
    "DockerHealth",
    # Health checks
    "HealthProbe",
    # Image registry
    "ImageRegistry",
    "ImageResolution",
    "ImageSource",
]
