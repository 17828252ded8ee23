"""Healthgate - health-gated container deployment and rollback.

This package replaces a single running service container with a new image,
waits for its readiness endpoint within a bounded window, and reverts to the
previously known-good image when the new one never becomes healthy.
"""

__version__ = "0.1.0"
