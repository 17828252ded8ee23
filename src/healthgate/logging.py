"""Structured logging configuration for Healthgate.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- Deployment context binding (deployment id, container name)

The logging system integrates structlog with Python's stdlib logging
for handlers (file rotation), while using structlog exclusively for
actual log emission.

Example usage:
    >>> from healthgate.config import LoggingConfig
    >>> from healthgate.logging import setup_logging, get_logger, bind_deployment_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_deployment_context(deployment_id="a1b2c3d4", container_name="api")
    >>> logger.info("deployment_started", image="api:v3")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from healthgate.config import LoggingConfig

_deployment_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "deployment_id", default=None
)


def add_deployment_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add deployment_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with deployment_id added if available
    """
    deployment_id = _deployment_id.get()
    if deployment_id is not None:
        event_dict.setdefault("deployment_id", deployment_id)
    return event_dict


def set_deployment_id(deployment_id: str | None) -> None:
    """Set the deployment ID for the current context."""
    _deployment_id.set(deployment_id)


def get_deployment_id() -> str | None:
    """Get the deployment ID of the current context, if any."""
    return _deployment_id.get()


def bind_deployment_context(deployment_id: str, container_name: str) -> None:
    """Bind deployment and container identifiers to all subsequent logs.

    Args:
        deployment_id: Attempt identifier to bind
        container_name: Container the attempt operates on
    """
    set_deployment_id(deployment_id)
    structlog.contextvars.bind_contextvars(container_name=container_name)


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    Args:
        config: Logging configuration from HealthgateConfig
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    # docker-py and httpx are chatty at DEBUG
    for noisy in ("urllib3", "docker", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    if config.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            add_deployment_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
