"""Configuration management for Healthgate.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Environment variables (HEALTHGATE_* prefix)
2. TOML configuration file (or values passed to HealthgateConfig)
3. Default values defined in this module

Example TOML configuration:
    [service]
    service_name = "api"
    repository = "registry.local:5000/api"
    host_port = 8080
    container_port = 3000

    [health]
    timeout_seconds = 90
    poll_interval_seconds = 3.0

Example environment variable override:
    HEALTHGATE_SERVICE__TAG="v3"
    HEALTHGATE_SERVICE__HOST_PORT=9090
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from healthgate.models import (
    DeploymentTarget,
    ImageRef,
    PortBinding,
    ResourceLimits,
    RestartPolicy,
    VolumeBinding,
)


class DockerConfig(BaseSettings):
    """Docker daemon connection configuration.

    Attributes:
        rootless: Prefer the rootless Docker socket when DOCKER_HOST is unset
        stop_timeout_seconds: Grace period before a stopped container is killed
        build_timeout_seconds: Docker API timeout for image builds and pulls
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTHGATE_DOCKER__",
        extra="forbid",
    )

    rootless: bool = Field(default=False)
    stop_timeout_seconds: int = Field(default=10, ge=0, le=600)
    build_timeout_seconds: int = Field(default=600, ge=30, le=7200)


class HealthConfig(BaseSettings):
    """Readiness polling configuration.

    Attributes:
        timeout_seconds: Total time allowed for the service to become healthy
        poll_interval_seconds: Fixed delay between consecutive probes
        request_timeout_seconds: Timeout of a single probe request
        expected_status_codes: HTTP status codes counted as healthy
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTHGATE_HEALTH__",
        extra="forbid",
    )

    timeout_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    poll_interval_seconds: float = Field(default=2.0, gt=0.0, le=300.0)
    request_timeout_seconds: float = Field(default=1.5, gt=0.0, le=300.0)
    expected_status_codes: list[int] = Field(default_factory=lambda: [200])

    @model_validator(mode="after")
    def validate_probe_fits_interval(self) -> HealthConfig:
        """Ensure a probe cannot overlap the next one."""
        if self.request_timeout_seconds >= self.poll_interval_seconds:
            raise ValueError(
                f"request_timeout_seconds ({self.request_timeout_seconds}) must be smaller "
                f"than poll_interval_seconds ({self.poll_interval_seconds})"
            )
        return self


class ServiceConfig(BaseSettings):
    """Description of the deployed service.

    Attributes:
        service_name: Logical service name
        container_name: Docker container name (defaults to service_name)
        repository: Image repository
        tag: Image tag deployed when none is given on the command line
        host_port: Published host port
        container_port: Port the service listens on inside the container
        environment: Environment variables passed to the container
        volumes: Volume mounts (source -> container path)
        restart_policy: Docker restart policy
        memory: Memory limit (docker notation)
        cpus: CPU quota in cores
        read_only: Read-only root filesystem
        security_opt: Docker security options
        tmpfs: tmpfs mounts (path -> options)
        health_host: Host used to reach the published port
        health_path: Readiness endpoint path
        build_context: Build context used when the image is missing locally
        dockerfile: Dockerfile name inside build_context
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTHGATE_SERVICE__",
        extra="forbid",
    )

    service_name: str = Field(default="app", min_length=1)
    container_name: str | None = Field(default=None)
    repository: str = Field(default="app", min_length=1)
    tag: str = Field(default="latest", min_length=1)
    host_port: int = Field(default=8080, ge=1, le=65535)
    container_port: int = Field(default=3000, ge=1, le=65535)
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: dict[str, str] = Field(default_factory=dict)
    restart_policy: RestartPolicy = Field(default=RestartPolicy.UNLESS_STOPPED)
    memory: str | None = Field(default="512m")
    cpus: float | None = Field(default=0.5, gt=0.0)
    read_only: bool = Field(default=False)
    security_opt: list[str] = Field(default_factory=lambda: ["no-new-privileges:true"])
    tmpfs: dict[str, str] = Field(default_factory=dict)
    health_host: str = Field(default="localhost")
    health_path: str = Field(default="/health")
    build_context: Path | None = Field(default=None)
    dockerfile: str = Field(default="Dockerfile")

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Reject repositories that already carry a tag."""
        if ":" in v[v.rfind("/") + 1 :]:
            raise ValueError(f"Repository must not include a tag: {v}")
        return v

    def to_target(self, tag: str | None = None) -> DeploymentTarget:
        """Build a DeploymentTarget for the given tag (configured tag by default)."""
        volumes = tuple(
            VolumeBinding(source=source, target=target)
            for source, target in self.volumes.items()
        )
        return DeploymentTarget(
            service_name=self.service_name,
            container_name=self.container_name or self.service_name,
            image=ImageRef(repository=self.repository, tag=tag or self.tag),
            ports=(PortBinding(host_port=self.host_port, container_port=self.container_port),),
            environment=dict(self.environment),
            volumes=volumes,
            restart_policy=self.restart_policy,
            limits=ResourceLimits(
                memory=self.memory,
                cpus=self.cpus,
                read_only=self.read_only,
                security_opt=tuple(self.security_opt),
                tmpfs=dict(self.tmpfs),
            ),
            health_host=self.health_host,
            health_path=self.health_path,
            build_context=self.build_context,
            dockerfile=self.dockerfile,
        )


class DeployConfig(BaseSettings):
    """Deployment flow configuration.

    Attributes:
        log_tail_lines: Container log lines captured when an attempt fails
        report_dir: Directory for JSON deployment reports (None disables reports)
        rollback_on_failure: Roll back to the previous image when a deploy fails
        keep_images: Local images of the repository kept after a successful
            release (0 disables image retention)
        smoke_check: Sample response time and resource usage once healthy
        response_time_budget_seconds: Response time above which the smoke
            check is reported as slow
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTHGATE_DEPLOY__",
        extra="forbid",
    )

    log_tail_lines: int = Field(default=50, ge=0, le=10000)
    report_dir: Path | None = Field(default=None)
    rollback_on_failure: bool = Field(default=True)
    keep_images: int = Field(default=3, ge=0, le=100)
    smoke_check: bool = Field(default=True)
    response_time_budget_seconds: float = Field(default=5.0, gt=0)


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTHGATE_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=10, ge=1, le=1000)
    retention_count: int = Field(default=5, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class HealthgateConfig(BaseSettings):
    """Root configuration for Healthgate.

    Environment variable format for nested config:
        HEALTHGATE_<SECTION>__<KEY>=value

    Example:
        HEALTHGATE_SERVICE__TAG="v3"
        HEALTHGATE_HEALTH__TIMEOUT_SECONDS=120
    """

    model_config = SettingsConfigDict(
        env_prefix="HEALTHGATE_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    docker: DockerConfig = Field(default_factory=DockerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Let environment variables override values loaded from TOML."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_config(config_path: Path | None = None) -> HealthgateConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./healthgate.toml (current directory)
    3. ~/.config/healthgate/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        HealthgateConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "healthgate.toml",
            Path.home() / ".config" / "healthgate" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Pydantic overlays environment variables on top of the TOML values
    try:
        return HealthgateConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e
        raise ValueError(f"Invalid configuration: {e}") from e
