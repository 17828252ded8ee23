"""Container lifecycle management for Healthgate.

This module provides the async ContainerRuntime adapter over docker-py. Every
operation runs the blocking SDK call in a worker thread and reports a
structured ContainerAction instead of raising, so the orchestrator only ever
sees typed results.

Stop and remove are idempotent: a container that does not exist counts as
already stopped and already removed, which keeps a deployment re-runnable
after a partial failure.

Example usage:
    >>> from healthgate.config import DockerConfig
    >>> from healthgate.pipeline.container import ContainerRuntime
    >>>
    >>> runtime = ContainerRuntime(DockerConfig())
    >>> action = await runtime.stop("api")
    >>> if action.success:
    ...     await runtime.remove("api")
"""

from __future__ import annotations

import asyncio
import os
import time
from enum import Enum
from typing import Any

from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from pydantic import BaseModel, Field

import docker
from healthgate.config import DockerConfig
from healthgate.logging import get_logger
from healthgate.models import DeploymentTarget


class ContainerStatus(str, Enum):
    """Status of a Docker container.

    Attributes:
        RUNNING: Container is running
        PAUSED: Container is paused
        RESTARTING: Container is restarting
        EXITED: Container has exited
        DEAD: Container is dead (non-recoverable error state)
        CREATED: Container has been created but not started
        REMOVING: Container is being removed
        ABSENT: No container with that name exists
    """

    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    CREATED = "created"
    REMOVING = "removing"
    ABSENT = "absent"


class ContainerAction(BaseModel):
    """Result of a container lifecycle operation.

    Attributes:
        success: Whether the operation completed successfully
        container_name: Docker container name
        action: Action performed (stop, remove, start)
        previous_status: Container status before the operation
        current_status: Container status after the operation
        container_id: Short container ID, when known
        error: Error message if operation failed
        duration_seconds: Time taken for the operation
    """

    success: bool = Field(description="Operation success flag")
    container_name: str = Field(description="Container name")
    action: str = Field(description="Action performed")
    previous_status: str | None = Field(default=None, description="Status before action")
    current_status: str | None = Field(default=None, description="Status after action")
    container_id: str | None = Field(default=None, description="Short container ID")
    error: str | None = Field(default=None, description="Error message if failed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Operation duration")


class DockerHealth(BaseModel):
    """Health status of the Docker daemon.

    Attributes:
        available: Whether Docker daemon is reachable and responding
        version: Docker engine version string
        api_version: Docker API version string
        error: Error message if health check failed
    """

    available: bool = Field(default=False, description="Daemon availability")
    version: str | None = Field(default=None, description="Docker version")
    api_version: str | None = Field(default=None, description="API version")
    error: str | None = Field(default=None, description="Health check error")


class ContainerStats(BaseModel):
    """Point-in-time resource usage of a container.

    Attributes:
        cpu_percent: CPU usage across all cores since the previous sample
        memory_usage_bytes: Current memory usage
        memory_limit_bytes: Memory limit visible to the container
    """

    cpu_percent: float = Field(default=0.0, ge=0.0, description="CPU usage percent")
    memory_usage_bytes: int = Field(default=0, ge=0, description="Memory usage")
    memory_limit_bytes: int = Field(default=0, ge=0, description="Memory limit")

    @property
    def memory_percent(self) -> float:
        """Memory usage as a percentage of the limit."""
        if self.memory_limit_bytes <= 0:
            return 0.0
        return self.memory_usage_bytes / self.memory_limit_bytes * 100


def parse_stats(raw: dict[str, Any]) -> ContainerStats:
    """Summarise a one-shot ``container.stats(stream=False)`` payload."""
    cpu = raw.get("cpu_stats") or {}
    precpu = raw.get("precpu_stats") or {}
    usage = cpu.get("cpu_usage") or {}
    previous_usage = precpu.get("cpu_usage") or {}

    cpu_percent = 0.0
    # The first sample after start has no previous reading
    if precpu.get("system_cpu_usage"):
        cpu_delta = usage.get("total_usage", 0) - previous_usage.get("total_usage", 0)
        system_delta = cpu.get("system_cpu_usage", 0) - precpu["system_cpu_usage"]
        online_cpus = cpu.get("online_cpus") or len(usage.get("percpu_usage") or []) or 1
        if cpu_delta > 0 and system_delta > 0:
            cpu_percent = cpu_delta / system_delta * online_cpus * 100

    memory = raw.get("memory_stats") or {}
    return ContainerStats(
        cpu_percent=round(cpu_percent, 2),
        memory_usage_bytes=memory.get("usage", 0),
        memory_limit_bytes=memory.get("limit", 0),
    )


def connect_docker(config: DockerConfig) -> docker.DockerClient:
    """Open a Docker client honouring DOCKER_HOST and rootless mode.

    Args:
        config: Docker configuration settings

    Returns:
        Connected Docker client

    Raises:
        DockerException: If unable to connect to Docker daemon
    """
    docker_host = os.environ.get("DOCKER_HOST")
    if docker_host:
        return docker.DockerClient(base_url=docker_host)
    if config.rootless and hasattr(os, "getuid"):
        xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
        try:
            return docker.DockerClient(base_url=f"unix://{xdg_runtime}/docker.sock")
        except DockerException:
            # Fall back to default
            pass
    return docker.DockerClient.from_env()


def build_run_kwargs(target: DeploymentTarget) -> dict[str, Any]:
    """Translate a DeploymentTarget into docker-py ``containers.run`` arguments."""
    kwargs: dict[str, Any] = {
        "image": target.image.reference,
        "name": target.container_name,
        "detach": True,
        "ports": {
            f"{port.container_port}/{port.protocol}": port.host_port for port in target.ports
        },
        "environment": dict(target.environment),
        "volumes": {
            volume.source: {"bind": volume.target, "mode": volume.mode}
            for volume in target.volumes
        },
        "restart_policy": {"Name": target.restart_policy.value},
        "labels": {
            "healthgate.service": target.service_name,
            "healthgate.image": target.image.reference,
        },
    }

    limits = target.limits
    if limits.memory is not None:
        kwargs["mem_limit"] = limits.memory
    if limits.cpus is not None:
        kwargs["nano_cpus"] = int(limits.cpus * 1_000_000_000)
    if limits.read_only:
        kwargs["read_only"] = True
    if limits.security_opt:
        kwargs["security_opt"] = list(limits.security_opt)
    if limits.tmpfs:
        kwargs["tmpfs"] = dict(limits.tmpfs)

    return kwargs


class ContainerRuntime:
    """Async Docker container adapter keyed by container name.

    Attributes:
        config: Docker configuration from HealthgateConfig
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig) -> None:
        """Initialize ContainerRuntime with configuration.

        Args:
            config: Docker configuration settings

        The Docker client connection is deferred until first use.
        """
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                self._client = connect_docker(self.config)
                self.logger.info("docker_client_connected", rootless=self.config.rootless)
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
        return self._client

    async def _find(self, name: str) -> Any | None:
        """Return the container called ``name`` or None if it does not exist."""
        client = await asyncio.to_thread(self._get_client)
        try:
            container = await asyncio.to_thread(client.containers.get, name)
        except NotFound:
            return None
        await asyncio.to_thread(container.reload)
        return container

    async def check_docker_health(self) -> DockerHealth:
        """Check that the Docker daemon is reachable.

        Returns:
            DockerHealth with daemon version or the connection error
        """
        try:
            client = await asyncio.to_thread(self._get_client)
            version_info: dict[str, Any] = await asyncio.to_thread(client.version)
            health = DockerHealth(
                available=True,
                version=str(version_info.get("Version", "")),
                api_version=str(version_info.get("ApiVersion", "")),
            )
            self.logger.info(
                "docker_health_check_passed",
                version=health.version,
                api_version=health.api_version,
            )
            return health
        except Exception as e:
            self.logger.warning(
                "docker_health_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return DockerHealth(available=False, error=str(e))

    async def stop(self, name: str) -> ContainerAction:
        """Stop a container by name; a missing or stopped container is a no-op.

        Args:
            name: Container name

        Returns:
            ContainerAction with operation result
        """
        start_time = time.monotonic()
        self.logger.info("stopping_container", container_name=name)

        try:
            container = await self._find(name)
            if container is None:
                self.logger.info("container_absent", container_name=name, action="stop")
                return ContainerAction(
                    success=True,
                    container_name=name,
                    action="stop",
                    previous_status=ContainerStatus.ABSENT.value,
                    current_status=ContainerStatus.ABSENT.value,
                    duration_seconds=time.monotonic() - start_time,
                )

            previous_status = container.status
            if previous_status != ContainerStatus.RUNNING.value:
                self.logger.info(
                    "container_already_stopped",
                    container_name=name,
                    status=previous_status,
                )
                return ContainerAction(
                    success=True,
                    container_name=name,
                    action="stop",
                    previous_status=previous_status,
                    current_status=previous_status,
                    container_id=container.short_id,
                    duration_seconds=time.monotonic() - start_time,
                )

            await asyncio.to_thread(container.stop, timeout=self.config.stop_timeout_seconds)
            await asyncio.to_thread(container.reload)
            duration = time.monotonic() - start_time

            self.logger.info(
                "container_stopped",
                container_name=name,
                previous_status=previous_status,
                current_status=container.status,
                duration_seconds=round(duration, 2),
            )
            return ContainerAction(
                success=True,
                container_name=name,
                action="stop",
                previous_status=previous_status,
                current_status=container.status,
                container_id=container.short_id,
                duration_seconds=duration,
            )

        except NotFound:
            # Removed between lookup and stop
            return ContainerAction(
                success=True,
                container_name=name,
                action="stop",
                current_status=ContainerStatus.ABSENT.value,
                duration_seconds=time.monotonic() - start_time,
            )

        except (APIError, DockerException) as e:
            self.logger.error("container_stop_failed", container_name=name, error=str(e))
            return ContainerAction(
                success=False,
                container_name=name,
                action="stop",
                error=str(e),
                duration_seconds=time.monotonic() - start_time,
            )

    async def remove(self, name: str) -> ContainerAction:
        """Remove a container by name; a missing container is a no-op.

        Args:
            name: Container name

        Returns:
            ContainerAction with operation result
        """
        start_time = time.monotonic()
        self.logger.info("removing_container", container_name=name)

        try:
            container = await self._find(name)
            if container is None:
                self.logger.info("container_absent", container_name=name, action="remove")
                return ContainerAction(
                    success=True,
                    container_name=name,
                    action="remove",
                    previous_status=ContainerStatus.ABSENT.value,
                    current_status=ContainerStatus.ABSENT.value,
                    duration_seconds=time.monotonic() - start_time,
                )

            previous_status = container.status
            await asyncio.to_thread(container.remove, force=True)
            duration = time.monotonic() - start_time

            self.logger.info(
                "container_removed",
                container_name=name,
                previous_status=previous_status,
                duration_seconds=round(duration, 2),
            )
            return ContainerAction(
                success=True,
                container_name=name,
                action="remove",
                previous_status=previous_status,
                current_status=ContainerStatus.ABSENT.value,
                container_id=container.short_id,
                duration_seconds=duration,
            )

        except NotFound:
            return ContainerAction(
                success=True,
                container_name=name,
                action="remove",
                current_status=ContainerStatus.ABSENT.value,
                duration_seconds=time.monotonic() - start_time,
            )

        except (APIError, DockerException) as e:
            self.logger.error("container_remove_failed", container_name=name, error=str(e))
            return ContainerAction(
                success=False,
                container_name=name,
                action="remove",
                error=str(e),
                duration_seconds=time.monotonic() - start_time,
            )

    async def start(self, target: DeploymentTarget) -> ContainerAction:
        """Create and start the target's container.

        Args:
            target: Deployment target describing image and configuration

        Returns:
            ContainerAction; success is False if the runtime rejected the
            configuration or the container is not running right after start
        """
        start_time = time.monotonic()
        name = target.container_name
        kwargs = build_run_kwargs(target)

        self.logger.info(
            "starting_container",
            container_name=name,
            image=target.image.reference,
            ports=kwargs["ports"],
            restart_policy=target.restart_policy.value,
        )

        try:
            client = await asyncio.to_thread(self._get_client)
            container = await asyncio.to_thread(client.containers.run, **kwargs)
            await asyncio.to_thread(container.reload)
            duration = time.monotonic() - start_time
            status = container.status

            if status != ContainerStatus.RUNNING.value:
                self.logger.error(
                    "container_exited_on_start",
                    container_name=name,
                    status=status,
                    exit_code=container.attrs.get("State", {}).get("ExitCode"),
                )
                return ContainerAction(
                    success=False,
                    container_name=name,
                    action="start",
                    current_status=status,
                    container_id=container.short_id,
                    error=f"Container is {status} immediately after start",
                    duration_seconds=duration,
                )

            self.logger.info(
                "container_started",
                container_name=name,
                container_id=container.short_id,
                duration_seconds=round(duration, 2),
            )
            return ContainerAction(
                success=True,
                container_name=name,
                action="start",
                current_status=status,
                container_id=container.short_id,
                duration_seconds=duration,
            )

        except ImageNotFound as e:
            self.logger.error("container_image_not_found", container_name=name, error=str(e))
            return ContainerAction(
                success=False,
                container_name=name,
                action="start",
                error=f"Image not found: {target.image.reference}",
                duration_seconds=time.monotonic() - start_time,
            )

        except (APIError, DockerException) as e:
            self.logger.error(
                "container_start_failed",
                container_name=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ContainerAction(
                success=False,
                container_name=name,
                action="start",
                error=str(e),
                duration_seconds=time.monotonic() - start_time,
            )

    async def status(self, name: str) -> ContainerStatus:
        """Get the container's status (ABSENT if it does not exist)."""
        container = await self._find(name)
        if container is None:
            return ContainerStatus.ABSENT
        try:
            return ContainerStatus(container.status)
        except ValueError:
            return ContainerStatus.EXITED

    async def is_running(self, name: str) -> bool:
        """Whether a container with this name is running. Docker errors read as False."""
        try:
            return await self.status(name) == ContainerStatus.RUNNING
        except (APIError, DockerException) as e:
            self.logger.warning("container_status_failed", container_name=name, error=str(e))
            return False

    async def current_image(self, name: str) -> str | None:
        """Image reference the named container was created from, if it exists."""
        try:
            container = await self._find(name)
        except (APIError, DockerException) as e:
            self.logger.warning("container_inspect_failed", container_name=name, error=str(e))
            return None
        if container is None:
            return None
        return container.attrs.get("Config", {}).get("Image")

    async def logs(self, name: str, tail: int = 50) -> list[str]:
        """Fetch the last ``tail`` log lines of a container.

        Returns:
            Log lines, empty if the container is gone or logs are unavailable
        """
        if tail <= 0:
            return []
        try:
            container = await self._find(name)
            if container is None:
                return []
            raw: bytes = await asyncio.to_thread(
                container.logs, stdout=True, stderr=True, tail=tail
            )
        except (APIError, DockerException) as e:
            self.logger.warning("container_logs_failed", container_name=name, error=str(e))
            return []
        return raw.decode("utf-8", errors="replace").splitlines()[-tail:]

    async def stats(self, name: str) -> ContainerStats | None:
        """Take one resource usage sample of a running container.

        Returns:
            ContainerStats, or None if the container is gone or Docker fails
        """
        try:
            container = await self._find(name)
            if container is None:
                return None
            raw: dict[str, Any] = await asyncio.to_thread(container.stats, stream=False)
        except (APIError, DockerException) as e:
            self.logger.warning("container_stats_failed", container_name=name, error=str(e))
            return None
        return parse_stats(raw)

    async def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times or if the client was never connected.
        """
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
                self.logger.info("container_runtime_closed")
            except Exception as e:
                self.logger.warning("container_runtime_close_error", error=str(e))
            finally:
                self._client = None
