"""Shared pytest fixtures for Healthgate tests.

Provides in-memory stand-ins for the Docker-backed adapters and a simulated
clock so deployment and rollback flows run instantly and deterministically.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from healthgate.config import DockerConfig, HealthConfig
from healthgate.models import (
    DeploymentTarget,
    ImageRef,
    ImageTag,
    PortBinding,
    ProbeResult,
)
from healthgate.orchestrator.deployer import DeploymentOrchestrator
from healthgate.orchestrator.rollback import RollbackPlanner
from healthgate.pipeline.container import (
    ContainerAction,
    ContainerStats,
    ContainerStatus,
    DockerHealth,
)
from healthgate.pipeline.registry import ImageRegistry, ImageResolution, ImageSource

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Simulated monotonic clock; sleeping advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float, cancel_event: asyncio.Event | None = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        self.sleeps.append(seconds)
        self.now += seconds
        return False


class FakeRuntime:
    """In-memory container runtime keyed by container name."""

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, object]] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_stop = False
        self.fail_start_images: set[str] = set()
        self.log_lines = [f"log line {i}" for i in range(1, 101)]
        self.usage: ContainerStats | None = ContainerStats(
            cpu_percent=12.5,
            memory_usage_bytes=64 * 1024 * 1024,
            memory_limit_bytes=512 * 1024 * 1024,
        )

    async def check_docker_health(self) -> DockerHealth:
        return DockerHealth(available=True, version="24.0.0", api_version="1.43")

    async def stop(self, name: str) -> ContainerAction:
        self.calls.append(("stop", name))
        if self.fail_stop:
            return ContainerAction(
                success=False, container_name=name, action="stop", error="daemon busy"
            )
        if name in self.containers:
            self.containers[name]["running"] = False
        return ContainerAction(success=True, container_name=name, action="stop")

    async def remove(self, name: str) -> ContainerAction:
        self.calls.append(("remove", name))
        self.containers.pop(name, None)
        return ContainerAction(success=True, container_name=name, action="remove")

    async def start(self, target: DeploymentTarget) -> ContainerAction:
        reference = target.image.reference
        self.calls.append(("start", reference))
        if reference in self.fail_start_images:
            return ContainerAction(
                success=False,
                container_name=target.container_name,
                action="start",
                error="port is already allocated",
            )
        self.containers[target.container_name] = {"image": reference, "running": True}
        return ContainerAction(
            success=True,
            container_name=target.container_name,
            action="start",
            current_status="running",
        )

    async def status(self, name: str) -> ContainerStatus:
        container = self.containers.get(name)
        if container is None:
            return ContainerStatus.ABSENT
        return ContainerStatus.RUNNING if container["running"] else ContainerStatus.EXITED

    async def is_running(self, name: str) -> bool:
        return await self.status(name) == ContainerStatus.RUNNING

    async def current_image(self, name: str) -> str | None:
        container = self.containers.get(name)
        return str(container["image"]) if container else None

    async def logs(self, name: str, tail: int = 50) -> list[str]:
        return self.log_lines[-tail:] if tail > 0 else []

    async def stats(self, name: str) -> ContainerStats | None:
        return self.usage if name in self.containers else None

    async def close(self) -> None:
        pass


class FakeRegistry(ImageRegistry):
    """Image registry backed by a list of tag records.

    Only the Docker-facing queries are replaced; previous() and latest()
    run the real selection logic on top of list_tags().
    """

    def __init__(self, tags: list[ImageTag] | None = None) -> None:
        super().__init__(DockerConfig())
        self.tags: list[ImageTag] = list(tags or [])
        self.pullable: set[str] = set()
        self.ensure_calls: list[str] = []
        self.removed: list[str] = []
        self.in_use: set[str] = set()
        self.on_ensure: Callable[[ImageRef], None] | None = None

    def add(self, tag: str, image_id: str | None = None, age_minutes: int = 0) -> ImageTag:
        record = ImageTag(
            repository="api",
            tag=tag,
            image_id=image_id or f"sha256:{tag}",
            created_at=BASE_TIME - timedelta(minutes=age_minutes),
        )
        self.tags.append(record)
        return record

    async def list_tags(self, repository: str) -> list[ImageTag]:
        records = [record for record in self.tags if record.repository == repository]
        return sorted(records, key=lambda record: (record.created_at, record.tag), reverse=True)

    async def resolve(self, image: ImageRef) -> ImageTag | None:
        for record in self.tags:
            if record.image == image:
                return record
        return None

    async def ensure_image(
        self,
        image: ImageRef,
        build_context: Path | None = None,
        dockerfile: str = "Dockerfile",
        force_build: bool = False,
    ) -> ImageResolution:
        self.ensure_calls.append(image.reference)
        if self.on_ensure is not None:
            self.on_ensure(image)
        existing = await self.resolve(image)
        if existing is not None:
            return ImageResolution(
                success=True, image=image, source=ImageSource.LOCAL, image_id=existing.image_id
            )
        if image.reference in self.pullable:
            record = self.add(image.tag)
            return ImageResolution(
                success=True, image=image, source=ImageSource.PULLED, image_id=record.image_id
            )
        return ImageResolution(
            success=False, image=image, error=f"Image not found: {image.reference}"
        )

    async def remove_image(self, image: ImageRef) -> bool:
        if image.reference in self.in_use:
            return False
        self.removed.append(image.reference)
        self.tags = [record for record in self.tags if record.image != image]
        return True


class FakeProbe:
    """Readiness probe answering from a script or a callback.

    Args:
        script: Successive success flags; the last value repeats
        healthy: Callback deciding success when no script is given
        duration: Simulated request duration added to the clock
    """

    def __init__(
        self,
        clock: FakeClock,
        script: list[bool] | None = None,
        healthy: Callable[[], bool] | None = None,
        duration: float = 0.0,
    ) -> None:
        self.clock = clock
        self.script = list(script or [])
        self.healthy = healthy
        self.duration = duration
        self.urls: list[str] = []
        self.on_check: Callable[[int], None] | None = None

    async def check(self, url: str, request_timeout: float) -> ProbeResult:
        self.urls.append(url)
        index = len(self.urls) - 1
        if self.script:
            success = self.script[min(index, len(self.script) - 1)]
        elif self.healthy is not None:
            success = self.healthy()
        else:
            success = True

        self.clock.advance(self.duration)
        if self.on_check is not None:
            self.on_check(len(self.urls))

        if success:
            return ProbeResult(
                success=True,
                detail="ok: HTTP 200",
                status_code=200,
                duration_seconds=self.duration,
            )
        return ProbeResult(
            success=False,
            detail="connection_error: ConnectError: connection refused",
            duration_seconds=self.duration,
        )

    async def close(self) -> None:
        pass


def make_target(tag: str = "v1") -> DeploymentTarget:
    """Deployment target for the ``api`` service on port 8080."""
    return DeploymentTarget(
        service_name="api",
        container_name="api",
        image=ImageRef(repository="api", tag=tag),
        ports=(PortBinding(host_port=8080, container_port=3000),),
    )


@pytest.fixture
def health_config() -> HealthConfig:
    """Polling parameters: 10s deadline, 2s interval, 1s request timeout."""
    return HealthConfig(
        timeout_seconds=10.0,
        poll_interval_seconds=2.0,
        request_timeout_seconds=1.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def probe(clock: FakeClock) -> FakeProbe:
    return FakeProbe(clock)


@pytest.fixture
def orchestrator(
    registry: FakeRegistry,
    runtime: FakeRuntime,
    probe: FakeProbe,
    health_config: HealthConfig,
    clock: FakeClock,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        registry=registry,
        runtime=runtime,  # type: ignore[arg-type]
        probe=probe,  # type: ignore[arg-type]
        health_config=health_config,
        log_tail_lines=5,
        clock=clock,
    )


@pytest.fixture
def planner(registry: FakeRegistry, orchestrator: DeploymentOrchestrator) -> RollbackPlanner:
    return RollbackPlanner(registry, orchestrator)


@pytest.fixture(name="make_target")
def make_target_fixture() -> Callable[[str], DeploymentTarget]:
    """Factory building ``api`` deployment targets by tag."""
    return make_target
