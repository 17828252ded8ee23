"""Domain models for health-gated deployments.

This module defines the value types passed between the registry, runtime,
health probe, orchestrator, and rollback planner:

- ImageRef / ImageTag: image references and registry tag records
- DeploymentTarget: immutable description of one service container
- ProbeResult: outcome of a single readiness check
- DeploymentAttempt: lifecycle record of one deploy call
- RollbackPlan / NoPriorImage: results of rollback planning

Example usage:
    >>> from healthgate.models import DeploymentTarget, ImageRef, PortBinding
    >>>
    >>> target = DeploymentTarget(
    ...     service_name="api",
    ...     container_name="api",
    ...     image=ImageRef.parse("registry.local:5000/api:v3"),
    ...     ports=[PortBinding(host_port=8080, container_port=3000)],
    ... )
    >>> target.probe_url()
    'http://localhost:8080/health'
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImageRef(BaseModel):
    """Reference to a container image by repository and tag.

    Attributes:
        repository: Image repository, optionally prefixed with a registry host
        tag: Image tag
    """

    model_config = ConfigDict(frozen=True)

    repository: str = Field(min_length=1, description="Image repository")
    tag: str = Field(default="latest", min_length=1, description="Image tag")

    @classmethod
    def parse(cls, reference: str) -> ImageRef:
        """Parse a ``repository[:tag][@digest]`` string.

        The tag separator is the last colon after the last slash, so registry
        hosts with a port (``host:5000/repo:tag``) parse correctly. A digest
        suffix is dropped when a tag is present; a reference pinned only by
        digest is rejected because it names no tag to roll back from.

        Args:
            reference: Image reference string

        Returns:
            Parsed ImageRef (tag defaults to ``latest``)

        Raises:
            ValueError: If the reference is empty, has an empty component or
                is pinned by digest without a tag
        """
        reference = reference.strip()
        if not reference:
            raise ValueError("Image reference must not be empty")

        name, digest_separator, digest = reference.partition("@")
        if digest_separator and not digest:
            raise ValueError(f"Invalid image reference: '{reference}'")

        name_start = name.rfind("/") + 1
        colon = name.rfind(":")
        if colon >= name_start:
            repository, tag = name[:colon], name[colon + 1 :]
        elif digest_separator:
            raise ValueError(f"Digest reference '{reference}' has no tag")
        else:
            repository, tag = name, "latest"

        if not repository or not tag:
            raise ValueError(f"Invalid image reference: '{reference}'")

        return cls(repository=repository, tag=tag)

    @property
    def reference(self) -> str:
        """Full ``repository:tag`` reference."""
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.reference


class ImageTag(BaseModel):
    """A locally available tagged image.

    Attributes:
        repository: Image repository
        tag: Tag name
        image_id: Image ID the tag points at
        created_at: Image creation timestamp
    """

    model_config = ConfigDict(frozen=True)

    repository: str = Field(description="Image repository")
    tag: str = Field(description="Tag name")
    image_id: str = Field(default="", description="Image ID")
    created_at: datetime = Field(description="Image creation time")

    @property
    def image(self) -> ImageRef:
        """The tag as an ImageRef."""
        return ImageRef(repository=self.repository, tag=self.tag)


class RestartPolicy(str, Enum):
    """Docker restart policy for the service container."""

    NO = "no"
    ALWAYS = "always"
    UNLESS_STOPPED = "unless-stopped"
    ON_FAILURE = "on-failure"


class PortBinding(BaseModel):
    """Host to container port mapping."""

    model_config = ConfigDict(frozen=True)

    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(ge=1, le=65535)
    protocol: str = Field(default="tcp")


class VolumeBinding(BaseModel):
    """Named volume or host path mounted into the container."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    mode: str = Field(default="rw")


class ResourceLimits(BaseModel):
    """Resource and hardening options applied at container start.

    Attributes:
        memory: Memory limit in docker notation (e.g. '512m'), None for unlimited
        cpus: CPU quota in cores, None for unlimited
        read_only: Mount the container root filesystem read-only
        security_opt: Docker security options
        tmpfs: tmpfs mounts (path -> mount options)
    """

    model_config = ConfigDict(frozen=True)

    memory: str | None = Field(default=None)
    cpus: float | None = Field(default=None, gt=0.0)
    read_only: bool = Field(default=False)
    security_opt: tuple[str, ...] = Field(default=())
    tmpfs: dict[str, str] = Field(default_factory=dict)


class DeploymentTarget(BaseModel):
    """Complete description of the container a deployment should produce.

    Targets are frozen: once an attempt starts, its target cannot change.
    Use with_image() to derive a target for a different image.
    """

    model_config = ConfigDict(frozen=True)

    service_name: str = Field(min_length=1, description="Logical service name")
    container_name: str = Field(min_length=1, description="Docker container name")
    image: ImageRef = Field(description="Image to run")
    ports: tuple[PortBinding, ...] = Field(default=(), description="Port mappings")
    environment: dict[str, str] = Field(default_factory=dict, description="Env vars")
    volumes: tuple[VolumeBinding, ...] = Field(default=(), description="Volume mounts")
    restart_policy: RestartPolicy = Field(default=RestartPolicy.UNLESS_STOPPED)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    health_host: str = Field(default="localhost", description="Host used for probing")
    health_path: str = Field(default="/health", description="Readiness endpoint path")
    health_url: str | None = Field(default=None, description="Explicit probe URL")
    build_context: Path | None = Field(default=None, description="Build context dir")
    dockerfile: str = Field(default="Dockerfile", description="Dockerfile name")

    def with_image(self, image: ImageRef) -> DeploymentTarget:
        """Return a copy of this target running a different image."""
        return self.model_copy(update={"image": image})

    def probe_url(self) -> str:
        """Resolve the readiness endpoint URL.

        Returns:
            health_url if set, otherwise http://<health_host>:<first host port><health_path>

        Raises:
            ValueError: If no explicit URL is set and the target publishes no ports
        """
        if self.health_url:
            return self.health_url
        if not self.ports:
            raise ValueError(
                f"Target '{self.container_name}' publishes no ports and has no health_url"
            )
        path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
        return f"http://{self.health_host}:{self.ports[0].host_port}{path}"


class ProbeResult(BaseModel):
    """Result of a single readiness check.

    Attributes:
        success: Whether the endpoint answered with an expected status
        detail: Human-readable detail (``reason: message`` on failure)
        status_code: HTTP status code, None if no response was received
        checked_at: Time the check started
        duration_seconds: Request duration
    """

    success: bool = Field(description="Check passed")
    detail: str = Field(default="", description="Result detail")
    status_code: int | None = Field(default=None, description="HTTP status code")
    checked_at: datetime = Field(default_factory=_utcnow, description="Check time")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Request duration")


class DeploymentOutcome(str, Enum):
    """Lifecycle state of a deployment attempt.

    Attributes:
        PENDING: Attempt is in progress
        HEALTHY: Target became healthy
        FAILED: Attempt reached a terminal failure (see FailureReason)
        ROLLED_BACK: A rollback attempt restored a previous image to health
    """

    PENDING = "pending"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class FailureReason(str, Enum):
    """Terminal failure classification for attempts and releases."""

    IMAGE_UNAVAILABLE = "image_unavailable"
    CONTAINER_START_FAILED = "container_start_failed"
    HEALTH_CHECK_TIMEOUT = "health_check_timeout"
    NO_PRIOR_IMAGE = "no_prior_image"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"


class RollbackPlan(BaseModel):
    """Plan to replace a failed image with the previous one.

    A plan is consumed exactly once by RollbackPlanner.execute_rollback().

    Attributes:
        target: Target of the attempt being rolled back
        from_image: Image being abandoned
        to_image: Previous image to restore
        reason: Why the rollback was planned
    """

    target: DeploymentTarget
    from_image: ImageRef
    to_image: ImageRef
    reason: str = Field(default="")

    _consumed: bool = PrivateAttr(default=False)

    @property
    def consumed(self) -> bool:
        """Whether the plan has already been executed."""
        return self._consumed

    def consume(self) -> None:
        """Mark the plan as executed.

        Raises:
            RuntimeError: If the plan was already consumed
        """
        if self._consumed:
            raise RuntimeError(
                f"Rollback plan {self.from_image} -> {self.to_image} was already executed"
            )
        self._consumed = True


class NoPriorImage(BaseModel):
    """Rollback is impossible: no earlier image exists for the repository."""

    repository: str
    current_tag: str
    reason: str = Field(default="")


class DeploymentAttempt(BaseModel):
    """Record of a single deploy call.

    Created in PENDING state at the start of DeploymentOrchestrator.deploy()
    and moved to a terminal outcome exactly once.
    """

    deployment_id: str = Field(description="Unique attempt identifier")
    target: DeploymentTarget
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = Field(default=None)
    outcome: DeploymentOutcome = Field(default=DeploymentOutcome.PENDING)
    failure_reason: FailureReason | None = Field(default=None)
    cause: FailureReason | None = Field(
        default=None, description="Underlying reason when failure_reason is rollback_failed"
    )
    detail: str = Field(default="")
    health_checks: list[ProbeResult] = Field(default_factory=list)
    container_logs: list[str] = Field(default_factory=list)
    rollback_of: RollbackPlan | None = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.outcome != DeploymentOutcome.PENDING

    @property
    def succeeded(self) -> bool:
        return self.outcome in (DeploymentOutcome.HEALTHY, DeploymentOutcome.ROLLED_BACK)

    @property
    def is_rollback(self) -> bool:
        return self.rollback_of is not None

    def _finish(self, outcome: DeploymentOutcome) -> None:
        if self.is_terminal:
            raise RuntimeError(
                f"Attempt {self.deployment_id} already finished as {self.outcome.value}"
            )
        self.outcome = outcome
        self.finished_at = _utcnow()

    def record_probe(self, result: ProbeResult) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Attempt {self.deployment_id} is already finished")
        self.health_checks.append(result)

    def mark_healthy(self, detail: str = "") -> None:
        self._finish(DeploymentOutcome.HEALTHY)
        self.detail = detail

    def mark_rolled_back(self, detail: str = "") -> None:
        self._finish(DeploymentOutcome.ROLLED_BACK)
        self.detail = detail

    def mark_failed(
        self,
        reason: FailureReason,
        detail: str,
        cause: FailureReason | None = None,
        logs: list[str] | None = None,
    ) -> None:
        self._finish(DeploymentOutcome.FAILED)
        self.failure_reason = reason
        self.cause = cause
        self.detail = detail
        if logs is not None:
            self.container_logs = logs

    def summary(self) -> dict[str, Any]:
        """Compact dict for logging and reports."""
        return {
            "deployment_id": self.deployment_id,
            "image": self.target.image.reference,
            "outcome": self.outcome.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "probes": len(self.health_checks),
            "rollback": self.is_rollback,
        }
