"""Health-gated deployment of a single service container.

DeploymentOrchestrator drives one deployment attempt end to end:

1. Stop and remove whatever container currently holds the target's name
2. Make the target image available locally (local, build, or pull)
3. Start the new container
4. Poll the readiness endpoint until it passes or the deadline expires

Every call produces a DeploymentAttempt with a terminal outcome. Failures are
classified with FailureReason and never raised. Rolling back is not part of
deploy(); callers decide whether to invoke RollbackPlanner.
"""

from __future__ import annotations

import asyncio
import uuid

from healthgate.config import HealthConfig
from healthgate.logging import bind_deployment_context, get_logger
from healthgate.models import (
    DeploymentAttempt,
    DeploymentTarget,
    FailureReason,
    RollbackPlan,
)
from healthgate.pipeline.clock import Clock, SystemClock
from healthgate.pipeline.container import ContainerRuntime
from healthgate.pipeline.health import HealthProbe
from healthgate.pipeline.registry import ImageRegistry


def new_deployment_id() -> str:
    """Short random identifier for a deployment attempt."""
    return uuid.uuid4().hex[:12]


class DeploymentOrchestrator:
    """Replaces a service container and gates the result on readiness.

    Attributes:
        registry: Image registry adapter
        runtime: Container runtime adapter
        probe: HTTP readiness probe
        health_config: Default polling parameters
        log_tail_lines: Container log lines captured on failure
        clock: Time source for the polling loop
    """

    def __init__(
        self,
        registry: ImageRegistry,
        runtime: ContainerRuntime,
        probe: HealthProbe,
        health_config: HealthConfig,
        log_tail_lines: int = 50,
        clock: Clock | None = None,
    ) -> None:
        self.registry = registry
        self.runtime = runtime
        self.probe = probe
        self.health_config = health_config
        self.log_tail_lines = log_tail_lines
        self.clock: Clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def _resolve_timings(
        self,
        timeout: float | None,
        poll_interval: float | None,
        request_timeout: float | None,
    ) -> tuple[float, float, float]:
        timeout = self.health_config.timeout_seconds if timeout is None else timeout
        poll_interval = (
            self.health_config.poll_interval_seconds if poll_interval is None else poll_interval
        )
        request_timeout = (
            self.health_config.request_timeout_seconds
            if request_timeout is None
            else request_timeout
        )

        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        if request_timeout <= 0:
            raise ValueError(f"request_timeout must be positive, got {request_timeout}")
        if request_timeout >= poll_interval:
            raise ValueError(
                f"request_timeout ({request_timeout}) must be smaller than "
                f"poll_interval ({poll_interval})"
            )
        return timeout, poll_interval, request_timeout

    async def deploy(
        self,
        target: DeploymentTarget,
        timeout: float | None = None,
        poll_interval: float | None = None,
        request_timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        rollback_of: RollbackPlan | None = None,
        force_build: bool = False,
    ) -> DeploymentAttempt:
        """Deploy ``target`` and wait for it to become healthy.

        Args:
            target: Container to produce
            timeout: Total readiness deadline in seconds (HealthConfig default)
            poll_interval: Delay between probes in seconds (HealthConfig default)
            request_timeout: Per-probe timeout, must be below poll_interval
            cancel_event: Set to abort polling; the attempt ends as cancelled
            rollback_of: Plan being executed when this is a rollback attempt
            force_build: Rebuild the image even if it exists locally

        Returns:
            Terminal DeploymentAttempt

        Raises:
            ValueError: If the durations are invalid or the target has no
                probe endpoint. Raised before any container is touched.
        """
        timeout, poll_interval, request_timeout = self._resolve_timings(
            timeout, poll_interval, request_timeout
        )
        url = target.probe_url()

        attempt = DeploymentAttempt(
            deployment_id=new_deployment_id(),
            target=target,
            rollback_of=rollback_of,
        )
        bind_deployment_context(attempt.deployment_id, target.container_name)

        self.logger.info(
            "deployment_started",
            service=target.service_name,
            image=target.image.reference,
            probe_url=url,
            timeout_seconds=timeout,
            poll_interval_seconds=poll_interval,
            rollback=attempt.is_rollback,
        )

        if cancel_event is not None and cancel_event.is_set():
            self._cancel(attempt, "Cancelled before the existing container was touched")
            return attempt

        # Step 1: free the container name
        for action in (self.runtime.stop, self.runtime.remove):
            result = await action(target.container_name)
            if not result.success:
                self._fail(
                    attempt,
                    FailureReason.CONTAINER_START_FAILED,
                    f"Could not {result.action} existing container "
                    f"'{target.container_name}': {result.error}",
                )
                return attempt

        # Step 2: make the image available
        resolution = await self.registry.ensure_image(
            target.image,
            build_context=target.build_context,
            dockerfile=target.dockerfile,
            force_build=force_build,
        )
        if not resolution.success:
            self._fail(
                attempt,
                FailureReason.IMAGE_UNAVAILABLE,
                f"Image {target.image.reference} unavailable: {resolution.error}",
                logs=resolution.build_log[-self.log_tail_lines :] if self.log_tail_lines else [],
            )
            return attempt

        self.logger.info(
            "deployment_image_resolved",
            image=target.image.reference,
            source=resolution.source.value if resolution.source else None,
        )

        if cancel_event is not None and cancel_event.is_set():
            self._cancel(attempt, "Cancelled before the container was started")
            return attempt

        # Step 3: start the candidate
        started = await self.runtime.start(target)
        if not started.success:
            logs = await self.runtime.logs(target.container_name, self.log_tail_lines)
            self._fail(
                attempt,
                FailureReason.CONTAINER_START_FAILED,
                f"Container '{target.container_name}' failed to start: {started.error}",
                logs=logs,
            )
            return attempt

        # Step 4: bounded readiness polling
        await self._poll(attempt, url, timeout, poll_interval, request_timeout, cancel_event)
        return attempt

    async def _poll(
        self,
        attempt: DeploymentAttempt,
        url: str,
        timeout: float,
        poll_interval: float,
        request_timeout: float,
        cancel_event: asyncio.Event | None,
    ) -> None:
        name = attempt.target.container_name
        start = self.clock.monotonic()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self._cancel(attempt)
                return

            result = await self.probe.check(url, request_timeout)
            attempt.record_probe(result)
            elapsed = self.clock.monotonic() - start

            if result.success:
                detail = f"Healthy after {len(attempt.health_checks)} probe(s) in {elapsed:.1f}s"
                if attempt.is_rollback:
                    attempt.mark_rolled_back(detail)
                else:
                    attempt.mark_healthy(detail)
                self.logger.info(
                    "deployment_healthy",
                    image=attempt.target.image.reference,
                    probes=len(attempt.health_checks),
                    elapsed_seconds=round(elapsed, 2),
                    outcome=attempt.outcome.value,
                )
                return

            self.logger.info(
                "health_probe_failed",
                probe=len(attempt.health_checks),
                detail=result.detail,
                elapsed_seconds=round(elapsed, 2),
            )

            if elapsed >= timeout:
                logs = await self.runtime.logs(name, self.log_tail_lines)
                self._fail(
                    attempt,
                    FailureReason.HEALTH_CHECK_TIMEOUT,
                    f"Not healthy within {timeout}s after {len(attempt.health_checks)} "
                    f"probe(s); last: {result.detail}",
                    logs=logs,
                )
                return

            remaining = timeout - elapsed
            cancelled = await self.clock.sleep(min(poll_interval, remaining), cancel_event)
            if cancelled:
                self._cancel(attempt)
                return

    def _cancel(self, attempt: DeploymentAttempt, detail: str | None = None) -> None:
        # A started container is left as the runtime reports it
        self._fail(
            attempt,
            FailureReason.CANCELLED,
            detail or f"Cancelled after {len(attempt.health_checks)} probe(s)",
        )

    def _fail(
        self,
        attempt: DeploymentAttempt,
        reason: FailureReason,
        detail: str,
        logs: list[str] | None = None,
    ) -> None:
        """Move the attempt to FAILED, reclassifying failed rollbacks."""
        if attempt.is_rollback and reason != FailureReason.CANCELLED:
            attempt.mark_failed(
                FailureReason.ROLLBACK_FAILED,
                f"Rollback to {attempt.target.image.reference} failed: {detail}",
                cause=reason,
                logs=logs,
            )
            self.logger.critical(
                "rollback_failed_manual_intervention_required",
                image=attempt.target.image.reference,
                cause=reason.value,
                detail=detail,
            )
            return

        attempt.mark_failed(reason, detail, logs=logs)
        self.logger.error(
            "deployment_failed",
            image=attempt.target.image.reference,
            reason=reason.value,
            detail=detail,
            probes=len(attempt.health_checks),
            log_lines=len(attempt.container_logs),
        )
