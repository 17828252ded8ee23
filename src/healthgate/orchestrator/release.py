"""Deploy-then-rollback release flow.

release() is the caller-side policy around DeploymentOrchestrator: deploy
the requested image and, when that fails for any reason other than
cancellation, plan and execute one rollback to the previous image. Once a
release ends with a healthy container, an optional smoke check and image
retention run against it.
"""

from __future__ import annotations

import asyncio

from pydantic import BaseModel, Field

from healthgate.logging import get_logger
from healthgate.models import (
    DeploymentAttempt,
    DeploymentOutcome,
    DeploymentTarget,
    FailureReason,
    NoPriorImage,
    RollbackPlan,
)
from healthgate.orchestrator.deployer import DeploymentOrchestrator
from healthgate.orchestrator.postdeploy import SmokeCheck, apply_retention, run_smoke_check
from healthgate.orchestrator.rollback import RollbackPlanner

logger = get_logger(__name__)

EXIT_HEALTHY = 0
EXIT_FAILED = 1
EXIT_ROLLED_BACK = 2
EXIT_INTERRUPTED = 130


class ReleaseResult(BaseModel):
    """Aggregate result of a release.

    Attributes:
        attempts: Deployment attempts in order (requested image first)
        rollback_plan: Plan executed after the first attempt failed
        no_prior_image: Set when a rollback was wanted but impossible
        smoke_check: Post-deployment sample of the healthy container
        removed_images: Tags removed by image retention
    """

    attempts: list[DeploymentAttempt] = Field(default_factory=list)
    rollback_plan: RollbackPlan | None = Field(default=None)
    no_prior_image: NoPriorImage | None = Field(default=None)
    smoke_check: SmokeCheck | None = Field(default=None)
    removed_images: list[str] = Field(default_factory=list)

    @property
    def primary(self) -> DeploymentAttempt:
        return self.attempts[0]

    @property
    def final(self) -> DeploymentAttempt:
        return self.attempts[-1]

    @property
    def outcome(self) -> DeploymentOutcome:
        return self.final.outcome

    @property
    def failure_reason(self) -> FailureReason | None:
        """Reason the release did not end healthy, if it did not."""
        if self.no_prior_image is not None:
            return FailureReason.NO_PRIOR_IMAGE
        return self.final.failure_reason

    @property
    def exit_code(self) -> int:
        """Process exit code for the CLI.

        0 when the requested image is healthy, 2 when a rollback restored
        service, 130 when interrupted, 1 for every other failure.
        """
        if self.final.outcome == DeploymentOutcome.HEALTHY:
            return EXIT_HEALTHY
        if self.final.outcome == DeploymentOutcome.ROLLED_BACK:
            return EXIT_ROLLED_BACK
        if self.final.failure_reason == FailureReason.CANCELLED:
            return EXIT_INTERRUPTED
        return EXIT_FAILED


async def _after_healthy(
    result: ReleaseResult,
    orchestrator: DeploymentOrchestrator,
    request_timeout: float | None,
    smoke_budget: float | None,
    keep_images: int,
) -> None:
    target = result.final.target
    if smoke_budget is not None:
        result.smoke_check = await run_smoke_check(
            orchestrator.runtime,
            orchestrator.probe,
            target,
            budget_seconds=smoke_budget,
            request_timeout=(
                orchestrator.health_config.request_timeout_seconds
                if request_timeout is None
                else request_timeout
            ),
        )
    if keep_images > 0:
        result.removed_images = await apply_retention(
            orchestrator.registry, target, keep=keep_images
        )


async def release(
    orchestrator: DeploymentOrchestrator,
    planner: RollbackPlanner,
    target: DeploymentTarget,
    rollback_on_failure: bool = True,
    timeout: float | None = None,
    poll_interval: float | None = None,
    request_timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    force_build: bool = False,
    smoke_budget: float | None = None,
    keep_images: int = 0,
) -> ReleaseResult:
    """Deploy ``target`` and roll back once if it fails.

    Args:
        orchestrator: Orchestrator performing the deployments
        planner: Rollback planner
        target: Requested deployment
        rollback_on_failure: Plan and execute a rollback when the deploy fails
        timeout: Readiness deadline for each attempt
        poll_interval: Delay between probes
        request_timeout: Per-probe timeout
        cancel_event: Cancellation signal shared by both attempts
        force_build: Rebuild the requested image even if it exists locally
        smoke_budget: Response time budget for the smoke check (None skips it)
        keep_images: Local images to retain after success (0 keeps all)

    Returns:
        ReleaseResult with one or two attempts
    """
    attempt = await orchestrator.deploy(
        target,
        timeout=timeout,
        poll_interval=poll_interval,
        request_timeout=request_timeout,
        cancel_event=cancel_event,
        force_build=force_build,
    )
    result = ReleaseResult(attempts=[attempt])

    if attempt.succeeded:
        await _after_healthy(result, orchestrator, request_timeout, smoke_budget, keep_images)
        return result
    if not rollback_on_failure:
        return result
    if attempt.failure_reason == FailureReason.CANCELLED:
        logger.warning("release_cancelled", image=target.image.reference)
        return result

    reason = f"{attempt.failure_reason.value}: {attempt.detail}" if attempt.failure_reason else ""
    plan = await planner.plan_rollback(target, reason=reason)
    if isinstance(plan, NoPriorImage):
        result.no_prior_image = plan
        logger.error(
            "release_failed_no_prior_image",
            image=target.image.reference,
            reason=plan.reason,
        )
        return result

    result.rollback_plan = plan
    rollback_attempt = await planner.execute_rollback(
        plan,
        timeout=timeout,
        poll_interval=poll_interval,
        request_timeout=request_timeout,
        cancel_event=cancel_event,
    )
    result.attempts.append(rollback_attempt)

    if rollback_attempt.succeeded:
        await _after_healthy(result, orchestrator, request_timeout, smoke_budget, keep_images)

    logger.info(
        "release_finished",
        requested_image=target.image.reference,
        running_image=plan.to_image.reference,
        outcome=rollback_attempt.outcome.value,
        failure_reason=result.failure_reason.value if result.failure_reason else None,
    )
    return result
