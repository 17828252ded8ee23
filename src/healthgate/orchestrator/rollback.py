"""Rollback planning and execution.

RollbackPlanner picks the image to return to after a failed deployment and
replays the deployment sequence against it exactly once. A rollback that
itself fails is terminal: there is no second-level rollback.
"""

from __future__ import annotations

import asyncio

from healthgate.logging import get_logger
from healthgate.models import DeploymentAttempt, DeploymentTarget, NoPriorImage, RollbackPlan
from healthgate.orchestrator.deployer import DeploymentOrchestrator
from healthgate.pipeline.registry import ImageRegistry


class RollbackPlanner:
    """Selects the previous image and executes single-level rollbacks.

    Attributes:
        registry: Image registry used to find earlier tags
        orchestrator: Orchestrator that performs the rollback deployment
    """

    def __init__(self, registry: ImageRegistry, orchestrator: DeploymentOrchestrator) -> None:
        self.registry = registry
        self.orchestrator = orchestrator
        self.logger = get_logger(__name__)

    async def plan_rollback(
        self, target: DeploymentTarget, reason: str = ""
    ) -> RollbackPlan | NoPriorImage:
        """Plan a rollback away from ``target.image``.

        The candidate is the next older local tag of the same repository that
        is not an alias of the failed image. Newer images are never chosen.

        Args:
            target: Target of the failed (or operator-rejected) deployment
            reason: Why the rollback is being planned

        Returns:
            RollbackPlan, or NoPriorImage when no earlier image exists
        """
        repository = target.image.repository
        previous = await self.registry.previous(repository, target.image.tag)

        if previous is None:
            self.logger.warning(
                "rollback_impossible",
                repository=repository,
                current_tag=target.image.tag,
                reason=reason,
            )
            return NoPriorImage(
                repository=repository,
                current_tag=target.image.tag,
                reason=f"No image of {repository} older than {target.image.tag} is available",
            )

        plan = RollbackPlan(
            target=target,
            from_image=target.image,
            to_image=previous.image,
            reason=reason,
        )
        self.logger.info(
            "rollback_planned",
            from_image=plan.from_image.reference,
            to_image=plan.to_image.reference,
            reason=reason,
        )
        return plan

    async def execute_rollback(
        self,
        plan: RollbackPlan,
        timeout: float | None = None,
        poll_interval: float | None = None,
        request_timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DeploymentAttempt:
        """Deploy the plan's previous image once.

        Returns:
            The rollback attempt: ROLLED_BACK on success, otherwise FAILED
            with reason rollback_failed (or cancelled)

        Raises:
            RuntimeError: If the plan was already executed
        """
        plan.consume()
        self.logger.info(
            "rollback_started",
            from_image=plan.from_image.reference,
            to_image=plan.to_image.reference,
        )
        return await self.orchestrator.deploy(
            plan.target.with_image(plan.to_image),
            timeout=timeout,
            poll_interval=poll_interval,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
            rollback_of=plan,
        )
