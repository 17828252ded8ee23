"""Steps run after a release ends with a healthy container.

run_smoke_check() samples the service once more, comparing the readiness
endpoint's response time against a budget and recording the container's
resource usage. apply_retention() trims old local images of the repository
while keeping the running image and the image a rollback would return to.

Neither step changes the release outcome; their results are attached to the
ReleaseResult and the deployment report.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from healthgate.logging import get_logger
from healthgate.models import DeploymentTarget
from healthgate.pipeline.container import ContainerRuntime, ContainerStats
from healthgate.pipeline.health import HealthProbe
from healthgate.pipeline.registry import ImageRegistry

logger = get_logger(__name__)


class SmokeCheck(BaseModel):
    """Post-deployment sample of a healthy container.

    Attributes:
        success: Whether the readiness endpoint answered as expected
        detail: Probe detail
        response_time_seconds: Duration of the readiness request
        budget_seconds: Response time budget
        stats: Resource usage sample, None if unavailable
    """

    success: bool = Field(description="Endpoint answered as expected")
    detail: str = Field(default="", description="Probe detail")
    response_time_seconds: float = Field(default=0.0, ge=0.0)
    budget_seconds: float = Field(gt=0)
    stats: ContainerStats | None = Field(default=None)

    @property
    def within_budget(self) -> bool:
        return self.success and self.response_time_seconds <= self.budget_seconds


async def run_smoke_check(
    runtime: ContainerRuntime,
    probe: HealthProbe,
    target: DeploymentTarget,
    budget_seconds: float,
    request_timeout: float,
) -> SmokeCheck:
    """Probe the running target once and sample its resource usage.

    Args:
        runtime: Container runtime adapter
        probe: Readiness probe
        target: Deployment that is now running
        budget_seconds: Acceptable response time
        request_timeout: Timeout for the readiness request

    Returns:
        SmokeCheck; a slow or failing sample is logged, not raised
    """
    result = await probe.check(target.probe_url(), request_timeout)
    stats = await runtime.stats(target.container_name)
    check = SmokeCheck(
        success=result.success,
        detail=result.detail,
        response_time_seconds=result.duration_seconds,
        budget_seconds=budget_seconds,
        stats=stats,
    )

    fields = {
        "image": target.image.reference,
        "success": check.success,
        "detail": check.detail,
        "response_time_seconds": round(check.response_time_seconds, 3),
        "budget_seconds": budget_seconds,
        "cpu_percent": stats.cpu_percent if stats else None,
        "memory_usage_bytes": stats.memory_usage_bytes if stats else None,
    }
    if check.within_budget:
        logger.info("smoke_check_passed", **fields)
    else:
        logger.warning("smoke_check_degraded", **fields)
    return check


async def apply_retention(
    registry: ImageRegistry,
    target: DeploymentTarget,
    keep: int,
) -> list[str]:
    """Remove local images of the target's repository beyond ``keep``.

    The running tag and the tag a rollback from it would select are always
    kept.

    Returns:
        References of the removed tags
    """
    repository = target.image.repository
    protect = {target.image.tag}
    candidate = await registry.previous(repository, target.image.tag)
    if candidate is not None:
        protect.add(candidate.tag)

    removed = await registry.prune(repository, keep=keep, protect=protect)
    return [record.image.reference for record in removed]
