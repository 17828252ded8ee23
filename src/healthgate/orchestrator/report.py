"""JSON deployment reports.

One report is written per release into the configured report directory as
``deployment-report-<deployment_id>.json``, named after the first attempt.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from healthgate.logging import get_logger
from healthgate.models import DeploymentAttempt
from healthgate.orchestrator.release import ReleaseResult

logger = get_logger(__name__)


def _attempt_entry(attempt: DeploymentAttempt) -> dict[str, Any]:
    return {
        "deployment_id": attempt.deployment_id,
        "image": attempt.target.image.reference,
        "rollback": attempt.is_rollback,
        "outcome": attempt.outcome.value,
        "failure_reason": attempt.failure_reason.value if attempt.failure_reason else None,
        "cause": attempt.cause.value if attempt.cause else None,
        "detail": attempt.detail,
        "started_at": attempt.started_at.isoformat(),
        "finished_at": attempt.finished_at.isoformat() if attempt.finished_at else None,
        "health_checks": [
            check.model_dump(mode="json") for check in attempt.health_checks
        ],
        "container_logs": list(attempt.container_logs),
    }


def build_report(result: ReleaseResult) -> dict[str, Any]:
    """Serializable summary of a release."""
    primary = result.primary
    target = primary.target
    return {
        "deployment_id": primary.deployment_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": target.service_name,
        "container": target.container_name,
        "requested_image": target.image.reference,
        "running_image": result.final.target.image.reference if result.final.succeeded else None,
        "status": result.outcome.value,
        "failure_reason": result.failure_reason.value if result.failure_reason else None,
        "exit_code": result.exit_code,
        "rollback": (
            {
                "from_image": result.rollback_plan.from_image.reference,
                "to_image": result.rollback_plan.to_image.reference,
                "reason": result.rollback_plan.reason,
            }
            if result.rollback_plan is not None
            else None
        ),
        "no_prior_image": (
            result.no_prior_image.model_dump(mode="json")
            if result.no_prior_image is not None
            else None
        ),
        "smoke_check": (
            {
                **result.smoke_check.model_dump(mode="json"),
                "within_budget": result.smoke_check.within_budget,
            }
            if result.smoke_check is not None
            else None
        ),
        "removed_images": list(result.removed_images),
        "attempts": [_attempt_entry(attempt) for attempt in result.attempts],
    }


def write_report(result: ReleaseResult, report_dir: Path) -> Path:
    """Write the release report and return its path.

    Raises:
        OSError: If the directory cannot be created or the file written
    """
    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / f"deployment-report-{result.primary.deployment_id}.json"
    path.write_text(json.dumps(build_report(result), indent=2), encoding="utf-8")
    logger.info("deployment_report_written", path=str(path))
    return path
