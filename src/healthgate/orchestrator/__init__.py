"""Orchestration layer for Healthgate.

This module implements the health-gated deployment sequence, rollback
planning and execution, and the deploy-then-rollback release flow with its
post-deployment steps and JSON reports.
"""

from __future__ import annotations

from healthgate.orchestrator.deployer import DeploymentOrchestrator
from healthgate.orchestrator.postdeploy import SmokeCheck, apply_retention, run_smoke_check
from healthgate.orchestrator.release import ReleaseResult, release
from healthgate.orchestrator.report import build_report, write_report
from healthgate.orchestrator.rollback import RollbackPlanner

__all__ = [
    # Deployment
    "DeploymentOrchestrator",
    # Rollback
    "RollbackPlanner",
    # Post-deployment
    "SmokeCheck",
    "apply_retention",
    "run_smoke_check",
    # Release flow
    "ReleaseResult",
    "release",
    # Reports
    "build_report",
    "write_report",
]
