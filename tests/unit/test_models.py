"""Unit tests for deployment domain models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from healthgate.models import (
    DeploymentAttempt,
    DeploymentOutcome,
    DeploymentTarget,
    FailureReason,
    ImageRef,
    PortBinding,
    ProbeResult,
    RollbackPlan,
)


class TestImageRef:
    """Test image reference parsing."""

    @pytest.mark.parametrize(
        ("reference", "repository", "tag"),
        [
            ("api:v3", "api", "v3"),
            ("api", "api", "latest"),
            ("org/api:1.2.0", "org/api", "1.2.0"),
            ("registry.local:5000/api", "registry.local:5000/api", "latest"),
            ("registry.local:5000/team/api:v2", "registry.local:5000/team/api", "v2"),
            ("api:v2@sha256:4f1c9a", "api", "v2"),
            ("registry.local:5000/api:v2@sha256:4f1c9a", "registry.local:5000/api", "v2"),
        ],
    )
    def test_parse(self, reference: str, repository: str, tag: str) -> None:
        """Test repository and tag are split at the last colon of the name."""
        image = ImageRef.parse(reference)
        assert image.repository == repository
        assert image.tag == tag

    @pytest.mark.parametrize("reference", ["", "   ", "api:", ":v1"])
    def test_parse_invalid(self, reference: str) -> None:
        """Test empty references and empty components are rejected."""
        with pytest.raises(ValueError):
            ImageRef.parse(reference)

    @pytest.mark.parametrize(
        "reference",
        ["api@sha256:4f1c9a", "registry.local:5000/api@sha256:4f1c9a", "api:v2@"],
    )
    def test_parse_digest_without_tag(self, reference: str) -> None:
        """Test a reference pinned only by digest is rejected, not misread."""
        with pytest.raises(ValueError):
            ImageRef.parse(reference)

    def test_reference_and_str(self) -> None:
        """Test the full reference string."""
        image = ImageRef(repository="api", tag="v3")
        assert image.reference == "api:v3"
        assert str(image) == "api:v3"

    def test_frozen(self) -> None:
        """Test image references are immutable."""
        image = ImageRef(repository="api", tag="v3")
        with pytest.raises(ValidationError):
            image.tag = "v4"  # type: ignore[misc]


class TestDeploymentTarget:
    """Test DeploymentTarget helpers."""

    def _target(self, **overrides) -> DeploymentTarget:
        values = {
            "service_name": "api",
            "container_name": "api-blue",
            "image": ImageRef(repository="api", tag="v1"),
            "ports": (PortBinding(host_port=9090, container_port=3000),),
        }
        values.update(overrides)
        return DeploymentTarget(**values)

    def test_default_probe_url(self) -> None:
        """Test the probe URL uses the first published host port."""
        assert self._target().probe_url() == "http://localhost:9090/health"

    def test_custom_health_path(self) -> None:
        """Test a path without a leading slash is normalized."""
        target = self._target(health_host="127.0.0.1", health_path="ready")
        assert target.probe_url() == "http://127.0.0.1:9090/ready"

    def test_explicit_health_url(self) -> None:
        """Test an explicit URL wins over host and port."""
        target = self._target(health_url="https://api.internal/status", ports=())
        assert target.probe_url() == "https://api.internal/status"

    def test_no_ports_no_url(self) -> None:
        """Test a target without a probe endpoint is rejected."""
        with pytest.raises(ValueError):
            self._target(ports=()).probe_url()

    def test_with_image(self) -> None:
        """Test with_image returns a copy and leaves the original unchanged."""
        target = self._target()
        other = target.with_image(ImageRef(repository="api", tag="v2"))

        assert other.image.tag == "v2"
        assert target.image.tag == "v1"
        assert other.container_name == target.container_name
        assert other.ports == target.ports

    def test_frozen(self) -> None:
        """Test targets cannot be mutated."""
        target = self._target()
        with pytest.raises(ValidationError):
            target.container_name = "other"  # type: ignore[misc]


class TestDeploymentAttempt:
    """Test attempt lifecycle transitions."""

    def _attempt(self) -> DeploymentAttempt:
        return DeploymentAttempt(
            deployment_id="abc123",
            target=DeploymentTarget(
                service_name="api",
                container_name="api",
                image=ImageRef(repository="api", tag="v1"),
            ),
        )

    def test_initial_state(self) -> None:
        """Test a new attempt is pending with no history."""
        attempt = self._attempt()
        assert attempt.outcome == DeploymentOutcome.PENDING
        assert attempt.is_terminal is False
        assert attempt.finished_at is None
        assert attempt.health_checks == []

    def test_mark_healthy(self) -> None:
        """Test the healthy transition."""
        attempt = self._attempt()
        attempt.record_probe(ProbeResult(success=True, detail="ok: HTTP 200", status_code=200))
        attempt.mark_healthy("ready")

        assert attempt.outcome == DeploymentOutcome.HEALTHY
        assert attempt.succeeded is True
        assert attempt.finished_at is not None
        assert attempt.detail == "ready"

    def test_mark_failed(self) -> None:
        """Test the failed transition keeps reason, cause and logs."""
        attempt = self._attempt()
        attempt.mark_failed(
            FailureReason.ROLLBACK_FAILED,
            "still failing",
            cause=FailureReason.CONTAINER_START_FAILED,
            logs=["boom"],
        )

        assert attempt.outcome == DeploymentOutcome.FAILED
        assert attempt.succeeded is False
        assert attempt.failure_reason == FailureReason.ROLLBACK_FAILED
        assert attempt.cause == FailureReason.CONTAINER_START_FAILED
        assert attempt.container_logs == ["boom"]

    def test_second_transition_raises(self) -> None:
        """Test a terminal attempt cannot change outcome."""
        attempt = self._attempt()
        attempt.mark_healthy()

        with pytest.raises(RuntimeError):
            attempt.mark_failed(FailureReason.CANCELLED, "late")
        with pytest.raises(RuntimeError):
            attempt.mark_rolled_back()
        assert attempt.outcome == DeploymentOutcome.HEALTHY

    def test_record_after_finish_raises(self) -> None:
        """Test probes cannot be recorded on a finished attempt."""
        attempt = self._attempt()
        attempt.mark_failed(FailureReason.CANCELLED, "cancelled")

        with pytest.raises(RuntimeError):
            attempt.record_probe(ProbeResult(success=True))

    def test_summary(self) -> None:
        """Test the compact summary dict."""
        attempt = self._attempt()
        attempt.mark_failed(FailureReason.HEALTH_CHECK_TIMEOUT, "timeout")

        assert attempt.summary() == {
            "deployment_id": "abc123",
            "image": "api:v1",
            "outcome": "failed",
            "failure_reason": "health_check_timeout",
            "probes": 0,
            "rollback": False,
        }


class TestRollbackPlan:
    """Test single-use rollback plans."""

    def test_consume_once(self) -> None:
        """Test consuming a plan twice raises."""
        target = DeploymentTarget(
            service_name="api",
            container_name="api",
            image=ImageRef(repository="api", tag="v3"),
        )
        plan = RollbackPlan(
            target=target,
            from_image=target.image,
            to_image=ImageRef(repository="api", tag="v2"),
        )

        plan.consume()
        assert plan.consumed is True
        with pytest.raises(RuntimeError):
            plan.consume()
