"""Integration tests for local image queries and image acquisition.

Tests ImageRegistry against a mocked docker-py client: tag listing order,
previous-image selection, tag removal and retention, and the
local/build/pull resolution chain.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, BuildError, DockerException, ImageNotFound

from healthgate.config import DockerConfig
from healthgate.models import ImageRef
from healthgate.pipeline.registry import (
    ImageRegistry,
    ImageSource,
    parse_created,
)


@pytest.fixture(autouse=True)
def no_docker_host(monkeypatch: pytest.MonkeyPatch) -> None:
    """Force the client through DockerClient.from_env."""
    monkeypatch.delenv("DOCKER_HOST", raising=False)


@pytest.fixture
def docker_config() -> DockerConfig:
    """Create a test Docker configuration."""
    return DockerConfig(build_timeout_seconds=300)


@pytest.fixture
def mock_docker_client() -> MagicMock:
    """Create a mock Docker client."""
    return MagicMock()


def _image(image_id: str, tags: list[str], created: str) -> MagicMock:
    image = MagicMock()
    image.id = image_id
    image.tags = tags
    image.attrs = {"Created": created}
    return image


@pytest.fixture
def api_images() -> list[MagicMock]:
    """Three api images; v3 is also tagged latest."""
    return [
        _image("sha256:111", ["api:v1"], "2026-03-01T10:00:00.123456789Z"),
        _image("sha256:333", ["api:v3", "api:latest"], "2026-03-01T12:00:00.5Z"),
        _image("sha256:222", ["api:v2", "api-worker:v2"], "2026-03-01T11:00:00Z"),
    ]


class TestParseCreated:
    """Test Docker timestamp parsing."""

    def test_nanosecond_precision(self) -> None:
        """Test nanoseconds are truncated to microseconds."""
        parsed = parse_created("2026-03-01T10:00:00.123456789Z")
        assert parsed == datetime(2026, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_short_fraction_and_offset(self) -> None:
        """Test short fractions and explicit offsets."""
        parsed = parse_created("2026-03-01T10:00:00.5+02:00")
        assert parsed.microsecond == 500000
        assert parsed.utcoffset().total_seconds() == 7200

    def test_epoch_seconds(self) -> None:
        """Test numeric timestamps from older API versions."""
        assert parse_created(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_unparseable(self, value: object) -> None:
        """Test garbage sorts as the epoch."""
        assert parse_created(value) == datetime(1970, 1, 1, tzinfo=timezone.utc)


class TestListTags:
    """Test tag listing."""

    @pytest.mark.asyncio
    async def test_newest_first_and_filtered(
        self,
        docker_config: DockerConfig,
        mock_docker_client: MagicMock,
        api_images: list[MagicMock],
    ) -> None:
        """Test tags are sorted newest first with name tie-breaks."""
        mock_docker_client.images.list.return_value = api_images
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            tags = await registry.list_tags("api")

        assert [record.tag for record in tags] == ["v3", "latest", "v2", "v1"]
        assert all(record.repository == "api" for record in tags)
        assert tags[0].image_id == tags[1].image_id == "sha256:333"
        mock_docker_client.images.list.assert_called_once_with(name="api")

    @pytest.mark.asyncio
    async def test_docker_failure_is_empty(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test a daemon error yields no tags."""
        mock_docker_client.images.list.side_effect = APIError("daemon error")
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            assert await registry.list_tags("api") == []

    @pytest.mark.asyncio
    async def test_latest_and_previous(
        self,
        docker_config: DockerConfig,
        mock_docker_client: MagicMock,
        api_images: list[MagicMock],
    ) -> None:
        """Test previous takes the next older image, skipping aliases."""
        mock_docker_client.images.list.return_value = api_images
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            latest = await registry.latest("api")
            previous = await registry.previous("api", "v3")
            from_latest = await registry.previous("api", "latest")
            from_v2 = await registry.previous("api", "v2")
            from_v1 = await registry.previous("api", "v1")
            none_left = await registry.previous("api-worker", "v2")

        assert latest is not None and latest.tag == "v3"
        assert previous is not None and previous.tag == "v2"
        assert from_latest is not None and from_latest.tag == "v2"
        assert from_v2 is not None and from_v2.tag == "v1"
        assert from_v1 is None
        assert none_left is None


class TestEnsureImage:
    """Test the local/build/pull resolution chain."""

    @pytest.mark.asyncio
    async def test_local_image(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test an image already present is used as is."""
        mock_docker_client.images.get.return_value = _image(
            "sha256:333", ["api:v3"], "2026-03-01T12:00:00Z"
        )
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            result = await registry.ensure_image(ImageRef.parse("api:v3"))

        assert result.success is True
        assert result.source == ImageSource.LOCAL
        assert result.image_id == "sha256:333"
        mock_docker_client.images.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_pull_missing_image(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test a missing image without build context is pulled."""
        mock_docker_client.images.get.side_effect = ImageNotFound("missing")
        mock_docker_client.images.pull.return_value = _image(
            "sha256:444", ["registry.local:5000/api:v4"], "2026-03-01T13:00:00Z"
        )
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            result = await registry.ensure_image(ImageRef.parse("registry.local:5000/api:v4"))

        assert result.success is True
        assert result.source == ImageSource.PULLED
        mock_docker_client.images.pull.assert_called_once_with(
            "registry.local:5000/api", tag="v4"
        )

    @pytest.mark.asyncio
    async def test_pull_not_found(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test an image that exists nowhere is reported."""
        mock_docker_client.images.get.side_effect = ImageNotFound("missing")
        mock_docker_client.images.pull.side_effect = ImageNotFound("manifest unknown")
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            result = await registry.ensure_image(ImageRef.parse("api:v9"))

        assert result.success is False
        assert result.source is None
        assert result.error == "Image not found: api:v9"

    @pytest.mark.asyncio
    async def test_build_from_context(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock, tmp_path: Path
    ) -> None:
        """Test a missing image is built when a context is configured."""
        (tmp_path / "Dockerfile").write_text("FROM node:20-alpine\n")
        mock_docker_client.images.get.side_effect = ImageNotFound("missing")
        mock_docker_client.images.build.return_value = (
            _image("sha256:555", ["api:v5"], "2026-03-01T14:00:00Z"),
            [{"stream": "Step 1/1 : FROM node:20-alpine\n"}, {"aux": {"ID": "sha256:555"}}],
        )
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            result = await registry.ensure_image(ImageRef.parse("api:v5"), build_context=tmp_path)

        assert result.success is True
        assert result.source == ImageSource.BUILT
        assert result.build_log == ["Step 1/1 : FROM node:20-alpine"]
        mock_docker_client.images.build.assert_called_once_with(
            path=str(tmp_path),
            dockerfile="Dockerfile",
            tag="api:v5",
            rm=True,
            timeout=300,
        )

    @pytest.mark.asyncio
    async def test_force_build_skips_local(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock, tmp_path: Path
    ) -> None:
        """Test force_build rebuilds even when the image exists."""
        (tmp_path / "Dockerfile").write_text("FROM node:20-alpine\n")
        mock_docker_client.images.build.return_value = (
            _image("sha256:556", ["api:v5"], "2026-03-01T14:00:00Z"),
            [],
        )
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            result = await registry.ensure_image(
                ImageRef.parse("api:v5"), build_context=tmp_path, force_build=True
            )

        assert result.source == ImageSource.BUILT
        mock_docker_client.images.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_force_build_without_context(self, docker_config: DockerConfig) -> None:
        """Test force_build with nothing to build from fails."""
        registry = ImageRegistry(docker_config)

        result = await registry.ensure_image(ImageRef.parse("api:v5"), force_build=True)

        assert result.success is False
        assert "no build context" in result.error

    @pytest.mark.asyncio
    async def test_build_error_keeps_log(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock, tmp_path: Path
    ) -> None:
        """Test a failed build reports its log."""
        (tmp_path / "Dockerfile").write_text("FROM node:20-alpine\nRUN false\n")
        mock_docker_client.images.get.side_effect = ImageNotFound("missing")
        mock_docker_client.images.build.side_effect = BuildError(
            "The command '/bin/sh -c false' returned a non-zero code: 1",
            [{"stream": "Step 2/2 : RUN false\n"}, {"error": "returned a non-zero code: 1"}],
        )
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            result = await registry.ensure_image(ImageRef.parse("api:v6"), build_context=tmp_path)

        assert result.success is False
        assert result.build_log == ["Step 2/2 : RUN false", "returned a non-zero code: 1"]
        assert "non-zero code" in result.error

    @pytest.mark.asyncio
    async def test_missing_dockerfile(self, docker_config: DockerConfig, tmp_path: Path) -> None:
        """Test a context without a Dockerfile is rejected before building."""
        registry = ImageRegistry(docker_config)

        result = await registry.build_image(ImageRef.parse("api:v7"), tmp_path)

        assert result.success is False
        assert "Dockerfile not found" in result.error

    @pytest.mark.asyncio
    async def test_daemon_unreachable(self, docker_config: DockerConfig) -> None:
        """Test connection failures are reported, not raised."""
        registry = ImageRegistry(docker_config)

        with patch(
            "docker.DockerClient.from_env",
            side_effect=DockerException("Error while fetching server API version"),
        ):
            result = await registry.ensure_image(ImageRef.parse("api:v1"))

        assert result.success is False
        assert "server API version" in result.error


class TestRetention:
    """Test tag removal and retention."""

    @pytest.mark.asyncio
    async def test_remove_image(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test a tag is removed through the images API."""
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            removed = await registry.remove_image(ImageRef.parse("api:v1"))

        assert removed is True
        mock_docker_client.images.remove.assert_called_once_with(image="api:v1")

    @pytest.mark.asyncio
    async def test_remove_missing_image(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test an already missing tag counts as removed."""
        mock_docker_client.images.remove.side_effect = ImageNotFound("No such image")
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            assert await registry.remove_image(ImageRef.parse("api:v1")) is True

    @pytest.mark.asyncio
    async def test_remove_image_in_use(
        self, docker_config: DockerConfig, mock_docker_client: MagicMock
    ) -> None:
        """Test a tag the daemon refuses to remove is reported, not raised."""
        mock_docker_client.images.remove.side_effect = APIError(
            "conflict: unable to remove repository reference"
        )
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            assert await registry.remove_image(ImageRef.parse("api:v1")) is False

    @pytest.mark.asyncio
    async def test_prune_keeps_newest_and_protected(
        self,
        docker_config: DockerConfig,
        mock_docker_client: MagicMock,
        api_images: list[MagicMock],
    ) -> None:
        """Test images beyond keep are removed unless protected."""
        mock_docker_client.images.list.return_value = api_images
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            removed = await registry.prune("api", keep=1, protect={"v1"})

        assert [record.tag for record in removed] == ["v2"]
        mock_docker_client.images.remove.assert_called_once_with(image="api:v2")

    @pytest.mark.asyncio
    async def test_prune_skips_refused_removals(
        self,
        docker_config: DockerConfig,
        mock_docker_client: MagicMock,
        api_images: list[MagicMock],
    ) -> None:
        """Test tags the daemon keeps are not reported as removed."""
        mock_docker_client.images.list.return_value = api_images
        mock_docker_client.images.remove.side_effect = APIError("image is being used")
        registry = ImageRegistry(docker_config)

        with patch("docker.DockerClient.from_env", return_value=mock_docker_client):
            removed = await registry.prune("api", keep=1)

        assert removed == []
        assert mock_docker_client.images.remove.call_count == 2

    @pytest.mark.asyncio
    async def test_prune_requires_positive_keep(self, docker_config: DockerConfig) -> None:
        """Test keep=0 is rejected instead of removing everything."""
        registry = ImageRegistry(docker_config)

        with pytest.raises(ValueError, match="at least 1"):
            await registry.prune("api", keep=0)
