"""Local image registry queries and image acquisition for Healthgate.

ImageRegistry answers "which tags of this repository exist locally, newest
first" from the Docker daemon's structured image metadata, and makes sure a
requested image is available before a container is started, building it from
a local context or pulling it when it is missing.

Example usage:
    >>> from healthgate.config import DockerConfig
    >>> from healthgate.models import ImageRef
    >>> from healthgate.pipeline.registry import ImageRegistry
    >>>
    >>> registry = ImageRegistry(DockerConfig())
    >>> tags = await registry.list_tags("api")
    >>> resolution = await registry.ensure_image(ImageRef.parse("api:v3"))
    >>> if resolution.success:
    ...     print(resolution.source)
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound
from pydantic import BaseModel, Field

import docker
from healthgate.config import DockerConfig
from healthgate.logging import get_logger
from healthgate.models import ImageRef, ImageTag
from healthgate.pipeline.container import connect_docker

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ImageSource(str, Enum):
    """Where an image used for a deployment came from.

    Attributes:
        LOCAL: Already present in the local image store
        BUILT: Built from the target's build context
        PULLED: Pulled from a remote registry
    """

    LOCAL = "local"
    BUILT = "built"
    PULLED = "pulled"


class ImageResolution(BaseModel):
    """Result of making an image available locally.

    Attributes:
        success: Whether the image is now available
        image: Requested image reference
        source: How the image was obtained (None on failure)
        image_id: Docker image ID of the resolved image
        build_log: Build output lines when the image was built
        error: Error message if the image could not be obtained
        duration_seconds: Time taken to resolve the image
    """

    success: bool = Field(default=False, description="Image available")
    image: ImageRef = Field(description="Requested image")
    source: ImageSource | None = Field(default=None, description="Image origin")
    image_id: str = Field(default="", description="Docker image ID")
    build_log: list[str] = Field(default_factory=list, description="Build log lines")
    error: str | None = Field(default=None, description="Error message if failed")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Resolution duration")


def parse_created(value: Any) -> datetime:
    """Parse Docker's ``Created`` image attribute into an aware datetime.

    Docker reports RFC 3339 timestamps with nanosecond precision
    (``2024-05-01T10:20:30.123456789Z``); datetime only holds microseconds.
    Unparseable values sort as the epoch.
    """
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if not isinstance(value, str) or not value:
        return _EPOCH

    text = value.strip().replace("Z", "+00:00")
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for char in rest:
            if not char.isdigit():
                break
            digits += char
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _collect_build_log(entries: Any) -> list[str]:
    lines: list[str] = []
    for entry in entries or []:
        if isinstance(entry, dict):
            line = entry.get("stream", "") or entry.get("error", "")
            if line and line.strip():
                lines.append(line.strip())
    return lines


class ImageRegistry:
    """Async view over the local Docker image store.

    Attributes:
        config: Docker configuration from HealthgateConfig
        logger: Structured logger instance
    """

    def __init__(self, config: DockerConfig) -> None:
        """Initialize ImageRegistry with configuration.

        Args:
            config: Docker configuration settings
        """
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            self._client = connect_docker(self.config)
            self.logger.debug("registry_client_connected")
        return self._client

    async def list_tags(self, repository: str) -> list[ImageTag]:
        """List local tags of a repository ordered newest first.

        Tags sharing one image have the same creation time; ties are broken
        by tag name in descending order so the listing is deterministic.

        Args:
            repository: Image repository (without tag)

        Returns:
            Tag records, newest first; empty if none exist or Docker fails
        """
        try:
            client = await asyncio.to_thread(self._get_client)
            images = await asyncio.to_thread(client.images.list, name=repository)
        except (APIError, DockerException) as e:
            self.logger.error(
                "image_list_failed",
                repository=repository,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

        records: list[ImageTag] = []
        for image in images:
            created_at = parse_created(image.attrs.get("Created"))
            for reference in image.tags or []:
                ref = ImageRef.parse(reference)
                if ref.repository != repository:
                    continue
                records.append(
                    ImageTag(
                        repository=ref.repository,
                        tag=ref.tag,
                        image_id=image.id or "",
                        created_at=created_at,
                    )
                )

        records.sort(key=lambda record: (record.created_at, record.tag), reverse=True)
        self.logger.debug(
            "image_tags_listed",
            repository=repository,
            tag_count=len(records),
            tags=[record.tag for record in records],
        )
        return records

    async def resolve(self, image: ImageRef) -> ImageTag | None:
        """Look an image reference up in the local store.

        Returns:
            The tag record, or None if the image is not present locally
        """
        try:
            client = await asyncio.to_thread(self._get_client)
            found = await asyncio.to_thread(client.images.get, image.reference)
        except (ImageNotFound, NotFound):
            self.logger.debug("image_not_found_locally", image=image.reference)
            return None
        except (APIError, DockerException) as e:
            self.logger.warning(
                "image_resolve_failed",
                image=image.reference,
                error=str(e),
            )
            return None

        return ImageTag(
            repository=image.repository,
            tag=image.tag,
            image_id=found.id or "",
            created_at=parse_created(found.attrs.get("Created")),
        )

    async def latest(self, repository: str) -> ImageTag | None:
        """Newest local tag of the repository, if any."""
        tags = await self.list_tags(repository)
        return tags[0] if tags else None

    async def previous(self, repository: str, current_tag: str) -> ImageTag | None:
        """Next older distinct image after ``current_tag`` in the listing.

        Only entries listed after ``current_tag`` are candidates, so a
        rollback never moves to a newer image. Tags pointing at the same
        image ID as ``current_tag`` (for example a ``latest`` alias) are
        skipped. When ``current_tag`` is not present locally the newest
        local tag is returned.

        Args:
            repository: Image repository
            current_tag: Tag being replaced

        Returns:
            The previous distinct image's tag, or None if there is none
        """
        tags = await self.list_tags(repository)
        position = next(
            (index for index, record in enumerate(tags) if record.tag == current_tag),
            None,
        )
        if position is None:
            return tags[0] if tags else None

        current_ids = {record.image_id for record in tags if record.tag == current_tag}
        current_ids.discard("")
        for record in tags[position + 1 :]:
            if record.image_id in current_ids:
                continue
            return record
        return None

    async def remove_image(self, image: ImageRef) -> bool:
        """Remove one tag from the local store.

        The image itself is deleted once no tag references it. Images used by
        a container are refused by the daemon and left in place.

        Returns:
            True if the tag is gone, False if the daemon refused
        """
        try:
            client = await asyncio.to_thread(self._get_client)
            await asyncio.to_thread(client.images.remove, image=image.reference)
        except (ImageNotFound, NotFound):
            self.logger.debug("image_already_removed", image=image.reference)
            return True
        except (APIError, DockerException) as e:
            self.logger.warning(
                "image_remove_failed",
                image=image.reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        self.logger.info("image_removed", image=image.reference)
        return True

    async def prune(
        self,
        repository: str,
        keep: int,
        protect: set[str] | None = None,
    ) -> list[ImageTag]:
        """Remove local tags beyond the newest ``keep`` distinct images.

        Aliases of a kept image are kept with it. Images named in ``protect``
        are never removed and count toward ``keep`` only when they are among
        the newest.

        Args:
            repository: Image repository
            keep: Number of distinct images to retain (at least 1)
            protect: Tags that must survive regardless of age

        Returns:
            Tag records that were removed

        Raises:
            ValueError: If keep is smaller than 1
        """
        if keep < 1:
            raise ValueError(f"keep must be at least 1, got {keep}")

        protect = protect or set()
        tags = await self.list_tags(repository)

        def image_key(record: ImageTag) -> str:
            return record.image_id or record.image.reference

        protected_keys = {image_key(record) for record in tags if record.tag in protect}
        retained: dict[str, bool] = {}
        kept = 0
        removed: list[ImageTag] = []

        for record in tags:
            key = image_key(record)
            if key not in retained:
                if kept < keep:
                    kept += 1
                    retained[key] = True
                else:
                    retained[key] = key in protected_keys
            if retained[key]:
                continue
            if await self.remove_image(record.image):
                removed.append(record)

        self.logger.info(
            "image_retention_applied",
            repository=repository,
            keep=keep,
            protected=sorted(protect),
            removed=[record.tag for record in removed],
        )
        return removed

    async def ensure_image(
        self,
        image: ImageRef,
        build_context: Path | None = None,
        dockerfile: str = "Dockerfile",
        force_build: bool = False,
    ) -> ImageResolution:
        """Make sure ``image`` is present locally.

        Resolution order: local store (unless ``force_build``), then a build
        from ``build_context`` when one is given, otherwise a pull.

        Args:
            image: Image to make available
            build_context: Directory to build from when the image is missing
            dockerfile: Dockerfile name inside build_context
            force_build: Rebuild even if the image exists locally

        Returns:
            ImageResolution describing where the image came from or why it
            could not be obtained
        """
        start_time = time.monotonic()

        if not force_build:
            existing = await self.resolve(image)
            if existing is not None:
                self.logger.info(
                    "image_resolved_locally",
                    image=image.reference,
                    image_id=existing.image_id[:19],
                )
                return ImageResolution(
                    success=True,
                    image=image,
                    source=ImageSource.LOCAL,
                    image_id=existing.image_id,
                    duration_seconds=time.monotonic() - start_time,
                )

        if build_context is not None:
            return await self.build_image(image, build_context, dockerfile)

        if force_build:
            return ImageResolution(
                success=False,
                image=image,
                error="Build requested but no build context is configured",
                duration_seconds=time.monotonic() - start_time,
            )

        return await self.pull_image(image)

    async def build_image(
        self,
        image: ImageRef,
        context: Path,
        dockerfile: str = "Dockerfile",
    ) -> ImageResolution:
        """Build and tag an image from a local context.

        Args:
            image: Tag to apply to the built image
            context: Build context directory
            dockerfile: Dockerfile name relative to context

        Returns:
            ImageResolution with source BUILT on success
        """
        start_time = time.monotonic()
        self.logger.info(
            "docker_build_started",
            image=image.reference,
            path=str(context),
            dockerfile=dockerfile,
        )

        if not context.exists():
            self.logger.error("docker_build_path_not_found", path=str(context))
            return ImageResolution(
                success=False,
                image=image,
                error=f"Build context path does not exist: {context}",
                duration_seconds=time.monotonic() - start_time,
            )

        dockerfile_path = context / dockerfile
        if not dockerfile_path.exists():
            self.logger.error("docker_build_dockerfile_not_found", dockerfile=str(dockerfile_path))
            return ImageResolution(
                success=False,
                image=image,
                error=f"Dockerfile not found: {dockerfile_path}",
                duration_seconds=time.monotonic() - start_time,
            )

        try:
            client = await asyncio.to_thread(self._get_client)
            built, logs = await asyncio.to_thread(
                client.images.build,
                path=str(context),
                dockerfile=dockerfile,
                tag=image.reference,
                rm=True,
                timeout=self.config.build_timeout_seconds,
            )
            duration = time.monotonic() - start_time
            build_log = _collect_build_log(logs)

            self.logger.info(
                "docker_build_succeeded",
                image=image.reference,
                image_id=(built.id or "")[:19],
                duration_seconds=round(duration, 2),
                log_lines=len(build_log),
            )
            return ImageResolution(
                success=True,
                image=image,
                source=ImageSource.BUILT,
                image_id=built.id or "",
                build_log=build_log,
                duration_seconds=duration,
            )

        except BuildError as e:
            duration = time.monotonic() - start_time
            build_log = _collect_build_log(e.build_log)
            self.logger.error(
                "docker_build_failed",
                image=image.reference,
                error=str(e),
                duration_seconds=round(duration, 2),
                log_lines=len(build_log),
            )
            return ImageResolution(
                success=False,
                image=image,
                build_log=build_log,
                error=str(e),
                duration_seconds=duration,
            )

        except (APIError, DockerException) as e:
            duration = time.monotonic() - start_time
            self.logger.error(
                "docker_build_api_error",
                image=image.reference,
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            return ImageResolution(
                success=False,
                image=image,
                error=str(e),
                duration_seconds=duration,
            )

    async def pull_image(self, image: ImageRef) -> ImageResolution:
        """Pull an image from its remote registry.

        Returns:
            ImageResolution with source PULLED on success
        """
        start_time = time.monotonic()
        self.logger.info("image_pull_started", image=image.reference)

        try:
            client = await asyncio.to_thread(self._get_client)
            pulled = await asyncio.to_thread(client.images.pull, image.repository, tag=image.tag)
        except (ImageNotFound, NotFound) as e:
            self.logger.error("image_pull_not_found", image=image.reference, error=str(e))
            return ImageResolution(
                success=False,
                image=image,
                error=f"Image not found: {image.reference}",
                duration_seconds=time.monotonic() - start_time,
            )
        except (APIError, DockerException) as e:
            self.logger.error(
                "image_pull_failed",
                image=image.reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ImageResolution(
                success=False,
                image=image,
                error=str(e),
                duration_seconds=time.monotonic() - start_time,
            )

        duration = time.monotonic() - start_time
        self.logger.info(
            "image_pulled",
            image=image.reference,
            image_id=(pulled.id or "")[:19],
            duration_seconds=round(duration, 2),
        )
        return ImageResolution(
            success=True,
            image=image,
            source=ImageSource.PULLED,
            image_id=pulled.id or "",
            duration_seconds=duration,
        )

    async def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times or if the client was never connected.
        """
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
                self.logger.debug("registry_client_closed")
            except Exception as e:
                self.logger.warning("registry_client_close_error", error=str(e))
            finally:
                self._client = None
