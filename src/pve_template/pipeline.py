#!/usr/bin/env python3
"""
Template build pipeline.

Stages run strictly in order and the first failure ends the build:

    preconditions → storage → download → profile → customize → materialize → publish

The image is downloaded to ``<image_name>.new`` and only replaces the
published ``<image_name>`` once the template exists, so a failed build
never clobbers the last good image. The staged file is kept on failure
for inspection.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from pve_template.config import EnvironmentConfig
from pve_template.distro import DistroProfileSelector
from pve_template.downloader import ImageDownloader, image_source_url
from pve_template.exceptions import CommandError, PreconditionFailed, TemplateBuildError
from pve_template.executor import Executor, executor_for
from pve_template.image_customizer import ImageCustomizer
from pve_template.proxmox_api import ProxmoxClient
from pve_template.storage_manager import StorageResolver
from pve_template.template_manager import TIMESTAMP_FORMAT, TemplateMaterializer

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("aria2c", "virt-customize", "qm")
STAGED_SUFFIX = ".new"


@dataclass(frozen=True)
class BuildRequest:
    """One template to build: which image, and which VM identity it gets."""

    image_name: str
    image_url: str
    vm_name: str
    vm_id: int

    def __post_init__(self) -> None:
        for attr in ("image_name", "image_url", "vm_name"):
            if not str(getattr(self, attr)).strip():
                raise PreconditionFailed(f"{attr} must not be empty")
        if isinstance(self.vm_id, bool) or not isinstance(self.vm_id, int) or self.vm_id <= 0:
            raise PreconditionFailed(f"vm_id must be a positive integer, got {self.vm_id!r}")

    @property
    def source_url(self) -> str:
        return image_source_url(self.image_url, self.image_name)

    @property
    def staged_name(self) -> str:
        return f"{self.image_name}{STAGED_SUFFIX}"

    @property
    def basename(self) -> str:
        """Image name without its last extension, used for the last-run marker."""
        return os.path.splitext(self.image_name)[0]


@dataclass
class BuildResult:
    """Terminal status of one build."""

    request: BuildRequest
    ok: bool
    stage: Optional[str] = None
    cause: Optional[str] = None
    error: Optional[TemplateBuildError] = None
    finished_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def success(cls, request: BuildRequest) -> "BuildResult":
        return cls(request=request, ok=True)

    @classmethod
    def failure(cls, request: BuildRequest, error: TemplateBuildError) -> "BuildResult":
        return cls(request=request, ok=False, stage=error.stage, cause=error.detail, error=error)


class TemplatePipeline:
    """Drives one build request through every stage."""

    def __init__(
        self,
        env: EnvironmentConfig,
        executor: Optional[Executor] = None,
        resolver: Optional[StorageResolver] = None,
        downloader: Optional[ImageDownloader] = None,
        selector: Optional[DistroProfileSelector] = None,
        customizer: Optional[ImageCustomizer] = None,
        materializer: Optional[TemplateMaterializer] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.env = env
        self.executor = executor or executor_for(env)
        self.resolver = resolver
        self.downloader = downloader or ImageDownloader(self.executor, env.download_connections)
        self.selector = selector or DistroProfileSelector()
        self.customizer = customizer or ImageCustomizer(
            self.executor, key_dir=env.key_dir, consul_url=env.consul_url
        )
        self.materializer = materializer or TemplateMaterializer(self.executor)
        self.clock = clock

    def required_tools(self) -> List[str]:
        tools = list(REQUIRED_TOOLS)
        if not self.env.api_token:
            tools.append("pvesh")
        return tools

    def check_preconditions(self) -> None:
        """
        Verify the host has every external tool the build drives.

        Raises:
            PreconditionFailed: Listing every missing tool.
        """
        try:
            missing = [tool for tool in self.required_tools() if not self.executor.which(tool)]
        except CommandError as e:
            raise PreconditionFailed(f"Build host unreachable: {e}") from e
        if missing:
            raise PreconditionFailed(f"Required tools not found: {', '.join(missing)}")
        if self.env.keys:
            logger.warning("KEYS is not used; put <user>.pub files in KEY_DIR to inject keys")
        if self.resolver is None:
            try:
                self.resolver = StorageResolver(ProxmoxClient(self.env, self.executor))
            except ValueError as e:
                raise PreconditionFailed(str(e)) from e

    def publish(self, request: BuildRequest, staged_path: str, timestamp: str) -> str:
        """Replace the published image with the staged one and record the run."""
        work_dir = self.env.work_dir
        published = os.path.join(work_dir, request.image_name)
        marker = os.path.join(work_dir, f"{request.basename}-last-run.txt")
        try:
            self.executor.replace(staged_path, published)
            self.executor.write_text(marker, f"Last run: {timestamp}\n")
        except (OSError, CommandError) as e:
            raise TemplateBuildError(f"Could not publish {published}: {e}", stage="publish") from e
        logger.info(f"📦 Published {published}")
        return published

    def run(self, request: BuildRequest) -> BuildResult:
        """Run every stage for ``request``; failures come back as a failed result."""
        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)
        logger.info(f"🚀 Building template {request.vm_name!r} (vmid={request.vm_id}) from {request.source_url}")

        try:
            self.check_preconditions()
            storage = self.resolver.resolve(self.env.storage_override)  # type: ignore[union-attr]

            staged_path = self.downloader.download(request.source_url, self.env.work_dir, request.staged_name)

            profile = self.selector.select(request.image_name, request.image_url)

            self.customizer.customize(staged_path, profile, self.env.users, self.env.routes)

            self.materializer.materialize(
                request.vm_id,
                request.vm_name,
                staged_path,
                storage,
                profile,
                self.env,
                timestamp=timestamp,
            )

            self.publish(request, staged_path, timestamp)
        except TemplateBuildError as e:
            logger.error(f"❌ Build of {request.vm_name} (vmid={request.vm_id}) failed: {e}")
            return BuildResult.failure(request, e)

        logger.info(f"✅ TEMPLATE {request.vm_name} (ID {request.vm_id}) successfully created")
        return BuildResult.success(request)
