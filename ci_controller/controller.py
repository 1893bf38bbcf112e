"""
Build controller: the entry point for creating builds and feeding job
state changes back into them.

Creation runs the full data flow: normalize config -> allocate number ->
snapshot previous state -> expand matrix -> persist build and jobs ->
announce ``build:created``.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from ci_common.config import LEGACY_ENV_FLAG, ConfigNormalizer, EnvMode
from ci_common.errors import AllocationConflict, NotFound
from ci_common.models import EVENT_TYPES, Build, BuildRequest, Job
from ci_common.ports import FeatureFlags, NotificationPort, SecretVault
from ci_common.repository import BuildRepository

from .history import BranchHistoryResolver
from .matrix import expand_matrix
from .numbering import DEFAULT_MAX_ATTEMPTS, SequenceAllocator
from .obfuscation import ObfuscationEngine
from .state_machine import BuildStateMachine

# Configure logging
logger = logging.getLogger(__name__)


def _dig(payload: dict[str, Any], *path: str) -> Any:
    value: Any = payload
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


class BuildController:
    """
    Coordinates the build orchestration core.

    The controller owns no state of its own; every operation loads what it
    needs from the repository, hands it to the relevant component and
    returns the updated domain object.
    """

    def __init__(
        self,
        repository: BuildRepository,
        vault: SecretVault,
        notifier: NotificationPort,
        feature_flags: FeatureFlags,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        """
        Initialize the build controller.

        Args:
            repository: Build repository for persisting state
            vault: Secret vault for secure config values
            notifier: Port lifecycle events are announced through
            feature_flags: Selects the env normalization layout
            max_attempts: Attempts for allocating and storing a build number
        """
        self.repository = repository
        self.feature_flags = feature_flags
        self.max_attempts = max_attempts

        self.normalizer = ConfigNormalizer()
        self.allocator = SequenceAllocator(repository, max_attempts=max_attempts)
        self.history = BranchHistoryResolver(repository)
        self.obfuscator = ObfuscationEngine(vault)
        self.state_machine = BuildStateMachine(repository, notifier)

    def env_mode(self) -> EnvMode:
        if self.feature_flags.enabled(LEGACY_ENV_FLAG):
            return EnvMode.LEGACY
        return EnvMode.CURRENT

    async def create_build(self, request: BuildRequest) -> Build:
        """
        Create a build with its job matrix for an incoming change.

        Args:
            request: The change to build, with its raw config

        Returns:
            The stored build, in created state, with its matrix

        Raises:
            NotFound: If the repository does not exist
            AllocationConflict: If a build number could not be stored after
                ``max_attempts`` tries
            ValueError: If the event type is unknown
        """
        if request.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {request.event_type}")

        repository = await self.repository.get_repository(request.repository_id)
        if repository is None:
            raise NotFound(
                "Repository not found",
                repository_id=request.repository_id,
                operation="create_build",
            )

        mode = self.env_mode()
        config = self.normalizer.normalize(request.config, mode)
        previous_state = await self.history.previous_state(
            request.repository_id, request.branch
        )

        build = Build(
            id=str(uuid.uuid4()),
            repository_id=request.repository_id,
            config=config,
            commit=request.commit,
            branch=request.branch,
            event_type=request.event_type,
            previous_state=previous_state,
        )
        if build.pull_request:
            build.pull_request_title = _dig(request.payload, "pull_request", "title")
            build.head_slug = _dig(
                request.payload, "pull_request", "head", "repo", "full_name"
            )
            build.base_slug = _dig(
                request.payload, "pull_request", "base", "repo", "full_name"
            ) or repository.slug

        job_configs = expand_matrix(config)

        attempt = 0
        while True:
            attempt += 1
            build.number = await self.allocator.next_number(request.repository_id)
            build.matrix = [
                Job(
                    id=str(uuid.uuid4()),
                    build_id=build.id,
                    repository_id=build.repository_id,
                    number=f"{build.number}.{position}",
                    position=position,
                    config=job_config,
                )
                for position, job_config in enumerate(job_configs, start=1)
            ]
            try:
                await self.repository.create_build(build)
                break
            except AllocationConflict as e:
                if attempt >= self.max_attempts:
                    logger.error(f"Could not store build for {repository.slug}: {e}")
                    raise
                logger.warning(
                    f"Build number {build.number} for {repository.slug} was taken, "
                    f"retrying (attempt {attempt})"
                )

        logger.info(
            f"Created build {repository.slug}#{build.number} ({build.id}) on "
            f"{build.branch} with {len(build.matrix)} job(s), env mode {mode.value}"
        )
        await self.state_machine.created(build)
        return build

    async def get_build(self, build_id: str) -> Build:
        """
        Load a build with its matrix.

        Raises:
            NotFound: If the build does not exist
        """
        build = await self.repository.get_build(build_id)
        if build is None:
            raise NotFound("Build not found", build_id=build_id, operation="get_build")
        return build

    async def _build_for_job(self, job_id: str, operation: str) -> Build:
        job = await self.repository.get_job(job_id)
        if job is None:
            raise NotFound("Job not found", job_id=job_id, operation=operation)
        return await self.get_build(job.build_id)

    async def update_job(
        self, job_id: str, state: str, at: datetime | None = None
    ) -> Build:
        """
        Apply a job state change reported by a worker.

        Returns:
            The job's build, re-aggregated
        """
        build = await self._build_for_job(job_id, "update_job")
        return await self.state_machine.update_job(build, job_id, state, at=at)

    async def reset_job(self, job_id: str) -> Build:
        build = await self._build_for_job(job_id, "reset_job")
        return await self.state_machine.reset_job(build, job_id)

    async def reset_build(self, build_id: str, reset_matrix: bool = False) -> Build:
        build = await self.get_build(build_id)
        return await self.state_machine.reset(build, reset_matrix=reset_matrix)

    async def cancel_build(self, build_id: str, at: datetime | None = None) -> Build:
        build = await self.get_build(build_id)
        return await self.state_machine.cancel(build, at=at)

    async def obfuscated_config(self, build_id: str) -> dict[str, Any]:
        """
        Display-safe copy of a build's config.
        """
        build = await self.get_build(build_id)
        return self.obfuscator.obfuscate(build.config, build.repository_id)
