"""
Branch history lookups: the previous build state on a branch and the
latest finished builds per branch.
"""

import logging

from ci_common.models import Build
from ci_common.repository import BuildRepository

logger = logging.getLogger(__name__)


class BranchHistoryResolver:
    """
    Answers questions about finished builds on a repository's branches.
    """

    def __init__(self, repository: BuildRepository):
        self.repository = repository

    async def previous_state(
        self,
        repository_id: str,
        branch: str | None,
        exclude_build_id: str | None = None,
    ) -> str | None:
        """
        State of the most recently finished build on the same branch.

        Only terminal builds count; created and started builds, and builds
        on other branches, are ignored. The result is meant to be frozen
        into a new build when it is created.

        Args:
            repository_id: Repository of the new build
            branch: Branch of the new build's commit
            exclude_build_id: The new build itself, if it was stored already

        Returns:
            The state, or None if there is no finished build on the branch
        """
        if branch is None:
            return None

        # One extra row in case the excluded build is the latest one
        limit = 2 if exclude_build_id else 1
        builds = await self.repository.query_builds(
            repository_id, branch=branch, terminal_only=True, limit=limit
        )
        for build in builds:
            if build.id != exclude_build_id:
                logger.debug(
                    f"Previous build on {branch} for repository {repository_id}: "
                    f"#{build.number} ({build.state})"
                )
                return build.state
        return None

    async def last_completed_build(
        self, repository_id: str, branch: str | None = None
    ) -> Build | None:
        """
        Most recently finished build, optionally restricted to a branch.
        """
        builds = await self.repository.query_builds(
            repository_id, branch=branch, terminal_only=True, limit=1
        )
        return builds[0] if builds else None

    async def branches(self, repository_id: str) -> list[str]:
        return await self.repository.branches(repository_id)

    async def last_finished_builds_by_branches(self, repository_id: str) -> list[Build]:
        """
        Latest finished build of every branch that has one.
        """
        builds = []
        for branch in await self.repository.branches(repository_id):
            build = await self.last_completed_build(repository_id, branch)
            if build is not None:
                builds.append(build)
        return builds
