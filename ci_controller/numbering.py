"""
Per-repository build number allocation.
"""

import logging

from ci_common.errors import AllocationConflict
from ci_common.repository import BuildRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class SequenceAllocator:
    """
    Hands out strictly increasing build numbers per repository.

    The read-max-increment-write step is delegated to the store's atomic
    allocation primitive; this class only retries when that primitive
    reports a lost race.
    """

    def __init__(
        self, repository: BuildRepository, max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ):
        """
        Args:
            repository: Store providing atomic number allocation
            max_attempts: Allocation attempts before AllocationConflict surfaces
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.repository = repository
        self.max_attempts = max_attempts

    async def next_number(self, repository_id: str) -> str:
        """
        Reserve the next build number for a repository.

        Returns:
            Decimal string of a number greater than every number allocated
            before for this repository, including deleted builds

        Raises:
            AllocationConflict: If every attempt lost a race
            NotFound: If the repository does not exist
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                number = await self.repository.allocate_build_number(repository_id)
                return str(number)
            except AllocationConflict as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Giving up allocating a build number for repository "
                        f"{repository_id} after {attempt} attempts: {e}"
                    )
                    raise
                logger.warning(
                    f"Build number allocation for repository {repository_id} "
                    f"conflicted (attempt {attempt}), retrying"
                )

    async def current_number(self, repository_id: str) -> int:
        """Highest number allocated so far (0 if none)."""
        return await self.repository.find_max_build_number(repository_id)
