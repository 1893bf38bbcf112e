"""
Abstract repository interface for build persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from typing import Any

from .models import Build, Job, LifecycleEvent, Repository


class BuildRepository(ABC):
    """
    Abstract base class for build storage operations.

    Implementations must provide async-safe access to build data, handle
    their own connection management, and offer one atomic
    read-max-then-write primitive for build number allocation.
    """

    # Repository records

    @abstractmethod
    async def create_repository(self, repository: Repository) -> None:
        """
        Create a new repository record.

        Args:
            repository: Repository object to persist

        Raises:
            Exception: If a repository with the same ID or slug already exists
        """
        pass

    @abstractmethod
    async def get_repository(self, repository_id: str) -> Repository | None:
        """
        Retrieve a repository by its ID.

        Returns:
            Repository object if found, None otherwise
        """
        pass

    @abstractmethod
    async def get_repository_by_slug(
        self, owner_name: str, name: str
    ) -> Repository | None:
        """
        Retrieve a repository by owner and name.

        Returns:
            Repository object if found, None otherwise
        """
        pass

    # Build numbers

    @abstractmethod
    async def allocate_build_number(self, repository_id: str) -> int:
        """
        Reserve the next build number for a repository.

        Reading the current maximum and writing the new one happen as one
        atomic unit, so concurrent callers never receive the same number.
        Numbers of deleted builds are never handed out again.

        Args:
            repository_id: Repository to allocate for

        Returns:
            The reserved number

        Raises:
            NotFound: If the repository does not exist
            AllocationConflict: If the reservation lost a race and must be retried
        """
        pass

    @abstractmethod
    async def find_max_build_number(self, repository_id: str) -> int:
        """
        Highest build number allocated for a repository (0 if none).
        """
        pass

    # Builds and jobs

    @abstractmethod
    async def create_build(self, build: Build) -> None:
        """
        Persist a build together with its matrix, atomically.

        Args:
            build: Build with number assigned and ``matrix`` populated

        Raises:
            AllocationConflict: If the build number is already taken
        """
        pass

    @abstractmethod
    async def get_build(self, build_id: str) -> Build | None:
        """
        Retrieve a build with its matrix.

        Returns:
            Build object if found, None otherwise
        """
        pass

    @abstractmethod
    async def update_build(self, build_id: str, fields: dict[str, Any]) -> None:
        """
        Update selected fields of a build.

        Args:
            build_id: ID of the build to update
            fields: Column name to new value

        Raises:
            ValueError: If a field cannot be updated
        """
        pass

    @abstractmethod
    async def delete_build(self, build_id: str) -> None:
        """Delete a build and its jobs."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """
        Retrieve a job by its ID.

        Returns:
            Job object if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_jobs(self, build_id: str) -> list[Job]:
        """
        List a build's jobs in matrix order.
        """
        pass

    @abstractmethod
    async def update_job(self, job_id: str, fields: dict[str, Any]) -> None:
        """
        Update selected fields of a job.

        Raises:
            ValueError: If a field cannot be updated
        """
        pass

    # Build queries (builds are returned without their matrix)

    @abstractmethod
    async def query_builds(
        self,
        repository_id: str,
        branch: str | None = None,
        terminal_only: bool = False,
        limit: int | None = None,
    ) -> list[Build]:
        """
        Builds of a repository, most recently finished first.

        Args:
            repository_id: Repository to query
            branch: Only builds whose commit is on this branch
            terminal_only: Only passed, failed, errored or canceled builds
            limit: Maximum number of builds to return
        """
        pass

    @abstractmethod
    async def recent_builds(self, repository_id: str, limit: int = 25) -> list[Build]:
        """
        Builds that were started, most recently started first.
        """
        pass

    @abstractmethod
    async def was_started(self, repository_id: str) -> list[Build]:
        """
        Builds that have a start time, in any state.
        """
        pass

    @abstractmethod
    async def builds_on_branches(
        self, repository_id: str, branches: list[str] | str
    ) -> list[Build]:
        """
        Push builds on any of the given branches (pull requests excluded).

        Args:
            repository_id: Repository to search
            branches: Branch names, or one comma separated string of them
        """
        pass

    @abstractmethod
    async def builds_by_event_type(
        self, repository_id: str, event_type: str
    ) -> list[Build]:
        """
        Builds triggered by one kind of event (push, pull_request, api, cron).
        """
        pass

    @abstractmethod
    async def older_than(
        self, repository_id: str, number: int | None = None, per_page: int = 25
    ) -> list[Build]:
        """
        One page of builds with numbers below ``number``, highest first.
        """
        pass

    @abstractmethod
    async def paged(
        self, repository_id: str, page: int = 1, per_page: int = 25
    ) -> list[Build]:
        """
        One page of builds in ascending number order.
        """
        pass

    @abstractmethod
    async def last_build(self, repository_id: str) -> Build | None:
        """The build with the highest number."""
        pass

    @abstractmethod
    async def branches(self, repository_id: str) -> list[str]:
        """Distinct branch names that have builds."""
        pass

    # Lifecycle events

    @abstractmethod
    async def add_event(self, event: LifecycleEvent) -> None:
        """
        Record a lifecycle event.
        """
        pass

    @abstractmethod
    async def find_events(self, repository_id: str) -> list[LifecycleEvent]:
        """
        Events of a repository in the order they were recorded.
        """
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
        pass
