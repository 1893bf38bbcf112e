"""
Data models for CI build storage.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Lifecycle states shared by builds and jobs
CREATED = "created"
QUEUED = "queued"  # job-only
STARTED = "started"
PASSED = "passed"
FAILED = "failed"
ERRORED = "errored"
CANCELED = "canceled"

BUILD_STATES = (CREATED, STARTED, PASSED, FAILED, ERRORED, CANCELED)
JOB_STATES = (CREATED, QUEUED, STARTED, PASSED, FAILED, ERRORED, CANCELED)
TERMINAL_STATES = frozenset({PASSED, FAILED, ERRORED, CANCELED})
FAILURE_STATES = frozenset({FAILED, ERRORED, CANCELED})

EVENT_TYPES = ("push", "pull_request", "api", "cron")


def as_utc(value: datetime) -> datetime:
    """Aware UTC form of a timestamp; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Repository:
    """
    Represents a source repository builds are run for.

    The repository record carries the build number counter so that
    allocation can read and bump it in one write.
    """

    id: str
    owner_name: str
    name: str
    private: bool = False
    last_build_number: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def slug(self) -> str:
        return f"{self.owner_name}/{self.name}"

    @property
    def source_url(self) -> str:
        """Git url to clone from; private repositories go through ssh."""
        if self.private:
            return f"git@github.com:{self.slug}.git"
        return f"git://github.com/{self.slug}.git"

    def to_dict(self) -> dict[str, Any]:
        """Convert repository to dictionary format."""
        return {
            "id": self.id,
            "slug": self.slug,
            "private": self.private,
            "last_build_number": self.last_build_number,
            "source_url": self.source_url,
        }


@dataclass
class Job:
    """
    Represents one leg of a build matrix.

    Jobs progress through states: created -> queued -> started -> passed/failed/errored
    Jobs can be canceled from any non-terminal state.
    """

    id: str
    build_id: str
    repository_id: str
    number: str  # "<build number>.<position>"
    position: int  # 1-based position within the matrix
    state: str = CREATED
    config: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary format."""
        return {
            "id": self.id,
            "build_id": self.build_id,
            "number": self.number,
            "state": self.state,
            "config": self.config,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
        }


@dataclass
class Build:
    """
    Represents one CI run for a commit or request, aggregating its jobs.

    ``config`` holds the normalized configuration, decoded once when the
    build is loaded and owned by this instance afterwards.
    """

    id: str
    repository_id: str
    number: str | None = None
    state: str = CREATED
    config: dict[str, Any] = field(default_factory=dict)
    commit: str | None = None
    branch: str | None = None
    event_type: str = "push"
    pull_request_title: str | None = None
    head_slug: str | None = None  # repository the pull request comes from
    base_slug: str | None = None  # repository the pull request targets
    previous_state: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration: int | None = None  # seconds, set on finish
    matrix: list[Job] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def pending(self) -> bool:
        return not self.finished

    @property
    def passed(self) -> bool:
        return self.state == PASSED

    @property
    def color(self) -> str:
        if self.passed:
            return "green"
        if self.state in FAILURE_STATES:
            return "red"
        return "yellow"

    @property
    def pull_request(self) -> bool:
        return self.event_type == "pull_request"

    @property
    def same_repo_pull_request(self) -> bool:
        # GitHub slugs are case-insensitive
        if self.head_slug is None or self.base_slug is None:
            return False
        return self.head_slug.lower() == self.base_slug.lower()

    @property
    def secure_env_enabled(self) -> bool:
        """Forked pull requests never get decrypted secure env vars."""
        return not self.pull_request or self.same_repo_pull_request

    def to_dict(self) -> dict[str, Any]:
        """Convert build to dictionary format (stored config, not obfuscated)."""
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "number": self.number,
            "state": self.state,
            "previous_state": self.previous_state,
            "branch": self.branch,
            "commit": self.commit,
            "event_type": self.event_type,
            "pull_request_title": self.pull_request_title,
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "duration": self.duration,
            "matrix": [job.to_dict() for job in self.matrix],
        }


@dataclass
class LifecycleEvent:
    """
    Represents a single announced state transition of a build or job.
    """

    repository_id: str
    source_type: str  # "build" or "job"
    source_id: str
    event: str  # e.g. "build:finished"
    data: dict[str, Any] = field(default_factory=dict)
    id: int | None = None  # assigned by the store
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        return {
            "id": self.id,
            "repository_id": self.repository_id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "event": self.event,
            "data": self.data,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class BuildRequest:
    """
    An incoming change to build, with fields already extracted from the payload.
    """

    repository_id: str
    commit: str
    branch: str
    event_type: str = "push"
    config: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
