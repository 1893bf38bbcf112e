"""
Build and job lifecycle state machine.

Jobs report their own transitions; the build state is derived from the
states of all jobs in its matrix. Every transition is persisted first and
then announced through the notification port before control returns.
"""

import logging
import warnings
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ci_common.errors import InvariantViolation, NotFound, NotificationWarning
from ci_common.models import (
    CANCELED,
    CREATED,
    ERRORED,
    FAILED,
    PASSED,
    QUEUED,
    STARTED,
    TERMINAL_STATES,
    Build,
    Job,
    as_utc,
)
from ci_common.ports import NotificationPort
from ci_common.repository import BuildRepository

logger = logging.getLogger(__name__)

# Allowed job transitions (reset is handled separately)
JOB_TRANSITIONS = {
    CREATED: frozenset({QUEUED, STARTED, CANCELED}),
    QUEUED: frozenset({STARTED, CANCELED}),
    STARTED: frozenset({PASSED, FAILED, ERRORED, CANCELED}),
}

# Worst outcome wins when a matrix finishes
OUTCOME_PRECEDENCE = {PASSED: 0, CANCELED: 1, FAILED: 2, ERRORED: 3}


def aggregate_state(states: list[str]) -> str:
    """
    Derive a build state from the states of its jobs.

    Returns:
        The worst terminal outcome once every job is terminal
        (errored > failed > canceled > passed), "started" once any job has
        left created/queued, "created" otherwise
    """
    if states and all(state in TERMINAL_STATES for state in states):
        return max(states, key=OUTCOME_PRECEDENCE.__getitem__)
    if any(state not in (CREATED, QUEUED) for state in states):
        return STARTED
    return CREATED


def _duration(started_at: datetime | None, finished_at: datetime) -> int | None:
    if started_at is None:
        return None
    return int((finished_at - started_at).total_seconds())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BuildStateMachine:
    """
    Owns build and job state transitions and matrix aggregation.
    """

    def __init__(
        self,
        repository: BuildRepository,
        notifier: NotificationPort,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            repository: Store the transitions are persisted to
            notifier: Port lifecycle events are announced through
            clock: Source of timestamps when callers do not pass one
        """
        self.repository = repository
        self.notifier = notifier
        self.clock = clock

    # Events

    async def created(self, build: Build) -> None:
        """Announce a freshly stored build."""
        await self._emit("build:created", self._build_payload(build))

    async def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.emit(event_name, payload)
        except Exception as e:
            logger.warning(
                f"Failed to emit {event_name} for repository "
                f"{payload.get('repository_id')}: {e}",
                exc_info=True,
            )
            warnings.warn(
                f"{event_name} was not delivered: {e}",
                NotificationWarning,
                stacklevel=3,
            )

    def _build_payload(self, build: Build) -> dict[str, Any]:
        return {
            "repository_id": build.repository_id,
            "build_id": build.id,
            "number": build.number,
            "state": build.state,
            "previous_state": build.previous_state,
            "branch": build.branch,
            "event_type": build.event_type,
            "started_at": build.started_at,
            "finished_at": build.finished_at,
            "duration": build.duration,
        }

    def _job_payload(self, job: Job) -> dict[str, Any]:
        return {
            "repository_id": job.repository_id,
            "build_id": job.build_id,
            "job_id": job.id,
            "number": job.number,
            "state": job.state,
            "started_at": job.started_at,
            "finished_at": job.finished_at,
        }

    # Jobs

    def _find_job(self, build: Build, job_id: str) -> Job:
        for job in build.matrix:
            if job.id == job_id:
                return job
        raise NotFound(
            "Job is not part of the build matrix",
            repository_id=build.repository_id,
            build_id=build.id,
            job_id=job_id,
            operation="update_job",
        )

    async def update_job(
        self, build: Build, job_id: str, state: str, at: datetime | None = None
    ) -> Build:
        """
        Move one job of a build to a new state and re-aggregate the build.

        Args:
            build: Build with its full matrix loaded
            job_id: Job to transition
            state: New job state
            at: When the transition happened (defaults to now, naive values
                are read as UTC)

        Returns:
            The same build, updated in place

        Raises:
            InvariantViolation: If the transition is not possible, e.g. a job
                finishing without having started or leaving a terminal state
        """
        now = as_utc(at) if at else self.clock()
        job = self._find_job(build, job_id)
        if job.state == state:
            logger.debug(f"Job {job.id} is already {state}")
            return build

        allowed = JOB_TRANSITIONS.get(job.state, frozenset())
        if state not in allowed:
            if state in TERMINAL_STATES and state != CANCELED and job.started_at is None:
                message = f"Job cannot finish as {state} without having started"
            else:
                message = f"Job cannot move from {job.state} to {state}"
            raise InvariantViolation(
                message,
                repository_id=build.repository_id,
                build_id=build.id,
                job_id=job.id,
                operation="update_job",
            )

        fields: dict[str, Any] = {"state": state}
        if state == STARTED:
            job.started_at = now
            fields["started_at"] = now
        elif state in TERMINAL_STATES:
            job.finished_at = now
            fields["finished_at"] = now
        job.state = state

        await self.repository.update_job(job.id, fields)
        logger.info(f"Job {job.number} ({job.id}) is now {state}")

        if state in TERMINAL_STATES:
            event_name = "job:canceled" if state == CANCELED else "job:finished"
        else:
            event_name = f"job:{state}"
        await self._emit(event_name, self._job_payload(job))

        await self._aggregate(build)
        return build

    async def reset_job(self, build: Build, job_id: str) -> Build:
        """
        Put one job back to created.

        A finished build is reset along with it (without touching the other
        jobs) so the restarted job can finish it again.
        """
        job = self._find_job(build, job_id)
        await self._reset_job(job)
        if build.finished:
            await self.reset(build)
        return build

    async def _reset_job(self, job: Job) -> None:
        job.state = CREATED
        job.started_at = None
        job.finished_at = None
        await self.repository.update_job(
            job.id, {"state": CREATED, "started_at": None, "finished_at": None}
        )
        await self._emit("job:created", self._job_payload(job))

    # Builds

    async def _aggregate(self, build: Build) -> None:
        target = aggregate_state([job.state for job in build.matrix])

        if build.state == CREATED and target != CREATED:
            start_times = [job.started_at for job in build.matrix if job.started_at]
            if start_times:
                build.state = STARTED
                build.started_at = min(start_times)
                await self.repository.update_build(
                    build.id, {"state": STARTED, "started_at": build.started_at}
                )
                logger.info(f"Build {build.number} ({build.id}) started")
                await self._emit("build:started", self._build_payload(build))

        if target in TERMINAL_STATES and not build.finished:
            finish_times = [job.finished_at for job in build.matrix if job.finished_at]
            finished_at = max(finish_times) if finish_times else self.clock()
            await self._finish(build, target, finished_at, "build:finished")

    async def _finish(
        self, build: Build, state: str, finished_at: datetime, event_name: str
    ) -> None:
        if build.started_at is None and state != CANCELED:
            raise InvariantViolation(
                f"Build cannot finish as {state} without having started",
                repository_id=build.repository_id,
                build_id=build.id,
                operation="finish_build",
            )

        build.state = state
        build.finished_at = finished_at
        build.duration = _duration(build.started_at, finished_at)
        await self.repository.update_build(
            build.id,
            {
                "state": state,
                "finished_at": finished_at,
                "duration": build.duration,
            },
        )
        logger.info(
            f"Build {build.number} ({build.id}) finished as {state} "
            f"in {build.duration}s"
        )
        await self._emit(event_name, self._build_payload(build))

    async def cancel(self, build: Build, at: datetime | None = None) -> Build:
        """
        Cancel a created or started build and every unfinished job in it.

        Raises:
            InvariantViolation: If the build already finished
        """
        if build.finished:
            raise InvariantViolation(
                f"Build cannot be canceled once {build.state}",
                repository_id=build.repository_id,
                build_id=build.id,
                operation="cancel_build",
            )

        now = as_utc(at) if at else self.clock()
        for job in build.matrix:
            if job.finished:
                continue
            job.state = CANCELED
            job.finished_at = now
            await self.repository.update_job(
                job.id, {"state": CANCELED, "finished_at": now}
            )
            await self._emit("job:canceled", self._job_payload(job))

        await self._finish(build, CANCELED, now, "build:canceled")
        return build

    async def reset(self, build: Build, reset_matrix: bool = False) -> Build:
        """
        Return a build to created so it can run again.

        Clears started_at, finished_at and duration, resets every job only
        when ``reset_matrix`` is given, and announces ``build:created`` once.
        """
        build.state = CREATED
        build.started_at = None
        build.finished_at = None
        build.duration = None
        await self.repository.update_build(
            build.id,
            {"state": CREATED, "started_at": None, "finished_at": None, "duration": None},
        )

        if reset_matrix:
            for job in build.matrix:
                await self._reset_job(job)

        logger.info(f"Build {build.number} ({build.id}) reset")
        await self.created(build)
        return build
