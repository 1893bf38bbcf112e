"""
Unit tests for the build/job state machine.

Transitions run against a temporary SQLite store; the notification port is
an AsyncMock so emitted events can be asserted in order.
"""

from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ci_common.errors import InvariantViolation, NotFound, NotificationWarning
from ci_common.models import Build, Job
from ci_common.ports import NotificationPort
from ci_controller.state_machine import BuildStateMachine, aggregate_state

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def notifier():
    return AsyncMock(spec=NotificationPort)


@pytest.fixture
def machine(store, notifier):
    return BuildStateMachine(store, notifier, clock=lambda: T0)


def emitted(notifier) -> list[str]:
    return [call.args[0] for call in notifier.emit.await_args_list]


async def stored_build(store, repository, jobs=2, job_state="created", job_started_at=None):
    build = Build(id="build-1", repository_id=repository.id, number="1", branch="master")
    build.matrix = [
        Job(
            id=f"job-{position}",
            build_id=build.id,
            repository_id=repository.id,
            number=f"1.{position}",
            position=position,
            state=job_state,
            started_at=job_started_at,
        )
        for position in range(1, jobs + 1)
    ]
    await store.create_build(build)
    return await store.get_build(build.id)


class TestAggregateState:
    """Worst outcome precedence."""

    @pytest.mark.parametrize(
        "states, expected",
        [
            (["passed", "failed"], "failed"),
            (["passed", "passed"], "passed"),
            (["passed", "canceled"], "canceled"),
            (["failed", "errored", "passed"], "errored"),
            (["canceled", "failed"], "failed"),
            (["created", "queued"], "created"),
            (["started", "created"], "started"),
            (["passed", "created"], "started"),
            ([], "created"),
        ],
    )
    def test_aggregate(self, states, expected):
        assert aggregate_state(states) == expected


class TestJobTransitions:
    """update_job and the derived build state."""

    @pytest.mark.asyncio
    async def test_first_job_start_starts_the_build(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)

        await machine.update_job(build, "job-1", "started", at=T0)

        assert build.state == "started"
        assert build.started_at == T0
        assert emitted(notifier) == ["job:started", "build:started"]

        reloaded = await store.get_build(build.id)
        assert reloaded.state == "started"
        assert reloaded.matrix[0].started_at == T0

    @pytest.mark.asyncio
    async def test_all_jobs_passing_passes_the_build(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)

        await machine.update_job(build, "job-1", "started", at=T0)
        await machine.update_job(build, "job-2", "started", at=T0 + timedelta(seconds=10))
        await machine.update_job(build, "job-1", "passed", at=T0 + timedelta(seconds=60))
        assert build.state == "started"
        await machine.update_job(build, "job-2", "passed", at=T0 + timedelta(seconds=90.7))

        assert build.state == "passed"
        assert build.finished_at == T0 + timedelta(seconds=90.7)
        assert build.duration == 90
        assert emitted(notifier).count("build:finished") == 1
        assert emitted(notifier)[-1] == "build:finished"

        reloaded = await store.get_build(build.id)
        assert reloaded.state == "passed"
        assert reloaded.duration == 90

    @pytest.mark.asyncio
    async def test_worst_outcome_wins(self, machine, store, repository):
        build = await stored_build(store, repository)

        for job_id in ("job-1", "job-2"):
            await machine.update_job(build, job_id, "started", at=T0)
        await machine.update_job(build, "job-1", "passed", at=T0)
        await machine.update_job(build, "job-2", "failed", at=T0)

        assert build.state == "failed"

    @pytest.mark.asyncio
    async def test_queued_job_keeps_build_created(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)

        await machine.update_job(build, "job-1", "queued")

        assert build.state == "created"
        assert emitted(notifier) == ["job:queued"]

    @pytest.mark.asyncio
    async def test_finishing_without_start_is_rejected(self, machine, store, repository):
        build = await stored_build(store, repository)

        with pytest.raises(InvariantViolation, match="without having started") as exc_info:
            await machine.update_job(build, "job-1", "passed")

        assert exc_info.value.job_id == "job-1"
        assert exc_info.value.build_id == build.id
        assert (await store.get_job("job-1")).state == "created"

    @pytest.mark.asyncio
    async def test_leaving_a_terminal_state_is_rejected(self, machine, store, repository):
        build = await stored_build(store, repository, jobs=1)
        await machine.update_job(build, "job-1", "started", at=T0)
        await machine.update_job(build, "job-1", "passed", at=T0)

        with pytest.raises(InvariantViolation, match="from passed to started"):
            await machine.update_job(build, "job-1", "started")

    @pytest.mark.asyncio
    async def test_same_state_is_a_no_op(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)
        await machine.update_job(build, "job-1", "started", at=T0)
        notifier.emit.reset_mock()

        await machine.update_job(build, "job-1", "started", at=T0 + timedelta(minutes=1))

        assert emitted(notifier) == []
        assert build.matrix[0].started_at == T0

    @pytest.mark.asyncio
    async def test_unknown_job(self, machine, store, repository):
        build = await stored_build(store, repository)

        with pytest.raises(NotFound):
            await machine.update_job(build, "job-9", "started")

    @pytest.mark.asyncio
    async def test_terminal_build_without_start_time_is_an_invariant_violation(
        self, machine, store, repository
    ):
        # A feed that marked the job started but never reported when
        build = await stored_build(store, repository, jobs=1, job_state="started")

        with pytest.raises(InvariantViolation, match="Build cannot finish"):
            await machine.update_job(build, "job-1", "passed")

    @pytest.mark.asyncio
    async def test_canceling_every_unstarted_job_cancels_the_build(
        self, machine, notifier, store, repository
    ):
        build = await stored_build(store, repository)

        await machine.update_job(build, "job-1", "canceled")
        await machine.update_job(build, "job-2", "canceled")

        assert build.state == "canceled"
        assert build.duration is None
        assert emitted(notifier) == ["job:canceled", "job:canceled", "build:finished"]


class TestCancel:
    """cancel()"""

    @pytest.mark.asyncio
    async def test_cancel_running_build(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)
        await machine.update_job(build, "job-1", "started", at=T0)
        notifier.emit.reset_mock()

        await machine.cancel(build, at=T0 + timedelta(seconds=30))

        assert build.state == "canceled"
        assert build.duration == 30
        assert [job.state for job in build.matrix] == ["canceled", "canceled"]
        assert emitted(notifier) == ["job:canceled", "job:canceled", "build:canceled"]

        reloaded = await store.get_build(build.id)
        assert reloaded.state == "canceled"
        assert [job.state for job in reloaded.matrix] == ["canceled", "canceled"]

    @pytest.mark.asyncio
    async def test_cancel_created_build(self, machine, store, repository):
        build = await stored_build(store, repository)

        await machine.cancel(build)

        assert build.state == "canceled"
        assert build.finished_at == T0
        assert build.duration is None

    @pytest.mark.asyncio
    async def test_finished_jobs_keep_their_state(self, machine, store, repository):
        build = await stored_build(store, repository)
        await machine.update_job(build, "job-1", "started", at=T0)
        await machine.update_job(build, "job-1", "passed", at=T0)

        await machine.cancel(build)

        assert [job.state for job in build.matrix] == ["passed", "canceled"]

    @pytest.mark.asyncio
    async def test_cannot_cancel_finished_build(self, machine, store, repository):
        build = await stored_build(store, repository, jobs=1)
        await machine.update_job(build, "job-1", "started", at=T0)
        await machine.update_job(build, "job-1", "errored", at=T0)

        with pytest.raises(InvariantViolation):
            await machine.cancel(build)


class TestReset:
    """reset() and reset_job()"""

    async def finished_build(self, machine, store, repository):
        build = await stored_build(store, repository)
        for job_id in ("job-1", "job-2"):
            await machine.update_job(build, job_id, "started", at=T0)
            await machine.update_job(build, job_id, "failed", at=T0 + timedelta(seconds=5))
        assert build.state == "failed"
        return build

    @pytest.mark.asyncio
    async def test_reset_clears_lifecycle_fields(self, machine, notifier, store, repository):
        build = await self.finished_build(machine, store, repository)
        notifier.emit.reset_mock()

        await machine.reset(build)

        assert build.state == "created"
        assert build.started_at is None
        assert build.finished_at is None
        assert build.duration is None
        assert [job.state for job in build.matrix] == ["failed", "failed"]
        assert emitted(notifier) == ["build:created"]

        reloaded = await store.get_build(build.id)
        assert reloaded.state == "created"
        assert reloaded.duration is None

    @pytest.mark.asyncio
    async def test_reset_with_matrix_cascades(self, machine, notifier, store, repository):
        build = await self.finished_build(machine, store, repository)
        notifier.emit.reset_mock()

        await machine.reset(build, reset_matrix=True)

        assert [job.state for job in build.matrix] == ["created", "created"]
        assert all(job.started_at is None for job in build.matrix)
        assert emitted(notifier).count("build:created") == 1
        assert emitted(notifier).count("job:created") == 2

    @pytest.mark.asyncio
    async def test_reset_job_reopens_finished_build(self, machine, store, repository):
        build = await self.finished_build(machine, store, repository)

        await machine.reset_job(build, "job-2")

        assert build.state == "created"
        assert [job.state for job in build.matrix] == ["failed", "created"]

        # The restarted job finishes the build again
        await machine.update_job(build, "job-2", "started", at=T0)
        await machine.update_job(build, "job-2", "passed", at=T0 + timedelta(seconds=2))
        assert build.state == "failed"


class TestNotificationFailure:
    """A failing port never undoes a transition."""

    @pytest.mark.asyncio
    async def test_failed_emit_is_a_warning(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)
        notifier.emit.side_effect = RuntimeError("event bus down")

        with pytest.warns(NotificationWarning):
            await machine.update_job(build, "job-1", "started", at=T0)

        reloaded = await store.get_build(build.id)
        assert reloaded.state == "started"
        assert reloaded.matrix[0].state == "started"

    @pytest.mark.asyncio
    async def test_payload_identifies_the_source(self, machine, notifier, store, repository):
        build = await stored_build(store, repository)

        await machine.created(build)

        event_name, payload = notifier.emit.await_args.args
        assert event_name == "build:created"
        assert payload["repository_id"] == repository.id
        assert payload["build_id"] == build.id
        assert payload["number"] == "1"


class TestTimestamps:
    """Caller supplied transition times."""

    @pytest.mark.asyncio
    async def test_naive_time_is_read_as_utc(self, machine, store, repository):
        build = await stored_build(store, repository, jobs=1)
        await machine.update_job(build, "job-1", "started", at=T0)

        await machine.update_job(build, "job-1", "passed", at=datetime(2024, 3, 1, 9, 2))

        assert build.state == "passed"
        assert build.duration == 120
        assert build.finished_at == T0 + timedelta(minutes=2)

        reloaded = await store.get_build(build.id)
        assert reloaded.state == "passed"
        assert reloaded.matrix[0].finished_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_offset_time_is_converted_to_utc(self, machine, store, repository):
        build = await stored_build(store, repository, jobs=1)
        eastern = timezone(timedelta(hours=-5))

        await machine.update_job(
            build, "job-1", "started", at=datetime(2024, 3, 1, 4, 0, tzinfo=eastern)
        )

        assert build.started_at == T0
        assert build.started_at.utcoffset() == timedelta(0)

    @pytest.mark.asyncio
    async def test_naive_cancel_time(self, machine, store, repository):
        build = await stored_build(store, repository)
        await machine.update_job(build, "job-1", "started", at=T0)

        await machine.cancel(build, at=datetime(2024, 3, 1, 9, 0, 45))

        assert build.state == "canceled"
        assert build.duration == 45
