"""
Unit tests for ci_common.models.

Tests the Build, Job and Repository models: derived display helpers,
pull request gating and serialization.
"""

from datetime import UTC, datetime

import pytest

from ci_common.models import Build, Job, LifecycleEvent, Repository


def make_build(**kwargs) -> Build:
    return Build(id="build-1", repository_id="repo-1", **kwargs)


class TestBuildStateHelpers:
    """Test suite for pending/passed/color."""

    @pytest.mark.parametrize("state", ["created", "started"])
    def test_non_terminal_states_are_pending(self, state):
        build = make_build(state=state)

        assert build.pending
        assert not build.finished
        assert build.color == "yellow"

    def test_passed_build_is_green(self):
        build = make_build(state="passed")

        assert build.passed
        assert not build.pending
        assert build.color == "green"

    @pytest.mark.parametrize("state", ["failed", "errored", "canceled"])
    def test_failure_states_are_red(self, state):
        build = make_build(state=state)

        assert build.finished
        assert not build.passed
        assert build.color == "red"

    def test_unsaved_build_has_empty_config(self):
        assert make_build().config == {}


class TestSecureEnvEnabled:
    """Test suite for the fork pull request gate."""

    def test_push_build_gets_secure_env(self):
        assert make_build(event_type="push").secure_env_enabled

    def test_api_and_cron_builds_get_secure_env(self):
        assert make_build(event_type="api").secure_env_enabled
        assert make_build(event_type="cron").secure_env_enabled

    def test_pull_request_from_same_repository_gets_secure_env(self):
        build = make_build(
            event_type="pull_request",
            head_slug="acme/widgets",
            base_slug="acme/widgets",
        )

        assert build.pull_request
        assert build.same_repo_pull_request
        assert build.secure_env_enabled

    def test_pull_request_from_fork_does_not_get_secure_env(self):
        build = make_build(
            event_type="pull_request",
            head_slug="mallory/widgets",
            base_slug="acme/widgets",
        )

        assert not build.same_repo_pull_request
        assert not build.secure_env_enabled

    def test_pull_request_with_unknown_head_counts_as_fork(self):
        build = make_build(event_type="pull_request", base_slug="acme/widgets")

        assert not build.secure_env_enabled

    def test_slug_case_does_not_make_a_fork(self):
        build = make_build(
            event_type="pull_request",
            head_slug="Acme/Widgets",
            base_slug="acme/widgets",
        )

        assert build.same_repo_pull_request
        assert build.secure_env_enabled

    def test_pull_request_with_unknown_base_counts_as_fork(self):
        build = make_build(event_type="pull_request", head_slug="acme/widgets")

        assert not build.secure_env_enabled


class TestRepository:
    """Test suite for Repository."""

    def test_slug(self):
        repository = Repository(id="r", owner_name="acme", name="widgets")
        assert repository.slug == "acme/widgets"

    def test_public_source_url(self):
        repository = Repository(id="r", owner_name="acme", name="widgets")
        assert repository.source_url == "git://github.com/acme/widgets.git"

    def test_private_source_url(self):
        repository = Repository(id="r", owner_name="acme", name="widgets", private=True)
        assert repository.source_url == "git@github.com:acme/widgets.git"


class TestSerialization:
    """Test suite for to_dict."""

    def test_build_to_dict_includes_matrix(self):
        started = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        job = Job(
            id="job-1",
            build_id="build-1",
            repository_id="repo-1",
            number="3.1",
            position=1,
            state="started",
            started_at=started,
        )
        build = make_build(number="3", state="started", started_at=started, matrix=[job])

        result = build.to_dict()

        assert result["number"] == "3"
        assert result["started_at"] == started.isoformat()
        assert result["finished_at"] is None
        assert result["matrix"][0]["number"] == "3.1"
        assert result["matrix"][0]["state"] == "started"

    def test_job_finished(self):
        job = Job(id="j", build_id="b", repository_id="r", number="1.1", position=1)
        assert not job.finished

        job.state = "errored"
        assert job.finished

    def test_event_to_dict(self):
        event = LifecycleEvent(
            repository_id="repo-1",
            source_type="build",
            source_id="build-1",
            event="build:created",
            data={"number": "1"},
        )

        result = event.to_dict()

        assert result["event"] == "build:created"
        assert result["data"] == {"number": "1"}
        assert result["id"] is None
        assert result["created_at"] is None
