"""
Admin CLI for operating the CI build core.

Provides commands for repositories, builds, jobs and lifecycle events
against a local SQLite database.
"""

import asyncio
import json
import logging
import os
import sys
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import yaml

from ci_common.errors import CIError
from ci_common.models import EVENT_TYPES, JOB_STATES, Build, BuildRequest, Repository
from ci_common.ports import StaticFeatureFlags
from ci_controller.controller import BuildController
from ci_controller.history import BranchHistoryResolver
from ci_persistence.event_log import EventLogNotifier
from ci_persistence.secret_vault import FernetSecretVault
from ci_persistence.sqlite_repository import SQLiteBuildRepository

T = TypeVar("T")


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("CI_DB_PATH", str(Path.home() / ".ci" / "builds.db"))


def get_repository() -> SQLiteBuildRepository:
    """Get the repository instance."""
    db_path = Path(get_db_path())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return SQLiteBuildRepository(str(db_path))


def get_vault() -> FernetSecretVault:
    """Get the secret vault, keyed from CI_VAULT_KEY."""
    master_secret = os.environ.get("CI_VAULT_KEY")
    if not master_secret:
        click.echo("Error: CI_VAULT_KEY must be set", err=True)
        sys.exit(1)
    return FernetSecretVault(master_secret)


def get_controller(repo: SQLiteBuildRepository) -> BuildController:
    """Wire a build controller around the repository."""
    return BuildController(
        repository=repo,
        vault=get_vault(),
        notifier=EventLogNotifier(repo),
        feature_flags=StaticFeatureFlags.from_env(),
    )


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def with_repository(action: Callable[[SQLiteBuildRepository], Awaitable[T]]) -> T:
    """Run an action against an initialized repository, reporting core errors."""

    async def run():
        repo = get_repository()
        await repo.initialize()

        try:
            return await action(repo)
        except CIError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        finally:
            await repo.close()

    return run_async(run())


def load_document(path: str | None) -> dict[str, Any]:
    """Read a YAML or JSON mapping from a file."""
    if path is None:
        return {}
    with open(path) as f:
        document = yaml.safe_load(f)
    if document is None:
        return {}
    if not isinstance(document, dict):
        click.echo(f"Error: {path} does not contain a mapping", err=True)
        sys.exit(1)
    return document


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def echo_build(build: Build, config: dict[str, Any]) -> None:
    """Print build details with its (display) config."""
    click.echo("\nBuild Details:")
    click.echo(f"  ID:             {build.id}")
    click.echo(f"  Number:         {build.number}")
    click.echo(f"  State:          {build.state}")
    click.echo(f"  Previous state: {build.previous_state or '-'}")
    click.echo(f"  Branch:         {build.branch}")
    click.echo(f"  Commit:         {build.commit}")
    click.echo(f"  Event:          {build.event_type}")
    if build.pull_request_title:
        click.echo(f"  Pull request:   {build.pull_request_title}")
    if build.duration is not None:
        click.echo(f"  Duration:       {build.duration}s")
    click.echo("  Config:")
    for line in json.dumps(config, indent=2).splitlines():
        click.echo(f"    {line}")
    click.echo(f"\n{'Job ID':<38} {'Number':<10} {'State':<10}")
    click.echo("-" * 60)
    for job in build.matrix:
        click.echo(f"{job.id:<38} {job.number:<10} {job.state:<10}")
    click.echo()


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Logging level (default: WARNING)",
)
def cli(log_level: str):
    """CI Admin - Operate repositories, builds and jobs of the CI system."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.group()
def repo():
    """Manage repositories."""
    pass


@cli.group()
def build():
    """Manage builds."""
    pass


@cli.group()
def job():
    """Manage jobs."""
    pass


# ============================================================================
# Repository Commands
# ============================================================================


@repo.command("create")
@click.option("--owner", required=True, help="Repository owner name")
@click.option("--name", required=True, help="Repository name")
@click.option("--private", is_flag=True, help="Repository is private")
def repo_create(owner: str, name: str, private: bool):
    """Create a new repository."""

    async def create(repo_store: SQLiteBuildRepository):
        existing = await repo_store.get_repository_by_slug(owner, name)
        if existing:
            click.echo(f"Error: Repository {existing.slug} already exists", err=True)
            sys.exit(1)

        repository = Repository(
            id=str(uuid.uuid4()), owner_name=owner, name=name, private=private
        )
        await repo_store.create_repository(repository)

        click.echo("✓ Repository created successfully")
        click.echo(f"  ID:   {repository.id}")
        click.echo(f"  Slug: {repository.slug}")

    with_repository(create)


@repo.command("show")
@click.argument("repository_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def repo_show(repository_id: str, json_output: bool):
    """Show repository details."""

    async def show(repo_store: SQLiteBuildRepository):
        repository = await repo_store.get_repository(repository_id)
        if not repository:
            click.echo(f"Error: Repository not found: {repository_id}", err=True)
            sys.exit(1)

        if json_output:
            echo_json(repository.to_dict())
            return

        click.echo("\nRepository Details:")
        click.echo(f"  ID:         {repository.id}")
        click.echo(f"  Slug:       {repository.slug}")
        click.echo(f"  Source:     {repository.source_url}")
        click.echo(f"  Last build: {repository.last_build_number}")
        click.echo()

    with_repository(show)


@repo.command("encrypt")
@click.argument("repository_id")
@click.argument("value")
def repo_encrypt(repository_id: str, value: str):
    """Encrypt a KEY=value pair as a secure env entry for a repository."""

    async def encrypt(repo_store: SQLiteBuildRepository):
        repository = await repo_store.get_repository(repository_id)
        if not repository:
            click.echo(f"Error: Repository not found: {repository_id}", err=True)
            sys.exit(1)

        marker = get_controller(repo_store).obfuscator.secure_env(repository.id, value)
        click.echo(yaml.safe_dump(marker, default_flow_style=True).strip())

    with_repository(encrypt)


@repo.command("branches")
@click.argument("repository_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def repo_branches(repository_id: str, json_output: bool):
    """List branches with their last finished build."""

    async def list_branches(repo_store: SQLiteBuildRepository):
        history = BranchHistoryResolver(repo_store)
        builds = await history.last_finished_builds_by_branches(repository_id)

        if json_output:
            echo_json(
                [
                    {"branch": b.branch, "number": b.number, "state": b.state}
                    for b in builds
                ]
            )
            return

        if not builds:
            click.echo("No finished builds found.")
            return

        click.echo(f"\n{'Branch':<30} {'Build':<10} {'State':<10}")
        click.echo("-" * 52)
        for b in builds:
            click.echo(f"{b.branch:<30} {b.number:<10} {b.state:<10}")
        click.echo()

    with_repository(list_branches)


# ============================================================================
# Build Commands
# ============================================================================


@build.command("create")
@click.option("--repo-id", "repository_id", required=True, help="Repository ID")
@click.option("--commit", required=True, help="Commit sha")
@click.option("--branch", required=True, help="Branch of the commit")
@click.option(
    "--event-type",
    default="push",
    type=click.Choice(EVENT_TYPES),
    help="What triggered the build (default: push)",
)
@click.option("--config", "config_path", type=click.Path(exists=True), help="Build config (YAML or JSON)")
@click.option("--payload", "payload_path", type=click.Path(exists=True), help="Event payload (YAML or JSON)")
def build_create(
    repository_id: str,
    commit: str,
    branch: str,
    event_type: str,
    config_path: str | None,
    payload_path: str | None,
):
    """Create a build and its job matrix."""
    request = BuildRequest(
        repository_id=repository_id,
        commit=commit,
        branch=branch,
        event_type=event_type,
        config=load_document(config_path),
        payload=load_document(payload_path),
    )

    async def create(repo_store: SQLiteBuildRepository):
        controller = get_controller(repo_store)
        new_build = await controller.create_build(request)

        click.echo("✓ Build created successfully")
        click.echo(f"  ID:     {new_build.id}")
        click.echo(f"  Number: {new_build.number}")
        click.echo(f"  Jobs:   {len(new_build.matrix)}")

    with_repository(create)


@build.command("show")
@click.argument("build_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def build_show(build_id: str, json_output: bool):
    """Show build details with its obfuscated config."""

    async def show(repo_store: SQLiteBuildRepository):
        controller = get_controller(repo_store)
        found = await controller.get_build(build_id)
        config = controller.obfuscator.obfuscate(found.config, found.repository_id)

        if json_output:
            data = found.to_dict()
            data["config"] = config
            for job_data, found_job in zip(data["matrix"], found.matrix):
                job_data["config"] = controller.obfuscator.obfuscate(
                    found_job.config, found.repository_id
                )
            echo_json(data)
            return

        echo_build(found, config)

    with_repository(show)


@build.command("list")
@click.argument("repository_id")
@click.option("--page", default=1, show_default=True, help="Page number")
@click.option("--per-page", default=25, show_default=True, help="Builds per page")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def build_list(repository_id: str, page: int, per_page: int, json_output: bool):
    """List builds of a repository."""

    async def list_builds(repo_store: SQLiteBuildRepository):
        builds = await repo_store.paged(repository_id, page=page, per_page=per_page)

        if json_output:
            echo_json([b.to_dict() for b in builds])
            return

        if not builds:
            click.echo("No builds found.")
            return

        click.echo(f"\n{'ID':<38} {'Number':<8} {'Branch':<20} {'State':<10}")
        click.echo("-" * 80)
        for b in builds:
            click.echo(f"{b.id:<38} {b.number:<8} {b.branch or '-':<20} {b.state:<10}")
        click.echo()

    with_repository(list_builds)


@build.command("config")
@click.argument("build_id")
@click.option("--raw", is_flag=True, help="Show the stored config without obfuscation")
def build_config(build_id: str, raw: bool):
    """Print a build's config as JSON."""

    async def show_config(repo_store: SQLiteBuildRepository):
        controller = get_controller(repo_store)
        if raw:
            found = await controller.get_build(build_id)
            echo_json(found.config)
        else:
            echo_json(await controller.obfuscated_config(build_id))

    with_repository(show_config)


@build.command("reset")
@click.argument("build_id")
@click.option("--matrix", "reset_matrix", is_flag=True, help="Also reset every job")
def build_reset(build_id: str, reset_matrix: bool):
    """Reset a build to created."""

    async def reset(repo_store: SQLiteBuildRepository):
        reset_build = await get_controller(repo_store).reset_build(
            build_id, reset_matrix=reset_matrix
        )
        click.echo(f"✓ Build {reset_build.number} reset")

    with_repository(reset)


@build.command("cancel")
@click.argument("build_id")
def build_cancel(build_id: str):
    """Cancel a build and its unfinished jobs."""

    async def cancel(repo_store: SQLiteBuildRepository):
        canceled = await get_controller(repo_store).cancel_build(build_id)
        click.echo(f"✓ Build {canceled.number} canceled")

    with_repository(cancel)


# ============================================================================
# Job Commands
# ============================================================================


@job.command("update")
@click.argument("job_id")
@click.argument("state", type=click.Choice(JOB_STATES))
def job_update(job_id: str, state: str):
    """Record a job state change."""

    async def update(repo_store: SQLiteBuildRepository):
        updated = await get_controller(repo_store).update_job(job_id, state)
        click.echo(f"✓ Job {job_id} is {state}")
        click.echo(f"  Build {updated.number}: {updated.state}")

    with_repository(update)


@job.command("reset")
@click.argument("job_id")
def job_reset(job_id: str):
    """Reset a job to created."""

    async def reset(repo_store: SQLiteBuildRepository):
        updated = await get_controller(repo_store).reset_job(job_id)
        click.echo(f"✓ Job {job_id} reset")
        click.echo(f"  Build {updated.number}: {updated.state}")

    with_repository(reset)


# ============================================================================
# Event Commands
# ============================================================================


@cli.command("events")
@click.argument("repository_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def events(repository_id: str, json_output: bool):
    """List lifecycle events of a repository."""

    async def list_events(repo_store: SQLiteBuildRepository):
        found = await repo_store.find_events(repository_id)

        if json_output:
            echo_json([event.to_dict() for event in found])
            return

        if not found:
            click.echo("No events found.")
            return

        for event in found:
            click.echo(f"{event.created_at.isoformat()}  {event.event:<16} {event.source_id}")

    with_repository(list_events)


if __name__ == "__main__":
    cli()
