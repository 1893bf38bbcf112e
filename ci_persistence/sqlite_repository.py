"""
SQLite implementation of the build repository.

Uses aiosqlite for async operations. Multi-statement writes share one
connection, so they are serialized with an asyncio lock.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import asyncio
import json
import sqlite3
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from ci_common.config import dump_config, load_config
from ci_common.errors import AllocationConflict, NotFound
from ci_common.models import (
    TERMINAL_STATES,
    Build,
    Job,
    LifecycleEvent,
    Repository,
    as_utc,
)
from ci_common.repository import BuildRepository

BUILD_COLUMNS = (
    "id, repository_id, number, state, config, commit_sha, branch, event_type, "
    "pull_request_title, head_slug, base_slug, previous_state, started_at, "
    "finished_at, duration, created_at"
)

JOB_COLUMNS = (
    "id, build_id, repository_id, number, position, state, config, "
    "started_at, finished_at, created_at"
)

REPOSITORY_COLUMNS = "id, owner_name, name, private, last_build_number, created_at"

# Columns callers may change through update_build / update_job
BUILD_UPDATABLE = frozenset(
    {
        "state",
        "config",
        "previous_state",
        "pull_request_title",
        "started_at",
        "finished_at",
        "duration",
    }
)
JOB_UPDATABLE = frozenset({"state", "config", "started_at", "finished_at"})

# Reads the current maximum and writes the next number in one statement.
# The counter never goes down, so numbers of deleted builds are not reused.
ALLOCATE_SQL = """
    UPDATE repositories
    SET last_build_number = MAX(
        last_build_number,
        COALESCE(
            (SELECT MAX(CAST(number AS INTEGER)) FROM builds WHERE repository_id = ?),
            0
        )
    ) + 1
    WHERE id = ?
    RETURNING last_build_number
"""


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        # Stored as UTC text so ORDER BY sorts chronologically
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return dump_config(value)
    return value


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteBuildRepository(BuildRepository):
    """
    SQLite-based build storage implementation.

    Uses a single database file with multiple tables:
    - repositories: Repository records with the build number counter
    - builds: Build metadata and normalized config
    - jobs: Matrix jobs with foreign key to builds
    - events: Lifecycle events announced for builds and jobs
    """

    def __init__(self, db_path: str = "ci_builds.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - repositories table: Repository records (unique owner_name/name)
        - builds table: Builds, unique per (repository_id, number)
        - jobs table: Jobs with foreign key to builds
        - events table: Sequential lifecycle events per repository
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS repositories (
                id TEXT PRIMARY KEY,
                owner_name TEXT NOT NULL,
                name TEXT NOT NULL,
                private INTEGER NOT NULL DEFAULT 0,
                last_build_number INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE (owner_name, name)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS builds (
                id TEXT PRIMARY KEY,
                repository_id TEXT NOT NULL,
                number TEXT NOT NULL,
                state TEXT NOT NULL,
                config TEXT,
                commit_sha TEXT,
                branch TEXT,
                event_type TEXT NOT NULL DEFAULT 'push',
                pull_request_title TEXT,
                head_slug TEXT,
                base_slug TEXT,
                previous_state TEXT,
                started_at TEXT,
                finished_at TEXT,
                duration INTEGER,
                created_at TEXT NOT NULL,
                UNIQUE (repository_id, number),
                FOREIGN KEY (repository_id) REFERENCES repositories(id)
            )
        """)

        # Create index for branch history lookups
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_builds_repository_branch
            ON builds(repository_id, branch, finished_at)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                build_id TEXT NOT NULL,
                repository_id TEXT NOT NULL,
                number TEXT NOT NULL,
                position INTEGER NOT NULL,
                state TEXT NOT NULL,
                config TEXT,
                started_at TEXT,
                finished_at TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (build_id) REFERENCES builds(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_build_id
            ON jobs(build_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                repository_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                event TEXT NOT NULL,
                data TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_repository_id
            ON events(repository_id)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Row mapping

    def _row_to_repository(self, row: Any) -> Repository:
        repository_id, owner_name, name, private, last_number, created_at_str = row
        return Repository(
            id=repository_id,
            owner_name=owner_name,
            name=name,
            private=bool(private),
            last_build_number=last_number,
            created_at=datetime.fromisoformat(created_at_str),
        )

    def _row_to_build(self, row: Any) -> Build:
        (
            build_id,
            repository_id,
            number,
            state,
            config,
            commit_sha,
            branch,
            event_type,
            pull_request_title,
            head_slug,
            base_slug,
            previous_state,
            started_at_str,
            finished_at_str,
            duration,
            created_at_str,
        ) = row
        return Build(
            id=build_id,
            repository_id=repository_id,
            number=number,
            state=state,
            config=load_config(config),
            commit=commit_sha,
            branch=branch,
            event_type=event_type,
            pull_request_title=pull_request_title,
            head_slug=head_slug,
            base_slug=base_slug,
            previous_state=previous_state,
            started_at=_parse_time(started_at_str),
            finished_at=_parse_time(finished_at_str),
            duration=duration,
            created_at=datetime.fromisoformat(created_at_str),
        )

    def _row_to_job(self, row: Any) -> Job:
        (
            job_id,
            build_id,
            repository_id,
            number,
            position,
            state,
            config,
            started_at_str,
            finished_at_str,
            created_at_str,
        ) = row
        return Job(
            id=job_id,
            build_id=build_id,
            repository_id=repository_id,
            number=number,
            position=position,
            state=state,
            config=load_config(config),
            started_at=_parse_time(started_at_str),
            finished_at=_parse_time(finished_at_str),
            created_at=datetime.fromisoformat(created_at_str),
        )

    async def _fetch_builds(self, sql: str, params: tuple[Any, ...]) -> list[Build]:
        conn = await self._get_connection()
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        # Don't load matrices for listing efficiency
        return [self._row_to_build(row) for row in rows]

    # Repository records

    async def create_repository(self, repository: Repository) -> None:
        """
        Create a new repository record.

        Args:
            repository: Repository object to persist
        """
        conn = await self._get_connection()

        async with self._write_lock:
            await conn.execute(
                f"INSERT INTO repositories ({REPOSITORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    repository.id,
                    repository.owner_name,
                    repository.name,
                    1 if repository.private else 0,
                    repository.last_build_number,
                    _to_db(repository.created_at),
                ),
            )
            await conn.commit()

    async def get_repository(self, repository_id: str) -> Repository | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE id = ?",
            (repository_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_repository(row) if row else None

    async def get_repository_by_slug(
        self, owner_name: str, name: str
    ) -> Repository | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {REPOSITORY_COLUMNS} FROM repositories WHERE owner_name = ? AND name = ?",
            (owner_name, name),
        )
        row = await cursor.fetchone()
        return self._row_to_repository(row) if row else None

    # Build numbers

    async def allocate_build_number(self, repository_id: str) -> int:
        """
        Reserve the next build number with a single UPDATE ... RETURNING.

        Args:
            repository_id: Repository to allocate for

        Returns:
            The reserved number
        """
        conn = await self._get_connection()

        async with self._write_lock:
            try:
                cursor = await conn.execute(ALLOCATE_SQL, (repository_id, repository_id))
                row = await cursor.fetchone()
                await conn.commit()
            except sqlite3.OperationalError as e:
                # Another process holds the write lock on the database file
                await conn.rollback()
                raise AllocationConflict(
                    f"Could not reserve a build number: {e}",
                    repository_id=repository_id,
                    operation="allocate_build_number",
                ) from e

        if row is None:
            raise NotFound(
                "Repository not found",
                repository_id=repository_id,
                operation="allocate_build_number",
            )
        return row[0]

    async def find_max_build_number(self, repository_id: str) -> int:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT MAX(
                r.last_build_number,
                COALESCE(
                    (SELECT MAX(CAST(number AS INTEGER)) FROM builds WHERE repository_id = r.id),
                    0
                )
            )
            FROM repositories r
            WHERE r.id = ?
            """,
            (repository_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFound(
                "Repository not found",
                repository_id=repository_id,
                operation="find_max_build_number",
            )
        return row[0]

    # Builds and jobs

    async def create_build(self, build: Build) -> None:
        """
        Insert a build and its matrix in one transaction.

        Args:
            build: Build with number and matrix populated
        """
        conn = await self._get_connection()

        async with self._write_lock:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO builds ({BUILD_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        build.id,
                        build.repository_id,
                        build.number,
                        build.state,
                        dump_config(build.config),
                        build.commit,
                        build.branch,
                        build.event_type,
                        build.pull_request_title,
                        build.head_slug,
                        build.base_slug,
                        build.previous_state,
                        _to_db(build.started_at),
                        _to_db(build.finished_at),
                        build.duration,
                        _to_db(build.created_at),
                    ),
                )
                for job in build.matrix:
                    await conn.execute(
                        f"""
                        INSERT INTO jobs ({JOB_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            job.id,
                            job.build_id,
                            job.repository_id,
                            job.number,
                            job.position,
                            job.state,
                            dump_config(job.config),
                            _to_db(job.started_at),
                            _to_db(job.finished_at),
                            _to_db(job.created_at),
                        ),
                    )
                await conn.commit()
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                if "builds.number" in str(e):
                    raise AllocationConflict(
                        f"Build number {build.number} is already taken",
                        repository_id=build.repository_id,
                        build_id=build.id,
                        operation="create_build",
                    ) from e
                raise

    async def get_build(self, build_id: str) -> Build | None:
        """
        Retrieve a build with all its jobs.

        Args:
            build_id: ID of the build to retrieve

        Returns:
            Build object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {BUILD_COLUMNS} FROM builds WHERE id = ?", (build_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        build = self._row_to_build(row)
        build.matrix = await self.list_jobs(build_id)
        return build

    async def update_build(self, build_id: str, fields: dict[str, Any]) -> None:
        await self._update("builds", BUILD_UPDATABLE, build_id, fields)

    async def delete_build(self, build_id: str) -> None:
        conn = await self._get_connection()

        async with self._write_lock:
            await conn.execute("DELETE FROM jobs WHERE build_id = ?", (build_id,))
            await conn.execute("DELETE FROM builds WHERE id = ?", (build_id,))
            await conn.commit()

    async def get_job(self, job_id: str) -> Job | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def list_jobs(self, build_id: str) -> list[Job]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE build_id = ? ORDER BY position",
            (build_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def update_job(self, job_id: str, fields: dict[str, Any]) -> None:
        await self._update("jobs", JOB_UPDATABLE, job_id, fields)

    async def _update(
        self,
        table: str,
        allowed: frozenset[str],
        record_id: str,
        fields: dict[str, Any],
    ) -> None:
        """Build dynamic UPDATE SQL for the given fields."""
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update {table} fields: {sorted(unknown)}")
        if not fields:
            return

        updates = [f"{name} = ?" for name in fields]
        params = [_to_db(value) for value in fields.values()]
        params.append(record_id)  # WHERE clause parameter

        conn = await self._get_connection()
        async with self._write_lock:
            await conn.execute(
                f"UPDATE {table} SET {', '.join(updates)} WHERE id = ?", params
            )
            await conn.commit()

    # Build queries

    async def query_builds(
        self,
        repository_id: str,
        branch: str | None = None,
        terminal_only: bool = False,
        limit: int | None = None,
    ) -> list[Build]:
        conditions = ["repository_id = ?"]
        params: list[Any] = [repository_id]

        if branch is not None:
            conditions.append("branch = ?")
            params.append(branch)

        if terminal_only:
            states = sorted(TERMINAL_STATES)
            conditions.append(f"state IN ({', '.join('?' for _ in states)})")
            params.extend(states)

        sql = f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE {' AND '.join(conditions)}
            ORDER BY finished_at IS NULL, finished_at DESC, CAST(number AS INTEGER) DESC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return await self._fetch_builds(sql, tuple(params))

    async def recent_builds(self, repository_id: str, limit: int = 25) -> list[Build]:
        return await self._fetch_builds(
            f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE repository_id = ? AND state != 'created' AND started_at IS NOT NULL
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (repository_id, limit),
        )

    async def was_started(self, repository_id: str) -> list[Build]:
        return await self._fetch_builds(
            f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE repository_id = ? AND started_at IS NOT NULL
            ORDER BY CAST(number AS INTEGER) DESC
            """,
            (repository_id,),
        )

    async def builds_on_branches(
        self, repository_id: str, branches: list[str] | str
    ) -> list[Build]:
        if isinstance(branches, str):
            branches = [name.strip() for name in branches.split(",")]
        branches = [name for name in branches if name]
        if not branches:
            return []
        placeholders = ", ".join("?" for _ in branches)
        return await self._fetch_builds(
            f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE repository_id = ?
              AND branch IN ({placeholders})
              AND event_type != 'pull_request'
            ORDER BY CAST(number AS INTEGER) DESC
            """,
            (repository_id, *branches),
        )

    async def builds_by_event_type(
        self, repository_id: str, event_type: str
    ) -> list[Build]:
        return await self._fetch_builds(
            f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE repository_id = ? AND event_type = ?
            ORDER BY CAST(number AS INTEGER) DESC
            """,
            (repository_id, event_type),
        )

    async def older_than(
        self, repository_id: str, number: int | None = None, per_page: int = 25
    ) -> list[Build]:
        if number is None:
            return await self._fetch_builds(
                f"""
                SELECT {BUILD_COLUMNS}
                FROM builds
                WHERE repository_id = ?
                ORDER BY CAST(number AS INTEGER) DESC
                LIMIT ?
                """,
                (repository_id, per_page),
            )
        return await self._fetch_builds(
            f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE repository_id = ? AND CAST(number AS INTEGER) < ?
            ORDER BY CAST(number AS INTEGER) DESC
            LIMIT ?
            """,
            (repository_id, int(number), per_page),
        )

    async def paged(
        self, repository_id: str, page: int = 1, per_page: int = 25
    ) -> list[Build]:
        offset = (max(page, 1) - 1) * per_page
        return await self._fetch_builds(
            f"""
            SELECT {BUILD_COLUMNS}
            FROM builds
            WHERE repository_id = ?
            ORDER BY CAST(number AS INTEGER)
            LIMIT ? OFFSET ?
            """,
            (repository_id, per_page, offset),
        )

    async def last_build(self, repository_id: str) -> Build | None:
        builds = await self.older_than(repository_id, per_page=1)
        return builds[0] if builds else None

    async def branches(self, repository_id: str) -> list[str]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT DISTINCT branch
            FROM builds
            WHERE repository_id = ? AND branch IS NOT NULL
            ORDER BY branch
            """,
            (repository_id,),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    # Lifecycle events

    async def add_event(self, event: LifecycleEvent) -> None:
        """
        Record a lifecycle event.

        Args:
            event: Event to add; its id and created_at are filled in
        """
        conn = await self._get_connection()

        created_at = event.created_at or datetime.now(UTC)

        async with self._write_lock:
            cursor = await conn.execute(
                """
                INSERT INTO events (repository_id, source_type, source_id, event, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.repository_id,
                    event.source_type,
                    event.source_id,
                    event.event,
                    json.dumps(event.data, default=str),
                    _to_db(created_at),
                ),
            )
            await conn.commit()

        event.id = cursor.lastrowid
        event.created_at = created_at

    async def find_events(self, repository_id: str) -> list[LifecycleEvent]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, repository_id, source_type, source_id, event, data, created_at
            FROM events
            WHERE repository_id = ?
            ORDER BY id
            """,
            (repository_id,),
        )
        rows = await cursor.fetchall()

        events = []
        for row in rows:
            (
                event_id,
                repo_id,
                source_type,
                source_id,
                event_name,
                data,
                created_at_str,
            ) = row
            events.append(
                LifecycleEvent(
                    id=event_id,
                    repository_id=repo_id,
                    source_type=source_type,
                    source_id=source_id,
                    event=event_name,
                    data=json.loads(data) if data else {},
                    created_at=datetime.fromisoformat(created_at_str),
                )
            )

        return events
