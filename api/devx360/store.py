"""Team, metrics and insight-job persistence.

Two implementations share the ``TeamStore`` protocol: ``PostgresTeamStore``
(asyncpg, JSONB documents) for deployments and ``MemoryTeamStore`` for local
runs and tests. Both guarantee the same two atomicity rules:

- ``replace_metrics`` swaps the whole metrics document in one step, and only
  if the team still points at the repository the record was computed for;
- ``transition_insight`` is a compare-and-swap on the job status. A
  ``pending`` job last touched before ``stale_before`` also counts as a match,
  so a job orphaned by a crash or shutdown can be taken over.
"""

from __future__ import annotations

import asyncio
import copy
import datetime as dt
import json
import logging
from typing import Any, Awaitable, Callable, Collection, Protocol

import asyncpg

from devx360.config import Settings
from devx360.db import ensure_schema, init_pool
from devx360.models import InsightJob, JobStatus, Team, TeamMetrics, utcnow

logger = logging.getLogger(__name__)


class TeamStore(Protocol):
    async def ping(self) -> bool: ...

    async def list_teams(self) -> list[Team]: ...

    async def get_team(self, team_id: str) -> Team | None: ...

    async def save_team(self, team: Team) -> None: ...

    async def delete_team(self, team_id: str) -> bool: ...

    async def get_metrics(self, team_id: str) -> TeamMetrics | None: ...

    async def list_metrics(self) -> list[TeamMetrics]: ...

    async def replace_metrics(self, record: TeamMetrics) -> bool: ...

    async def record_failure(self, team_id: str, message: str) -> None: ...

    async def get_insight_job(self, team_id: str) -> InsightJob: ...

    async def transition_insight(
        self,
        team_id: str,
        allowed_from: Collection[JobStatus],
        job: InsightJob,
        stale_before: dt.datetime | None = None,
    ) -> tuple[bool, InsightJob]: ...


class MemoryTeamStore:
    """In-process store; every read and write goes through copies."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._teams: dict[str, Team] = {}
        self._metrics: dict[str, TeamMetrics] = {}
        self._jobs: dict[str, InsightJob] = {}

    async def ping(self) -> bool:
        return True

    async def list_teams(self) -> list[Team]:
        async with self._lock:
            return list(self._teams.values())

    async def get_team(self, team_id: str) -> Team | None:
        async with self._lock:
            return self._teams.get(team_id)

    async def save_team(self, team: Team) -> None:
        async with self._lock:
            self._teams[team.id] = team

    async def delete_team(self, team_id: str) -> bool:
        async with self._lock:
            self._metrics.pop(team_id, None)
            self._jobs.pop(team_id, None)
            return self._teams.pop(team_id, None) is not None

    async def get_metrics(self, team_id: str) -> TeamMetrics | None:
        async with self._lock:
            record = self._metrics.get(team_id)
            return copy.deepcopy(record) if record else None

    async def list_metrics(self) -> list[TeamMetrics]:
        async with self._lock:
            return [copy.deepcopy(self._metrics[k]) for k in sorted(self._metrics)]

    async def replace_metrics(self, record: TeamMetrics) -> bool:
        async with self._lock:
            team = self._teams.get(record.team_id)
            if team is None or team.repository_url != record.repository_url:
                return False
            self._metrics[record.team_id] = copy.deepcopy(record)
            return True

    async def record_failure(self, team_id: str, message: str) -> None:
        async with self._lock:
            if team_id not in self._teams:
                return
            record = self._metrics.setdefault(team_id, TeamMetrics(team_id=team_id))
            record.last_error = message
            record.last_error_at = utcnow()

    async def get_insight_job(self, team_id: str) -> InsightJob:
        async with self._lock:
            return copy.copy(self._jobs.get(team_id) or InsightJob(team_id=team_id))

    async def transition_insight(
        self,
        team_id: str,
        allowed_from: Collection[JobStatus],
        job: InsightJob,
        stale_before: dt.datetime | None = None,
    ) -> tuple[bool, InsightJob]:
        async with self._lock:
            current = self._jobs.get(team_id) or InsightJob(team_id=team_id)
            orphaned = (
                stale_before is not None
                and current.status is JobStatus.PENDING
                and current.updated_at is not None
                and current.updated_at < stale_before
            )
            if team_id not in self._teams or not (current.status in allowed_from or orphaned):
                return False, copy.copy(current)
            stored = copy.copy(job)
            stored.updated_at = stored.updated_at or utcnow()
            self._jobs[team_id] = stored
            return True, copy.copy(stored)


def _loads(value: Any) -> Any:
    if value is None or not isinstance(value, (str, bytes)):
        return value
    return json.loads(value)


def _team_from_row(row: Any) -> Team:
    return Team(
        id=row["id"],
        name=row["name"],
        members=frozenset(_loads(row["members"]) or []),
        repository_url=row["repository_url"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _metrics_from_row(row: Any) -> TeamMetrics:
    return TeamMetrics(
        team_id=row["team_id"],
        repository_url=row["repository_url"],
        snapshot=_loads(row["snapshot"]),
        metrics=_loads(row["metrics"]) or {},
        complexity=_loads(row["complexity"]),
        refreshed_at=row["refreshed_at"],
        last_error=row["last_error"],
        last_error_at=row["last_error_at"],
    )


def _job_from_row(row: Any) -> InsightJob:
    return InsightJob(
        team_id=row["team_id"],
        status=JobStatus(row["status"]),
        progress=row["progress"],
        result=row["result"],
        error=row["error"],
        updated_at=row["updated_at"],
    )


class PostgresTeamStore:
    """asyncpg-backed store; JSON documents live in JSONB columns."""

    def __init__(self, pool: asyncpg.pool.Pool) -> None:
        self._pool = pool

    async def ping(self) -> bool:
        async with self._pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True

    async def list_teams(self) -> list[Team]:
        query = """
        SELECT id, name, members, repository_url, created_at, updated_at
        FROM teams
        ORDER BY created_at ASC, id ASC;
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [_team_from_row(row) for row in rows]

    async def get_team(self, team_id: str) -> Team | None:
        query = """
        SELECT id, name, members, repository_url, created_at, updated_at
        FROM teams
        WHERE id = $1;
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, team_id)
        return _team_from_row(row) if row else None

    async def save_team(self, team: Team) -> None:
        query = """
        INSERT INTO teams (id, name, members, repository_url, created_at, updated_at)
        VALUES ($1, $2, $3::jsonb, $4, $5, $6)
        ON CONFLICT (id) DO UPDATE SET
            name = EXCLUDED.name,
            members = EXCLUDED.members,
            repository_url = EXCLUDED.repository_url,
            updated_at = EXCLUDED.updated_at;
        """
        now = utcnow()
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                team.id,
                team.name,
                json.dumps(sorted(team.members)),
                team.repository_url,
                team.created_at or now,
                team.updated_at or now,
            )

    async def delete_team(self, team_id: str) -> bool:
        async with self._pool.acquire() as conn:
            deleted = await conn.fetchval("DELETE FROM teams WHERE id = $1 RETURNING id;", team_id)
        return deleted is not None

    async def get_metrics(self, team_id: str) -> TeamMetrics | None:
        query = """
        SELECT team_id, repository_url, snapshot, metrics, complexity, refreshed_at, last_error, last_error_at
        FROM team_metrics
        WHERE team_id = $1;
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, team_id)
        return _metrics_from_row(row) if row else None

    async def list_metrics(self) -> list[TeamMetrics]:
        query = """
        SELECT team_id, repository_url, snapshot, metrics, complexity, refreshed_at, last_error, last_error_at
        FROM team_metrics
        ORDER BY team_id ASC;
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return [_metrics_from_row(row) for row in rows]

    async def replace_metrics(self, record: TeamMetrics) -> bool:
        upsert = """
        INSERT INTO team_metrics (
            team_id, repository_url, snapshot, metrics, complexity, refreshed_at, last_error, last_error_at
        ) VALUES ($1, $2, $3::jsonb, $4::jsonb, $5::jsonb, $6, NULL, NULL)
        ON CONFLICT (team_id) DO UPDATE SET
            repository_url = EXCLUDED.repository_url,
            snapshot = EXCLUDED.snapshot,
            metrics = EXCLUDED.metrics,
            complexity = EXCLUDED.complexity,
            refreshed_at = EXCLUDED.refreshed_at,
            last_error = NULL,
            last_error_at = NULL;
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT repository_url FROM teams WHERE id = $1 FOR UPDATE;", record.team_id
                )
                if current is None or current != record.repository_url:
                    return False
                await conn.execute(
                    upsert,
                    record.team_id,
                    record.repository_url,
                    json.dumps(record.snapshot),
                    json.dumps(record.metrics),
                    json.dumps(record.complexity),
                    record.refreshed_at or utcnow(),
                )
        return True

    async def record_failure(self, team_id: str, message: str) -> None:
        query = """
        INSERT INTO team_metrics (team_id, last_error, last_error_at)
        SELECT $1::text, $2::text, $3::timestamptz WHERE EXISTS (SELECT 1 FROM teams WHERE id = $1)
        ON CONFLICT (team_id) DO UPDATE SET
            last_error = EXCLUDED.last_error,
            last_error_at = EXCLUDED.last_error_at;
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, team_id, message, utcnow())

    async def get_insight_job(self, team_id: str) -> InsightJob:
        query = """
        SELECT team_id, status, progress, result, error, updated_at
        FROM insight_jobs
        WHERE team_id = $1;
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, team_id)
        return _job_from_row(row) if row else InsightJob(team_id=team_id)

    async def transition_insight(
        self,
        team_id: str,
        allowed_from: Collection[JobStatus],
        job: InsightJob,
        stale_before: dt.datetime | None = None,
    ) -> tuple[bool, InsightJob]:
        # a missing row counts as not_started
        query = """
        INSERT INTO insight_jobs (team_id, status, progress, result, error, updated_at)
        SELECT $1::text, $2::text, $3::int, $4::text, $5::text, $6::timestamptz
        WHERE EXISTS (SELECT 1 FROM teams WHERE id = $1)
          AND ($7::text[] @> ARRAY['not_started'] OR EXISTS (SELECT 1 FROM insight_jobs WHERE team_id = $1))
        ON CONFLICT (team_id) DO UPDATE SET
            status = EXCLUDED.status,
            progress = EXCLUDED.progress,
            result = EXCLUDED.result,
            error = EXCLUDED.error,
            updated_at = EXCLUDED.updated_at
        WHERE insight_jobs.status = ANY($7::text[])
           OR (insight_jobs.status = 'pending' AND insight_jobs.updated_at < $8::timestamptz)
        RETURNING team_id, status, progress, result, error, updated_at;
        """
        allowed = [status.value for status in allowed_from]
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                team_id,
                job.status.value,
                job.progress,
                job.result,
                job.error,
                job.updated_at or utcnow(),
                allowed,
                stale_before,
            )
        if row is not None:
            return True, _job_from_row(row)
        return False, await self.get_insight_job(team_id)


async def open_store(settings: Settings) -> tuple[TeamStore, Callable[[], Awaitable[None]]]:
    """Build the configured store; returns it with its async close callback."""
    if settings.store_backend == "memory":
        logger.warning("Using the in-memory store; data is lost on restart")

        async def _noop() -> None:
            return None

        return MemoryTeamStore(), _noop

    pool = await init_pool(settings)
    await ensure_schema(pool)
    return PostgresTeamStore(pool), pool.close
