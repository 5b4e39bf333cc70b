"""Database utilities for asyncpg connection pooling."""

import asyncpg

from devx360.config import Settings


SCHEMA = """
CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    members JSONB NOT NULL DEFAULT '[]'::jsonb,
    repository_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS team_metrics (
    team_id TEXT PRIMARY KEY REFERENCES teams(id) ON DELETE CASCADE,
    repository_url TEXT,
    snapshot JSONB,
    metrics JSONB NOT NULL DEFAULT '{}'::jsonb,
    complexity JSONB,
    refreshed_at TIMESTAMPTZ,
    last_error TEXT,
    last_error_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS insight_jobs (
    team_id TEXT PRIMARY KEY REFERENCES teams(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    error TEXT,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


async def init_pool(settings: Settings) -> asyncpg.pool.Pool:
    return await asyncpg.create_pool(settings.database_url, min_size=1, max_size=5)


async def ensure_schema(pool: asyncpg.pool.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)

