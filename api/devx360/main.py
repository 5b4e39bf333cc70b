from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from devx360.aggregator import DEFAULT_WINDOW, aggregate_metrics
from devx360.config import Settings, configure_logging, load_settings
from devx360.credentials import CredentialRotator
from devx360.fetcher import RepositoryFetcher
from devx360.github_client import GitHubClient, parse_repository_url
from devx360.insights import InsightJobManager
from devx360.models import Team, utcnow
from devx360.scheduler import TeamUpdateScheduler
from devx360.store import TeamStore, open_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.github_tokens:
        logger.warning("No GitHub tokens configured; refreshes will fail until GITHUB_TOKENS is set")

    store, close_store = await open_store(settings)
    rotator = CredentialRotator(settings.github_tokens, cooldown_seconds=settings.rate_limit_cooldown_seconds)
    client = GitHubClient(settings.github_api_base, timeout=settings.request_timeout_seconds)
    insights = InsightJobManager(store, settings=settings)
    scheduler = TeamUpdateScheduler(store, RepositoryFetcher(client, rotator, settings), insights, settings)

    app.state.settings = settings
    app.state.store = store
    app.state.rotator = rotator
    app.state.insights = insights
    app.state.scheduler = scheduler

    ticker = None
    if settings.scheduler_interval_hours > 0:
        ticker = asyncio.create_task(scheduler.run_forever(settings.scheduler_interval_hours * 3600))
    yield
    if ticker is not None:
        ticker.cancel()
        await asyncio.gather(ticker, return_exceptions=True)
    await scheduler.close()
    await insights.close()
    await client.aclose()
    await close_store()


app = FastAPI(title="DevX360 Team Metrics API", version="0.1.0", lifespan=lifespan)


async def store_dep(request: Request) -> TeamStore:
    return request.app.state.store


async def scheduler_dep(request: Request) -> TeamUpdateScheduler:
    return request.app.state.scheduler


async def insights_dep(request: Request) -> InsightJobManager:
    return request.app.state.insights


class CredentialStatus(BaseModel):
    available: int = 0
    cooling_down: int = 0
    revoked: int = 0


class HealthResponse(BaseModel):
    status: str
    service: str = "api"
    store_ok: bool
    credentials: CredentialStatus


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    repository_url: str | None = Field(None, examples=["https://github.com/owner/repo"])
    members: list[str] = Field(default_factory=list)


class RepositoryUpdate(BaseModel):
    repository_url: str = Field(..., examples=["https://github.com/owner/repo"])


def _validate_repository(url: str | None) -> None:
    if url is None:
        return
    try:
        parse_repository_url(url)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def _require_team(store: TeamStore, team_id: str) -> Team:
    team = await store.get_team(team_id)
    if team is None:
        raise HTTPException(status_code=404, detail=f"Team {team_id} not found")
    return team


@app.get("/health", response_model=HealthResponse)
async def health(request: Request):
    store_ok = False
    try:
        store_ok = await request.app.state.store.ping()
    except Exception as exc:
        logger.warning("Store health check failed: %s", exc)
    creds = request.app.state.rotator.status()
    status = "ok" if store_ok and creds["total"] - creds["revoked"] > 0 else "degraded"
    return HealthResponse(
        status=status,
        store_ok=store_ok,
        credentials=CredentialStatus(
            available=creds["available"], cooling_down=creds["cooling_down"], revoked=creds["revoked"]
        ),
    )


@app.post("/teams", status_code=201)
async def create_team(
    req: TeamCreate,
    store: TeamStore = Depends(store_dep),
    scheduler: TeamUpdateScheduler = Depends(scheduler_dep),
):
    _validate_repository(req.repository_url)
    now = utcnow()
    team = Team(
        id=uuid.uuid4().hex,
        name=req.name.strip(),
        members=frozenset(req.members),
        repository_url=req.repository_url,
        created_at=now,
        updated_at=now,
    )
    await store.save_team(team)
    if team.repository_url:
        scheduler.request_refresh(team.id, team.repository_url)
    return team.as_dict()


@app.get("/teams")
async def list_teams(store: TeamStore = Depends(store_dep)):
    return {"teams": [team.as_dict() for team in await store.list_teams()]}


@app.put("/teams/{team_id}/repository")
async def update_repository(
    team_id: str,
    req: RepositoryUpdate,
    store: TeamStore = Depends(store_dep),
    scheduler: TeamUpdateScheduler = Depends(scheduler_dep),
):
    _validate_repository(req.repository_url)
    team = await _require_team(store, team_id)
    updated = Team(
        id=team.id,
        name=team.name,
        members=team.members,
        repository_url=req.repository_url,
        created_at=team.created_at,
        updated_at=utcnow(),
    )
    await store.save_team(updated)
    # a running refresh of the old repository is discarded and this one follows it
    scheduler.request_refresh(team_id, updated.repository_url)
    return updated.as_dict()


@app.delete("/teams/{team_id}", status_code=204)
async def delete_team(team_id: str, store: TeamStore = Depends(store_dep)):
    if not await store.delete_team(team_id):
        raise HTTPException(status_code=404, detail=f"Team {team_id} not found")
    return Response(status_code=204)


@app.post("/teams/refresh-all", status_code=202)
async def refresh_all(
    background_tasks: BackgroundTasks,
    store: TeamStore = Depends(store_dep),
    scheduler: TeamUpdateScheduler = Depends(scheduler_dep),
):
    teams = await store.list_teams()
    background_tasks.add_task(scheduler.run_all, [team.id for team in teams])
    return {"status": "accepted", "teams": len(teams)}


@app.post("/teams/{team_id}/refresh-stats", status_code=202)
async def refresh_stats(
    team_id: str,
    store: TeamStore = Depends(store_dep),
    scheduler: TeamUpdateScheduler = Depends(scheduler_dep),
):
    team = await _require_team(store, team_id)
    if not team.repository_url:
        raise HTTPException(status_code=400, detail="Team has no linked repository")
    coalesced = scheduler.request_refresh(team_id, team.repository_url)
    return {"status": "accepted", "team_id": team_id, "coalesced": coalesced}


@app.get("/teams/{team_id}")
async def get_team(team_id: str, store: TeamStore = Depends(store_dep)):
    team = await _require_team(store, team_id)
    record = await store.get_metrics(team_id)
    body: dict[str, Any] = {
        "team": team.as_dict(),
        "metrics_status": record.metrics_status if record else "no_metrics_yet",
        "snapshot": None,
        "metrics": {},
        "complexity": None,
        "refreshed_at": None,
        "last_error": None,
    }
    if record is not None:
        body.update(
            snapshot=record.snapshot,
            metrics=record.metrics,
            complexity=record.complexity,
            refreshed_at=record.refreshed_at.isoformat() if record.refreshed_at else None,
            last_error=record.last_error,
        )
    return body


@app.get("/ai-review")
async def get_ai_review(teamId: str, insights: InsightJobManager = Depends(insights_dep)):
    status_code, body = await insights.poll(teamId)
    headers = {"Retry-After": str(body["retry_after"])} if "retry_after" in body else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.post("/ai-review", status_code=202)
async def trigger_ai_review(
    teamId: str,
    store: TeamStore = Depends(store_dep),
    insights: InsightJobManager = Depends(insights_dep),
):
    await _require_team(store, teamId)
    record = await store.get_metrics(teamId)
    if record is None or not record.metrics:
        raise HTTPException(status_code=409, detail="No metrics yet; refresh the team first")
    job = await insights.submit(teamId)
    return {"status": job.status.value, "progress": job.progress}


@app.get("/metrics/fleet")
async def fleet_metrics(request: Request, window: str = DEFAULT_WINDOW, store: TeamStore = Depends(store_dep)):
    settings: Settings = request.app.state.settings
    allowed = [f"{days}d" for days in settings.analysis_windows]
    if window not in allowed:
        raise HTTPException(status_code=400, detail=f"window must be one of {', '.join(allowed)}")
    return aggregate_metrics(await store.list_metrics(), window)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("devx360.main:app", host="0.0.0.0", port=8000)
