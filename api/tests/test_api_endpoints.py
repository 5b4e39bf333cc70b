import asyncio
import datetime as dt

import httpx
import pytest
import pytest_asyncio

from devx360 import main
from devx360.config import Settings
from devx360.credentials import CredentialRotator
from devx360.insights import InsightJobManager
from devx360.models import Commit, RawActivityWindow, Release
from devx360.scheduler import TeamUpdateScheduler
from devx360.store import MemoryTeamStore

UNTIL = dt.datetime(2024, 3, 31, tzinfo=dt.timezone.utc)


class StubFetcher:
    def __init__(self):
        self.calls = []

    async def fetch(self, repo_id, window_days, until=None):
        self.calls.append(repo_id)
        sha = "a" * 40
        return RawActivityWindow(
            until=UNTIL,
            window_days=window_days,
            commits=(Commit(sha=sha, message="Add feature", authored_at=UNTIL - dt.timedelta(days=3)),),
            releases=(Release(tag_name="v1.0.0", created_at=UNTIL - dt.timedelta(days=2), commit_sha=sha),),
        )

    async def fetch_snapshot(self, repo_id):
        return {
            "full_name": repo_id,
            "default_branch": "main",
            "languages": {"Python": 700},
            "size": 300,
            "total_contributors": 2,
            "contributors": [],
        }

    async def fetch_file_list(self, repo_id, branch):
        return [{"path": "app.py", "type": "file"}, {"path": "src", "type": "dir"}]


class StubBackend:
    def __init__(self):
        self.gate = None
        self.calls = 0

    async def __call__(self, payload):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return "## Deployment Frequency\nSteady.\n\n## Recommendations\nKeep going."


@pytest_asyncio.fixture
async def client():
    settings = Settings(scheduler_concurrency=2, team_timeout_seconds=5.0)
    store = MemoryTeamStore()
    backend = StubBackend()
    insights = InsightJobManager(store, backend=backend, settings=settings)
    scheduler = TeamUpdateScheduler(store, StubFetcher(), insights, settings)

    main.app.state.settings = settings
    main.app.state.store = store
    main.app.state.rotator = CredentialRotator(["token-aaaa-1"])
    main.app.state.insights = insights
    main.app.state.scheduler = scheduler

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac, scheduler, insights, backend
    await scheduler.close()
    await insights.close()


async def _create_and_refresh(ac, scheduler, insights, name="Payments"):
    resp = await ac.post(
        "/teams",
        json={"name": name, "repository_url": "https://github.com/o/r", "members": ["u1", "u2"]},
    )
    assert resp.status_code == 201
    team_id = resp.json()["id"]
    assert (await scheduler.refresh_team(team_id)).success
    await insights.drain()
    return team_id


@pytest.mark.asyncio
async def test_health_reports_store_and_credentials(client):
    ac, *_ = client
    resp = await ac.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["store_ok"] is True
    assert data["credentials"] == {"available": 1, "cooling_down": 0, "revoked": 0}


@pytest.mark.asyncio
async def test_create_team_refreshes_and_serves_metrics(client):
    ac, scheduler, insights, _ = client
    team_id = await _create_and_refresh(ac, scheduler, insights)

    resp = await ac.get(f"/teams/{team_id}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["team"]["members"] == ["u1", "u2"]
    assert data["metrics_status"] == "ok"
    assert set(data["metrics"]) == {"7d", "30d", "90d"}
    assert data["metrics"]["30d"]["deployment_frequency"]["total_deployments"] == 1
    assert data["complexity"]["complexity"] == 11
    assert data["snapshot"]["full_name"] == "o/r"


@pytest.mark.asyncio
async def test_team_without_repository_has_no_metrics_yet(client):
    ac, *_ = client
    resp = await ac.post("/teams", json={"name": "Platform"})
    team_id = resp.json()["id"]

    data = (await ac.get(f"/teams/{team_id}")).json()
    assert data["metrics_status"] == "no_metrics_yet"
    assert data["metrics"] == {}

    resp = await ac.post(f"/teams/{team_id}/refresh-stats")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_invalid_repository_rejected(client):
    ac, *_ = client
    resp = await ac.post("/teams", json={"name": "Payments", "repository_url": "not a repo"})
    assert resp.status_code == 400

    resp = await ac.post("/teams", json={"name": ""})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_refresh_stats_is_accepted(client):
    ac, scheduler, insights, _ = client
    team_id = await _create_and_refresh(ac, scheduler, insights)

    resp = await ac.post(f"/teams/{team_id}/refresh-stats")
    assert resp.status_code == 202
    assert resp.json()["status"] == "accepted"
    assert (await scheduler.refresh_team(team_id)).success

    resp = await ac.post("/teams/missing/refresh-stats")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_refresh_all_is_accepted(client):
    ac, scheduler, insights, _ = client
    await _create_and_refresh(ac, scheduler, insights, name="A")
    await _create_and_refresh(ac, scheduler, insights, name="B")

    resp = await ac.post("/teams/refresh-all")
    assert resp.status_code == 202
    assert resp.json() == {"status": "accepted", "teams": 2}


@pytest.mark.asyncio
async def test_ai_review_poll_contract(client):
    ac, scheduler, insights, backend = client
    resp = await ac.get("/ai-review", params={"teamId": "unknown"})
    assert resp.status_code == 404
    assert resp.json() == {"status": "not_started"}

    team_id = await _create_and_refresh(ac, scheduler, insights)
    resp = await ac.get("/ai-review", params={"teamId": team_id})
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "completed"
    assert list(data["sections"]) == ["Deployment Frequency", "Recommendations"]

    backend.gate = asyncio.Event()
    resp = await ac.post("/ai-review", params={"teamId": team_id})
    assert resp.status_code == 202
    resp = await ac.get("/ai-review", params={"teamId": team_id})
    assert resp.status_code == 202
    assert resp.json()["status"] == "pending"
    assert resp.headers["Retry-After"] == "30"

    backend.gate.set()
    await insights.drain()
    assert (await ac.get("/ai-review", params={"teamId": team_id})).status_code == 200


@pytest.mark.asyncio
async def test_trigger_ai_review_requires_metrics(client):
    ac, *_ = client
    team_id = (await ac.post("/teams", json={"name": "Platform"})).json()["id"]
    resp = await ac.post("/ai-review", params={"teamId": team_id})
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_update_repository_and_delete(client):
    ac, scheduler, insights, _ = client
    team_id = await _create_and_refresh(ac, scheduler, insights)

    resp = await ac.put(f"/teams/{team_id}/repository", json={"repository_url": "https://github.com/o/next"})
    assert resp.status_code == 200
    assert resp.json()["repository_url"] == "https://github.com/o/next"
    assert (await scheduler.refresh_team(team_id)).success

    resp = await ac.put(f"/teams/{team_id}/repository", json={"repository_url": "ftp://nowhere"})
    assert resp.status_code == 400

    resp = await ac.delete(f"/teams/{team_id}")
    assert resp.status_code == 204
    assert (await ac.get(f"/teams/{team_id}")).status_code == 404
    assert (await ac.delete(f"/teams/{team_id}")).status_code == 404


@pytest.mark.asyncio
async def test_fleet_metrics(client):
    ac, scheduler, insights, _ = client
    await _create_and_refresh(ac, scheduler, insights)

    resp = await ac.get("/metrics/fleet")
    assert resp.status_code == 200
    data = resp.json()
    assert data["window"] == "30d"
    assert data["totals"]["teams"] == 1
    assert data["totals"]["deployments"] == 1
    assert data["language_distribution"] == {"Python": 700}
    assert data["size_distribution"] == {"small": 1, "medium": 0, "large": 0}

    assert (await ac.get("/metrics/fleet", params={"window": "14d"})).status_code == 400
