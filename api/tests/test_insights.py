import asyncio
import datetime as dt

import pytest

from devx360.config import Settings
from devx360.errors import InsightBackendFailure
from devx360.insights import InsightJobManager, build_payload, parse_sections
from devx360.models import InsightJob, JobStatus, Team, TeamMetrics, utcnow
from devx360.store import MemoryTeamStore

NARRATIVE = """Overall the team ships steadily.

## Deployment Frequency
Weekly releases.

## Lead Time for Changes
About a day.

## Change Failure Rate
20% of releases needed a fix.

## Mean Time to Recovery
No incidents.

## Recommendations
Automate the release notes.
"""


def _window_metrics(deployments=5, rate=20.0, lead=1.0):
    return {
        "deployment_frequency": {"total_deployments": deployments, "frequency_per_day": 0.17},
        "lead_time": {"average_days": lead},
        "change_failure_rate": {"failure_rate": rate, "total_deployments": deployments},
        "mttr": {"average_days": None},
    }


async def _store_with_metrics(team_id="t1", **metric_args):
    store = MemoryTeamStore()
    team = Team(id=team_id, name="Payments", members=frozenset({"u1", "u2"}), repository_url="https://github.com/o/r")
    await store.save_team(team)
    await store.replace_metrics(
        TeamMetrics(
            team_id=team_id,
            repository_url=team.repository_url,
            snapshot={"full_name": "o/r", "contributors": [{"contributions": 9}, {"contributions": 1}]},
            metrics={"30d": _window_metrics(**metric_args)},
            refreshed_at=dt.datetime(2024, 3, 31, tzinfo=dt.timezone.utc),
        )
    )
    return store


class FakeBackend:
    def __init__(self, text=NARRATIVE, error=None, gate=None):
        self.text = text
        self.error = error
        self.gate = gate
        self.calls = []

    async def __call__(self, payload):
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.text


@pytest.mark.asyncio
async def test_second_trigger_while_pending_is_a_noop():
    store = await _store_with_metrics()
    gate = asyncio.Event()
    backend = FakeBackend(gate=gate)
    manager = InsightJobManager(store, backend=backend)

    first = await manager.submit("t1")
    second = await manager.submit("t1")
    status, body = await manager.poll("t1")
    assert (status, body["status"]) == (202, "pending")
    assert body["retry_after"] == 30

    gate.set()
    await manager.drain()

    assert first.status is JobStatus.PENDING
    assert second.status is JobStatus.PENDING
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_completed_job_exposes_feedback_and_sections():
    store = await _store_with_metrics()
    manager = InsightJobManager(store, backend=FakeBackend())

    await manager.submit("t1")
    await manager.drain()
    status, body = await manager.poll("t1")

    assert status == 200
    assert body["status"] == "completed"
    assert body["progress"] == 100
    assert body["aiFeedback"] == NARRATIVE
    assert list(body["sections"]) == [
        "Summary",
        "Deployment Frequency",
        "Lead Time for Changes",
        "Change Failure Rate",
        "Mean Time to Recovery",
        "Recommendations",
    ]


@pytest.mark.asyncio
async def test_backend_failure_is_recorded_and_retry_resets_to_pending():
    store = await _store_with_metrics()
    backend = FakeBackend(error=InsightBackendFailure("Narrative backend call failed: 503"))
    manager = InsightJobManager(store, backend=backend)

    await manager.submit("t1")
    await manager.drain()
    status, body = await manager.poll("t1")
    assert (status, body) == (500, {"status": "error", "error": "Narrative backend call failed: 503"})

    backend.error = None
    job = await manager.submit("t1")
    assert job.status is JobStatus.PENDING
    await manager.drain()
    assert (await manager.poll("t1"))[0] == 200
    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_backend_timeout_becomes_error():
    store = await _store_with_metrics()
    manager = InsightJobManager(
        store, backend=FakeBackend(gate=asyncio.Event()), settings=Settings(insight_timeout_seconds=0.05)
    )

    await manager.submit("t1")
    await manager.drain()
    status, body = await manager.poll("t1")

    assert status == 500
    assert "timed out" in body["error"]


@pytest.mark.asyncio
async def test_unexpected_backend_error_is_reported_not_raised():
    store = await _store_with_metrics()
    manager = InsightJobManager(store, backend=FakeBackend(error=RuntimeError("boom")))

    await manager.submit("t1")
    await manager.drain()
    assert await manager.poll("t1") == (500, {"status": "error", "error": "RuntimeError: boom"})


@pytest.mark.asyncio
async def test_never_refreshed_team_is_not_started():
    manager = InsightJobManager(MemoryTeamStore(), backend=FakeBackend())
    assert await manager.poll("nobody") == (404, {"status": "not_started"})


@pytest.mark.asyncio
async def test_store_failure_while_polling_maps_to_error():
    class BrokenStore(MemoryTeamStore):
        async def get_insight_job(self, team_id):
            raise ConnectionError("database unavailable")

    manager = InsightJobManager(BrokenStore(), backend=FakeBackend())
    status, body = await manager.poll("t1")
    assert status == 500
    assert body["status"] == "error"


@pytest.mark.asyncio
async def test_payload_carries_metrics_and_risk_flags():
    store = await _store_with_metrics(deployments=0, rate=0.0, lead=None)
    team = await store.get_team("t1")
    payload = build_payload(team, await store.get_metrics("t1"))

    assert payload["team"] == {"id": "t1", "name": "Payments", "members": 2}
    assert payload["repository"]["full_name"] == "o/r"
    assert payload["metrics"]["30d"]["deployment_frequency"]["total_deployments"] == 0
    assert payload["risk_flags"] == ["no_deployments", "bus_factor"]


def test_parse_sections_without_headings():
    assert parse_sections("Just text.") == {"Summary": "Just text."}
    assert parse_sections("") == {}
    assert parse_sections(None) == {}


@pytest.mark.asyncio
async def test_shutdown_mid_generation_records_error_and_next_submit_restarts():
    store = await _store_with_metrics()
    slow = FakeBackend(gate=asyncio.Event())
    first = InsightJobManager(store, backend=slow)
    await first.submit("t1")
    while not slow.calls:
        await asyncio.sleep(0)

    await first.close()
    assert await first.poll("t1") == (500, {"status": "error", "error": "Insight generation was cancelled"})

    fast = FakeBackend()
    second = InsightJobManager(store, backend=fast)
    job = await second.submit("t1")
    await second.drain()

    assert job.status is JobStatus.PENDING
    assert len(fast.calls) == 1
    assert (await second.poll("t1"))[0] == 200


@pytest.mark.asyncio
async def test_orphaned_pending_job_is_taken_over():
    store = await _store_with_metrics()
    orphan = InsightJob(
        team_id="t1",
        status=JobStatus.PENDING,
        progress=40,
        updated_at=utcnow() - dt.timedelta(hours=1),
    )
    await store.transition_insight("t1", (JobStatus.NOT_STARTED,), orphan)
    backend = FakeBackend()
    manager = InsightJobManager(store, backend=backend, settings=Settings(insight_timeout_seconds=60))

    await manager.submit("t1")
    await manager.drain()

    assert len(backend.calls) == 1
    status, body = await manager.poll("t1")
    assert (status, body["status"]) == (200, "completed")


@pytest.mark.asyncio
async def test_recent_pending_job_is_not_taken_over():
    store = await _store_with_metrics()
    recent = InsightJob(team_id="t1", status=JobStatus.PENDING, progress=40, updated_at=utcnow())
    await store.transition_insight("t1", (JobStatus.NOT_STARTED,), recent)
    backend = FakeBackend()
    manager = InsightJobManager(store, backend=backend)

    job = await manager.submit("t1")
    await manager.drain()

    assert job.progress == 40
    assert backend.calls == []
    assert (await manager.poll("t1"))[0] == 202
