"""AI insight jobs: one narrative review per team, generated in the background.

A job moves ``not_started -> pending -> completed | error``. Every move is a
compare-and-swap on the stored status, so a second trigger while a job is
pending finds the slot taken and simply returns the running job.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import functools
import logging
import re
from typing import Any, Awaitable, Callable

from devx360.config import Settings
from devx360.errors import InsightBackendFailure
from devx360.llm import generate_dora_narrative
from devx360.models import InsightJob, JobStatus, Team, TeamMetrics, utcnow
from devx360.store import TeamStore

logger = logging.getLogger(__name__)

NarrativeBackend = Callable[[dict[str, Any]], Awaitable[str]]

POLL_RETRY_AFTER_SECONDS = 30
PAYLOAD_WINDOW = "30d"
# a pending job untouched for the backend timeout plus this long has lost its worker
ORPHAN_GRACE_SECONDS = 60

_RESTARTABLE = (JobStatus.NOT_STARTED, JobStatus.COMPLETED, JobStatus.ERROR)
_HEADING = re.compile(r"^##\s+(.+?)\s*#*\s*$", re.MULTILINE)


def parse_sections(text: str | None) -> dict[str, str]:
    """Split a narrative into ``{heading: body}`` by its ``## `` headings, in order.

    Text before the first heading is kept under ``"Summary"`` when non-empty.
    """
    if not text:
        return {}
    sections: dict[str, str] = {}
    matches = list(_HEADING.finditer(text))
    preamble = text[: matches[0].start()].strip() if matches else text.strip()
    if preamble:
        sections["Summary"] = preamble
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        sections[match.group(1).strip()] = text[match.end() : end].strip()
    return sections


def _risk_flags(record: TeamMetrics) -> list[str]:
    flags: list[str] = []
    metrics = record.metrics.get(PAYLOAD_WINDOW) or next(iter(record.metrics.values()), None)
    if metrics:
        if metrics["deployment_frequency"]["total_deployments"] == 0:
            flags.append("no_deployments")
        if metrics["change_failure_rate"]["failure_rate"] > 30:
            flags.append("high_failure_rate")
        lead = metrics["lead_time"]["average_days"]
        if lead is not None and lead > 7:
            flags.append("slow_lead_time")

    contributors = (record.snapshot or {}).get("contributors") or []
    total = sum(c.get("contributions", 0) for c in contributors)
    if total and max(c.get("contributions", 0) for c in contributors) / total >= 0.8:
        flags.append("bus_factor")
    return flags


def build_payload(team: Team, record: TeamMetrics) -> dict[str, Any]:
    """Structured input for the narrative backend."""
    snapshot = record.snapshot or {}
    return {
        "team": {"id": team.id, "name": team.name, "members": len(team.members)},
        "repository": {
            "full_name": snapshot.get("full_name"),
            "primary_language": snapshot.get("primary_language"),
            "stars": snapshot.get("stars"),
            "forks": snapshot.get("forks"),
            "open_issues": snapshot.get("open_issues"),
            "open_pull_requests": snapshot.get("open_pull_requests"),
            "total_contributors": snapshot.get("total_contributors"),
        },
        "metrics": record.metrics,
        "complexity": record.complexity,
        "risk_flags": _risk_flags(record),
    }


class InsightJobManager:
    """Owns the background generation tasks and the poll contract."""

    def __init__(
        self,
        store: TeamStore,
        backend: NarrativeBackend | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._backend = backend or functools.partial(generate_dora_narrative, settings=self._settings)
        self._tasks: set[asyncio.Task] = set()

    async def submit(self, team_id: str) -> InsightJob:
        """Start generation for ``team_id`` unless a job is already pending.

        Completed and failed jobs are restarted; a pending job is returned
        unchanged and no second generation is started, unless it has not moved
        for longer than the backend timeout plus ``ORPHAN_GRACE_SECONDS``, in
        which case its worker is gone and the job is taken over.
        """
        now = utcnow()
        job = InsightJob(team_id=team_id, status=JobStatus.PENDING, progress=10, updated_at=now)
        stale_before = now - dt.timedelta(seconds=self._settings.insight_timeout_seconds + ORPHAN_GRACE_SECONDS)
        swapped, current = await self._store.transition_insight(
            team_id, _RESTARTABLE, job, stale_before=stale_before
        )
        if not swapped:
            if current.status is JobStatus.PENDING:
                logger.debug("Insight for team %s already pending; not resubmitting", team_id)
            return current

        logger.info("Insight generation started for team %s", team_id)
        task = asyncio.create_task(self._generate(team_id), name=f"insight:{team_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return current

    async def _advance(self, team_id: str, **changes: Any) -> bool:
        job = InsightJob(team_id=team_id, updated_at=utcnow(), **changes)
        swapped, _ = await self._store.transition_insight(team_id, (JobStatus.PENDING,), job)
        return swapped

    async def _generate(self, team_id: str) -> None:
        try:
            team = await self._store.get_team(team_id)
            record = await self._store.get_metrics(team_id)
            if team is None or record is None or not record.metrics:
                raise InsightBackendFailure("No metrics available for this team")
            payload = build_payload(team, record)
            await self._advance(team_id, status=JobStatus.PENDING, progress=40)

            try:
                text = await asyncio.wait_for(
                    self._backend(payload), timeout=self._settings.insight_timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                raise InsightBackendFailure(
                    f"Narrative backend timed out after {self._settings.insight_timeout_seconds:g}s"
                ) from exc
            await self._advance(team_id, status=JobStatus.PENDING, progress=90)
        except asyncio.CancelledError:
            logger.warning("Insight generation for team %s was cancelled", team_id)
            try:
                await asyncio.shield(
                    self._advance(
                        team_id, status=JobStatus.ERROR, progress=0, error="Insight generation was cancelled"
                    )
                )
            except Exception as exc:
                logger.error("Could not record cancelled insight job for team %s: %s", team_id, exc)
            raise
        except Exception as exc:
            message = str(exc) if isinstance(exc, InsightBackendFailure) else f"{type(exc).__name__}: {exc}"
            logger.error("Insight generation failed for team %s: %s", team_id, message)
            await self._advance(team_id, status=JobStatus.ERROR, progress=0, error=message)
            return

        if await self._advance(team_id, status=JobStatus.COMPLETED, progress=100, result=text):
            logger.info("Insight generation completed for team %s", team_id)

    async def poll(self, team_id: str) -> tuple[int, dict[str, Any]]:
        """Return ``(http_status, body)`` for the current job; never raises."""
        try:
            job = await self._store.get_insight_job(team_id)
        except Exception as exc:
            logger.error("Could not read insight status for team %s: %s", team_id, exc)
            return 500, {"status": JobStatus.ERROR.value, "error": "Insight status is temporarily unavailable"}

        if job.status is JobStatus.PENDING:
            return 202, {
                "status": job.status.value,
                "progress": job.progress,
                "retry_after": POLL_RETRY_AFTER_SECONDS,
            }
        if job.status is JobStatus.COMPLETED:
            return 200, {
                "status": job.status.value,
                "progress": 100,
                "aiFeedback": job.result,
                "sections": parse_sections(job.result),
                "updated_at": job.updated_at.isoformat() if job.updated_at else None,
            }
        if job.status is JobStatus.ERROR:
            return 500, {"status": job.status.value, "error": job.error or "Insight generation failed"}
        return 404, {"status": JobStatus.NOT_STARTED.value}

    async def drain(self) -> None:
        """Wait for every running generation task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
