"""Team Update Scheduler: fetch, calculate, analyze and persist per team.

Each team runs in its own task behind a shared semaphore and its own timeout;
a failing or stuck team is recorded against that team only and the rest of
the batch carries on. Refreshes are coalesced by team id, so a team is never
refreshed twice at the same time. A request for a different repository than
the one being fetched queues a follow-up refresh behind the running one.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from devx360.complexity import analyze_complexity
from devx360.config import Settings, configure_logging, load_settings
from devx360.credentials import CredentialRotator
from devx360.dora import FailureClassifier, compute_all_windows
from devx360.errors import NotFound, PartialBatchFailure, PipelineError, StaleResult
from devx360.fetcher import RepositoryFetcher
from devx360.github_client import GitHubClient, parse_repository_url
from devx360.insights import InsightJobManager
from devx360.models import TeamMetrics, utcnow
from devx360.store import TeamStore, open_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeamOutcome:
    team_id: str
    success: bool
    error: str | None = None


@dataclass
class _Refresh:
    task: asyncio.Task | None = None
    # set once the team row has been read
    repository_url: str | None = None


class TeamUpdateScheduler:
    def __init__(
        self,
        store: TeamStore,
        fetcher: RepositoryFetcher,
        insight_manager: InsightJobManager | None = None,
        settings: Settings | None = None,
        classifier: FailureClassifier | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._insights = insight_manager
        self._settings = settings or Settings()
        self._classifier = classifier
        self._semaphore = asyncio.Semaphore(self._settings.scheduler_concurrency)
        self._inflight: dict[str, _Refresh] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_refreshing(self, team_id: str) -> bool:
        refresh = self._inflight.get(team_id)
        return refresh is not None and not refresh.task.done()

    def _task_for(self, team_id: str, repository_url: str | None = None) -> tuple[asyncio.Task, bool]:
        running = self._inflight.get(team_id)
        previous = None
        if running is not None and not running.task.done():
            if repository_url is None or running.repository_url in (None, repository_url):
                return running.task, True
            logger.info(
                "Team %s now points at %s; refresh queued behind the one for %s",
                team_id,
                repository_url,
                running.repository_url,
            )
            previous = running.task

        refresh = _Refresh()
        refresh.task = asyncio.create_task(self._guarded(team_id, refresh, previous), name=f"refresh:{team_id}")
        self._inflight[team_id] = refresh
        self._tasks.add(refresh.task)

        def _forget(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if self._inflight.get(team_id) is refresh:
                del self._inflight[team_id]

        refresh.task.add_done_callback(_forget)
        return refresh.task, False

    def request_refresh(self, team_id: str, repository_url: str | None = None) -> bool:
        """Schedule a background refresh; returns True when one was already running.

        With ``repository_url``, a running refresh only absorbs the request if it
        is fetching that repository (or has not read the team yet); otherwise a
        follow-up refresh starts once the running one finishes.
        """
        _, coalesced = self._task_for(team_id, repository_url)
        if coalesced:
            logger.info("Refresh for team %s already in flight; coalesced", team_id)
        return coalesced

    async def refresh_team(self, team_id: str) -> TeamOutcome:
        """Refresh one team (joining an in-flight refresh if there is one)."""
        task, _ = self._task_for(team_id)
        return await asyncio.shield(task)

    async def run_all(self, team_ids: Iterable[str] | None = None) -> list[TeamOutcome]:
        """Refresh every team (or ``team_ids``) and return outcomes in team order."""
        if team_ids is None:
            team_ids = [team.id for team in await self._store.list_teams()]
        team_ids = list(dict.fromkeys(team_ids))
        logger.info("Starting refresh of %d team(s)", len(team_ids))
        tasks = [self._task_for(team_id)[0] for team_id in team_ids]
        outcomes = list(await asyncio.gather(*(asyncio.shield(t) for t in tasks)))
        failed = [o for o in outcomes if not o.success]
        logger.info(
            "Refresh finished: %d succeeded, %d failed",
            len(outcomes) - len(failed),
            len(failed),
        )
        return outcomes

    async def run_forever(self, interval_seconds: float) -> None:
        """Run a batch, sleep ``interval_seconds``, repeat until cancelled."""
        while True:
            try:
                await self.run_all()
            except Exception:
                # listing teams failed; the next tick retries
                logger.exception("Scheduled refresh could not start")
            await asyncio.sleep(interval_seconds)

    async def close(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _guarded(
        self, team_id: str, refresh: _Refresh, previous: asyncio.Task | None = None
    ) -> TeamOutcome:
        if previous is not None:
            # wait without propagating our own cancellation into it
            await asyncio.wait({previous})
        async with self._semaphore:
            try:
                await asyncio.wait_for(
                    self._process(team_id, refresh), timeout=self._settings.team_timeout_seconds
                )
            except asyncio.TimeoutError:
                message = f"timed out after {self._settings.team_timeout_seconds:.0f}s"
            except StaleResult as exc:
                logger.warning("Discarded refresh for team %s: %s", team_id, exc)
                return TeamOutcome(team_id, False, f"discarded: {exc}")
            except PipelineError as exc:
                message = f"{type(exc).__name__}: {exc}"
            except Exception as exc:
                logger.exception("Unexpected error refreshing team %s", team_id)
                message = f"{type(exc).__name__}: {exc}"
            else:
                return TeamOutcome(team_id, True)

        logger.warning("Refresh failed for team %s: %s", team_id, message)
        try:
            await self._store.record_failure(team_id, message)
        except Exception as exc:
            logger.error("Could not record failure for team %s: %s", team_id, exc)
        return TeamOutcome(team_id, False, message)

    async def _process(self, team_id: str, refresh: _Refresh) -> None:
        team = await self._store.get_team(team_id)
        if team is None:
            raise StaleResult("team no longer exists")
        refresh.repository_url = team.repository_url
        if not team.repository_url:
            raise NotFound("team has no linked repository")
        try:
            repo_id = parse_repository_url(team.repository_url)
        except ValueError as exc:
            raise NotFound(str(exc)) from exc

        windows = self._settings.analysis_windows
        activity = await self._fetcher.fetch(repo_id, max(windows))
        snapshot = await self._fetcher.fetch_snapshot(repo_id)
        metrics = compute_all_windows(activity, windows, self._classifier)

        try:
            files = await self._fetcher.fetch_file_list(repo_id, snapshot["default_branch"])
            complexity = analyze_complexity(snapshot["languages"], files, snapshot["size"])
        except Exception as exc:
            logger.warning("Complexity analysis failed for %s: %s", repo_id, exc)
            complexity = None

        record = TeamMetrics(
            team_id=team_id,
            repository_url=team.repository_url,
            snapshot=snapshot,
            metrics=metrics,
            complexity=complexity,
            refreshed_at=utcnow(),
        )
        if not await self._store.replace_metrics(record):
            raise StaleResult("team was deleted or its repository changed during the refresh")
        logger.info("Refreshed team %s (%s)", team_id, repo_id)

        if self._insights is not None:
            try:
                await self._insights.submit(team_id)
            except Exception as exc:
                logger.error("Could not submit insight job for team %s: %s", team_id, exc)


async def run_once(settings: Settings, team_ids: Iterable[str] | None = None) -> list[TeamOutcome]:
    """Build the pipeline from ``settings``, run one batch and tear it down."""
    store, close_store = await open_store(settings)
    rotator = CredentialRotator(settings.github_tokens, cooldown_seconds=settings.rate_limit_cooldown_seconds)
    client = GitHubClient(settings.github_api_base, timeout=settings.request_timeout_seconds)
    insights = InsightJobManager(store, settings=settings)
    scheduler = TeamUpdateScheduler(store, RepositoryFetcher(client, rotator, settings), insights, settings)
    try:
        outcomes = await scheduler.run_all(team_ids)
        await insights.drain()
        return outcomes
    finally:
        await client.aclose()
        await close_store()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Refresh DORA metrics for every team (or the given teams).")
    parser.add_argument("team_ids", nargs="*", help="limit the run to these team ids")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.github_tokens:
        raise SystemExit("Set GITHUB_TOKENS as a comma-separated list of GitHub tokens")

    outcomes = asyncio.run(run_once(settings, args.team_ids or None))
    failures = [o for o in outcomes if not o.success]
    for outcome in failures:
        logger.error("Team %s failed: %s", outcome.team_id, outcome.error)
    if failures:
        raise PartialBatchFailure(failures)


if __name__ == "__main__":
    main()
