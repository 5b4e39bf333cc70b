"""Repository activity acquisition with credential rotation and retries.

Each request checks a credential out of the rotator, makes one call and
returns the credential with the call's outcome before anything else happens
(including backoff sleeps and cancellation), so a worker never holds more
than one credential.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
from typing import Any, Awaitable, Callable

from devx360.config import Settings
from devx360.credentials import CredentialRotator, ReleaseOutcome
from devx360.errors import CredentialRejected, FetchError, RateLimited, Transient, Unauthorized
from devx360.github_client import GitHubClient, Page
from devx360.models import Commit, Issue, PullRequest, RawActivityWindow, Release, Tag, utcnow

logger = logging.getLogger(__name__)

_SHA = re.compile(r"^[0-9a-f]{40}$")


def _parse_datetime(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _iso(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def _labels(item: dict[str, Any]) -> tuple[str, ...]:
    return tuple(
        label.get("name", "") if isinstance(label, dict) else str(label)
        for label in item.get("labels") or []
    )


class RepositoryFetcher:
    """Fetch commits, PRs, releases, tags and issues for one repository."""

    def __init__(
        self,
        client: GitHubClient,
        rotator: CredentialRotator,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._rotator = rotator
        self._settings = settings or Settings()
        self._sleep = sleep

    async def _request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        empty_on_conflict: bool = False,
    ) -> Page:
        transient_failures = 0
        rate_limit_hits = 0
        while True:
            credential = await self._rotator.acquire_wait(self._settings.credential_wait_seconds)
            if credential is None:
                if not self._rotator.has_usable():
                    raise Unauthorized("No valid hosting API credentials remain")
                raise RateLimited(
                    "No hosting API credential available",
                    reset_at=self._rotator.next_available_at(),
                )

            outcome = ReleaseOutcome.SUCCESS
            reset_at: float | None = None
            try:
                return await self._client.get(
                    path, credential.token, params=params, empty_on_conflict=empty_on_conflict
                )
            except CredentialRejected:
                outcome = ReleaseOutcome.AUTH_FAILURE
                continue
            except RateLimited as exc:
                outcome = ReleaseOutcome.RATE_LIMITED
                reset_at = exc.reset_at
                rate_limit_hits += 1
                if rate_limit_hits >= self._settings.rate_limit_retry_max:
                    raise
                logger.warning(
                    "Rate limited on %s (attempt %d/%d); rotating credential",
                    path,
                    rate_limit_hits,
                    self._settings.rate_limit_retry_max,
                )
                continue
            except Transient as exc:
                outcome = ReleaseOutcome.TRANSIENT
                transient_failures += 1
                if transient_failures >= self._settings.retry_max:
                    raise
                delay = self._settings.retry_backoff_seconds * 2 ** (transient_failures - 1)
                logger.warning(
                    "Transient error (attempt %d/%d): %s; retrying in %.1fs",
                    transient_failures,
                    self._settings.retry_max,
                    exc,
                    delay,
                )
            finally:
                self._rotator.release(credential, outcome, reset_at=reset_at)
            await self._sleep(delay)

    async def _paginate(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        stop: Callable[[dict[str, Any]], bool] | None = None,
        empty_on_conflict: bool = False,
    ) -> list[dict[str, Any]]:
        """Collect items page by page until exhausted, ``stop`` fires or the page limit is hit."""
        items: list[dict[str, Any]] = []
        url: str = path
        query: dict[str, Any] | None = {**(params or {}), "per_page": 100}
        for _ in range(self._settings.max_pages):
            page = await self._request(url, query, empty_on_conflict=empty_on_conflict)
            batch = page.data if isinstance(page.data, list) else (page.data or {}).get("items", [])
            stopped = False
            for item in batch:
                if stop is not None and stop(item):
                    stopped = True
                    break
                items.append(item)
            if stopped or not page.next_url:
                break
            url, query = page.next_url, None
        else:
            logger.info("Stopped paging %s after %d pages", path, self._settings.max_pages)
        return items

    async def fetch(
        self,
        repo_id: str,
        window_days: int,
        until: dt.datetime | None = None,
    ) -> RawActivityWindow:
        """Fetch everything needed to compute DORA metrics over ``window_days``.

        Raises:
            RateLimited: Every credential stayed rate limited after retries.
            Transient: Network/5xx failures persisted after retries.
            Unauthorized: Access refused, or no valid credential remains.
            NotFound: The repository does not exist or is not visible.
        """
        if window_days <= 0:
            raise ValueError("window_days must be positive")
        until = until or utcnow()
        since = until - dt.timedelta(days=window_days)
        logger.info("Fetching %s activity for the last %d days", repo_id, window_days)

        commits = await self._fetch_commits(repo_id, since, until)
        pull_requests = await self._fetch_pull_requests(repo_id, since)
        tags = await self._fetch_tags(repo_id, since, commits)
        releases = await self._fetch_releases(repo_id, since, tags)
        issues = await self._fetch_issues(repo_id, since)

        return RawActivityWindow(
            until=until,
            window_days=window_days,
            commits=tuple(commits),
            pull_requests=tuple(pull_requests),
            releases=tuple(releases),
            tags=tuple(tags),
            issues=tuple(issues),
        )

    async def _fetch_commits(self, repo_id: str, since: dt.datetime, until: dt.datetime) -> list[Commit]:
        raw = await self._paginate(
            f"/repos/{repo_id}/commits",
            {"since": _iso(since), "until": _iso(until)},
            empty_on_conflict=True,
        )
        commits: list[Commit] = []
        for item in raw:
            info = item.get("commit") or {}
            author = info.get("author") or info.get("committer") or {}
            authored_at = _parse_datetime(author.get("date"))
            sha = item.get("sha")
            if not sha or authored_at is None:
                logger.debug("Skipping commit with invalid date structure: %s", (sha or "unknown")[:7])
                continue
            commits.append(Commit(sha=sha, message=info.get("message") or "", authored_at=authored_at))
        return commits

    async def _fetch_pull_requests(self, repo_id: str, since: dt.datetime) -> list[PullRequest]:
        def too_old(item: dict[str, Any]) -> bool:
            updated = _parse_datetime(item.get("updated_at"))
            return updated is not None and updated < since

        raw = await self._paginate(
            f"/repos/{repo_id}/pulls",
            {"state": "all", "sort": "updated", "direction": "desc"},
            stop=too_old,
        )
        pulls: list[PullRequest] = []
        for item in raw:
            created_at = _parse_datetime(item.get("created_at"))
            if created_at is None or item.get("number") is None:
                continue
            pulls.append(
                PullRequest(
                    number=int(item["number"]),
                    title=item.get("title") or "",
                    created_at=created_at,
                    labels=_labels(item),
                    merged_at=_parse_datetime(item.get("merged_at")),
                    closed_at=_parse_datetime(item.get("closed_at")),
                    merge_commit_sha=item.get("merge_commit_sha"),
                )
            )
        return pulls

    async def _fetch_tags(self, repo_id: str, since: dt.datetime, commits: list[Commit]) -> list[Tag]:
        """Tags newest first, up to and including the first one older than ``since``.

        Tags carry no date, so each one outside the fetched commits costs a
        commit lookup; paging stops as soon as a tag resolves before the window.
        """
        known = {commit.sha: commit.authored_at for commit in commits}
        lookups = 0
        tags: list[Tag] = []
        url: str = f"/repos/{repo_id}/tags"
        query: dict[str, Any] | None = {"per_page": 100}
        for _ in range(self._settings.max_pages):
            page = await self._request(url, query)
            for item in page.data or []:
                sha = (item.get("commit") or {}).get("sha")
                committed_at = known.get(sha) if sha else None
                if sha and committed_at is None and lookups < self._settings.tag_lookup_limit:
                    lookups += 1
                    committed_at = await self._lookup_commit_date(repo_id, sha)
                tags.append(Tag(name=item.get("name") or "", commit_sha=sha, committed_at=committed_at))
                if committed_at is not None and committed_at < since:
                    logger.debug("Tag %s predates the window; not paging further", tags[-1].name)
                    return tags
            if not page.next_url:
                break
            url, query = page.next_url, None
        return tags

    async def _lookup_commit_date(self, repo_id: str, sha: str) -> dt.datetime | None:
        try:
            page = await self._request(f"/repos/{repo_id}/commits/{sha}")
        except FetchError as exc:
            if exc.retryable:
                raise
            logger.debug("Could not resolve tag commit %s: %s", sha[:7], exc)
            return None
        info = (page.data or {}).get("commit") or {}
        author = info.get("author") or info.get("committer") or {}
        return _parse_datetime(author.get("date"))

    async def _fetch_releases(self, repo_id: str, since: dt.datetime, tags: list[Tag]) -> list[Release]:
        def too_old(item: dict[str, Any]) -> bool:
            created = _parse_datetime(item.get("created_at"))
            return created is not None and created < since

        raw = await self._paginate(f"/repos/{repo_id}/releases", stop=too_old)
        tag_shas = {tag.name: tag.commit_sha for tag in tags if tag.commit_sha}
        releases: list[Release] = []
        for item in raw:
            created_at = _parse_datetime(item.get("published_at") or item.get("created_at"))
            if created_at is None:
                continue
            tag_name = item.get("tag_name") or ""
            target = item.get("target_commitish") or ""
            commit_sha = tag_shas.get(tag_name) or (target if _SHA.match(target) else None)
            releases.append(
                Release(
                    tag_name=tag_name,
                    created_at=created_at,
                    name=item.get("name") or "",
                    body=item.get("body") or "",
                    draft=bool(item.get("draft")),
                    prerelease=bool(item.get("prerelease")),
                    commit_sha=commit_sha,
                )
            )
        return releases

    async def _fetch_issues(self, repo_id: str, since: dt.datetime) -> list[Issue]:
        raw = await self._paginate(
            f"/repos/{repo_id}/issues",
            {"state": "all", "since": _iso(since), "sort": "created", "direction": "desc"},
        )
        issues: list[Issue] = []
        for item in raw:
            if "pull_request" in item:
                continue
            created_at = _parse_datetime(item.get("created_at"))
            if created_at is None or item.get("number") is None:
                continue
            issues.append(
                Issue(
                    number=int(item["number"]),
                    title=item.get("title") or "",
                    created_at=created_at,
                    body=item.get("body") or "",
                    labels=_labels(item),
                    closed_at=_parse_datetime(item.get("closed_at")),
                )
            )
        return issues

    async def fetch_snapshot(self, repo_id: str) -> dict[str, Any]:
        """Build the repository snapshot document (metadata, languages, contributors)."""
        repo = (await self._request(f"/repos/{repo_id}")).data or {}
        languages_raw = (await self._request(f"/repos/{repo_id}/languages")).data or {}
        languages = dict(sorted(languages_raw.items(), key=lambda kv: (-kv[1], kv[0])))
        contributors_raw = (await self._request(f"/repos/{repo_id}/contributors", {"per_page": 10})).data or []

        try:
            search = await self._request(
                "/search/issues", {"q": f"repo:{repo_id} type:pr state:open", "per_page": 1}
            )
            open_pull_requests = int((search.data or {}).get("total_count", 0))
        except FetchError as exc:
            logger.warning("Search API failed for open PRs of %s: %s", repo_id, exc)
            open_pull_requests = 0

        contributors = [
            {
                "username": c.get("login"),
                "contributions": int(c.get("contributions") or 0),
                "profile_url": c.get("html_url"),
            }
            for c in contributors_raw
            if c.get("login")
        ]
        return {
            "full_name": repo.get("full_name") or repo_id,
            "url": repo.get("html_url") or f"https://github.com/{repo_id}",
            "description": repo.get("description"),
            "default_branch": repo.get("default_branch") or "main",
            "stars": int(repo.get("stargazers_count") or 0),
            "forks": int(repo.get("forks_count") or 0),
            "watchers": int(repo.get("subscribers_count") or repo.get("watchers_count") or 0),
            "size": int(repo.get("size") or 0),
            "languages": languages,
            "primary_language": next(iter(languages), None),
            # GitHub counts open PRs as open issues
            "open_issues": max(0, int(repo.get("open_issues_count") or 0) - open_pull_requests),
            "open_pull_requests": open_pull_requests,
            "created_at": repo.get("created_at"),
            "updated_at": repo.get("updated_at"),
            "pushed_at": repo.get("pushed_at"),
            "contributors": contributors,
            "total_contributors": len(contributors),
        }

    async def fetch_file_list(self, repo_id: str, branch: str) -> list[dict[str, str]]:
        """List the repository tree as ``{"path", "type": "file"|"dir"}`` entries."""
        page = await self._request(f"/repos/{repo_id}/git/trees/{branch}", {"recursive": 1})
        data = page.data or {}
        if data.get("truncated"):
            logger.info("Tree listing for %s was truncated by the API", repo_id)
        entries = []
        for entry in data.get("tree", []):
            kind = entry.get("type")
            if kind == "blob":
                entries.append({"path": entry.get("path", ""), "type": "file"})
            elif kind == "tree":
                entries.append({"path": entry.get("path", ""), "type": "dir"})
        return entries
