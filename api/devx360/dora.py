"""Compute DORA metrics from a window of raw repository activity.

Everything here is pure: the same ``RawActivityWindow`` always produces the
same JSON-serialisable output, measured back from the window's ``until``
instant rather than the wall clock.

Heuristics (pluggable via ``FailureClassifier``):
- a deployment is a published release or a tag, one per commit SHA;
- a deployment failed when its ref name, the PRs merged into it or the
  commits it shipped look like a bug/incident fix;
- an incident is an issue that looks like a bug/incident; it is recovered
  when the issue is closed.
"""

from __future__ import annotations

import datetime as dt
import math
import re
import statistics
from dataclasses import dataclass
from typing import Any, Iterable, Protocol, Sequence

from devx360.models import Commit, PullRequest, RawActivityWindow

FAILURE_KEYWORDS = ("fix", "bug", "hotfix", "incident")
FAILURE_LABELS = frozenset({"bug", "hotfix", "incident", "regression", "outage", "revert", "rollback"})

LEVEL_ORDER = ["low", "medium", "high", "elite"]
_ONE_HOUR_DAYS = 1 / 24


class FailureClassifier(Protocol):
    def is_failure(self, text: str, labels: Sequence[str] = ()) -> bool: ...


class KeywordFailureClassifier:
    """Case-insensitive whole-word keyword match, plus an explicit label set.

    A keyword may carry an inflection (``fixes``, ``bugs``) or a trailing
    ``fix`` (``bugfix``); anything else glued to it (``fixture``) is another word.
    """

    def __init__(
        self,
        keywords: Iterable[str] = FAILURE_KEYWORDS,
        labels: Iterable[str] = FAILURE_LABELS,
    ) -> None:
        alternatives = "|".join(re.escape(k) for k in sorted(set(keywords), key=len, reverse=True))
        # "prefix", "debug" and "fixture" do not match
        self._pattern = re.compile(
            rf"(?<![a-z0-9])(?:{alternatives})(?:fix)?(?:es|ed|ing|s)?(?![a-z0-9])", re.IGNORECASE
        )
        self._labels = frozenset(label.lower() for label in labels)

    def is_failure(self, text: str, labels: Sequence[str] = ()) -> bool:
        for label in labels:
            lowered = label.strip().lower()
            if lowered in self._labels or self._pattern.search(lowered):
                return True
        return bool(text) and self._pattern.search(text) is not None


DEFAULT_CLASSIFIER = KeywordFailureClassifier()


@dataclass(frozen=True)
class _Deployment:
    ref: str
    at: dt.datetime
    sha: str | None
    text: str


def window_key(days: int) -> str:
    return f"{days}d"


def _days(delta: dt.timedelta) -> float:
    return delta.total_seconds() / 86400.0


def _round(value: float | None) -> float | None:
    if value is None or math.isnan(value):
        return None
    return round(value, 2)


def _in_window(value: dt.datetime | None, start: dt.datetime, end: dt.datetime) -> bool:
    return value is not None and start <= value <= end


def _collect_deployments(window: RawActivityWindow, start: dt.datetime) -> list[_Deployment]:
    """Releases first, then tags not already covered by a release's commit or name."""
    by_key: dict[str, _Deployment] = {}
    release_names: set[str] = set()
    for release in window.releases:
        if release.draft or release.prerelease:
            continue
        if not _in_window(release.created_at, start, window.until):
            continue
        key = release.commit_sha or f"ref:{release.tag_name}"
        release_names.add(release.tag_name)
        existing = by_key.get(key)
        if existing is None or (release.created_at, release.tag_name) < (existing.at, existing.ref):
            by_key[key] = _Deployment(
                ref=release.tag_name,
                at=release.created_at,
                sha=release.commit_sha,
                text=f"{release.tag_name} {release.name}".strip(),
            )
    for tag in window.tags:
        if tag.name in release_names or not _in_window(tag.committed_at, start, window.until):
            continue
        key = tag.commit_sha or f"ref:{tag.name}"
        if key in by_key:
            continue
        by_key[key] = _Deployment(ref=tag.name, at=tag.committed_at, sha=tag.commit_sha, text=tag.name)
    return sorted(by_key.values(), key=lambda d: (d.at, d.ref))


def _deployment_frequency(deployments: list[_Deployment], days: int, start: dt.datetime) -> dict[str, Any]:
    weeks = math.ceil(days / 7)
    per_week = [0] * weeks
    for deployment in deployments:
        index = int(_days(deployment.at - start) // 7)
        per_week[min(max(index, 0), weeks - 1)] += 1
    total = len(deployments)
    return {
        "frequency_per_day": round(total / days, 2),
        "total_deployments": total,
        "analysis_period_days": days,
        "per_week": per_week,
    }


def _associate(
    deployments: list[_Deployment],
    commits: list[Commit],
    pull_requests: list[PullRequest],
    start: dt.datetime,
) -> list[tuple[_Deployment, list[Commit], list[PullRequest]]]:
    """Pair each deployment with the commits and merged PRs shipped since the previous one."""
    paired = []
    previous: dt.datetime | None = None

    def since_previous(value: dt.datetime, deployed_at: dt.datetime) -> bool:
        return start <= value <= deployed_at and (previous is None or value > previous)

    for deployment in deployments:
        shipped = [c for c in commits if since_previous(c.authored_at, deployment.at)]
        shas = {c.sha for c in shipped}
        merged = [
            pr
            for pr in pull_requests
            if pr.merged_at is not None
            and (since_previous(pr.merged_at, deployment.at) or pr.merge_commit_sha in shas)
        ]
        paired.append((deployment, shipped, merged))
        previous = deployment.at
    return paired


def _lead_time(paired: list[tuple[_Deployment, list[Commit], list[PullRequest]]]) -> dict[str, Any]:
    samples: list[float] = []
    orphans = 0
    for deployment, shipped, _ in paired:
        if not shipped:
            orphans += 1
            continue
        first = min(c.authored_at for c in shipped)
        samples.append(max(0.0, _days(deployment.at - first)))
    if not samples:
        return {
            "average_days": None,
            "median_days": None,
            "min_days": None,
            "max_days": None,
            "deployments_analyzed": 0,
            "deployments_without_commits": orphans,
        }
    return {
        "average_days": _round(sum(samples) / len(samples)),
        "median_days": _round(statistics.median(samples)),
        "min_days": _round(min(samples)),
        "max_days": _round(max(samples)),
        "deployments_analyzed": len(samples),
        "deployments_without_commits": orphans,
    }


def _change_failure_rate(
    paired: list[tuple[_Deployment, list[Commit], list[PullRequest]]],
    classifier: FailureClassifier,
) -> dict[str, Any]:
    failures = 0
    for deployment, shipped, merged in paired:
        if (
            classifier.is_failure(deployment.text)
            or any(classifier.is_failure(pr.title, pr.labels) for pr in merged)
            or any(classifier.is_failure(c.message) for c in shipped)
        ):
            failures += 1
    total = len(paired)
    return {
        "failure_rate": round(failures / total * 100, 2) if total else 0.0,
        "bug_or_incident_fixes": failures,
        "total_deployments": total,
    }


def _mttr(window: RawActivityWindow, start: dt.datetime, classifier: FailureClassifier) -> dict[str, Any]:
    recoveries: list[float] = []
    unresolved = 0
    for issue in window.issues:
        if not _in_window(issue.created_at, start, window.until):
            continue
        if not classifier.is_failure(issue.title, issue.labels):
            continue
        if issue.closed_at is None or issue.closed_at < issue.created_at:
            unresolved += 1
            continue
        recoveries.append(_days(issue.closed_at - issue.created_at))
    if not recoveries:
        return {
            "average_days": None,
            "min_days": None,
            "max_days": None,
            "total_incidents_analyzed": 0,
            "unresolved_incidents": unresolved,
        }
    return {
        "average_days": _round(sum(recoveries) / len(recoveries)),
        "min_days": _round(min(recoveries)),
        "max_days": _round(max(recoveries)),
        "total_incidents_analyzed": len(recoveries),
        "unresolved_incidents": unresolved,
    }


def _level_by_days(value: float) -> str:
    if value <= _ONE_HOUR_DAYS:
        return "elite"
    if value <= 1:
        return "high"
    if value <= 7:
        return "medium"
    return "low"


def classify_performance(metrics: dict[str, Any]) -> dict[str, str]:
    """Classify each DORA metric into elite/high/medium/low (``unknown`` without data)."""
    levels: dict[str, str] = {}

    df = metrics["deployment_frequency"]
    per_day = df["total_deployments"] / df["analysis_period_days"]
    if per_day >= 1:
        levels["deployment_frequency"] = "elite"
    elif per_day >= 1 / 7:
        levels["deployment_frequency"] = "high"
    elif per_day >= 1 / 30:
        levels["deployment_frequency"] = "medium"
    else:
        levels["deployment_frequency"] = "low"

    lead = metrics["lead_time"]["average_days"]
    levels["lead_time"] = "unknown" if lead is None else _level_by_days(lead)

    cfr = metrics["change_failure_rate"]
    if cfr["total_deployments"] == 0:
        levels["change_failure_rate"] = "unknown"
    elif cfr["failure_rate"] <= 15:
        levels["change_failure_rate"] = "elite"
    elif cfr["failure_rate"] <= 30:
        levels["change_failure_rate"] = "high"
    elif cfr["failure_rate"] <= 45:
        levels["change_failure_rate"] = "medium"
    else:
        levels["change_failure_rate"] = "low"

    mttr = metrics["mttr"]["average_days"]
    levels["mttr"] = "unknown" if mttr is None else _level_by_days(mttr)

    known = [LEVEL_ORDER.index(level) for level in levels.values() if level != "unknown"]
    levels["overall"] = LEVEL_ORDER[round(sum(known) / len(known))] if known else "unknown"
    return levels


def compute_dora_metrics(
    window: RawActivityWindow,
    days: int,
    classifier: FailureClassifier | None = None,
) -> dict[str, Any]:
    """Return the DORA metrics record for the trailing ``days`` of ``window``.

    Raises:
        ValueError: If ``days`` is not positive or exceeds the fetched window.
    """
    if days <= 0:
        raise ValueError("analysis window must be a positive number of days")
    if days > window.window_days:
        raise ValueError(f"cannot compute a {days}-day window from {window.window_days} days of activity")
    classifier = classifier or DEFAULT_CLASSIFIER
    start = window.until - dt.timedelta(days=days)

    commits = sorted(
        (c for c in window.commits if _in_window(c.authored_at, start, window.until)),
        key=lambda c: (c.authored_at, c.sha),
    )
    pull_requests = sorted(window.pull_requests, key=lambda pr: pr.number)
    deployments = _collect_deployments(window, start)
    paired = _associate(deployments, commits, pull_requests, start)

    metrics: dict[str, Any] = {
        "deployment_frequency": _deployment_frequency(deployments, days, start),
        "lead_time": _lead_time(paired),
        "change_failure_rate": _change_failure_rate(paired, classifier),
        "mttr": _mttr(window, start, classifier),
        "data_summary": {
            "commits_count": len(commits),
            "releases_count": sum(
                1
                for r in window.releases
                if not r.draft and not r.prerelease and _in_window(r.created_at, start, window.until)
            ),
            "tags_count": sum(1 for t in window.tags if _in_window(t.committed_at, start, window.until)),
            "pull_requests_count": sum(1 for pr in window.pull_requests if _in_window(pr.created_at, start, window.until)),
            "issues_count": sum(1 for i in window.issues if _in_window(i.created_at, start, window.until)),
            "analysis_period_days": days,
        },
    }
    metrics["performance"] = classify_performance(metrics)
    return metrics


def compute_all_windows(
    window: RawActivityWindow,
    windows: Iterable[int],
    classifier: FailureClassifier | None = None,
) -> dict[str, dict[str, Any]]:
    return {window_key(days): compute_dora_metrics(window, days, classifier) for days in sorted(set(windows))}
