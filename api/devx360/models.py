"""Domain records for teams, raw repository activity and insight jobs."""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Team:
    """A team and the single repository it is linked to."""

    id: str
    name: str
    members: frozenset[str] = frozenset()
    repository_url: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "members": sorted(self.members),
            "repository_url": self.repository_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class Commit:
    sha: str
    message: str
    authored_at: dt.datetime


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    created_at: dt.datetime
    labels: tuple[str, ...] = ()
    merged_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None
    merge_commit_sha: str | None = None


@dataclass(frozen=True)
class Release:
    tag_name: str
    created_at: dt.datetime
    name: str = ""
    body: str = ""
    draft: bool = False
    prerelease: bool = False
    commit_sha: str | None = None


@dataclass(frozen=True)
class Tag:
    name: str
    commit_sha: str | None
    committed_at: dt.datetime | None = None


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    created_at: dt.datetime
    body: str = ""
    labels: tuple[str, ...] = ()
    closed_at: dt.datetime | None = None


@dataclass(frozen=True)
class RawActivityWindow:
    """Everything fetched for one repository during one refresh.

    ``until`` is the instant the fetch ran; windows are measured back from it.
    """

    until: dt.datetime
    window_days: int
    commits: tuple[Commit, ...] = ()
    pull_requests: tuple[PullRequest, ...] = ()
    releases: tuple[Release, ...] = ()
    tags: tuple[Tag, ...] = ()
    issues: tuple[Issue, ...] = ()


@dataclass
class TeamMetrics:
    """Latest repository snapshot and DORA records for one team."""

    team_id: str
    repository_url: str | None = None
    snapshot: dict[str, Any] | None = None
    metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    complexity: dict[str, Any] | None = None
    refreshed_at: dt.datetime | None = None
    last_error: str | None = None
    last_error_at: dt.datetime | None = None

    @property
    def metrics_status(self) -> str:
        if self.refreshed_at is None:
            return "no_metrics_yet"
        if self.last_error_at is not None and self.last_error_at > self.refreshed_at:
            return "stale"
        return "ok"


class JobStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class InsightJob:
    team_id: str
    status: JobStatus = JobStatus.NOT_STARTED
    progress: int = 0
    result: str | None = None
    error: str | None = None
    updated_at: dt.datetime | None = None


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)
