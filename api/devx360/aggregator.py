"""Fleet-wide roll-up of the latest per-team metrics records."""

from __future__ import annotations

from collections import Counter
from typing import Any, Iterable

from devx360.dora import LEVEL_ORDER
from devx360.models import TeamMetrics

DEFAULT_WINDOW = "30d"
SIZE_BUCKETS = (("small", 1_000), ("medium", 10_000))


def _size_bucket(size: int) -> str:
    for name, limit in SIZE_BUCKETS:
        if size < limit:
            return name
    return "large"


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def aggregate_metrics(records: Iterable[TeamMetrics], window: str = DEFAULT_WINDOW) -> dict[str, Any]:
    """Reduce team records to totals, averages and distributions for ``window``.

    Teams without a successful refresh count towards ``totals.teams`` only.
    Averages skip teams with no value for that metric. Records are processed
    in team id order so float sums are reproducible.
    """
    records = sorted(records, key=lambda r: r.team_id)
    totals = {"teams": len(records), "teams_with_metrics": 0, "deployments": 0, "commits": 0, "incidents": 0, "contributors": 0}
    frequency: list[float] = []
    lead_time: list[float] = []
    failure_rate: list[float] = []
    mttr: list[float] = []
    complexity: list[float] = []
    languages: Counter[str] = Counter()
    sizes = {"small": 0, "medium": 0, "large": 0}
    performance: Counter[str] = Counter()

    for record in records:
        metrics = record.metrics.get(window)
        if metrics:
            totals["teams_with_metrics"] += 1
            totals["deployments"] += metrics["deployment_frequency"]["total_deployments"]
            totals["commits"] += metrics["data_summary"]["commits_count"]
            incidents = metrics["mttr"]
            totals["incidents"] += incidents["total_incidents_analyzed"] + incidents["unresolved_incidents"]

            frequency.append(metrics["deployment_frequency"]["frequency_per_day"])
            if metrics["lead_time"]["average_days"] is not None:
                lead_time.append(metrics["lead_time"]["average_days"])
            if metrics["change_failure_rate"]["total_deployments"]:
                failure_rate.append(metrics["change_failure_rate"]["failure_rate"])
            if incidents["average_days"] is not None:
                mttr.append(incidents["average_days"])
            performance[metrics.get("performance", {}).get("overall", "unknown")] += 1

        if record.complexity is not None:
            complexity.append(record.complexity["complexity"])

        if record.snapshot:
            totals["contributors"] += record.snapshot.get("total_contributors", 0)
            for language, amount in (record.snapshot.get("languages") or {}).items():
                languages[language] += amount
            sizes[_size_bucket(int(record.snapshot.get("size") or 0))] += 1

    order = LEVEL_ORDER[::-1] + ["unknown"]
    return {
        "window": window,
        "totals": totals,
        "averages": {
            "deployment_frequency_per_day": _mean(frequency),
            "lead_time_days": _mean(lead_time),
            "change_failure_rate": _mean(failure_rate),
            "mttr_days": _mean(mttr),
            "complexity": _mean(complexity),
        },
        "language_distribution": dict(sorted(languages.items(), key=lambda kv: (-kv[1], kv[0]))),
        "size_distribution": sizes if records else {},
        "performance_distribution": {level: performance[level] for level in order if performance[level]},
    }
