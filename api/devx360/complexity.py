"""Lightweight structural score for a repository.

Advisory context for the insight prompt only; it is not a DORA metric.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Mapping

_FILE_TYPES = frozenset({"file", "blob"})
_DIR_TYPES = frozenset({"dir", "directory", "tree"})


def _extension(path: str) -> str | None:
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if "." not in name.strip("."):
        return None
    return name.rsplit(".", 1)[1].lower() or None


def analyze_complexity(
    languages: Mapping[str, int] | None,
    files: Iterable[Mapping[str, Any]] | None,
    size: int = 0,
) -> dict[str, Any]:
    """Score a repository from its language breakdown and file listing.

    ``complexity = 10 * distinct languages + number of file entries``; entries
    typed as directories are counted under ``structure`` but not scored.
    Files without an extension are counted in ``files_without_extension``
    and left out of the ``file_types`` histogram.
    """
    languages = dict(languages or {})
    file_count = 0
    directory_count = 0
    without_extension = 0
    histogram: Counter[str] = Counter()

    for entry in files or ():
        kind = str(entry.get("type", "")).lower()
        if kind in _DIR_TYPES:
            directory_count += 1
            continue
        if kind not in _FILE_TYPES:
            continue
        file_count += 1
        ext = _extension(str(entry.get("path") or entry.get("name") or ""))
        if ext is None:
            without_extension += 1
        else:
            histogram[ext] += 1

    return {
        "complexity": 10 * len(languages) + file_count,
        "size": int(size or 0),
        "languages": languages,
        "file_types": dict(sorted(histogram.items(), key=lambda kv: (-kv[1], kv[0]))),
        "files_without_extension": without_extension,
        "structure": {"files": file_count, "directories": directory_count},
    }
