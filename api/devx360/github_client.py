"""Thin async HTTP client for the GitHub REST API.

The client holds no credentials of its own: every call names the token to
use, so the fetcher can rotate tokens between requests. HTTP failures are
translated into the fetch error taxonomy here and nowhere else.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any

import httpx

from devx360.errors import CredentialRejected, FetchError, NotFound, RateLimited, Transient, Unauthorized


_GITHUB_URL = re.compile(
    r"^(?:https?://(?:www\.)?github\.com/|git@github\.com:)([\w.-]+)/([\w.-]+?)(?:\.git)?(?:/.*)?$"
)
_SLUG = re.compile(r"^([\w.-]+)/([\w.-]+)$")


def parse_repository_url(url: str) -> str:
    """Return the ``owner/repo`` identifier for a GitHub repository URL.

    Accepts ``https://github.com/owner/repo`` (optionally with ``.git`` or a
    trailing path), ``git@github.com:owner/repo.git`` and a bare
    ``owner/repo``.

    Raises:
        ValueError: If the value is not a recognisable GitHub repository.
    """
    candidate = (url or "").strip().split("?", 1)[0].split("#", 1)[0]
    match = _GITHUB_URL.match(candidate) or _SLUG.match(candidate)
    if not match:
        raise ValueError(f"Invalid GitHub repository URL: {url!r}")
    owner, repo = match.group(1), match.group(2)
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return f"{owner}/{repo}"


@dataclass(frozen=True)
class Page:
    """One decoded response plus pagination and quota state."""

    data: Any
    next_url: str | None = None
    remaining: int | None = None
    reset_at: float | None = None


def _header_number(response: httpx.Response, name: str) -> float | None:
    raw = response.headers.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class GitHubClient:
    """REST client bound to one API base URL; tokens are supplied per call."""

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(
        self,
        path: str,
        token: str,
        params: dict[str, Any] | None = None,
        empty_on_conflict: bool = False,
    ) -> Page:
        """GET ``path`` (relative to the base URL, or an absolute ``next`` link).

        Raises:
            CredentialRejected: HTTP 401, the token itself is bad.
            RateLimited: HTTP 429, or 403 with exhausted quota.
            Unauthorized: Any other HTTP 403.
            NotFound: HTTP 404.
            Transient: Timeouts, transport errors, 5xx and undecodable bodies.
            FetchError: Any other 4xx.
        """
        try:
            resp = await self._client.get(path, params=params, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException as exc:
            raise Transient(f"GET {path} timed out") from exc
        except httpx.TransportError as exc:
            raise Transient(f"GET {path} failed: {exc}") from exc

        remaining = _header_number(resp, "X-RateLimit-Remaining")
        reset_at = _header_number(resp, "X-RateLimit-Reset")
        status = resp.status_code

        if status == 401:
            raise CredentialRejected(f"GET {path} rejected the credential (401)")
        if status == 429 or (status == 403 and self._is_rate_limit(resp, remaining)):
            retry_after = _header_number(resp, "Retry-After")
            if retry_after is not None:
                reset_at = time.time() + retry_after
            raise RateLimited(f"GET {path} rate limited ({status})", reset_at=reset_at)
        if status == 403:
            raise Unauthorized(f"GET {path} forbidden (403)")
        if status == 404:
            raise NotFound(f"GET {path} not found (404)")
        if status == 409 and empty_on_conflict:
            return Page(data=[], remaining=int(remaining) if remaining is not None else None, reset_at=reset_at)
        if status >= 500:
            raise Transient(f"GET {path} returned {status}")
        if status >= 400:
            raise FetchError(f"GET {path} returned {status} - {resp.text[:200]}")
        if status == 204:
            return Page(data=[], remaining=int(remaining) if remaining is not None else None, reset_at=reset_at)

        try:
            data = resp.json()
        except ValueError as exc:
            raise Transient(f"GET {path} returned invalid JSON") from exc

        return Page(
            data=data,
            next_url=resp.links.get("next", {}).get("url"),
            remaining=int(remaining) if remaining is not None else None,
            reset_at=reset_at,
        )

    @staticmethod
    def _is_rate_limit(resp: httpx.Response, remaining: float | None) -> bool:
        if remaining == 0 or "Retry-After" in resp.headers:
            return True
        return "rate limit" in resp.text.lower()
