"""Exception types shared by the metrics pipeline."""

from __future__ import annotations

from typing import Any, Sequence


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Raised when environment configuration is missing or invalid."""


class FetchError(PipelineError):
    """Base for failures talking to the repository hosting API."""

    retryable = False


class RateLimited(FetchError):
    """Quota exhausted for a credential. ``reset_at`` is epoch seconds, if known."""

    retryable = True

    def __init__(self, message: str, reset_at: float | None = None) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class Transient(FetchError):
    """Network error, timeout or 5xx."""

    retryable = True


class Unauthorized(FetchError):
    """Access to the repository was refused."""


class CredentialRejected(Unauthorized):
    """The credential itself is invalid (HTTP 401)."""


class NotFound(FetchError):
    """Repository or resource does not exist (or is not visible)."""


class StaleResult(PipelineError):
    """Team was deleted or re-pointed while its refresh was in flight."""


class PartialBatchFailure(PipelineError):
    """One or more teams failed within a scheduler run."""

    def __init__(self, failures: Sequence[Any]) -> None:
        super().__init__(f"{len(failures)} team refresh(es) failed")
        self.failures = list(failures)


class InsightBackendFailure(PipelineError):
    """Narrative generation failed; terminal ``error`` state for a job."""
