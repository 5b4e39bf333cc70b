"""Pool of hosting-API credentials handed out least-recently-used first.

Every credential returned by ``acquire`` is owned exclusively by the caller
until it is passed back to ``release``. The release outcome drives the
credential's health: rate limits park it until the reported reset time,
authentication failures take it out of rotation for the rest of the process.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

logger = logging.getLogger(__name__)


class CredentialHealth(str, enum.Enum):
    VALID = "valid"
    EXHAUSTED = "exhausted"
    REVOKED = "revoked"


class ReleaseOutcome(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"


@dataclass(eq=False)
class Credential:
    token: str = field(repr=False)
    health: CredentialHealth = CredentialHealth.VALID
    last_used: float = 0.0
    cooldown_until: float = 0.0
    in_use: bool = False
    use_sequence: int = 0

    @property
    def masked(self) -> str:
        return f"{self.token[:4]}****" if len(self.token) > 8 else "****"


class CredentialRotator:
    """Thread- and task-safe rotation over a fixed set of tokens."""

    def __init__(
        self,
        tokens: Iterable[str],
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = [Credential(token=t) for t in dict.fromkeys(t for t in tokens if t)]
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sequence = 0
        self._revoked: list[str] = []
        self._released: asyncio.Event | None = None

    def __len__(self) -> int:
        return len(self._credentials)

    def acquire(self) -> Credential | None:
        """Hand out the least recently used eligible credential, or ``None``.

        ``None`` means no credential is eligible right now (all checked out,
        cooling down or revoked); callers back off instead of spinning.
        """
        with self._lock:
            now = self._clock()
            best: Credential | None = None
            for credential in self._credentials:
                if credential.in_use or credential.health is CredentialHealth.REVOKED:
                    continue
                if credential.health is CredentialHealth.EXHAUSTED:
                    if credential.cooldown_until > now:
                        continue
                    credential.health = CredentialHealth.VALID
                if best is None or credential.use_sequence < best.use_sequence:
                    best = credential
            if best is None:
                return None
            self._sequence += 1
            best.use_sequence = self._sequence
            best.last_used = now
            best.in_use = True
            return best

    def release(
        self,
        credential: Credential,
        outcome: ReleaseOutcome = ReleaseOutcome.SUCCESS,
        reset_at: float | None = None,
    ) -> None:
        """Return a credential to the pool and record how the call went.

        Raises:
            ValueError: If the credential is not currently checked out from
                this rotator.
        """
        with self._lock:
            if not any(c is credential for c in self._credentials) or not credential.in_use:
                raise ValueError("credential is not checked out from this rotator")
            credential.in_use = False
            now = self._clock()
            if outcome is ReleaseOutcome.RATE_LIMITED:
                credential.health = CredentialHealth.EXHAUSTED
                if reset_at is not None and reset_at > now:
                    credential.cooldown_until = reset_at
                else:
                    credential.cooldown_until = now + self._cooldown_seconds
            elif outcome is ReleaseOutcome.AUTH_FAILURE:
                credential.health = CredentialHealth.REVOKED
                self._revoked.append(credential.masked)

        if outcome is ReleaseOutcome.AUTH_FAILURE:
            logger.error(
                "Credential %s rejected by the hosting API; removed from rotation. Check the configured tokens.",
                credential.masked,
            )
        elif outcome is ReleaseOutcome.RATE_LIMITED:
            logger.warning(
                "Credential %s rate limited; cooling down for %.0fs",
                credential.masked,
                max(0.0, credential.cooldown_until - now),
            )
        self._wake_waiters()

    def _wake_waiters(self) -> None:
        event, self._released = self._released, None
        if event is not None:
            event.set()

    def has_usable(self) -> bool:
        with self._lock:
            return any(c.health is not CredentialHealth.REVOKED for c in self._credentials)

    def next_available_at(self) -> float | None:
        """Earliest cooldown expiry among parked credentials, if any."""
        with self._lock:
            now = self._clock()
            pending = [
                c.cooldown_until
                for c in self._credentials
                if c.health is CredentialHealth.EXHAUSTED and not c.in_use and c.cooldown_until > now
            ]
        return min(pending) if pending else None

    async def acquire_wait(self, timeout: float) -> Credential | None:
        """Like ``acquire`` but waits up to ``timeout`` seconds for a release or cooldown expiry."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            credential = self.acquire()
            if credential is not None:
                return credential
            remaining = deadline - loop.time()
            if remaining <= 0 or not self.has_usable():
                return None
            wait = remaining
            next_at = self.next_available_at()
            if next_at is not None:
                wait = min(wait, max(0.01, next_at - self._clock()))
            if self._released is None:
                self._released = asyncio.Event()
            event = self._released
            try:
                await asyncio.wait_for(event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    def status(self) -> dict[str, object]:
        with self._lock:
            now = self._clock()
            cooling = sum(
                1
                for c in self._credentials
                if c.health is CredentialHealth.EXHAUSTED and c.cooldown_until > now
            )
            revoked = sum(1 for c in self._credentials if c.health is CredentialHealth.REVOKED)
            in_use = sum(1 for c in self._credentials if c.in_use)
            return {
                "total": len(self._credentials),
                "available": len(self._credentials) - cooling - revoked - in_use,
                "in_use": in_use,
                "cooling_down": cooling,
                "revoked": revoked,
                "revoked_tokens": list(self._revoked),
            }
