import asyncio

import pytest

from devx360.credentials import CredentialHealth, CredentialRotator, ReleaseOutcome


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_acquire_hands_out_least_recently_used_first():
    rotator = CredentialRotator(["token-aaaa-1", "token-bbbb-2", "token-cccc-3"])

    first = rotator.acquire()
    rotator.release(first)
    second = rotator.acquire()
    rotator.release(second)
    third = rotator.acquire()
    rotator.release(third)

    assert [first.token, second.token, third.token] == ["token-aaaa-1", "token-bbbb-2", "token-cccc-3"]
    assert rotator.acquire() is first


def test_checked_out_credentials_are_never_shared():
    rotator = CredentialRotator(["token-aaaa-1", "token-bbbb-2"])

    held = [rotator.acquire(), rotator.acquire()]

    assert held[0] is not held[1]
    assert rotator.acquire() is None
    rotator.release(held[1])
    assert rotator.acquire() is held[1]


def test_auth_failure_revokes_for_good():
    rotator = CredentialRotator(["token-aaaa-1", "token-bbbb-2"])
    bad = rotator.acquire()
    rotator.release(bad, ReleaseOutcome.AUTH_FAILURE)

    seen = set()
    for _ in range(5):
        credential = rotator.acquire()
        seen.add(credential.token)
        rotator.release(credential)

    assert bad.health is CredentialHealth.REVOKED
    assert seen == {"token-bbbb-2"}
    status = rotator.status()
    assert status["revoked"] == 1
    assert status["revoked_tokens"] == ["toke****"]


def test_rate_limited_credential_cools_down_until_reset():
    clock = FakeClock()
    rotator = CredentialRotator(["token-aaaa-1"], cooldown_seconds=60, clock=clock)
    credential = rotator.acquire()
    rotator.release(credential, ReleaseOutcome.RATE_LIMITED, reset_at=clock.now + 30)

    assert rotator.acquire() is None
    assert rotator.next_available_at() == clock.now + 30
    assert rotator.status()["cooling_down"] == 1

    clock.now += 31
    assert rotator.acquire() is credential
    assert credential.health is CredentialHealth.VALID


def test_rate_limit_without_reset_uses_default_cooldown():
    clock = FakeClock()
    rotator = CredentialRotator(["token-aaaa-1"], cooldown_seconds=60, clock=clock)
    rotator.release(rotator.acquire(), ReleaseOutcome.RATE_LIMITED)

    clock.now += 59
    assert rotator.acquire() is None
    clock.now += 2
    assert rotator.acquire() is not None


def test_release_of_foreign_or_idle_credential_raises():
    rotator = CredentialRotator(["token-aaaa-1"])
    other = CredentialRotator(["token-aaaa-1"]).acquire()
    credential = rotator.acquire()
    rotator.release(credential)

    with pytest.raises(ValueError):
        rotator.release(credential)
    with pytest.raises(ValueError):
        rotator.release(other)


def test_duplicate_and_empty_tokens_are_ignored():
    rotator = CredentialRotator(["token-aaaa-1", "", "token-aaaa-1"])
    assert len(rotator) == 1


@pytest.mark.asyncio
async def test_acquire_wait_wakes_on_release():
    rotator = CredentialRotator(["token-aaaa-1"])
    held = rotator.acquire()

    waiter = asyncio.create_task(rotator.acquire_wait(timeout=5))
    await asyncio.sleep(0)
    assert not waiter.done()

    rotator.release(held)
    assert await asyncio.wait_for(waiter, timeout=1) is held


@pytest.mark.asyncio
async def test_acquire_wait_times_out_and_gives_up_without_usable_tokens():
    rotator = CredentialRotator(["token-aaaa-1"])
    held = rotator.acquire()
    assert await rotator.acquire_wait(timeout=0.05) is None

    rotator.release(held, ReleaseOutcome.AUTH_FAILURE)
    assert rotator.has_usable() is False
    assert await rotator.acquire_wait(timeout=5) is None


@pytest.mark.asyncio
async def test_concurrent_workers_never_hold_the_same_credential():
    rotator = CredentialRotator([f"token-{i:04d}-x" for i in range(3)])
    holders: dict[str, int] = {}
    overlaps = []

    async def worker():
        for _ in range(20):
            credential = await rotator.acquire_wait(timeout=5)
            holders[credential.token] = holders.get(credential.token, 0) + 1
            if holders[credential.token] > 1:
                overlaps.append(credential.token)
            await asyncio.sleep(0)
            holders[credential.token] -= 1
            rotator.release(credential)

    await asyncio.gather(*(worker() for _ in range(8)))

    assert overlaps == []
    assert rotator.status()["in_use"] == 0
