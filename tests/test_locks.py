"""Tests for the per-identity file lock."""

import asyncio

import pytest

from devbox_egress.locks import IdentityFileLock


@pytest.fixture
def lock_path(tmp_path):
    return tmp_path / ".locks" / "c1.lock"


@pytest.mark.asyncio
async def test_second_holder_waits_for_release(lock_path):
    first = IdentityFileLock(lock_path, poll_interval=0.01)
    second = IdentityFileLock(lock_path, poll_interval=0.01)

    await first.acquire()
    waiter = asyncio.create_task(second.acquire())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    first.release()
    await asyncio.wait_for(waiter, timeout=1)
    second.release()


@pytest.mark.asyncio
async def test_waiter_survives_unlink_by_holder(lock_path):
    first = IdentityFileLock(lock_path, poll_interval=0.01)
    second = IdentityFileLock(lock_path, poll_interval=0.01)

    await first.acquire()
    waiter = asyncio.create_task(second.acquire())
    await asyncio.sleep(0.03)

    first.release(unlink=True)
    await asyncio.wait_for(waiter, timeout=1)

    # The waiter holds the recreated file, so a third caller still has to wait
    assert lock_path.exists()
    third_lock = IdentityFileLock(lock_path, poll_interval=0.01)
    third = asyncio.create_task(third_lock.acquire())
    await asyncio.sleep(0.03)
    assert not third.done()

    second.release()
    await asyncio.wait_for(third, timeout=1)
    third_lock.release()


@pytest.mark.asyncio
async def test_cancelled_waiter_leaves_lock_free(lock_path):
    first = IdentityFileLock(lock_path, poll_interval=0.01)
    await first.acquire()

    waiter = asyncio.create_task(IdentityFileLock(lock_path, poll_interval=0.01).acquire())
    await asyncio.sleep(0.03)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    first.release()

    again = IdentityFileLock(lock_path, poll_interval=0.01)
    await asyncio.wait_for(again.acquire(), timeout=1)
    again.release()


def test_release_without_acquire_is_noop(lock_path):
    IdentityFileLock(lock_path).release(unlink=True)
    assert not lock_path.exists()
