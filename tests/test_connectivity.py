# tests/test_connectivity.py

from __future__ import annotations

import asyncio

import pytest

from guardian_sync.client.connectivity import ConnectivityMonitor


@pytest.mark.asyncio
async def test_flapping_link_triggers_one_sync() -> None:
    runs = 0

    async def on_online() -> None:
        nonlocal runs
        runs += 1

    mon = ConnectivityMonitor(on_online, settle_seconds=0.05)
    for state in (True, False, True, False, True):
        mon.set_online(state)

    await asyncio.sleep(0.15)
    await mon.wait_idle()
    assert runs == 1
    assert mon.online is True


@pytest.mark.asyncio
async def test_going_offline_before_settle_cancels_sync() -> None:
    runs = 0

    async def on_online() -> None:
        nonlocal runs
        runs += 1

    mon = ConnectivityMonitor(on_online, settle_seconds=0.05)
    mon.set_online(True)
    mon.set_online(False)
    await asyncio.sleep(0.1)
    await mon.wait_idle()
    assert runs == 0


@pytest.mark.asyncio
async def test_running_sync_is_not_cancelled_or_overlapped() -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    runs = 0

    async def on_online() -> None:
        nonlocal runs
        runs += 1
        started.set()
        await release.wait()

    mon = ConnectivityMonitor(on_online, settle_seconds=0)
    mon.set_online(True)
    await asyncio.wait_for(started.wait(), timeout=1)

    # Link drops and returns while the first sync is still running.
    mon.set_online(False)
    mon.set_online(True)
    await asyncio.sleep(0.01)

    release.set()
    await mon.wait_idle()
    assert runs == 1
    assert mon.sync_runs == 1


@pytest.mark.asyncio
async def test_sync_failure_is_logged_not_raised() -> None:
    async def on_online() -> None:
        raise RuntimeError("boom")

    mon = ConnectivityMonitor(on_online, settle_seconds=0)
    mon.set_online(True)
    await asyncio.sleep(0.01)
    await mon.wait_idle()
    assert mon.sync_runs == 1


@pytest.mark.asyncio
async def test_probe_drives_transitions() -> None:
    answers = iter([False, True, True])
    synced = asyncio.Event()

    async def probe() -> bool:
        return next(answers, True)

    async def on_online() -> None:
        synced.set()

    mon = ConnectivityMonitor(on_online, settle_seconds=0)
    loop_task = asyncio.create_task(mon.run_probe(probe, interval_seconds=0.05))
    try:
        await asyncio.wait_for(synced.wait(), timeout=2)
    finally:
        loop_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await loop_task
    assert mon.online is True
