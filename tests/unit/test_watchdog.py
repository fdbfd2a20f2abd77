import asyncio

import pytest

from agent_runner.errors import InactivityTimeoutError
from agent_runner.runtime.process.watchdog import InactivityWatchdog


@pytest.mark.asyncio
async def test_watchdog_fires_after_silence():
    fired = []
    watchdog = InactivityWatchdog(0.05, on_timeout=lambda: fired.append(True))
    watchdog.arm()

    with pytest.raises(InactivityTimeoutError) as exc_info:
        await asyncio.wait_for(watchdog.wait(), timeout=1.0)

    assert exc_info.value.details == {"timeout_sec": 0.05}
    assert watchdog.fired
    assert fired == [True]


@pytest.mark.asyncio
async def test_reset_postpones_timeout():
    watchdog = InactivityWatchdog(0.2)
    watchdog.arm()
    waiter = asyncio.ensure_future(watchdog.wait())

    for _ in range(5):
        await asyncio.sleep(0.1)
        watchdog.reset()

    assert not waiter.done()
    watchdog.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter


@pytest.mark.asyncio
async def test_disabled_watchdog_never_arms():
    watchdog = InactivityWatchdog(0)
    watchdog.arm()
    watchdog.reset()

    assert not watchdog.enabled
    with pytest.raises(RuntimeError):
        await watchdog.wait()


@pytest.mark.asyncio
async def test_cancel_after_fire_is_quiet():
    watchdog = InactivityWatchdog(0.01)
    watchdog.arm()
    await asyncio.sleep(0.05)

    watchdog.cancel()
    watchdog.reset()

    assert watchdog.fired
