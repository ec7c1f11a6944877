from __future__ import annotations

import asyncio

import pytest


@pytest.fixture(scope="session", autouse=True)
def event_loop():
    """Current event loop for the whole session.

    With mocks installed, ``pulumi.log`` schedules its RPCs on the current
    loop even when called outside a coroutine.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    yield loop
    asyncio.set_event_loop(None)
    loop.close()


@pytest.fixture
def run(event_loop):
    """Run a coroutine to completion."""
    return event_loop.run_until_complete


@pytest.fixture
def no_sleep():
    """Sleep stand-in that records requested delays instead of waiting."""
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    sleep.delays = delays
    return sleep
