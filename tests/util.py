import asyncio
import time

loop = asyncio.new_event_loop()


def arun(coro):
    return loop.run_until_complete(coro)


async def wait_for_condition(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll `predicate` until it is true, failing the test after `timeout` seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
