"""Cancellable delay for retry loops."""

import asyncio
from typing import Optional

from governor.app.exceptions import WaitAbortedError


async def wait(ms: float, signal: Optional[asyncio.Event] = None) -> None:
    """Sleep for ``ms`` milliseconds unless ``signal`` is set.

    Args:
        ms: Delay in milliseconds (negative values are treated as 0)
        signal: Event that aborts the wait when set

    Raises:
        WaitAbortedError: If the signal is already set or becomes set
            before the delay elapses.
    """
    seconds = max(0.0, ms) / 1000

    if signal is None:
        await asyncio.sleep(seconds)
        return

    if signal.is_set():
        raise WaitAbortedError("Wait aborted before it started")

    try:
        await asyncio.wait_for(signal.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise WaitAbortedError()
