"""
timeouts.py — "operation vs. timer, first to finish wins".

Every stage-level deadline in the pipeline goes through with_deadline().
The losing operation is NOT cancelled: its eventual result (or exception) is
collected by a done-callback and dropped, so a late answer can never be
applied twice or land on a frozen result.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _drop_late(label: str):
    def _callback(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("[%s] late failure discarded: %s", label, exc)
        else:
            logger.debug("[%s] late result discarded", label)
    return _callback


async def with_deadline(
    operation: Awaitable[T],
    timeout: float,
    fallback: T,
    label: str = "operation",
) -> T:
    """
    Await `operation` for at most `timeout` seconds.

    Returns the operation's value if it finishes in time; otherwise, or if it
    raises, returns `fallback`.  Slow and broken are treated the same.
    """
    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    finally:
        if not task.done():
            task.add_done_callback(_drop_late(label))

    if task not in done:
        logger.warning("[%s] no answer after %.1fs — using fallback", label, timeout)
        return fallback

    if task.cancelled():
        logger.warning("[%s] cancelled — using fallback", label)
        return fallback
    exc = task.exception()
    if exc is not None:
        logger.error("[%s] failed: %s", label, exc)
        return fallback
    return task.result()
