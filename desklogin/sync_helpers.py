"""Synchronous helpers for the async protocol engine.

The redirect listener and the refresh scheduler run on plain threads while
the protocol engine is written against ``httpx.AsyncClient``. These helpers
submit engine coroutines to one persistent background event loop so that
pooled HTTP connections survive between calls.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
import time

from typing import TYPE_CHECKING, Any, TypeVar


if TYPE_CHECKING:
    from collections.abc import Coroutine


T = TypeVar("T")


class _LoopHolder:
    """Holder for the background event loop to avoid global statement."""

    loop: asyncio.AbstractEventLoop | None = None
    thread: threading.Thread | None = None


_holder = _LoopHolder()
_lock = threading.Lock()


def _get_or_create_loop() -> asyncio.AbstractEventLoop:
    """Get or create the background event loop.

    This loop runs in a daemon thread and persists across multiple
    run_async calls, so the engine's HTTP client stays bound to a live loop.
    """
    with _lock:
        if _holder.loop is not None and _holder.loop.is_running():
            return _holder.loop

        _holder.loop = asyncio.new_event_loop()

        def run_loop() -> None:
            loop = _holder.loop
            if loop is not None:
                asyncio.set_event_loop(loop)
                loop.run_forever()

        _holder.thread = threading.Thread(
            target=run_loop, name="desklogin-loop", daemon=True
        )
        _holder.thread.start()

        # Wait for the loop to start
        for _ in range(50):  # 500ms max wait
            if _holder.loop.is_running():
                break
            time.sleep(0.01)

        return _holder.loop


def run_async(coro: Coroutine[Any, Any, T], timeout: float | None = 30.0) -> T:
    """Run an async coroutine from sync code.

    NOTE: This function CANNOT be called from a coroutine running on the
    background loop - it would deadlock. Use ``await`` directly there.

    Parameters
    ----------
    coro : Coroutine
        The coroutine to run.
    timeout : float, optional
        Timeout in seconds. Default is 30.0.

    Returns
    -------
    T
        The result of the coroutine.

    Raises
    ------
    TimeoutError
        If the operation times out.
    RuntimeError
        If called from within the background loop (would deadlock).
    """
    loop = _get_or_create_loop()

    try:
        running_loop = asyncio.get_running_loop()
    except RuntimeError:
        running_loop = None

    if running_loop is loop:
        coro.close()
        raise RuntimeError(
            "run_async() cannot be called from a coroutine on the desklogin loop. "
            "Use 'await' directly instead."
        )

    future = asyncio.run_coroutine_threadsafe(coro, loop)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise
