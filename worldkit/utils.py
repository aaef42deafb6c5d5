"""Utility functions for worldkit."""

import asyncio
import inspect
import re
from collections.abc import Callable
from typing import Any


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable without blocking the event loop.

    Coroutine functions are awaited directly; plain callables run in a worker
    thread, and an awaitable they return is awaited as well.

    Parameters
    ----------
    func : Callable
        Function to call
    *args : Any
        Positional arguments passed through

    Returns
    -------
    Any
        The function's result
    """
    if inspect.iscoroutinefunction(func):
        return await func(*args)

    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        return await result
    return result


async def call_to_completion(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable, letting a thread-run call finish on cancellation.

    A worker thread cannot be interrupted. When the caller is cancelled while a
    plain callable is still running, this waits for the thread to return (further
    cancellations included) before re-raising ``CancelledError``, so whatever the
    call built exists by the time the caller cleans up. Coroutine functions are
    awaited directly and cancelled as usual.

    Parameters
    ----------
    func : Callable
        Function to call
    *args : Any
        Positional arguments passed through

    Returns
    -------
    Any
        The function's result
    """
    if inspect.iscoroutinefunction(func):
        return await func(*args)

    call = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        result = await asyncio.shield(call)
    except asyncio.CancelledError:
        await settle(call)
        raise

    if inspect.isawaitable(result):
        return await result
    return result


async def settle(future: asyncio.Future) -> None:
    """Wait until ``future`` is done, ignoring cancellation of the waiter.

    The future's own outcome is consumed and discarded.
    """
    while not future.done():
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            continue
        except Exception:
            break

    if not future.cancelled():
        future.exception()


def slugify(name: str) -> str:
    """Turn a scenario or resource name into a filesystem/container-safe slug.

    Parameters
    ----------
    name : str
        Arbitrary name

    Returns
    -------
    str
        Lowercase slug containing only letters, digits and hyphens
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "unnamed"
