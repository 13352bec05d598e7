"""Spawn asyncio background tasks whose failures are never silent."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to safely exit it."""

    pass


async def _run_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except SafeTaskExitError:
        raise
    except Exception:
        task = asyncio.current_task()
        name = None if task is None else task.get_name()
        logger.error(
            f'Background task (name="{name}") failed:\n'
            f'{traceback.format_exc()}',
        )
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Done callback raising `SystemExit` if the task failed."""
    if task.cancelled():
        return
    error = task.exception()
    if error is None or isinstance(error, SafeTaskExitError):
        return
    logger.error(
        f'Exiting because background task (name="{task.get_name()}") '
        f'raised {error!r}',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background and log any traceback it raises.

    The task gets
    [`exit_on_error()`][peercall.utils.tasks.exit_on_error] as its done
    callback so an unexpected exception in a long-running loop (e.g., the
    relay reader of a participant) is logged and stops the program instead
    of leaving it hanging. Raise
    [`SafeTaskExitError`][peercall.utils.tasks.SafeTaskExitError] to finish
    the task without exiting.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _run_and_log_traceback(coro, *args, **kwargs),
        name=name,
    )
    task.add_done_callback(exit_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish, ignoring the cancellation."""
    if task is None:
        return
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, SafeTaskExitError):
        pass
