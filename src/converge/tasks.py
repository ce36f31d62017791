import functools
import inspect

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus


def is_async_fn(fn) -> bool:
    if fn is None:
        return False
    elif isinstance(fn, functools.partial):
        return is_async_fn(fn.func)
    elif hasattr(fn, '__wrapped__'):  # @functools.wraps()
        return is_async_fn(fn.__wrapped__)
    elif inspect.iscoroutinefunction(fn):
        return True
    elif callable(fn) and not inspect.isroutine(fn) and not inspect.isclass(fn):
        # Callable instances, e.g. reconciler objects.
        return inspect.iscoroutinefunction(fn.__call__)
    return False


def nonblocking(func):
    """Decorator that marks a sync function as safe to call on the event loop."""
    func.__nonblocking__ = True
    return func


async def invoke(func, *args, **kwargs):
    """Call sync or async `func`. Blocking sync functions run in a worker thread."""
    if is_async_fn(func):
        return await func(*args, **kwargs)
    if getattr(func, '__nonblocking__', False):
        return func(*args, **kwargs)
    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


class Task:
    """A long running component that can be awaited until it is running,
    independent of the TaskGroup it was started in."""

    def __init__(self):
        self._running = anyio.Event()
        self._stop = anyio.Event()

    def reset_task(self):
        # anyio events can not be re-used.
        self._running = anyio.Event()
        self._stop = anyio.Event()

    @property
    def is_running(self):
        return self._running.is_set()

    @property
    def running(self):
        return self._running.wait()

    def __await__(self):
        return self._running.wait().__await__()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        raise NotImplementedError()

    def stop(self):
        raise NotImplementedError()
