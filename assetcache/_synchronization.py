from __future__ import annotations

import logging
import types
import typing as tp
from concurrent.futures import ThreadPoolExecutor
from threading import Lock as T_LOCK

import anyio
from anyio.abc import TaskGroup

logger = logging.getLogger("assetcache.gateway")


class AsyncLock:
    def __init__(self) -> None:
        self._lock = anyio.Lock()

    async def __aenter__(self) -> None:
        await self._lock.acquire()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: types.TracebackType | None = None,
    ) -> None:
        self._lock.release()


class Lock:
    def __init__(self) -> None:
        self._lock = T_LOCK()

    def __enter__(self) -> None:
        self._lock.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: types.TracebackType | None = None,
    ) -> None:
        self._lock.release()


class AsyncBackgroundTasks:
    """
    Fire-and-forget work scheduled on an anyio task group.

    The task group only exists between ``__aenter__`` and ``__aexit__``; leaving the
    context waits for every spawned task. Work spawned outside of it is dropped.
    """

    def __init__(self) -> None:
        self._task_group: TaskGroup | None = None

    @property
    def running(self) -> bool:
        return self._task_group is not None

    async def __aenter__(self) -> None:
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: types.TracebackType | None = None,
    ) -> bool | None:
        task_group, self._task_group = self._task_group, None
        if task_group is None:
            return None
        return await task_group.__aexit__(exc_type, exc_value, traceback)

    def spawn(self, func: tp.Callable[..., tp.Awaitable[tp.Any]], *args: tp.Any) -> bool:
        if self._task_group is None:
            logger.warning(
                f"Background task {getattr(func, '__name__', func)!r} skipped: "
                "the gateway is not running, use it as an async context manager"
            )
            return False
        self._task_group.start_soon(func, *args)
        return True


class BackgroundTasks:
    """
    Fire-and-forget work scheduled on a lazily created thread pool.

    Leaving the context (or calling ``shutdown``) waits for every spawned task.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._lock = T_LOCK()

    def __enter__(self) -> None:
        return None

    def __exit__(
        self,
        exc_type: type[BaseException] | None = None,
        exc_value: BaseException | None = None,
        traceback: types.TracebackType | None = None,
    ) -> bool | None:
        self.shutdown()
        return None

    def spawn(self, func: tp.Callable[..., tp.Any], *args: tp.Any) -> bool:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="assetcache")
            self._executor.submit(func, *args)
        return True

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
