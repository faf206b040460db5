import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, List, Tuple

import anyio
import anysqlite
import pytest


@pytest.fixture()
def use_temp_dir(tmpdir):
    cur_dir = os.getcwd()
    os.chdir(tmpdir)
    yield
    os.chdir(cur_dir)


@pytest.fixture()
def sqlite_rows() -> Callable[[sqlite3.Connection, str], List[Tuple[Any, ...]]]:
    """Read every row of a table, ordered, for assertions against the raw database."""

    def read(conn: sqlite3.Connection, query: str) -> List[Tuple[Any, ...]]:
        cursor = conn.cursor()
        cursor.execute(query)
        return [tuple(row) for row in cursor.fetchall()]

    return read


@pytest.fixture()
def asqlite_rows() -> Callable[..., Any]:
    async def read(conn: anysqlite.Connection, query: str) -> List[Tuple[Any, ...]]:
        cursor = await conn.cursor()
        await cursor.execute(query)
        return [tuple(row) for row in await cursor.fetchall()]

    return read


@pytest.fixture()
def run_concurrently() -> Callable[..., List[Any]]:
    """Start every callable at once on its own thread and return their results in order."""

    def run(*funcs: Callable[[], Any]) -> List[Any]:
        with ThreadPoolExecutor(max_workers=len(funcs)) as pool:
            futures = [pool.submit(func) for func in funcs]
        return [future.result() for future in futures]

    return run


@pytest.fixture()
def arun_concurrently() -> Callable[..., Any]:
    async def run(*funcs: Callable[[], Awaitable[Any]]) -> List[Any]:
        results: List[Any] = [None] * len(funcs)

        async def call(index: int, func: Callable[[], Awaitable[Any]]) -> None:
            results[index] = await func()

        async with anyio.create_task_group() as tg:
            for index, func in enumerate(funcs):
                tg.start_soon(call, index, func)
        return results

    return run
