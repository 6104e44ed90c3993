"""Run async command bodies from click."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import TYPE_CHECKING, Any, TypeVar

from complaint_projections.runtime import Runtime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

T = TypeVar("T")


def coro(f: Callable[..., Awaitable[T]]) -> Callable[..., T]:
    """Decorator that makes an async function synchronous for click.

    Usage:
        @cli.command()
        @coro
        async def my_command():
            result = await some_async_function()
            click.echo(result)
    """

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        return asyncio.run(f(*args, **kwargs))

    return wrapper


@asynccontextmanager
async def open_runtime(*, connect_broker: bool = False, create_tables: bool = False) -> AsyncIterator[Runtime]:
    """Build a runtime from settings for the duration of one command.

    The broker is only contacted by commands that publish or consume.
    """
    runtime = Runtime.from_settings()
    try:
        await runtime.stores.ping_all()
        if create_tables:
            await runtime.stores.init_shared_tables()
        if connect_broker:
            await runtime.broker.connect()
        yield runtime
    finally:
        await runtime.close()
