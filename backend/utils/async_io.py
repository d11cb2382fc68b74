"""
Run blocking filesystem and archive work off the event loop.
"""

import asyncio
from functools import partial
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Execute a blocking callable in the default executor.

    Args:
        func: Blocking function (file I/O, tar parsing, directory walks)
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Whatever func returns; exceptions propagate unchanged
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))
