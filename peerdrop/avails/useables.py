import asyncio
import functools
import logging
import math
import os
from pathlib import Path
from uuid import uuid4

from peerdrop.avails import constants as const

_logger = logging.getLogger(__name__)


def func_str(func_name):
    return f"{func_name.__name__}()\\{os.path.relpath(func_name.__code__.co_filename)}"


def get_unique_id(_type: type = str):
    if _type == bytes:
        return uuid4().bytes
    return _type(uuid4())


def shorten_path(path: Path, max_length):
    if len(str(path)) <= max_length:
        return str(path)
    selected_parts = list(path.parts)
    part_ptr = 1
    while len("".join(selected_parts)) >= max_length:
        if len(selected_parts) <= 2:
            break
        selected_parts.pop(part_ptr)

    selected_parts.insert(1, '..')
    return os.path.sep.join(selected_parts)


def get_timeouts(initial=0.001, factor=2, max_retries=7, max_value=5.0):
    """
    Generate exponential backoff timeout values.

    Args:
        initial (float): The initial timeout value in seconds. Defaults to 0.001.
        factor (int): The factor by which the timeout value is multiplied at each step. Defaults to 2.
        max_retries (int): The maximum number of retries. Defaults to 7, if -1 is provided then yields infinitely
        max_value (float): The maximum timeout value in seconds. Defaults to 5.0.

    Yields:
        float: The next timeout value in the sequence, capped by max_value.

    Example:
        >>> list(get_timeouts(max_retries=5))
        [0.001, 0.002, 0.004, 0.008, 0.016]

        >>> list(get_timeouts(initial=1, factor=3, max_retries=4, max_value=10))
        [1, 3, 9, 10]
    """
    current = initial

    if max_retries == -1:
        while True:
            yield min(current, max_value)
            if current < max_value:
                current *= factor

    for _ in range(max_retries):
        yield min(current, max_value)
        current *= factor


def reconnect_timeouts():
    """Infinite retry intervals for the relay connection, taken from configured constants"""
    return get_timeouts(
        initial=const.RECONNECT_INTERVAL,
        factor=const.RECONNECT_BACKOFF_FACTOR,
        max_retries=-1,
        max_value=const.RECONNECT_MAX_INTERVAL,
    )


def percent_of(done, total):
    """floor(100 * done / total), an empty total counts as complete"""
    if total <= 0:
        return 100
    return math.floor(100 * done / total)


def wrap_with_tryexcept(func, *args, **kwargs):
    """
    Designed to use like:

    >>> f = wrap_with_tryexcept(func, *args, **kwargs)
    >>> asyncio.create_task(f())  # sort of `functools.partial` aesthetics

    Args:
        func : any async function
        args, kwargs : to forward

    """

    @functools.wraps(func)
    async def wrapped_with_tryexcept():
        try:
            return await func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _logger.error(f"got an exception for function {func_str(func)} : {type(e).__name__} : {e}", exc_info=True)
            raise

    return wrapped_with_tryexcept


def spawn_task(func, *args, bookeep=None, done_callback=None, **kwargs):
    f = wrap_with_tryexcept(func, *args, **kwargs)
    t = asyncio.create_task(f())
    if done_callback:
        t.add_done_callback(done_callback)
    if bookeep:
        bookeep(t)
    return t
