import asyncio
import functools
import inspect
import logging
import math
from typing import Iterable, Optional

from peerdrop.avails import useables

_logger = logging.getLogger(__name__)


def _get_func_name(func):
    if isinstance(func, functools.partial):
        return func.func.__name__

    if inspect.ismethod(func):
        return func.__func__.__name__

    return getattr(func, "__name__", "N/A")


class State:
    """Represents a step of bootstrapping

    Attributes:
        name (str): some detail related to state
        func (Callable): any callable to call when entering state, awaited if it's async
        args(tuple): arguments to pass into function
        is_blocking(bool): True if the function runs for the lifetime of the program, it gets its own task
        lazy_args(tuple[Callable | Any]): if callable it gets evaluated just before function call or else just passed in, appended to args parameter
        event(asyncio.Event): event to wait before calling func

    """

    def __init__(self, name, func, *args, is_blocking=False, lazy_args=(), event_to_wait: asyncio.Event = None):
        self.name = name
        self.is_blocking = is_blocking
        self.event = event_to_wait
        self.func = func
        self.args = args
        self.lazy_args = lazy_args
        self.func_name = _get_func_name(func)

    async def _resolve_args(self):
        lazy_args = []
        for arg in self.lazy_args:
            if callable(arg):
                result = arg()
                if inspect.isawaitable(result):
                    result = await result
            else:
                result = arg
            lazy_args.append(result)
        return self.args + tuple(lazy_args)

    async def enter_state(self):
        args = await self._resolve_args()

        loop = asyncio.get_running_loop()
        loop_time_ = loop.time() - math.floor(loop.time())
        _logger.info(f"[{loop_time_:.5f}s] [state={self.name}] {{{self.func_name=}}}")

        if self.event:
            await self.event.wait()

        if self.is_blocking:
            return asyncio.create_task(useables.wrap_with_tryexcept(self.func, *args)(), name=self.name)

        ret_val = self.func(*args)
        if inspect.isawaitable(ret_val):
            ret_val = await ret_val
        return ret_val

    def __repr__(self):
        return f"<State({self.name})>"


class StateManager:
    """Sort of task queue

    ``process_states`` is called at the beginning of program and runs every queued state in order,
    a ``None`` state stops it.
    """

    def __init__(self):
        self.state_queue = asyncio.Queue()
        self.close = False
        self.all_tasks: list[asyncio.Task] = []

    def signal_stopping(self):
        self.close = True
        self.state_queue.put_nowait(None)
        for t in self.all_tasks:
            if not t.done():
                t.cancel("finalizing from state manager")

    async def put_state(self, state: Optional[State]):
        await self.state_queue.put(state)

    async def put_states(self, states: Iterable[State]):
        for state in states:
            await self.state_queue.put(state)

    async def process_states(self):
        while self.close is False:
            current_state: State = await self.state_queue.get()
            if current_state is None:
                break
            r = await current_state.enter_state()
            if isinstance(r, asyncio.Task):
                self.all_tasks.append(r)

    async def wait_tasks(self):
        """Wait for every blocking state's task, returns once all of them finished"""
        if self.all_tasks:
            await asyncio.gather(*self.all_tasks, return_exceptions=True)
