import enum
import logging
from abc import ABC, abstractmethod
from inspect import isawaitable
from typing import Callable

_logger = logging.getLogger(__name__)


class AbstractDispatcher(ABC):

    @abstractmethod
    async def submit(self, event):
        pass

    @abstractmethod
    def register_handler(self, event_trigger, handler):
        pass


class BaseDispatcher(AbstractDispatcher):
    """
    Attributes:
        registry (dict): internal dictionary that gets looked up when an event occurs
    """

    __slots__ = 'registry',

    def __init__(self):
        self.registry = {}

    def __call__(self, *args, **kwargs):
        return self.submit(*args, **kwargs)

    async def submit(self, event):
        """Called when event occurs, looks up ``event.type`` in registry

        unknown event types are logged and dropped
        """
        handler = self.registry.get(event.type)
        if handler is None:
            _logger.debug(f"[{self.__class__.__name__}] no handler for {event.type}, dropping")
            return

        r = handler(event)
        if isawaitable(r):
            await r

    def register_handler(self, event_trigger: enum.Enum | str | bytes,
                         handler: AbstractDispatcher | Callable):
        """
        Args:
            handler(Callable): this is called when registered event occurs
            event_trigger (str | bytes): event trigger to register with
        """
        self.registry[event_trigger] = handler

    def get_handler(self, event_trigger):
        return self.registry.get(event_trigger)


__all__ = (
    'AbstractDispatcher',
    'BaseDispatcher',
)
