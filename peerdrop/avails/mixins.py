import asyncio
from contextlib import AsyncExitStack


class ReplyRegistryMixIn:
    """Provides reply functionality

    Methods:
        msg_arrived: sets the registered future corresponding to expected reply
        register_reply: returns a future that gets set when msg_arrived is called with expected id

    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._reply_registry = {}

    def msg_arrived(self, reply_id, message):
        if reply_id not in self._reply_registry:
            return False

        fut = self._reply_registry.pop(reply_id)
        if not fut.done():
            fut.set_result(message)
        return True

    def register_reply(self, reply_id):
        fut = asyncio.get_running_loop().create_future()
        self._reply_registry[reply_id] = fut
        return fut

    def is_registered(self, reply_id):
        return reply_id in self._reply_registry

    def fail_replies(self, exc):
        """Fail every pending reply future with ``exc``"""
        pending, self._reply_registry = self._reply_registry, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(exc)


class AExitStackMixIn:
    """Provides an asynchronous exit stack with name `_exit_stack` """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._exit_stack = AsyncExitStack()

    async def __aenter__(self):
        await self._exit_stack.__aenter__()
        return self

    async def __aexit__(self, *exp_details):
        return await self._exit_stack.__aexit__(*exp_details)  # noqa
