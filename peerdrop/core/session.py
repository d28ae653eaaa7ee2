import asyncio
import enum
import functools

import websockets
from websockets.asyncio.client import connect

from peerdrop.avails import const, use
from peerdrop.avails.events import NotifyEvent
from peerdrop.avails.exceptions import MalformedMessage, NameConflict, TransportClosed
from peerdrop.avails.mixins import ReplyRegistryMixIn
from peerdrop.avails.wire import HEADERS, Envelope
from peerdrop.core import logger as _logger

_CLOSED = object()
_REGISTER_REPLY = "register"


class ConnectionState(enum.Enum):
    DISCONNECTED = 1
    CONNECTING = 2
    CONNECTED = 3
    CLOSED = 4


class EndpointSession(ReplyRegistryMixIn):
    """Persistent websocket connection from an endpoint to the relay

    Inbound envelopes are queued and read through :meth:`recv` or ``async for``.
    When the connection drops it is reopened on the intervals of
    :func:`peerdrop.avails.useables.reconnect_timeouts` and the established username is claimed again.

    Attributes:
        username(str | None): name the relay accepted, None until registered
        users(list[str]): other registered names, kept current from roster envelopes
        state_listeners(list[Callable]): called with every new :class:`ConnectionState`
    """

    def __init__(self, uri=None, *, notifier=None, connect_func=None, timeouts=None, failure_threshold=None):
        super().__init__()
        self.uri = uri or f"ws://{const.RELAY_IP}:{const.PORT_RELAY}"
        self.notifier = notifier
        self.username = None
        self.users = []
        self.state_listeners = []
        self.connection_state = ConnectionState.DISCONNECTED
        self.failure_threshold = failure_threshold or const.RECONNECT_FAILURE_THRESHOLD
        self._connect = connect_func or functools.partial(
            connect,
            ping_interval=const.PING_INTERVAL,
            max_size=const.MAX_ENVELOPE_SIZE,
        )
        self._timeouts = timeouts or use.reconnect_timeouts
        self._web_socket = None
        self._reader_task = None
        self._inbound = asyncio.Queue()

    async def connect(self, retry=False):
        """Open the relay connection

        Args:
            retry(bool): keep trying on the reconnect intervals instead of raising

        Raises:
            OSError: if the relay could not be reached and ``retry`` is False
        """
        if self.connection_state is ConnectionState.CLOSED:
            raise TransportClosed("session closed")
        if self.connection_state is ConnectionState.CONNECTED:
            return

        try:
            await self._open()
        except (OSError, websockets.InvalidHandshake) as e:
            if not retry:
                self._set_state(ConnectionState.DISCONNECTED)
                raise ConnectionError(f"could not reach relay at {self.uri}: {e}") from e
            _logger.warning(f"[SESSION] relay at {self.uri} unreachable, retrying: {e!r}")
            await self._reconnect()

    async def _open(self):
        self._set_state(ConnectionState.CONNECTING)
        web_socket = await self._connect(self.uri)
        self._web_socket = web_socket
        self._set_state(ConnectionState.CONNECTED)
        self._reader_task = asyncio.create_task(self._reader(web_socket), name=f"relay reader {self.uri}")
        _logger.info(f"[SESSION] connected to relay {self.uri}")

    async def _reader(self, web_socket):
        try:
            async for raw in web_socket:
                self._on_raw(raw)
        except websockets.ConnectionClosed as cc:
            _logger.debug(f"[SESSION] connection closed: {cc}")

        if self.connection_state is ConnectionState.CLOSED or web_socket is not self._web_socket:
            return

        _logger.warning(f"[SESSION] lost connection to relay {self.uri}")
        self._web_socket = None
        self._set_state(ConnectionState.DISCONNECTED)
        self.fail_replies(TransportClosed("relay connection lost"))
        await self._reconnect()

    async def _reconnect(self):
        failures = 0
        reported = False
        for delay in self._timeouts():
            await asyncio.sleep(delay)
            if self.connection_state is ConnectionState.CLOSED:
                return
            try:
                await self._open()
            except (OSError, websockets.InvalidHandshake) as e:
                failures += 1
                self._set_state(ConnectionState.DISCONNECTED)
                _logger.debug(f"[SESSION] reconnect attempt {failures} failed: {e!r}")
                if failures >= self.failure_threshold and not reported:
                    reported = True
                    self._notify("connection-lost", f"relay {self.uri} unreachable after {failures} attempts")
                continue

            if self.username:
                _logger.info(f"[SESSION] claiming {self.username} again")
                try:
                    await self.send(Envelope(HEADERS.SET_USERNAME, username=self.username))
                except TransportClosed:
                    _logger.warning("[SESSION] connection dropped again before claiming username")
                    return
            if reported:
                self._notify("connection-restored", f"reconnected to relay {self.uri}")
            return

    def _on_raw(self, raw):
        try:
            envelope = Envelope.load_from(raw)
        except MalformedMessage as mm:
            _logger.warning(f"[SESSION] dropping {mm}")
            return

        match envelope.type:
            case HEADERS.USERNAME_SET:
                self.users = list(envelope.get("availableUsers") or [])
                if not self.msg_arrived(_REGISTER_REPLY, envelope):
                    self.username = envelope.get("username", self.username)
            case HEADERS.USERNAME_ERROR:
                if not self.msg_arrived(_REGISTER_REPLY, envelope):
                    _logger.error(f"[SESSION] relay refused {self.username}: {envelope.get('message')}")
                    self._notify("connection-lost", f"username refused: {envelope.get('message')}")
            case HEADERS.USER_LIST:
                self.users = list(envelope.get("users") or [])

        self._inbound.put_nowait(envelope)

    async def register(self, username):
        """Claim ``username`` at the relay

        Returns:
            list[str]: the other names currently registered

        Raises:
            NameConflict: if the relay refused the name
            TransportClosed: if not connected
        """
        if self.is_registered(_REGISTER_REPLY):
            raise NameConflict("a registration is already in flight")
        reply_fut = self.register_reply(_REGISTER_REPLY)
        try:
            await self.send(Envelope(HEADERS.SET_USERNAME, username=username))
            reply = await asyncio.wait_for(reply_fut, const.REGISTER_TIMEOUT)
        finally:
            self._reply_registry.pop(_REGISTER_REPLY, None)

        if reply.type == HEADERS.USERNAME_ERROR:
            raise NameConflict(reply.get("message") or f"{username} refused")

        self.username = reply.get("username", username)
        self.users = list(reply.get("availableUsers") or [])
        _logger.info(f"[SESSION] registered as {self.username}, {len(self.users)} other(s) online")
        return self.users

    async def send(self, envelope: Envelope):
        await self.send_frame(envelope.dump())

    async def send_frame(self, frame: str):
        """
        Raises:
            TransportClosed: if not connected or the connection broke while sending
        """
        web_socket = self._web_socket
        if self.connection_state is not ConnectionState.CONNECTED or web_socket is None:
            raise TransportClosed(f"not connected to relay ({self.connection_state.name})")
        try:
            await web_socket.send(frame)
        except websockets.ConnectionClosed as cc:
            raise TransportClosed("relay connection closed while sending") from cc

    async def recv(self) -> Envelope:
        """
        Raises:
            TransportClosed: once the session is closed
        """
        envelope = await self._inbound.get()
        if envelope is _CLOSED:
            self._inbound.put_nowait(_CLOSED)
            raise TransportClosed("session closed")
        return envelope

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.recv()
        except TransportClosed:
            raise StopAsyncIteration

    async def close(self):
        if self.connection_state is ConnectionState.CLOSED:
            return
        self._set_state(ConnectionState.CLOSED)
        self.fail_replies(TransportClosed("session closed"))
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        web_socket, self._web_socket = self._web_socket, None
        if web_socket is not None:
            await web_socket.close()
        self._inbound.put_nowait(_CLOSED)
        _logger.info(f"[SESSION] closed connection to {self.uri}")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc_details):
        await self.close()

    def _set_state(self, state):
        if state is self.connection_state:
            return
        _logger.debug(f"[SESSION] {self.connection_state.name} -> {state.name}")
        self.connection_state = state
        for listener in self.state_listeners:
            listener(state)

    def _notify(self, kind, message):
        if self.notifier is not None:
            self.notifier.notify(NotifyEvent(kind, message))

    @property
    def is_connected(self):
        return self.connection_state is ConnectionState.CONNECTED

    def __repr__(self):
        return f"<EndpointSession({self.uri}, {self.username}, {self.connection_state.name})>"
