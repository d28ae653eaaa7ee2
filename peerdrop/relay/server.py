from contextlib import asynccontextmanager

import websockets
from websockets.asyncio.server import serve

from peerdrop.avails import const
from peerdrop.avails.bases import BaseDispatcher
from peerdrop.avails.events import EnvelopeEvent
from peerdrop.avails.exceptions import MalformedMessage, NameConflict, RecipientUnknown
from peerdrop.avails.wire import CRITICAL_HEADERS, HEADERS, ROUTED_HEADERS, Envelope, error_envelope
from peerdrop.relay import logger
from peerdrop.relay.registry import IdentityRegistry


class Relay(BaseDispatcher):
    """Registers identities and forwards envelopes between their connections

    Routed envelopes are forwarded verbatim, only ``sender`` is overwritten with the name
    registered by the connection the envelope arrived on.
    Errors are only ever reported to the connection that caused them.
    """

    def __init__(self, registry=None, notify_unknown_recipient=None):
        super().__init__()
        self.identities = registry if registry is not None else IdentityRegistry()
        self.notify_unknown_recipient = (
            const.NOTIFY_UNKNOWN_RECIPIENT if notify_unknown_recipient is None else notify_unknown_recipient
        )
        self.register_handler(HEADERS.SET_USERNAME, self._on_set_username)
        self.register_handler(HEADERS.GET_USERS, self._on_get_users)
        self.register_handler(HEADERS.PING, self._on_ping)

    async def handle_connection(self, connection):
        """One of these runs per accepted websocket, until it closes"""
        logger.info(f"[RELAY] connection from {getattr(connection, 'remote_address', connection)}")
        try:
            async for raw in connection:
                await self.on_raw(connection, raw)
        except websockets.ConnectionClosed as cc:
            logger.debug(f"[RELAY] connection closed abruptly: {cc}")
        finally:
            await self.on_disconnect(connection)

    async def on_raw(self, connection, raw):
        try:
            envelope = Envelope.load_from(raw)
        except MalformedMessage as mm:
            logger.warning(f"[RELAY] {mm}")
            await self._send(connection, error_envelope(f"malformed message: {mm}"))
            return

        if envelope.type in ROUTED_HEADERS:
            await self._route_from(connection, envelope)
            return

        if self.get_handler(envelope.type) is None:
            logger.warning(f"[RELAY] unknown message type {envelope.type}")
            await self._send(connection, error_envelope(f"unknown message type: {envelope.type}"))
            return

        await self.submit(EnvelopeEvent(envelope, connection))

    async def _route_from(self, connection, envelope):
        name = self.identities.name_of(connection)
        if name is None:
            logger.warning(f"[RELAY] {envelope.type} from unregistered connection, not routed")
            await self._send(connection, error_envelope("register a username before sending"))
            return
        envelope.sender = name
        await self.route(envelope)

    async def route(self, envelope: Envelope) -> bool:
        """Forward ``envelope`` to its recipient

        Returns:
            bool: False if the recipient is not registered, the envelope is dropped then
        """
        try:
            target = self.identities.resolve(envelope.recipient)
        except RecipientUnknown:
            logger.info(f"[RELAY] dropping {envelope.type} from {envelope.sender}, unknown recipient {envelope.recipient}")
            if self.notify_unknown_recipient and envelope.type in CRITICAL_HEADERS:
                if origin := self.identities.get(envelope.sender):
                    await self._send(origin, error_envelope(
                        f"user {envelope.recipient} is not connected",
                        recipient=envelope.sender,
                        recipientUnknown=envelope.recipient,
                        failedType=envelope.type,
                    ))
            return False

        await self._send(target, envelope)
        return True

    async def register(self, connection, name):
        name = name.strip() if isinstance(name, str) else ""
        try:
            self.identities.register(connection, name)
        except (NameConflict, ValueError) as e:
            logger.info(f"[RELAY] refusing username {name!r}: {e}")
            await self._send(connection, Envelope(HEADERS.USERNAME_ERROR, message=str(e)))
            return False

        logger.info(f"[RELAY] registered {name}")
        await self._send(connection, Envelope(
            HEADERS.USERNAME_SET,
            username=name,
            availableUsers=self.list_others(name),
        ))
        await self.broadcast_roster()
        return True

    def list_others(self, excluding=None):
        return self.identities.list_others(excluding)

    async def broadcast_roster(self):
        for connection, name in self.identities.connections():
            await self._send(connection, Envelope(HEADERS.USER_LIST, users=self.list_others(name)))

    async def on_disconnect(self, connection):
        name = self.identities.deregister(connection)
        if name is None:
            return
        logger.info(f"[RELAY] {name} disconnected")
        await self.broadcast_roster()

    async def _on_set_username(self, event: EnvelopeEvent):
        await self.register(event.connection, event.envelope.get("username"))

    async def _on_get_users(self, event: EnvelopeEvent):
        name = self.identities.name_of(event.connection)
        await self._send(event.connection, Envelope(HEADERS.USER_LIST, users=self.list_others(name)))

    async def _on_ping(self, event: EnvelopeEvent):
        pass

    @staticmethod
    async def _send(connection, envelope):
        try:
            await connection.send(envelope.dump())
        except websockets.ConnectionClosed:
            logger.debug(f"[RELAY] could not deliver {envelope.type}, connection already closed")


@asynccontextmanager
async def start_relay(relay=None, host=None, port=None):
    """Serve ``relay`` over websockets, yields the websockets server"""
    if relay is None:
        relay = Relay()
    host = const.RELAY_BIND_IP if host is None else host
    port = const.PORT_RELAY if port is None else port
    async with serve(
            relay.handle_connection,
            host,
            port,
            ping_interval=const.PING_INTERVAL,
            max_size=const.MAX_ENVELOPE_SIZE,
    ) as server:
        bound = [s.getsockname()[:2] for s in server.sockets]
        logger.info(f"[RELAY] listening at {', '.join(f'ws://{h}:{p}' for h, p in bound)}")
        try:
            yield server
        finally:
            logger.info("[RELAY] shutting down")


async def run_relay(host=None, port=None):
    async with start_relay(Relay(), host, port) as server:
        await server.serve_forever()
