import asyncio

from peerdrop.avails import use
from peerdrop.avails.bases import BaseDispatcher
from peerdrop.avails.events import EnvelopeEvent
from peerdrop.avails.exceptions import MalformedMessage, NegotiationFailed, TransportClosed
from peerdrop.avails.mixins import AExitStackMixIn
from peerdrop.avails.wire import HEADERS, TRANSFER_HEADERS, from_envelope
from peerdrop.conduit import DownloadsPersister, LogNotifier, NullProgress
from peerdrop.core import logger as _logger
from peerdrop.core.negotiation import NegotiationEngine
from peerdrop.core.rtc import RtcConnector
from peerdrop.core.session import ConnectionState, EndpointSession
from peerdrop.managers.filemanager import TransferManager
from peerdrop.transfers import TransferMode
from peerdrop.transfers.transports import RelayedTransport


class Endpoint(AExitStackMixIn):
    """One identity connected to the relay, able to send and receive files

    Envelopes from the relay are consumed in order by a single reader task,
    transfer messages go through the per peer :class:`RelayedTransport` and direct channels
    are pumped by a task each.

    Example:
        >>> async with Endpoint("alice") as alice:
        >>>     await alice.send_file("bob", "notes.pdf")
    """

    def __init__(self, username, uri=None, *, session=None, persister=None, notifier=None, progress=None,
                 connector_factory=None, max_file_size=None):
        super().__init__()
        self.requested_name = username
        self.notifier = notifier or LogNotifier()
        self.session = session or EndpointSession(uri, notifier=self.notifier)
        self.transfers = TransferManager(
            username,
            persister=persister or DownloadsPersister(),
            notifier=self.notifier,
            progress=progress or NullProgress(),
            max_file_size=max_file_size,
        )
        self.negotiation = NegotiationEngine(
            self.session.send,
            connector_factory or RtcConnector,
            local_name=lambda: self.username,
            on_transport=self._direct_transport_ready,
        )
        self.dispatcher = BaseDispatcher()
        self.relayed = {}
        self._roster = set()
        self._tasks = set()
        self._reader_task = None
        self._register_handlers()

    def _register_handlers(self):
        for header in TRANSFER_HEADERS:
            self.dispatcher.register_handler(header, self._on_transfer_envelope)
        self.dispatcher.register_handler(HEADERS.OFFER, self._spawning(self.negotiation.handle_offer))
        self.dispatcher.register_handler(HEADERS.ANSWER, self._spawning(self.negotiation.handle_answer))
        self.dispatcher.register_handler(HEADERS.ICE_CANDIDATE, self._spawning(self.negotiation.handle_candidate))
        self.dispatcher.register_handler(HEADERS.USERNAME_SET, self._on_roster)
        self.dispatcher.register_handler(HEADERS.USER_LIST, self._on_roster)
        self.dispatcher.register_handler(HEADERS.ERROR, self._on_error)

    def _spawning(self, handler):
        """negotiation steps may wait on the connector, they must not hold up the reader"""

        def spawn(event: EnvelopeEvent):
            use.spawn_task(handler, event.envelope, bookeep=self._track)

        return spawn

    def _track(self, task):
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def __aenter__(self):
        await super().__aenter__()
        self.session.state_listeners.append(self._on_session_state)
        await self.session.connect()
        self._exit_stack.push_async_callback(self.session.close)
        self._reader_task = asyncio.create_task(self._read_envelopes(), name=f"endpoint reader {self.requested_name}")
        self._exit_stack.push_async_callback(self._stop)
        try:
            users = await self.session.register(self.requested_name)
        except BaseException:
            await self._exit_stack.aclose()
            raise
        self.transfers.local_name = self.session.username
        self._roster = set(users)
        _logger.info(f"[ENDPOINT] {self.username} online, peers: {users}")
        return self

    async def _stop(self):
        await self.transfers.close()
        await self.negotiation.close()
        for transport in list(self.relayed.values()):
            await transport.close()
        for task in [self._reader_task, *self._tasks]:
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _read_envelopes(self):
        async for envelope in self.session:
            await self.dispatcher(EnvelopeEvent(envelope, self.session))

    async def send_file(self, recipient, path, mode=None, *, chunk_len=None):
        """Send the file at ``path`` to ``recipient``

        Args:
            recipient(str): registered name of the receiving endpoint
            path(str | Path): file to send
            mode(TransferMode | str | None): None tries a direct channel and falls back to the relay
            chunk_len(int): override the mode's chunk size

        Returns:
            Sender: the finished handle

        Raises:
            TransferFailed: if the transfer failed, was rejected or cancelled
            NegotiationFailed: if ``mode`` is direct and no channel could be negotiated
        """
        if recipient == self.username:
            raise ValueError("cannot send a file to yourself")
        transport = await self.transport_for(recipient, mode)
        return await self.transfers.send_file(recipient, path, transport, transport.mode, chunk_len=chunk_len)

    async def transport_for(self, recipient, mode=None):
        mode = TransferMode.parse(mode) if mode else None
        if mode is TransferMode.RELAYED:
            return self._relayed_transport(recipient)

        try:
            return await self.negotiation.connect(recipient)
        except NegotiationFailed as nf:
            if mode is TransferMode.DIRECT:
                raise
            _logger.warning(f"[ENDPOINT] direct channel to {recipient} failed ({nf}), using relay")
            return self._relayed_transport(recipient)

    def _relayed_transport(self, remote):
        transport = self.relayed.get(remote)
        if transport is None or transport.closed:
            transport = RelayedTransport(self.session, remote)
            self.relayed[remote] = transport
            use.spawn_task(self.transfers.pump, remote, transport, bookeep=self._track)
        return transport

    def _direct_transport_ready(self, remote, transport):
        use.spawn_task(self.transfers.pump, remote, transport, bookeep=self._track)

    async def _on_transfer_envelope(self, event: EnvelopeEvent):
        envelope = event.envelope
        try:
            message = from_envelope(envelope)
        except MalformedMessage as mm:
            _logger.warning(f"[ENDPOINT] dropping envelope from {envelope.sender}: {mm}")
            return
        self._relayed_transport(envelope.sender).feed(message)

    async def _on_roster(self, event: EnvelopeEvent):
        envelope = event.envelope
        if envelope.type == HEADERS.USERNAME_SET:
            self.transfers.local_name = envelope.get("username", self.transfers.local_name)
            users = envelope.get("availableUsers") or []
        else:
            users = envelope.get("users") or []

        departed = self._roster - set(users)
        self._roster = set(users)
        for remote in departed:
            _logger.info(f"[ENDPOINT] {remote} left")
            await self._drop_relayed(remote, TransportClosed(f"{remote} disconnected from relay"))

    async def _on_error(self, event: EnvelopeEvent):
        envelope = event.envelope
        _logger.warning(f"[ENDPOINT] relay reported: {envelope.get('message')}")
        remote = envelope.get("recipientUnknown")
        if remote is None:
            return
        match envelope.get("failedType"):
            case HEADERS.FILE_METADATA:
                await self._drop_relayed(remote, TransportClosed(f"{remote} is not connected"))
            case HEADERS.OFFER | HEADERS.ANSWER:
                self.negotiation.abort(remote, f"{remote} is not connected")

    async def _drop_relayed(self, remote, error):
        if transport := self.relayed.pop(remote, None):
            await transport.close(error)
            await self.transfers.fail_peer(remote, str(error), mode=TransferMode.RELAYED, transport=transport)

    def _on_session_state(self, state):
        if state is ConnectionState.DISCONNECTED and self.relayed:
            _logger.warning("[ENDPOINT] relay lost, failing relayed transfers")
            for remote in list(self.relayed):
                use.spawn_task(self._drop_relayed, remote, TransportClosed("relay connection lost"), bookeep=self._track)

    async def cancel(self, transfer_id, reason="cancelled by user"):
        return await self.transfers.cancel(transfer_id, reason)

    async def serve_forever(self):
        """Returns once the relay session is closed"""
        await asyncio.shield(self._reader_task)

    @property
    def username(self):
        return self.session.username or self.requested_name

    @property
    def users(self):
        return list(self.session.users)

    def snapshot(self):
        return self.transfers.snapshot()

    def __repr__(self):
        return f"<Endpoint({self.username}, {self.session.connection_state.name})>"
