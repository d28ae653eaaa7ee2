"""Transports the transfer engine runs over

Both modes look the same to :mod:`peerdrop.transfers.sender` and :mod:`peerdrop.transfers.receiver`:

* ``send(message)`` frames a transfer message and queues it, raises :class:`TransportClosed` once closed
* ``recv()`` / ``async for`` yields inbound transfer messages in order
* ``pending_bytes`` plus ``wait_low()`` give backpressure, the low watermark event fires when pending bytes
  drop below ``low_watermark`` after having exceeded ``high_watermark``

:class:`RelayedTransport` pushes ``FILE_*`` envelopes through the endpoint session,
:class:`DirectTransport` writes frames into an RTC data channel.
"""

import asyncio
from abc import ABC, abstractmethod

from peerdrop.avails import const
from peerdrop.avails.exceptions import MalformedMessage, TransportClosed
from peerdrop.avails.wire import TransferMessage, dump_frame, frame_size, load_frame, to_envelope
from peerdrop.transfers import TransferMode
from peerdrop.transfers._logger import logger as _logger

_CLOSED = object()


class BackpressureMixIn:
    """Watermark bookkeeping, subclasses call ``_pending_changed`` whenever ``pending_bytes`` moves"""

    def __init__(self, *args, high_watermark=None, low_watermark=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.high_watermark = high_watermark or const.HIGH_WATERMARK
        self.low_watermark = low_watermark or const.LOW_WATERMARK
        if self.low_watermark > self.high_watermark:
            raise ValueError(f"low watermark {self.low_watermark} above high watermark {self.high_watermark}")
        self._above_high = False
        self._low_event = asyncio.Event()
        self._low_event.set()
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    @abstractmethod
    def pending_bytes(self) -> int: ...

    def _pending_changed(self, low_reached=False):
        pending = self.pending_bytes
        if pending > self.high_watermark:
            if not self._above_high:
                _logger.debug(f"[{self}] above high watermark ({pending} bytes pending)")
            self._above_high = True
            self._low_event.clear()
        elif self._above_high and (pending < self.low_watermark or low_reached):
            self._above_high = False
            self._low_event.set()
            _logger.debug(f"[{self}] low watermark reached ({pending} bytes pending)")

        if pending == 0:
            self._drained.set()
        else:
            self._drained.clear()

    @property
    def should_pause(self):
        return self.pending_bytes > self.high_watermark

    async def wait_low(self):
        """Returns once the low watermark event fired, raises TransportClosed if closed meanwhile"""
        await self._low_event.wait()
        self._raise_if_closed()

    def _wake_waiters(self):
        self._low_event.set()
        self._drained.set()


class AbstractTransport(BackpressureMixIn, ABC):
    mode: TransferMode

    def __init__(self, remote, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.remote = remote
        self.closed = False
        self.error = None
        self._inbound = asyncio.Queue()

    @abstractmethod
    async def send(self, message: TransferMessage):
        """Queue a transfer message for delivery"""

    @abstractmethod
    async def flush(self):
        """Returns once everything queued was handed to the network"""

    async def recv(self) -> TransferMessage:
        item = await self._inbound.get()
        if item is _CLOSED:
            self._inbound.put_nowait(_CLOSED)  # wake other readers too
            raise TransportClosed(f"{self} closed")
        return item

    def feed(self, message: TransferMessage):
        """Hand an inbound message to readers of this transport"""
        if self.closed:
            return
        self._inbound.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.recv()
        except TransportClosed:
            raise StopAsyncIteration from None

    async def close(self, error=None):
        if self.closed:
            return
        self.closed = True
        self.error = error
        self._inbound.put_nowait(_CLOSED)
        self._wake_waiters()
        _logger.debug(f"[{self}] closed, error={error!r}")

    def _raise_if_closed(self):
        if self.closed:
            raise TransportClosed(f"{self} closed") from self.error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_details):
        await self.close()

    def __str__(self):
        return f"{self.__class__.__name__}({self.remote})"


class RelayedTransport(AbstractTransport):
    """Transfer messages as ``FILE_*`` envelopes through the relay

    ``send`` only queues, a writer task drains the queue into the session so that pending bytes
    (the encoded size still queued) can build up and be watched.
    Inbound envelopes for this peer are fed in by the endpoint.
    """
    mode = TransferMode.RELAYED

    def __init__(self, session, remote, **kwargs):
        super().__init__(remote, **kwargs)
        self.session = session
        self._outbound = asyncio.Queue()
        self._queued_bytes = 0
        self._writer_task = None

    @property
    def pending_bytes(self):
        return self._queued_bytes

    async def send(self, message: TransferMessage):
        self._raise_if_closed()
        frame = to_envelope(message, recipient=self.remote).dump()
        size = frame_size(frame)
        self._queued_bytes += size
        self._outbound.put_nowait((frame, size))
        self._pending_changed()
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._writer(), name=f"writer for {self}")

    async def _writer(self):
        while True:
            frame, size = await self._outbound.get()
            try:
                await self.session.send_frame(frame)
            except (TransportClosed, ConnectionError) as ce:
                _logger.warning(f"[{self}] session send failed: {ce!r}")
                await self.close(ce)
                return
            except Exception as e:
                _logger.error(f"[{self}] writer stopped: {e!r}", exc_info=True)
                await self.close(e)
                return
            self._queued_bytes -= size
            self._pending_changed()

    async def flush(self, timeout=None):
        try:
            await asyncio.wait_for(self._drained.wait(), timeout or const.DEFAULT_TRANSFER_TIMEOUT)
        except asyncio.TimeoutError:
            raise TimeoutError(f"{self} still has {self.pending_bytes} bytes queued") from None
        self._raise_if_closed()

    async def close(self, error=None):
        if self.closed:
            return
        writer, self._writer_task = self._writer_task, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        while not self._outbound.empty():
            self._outbound.get_nowait()
        self._queued_bytes = 0
        await super().close(error)


class DirectTransport(AbstractTransport):
    """Transfer frames over an RTC data channel

    control messages travel as text frames and chunks as binary frames,
    ``pending_bytes`` is the channel's ``bufferedAmount``
    """
    mode = TransferMode.DIRECT
    flush_poll_interval = 0.01

    def __init__(self, channel, remote, *, on_closed=None, **kwargs):
        super().__init__(remote, **kwargs)
        self.channel = channel
        self._on_closed = on_closed
        channel.bufferedAmountLowThreshold = self.low_watermark
        channel.on("message", self._on_message)
        channel.on("close", self._on_channel_close)
        channel.on("bufferedamountlow", self._on_buffered_amount_low)

    @property
    def pending_bytes(self):
        return self.channel.bufferedAmount

    async def send(self, message: TransferMessage):
        self._raise_if_closed()
        if self.channel.readyState != "open":
            raise TransportClosed(f"{self} channel is {self.channel.readyState}")
        try:
            self.channel.send(dump_frame(message))
        except Exception as e:
            # aiortc raises its own InvalidStateError once the channel is gone
            await self.close(e)
            raise TransportClosed(f"{self} send failed") from e
        self._pending_changed()

    async def flush(self, timeout=None):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout or const.DEFAULT_TRANSFER_TIMEOUT)
        while self.pending_bytes > 0 and not self.closed:
            if loop.time() > deadline:
                raise TimeoutError(f"{self} still has {self.pending_bytes} bytes buffered")
            await asyncio.sleep(self.flush_poll_interval)
        self._raise_if_closed()

    def _on_message(self, frame):
        try:
            message = load_frame(frame)
        except MalformedMessage as mm:
            _logger.warning(f"[{self}] dropping frame: {mm}")
            return
        self.feed(message)

    def _on_buffered_amount_low(self):
        self._pending_changed(low_reached=True)

    def _on_channel_close(self):
        if not self.closed:
            asyncio.ensure_future(self.close(TransportClosed("data channel closed by peer")))

    async def close(self, error=None):
        if self.closed:
            return
        await super().close(error)
        if self.channel.readyState not in ("closing", "closed"):
            self.channel.close()
        if self._on_closed:
            r = self._on_closed(self)
            if asyncio.iscoroutine(r):
                await r
