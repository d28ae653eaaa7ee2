import asyncio
import logging
from pathlib import Path

from peerdrop.avails import const, use
from peerdrop.avails.exceptions import OversizeRejected, TransportClosed
from peerdrop.avails.wire import FileError, FileMetadata, TransferMessage
from peerdrop.conduit import LogNotifier, MemoryPersister, NullProgress
from peerdrop.transfers import Role, Transfer, TransferMode
from peerdrop.transfers.fileobject import FileItem, stringify_size
from peerdrop.transfers.receiver import Receiver
from peerdrop.transfers.registry import TransferRegistry
from peerdrop.transfers.sender import Sender

_logger = logging.getLogger(__name__)


class TransferManager:
    """Creates transfer handles and routes inbound transfer messages to them

    One per endpoint, owns the :class:`TransferRegistry`.
    Transports are handed in by the caller, this class never decides *how* bytes move.
    """

    def __init__(self, local_name="", *, persister=None, notifier=None, progress=None,
                 registry=None, max_file_size=None):
        self.local_name = local_name
        self.persister = persister or MemoryPersister()
        self.notifier = notifier or LogNotifier()
        self.progress = progress or NullProgress()
        self.registry = registry if registry is not None else TransferRegistry()
        self.max_file_size = const.MAX_FILE_SIZE if max_file_size is None else max_file_size

    def prepare_send(self, recipient, path, transport, mode=TransferMode.RELAYED, *, chunk_len=None):
        """Register a new outgoing transfer without starting it

        Raises:
            FileNotFoundError: if ``path`` does not exist
        """
        file_item = FileItem(Path(path))
        if not file_item.path.is_file():
            raise FileNotFoundError(f"not a file: {file_item.path}")

        transfer = Transfer(
            id=use.get_unique_id(str),
            sender_id=self.local_name,
            recipient_id=recipient,
            file_name=file_item.name,
            declared_size=file_item.size,
            mime_type=file_item.mime_type,
            mode=TransferMode.parse(mode),
            role=Role.SENDER,
        )
        sender = Sender(
            transfer,
            file_item,
            transport,
            self.registry,
            notifier=self.notifier,
            progress=self.progress,
            chunk_len=chunk_len,
        )
        self.registry.add(sender)
        self.progress.setup(transfer.id, f"sending: {file_item.name}", file_item.size)
        _logger.info(
            f"[TRANSFER] {transfer.id} -> {recipient}: {file_item.name} ({stringify_size(file_item.size)}, {transfer.mode})"
        )
        return sender

    async def send_file(self, recipient, path, transport, mode=TransferMode.RELAYED, *, chunk_len=None):
        """Send one file and wait until it is done

        Returns:
            Sender: the finished handle

        Raises:
            TransferFailed: if the transfer ends up FAILED, for any reason
        """
        sender = self.prepare_send(recipient, path, transport, mode, chunk_len=chunk_len)
        await sender.send_file()
        return sender

    async def dispatch(self, remote, message: TransferMessage, transport):
        """Hand ``message`` from ``remote`` to the handle owning its transfer id

        announcements with a fresh id create a :class:`Receiver`,
        anything bearing a retired or unknown id is dropped
        """
        transfer_id = message.transfer_id
        if handle := self.registry.get(transfer_id):
            if handle.transfer.peer != remote:
                _logger.warning(f"[TRANSFER] {remote} sent {type(message).__name__} for {transfer_id} owned by {handle.transfer.peer}")
                return
            await handle.on_message(message)
            return

        if self.registry.is_retired(transfer_id):
            _logger.debug(f"[TRANSFER] ignoring late {type(message).__name__} for retired {transfer_id}")
            return

        if isinstance(message, FileMetadata):
            await self._accept(remote, message, transport)
            return

        _logger.warning(f"[TRANSFER] dropping {type(message).__name__} for unknown transfer {transfer_id} from {remote}")

    async def _accept(self, remote, metadata: FileMetadata, transport):
        if metadata.size > self.max_file_size:
            rejection = OversizeRejected(
                f"{metadata.name} ({stringify_size(metadata.size)}) exceeds {stringify_size(self.max_file_size)}",
                metadata.transfer_id,
            )
            _logger.warning(f"[TRANSFER] rejecting {metadata.transfer_id} from {remote}: {rejection}")
            self.registry.retire(metadata.transfer_id)
            try:
                await transport.send(FileError(metadata.transfer_id, str(rejection)))
            except TransportClosed:
                _logger.debug(f"[TRANSFER] could not reject {metadata.transfer_id}, transport closed")
            return None

        transfer = Transfer(
            id=metadata.transfer_id,
            sender_id=remote,
            recipient_id=self.local_name,
            file_name=metadata.name,
            declared_size=metadata.size,
            mime_type=metadata.mime_type,
            mode=transport.mode,
            role=Role.RECEIVER,
        )
        receiver = Receiver(
            transfer,
            transport,
            self.registry,
            persister=self.persister,
            notifier=self.notifier,
            progress=self.progress,
        )
        self.registry.add(receiver)
        self.progress.setup(transfer.id, f"receiving: {metadata.name}", metadata.size)
        await receiver.start()
        return receiver

    async def pump(self, remote, transport):
        """Feed every inbound message of ``transport`` into :meth:`dispatch` until it closes

        unfinished transfers still using ``transport`` fail once it is exhausted
        """
        try:
            async for message in transport:
                await self.dispatch(remote, message, transport)
        finally:
            await self.fail_peer(remote, f"{transport} closed", mode=transport.mode, transport=transport)

    async def cancel(self, transfer_id, reason="cancelled by user"):
        """
        Returns:
            bool: False if no active transfer has ``transfer_id``
        """
        handle = self.registry.get(transfer_id)
        if handle is None:
            return False
        await handle.cancel(reason)
        return True

    async def fail_peer(self, remote, reason, *, mode=None, transport=None):
        """Cancel every unfinished transfer with ``remote``, optionally only those over ``transport``"""
        handles = [
            h for h in self.registry.unfinished(remote, mode)
            if transport is None or h.transport is transport
        ]
        for handle in handles:
            await handle.cancel(reason)
        if handles:
            _logger.info(f"[TRANSFER] failed {len(handles)} transfer(s) with {remote}: {reason}")

    async def close(self):
        await asyncio.gather(*(h.cancel("shutting down") for h in self.registry.unfinished()))

    def snapshot(self):
        return self.registry.snapshot()

    def __repr__(self):
        return f"<TransferManager({self.local_name!r}, active={len(self.registry)})>"
