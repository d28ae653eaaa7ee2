from peerdrop.avails import const
from peerdrop.avails.exceptions import (
    CancelTransfer,
    InvalidStateError,
    TransferFailed,
    TransferIncomplete,
)
from peerdrop.avails.wire import FileChunk, FileComplete, FileError, FileMetadata
from peerdrop.transfers import TransferState
from peerdrop.transfers._logger import logger as _logger
from peerdrop.transfers.abc import AbstractReceiver, CommonExceptionHandlersMixIn


class Receiver(CommonExceptionHandlersMixIn, AbstractReceiver):
    """Accumulates chunks of one announced file until every byte is covered

    Chunks may arrive in any order and may repeat, they are merged by offset.
    Once covered the file is materialized, handed to ``persister`` and the transfer retires.
    """
    version = const.VERSIONS['FO']

    def __init__(self, transfer, transport, registry, *, persister, notifier, progress):
        super().__init__(transfer, transport, registry, notifier=notifier, progress=progress)
        self.persister = persister

    async def start(self):
        if self.transfer.status is not TransferState.ANNOUNCED:
            raise InvalidStateError(f"{self._log_prefix} {self.transfer.status=}")

        _logger.info(f"{self._log_prefix} incoming {self.transfer.file_name} from {self.transfer.sender_id}")
        self._change_state(TransferState.STREAMING)
        self._notify(
            "incoming-file",
            f"{self.transfer.sender_id} is sending {self.transfer.file_name}",
            size=self.transfer.declared_size,
            mode=str(self.transfer.mode),
        )
        if self.transfer.declared_size == 0:
            self._report_progress()
            await self._complete()

    async def on_message(self, message):
        if self.transfer.status.is_terminal:
            return

        match message:
            case FileChunk():
                await self._apply_chunk(message)
            case FileComplete():
                if self.transfer.is_complete:
                    return
                gaps = list(self.transfer.covered.gaps(self.transfer.declared_size))
                _logger.warning(f"{self._log_prefix} sender finished with missing ranges {gaps[:5]}")
                await self._fail(TransferIncomplete(
                    f"completion signalled with {self.transfer.declared_size - self.transfer.bytes_transferred}"
                    f" bytes missing",
                    self.transfer.id,
                ), tell_peer=False)
            case FileError(message=reason):
                await self._fail(TransferFailed(f"sender failed transfer: {reason}", self.transfer.id), tell_peer=False)
            case FileMetadata():
                _logger.debug(f"{self._log_prefix} duplicate announcement ignored")

    async def _apply_chunk(self, chunk: FileChunk):
        end = chunk.offset + len(chunk.data)
        if end > self.transfer.declared_size:
            _logger.warning(
                f"{self._log_prefix} dropping chunk [{chunk.offset}, {end}) past declared size {self.transfer.declared_size}"
            )
            return
        if not chunk.data:
            return

        if self.transfer.covered.add(chunk.offset, end):
            self.transfer.chunks[chunk.offset] = chunk.data
            self._report_progress()

        if self.transfer.is_complete:
            await self._complete()

    async def _complete(self):
        self._change_state(TransferState.COMPLETING)
        data = self._materialize()
        metadata = {
            "name": self.transfer.file_name,
            "size": self.transfer.declared_size,
            "type": self.transfer.mime_type,
            "sender": self.transfer.sender_id,
            "mode": str(self.transfer.mode),
        }
        try:
            saved_to = await self.persister.persist(self.transfer.id, data, metadata)
        except OSError as oe:
            await self._fail(TransferFailed(f"could not save {self.transfer.file_name}: {oe}", self.transfer.id))
            return

        self._finish()
        _logger.info(f"{self._log_prefix} completed receiving {self.transfer.file_name}")
        self._notify(
            "file-ready",
            f"{self.transfer.file_name} from {self.transfer.sender_id} is ready",
            path=str(saved_to) if saved_to else None,
            size=self.transfer.declared_size,
        )

    def _materialize(self):
        buffer = bytearray(self.transfer.declared_size)
        for offset, data in sorted(self.transfer.chunks.items()):
            buffer[offset:offset + len(data)] = data
        return bytes(buffer)

    async def cancel(self, reason="cancelled"):
        await self._fail(CancelTransfer(reason, self.transfer.id))

    def __repr__(self):
        return f"<Receiver({self.transfer.id[:8]}, {self.transfer.file_name}, {self.transfer.status.name})>"
