import asyncio
import functools
from contextlib import aclosing

from peerdrop.avails import const
from peerdrop.avails.exceptions import (
    CancelTransfer,
    InvalidStateError,
    OversizeRejected,
    TransferFailed,
    TransferIncomplete,
    TransportClosed,
)
from peerdrop.avails.wire import FileChunk, FileComplete, FileError, FileMetadata
from peerdrop.transfers import TransferState, thread_pool_for_disk_io
from peerdrop.transfers._logger import logger as _logger
from peerdrop.transfers.abc import AbstractSender, CommonExceptionHandlersMixIn
from peerdrop.transfers.fileobject import FileItem, chunk_size_for


class Sender(CommonExceptionHandlersMixIn, AbstractSender):
    version = const.VERSIONS['FO']

    def __init__(self, transfer, file_item: FileItem, transport, registry, *,
                 notifier, progress, chunk_len=None):
        super().__init__(transfer, transport, registry, notifier=notifier, progress=progress)
        self.file_item = file_item
        self.chunk_len = chunk_len
        self.send_file_task = None
        self._failure = None

    async def send_file(self):
        """Announce, stream every chunk, then signal completion

        Raises:
            TransferFailed: (or a subclass) once the transfer ends up FAILED
        """
        if self.transfer.status is not TransferState.ANNOUNCED:
            raise InvalidStateError(f"{self._log_prefix} {self.transfer.status=}")
        if self.transfer.declared_size > const.MAX_FILE_SIZE:
            failure = OversizeRejected(
                f"{self.file_item.name} is larger than {const.MAX_FILE_SIZE} bytes", self.transfer.id
            )
            await self._fail(failure, tell_peer=False)
            raise failure

        self.send_file_task = asyncio.current_task()
        try:
            await self.transport.send(FileMetadata(
                self.transfer.id,
                self.transfer.file_name,
                self.transfer.declared_size,
                self.transfer.mime_type,
                str(self.transfer.mode),
            ))
            self._change_state(TransferState.STREAMING)

            async with aclosing(send_actual_file(
                    self.transport,
                    self.transfer,
                    self.file_item,
                    chunk_len=self.chunk_len,
            )) as sending:
                async for _ in sending:
                    self._report_progress()
                    if self._failure is not None:
                        raise self._failure

            if self.transfer.declared_size == 0:
                self._report_progress()
            await self.transport.send(FileComplete(self.transfer.id, self.transfer.file_name))
            self._change_state(TransferState.COMPLETING)
            await self.transport.flush()
        except asyncio.CancelledError:
            if self._failure is None:
                # cancelled from outside, not through cancel()
                await self._fail(CancelTransfer("sender task cancelled", self.transfer.id))
                raise
            self.send_file_task.uncancel()
            raise self._failure from None
        except TransferFailed as tf:
            await self._fail(tf)
            raise
        except OSError as e:
            failure = TransferIncomplete(f"sending stopped: {e!r}", self.transfer.id)
            await self._fail(failure, tell_peer=not isinstance(e, TransportClosed))
            raise failure from e
        finally:
            self.send_file_task = None

        self._finish()
        _logger.info(f"{self._log_prefix} completed sending {self.file_item}")
        self._notify("transfer-complete", f"sent {self.transfer.file_name} to {self.transfer.recipient_id}")

    async def on_message(self, message):
        match message:
            case FileError(message=reason):
                _logger.warning(f"{self._log_prefix} peer reported: {reason}")
                await self._stop(TransferFailed(f"peer failed transfer: {reason}", self.transfer.id), tell_peer=False)
            case _:
                _logger.debug(f"{self._log_prefix} ignoring {type(message).__name__} sent to a sender")

    async def cancel(self, reason="cancelled"):
        await self._stop(CancelTransfer(reason, self.transfer.id))

    async def _stop(self, failure, *, tell_peer=True):
        if self.transfer.status.is_terminal:
            return
        self._failure = failure
        await self._fail(failure, tell_peer=tell_peer)
        task = self.send_file_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def __repr__(self):
        return f"<Sender({self.transfer.id[:8]}, {self.file_item}, {self.transfer.status.name})>"


async def send_actual_file(
        transport,
        transfer,
        file,
        *,
        chunk_len=None,
        timeout=None,
        th_pool=thread_pool_for_disk_io,
):
    """Streams ``file`` to the other end as :class:`FileChunk` messages

    Reads sequentially from the ``path`` attribute of ``file item`` in a thread pool,
    every chunk is marked as covered in ``transfer.covered``.
    Waits for ``transport`` to drain below its low watermark whenever it reports
    pending bytes above the high watermark.

    Args:
        transport(AbstractTransport): transport to send chunks through
        transfer(Transfer): the sending side record
        file(FileItem): file to send
        chunk_len(int): length of each chunk, defaults to the mode's chunk size
        timeout(int): seconds to wait for the transport to drain, defaults to ``BACKPRESSURE_TIMEOUT``
        th_pool(ThreadPoolExecutor): thread pool executor to use while reading the file

    Yields:
        number of bytes sent so far
    """

    chunk_size = chunk_len or chunk_size_for(transfer.mode)
    timeout = timeout or const.BACKPRESSURE_TIMEOUT
    size = transfer.declared_size
    with open(file.path, "rb") as f:
        asyncify = functools.partial(
            asyncio.get_running_loop().run_in_executor,
            th_pool,
            f.read,
        )

        seek = 0
        while seek < size:
            chunk = await asyncify(min(chunk_size, size - seek))
            if not chunk:
                raise TransferIncomplete(f"{file} shrank while sending at {seek}/{size}", transfer.id)

            await transport.send(FileChunk(transfer.id, seek, chunk, transfer.file_name, size))
            transfer.covered.add(seek, seek + len(chunk))
            seek += len(chunk)

            if transport.should_pause:
                await asyncio.wait_for(transport.wait_low(), timeout)
            yield seek
