from abc import ABC, abstractmethod

from peerdrop.avails.events import NotifyEvent
from peerdrop.avails.exceptions import TransportClosed
from peerdrop.avails.wire import FileError, TransferMessage
from peerdrop.conduit.abc import AbstractNotifier, AbstractProgressReporter
from peerdrop.transfers import Transfer, TransferState
from peerdrop.transfers._logger import logger
from peerdrop.transfers.registry import TransferRegistry
from peerdrop.transfers.transports import AbstractTransport


class AbstractTransferHandle(ABC):
    """Owns one :class:`Transfer` and every state transition it goes through"""

    def __init__(self, transfer: Transfer, transport: AbstractTransport, registry: TransferRegistry, *,
                 notifier: AbstractNotifier, progress: AbstractProgressReporter):
        self.transfer = transfer
        self.transport = transport
        self.registry = registry
        self.notifier = notifier
        self.progress = progress

    @abstractmethod
    async def on_message(self, message: TransferMessage):
        """A transfer message bearing this transfer's id arrived from the peer"""

    @abstractmethod
    async def cancel(self, reason="cancelled"):
        """Cancel the transfer, the peer is told with a FILE_ERROR"""

    @property
    def id(self):
        return self.transfer.id

    @property
    def status(self):
        return self.transfer.status

    @property
    def _log_prefix(self):
        return f"[{self.__class__.__name__}:{self.transfer.id[:8]}]"


class AbstractSender(AbstractTransferHandle, ABC):

    @abstractmethod
    async def send_file(self):
        """Announce, stream and finish the file this handle was made for"""


class AbstractReceiver(AbstractTransferHandle, ABC):

    @abstractmethod
    async def start(self):
        """Called once the announcement got accepted and registered"""


class CommonExceptionHandlersMixIn:
    """State changes and failure path shared by senders and receivers"""

    def _change_state(self, state: TransferState):
        logger.debug(f"{self._log_prefix} changing state {self.transfer.status.name} -> {state.name}")
        self.transfer.status = state

    def _report_progress(self):
        self.progress.report_progress(self.transfer.id, self.transfer.progress, self.transfer.bytes_transferred)

    def _notify(self, kind, message, **data):
        self.notifier.notify(NotifyEvent(kind, message, self.transfer.id, self.transfer.peer, data or None))

    async def _fail(self, exc, *, tell_peer=True):
        """Move to FAILED, drop buffered chunks, retire the id

        Returns:
            bool: False if the transfer was already terminal
        """
        if self.transfer.status.is_terminal:
            return False

        logger.error(f"{self._log_prefix} failed in state {self.transfer.status.name}: {exc!r}")
        self._change_state(TransferState.FAILED)
        self.transfer.error = exc
        self.transfer.release()
        self.registry.retire(self.transfer.id)
        self.progress.close(self.transfer.id)
        self._notify("transfer-failed", f"{self.transfer.file_name}: {exc}")

        if tell_peer:
            try:
                await self.transport.send(FileError(self.transfer.id, str(exc) or type(exc).__name__))
            except TransportClosed:
                logger.debug(f"{self._log_prefix} could not tell peer about failure, transport closed")
        return True

    def _finish(self):
        self._change_state(TransferState.COMPLETE)
        self.transfer.release()
        self.registry.retire(self.transfer.id)
        self.progress.close(self.transfer.id)
