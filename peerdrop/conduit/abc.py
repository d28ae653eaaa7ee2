from abc import ABC, abstractmethod

from peerdrop.avails.events import NotifyEvent


class AbstractPersister(ABC):

    @abstractmethod
    async def persist(self, transfer_id: str, data: bytes, metadata: dict):
        """Store a completed artifact

        Args:
            transfer_id(str): id of the completed transfer
            data(bytes): reassembled file contents, exactly ``metadata['size']`` long
            metadata(dict): ``name``, ``size``, ``type``, ``sender``, ``mode``
        """


class AbstractNotifier(ABC):

    @abstractmethod
    def notify(self, event: NotifyEvent):
        """Fire and forget, must not raise or block"""


class AbstractProgressReporter(ABC):

    @abstractmethod
    def report_progress(self, transfer_id: str, percent: int, bytes_transferred: int):
        """Called after every chunk sent or received"""

    def close(self, transfer_id: str):
        """Transfer reached a terminal state, no further reports follow"""

    def setup(self, transfer_id: str, prefix: str, total: int):
        """A transfer is about to start reporting"""
