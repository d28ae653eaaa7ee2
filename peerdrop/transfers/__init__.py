import enum
import time
from concurrent.futures.thread import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from peerdrop.avails import use
from peerdrop.transfers.ranges import CoveredRanges

thread_pool_for_disk_io = ThreadPoolExecutor()


class TransferState(enum.Enum):
    ANNOUNCED = 1
    STREAMING = 2
    COMPLETING = 3
    COMPLETE = 4
    FAILED = 5

    @property
    def is_terminal(self):
        return self in (TransferState.COMPLETE, TransferState.FAILED)


class TransferMode(enum.StrEnum):
    DIRECT = "direct"
    RELAYED = "relayed"

    @classmethod
    def parse(cls, value):
        """Accepts the original wire names too (``webrtc`` / ``websocket``)"""
        aliases = {"webrtc": cls.DIRECT, "websocket": cls.RELAYED}
        return aliases.get(value) or cls(value)


class Role(enum.Enum):
    SENDER = 1
    RECEIVER = 2


@dataclass(slots=True)
class Transfer:
    """State of one file moving between two identities

    ``id`` is the only correlation key, chunk bytes are held only on the receiving side,
    keyed by offset until materialized
    """
    id: str
    sender_id: str
    recipient_id: str
    file_name: str
    declared_size: int
    mime_type: str
    mode: TransferMode
    role: Role
    status: TransferState = TransferState.ANNOUNCED
    covered: CoveredRanges = field(default_factory=CoveredRanges)
    created_at: float = field(default_factory=time.time)
    chunks: Optional[dict] = field(default_factory=dict, repr=False)
    error: Optional[BaseException] = field(default=None, repr=False)

    @property
    def bytes_transferred(self):
        return self.covered.covered

    @property
    def progress(self):
        return use.percent_of(self.bytes_transferred, self.declared_size)

    @property
    def peer(self):
        return self.recipient_id if self.role is Role.SENDER else self.sender_id

    @property
    def is_complete(self):
        return self.covered.is_complete(self.declared_size)

    def release(self):
        """drop every buffered chunk"""
        self.chunks = None

    def as_dict(self):
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "recipientId": self.recipient_id,
            "fileName": self.file_name,
            "declaredSize": self.declared_size,
            "mimeType": self.mime_type,
            "mode": str(self.mode),
            "role": self.role.name.lower(),
            "status": self.status.name,
            "bytesTransferred": self.bytes_transferred,
            "progress": self.progress,
            "createdAt": self.created_at,
        }
