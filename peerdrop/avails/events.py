from typing import Any, NamedTuple, Optional

from peerdrop.avails.wire import Envelope


class EnvelopeEvent(NamedTuple):
    envelope: Envelope
    connection: Any

    @property
    def type(self):
        return self.envelope.type


class NotifyEvent(NamedTuple):
    """Fire and forget signal handed to the notify collaborator

    kinds used: ``incoming-file``, ``file-ready``, ``transfer-complete``, ``transfer-failed``,
    ``connection-lost``, ``connection-restored``
    """
    kind: str
    message: str
    transfer_id: Optional[str] = None
    peer: Optional[str] = None
    data: Optional[dict] = None
