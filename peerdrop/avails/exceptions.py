class NameConflict(Exception):
    """Requested name is already held by another live connection"""


class RecipientUnknown(LookupError):
    """No live connection registered under the recipient name"""


class MalformedMessage(Exception):
    """Ill formed envelope or frame"""


class NegotiationFailed(Exception):
    """Peer channel could not be established"""


class NegotiationTimeout(NegotiationFailed, TimeoutError):
    """Peer channel was not connected within the negotiation window"""


class TransportClosed(ConnectionError):
    """Send attempted on a closed or broken transport"""


class TransferFailed(Exception):
    """Data Transfer failed, carries the transfer id when known

    Attributes:
        transfer_id(str): id of the transfer that failed
    """

    def __init__(self, message="", transfer_id=None):
        super().__init__(message)
        self.transfer_id = transfer_id


class OversizeRejected(TransferFailed):
    """Declared size of the transfer exceeds the configured maximum"""


class TransferIncomplete(TransferFailed):
    """Data Transfer was broken in between"""


class CancelTransfer(TransferFailed):
    """Request to Cancel the transfer"""


class InvalidStateError(Exception):
    """The operation is not allowed in this state."""
