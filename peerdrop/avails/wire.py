"""Every Wire Format of peerdrop

This module contains all the classes related to how data appears on the wire.

Two framings exist:

* :class:`Envelope` is the JSON text object exchanged with the relay, flat ``{type, sender|recipient, **fields}``
* transfer frames carried on a direct data channel, control messages as JSON text and
  chunks as binary ``umsgpack`` arrays so that a chunk can never be mistaken for a control message

Transfer level messages (:class:`FileMetadata`, :class:`FileChunk`, :class:`FileComplete`, :class:`FileError`)
are transport agnostic, each transport picks the framing it needs via the helpers at the bottom.
"""

import base64
import binascii
import json as _json
from typing import NamedTuple, Optional

import umsgpack

from peerdrop.avails import constants as _const
from peerdrop.avails.exceptions import MalformedMessage


class HEADERS:
    __slots__ = ()
    SET_USERNAME = "SET_USERNAME"
    USERNAME_SET = "USERNAME_SET"
    USERNAME_ERROR = "USERNAME_ERROR"
    USER_LIST = "USER_LIST"
    GET_USERS = "GET_USERS"
    PING = "PING"

    FILE_METADATA = "FILE_METADATA"
    FILE_CHUNK = "FILE_CHUNK"
    FILE_COMPLETE = "FILE_COMPLETE"
    FILE_ERROR = "FILE_ERROR"

    OFFER = "OFFER"
    ANSWER = "ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"

    ERROR = "ERROR"


# envelopes the relay forwards between identities
ROUTED_HEADERS = frozenset({
    HEADERS.FILE_METADATA,
    HEADERS.FILE_CHUNK,
    HEADERS.FILE_COMPLETE,
    HEADERS.FILE_ERROR,
    HEADERS.OFFER,
    HEADERS.ANSWER,
    HEADERS.ICE_CANDIDATE,
})

# routed envelopes that carry user intent, an unknown recipient may be reported back
CRITICAL_HEADERS = frozenset({
    HEADERS.FILE_METADATA,
    HEADERS.OFFER,
    HEADERS.ANSWER,
})

TRANSFER_HEADERS = frozenset({
    HEADERS.FILE_METADATA,
    HEADERS.FILE_CHUNK,
    HEADERS.FILE_COMPLETE,
    HEADERS.FILE_ERROR,
})


class Envelope:
    """Signaling envelope routed by the relay

    ``sender`` and ``recipient`` are plain attributes, every other field lives in ``body``
    and gets flattened next to them when serialized.
    """
    _version = _const.VERSIONS["WIRE"]

    __slots__ = 'type', 'sender', 'recipient', 'body'

    def __init__(self, type, sender=None, recipient=None, **kwargs):  # noqa
        self.type = type
        self.sender = sender
        self.recipient = recipient
        self.body = kwargs

    def dump(self) -> str:
        return _json.dumps(self.dict, ensure_ascii=False)

    def __str__(self):
        return self.dump()

    @classmethod
    def load_from(cls, data: str | bytes):
        """Parse a raw JSON envelope

        Raises:
            MalformedMessage: if data is not a JSON object with a string ``type``
        """
        try:
            loaded = _json.loads(data)
        except (_json.JSONDecodeError, UnicodeDecodeError, TypeError) as je:
            raise MalformedMessage(f"ill-formed envelope: {data!r:.80}") from je

        if not isinstance(loaded, dict) or not isinstance(loaded.get("type"), str):
            raise MalformedMessage(f"envelope without type: {data!r:.80}")

        _type = loaded.pop("type")
        sender = loaded.pop("sender", None)
        recipient = loaded.pop("recipient", None)
        if not all(name is None or isinstance(name, str) for name in (sender, recipient)):
            raise MalformedMessage(f"sender and recipient must be names: {data!r:.80}")
        return cls(_type, sender, recipient, **loaded)

    def get(self, key, default=None):
        return self.body.get(key, default)

    def __getitem__(self, item):
        return self.body[item]

    def __setitem__(self, key, value):
        self.body[key] = value

    def __contains__(self, item):
        return item in self.body

    @property
    def payload(self):
        return self.body.get("payload")

    @property
    def dict(self):
        data = {"type": self.type}
        if self.sender is not None:
            data["sender"] = self.sender
        if self.recipient is not None:
            data["recipient"] = self.recipient
        data.update(self.body)
        return data

    def __eq__(self, other):
        if not isinstance(other, Envelope):
            return NotImplemented
        return self.dict == other.dict

    def __repr__(self):
        return f"<Envelope(type={self.type}, sender={self.sender}, recipient={self.recipient}, body={self.body!r:.60})>"


def error_envelope(message, recipient=None, **kwargs):
    return Envelope(HEADERS.ERROR, recipient=recipient, message=message, **kwargs)


class FileMetadata(NamedTuple):
    transfer_id: str
    name: str
    size: int
    mime_type: str
    mode: str


class FileChunk(NamedTuple):
    transfer_id: str
    offset: int
    data: bytes
    name: Optional[str] = None
    size: Optional[int] = None


class FileComplete(NamedTuple):
    transfer_id: str
    name: Optional[str] = None


class FileError(NamedTuple):
    transfer_id: str
    message: str


TransferMessage = FileMetadata | FileChunk | FileComplete | FileError


def to_envelope(message: TransferMessage, recipient=None) -> Envelope:
    """Frame a transfer message as a relay envelope"""
    match message:
        case FileMetadata():
            return Envelope(
                HEADERS.FILE_METADATA,
                recipient=recipient,
                file={"name": message.name, "size": message.size, "type": message.mime_type},
                transferMode=message.mode,
                transferId=message.transfer_id,
            )
        case FileChunk():
            return Envelope(
                HEADERS.FILE_CHUNK,
                recipient=recipient,
                file={
                    "name": message.name,
                    "size": message.size,
                    "offset": message.offset,
                    "data": base64.b64encode(message.data).decode("ascii"),
                },
                transferId=message.transfer_id,
            )
        case FileComplete():
            return Envelope(
                HEADERS.FILE_COMPLETE,
                recipient=recipient,
                fileName=message.name,
                transferId=message.transfer_id,
            )
        case FileError():
            return Envelope(
                HEADERS.FILE_ERROR,
                recipient=recipient,
                transferId=message.transfer_id,
                message=message.message,
            )
    raise TypeError(f"not a transfer message: {message!r}")


def from_envelope(envelope: Envelope) -> TransferMessage:
    """Inverse of :func:`to_envelope`

    Raises:
        MalformedMessage: on missing fields, wrong types, or undecodable chunk data
    """
    try:
        transfer_id = envelope["transferId"]
        if not isinstance(transfer_id, str) or not transfer_id:
            raise MalformedMessage(f"invalid transferId in {envelope}")

        match envelope.type:
            case HEADERS.FILE_METADATA:
                file = envelope["file"]
                return FileMetadata(
                    transfer_id,
                    str(file["name"]),
                    _non_negative(file["size"]),
                    file.get("type") or "application/octet-stream",
                    envelope.get("transferMode", "relayed"),
                )
            case HEADERS.FILE_CHUNK:
                file = envelope["file"]
                return FileChunk(
                    transfer_id,
                    _non_negative(file["offset"]),
                    base64.b64decode(file["data"], validate=True),
                    file.get("name"),
                    file.get("size"),
                )
            case HEADERS.FILE_COMPLETE:
                return FileComplete(transfer_id, envelope.get("fileName"))
            case HEADERS.FILE_ERROR:
                return FileError(transfer_id, str(envelope.get("message", "")))
    except (KeyError, TypeError, AttributeError, ValueError, binascii.Error) as e:
        raise MalformedMessage(f"ill-formed {envelope.type}: {e}") from e

    raise MalformedMessage(f"not a transfer envelope: {envelope.type}")


def dump_frame(message: TransferMessage) -> str | bytes:
    """Frame a transfer message for a direct data channel

    chunks become binary frames, everything else a JSON text frame
    """
    if isinstance(message, FileChunk):
        return umsgpack.dumps([message.transfer_id, message.offset, message.data])
    return to_envelope(message).dump()


def load_frame(frame: str | bytes) -> TransferMessage:
    """Inverse of :func:`dump_frame`

    Raises:
        MalformedMessage: if frame could not be decoded
    """
    if isinstance(frame, str):
        return from_envelope(Envelope.load_from(frame))

    try:
        transfer_id, offset, data = umsgpack.loads(frame)
    except (umsgpack.UnpackException, TypeError, ValueError) as ue:
        raise MalformedMessage(f"ill-formed chunk frame: {ue}") from ue

    if not isinstance(transfer_id, str) or not isinstance(data, bytes):
        raise MalformedMessage("chunk frame with wrong field types")

    return FileChunk(transfer_id, _non_negative(offset), data)


def frame_size(frame: str | bytes) -> int:
    if isinstance(frame, str):
        return len(frame.encode(_const.FORMAT))
    return len(frame)


def _non_negative(value):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedMessage(f"expected a non negative integer, got {value!r}")
    return value


__all__ = (
    'HEADERS',
    'ROUTED_HEADERS',
    'CRITICAL_HEADERS',
    'TRANSFER_HEADERS',
    'Envelope',
    'error_envelope',
    'FileMetadata',
    'FileChunk',
    'FileComplete',
    'FileError',
    'TransferMessage',
    'to_envelope',
    'from_envelope',
    'dump_frame',
    'load_frame',
    'frame_size',
)
