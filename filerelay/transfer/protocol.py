"""
File Transfer Protocol

Design Decision: Framing
========================

Options Considered:
1. Line-delimited text commands (FTP style)
   - Easy to debug with telnet
   - Binary file data needs a second channel or escaping

2. Length-prefixed JSON header + binary body
   - Flexible headers
   - Every chunk pays for a JSON encode/decode

3. Fixed binary header: 1-byte type + 4-byte length
   - Smallest possible overhead per chunk
   - Trivial to implement on any platform
   - Payload meaning depends on the type tag

Decision: Fixed 5-byte header
- Both peers share one format, no negotiation
- One message never exceeds MAX_PACKET_SIZE on the wire when it carries
  file data, so a chunk is at most MAX_PACKET_SIZE - HEADER_SIZE bytes

Message Format:
```
+--------+-------------------+------------------+
| Type   | Length (4B, BE)   | Payload          |
| (1B)   | unsigned          | Length bytes     |
+--------+-------------------+------------------+
```

Payloads:
    REQUEST_FILE_LIST   client -> server   none
    FILE_LIST           server -> client   name1|name2|...
    REQUEST_FILE        client -> server   file name
    FILE_INFO           both               name|size (also starts an upload)
    FILE_DATA           both               raw chunk bytes
    TRANSFER_COMPLETE   both               none (also the upload ready-ack)
    ERROR               server -> client   message text
"""

import struct
import logging
import socket
from enum import IntEnum
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, List, Optional, Tuple

from ..constants import (
    HEADER_SIZE, MAX_PACKET_SIZE, MAX_CHUNK_SIZE, MAX_PAYLOAD_LENGTH,
    NAME_SEPARATOR
)
from ..exceptions import (
    TransferError, TransferConnectionError, TruncatedStream,
    ProtocolViolation, ApplicationError
)

logger = logging.getLogger(__name__)

_HEADER = struct.Struct('>BI')


# === Message model ===

class MessageType(IntEnum):
    """Transfer protocol message types."""
    REQUEST_FILE_LIST = 1
    FILE_LIST = 2
    REQUEST_FILE = 3
    FILE_INFO = 4
    FILE_DATA = 5
    TRANSFER_COMPLETE = 6
    ERROR = 7


@dataclass(frozen=True)
class Message:
    """A transfer protocol message."""
    type: MessageType
    payload: bytes = field(default=b'')

    def __post_init__(self):
        if self.payload is None:
            object.__setattr__(self, 'payload', b'')
        elif not isinstance(self.payload, bytes):
            object.__setattr__(self, 'payload', bytes(self.payload))

    @property
    def text(self) -> str:
        """Payload decoded as UTF-8."""
        return self.payload.decode('utf-8', errors='replace')

    def to_bytes(self) -> bytes:
        """Serialize message to bytes."""
        return encode(self)

    def __repr__(self) -> str:
        return f"Message({self.type.name}, {len(self.payload)} bytes)"


# === Codec ===

def encode(message: Message) -> bytes:
    """Encode a message as header + payload."""
    length = len(message.payload)
    if length > MAX_PAYLOAD_LENGTH:
        raise ValueError(f"Payload too large: {length} bytes")
    return _HEADER.pack(int(message.type), length) + message.payload


def _read_exact(source: BinaryIO, size: int) -> bytes:
    """Read exactly size bytes, or raise TruncatedStream."""
    buf = bytearray()
    while len(buf) < size:
        data = source.read(size - len(buf))
        if not data:
            raise TruncatedStream(
                f"Stream ended after {len(buf)} of {size} bytes"
            )
        buf.extend(data)
    return bytes(buf)


def decode(source: BinaryIO) -> Message:
    """
    Read one message from a binary stream.

    Blocks until the 5 header bytes and the full payload have arrived.
    Never returns a partial message.

    Raises:
        TruncatedStream: the stream ended before the message was complete
        ProtocolViolation: unknown type tag or impossible length
    """
    header = _read_exact(source, HEADER_SIZE)
    tag, length = _HEADER.unpack(header)

    if length > MAX_PAYLOAD_LENGTH:
        raise ProtocolViolation(f"Invalid payload length: {length}")

    payload = _read_exact(source, length) if length > 0 else b''

    try:
        msg_type = MessageType(tag)
    except ValueError:
        raise ProtocolViolation(f"Unknown message type: {tag}") from None

    return Message(msg_type, payload)


def read_message(stream: BinaryIO) -> Message:
    """Receive a message."""
    message = decode(stream)
    logger.debug(f"<- {message!r}")
    return message


def write_message(sock: socket.socket, message: Message):
    """Send a message."""
    logger.debug(f"-> {message!r}")
    sock.sendall(encode(message))


# === Payload helpers ===

def format_file_info(name: str, size: int) -> bytes:
    """Build a FILE_INFO payload."""
    return f"{name}{NAME_SEPARATOR}{size}".encode('utf-8')


def parse_file_info(payload: bytes) -> Tuple[str, int]:
    """
    Parse a FILE_INFO payload.

    Returns:
        (name, size) tuple

    Raises:
        ProtocolViolation: not exactly two fields, or size is not a
            non-negative integer
    """
    text = payload.decode('utf-8', errors='replace')
    fields = text.split(NAME_SEPARATOR)
    if len(fields) != 2:
        raise ProtocolViolation(f"Invalid file info format: {text!r}")

    name, size_text = fields
    # Plain ASCII digits only: no sign, whitespace or underscores
    if not (size_text.isascii() and size_text.isdigit()):
        raise ProtocolViolation(f"Invalid file size: {size_text!r}")

    return name, int(size_text)


def join_names(names: Iterable[str]) -> bytes:
    """Build a FILE_LIST payload."""
    return NAME_SEPARATOR.join(names).encode('utf-8')


def split_names(payload: Optional[bytes]) -> List[str]:
    """
    Parse a FILE_LIST payload.

    An empty payload means no files. Splitting '' would give [''].
    """
    if not payload:
        return []
    try:
        text = payload.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ProtocolViolation(f"File list is not valid UTF-8: {e}") from None
    return text.split(NAME_SEPARATOR)


# === Message constructors ===

def request_file_list_message() -> Message:
    return Message(MessageType.REQUEST_FILE_LIST)


def file_list_message(names: Iterable[str]) -> Message:
    return Message(MessageType.FILE_LIST, join_names(names))


def request_file_message(name: str) -> Message:
    return Message(MessageType.REQUEST_FILE, name.encode('utf-8'))


def file_info_message(name: str, size: int) -> Message:
    return Message(MessageType.FILE_INFO, format_file_info(name, size))


def file_data_message(chunk: bytes) -> Message:
    if len(chunk) > MAX_CHUNK_SIZE:
        raise ValueError(f"Chunk too large: {len(chunk)} > {MAX_CHUNK_SIZE}")
    return Message(MessageType.FILE_DATA, chunk)


def transfer_complete_message() -> Message:
    """End of transfer. Also used by the server as the upload ready-ack."""
    return Message(MessageType.TRANSFER_COMPLETE)


def error_message(text: str) -> Message:
    return Message(MessageType.ERROR, text.encode('utf-8'))
