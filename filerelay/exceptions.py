"""
Transfer errors.

Every failure raised by the transfer layer is a TransferError. The server
sends ApplicationError and ProtocolViolation messages back to the client as
ERROR messages while the connection is still writable.
"""


class TransferError(IOError):
    """Base class for every failure raised by the transfer layer."""


class TransferConnectionError(TransferError):
    """Connect, accept, bind or socket IO failure."""


class TruncatedStream(TransferError):
    """The peer closed the stream in the middle of a message."""


class ProtocolViolation(TransferError):
    """Unexpected message type, malformed payload or name mismatch."""


class ApplicationError(TransferError):
    """
    A request the peer understood but refused.

    File not found, file already exists, invalid name or size.
    """
