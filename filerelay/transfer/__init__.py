"""
Transfer Module - File Upload/Download

Handles the framed TCP protocol between one client and one server.
"""

from .protocol import Message, MessageType, encode, decode
from .client import FileTransferClient, TransferCallback, FunctionCallback, TransferSession
from .server import FileTransferServer, ServerState

__all__ = [
    'Message',
    'MessageType',
    'encode',
    'decode',
    'FileTransferClient',
    'TransferCallback',
    'FunctionCallback',
    'TransferSession',
    'FileTransferServer',
    'ServerState',
]
