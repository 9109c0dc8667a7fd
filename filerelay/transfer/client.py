"""
File Transfer Client

Design Decision: Connection Lifetime
====================================

Options Considered:
1. One long-lived connection carrying many requests
   - Saves a TCP handshake per operation
   - Needs request multiplexing or strict turn-taking on the server

2. One connection per operation
   - The server reads exactly one request per connection
   - A failed transfer cannot leave the next request out of sync

Decision: One connection per operation
- list_files / upload_file / download_file each connect, run one
  request/response sequence and disconnect in a finally block
- disconnect() is idempotent and never raises

Upload Flow:
1. FILE_INFO "name|size"          ->
2.                                <- TRANSFER_COMPLETE (ready) | ERROR
3. FILE_DATA x ceil(size / 8187)  ->
4. TRANSFER_COMPLETE              ->
5.                                <- TRANSFER_COMPLETE | ERROR

Download Flow:
1. REQUEST_FILE "name"            ->
2.                                <- FILE_INFO "name|size" | ERROR
3.                                <- FILE_DATA ... until size bytes
4.                                <- TRANSFER_COMPLETE (optional)

Callbacks run synchronously on the caller's thread. For one operation,
on_progress is called with non-decreasing values and then exactly one of
on_complete / on_error.
"""

import os
import socket
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from .protocol import (
    Message, MessageType, read_message, write_message,
    parse_file_info, split_names,
    request_file_list_message, request_file_message, file_info_message,
    file_data_message, transfer_complete_message,
)
from ..constants import DEFAULT_HOST, DEFAULT_PORT, CONNECT_TIMEOUT
from ..exceptions import (
    TransferError, TransferConnectionError, ProtocolViolation, ApplicationError
)
from ..file.chunker import FileChunker
from ..file.storage import FileStorage

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class TransferSession:
    """Bytes moved versus expected size for one file operation."""
    file_name: str
    file_size: int
    bytes_transferred: int = 0

    @property
    def remaining(self) -> int:
        return self.file_size - self.bytes_transferred

    @property
    def is_complete(self) -> bool:
        return self.bytes_transferred >= self.file_size

    def advance(self, count: int) -> int:
        """
        Account for count more bytes, never past file_size.

        Returns:
            The number of bytes actually accepted
        """
        accepted = min(count, self.remaining)
        self.bytes_transferred += accepted
        return accepted


class TransferCallback:
    """
    Receives progress and the final outcome of one transfer.

    Subclass and override what you need; every hook is a no-op by default.
    """

    def on_progress(self, transferred: int, total: int):
        pass

    def on_complete(self):
        pass

    def on_error(self, message: str):
        pass


class FunctionCallback(TransferCallback):
    """Adapt plain callables to the TransferCallback interface."""

    def __init__(self,
                 on_progress: Optional[Callable[[int, int], None]] = None,
                 on_complete: Optional[Callable[[], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None):
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_error = on_error

    def on_progress(self, transferred: int, total: int):
        if self._on_progress:
            self._on_progress(transferred, total)

    def on_complete(self):
        if self._on_complete:
            self._on_complete()

    def on_error(self, message: str):
        if self._on_error:
            self._on_error(message)


class FileTransferClient:
    """
    Client side of the transfer protocol.

    Owns at most one TCP connection at a time. All operations are blocking;
    run them on a worker thread if the caller must stay responsive.
    """

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 connect_timeout: Optional[float] = CONNECT_TIMEOUT,
                 chunker: Optional[FileChunker] = None):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.chunker = chunker or FileChunker()

        self._sock: Optional[socket.socket] = None
        self._reader = None

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    # === Connection ===

    def connect(self):
        """
        Open a connection to the server.

        Raises:
            TransferConnectionError: already connected, or the server is
                unreachable
        """
        if self._sock is not None:
            raise TransferConnectionError("Connection already established")

        try:
            sock = socket.create_connection(
                (self.host, self.port), timeout=self.connect_timeout
            )
        except OSError as e:
            raise TransferConnectionError(
                f"Failed to connect to {self.host}:{self.port}: {e}"
            ) from e

        # Reads and writes block without a deadline once connected
        sock.settimeout(None)
        self._sock = sock
        self._reader = sock.makefile('rb')
        logger.debug(f"Connected to {self.host}:{self.port}")

    def disconnect(self):
        """Close the connection. Safe to call at any time."""
        reader, sock = self._reader, self._sock
        self._reader = None
        self._sock = None

        if reader is not None:
            try:
                reader.close()
            except OSError:
                pass

        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                sock.close()
            except OSError:
                pass
            logger.debug(f"Disconnected from {self.host}:{self.port}")

    def _send(self, message: Message):
        if self._sock is None:
            raise TransferConnectionError("No connection established")
        write_message(self._sock, message)

    def _receive(self) -> Message:
        if self._reader is None:
            raise TransferConnectionError("No connection established")
        return read_message(self._reader)

    def _run(self, operation: Callable[[], T],
             callback: Optional[TransferCallback] = None) -> T:
        """
        Run one request/response sequence on a fresh connection.

        A connection opened earlier with connect() is used instead of a new
        one. Either way it is closed afterwards, since the server serves one
        request per connection. Reports the outcome through callback and
        re-raises any failure as a TransferError.
        """
        callback = callback or TransferCallback()
        try:
            if not self.is_connected:
                self.connect()
            result = operation()
        except TransferError as e:
            callback.on_error(str(e))
            raise
        except OSError as e:
            error = TransferConnectionError(f"Connection error: {e}")
            callback.on_error(str(error))
            raise error from e
        except Exception as e:
            logger.exception(f"Unexpected error talking to {self.host}:{self.port}")
            error = TransferError(f"Unexpected error: {e}")
            callback.on_error(str(error))
            raise error from e
        finally:
            self.disconnect()

        callback.on_complete()
        return result

    @staticmethod
    def _raise_if_error(response: Message):
        if response.type == MessageType.ERROR:
            raise ApplicationError(response.text)

    # === Operations ===

    def list_files(self) -> List[str]:
        """
        Get the names of the files stored on the server.

        Returns:
            File names in server order; an empty list if there are none
        """
        def run() -> List[str]:
            self._send(request_file_list_message())
            response = self._receive()
            self._raise_if_error(response)
            if response.type != MessageType.FILE_LIST:
                raise ProtocolViolation(
                    f"Unexpected response to file list request: {response.type.name}"
                )
            return split_names(response.payload)

        names = self._run(run)
        logger.debug(f"Server has {len(names)} files")
        return names

    def upload_file(self, file_path, callback: Optional[TransferCallback] = None):
        """
        Upload a local file to the server.

        Args:
            file_path: Local file to send; stored under its base name
            callback: Progress/completion/error sink
        """
        callback = callback or TransferCallback()
        path = Path(file_path)

        if not path.is_file():
            error = ApplicationError(f"File not found: {file_path}")
            callback.on_error(str(error))
            raise error

        try:
            source = open(path, 'rb')
        except OSError as e:
            error = ApplicationError(f"Cannot read {file_path}: {e.strerror or e}")
            callback.on_error(str(error))
            raise error from e

        session = TransferSession(
            file_name=path.name, file_size=os.fstat(source.fileno()).st_size
        )

        def run():
            self._send(file_info_message(session.file_name, session.file_size))

            response = self._receive()
            self._raise_if_error(response)

            logger.info(f"Uploading {session.file_name} ({session.file_size:,} bytes)")

            for chunk in self.chunker.iter_stream(source):
                self._send(file_data_message(chunk))
                session.advance(len(chunk))
                callback.on_progress(session.bytes_transferred, session.file_size)

            self._send(transfer_complete_message())

            response = self._receive()
            self._raise_if_error(response)

            logger.info(f"Upload complete: {session.file_name}")

        with source:
            self._run(run, callback)

    def download_file(self, name: str, target_dir,
                      callback: Optional[TransferCallback] = None) -> Path:
        """
        Download a file from the server into target_dir.

        A partially written file is deleted before any error is reported.

        Returns:
            Path of the downloaded file
        """
        callback = callback or TransferCallback()
        target_dir = Path(target_dir)

        try:
            FileStorage.validate_name(name)
        except ApplicationError as e:
            callback.on_error(str(e))
            raise

        target_path = target_dir / name

        def run() -> Path:
            self._send(request_file_message(name))

            response = self._receive()
            self._raise_if_error(response)
            if response.type != MessageType.FILE_INFO:
                raise ProtocolViolation(
                    f"Expected FILE_INFO, got {response.type.name}"
                )

            received_name, file_size = parse_file_info(response.payload)
            if received_name != name:
                raise ProtocolViolation(
                    f"File name mismatch: requested={name}, received={received_name}"
                )

            session = TransferSession(file_name=name, file_size=file_size)
            logger.info(f"Downloading {name} ({file_size:,} bytes) to {target_path}")

            f = _open_target(target_path)
            try:
                with f:
                    self._receive_data(f, session, callback)
            except BaseException:
                _remove_partial(target_path)
                raise

            self._expect_trailer(name)
            logger.info(f"Download complete: {target_path}")
            return target_path

        return self._run(run, callback)

    def _receive_data(self, f, session: TransferSession, callback: TransferCallback):
        """Write FILE_DATA payloads to f until the session is complete."""
        while not session.is_complete:
            message = self._receive()

            if message.type == MessageType.FILE_DATA:
                payload = message.payload
                accepted = session.advance(len(payload))
                f.write(payload[:accepted])

                if accepted < len(payload):
                    logger.warning(
                        f"Received chunk larger than expected for {session.file_name}, "
                        f"truncated {len(payload) - accepted} bytes"
                    )

                callback.on_progress(session.bytes_transferred, session.file_size)

            elif message.type == MessageType.ERROR:
                raise ApplicationError(message.text)

            else:
                raise ProtocolViolation(
                    f"Unexpected message during download: {message.type.name}"
                )

    def _expect_trailer(self, name: str):
        """Read the TRANSFER_COMPLETE that follows the last chunk."""
        try:
            message = self._receive()
        except (TransferError, OSError) as e:
            logger.warning(f"No transfer complete message for {name}: {e}")
            return

        if message.type != MessageType.TRANSFER_COMPLETE:
            logger.warning(
                f"Expected TRANSFER_COMPLETE after {name}, got {message.type.name}"
            )


def _open_target(path: Path):
    """Create the target directory and open the destination for writing."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return open(path, 'wb')
    except OSError as e:
        raise ApplicationError(f"Cannot write {path}: {e.strerror or e}") from e


def _remove_partial(path: Path):
    try:
        os.remove(path)
        logger.debug(f"Removed partial download {path}")
    except FileNotFoundError:
        pass
