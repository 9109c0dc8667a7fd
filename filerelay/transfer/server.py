"""
File Transfer Server

Design Decision: Concurrency Model
==================================

Options Considered:
1. asyncio streams
   - One event loop, cheap connections
   - Blocking file IO stalls every connection unless offloaded

2. ThreadPoolExecutor
   - Blocking code in handlers
   - Worker threads live until shutdown, even after a burst has passed

3. Accept thread + one thread per connection
   - Blocking code in handlers
   - A thread exits as soon as its connection is closed
   - Concurrency can be capped with a semaphore

Decision: Accept thread + thread per connection
- A dedicated thread accepts and starts a handler thread per connection
- With max_workers set, the accept thread waits for a free slot first;
  the accepted connection waits with its request unread
- Each connection serves exactly one request, then closes
- stop() closes the listening socket to unblock accept()

Request Dispatch:
    REQUEST_FILE_LIST  -> FILE_LIST
    REQUEST_FILE       -> FILE_INFO, FILE_DATA..., TRANSFER_COMPLETE | ERROR
    FILE_INFO          -> TRANSFER_COMPLETE (ready), <- FILE_DATA...,
                          <- TRANSFER_COMPLETE, TRANSFER_COMPLETE | ERROR
    TRANSFER_COMPLETE  -> (nothing)
    anything else      -> ERROR
"""

import socket
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Optional, Tuple

from .protocol import (
    Message, MessageType, read_message, write_message, parse_file_info,
    file_list_message, file_info_message, file_data_message,
    transfer_complete_message, error_message,
)
from ..constants import DEFAULT_BIND_HOST, ACCEPT_GRACE_PERIOD, UPLOAD_DIR
from ..exceptions import (
    TransferError, TransferConnectionError, TruncatedStream,
    ProtocolViolation, ApplicationError
)
from ..file.chunker import FileChunker
from ..file.storage import FileStorage

logger = logging.getLogger(__name__)

# accept() wakes up this often to notice stop()
ACCEPT_POLL_INTERVAL = 0.5


class ServerState(Enum):
    STOPPED = 'stopped'
    RUNNING = 'running'


class Connection:
    """One accepted client connection."""

    def __init__(self, sock: socket.socket, address: Tuple[str, int]):
        self.sock = sock
        self.address = address
        self.reader: BinaryIO = sock.makefile('rb')

    def send(self, message: Message):
        write_message(self.sock, message)

    def receive(self) -> Message:
        return read_message(self.reader)

    def close(self):
        try:
            self.reader.close()
        except OSError:
            pass
        try:
            self.sock.close()
        except OSError:
            pass


# Type for request handlers
RequestHandler = Callable[[Message, Connection], None]


class FileTransferServer:
    """
    TCP server for list, upload and download requests.

    Serves files from a flat storage directory. start/stop/is_running are
    the whole lifecycle surface.
    """

    def __init__(self, storage_dir: Path = Path(UPLOAD_DIR),
                 host: str = DEFAULT_BIND_HOST,
                 max_workers: Optional[int] = None,
                 accept_grace_period: float = ACCEPT_GRACE_PERIOD,
                 chunker: Optional[FileChunker] = None):
        if max_workers is not None and max_workers <= 0:
            raise ValueError("max_workers must be positive or None")

        self.storage = FileStorage(storage_dir)
        self.host = host
        self.max_workers = max_workers
        self.accept_grace_period = accept_grace_period
        self.chunker = chunker or FileChunker()

        self._state = ServerState.STOPPED
        self._state_lock = threading.Lock()
        self._server_sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._slots: Optional[threading.BoundedSemaphore] = None
        self._address: Optional[Tuple[str, int]] = None

        self._handlers: Dict[MessageType, RequestHandler] = {}
        self._setup_handlers()

        # Statistics
        self._stats_lock = threading.Lock()
        self.files_served = 0
        self.files_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.active_connections = 0

    def _setup_handlers(self):
        """Register request handlers."""
        self.set_handler(MessageType.REQUEST_FILE_LIST, self._handle_file_list_request)
        self.set_handler(MessageType.REQUEST_FILE, self._handle_file_request)
        self.set_handler(MessageType.FILE_INFO, self._handle_file_upload)
        self.set_handler(MessageType.TRANSFER_COMPLETE, self._handle_transfer_complete)

    def set_handler(self, msg_type: MessageType, handler: RequestHandler):
        """Set a request handler."""
        self._handlers[msg_type] = handler

    # === Lifecycle ===

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ServerState.RUNNING

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port) while running."""
        return self._address

    @property
    def port(self) -> Optional[int]:
        return self._address[1] if self._address else None

    def start(self, port: int):
        """
        Start accepting connections.

        Port 0 binds an ephemeral port; read it back from `port`.

        Raises:
            TransferConnectionError: the socket could not be bound
        """
        with self._state_lock:
            if self._state is ServerState.RUNNING:
                return

            self.storage.ensure()

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self.host, port))
                sock.listen()
                sock.settimeout(ACCEPT_POLL_INTERVAL)
            except OSError as e:
                sock.close()
                raise TransferConnectionError(
                    f"Failed to bind {self.host}:{port}: {e}"
                ) from e

            self._server_sock = sock
            self._address = sock.getsockname()[:2]
            if self.max_workers is not None:
                self._slots = threading.BoundedSemaphore(self.max_workers)
            else:
                self._slots = None
            self._state = ServerState.RUNNING

            self._accept_thread = threading.Thread(
                target=self._accept_loop,
                args=(sock, self._slots),
                name='filerelay-accept',
                daemon=True,
            )
            self._accept_thread.start()

        logger.info(f"Transfer server listening on {self._address}, storage={self.storage.root}")

    def stop(self):
        """Stop accepting connections. In-flight transfers are not cancelled."""
        with self._state_lock:
            if self._state is ServerState.STOPPED:
                return
            self._state = ServerState.STOPPED

            sock, self._server_sock = self._server_sock, None
            thread, self._accept_thread = self._accept_thread, None
            self._address = None

        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                sock.close()
            except OSError as e:
                logger.error(f"Error closing listening socket: {e}")

        if thread is not None and thread is not threading.current_thread():
            thread.join(self.accept_grace_period)
            if thread.is_alive():
                logger.warning("Accept loop did not exit within the grace period")

        logger.info(
            f"Transfer server stopped. Served {self.files_served} files "
            f"({self.bytes_sent:,} bytes), received {self.files_received} files "
            f"({self.bytes_received:,} bytes)"
        )

    def _accept_loop(self, server_sock: socket.socket,
                     slots: Optional[threading.BoundedSemaphore]):
        while self.is_running:
            try:
                client_sock, client_addr = server_sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.is_running:
                    break
                logger.error(f"Error accepting connection: {e}")
                continue

            client_sock.settimeout(None)
            logger.debug(f"New transfer connection from {client_addr}")

            if slots is not None and not self._wait_for_slot(slots):
                client_sock.close()
                break

            with self._stats_lock:
                self.active_connections += 1

            worker = threading.Thread(
                target=self._run_worker,
                args=(client_sock, client_addr, slots),
                name=f'filerelay-worker-{client_addr[0]}:{client_addr[1]}',
                daemon=True,
            )
            worker.start()

        logger.debug("Accept loop stopped")

    def _wait_for_slot(self, slots: threading.BoundedSemaphore) -> bool:
        """Block until a worker slot frees up. False if the server stopped."""
        while self.is_running:
            if slots.acquire(timeout=ACCEPT_POLL_INTERVAL):
                return True
        return False

    def _run_worker(self, sock: socket.socket, address: Tuple[str, int],
                    slots: Optional[threading.BoundedSemaphore]):
        try:
            self._handle_connection(sock, address)
        finally:
            with self._stats_lock:
                self.active_connections -= 1
            if slots is not None:
                slots.release()

    # === Per-connection processing ===

    def _handle_connection(self, sock: socket.socket, address: Tuple[str, int]):
        """Serve exactly one request, then close the connection."""
        conn = Connection(sock, address)
        try:
            try:
                request = conn.receive()
            except ProtocolViolation as e:
                logger.warning(f"Bad request from {address}: {e}")
                self._send_error(conn, str(e))
                return

            handler = self._handlers.get(request.type)
            if handler is None:
                logger.warning(f"No handler for {request.type.name} from {address}")
                self._send_error(conn, f"Unknown request type: {request.type.name}")
                return

            try:
                handler(request, conn)
            except (ApplicationError, ProtocolViolation) as e:
                logger.warning(f"Request from {address} failed: {e}")
                self._send_error(conn, str(e))

        except TruncatedStream as e:
            logger.warning(f"Connection from {address} closed early: {e}")
        except TransferError as e:
            logger.error(f"Error handling connection from {address}: {e}")
        except OSError as e:
            logger.error(f"Socket error on connection from {address}: {e}")
        except Exception:
            logger.exception(f"Unexpected error handling connection from {address}")
        finally:
            conn.close()
            logger.debug(f"Connection closed: {address}")

    def _send_error(self, conn: Connection, text: str):
        """Report a failure to the peer if the socket is still writable."""
        try:
            conn.send(error_message(text))
        except OSError as e:
            logger.debug(f"Could not send error to {conn.address}: {e}")

    def _count(self, files_served=0, files_received=0, bytes_sent=0, bytes_received=0):
        with self._stats_lock:
            self.files_served += files_served
            self.files_received += files_received
            self.bytes_sent += bytes_sent
            self.bytes_received += bytes_received

    # === Request handlers ===

    def _handle_file_list_request(self, message: Message, conn: Connection):
        """Handle a file list request."""
        names = self.storage.list_files()
        conn.send(file_list_message(names))
        logger.info(f"Sent file list ({len(names)} files) to {conn.address}")

    def _handle_file_request(self, message: Message, conn: Connection):
        """Handle a download request."""
        name = message.text

        if not self.storage.exists(name):
            raise ApplicationError(f"File not found: {name}")

        size = self.storage.size(name)
        conn.send(file_info_message(name, size))
        logger.debug(
            f"Serving {name}: {size:,} bytes in {self.chunker.get_chunk_count(size)} chunks"
        )

        bytes_sent = 0
        with self.storage.open(name) as f:
            for chunk in self.chunker.iter_stream(f):
                conn.send(file_data_message(chunk))
                bytes_sent += len(chunk)

        conn.send(transfer_complete_message())

        self._count(files_served=1, bytes_sent=bytes_sent)
        logger.info(f"Served {name} ({bytes_sent:,} bytes) to {conn.address}")

    def _handle_file_upload(self, message: Message, conn: Connection):
        """
        Handle an upload started by FILE_INFO.

        The ready signal reuses TRANSFER_COMPLETE. A partial file is removed
        if the upload does not reach the announced size.
        """
        name, size = parse_file_info(message.payload)

        if self.storage.exists(name):
            raise ApplicationError(f"File already exists: {name}")

        f = self.storage.create(name)
        bytes_received = 0
        try:
            with f:
                conn.send(transfer_complete_message())

                while bytes_received < size:
                    data = conn.receive()

                    if data.type == MessageType.FILE_DATA:
                        accepted = min(len(data.payload), size - bytes_received)
                        f.write(data.payload[:accepted])
                        bytes_received += accepted

                        if accepted < len(data.payload):
                            logger.warning(
                                f"Received chunk larger than expected for {name}, truncated"
                            )

                    elif data.type == MessageType.ERROR:
                        raise ApplicationError(f"Client reported error: {data.text}")

                    else:
                        raise ProtocolViolation(
                            f"Unexpected message during upload: {data.type.name}"
                        )
        except BaseException:
            self.storage.discard(name)
            raise

        self._count(files_received=1, bytes_received=bytes_received)
        logger.info(f"Received {name} ({bytes_received:,} bytes) from {conn.address}")

        self._acknowledge_upload(name, conn)

    def _acknowledge_upload(self, name: str, conn: Connection):
        """Read the client's TRANSFER_COMPLETE and confirm the upload."""
        try:
            trailer = conn.receive()
        except TransferError as e:
            logger.warning(f"No transfer complete message after {name}: {e}")
            return

        if trailer.type != MessageType.TRANSFER_COMPLETE:
            logger.warning(
                f"Expected TRANSFER_COMPLETE after {name}, got {trailer.type.name}"
            )

        conn.send(transfer_complete_message())

    def _handle_transfer_complete(self, message: Message, conn: Connection):
        """A bare TRANSFER_COMPLETE needs no reply."""
        logger.debug(f"Client {conn.address} closed the session")

    def get_stats(self) -> dict:
        """Get server statistics."""
        with self._stats_lock:
            return {
                'running': self.is_running,
                'address': self._address,
                'files_served': self.files_served,
                'files_received': self.files_received,
                'bytes_sent': self.bytes_sent,
                'bytes_received': self.bytes_received,
                'active_connections': self.active_connections,
            }
