"""Shared fixtures for the transfer tests."""

import socket
import threading
from typing import Callable, List, Optional

from filerelay.transfer.client import TransferCallback
from filerelay.transfer.protocol import Message, read_message, write_message


class RecordingCallback(TransferCallback):
    """Remembers every callback invocation in order."""

    def __init__(self):
        self.events: List[tuple] = []

    def on_progress(self, transferred: int, total: int):
        self.events.append(('progress', transferred, total))

    def on_complete(self):
        self.events.append(('complete',))

    def on_error(self, message: str):
        self.events.append(('error', message))

    @property
    def progress(self) -> List[tuple]:
        return [(e[1], e[2]) for e in self.events if e[0] == 'progress']

    @property
    def terminals(self) -> List[tuple]:
        return [e for e in self.events if e[0] in ('complete', 'error')]


class ScriptedServer:
    """
    Accepts a single connection and runs script(peer) on it.

    Used to drive the client against exact message sequences, including
    ones a well-behaved server would never send.
    """

    def __init__(self, script: Callable[['ScriptedServer'], None]):
        self.script = script
        self.received: List[Message] = []
        self.error: Optional[BaseException] = None

        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(('127.0.0.1', 0))
        self._listener.listen(1)
        self.port = self._listener.getsockname()[1]

        self._conn: Optional[socket.socket] = None
        self._reader = None
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        try:
            self._listener.settimeout(5)
            conn, _ = self._listener.accept()
            conn.settimeout(5)
            self._conn = conn
            with conn, conn.makefile('rb') as reader:
                self._reader = reader
                self.script(self)
        except BaseException as e:
            self.error = e
        finally:
            self._listener.close()

    def receive(self) -> Message:
        message = read_message(self._reader)
        self.received.append(message)
        return message

    def send(self, message: Message):
        write_message(self._conn, message)

    def send_raw(self, data: bytes):
        self._conn.sendall(data)

    def join(self, timeout: float = 5.0):
        self._thread.join(timeout)
