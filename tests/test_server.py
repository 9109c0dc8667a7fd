import socket
import tempfile
import threading
import time
import unittest
from pathlib import Path

from filerelay.constants import MAX_CHUNK_SIZE
from filerelay.exceptions import TransferConnectionError, TruncatedStream
from filerelay.transfer.protocol import (
    Message, MessageType, decode, error_message, file_data_message,
    file_info_message, file_list_message, read_message, request_file_message,
    request_file_list_message, transfer_complete_message, write_message,
)
from filerelay.transfer.server import FileTransferServer, ServerState


class RawPeer:
    """A bare socket speaking the wire protocol, for poking the server."""

    def __init__(self, port: int):
        self.sock = socket.create_connection(('127.0.0.1', port), timeout=5)
        self.reader = self.sock.makefile('rb')

    def send(self, message: Message):
        write_message(self.sock, message)

    def receive(self) -> Message:
        return read_message(self.reader)

    def receive_all(self):
        """Read messages until the server closes the connection."""
        messages = []
        while True:
            try:
                messages.append(self.receive())
            except TruncatedStream:
                return messages

    def close(self):
        self.reader.close()
        self.sock.close()


def worker_threads():
    return [t for t in threading.enumerate() if t.name.startswith('filerelay-worker')]


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class ServerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage_dir = Path(self.tmp.name) / 'uploads'
        self.server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        self.server.start(0)

    def tearDown(self):
        self.server.stop()
        self.tmp.cleanup()

    def peer(self) -> RawPeer:
        peer = RawPeer(self.server.port)
        self.addCleanup(peer.close)
        return peer


class LifecycleTests(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage_dir = Path(self.tmp.name) / 'uploads'

    def tearDown(self):
        self.tmp.cleanup()

    def test_start_stop(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        self.assertEqual(server.state, ServerState.STOPPED)
        self.assertFalse(self.storage_dir.exists())

        server.start(0)
        self.assertTrue(server.is_running)
        self.assertTrue(self.storage_dir.is_dir())
        self.assertGreater(server.port, 0)

        server.stop()
        self.assertFalse(server.is_running)
        self.assertIsNone(server.port)

    def test_start_and_stop_are_idempotent(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        server.stop()
        server.start(0)
        port = server.port
        server.start(0)
        self.assertEqual(server.port, port)
        server.stop()
        server.stop()
        self.assertEqual(server.state, ServerState.STOPPED)

    def test_bind_failure_leaves_server_stopped(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.addCleanup(blocker.close)
        blocker.bind(('127.0.0.1', 0))
        blocker.listen()

        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        with self.assertRaises(TransferConnectionError):
            server.start(blocker.getsockname()[1])
        self.assertFalse(server.is_running)

    def test_stop_refuses_new_connections(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        server.start(0)
        port = server.port
        server.stop()
        with self.assertRaises(OSError):
            socket.create_connection(('127.0.0.1', port), timeout=2).close()

    def test_restart_after_stop(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        server.start(0)
        server.stop()
        server.start(0)
        try:
            peer = RawPeer(server.port)
            peer.send(request_file_list_message())
            self.assertEqual(peer.receive(), file_list_message([]))
            peer.close()
        finally:
            server.stop()

    def test_invalid_max_workers(self):
        with self.assertRaises(ValueError):
            FileTransferServer(self.storage_dir, max_workers=0)


class DispatchTests(ServerTestCase):

    def test_list_empty(self):
        peer = self.peer()
        peer.send(request_file_list_message())
        self.assertEqual(peer.receive_all(), [file_list_message([])])

    def test_list_skips_directories(self):
        (self.storage_dir / 'b.txt').write_bytes(b'b')
        (self.storage_dir / 'a.txt').write_bytes(b'a')
        (self.storage_dir / 'nested').mkdir()

        peer = self.peer()
        peer.send(request_file_list_message())
        self.assertEqual(peer.receive().payload, b'a.txt|b.txt')

    def test_connection_closed_after_response(self):
        peer = self.peer()
        peer.send(request_file_list_message())
        self.assertEqual(peer.receive().type, MessageType.FILE_LIST)
        with self.assertRaises(TruncatedStream):
            peer.receive()

    def test_download_sequence(self):
        data = bytes(range(256)) * 100  # 25600 bytes -> 4 chunks
        (self.storage_dir / 'data.bin').write_bytes(data)

        peer = self.peer()
        peer.send(request_file_message('data.bin'))
        messages = peer.receive_all()

        self.assertEqual(messages[0], file_info_message('data.bin', len(data)))
        chunks = messages[1:-1]
        self.assertEqual(len(chunks), 4)
        self.assertTrue(all(m.type == MessageType.FILE_DATA for m in chunks))
        self.assertTrue(all(len(m.payload) <= MAX_CHUNK_SIZE for m in chunks))
        self.assertEqual(b''.join(m.payload for m in chunks), data)
        self.assertEqual(messages[-1], transfer_complete_message())

    def test_download_chunk_count_at_boundary(self):
        for size, expected in ((MAX_CHUNK_SIZE, 1), (MAX_CHUNK_SIZE + 1, 2)):
            with self.subTest(size=size):
                name = f'boundary_{size}.bin'
                (self.storage_dir / name).write_bytes(b'\x5a' * size)

                peer = self.peer()
                peer.send(request_file_message(name))
                messages = peer.receive_all()

                chunks = [m for m in messages if m.type == MessageType.FILE_DATA]
                self.assertEqual(len(chunks), expected)
                self.assertEqual(sum(len(m.payload) for m in chunks), size)
                self.assertEqual(messages[-1], transfer_complete_message())

    def test_download_empty_file(self):
        (self.storage_dir / 'empty.bin').write_bytes(b'')

        peer = self.peer()
        peer.send(request_file_message('empty.bin'))
        self.assertEqual(peer.receive_all(), [
            file_info_message('empty.bin', 0),
            transfer_complete_message(),
        ])

    def test_download_missing_file(self):
        peer = self.peer()
        peer.send(request_file_message('missing.txt'))
        messages = peer.receive_all()
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].type, MessageType.ERROR)
        self.assertIn('missing.txt', messages[0].text)

    def test_download_path_traversal_rejected(self):
        (Path(self.tmp.name) / 'secret.txt').write_bytes(b'secret')
        peer = self.peer()
        peer.send(request_file_message('../secret.txt'))
        messages = peer.receive_all()
        self.assertEqual([m.type for m in messages], [MessageType.ERROR])

    def test_bare_transfer_complete_gets_no_reply(self):
        peer = self.peer()
        peer.send(transfer_complete_message())
        self.assertEqual(peer.receive_all(), [])

    def test_unknown_request(self):
        for request in (file_list_message(['x']), file_data_message(b'x'), error_message('x')):
            with self.subTest(type=request.type.name):
                peer = self.peer()
                peer.send(request)
                messages = peer.receive_all()
                self.assertEqual(len(messages), 1)
                self.assertEqual(messages[0].type, MessageType.ERROR)
                self.assertIn('Unknown request', messages[0].text)

    def test_undecodable_type_tag(self):
        peer = self.peer()
        peer.sock.sendall(b'\x2a\x00\x00\x00\x00')
        messages = peer.receive_all()
        self.assertEqual([m.type for m in messages], [MessageType.ERROR])

    def test_server_survives_client_disconnect(self):
        peer = self.peer()
        peer.sock.sendall(b'\x01\x00')
        peer.close()

        second = self.peer()
        second.send(request_file_list_message())
        self.assertEqual(second.receive().type, MessageType.FILE_LIST)


class UploadHandlingTests(ServerTestCase):

    def test_upload_sequence(self):
        peer = self.peer()
        peer.send(file_info_message('a.txt', 5))
        self.assertEqual(peer.receive(), transfer_complete_message())

        peer.send(file_data_message(b'hel'))
        peer.send(file_data_message(b'lo'))
        peer.send(transfer_complete_message())

        self.assertEqual(peer.receive_all(), [transfer_complete_message()])
        self.assertEqual((self.storage_dir / 'a.txt').read_bytes(), b'hello')
        self.assertEqual(self.server.get_stats()['files_received'], 1)

    def test_empty_upload(self):
        peer = self.peer()
        peer.send(file_info_message('empty.bin', 0))
        self.assertEqual(peer.receive(), transfer_complete_message())
        peer.send(transfer_complete_message())

        self.assertEqual(peer.receive_all(), [transfer_complete_message()])
        self.assertEqual((self.storage_dir / 'empty.bin').read_bytes(), b'')

    def test_oversized_chunk_truncated(self):
        peer = self.peer()
        peer.send(file_info_message('a.txt', 5))
        peer.receive()
        with self.assertLogs('filerelay.transfer.server', level='WARNING'):
            peer.send(file_data_message(b'hello world'))
            peer.send(transfer_complete_message())
            peer.receive_all()

        self.assertEqual((self.storage_dir / 'a.txt').read_bytes(), b'hello')

    def test_malformed_file_info(self):
        for payload in (b'no-size', b'a.txt|big', b'a|b|1'):
            with self.subTest(payload=payload):
                peer = self.peer()
                peer.send(Message(MessageType.FILE_INFO, payload))
                messages = peer.receive_all()
                self.assertEqual([m.type for m in messages], [MessageType.ERROR])
        self.assertEqual(list(self.storage_dir.iterdir()), [])

    def test_existing_file_not_overwritten(self):
        (self.storage_dir / 'a.txt').write_bytes(b'original')

        peer = self.peer()
        peer.send(file_info_message('a.txt', 3))
        messages = peer.receive_all()

        self.assertEqual([m.type for m in messages], [MessageType.ERROR])
        self.assertIn('already exists', messages[0].text)
        self.assertEqual((self.storage_dir / 'a.txt').read_bytes(), b'original')

    def test_error_mid_upload_removes_partial_file(self):
        peer = self.peer()
        peer.send(file_info_message('a.txt', 10))
        peer.receive()
        peer.send(file_data_message(b'hello'))
        peer.send(error_message('client gave up'))
        peer.receive_all()

        self.assertTrue(wait_for(lambda: not (self.storage_dir / 'a.txt').exists()))

    def test_unexpected_type_mid_upload_removes_partial_file(self):
        peer = self.peer()
        peer.send(file_info_message('a.txt', 10))
        peer.receive()
        peer.send(file_data_message(b'hello'))
        peer.send(request_file_list_message())
        peer.receive_all()

        self.assertTrue(wait_for(lambda: not (self.storage_dir / 'a.txt').exists()))

    def test_disconnect_mid_upload_removes_partial_file(self):
        peer = self.peer()
        peer.send(file_info_message('a.txt', 10))
        peer.receive()
        peer.send(file_data_message(b'hello'))
        peer.close()

        self.assertTrue(wait_for(lambda: not (self.storage_dir / 'a.txt').exists()))
        self.assertEqual(self.server.get_stats()['files_received'], 0)


class WorkerPoolTests(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.storage_dir = Path(self.tmp.name) / 'uploads'

    def tearDown(self):
        self.tmp.cleanup()

    def test_worker_threads_exit_after_burst(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        server.start(0)
        try:
            peers = [RawPeer(server.port) for _ in range(20)]
            self.assertTrue(wait_for(lambda: server.get_stats()['active_connections'] == 20))
            self.assertGreaterEqual(len(worker_threads()), 20)

            for peer in peers:
                peer.send(request_file_list_message())
                self.assertEqual(peer.receive().type, MessageType.FILE_LIST)
                peer.close()

            self.assertTrue(wait_for(lambda: not worker_threads()))
            self.assertEqual(server.get_stats()['active_connections'], 0)
        finally:
            server.stop()

    def test_stalled_peer_does_not_block_others(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1')
        server.start(0)
        try:
            stalled = RawPeer(server.port)
            stalled.send(file_info_message('slow.bin', 100))
            stalled.receive()

            peer = RawPeer(server.port)
            peer.send(request_file_list_message())
            self.assertEqual(peer.receive().type, MessageType.FILE_LIST)
            peer.close()
            stalled.close()
        finally:
            server.stop()

    def test_bounded_pool_queues_connections(self):
        server = FileTransferServer(self.storage_dir, host='127.0.0.1', max_workers=1)
        server.start(0)
        try:
            busy = RawPeer(server.port)
            busy.send(file_info_message('slow.bin', 100))
            busy.receive()

            queued = RawPeer(server.port)
            queued.send(request_file_list_message())
            queued.sock.settimeout(0.5)
            with self.assertRaises(socket.timeout):
                queued.sock.recv(1)
            queued.sock.settimeout(5)

            busy.close()
            self.assertEqual(decode(queued.reader).type, MessageType.FILE_LIST)
            queued.close()
        finally:
            server.stop()


if __name__ == '__main__':
    unittest.main()
