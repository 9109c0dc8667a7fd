"""
File Chunker

Design Decision: Chunk Size
===========================

The chunk size is not a tuning knob here: one FILE_DATA message may not
exceed MAX_PACKET_SIZE (8192) bytes on the wire, and the header takes 5,
so a chunk carries at most 8187 bytes of file data.

Chunking Strategy: Fixed-Size
- Every chunk except the last is exactly chunk_size bytes
- An empty file produces no chunks at all
- Chunk count is ceil(file_size / chunk_size)
"""

from typing import BinaryIO, Iterator

from ..constants import MAX_CHUNK_SIZE


class FileChunker:
    """
    Splits files into fixed-size chunks for transfer.

    Used by the client when uploading and by the server when serving a
    download, so both directions chunk identically.
    """

    def __init__(self, chunk_size: int = MAX_CHUNK_SIZE):
        if chunk_size <= 0 or chunk_size > MAX_CHUNK_SIZE:
            raise ValueError(
                f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}, got {chunk_size}"
            )
        self.chunk_size = chunk_size

    def get_chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a file of given size."""
        return (file_size + self.chunk_size - 1) // self.chunk_size

    def iter_stream(self, stream: BinaryIO) -> Iterator[bytes]:
        """Yield chunks from an open binary stream until EOF."""
        while True:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            yield chunk

