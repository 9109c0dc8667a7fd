"""
File Storage

Design Decision: Storage Layout
===============================

Options Considered:
1. Content-addressed chunks with manifests
   - Deduplication, integrity checks
   - Needs a metadata store to map names to content

2. Flat directory keyed by file name
   - What you see on disk is what the server lists
   - Names are unique by construction

Decision: Flat directory
- One regular file per uploaded name, no subdirectories
- No metadata beyond the file size
- Files are created by uploads and never overwritten

Storage Layout:
```
uploads/
├── a.txt
├── report.pdf
└── photo.jpg
```
"""

import logging
from pathlib import Path
from typing import BinaryIO, List
from dataclasses import dataclass

from ..constants import NAME_SEPARATOR
from ..exceptions import ApplicationError

logger = logging.getLogger(__name__)


@dataclass
class StorageStats:
    """Statistics about stored data."""
    total_files: int
    total_bytes: int


class FileStorage:
    """
    Flat storage directory for transferred files.

    Provides:
    - Listing of regular files
    - Name validation (no path components)
    - Exclusive creation for uploads
    - Cleanup of partial files
    """

    def __init__(self, root: Path):
        """
        Initialize file storage.

        Args:
            root: Storage directory, created lazily by ensure()
        """
        self.root = Path(root)

    def ensure(self):
        """Create the storage directory if it doesn't exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def validate_name(name: str) -> str:
        """
        Check that a name refers to a file directly under the root.

        Raises:
            ApplicationError: empty name, path separators, '.' or '..'
        """
        if not name or name in ('.', '..'):
            raise ApplicationError(f"Invalid file name: {name!r}")
        if '/' in name or '\\' in name or '\x00' in name or NAME_SEPARATOR in name:
            raise ApplicationError(f"Invalid file name: {name!r}")
        return name

    def path_for(self, name: str) -> Path:
        """Get filesystem path for a stored file."""
        return self.root / self.validate_name(name)

    def list_files(self) -> List[str]:
        """Names of regular files directly under the root, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_file())

    def exists(self, name: str) -> bool:
        """Check if a file exists in storage."""
        return self.path_for(name).is_file()

    def size(self, name: str) -> int:
        """Size in bytes of a stored file."""
        return self.path_for(name).stat().st_size

    def create(self, name: str) -> BinaryIO:
        """
        Open a new file for writing.

        Uses exclusive creation, so an existing file is never truncated.

        Raises:
            ApplicationError: the file already exists
        """
        path = self.path_for(name)
        try:
            return open(path, 'xb')
        except FileExistsError:
            raise ApplicationError(f"File already exists: {name}") from None

    def open(self, name: str) -> BinaryIO:
        """Open a stored file for reading."""
        path = self.path_for(name)
        if not path.is_file():
            raise ApplicationError(f"File not found: {name}")
        return open(path, 'rb')

    def discard(self, name: str):
        """Delete a partially written file. Missing files are ignored."""
        path = self.path_for(name)
        try:
            path.unlink()
            logger.debug(f"Removed partial file {path}")
        except FileNotFoundError:
            pass

    def get_stats(self) -> StorageStats:
        """Get storage statistics."""
        names = self.list_files()
        total_bytes = sum(self.size(name) for name in names)
        return StorageStats(total_files=len(names), total_bytes=total_bytes)
