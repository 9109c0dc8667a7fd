"""
File Module - Chunking and Storage

This module handles local file operations for the transfer system.
"""

from .chunker import FileChunker
from .storage import FileStorage, StorageStats

__all__ = [
    'FileChunker',
    'FileStorage',
    'StorageStats',
]
