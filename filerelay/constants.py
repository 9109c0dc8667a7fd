"""
Shared constants for the file transfer system.

This module contains the wire constants and defaults used by both the
client and the server.
"""

# Wire format
HEADER_SIZE = 5  # 1 byte type + 4 bytes length
MAX_PACKET_SIZE = 8192
MAX_CHUNK_SIZE = MAX_PACKET_SIZE - HEADER_SIZE  # 8187 bytes of file data
MAX_PAYLOAD_LENGTH = 2 ** 31 - 1

# Payload delimiter for FILE_LIST and FILE_INFO
NAME_SEPARATOR = '|'

# Network Configuration
DEFAULT_HOST = '127.0.0.1'
DEFAULT_BIND_HOST = '0.0.0.0'
DEFAULT_PORT = 9000

# Timeouts (seconds)
CONNECT_TIMEOUT = 10.0
ACCEPT_GRACE_PERIOD = 1.0  # how long stop() waits for the accept thread

# File Transfer
UPLOAD_DIR = 'uploads'
DOWNLOAD_DIR = 'downloads'
