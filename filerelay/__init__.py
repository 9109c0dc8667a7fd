"""
filerelay - single-server file transfer over a framed TCP protocol.
"""

__version__ = '0.1.0'
