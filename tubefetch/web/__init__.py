"""
Transport Layer.

This package contains the progress channel and the aiohttp application that
exposes sessions over HTTP and WebSocket.
"""

from .channel import ProgressChannel

__all__ = ["ProgressChannel"]
