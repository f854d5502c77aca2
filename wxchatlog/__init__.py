"""Decrypt WeChat desktop databases, read client memory on macOS and query chat data."""

__version__ = "0.1.0"