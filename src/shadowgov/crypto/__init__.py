"""Cryptographic hashing used for section draws and audit chaining."""

from .hashing import Hash, SHA256Hasher

__all__ = ["Hash", "SHA256Hasher"]
