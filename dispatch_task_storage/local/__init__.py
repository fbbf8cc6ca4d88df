"""
Local storage module.

Durable on-device key-value storage for users, tasks and sync metadata.
"""

from .store import FileLocalStore, LocalStore, MemoryLocalStore, StorageKeys

__all__ = [
    "LocalStore",
    "FileLocalStore",
    "MemoryLocalStore",
    "StorageKeys",
]
