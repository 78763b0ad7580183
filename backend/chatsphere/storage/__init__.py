"""Durable message storage."""

from .service import MessageStore, StorageError

__all__ = [
    "MessageStore",
    "StorageError",
]
