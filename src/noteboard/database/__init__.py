"""
Storage package for NoteBoard.

Provides the Redis-backed note store and its change feed.
"""

from .redis_manager import (
    INSERTS_CHANNEL,
    RedisNoteStore,
    StoreSubscription,
    UnknownColumnError,
    note_channel,
)

__all__ = [
    'INSERTS_CHANNEL',
    'RedisNoteStore',
    'StoreSubscription',
    'UnknownColumnError',
    'note_channel',
]
