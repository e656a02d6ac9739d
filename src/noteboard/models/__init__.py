"""Data models shared by the store adapter and the sync services."""

from .note import (
    ChangeEvent,
    ChangeType,
    Note,
    NoteDraft,
    NoteKind,
    MUTABLE_FIELDS,
    SAFE_UPDATE_FIELDS,
)

__all__ = [
    "ChangeEvent",
    "ChangeType",
    "Note",
    "NoteDraft",
    "NoteKind",
    "MUTABLE_FIELDS",
    "SAFE_UPDATE_FIELDS",
]
