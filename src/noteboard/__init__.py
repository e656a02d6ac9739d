"""NoteBoard: note synchronization client for a shared bulletin board."""

__version__ = "0.1.0"
