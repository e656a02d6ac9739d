import json
import logging
from typing import Callable, FrozenSet, List, Optional

from ..utils.local_storage import LocalStorage

logger = logging.getLogger(__name__)

STORAGE_KEY = "myNotes"


class OwnershipRegistry:
    """Ids of the notes this profile created and may therefore edit.

    Ownership is a local convention, not an access control: the set lives in
    the profile's local storage and is never synced anywhere.
    """

    def __init__(self, storage: LocalStorage, key: str = STORAGE_KEY):
        self.storage = storage
        self.key = key
        self._ids: List[str] = []
        self._listeners: List[Callable[[FrozenSet[str]], None]] = []

    @property
    def ids(self) -> FrozenSet[str]:
        return frozenset(self._ids)

    def on_change(self, callback: Callable[[FrozenSet[str]], None]) -> None:
        self._listeners.append(callback)

    def load(self) -> FrozenSet[str]:
        raw: Optional[str] = self.storage.get_item(self.key)
        if raw is None:
            self._ids = []
            return self.ids

        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, list):
                raise ValueError(f"expected a JSON array, got {type(parsed).__name__}")
            self._ids = list(dict.fromkeys(str(note_id) for note_id in parsed))
        except ValueError as e:
            logger.error(f"Corrupt ownership entry, starting empty: {e}")
            self._ids = []
            self.storage.remove_item(self.key)

        logger.info(f"Loaded {len(self._ids)} owned note(s)")
        return self.ids

    def contains(self, note_id: str) -> bool:
        return note_id in self._ids

    def add(self, note_id: str) -> None:
        if note_id in self._ids:
            return
        self._ids.append(note_id)
        self._changed()

    def remove(self, note_id: str) -> None:
        if note_id not in self._ids:
            return
        self._ids.remove(note_id)
        self._changed()

    def save(self) -> bool:
        # An empty set is never written, so the last removal stays on disk.
        if not self._ids:
            return False
        try:
            self.storage.set_item(self.key, json.dumps(self._ids))
            return True
        except OSError as e:
            logger.error(f"Could not persist ownership: {e}")
            return False

    def _changed(self) -> None:
        self.save()
        snapshot = self.ids
        for callback in self._listeners:
            callback(snapshot)

    def __contains__(self, note_id: str) -> bool:
        return self.contains(note_id)

    def __len__(self) -> int:
        return len(self._ids)
