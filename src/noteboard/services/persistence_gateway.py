import logging
from typing import Any, Dict, List, Optional, Set

from ..database.redis_manager import UnknownColumnError
from ..models.note import MUTABLE_FIELDS, SAFE_UPDATE_FIELDS, Note, NoteDraft, round_rotation
from ..utils.cache import MISS, TtlCache
from ..utils.retry import RequestTimeoutError, RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

COUNT_KEY = "notes_count"


def page_key(page: int, page_size: int) -> str:
    return f"notes_page_{page}_{page_size}"


class GatewayError(Exception):
    """A store call failed after every retry."""


class GatewayTimeoutError(GatewayError):
    """A store call timed out on every attempt."""


class PersistenceGateway:
    """Typed CRUD over the note store with caching and bounded retries.

    Reads go through the TTL cache; writes always reach the store and then
    invalidate the count entry, and every cached page when
    ``invalidate_pages`` is set.
    """

    def __init__(
        self,
        store: Any,
        cache: Optional[TtlCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        page_ttl: float = 600.0,
        count_ttl: float = 600.0,
        invalidate_pages: bool = True,
    ) -> None:
        self.store = store
        self.cache = cache or TtlCache()
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_ttl = page_ttl
        self.count_ttl = count_ttl
        self.invalidate_pages = invalidate_pages
        self._page_keys: Set[str] = set()

    async def _call(self, label: str, operation):
        try:
            return await self.retry_policy.call(operation, label=label)
        except RequestTimeoutError as e:
            raise GatewayTimeoutError(
                f"Database connection timed out after {e.attempts} attempts. Please try again later.") from e
        except RetryExhaustedError as e:
            raise GatewayError(str(e)) from e

    # ------------------------------------------------------------------ reads

    async def fetch_page(self, page: int = 0, page_size: int = 20, use_cache: bool = True) -> List[Note]:
        key = page_key(page, page_size)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not MISS:
                logger.debug(f"Using cached notes for page {page}")
                return list(cached)

        start = page * page_size
        end = start + page_size - 1
        notes = await self._call(f"fetch page {page}", lambda: self.store.select_page(start, end))

        self.cache.set(key, list(notes), self.page_ttl)
        self._page_keys.add(key)
        return notes

    async def count(self, use_cache: bool = True) -> int:
        if use_cache:
            cached = self.cache.get(COUNT_KEY)
            if cached is not MISS:
                logger.debug("Using cached notes count")
                return cached

        total = await self._call("count notes", self.store.count)
        self.cache.set(COUNT_KEY, total, self.count_ttl)
        return total

    async def fetch_note(self, note_id: str) -> Optional[Note]:
        try:
            return await self._call(f"fetch note {note_id}", lambda: self.store.get(note_id))
        except Exception as e:
            logger.error(f"Error fetching note {note_id}: {e}")
            return None

    # ----------------------------------------------------------------- writes

    async def insert(self, draft: NoteDraft) -> Note:
        try:
            note = await self._call("insert note", lambda: self.store.insert(draft))
        except UnknownColumnError as e:
            raise GatewayError(f"Note rejected by the store: {e}") from e
        self.invalidate()
        return note

    async def update(self, note_id: str, **fields: Any) -> bool:
        unexpected = set(fields) - set(MUTABLE_FIELDS)
        if unexpected:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unexpected))}")
        if fields.get("rotation") is not None:
            fields["rotation"] = round_rotation(fields["rotation"])
        if not fields:
            return True

        try:
            ok = await self._update_with_fallback(note_id, fields)
        except Exception as e:
            logger.error(f"Error updating note {note_id}: {e}")
            return False

        if ok:
            self.invalidate()
        return ok

    async def _update_with_fallback(self, note_id: str, fields: Dict[str, Any]) -> bool:
        try:
            return await self._call(f"update note {note_id}", lambda: self.store.update(note_id, fields))
        except UnknownColumnError as e:
            safe_fields = {k: v for k, v in fields.items() if k in SAFE_UPDATE_FIELDS}
            logger.warning(f"Store rejected {e.columns} for note {note_id}, retrying with {sorted(safe_fields)}")
            if not safe_fields:
                return False
            try:
                return await self._call(
                    f"update note {note_id}", lambda: self.store.update(note_id, safe_fields))
            except UnknownColumnError as e2:
                logger.error(f"Reduced update for note {note_id} still rejected: {e2}")
                return False

    async def delete(self, note_id: str) -> bool:
        try:
            ok = await self._call(f"delete note {note_id}", lambda: self.store.delete(note_id))
        except Exception as e:
            logger.error(f"Error deleting note {note_id}: {e}")
            return False

        if ok:
            self.invalidate()
        return ok

    def invalidate(self) -> None:
        self.cache.remove(COUNT_KEY)
        if not self.invalidate_pages:
            return
        for key in self._page_keys:
            self.cache.remove(key)
        self._page_keys.clear()
