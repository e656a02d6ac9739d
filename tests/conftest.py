import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from noteboard.database.redis_manager import INSERTS_CHANNEL, UnknownColumnError, note_channel
from noteboard.models.note import ChangeEvent, ChangeType, Note, NoteDraft
from noteboard.services.advisories import AdvisoryCenter
from noteboard.services.ownership_registry import OwnershipRegistry
from noteboard.services.persistence_gateway import PersistenceGateway
from noteboard.services.sync_controller import NoteSyncController
from noteboard.utils.cache import TtlCache
from noteboard.utils.local_storage import LocalStorage
from noteboard.utils.retry import RetryPolicy

T0 = datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)


def make_note(note_id: str, minutes: int = 0, **fields: Any) -> Note:
    row = {
        "id": note_id,
        "content": f"note {note_id}",
        "position_x": 150.0,
        "position_y": 200.0,
        "author": "Alex",
        "color": "#fef3c7",
        "type": "text",
        "created_at": T0 + timedelta(minutes=minutes),
    }
    row.update(fields)
    return Note.model_validate(row)


class FakeSubscription:
    def __init__(self, channels: List[str], handler, on_lost=None):
        self.channels = channels
        self.handler = handler
        self.on_lost = on_lost
        self.confirmed = asyncio.Event()
        self.confirmed.set()
        self.closed = False
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def drop(self, error: Exception) -> None:
        self.on_lost(error)


class FakeNoteStore:
    """In-memory stand-in for RedisNoteStore with call accounting."""

    def __init__(self, notes: Optional[List[Note]] = None, columns: Optional[set] = None):
        self.rows: Dict[str, Note] = {note.id: note for note in notes or []}
        self.columns = columns
        self.calls: List[tuple] = []
        self.fail_writes = False
        self.fail_subscribe = False
        self.subscriptions: List[FakeSubscription] = []
        self.presence: Dict[str, set] = {}
        self.presence_handlers: Dict[str, Any] = {}
        self._next_id = 1

    def _ordered(self) -> List[Note]:
        return sorted(self.rows.values(), key=lambda n: n.created_at, reverse=True)

    async def count(self) -> int:
        self.calls.append(("count",))
        return len(self.rows)

    async def select_page(self, start: int, end: int) -> List[Note]:
        self.calls.append(("select_page", start, end))
        return self._ordered()[start:end + 1]

    async def get(self, note_id: str) -> Optional[Note]:
        self.calls.append(("get", note_id))
        return self.rows.get(note_id)

    async def insert(self, draft: NoteDraft) -> Note:
        self.calls.append(("insert", draft))
        note_id = f"n_{self._next_id:04d}"
        self._next_id += 1
        latest = max((n.created_at for n in self.rows.values()), default=T0)
        note = Note(id=note_id, created_at=latest + timedelta(minutes=1), **draft.model_dump())
        self.rows[note_id] = note
        return note

    async def update(self, note_id: str, fields: Dict[str, Any]) -> bool:
        self.calls.append(("update", note_id, dict(fields)))
        if self.columns is not None:
            unknown = set(fields) - self.columns
            if unknown:
                raise UnknownColumnError(unknown)
        if self.fail_writes:
            raise ConnectionError("backend unavailable")
        if note_id not in self.rows:
            return False
        self.rows[note_id] = self.rows[note_id].with_fields(fields)
        return True

    async def delete(self, note_id: str) -> bool:
        self.calls.append(("delete", note_id))
        if self.fail_writes:
            raise ConnectionError("backend unavailable")
        return self.rows.pop(note_id, None) is not None

    async def subscribe(self, channels: List[str], handler, on_lost=None) -> FakeSubscription:
        self.calls.append(("subscribe", tuple(channels)))
        if self.fail_subscribe:
            raise ConnectionError("pub/sub unavailable")
        subscription = FakeSubscription(channels, handler, on_lost)
        self.subscriptions.append(subscription)
        return subscription

    def open_subscriptions(self) -> List[FakeSubscription]:
        return [s for s in self.subscriptions if not s.closed]

    async def emit(self, event: ChangeEvent) -> None:
        note_id = event.note_id
        targets = {note_channel(note_id)} if note_id else set()
        if event.eventType is ChangeType.INSERT:
            targets.add(INSERTS_CHANNEL)
        for subscription in self.open_subscriptions():
            if targets & set(subscription.channels):
                await subscription.handler(event)

    async def subscribe_presence(self, channel: str, handler) -> FakeSubscription:
        subscription = FakeSubscription([f"presence:{channel}"], handler)
        self.presence_handlers[channel] = handler
        self.subscriptions.append(subscription)
        return subscription

    async def announce_presence(self, channel: str, key: str, ttl: int) -> None:
        self.presence.setdefault(channel, set()).add(key)
        handler = self.presence_handlers.get(channel)
        if handler:
            await handler({"event": "sync", "key": key})

    async def leave_presence(self, channel: str, key: str) -> None:
        self.presence.get(channel, set()).discard(key)

    async def presence_keys(self, channel: str) -> List[str]:
        return sorted(self.presence.get(channel, set()))

    def count_calls(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class ManualClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_timeout=0.05, timeout_cap=0.1, sleep=_no_sleep)


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(tmp_path / "local_storage.json")


@pytest.fixture
def registry(storage) -> OwnershipRegistry:
    return OwnershipRegistry(storage)


@pytest.fixture
def store() -> FakeNoteStore:
    return FakeNoteStore()


@pytest.fixture
def gateway(store, fast_retry, clock) -> PersistenceGateway:
    return PersistenceGateway(store, cache=TtlCache(clock=clock), retry_policy=fast_retry)


@pytest.fixture
def controller(gateway, registry) -> NoteSyncController:
    return NoteSyncController(gateway, registry, advisories=AdvisoryCenter(), page_size=2, max_pages=5)
