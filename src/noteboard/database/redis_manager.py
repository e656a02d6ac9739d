import asyncio
import inspect
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import WatchError

from ..models.note import ChangeEvent, ChangeType, Note, NoteDraft, new_note_id

logger = logging.getLogger(__name__)

NOTE_COLUMNS = frozenset({
    "id", "content", "position_x", "position_y", "author", "color", "type",
    "meme_url", "created_at", "width", "height", "rotation",
})

INSERTS_CHANNEL = "notes:changes:inserts"

Handler = Callable[[Any], Union[None, Awaitable[None]]]


def note_channel(note_id: str) -> str:
    return f"notes:changes:note:{note_id}"


def presence_channel(channel: str) -> str:
    return f"presence:{channel}"


class UnknownColumnError(Exception):
    """A write named a column the store does not have (yet)."""

    def __init__(self, columns: Iterable[str]):
        self.columns = sorted(columns)
        super().__init__(f"Unknown column(s): {', '.join(self.columns)}")


def _encode_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _encode_row(row: Dict[str, Any]) -> Dict[str, str]:
    return {key: _encode_value(value) for key, value in row.items() if value is not None}


class StoreSubscription:
    """One pub/sub connection delivering decoded messages to a handler.

    ``on_lost`` is called with the error when the connection drops; the
    subscription delivers nothing after that and only needs closing.
    """

    def __init__(
        self,
        pubsub: Any,
        channels: List[str],
        handler: Handler,
        decode: Optional[Callable[[str], Any]] = None,
        on_lost: Optional[Callable[[Exception], None]] = None,
    ):
        self.channels = channels
        self.confirmed = asyncio.Event()
        self.lost = False
        self._pubsub = pubsub
        self._handler = handler
        self._decode = decode
        self._on_lost = on_lost
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    async def start(self) -> "StoreSubscription":
        await self._pubsub.subscribe(*self.channels)
        self._task = asyncio.create_task(self._read_loop())
        return self

    async def _read_loop(self) -> None:
        try:
            await self._read_messages()
        except (redis.RedisError, OSError) as e:
            self.lost = True
            logger.error(f"Subscription to {', '.join(self.channels)} lost: {e}")
            if self._on_lost and not self._closed:
                self._on_lost(e)

    async def _read_messages(self) -> None:
        async for message in self._pubsub.listen():
            kind = message.get("type")
            if kind == "subscribe":
                self.confirmed.set()
                continue
            if kind != "message":
                continue

            try:
                payload = self._decode(message["data"]) if self._decode else message["data"]
            except (ValueError, ValidationError) as e:
                logger.error(f"Dropping malformed message on {message.get('channel')}: {e}")
                continue

            try:
                result = self._handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Subscription handler error: {e}")

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Subscription reader ended with an error: {e}")
            self._task = None

        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Error closing subscription: {e}")


class RedisNoteStore:
    """Redis-backed note table with a change feed and presence keys.

    Layout:
      ``note:<id>``            hash holding one row
      ``notes:index``          sorted set, member = id, score = creation epoch
      ``notes:columns``        optional set naming the columns this store knows
      ``notes:changes:*``      pub/sub channels for the change feed
      ``presence:<channel>:*`` expiring presence keys
    """

    INDEX_KEY = "notes:index"
    COLUMNS_KEY = "notes:columns"

    def __init__(self, host: str = 'localhost', port: int = 6379, db: int = 0,
                 password: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True
        )

    async def connect(self) -> None:
        await self.client.ping()

    async def columns(self) -> frozenset:
        known = await self.client.smembers(self.COLUMNS_KEY)
        return frozenset(known) if known else NOTE_COLUMNS

    # ------------------------------------------------------------------ reads

    async def count(self) -> int:
        return int(await self.client.zcard(self.INDEX_KEY))

    async def select_page(self, start: int, end: int) -> List[Note]:
        ids = await self.client.zrevrange(self.INDEX_KEY, start, end)
        if not ids:
            return []

        async with self.client.pipeline(transaction=False) as pipe:
            for note_id in ids:
                pipe.hgetall(f"note:{note_id}")
            rows = await pipe.execute()

        notes = []
        for row in rows:
            if not row:
                continue
            try:
                notes.append(Note.model_validate(row))
            except ValidationError as e:
                logger.error(f"Skipping malformed row {row.get('id')}: {e}")
        return notes

    async def get(self, note_id: str) -> Optional[Note]:
        row = await self.client.hgetall(f"note:{note_id}")
        if not row:
            return None
        return Note.model_validate(row)

    # ----------------------------------------------------------------- writes

    async def insert(self, draft: NoteDraft) -> Note:
        row = draft.model_dump()
        unknown = {key for key, value in row.items() if value is not None} - await self.columns()
        if unknown:
            raise UnknownColumnError(unknown)

        created_at = datetime.now(timezone.utc)
        note = Note(id=new_note_id(), created_at=created_at, **row)

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(f"note:{note.id}", mapping=_encode_row(note.model_dump()))
            pipe.zadd(self.INDEX_KEY, {note.id: created_at.timestamp()})
            await pipe.execute()

        await self._publish(ChangeType.INSERT, note.id, new=note.model_dump(mode="json"))
        return note

    async def update(self, note_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - await self.columns()
        if unknown:
            raise UnknownColumnError(unknown)

        key = f"note:{note_id}"
        to_set = _encode_row(fields)
        to_clear = [name for name, value in fields.items() if value is None]

        # A delete landing between the check and the write aborts the transaction.
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if not await pipe.exists(key):
                        return False
                    pipe.multi()
                    if to_set:
                        pipe.hset(key, mapping=to_set)
                    if to_clear:
                        pipe.hdel(key, *to_clear)
                    pipe.hgetall(key)
                    results = await pipe.execute()
                    break
                except WatchError:
                    logger.debug(f"Note {note_id} changed during update, retrying")
                    continue

        await self._publish(ChangeType.UPDATE, note_id, new=results[-1], old={"id": note_id})
        return True

    async def delete(self, note_id: str) -> bool:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(f"note:{note_id}")
            pipe.zrem(self.INDEX_KEY, note_id)
            removed, _ = await pipe.execute()

        if removed:
            await self._publish(ChangeType.DELETE, note_id, old={"id": note_id})
        return bool(removed)

    async def _publish(self, event_type: ChangeType, note_id: str,
                       new: Optional[Dict[str, Any]] = None,
                       old: Optional[Dict[str, Any]] = None) -> None:
        event = ChangeEvent(eventType=event_type, new=new, old=old)
        message = event.model_dump_json()
        await self.client.publish(note_channel(note_id), message)
        if event_type is ChangeType.INSERT:
            await self.client.publish(INSERTS_CHANNEL, message)

    # ------------------------------------------------------------ change feed

    async def subscribe(self, channels: List[str],
                        handler: Callable[[ChangeEvent], Any],
                        on_lost: Optional[Callable[[Exception], None]] = None) -> StoreSubscription:
        subscription = StoreSubscription(
            self.client.pubsub(), channels, handler,
            decode=ChangeEvent.model_validate_json, on_lost=on_lost)
        return await subscription.start()

    # --------------------------------------------------------------- presence

    async def announce_presence(self, channel: str, key: str, ttl: int) -> None:
        await self.client.set(f"{presence_channel(channel)}:{key}", json.dumps({"key": key}), ex=ttl)
        await self.client.publish(presence_channel(channel), json.dumps({"event": "sync", "key": key}))

    async def leave_presence(self, channel: str, key: str) -> None:
        await self.client.delete(f"{presence_channel(channel)}:{key}")
        await self.client.publish(presence_channel(channel), json.dumps({"event": "leave", "key": key}))

    async def presence_keys(self, channel: str) -> List[str]:
        prefix = f"{presence_channel(channel)}:"
        keys = []
        async for name in self.client.scan_iter(match=f"{prefix}*"):
            keys.append(name[len(prefix):])
        return keys

    async def subscribe_presence(self, channel: str,
                                 handler: Callable[[Dict[str, Any]], Any]) -> StoreSubscription:
        subscription = StoreSubscription(
            self.client.pubsub(), [presence_channel(channel)], handler, decode=json.loads)
        return await subscription.start()

    async def close(self) -> None:
        await self.client.aclose()
