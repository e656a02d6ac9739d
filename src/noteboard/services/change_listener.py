import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple

from ..database.redis_manager import INSERTS_CHANNEL, note_channel
from ..models.note import ChangeEvent, ChangeType

logger = logging.getLogger(__name__)


class ListenerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUBSCRIBED = "subscribed"


@dataclass(frozen=True)
class SubscriptionFilter:
    note_ids: Tuple[str, ...]
    include_inserts: bool = True

    def channels(self) -> List[str]:
        channels = [INSERTS_CHANNEL] if self.include_inserts else []
        channels.extend(note_channel(note_id) for note_id in self.note_ids)
        return channels


def desired_filter(owned_ids: Iterable[str]) -> Optional[SubscriptionFilter]:
    """The push filter for a set of owned ids; ``None`` means poll instead."""
    ids = tuple(sorted(set(owned_ids)))
    if not ids:
        return None
    return SubscriptionFilter(note_ids=ids)


class ChangeNotificationListener:
    """Keeps exactly one change-feed subscription (or one poller) alive.

    ``sink`` is the object that owns the note list; it must provide
    ``has_note(id)``, ``apply_remote_delete(id)``, ``apply_remote_row(note)``,
    ``apply_remote_fields(id, fields)`` and ``async refresh()``.
    """

    def __init__(
        self,
        store: Any,
        gateway: Any,
        sink: Any,
        poll_interval: float = 30.0,
        min_refresh_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.sink = sink
        self.poll_interval = poll_interval
        self.min_refresh_interval = min_refresh_interval
        self._clock = clock
        self.state = ListenerState.IDLE
        self.current_filter: Optional[SubscriptionFilter] = None
        self._subscription = None
        self._generation = 0
        self._resubscribe: Optional[SubscriptionFilter] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._last_refresh: Optional[float] = None
        self._pending: Set[asyncio.Task] = set()

    async def start(self, owned_ids: Iterable[str]) -> None:
        await self.reconcile(owned_ids)

    async def reconcile(self, owned_ids: Iterable[str]) -> None:
        desired = desired_filter(owned_ids)
        async with self._lock:
            unchanged = desired == self.current_filter and self._resubscribe is None
            if self.state is not ListenerState.IDLE and unchanged:
                return

            await self._teardown()

            if desired is None:
                self._start_polling()
                logger.info(f"No owned notes, polling every {self.poll_interval}s")
                return

            try:
                await self._subscribe(desired)
            except Exception as e:
                logger.error(f"Could not subscribe to changes, polling instead: {e}")
                self._start_polling(resubscribe=desired)

    async def _subscribe(self, wanted: SubscriptionFilter) -> None:
        self._generation += 1
        self._subscription = await self.store.subscribe(
            wanted.channels(), self.handle_event,
            on_lost=partial(self._on_feed_lost, self._generation))
        self.current_filter = wanted
        self.state = ListenerState.SUBSCRIBED
        logger.info(f"Subscribed to changes for {len(wanted.note_ids)} owned note(s)")

    def _start_polling(self, resubscribe: Optional[SubscriptionFilter] = None) -> None:
        self._resubscribe = resubscribe
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.state = ListenerState.POLLING

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def schedule_reconcile(self, owned_ids: Iterable[str]) -> None:
        """Registry callback: reconcile on the running loop without awaiting."""
        self._spawn(self.reconcile(frozenset(owned_ids)))

    def _on_feed_lost(self, generation: int, error: Exception) -> None:
        self._spawn(self._recover(generation))

    async def _recover(self, generation: int) -> None:
        """Swap a dropped subscription for polling until it can be restored."""
        async with self._lock:
            if self.state is not ListenerState.SUBSCRIBED or generation != self._generation:
                return
            wanted = self.current_filter
            await self._teardown()
            self._start_polling(resubscribe=wanted)
            logger.warning(f"Change feed lost, polling every {self.poll_interval}s until it is back")
        await self._refresh_quietly()

    async def stop(self) -> None:
        for task in list(self._pending):
            task.cancel()
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.close()
            logger.info("Unsubscribed from change feed")

        self.current_filter = None
        self._resubscribe = None
        self.state = ListenerState.IDLE

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if self._resubscribe is not None and await self._try_resubscribe():
                await self._refresh_quietly()
                return
            await self._refresh_quietly()

    async def _try_resubscribe(self) -> bool:
        async with self._lock:
            wanted = self._resubscribe
            if wanted is None:
                return False
            try:
                await self._subscribe(wanted)
            except Exception as e:
                logger.warning(f"Resubscribe failed, still polling: {e}")
                return False
            # This task is the poller; it ends once the feed is back.
            self._poll_task = None
            self._resubscribe = None
            return True

    async def _refresh_quietly(self) -> None:
        try:
            await self.request_refresh()
        except Exception as e:
            logger.error(f"Poll refresh failed: {e}")

    async def request_refresh(self) -> bool:
        now = self._clock()
        if self._last_refresh is not None and now - self._last_refresh < self.min_refresh_interval:
            logger.debug("Refresh throttled")
            return False
        self._last_refresh = now
        await self.sink.refresh()
        return True

    async def handle_event(self, event: ChangeEvent) -> None:
        note_id = event.note_id
        logger.debug(f"{event.eventType.value} received for {note_id}")

        if event.eventType is ChangeType.DELETE:
            if note_id:
                self.sink.apply_remote_delete(note_id)
            return

        row = event.full_row()
        if row is not None:
            self.sink.apply_remote_row(row)
            return

        fields = event.changed_fields()
        if note_id and fields and self.sink.has_note(note_id):
            self.sink.apply_remote_fields(note_id, fields)
            return

        if note_id:
            note = await self.gateway.fetch_note(note_id)
            if note is not None:
                self.sink.apply_remote_row(note)
                return

        await self.request_refresh()
