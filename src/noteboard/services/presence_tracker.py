import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ulid import ULID

logger = logging.getLogger(__name__)


def new_session_key() -> str:
    return f"s_{ULID.from_datetime(datetime.now())}"


class PresenceTracker:
    """Estimates how many clients are on the board. Informational only."""

    def __init__(
        self,
        store: Any,
        channel: str,
        on_count: Optional[Callable[[int], None]] = None,
        ttl: int = 30,
        session_key: Optional[str] = None,
        confirm_timeout: float = 5.0,
    ):
        self.store = store
        self.channel = channel
        self.on_count = on_count
        self.ttl = ttl
        self.session_key = session_key or new_session_key()
        self.confirm_timeout = confirm_timeout
        self.count = 0
        self._subscription = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        self._subscription = await self.store.subscribe_presence(self.channel, self._on_sync)
        try:
            await asyncio.wait_for(self._subscription.confirmed.wait(), self.confirm_timeout)
        except asyncio.TimeoutError:
            logger.warning("Presence subscription not confirmed, announcing anyway")

        await self.store.announce_presence(self.channel, self.session_key, self.ttl)
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info(f"Joined presence channel {self.channel} as {self.session_key}")

    async def _heartbeat(self) -> None:
        interval = max(self.ttl / 2, 1)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.store.announce_presence(self.channel, self.session_key, self.ttl)
            except Exception as e:
                logger.error(f"Presence heartbeat failed: {e}")

    async def _on_sync(self, message: Dict[str, Any]) -> None:
        keys = await self.store.presence_keys(self.channel)
        self.count = len(set(keys))
        logger.debug(f"Presence sync ({message.get('event')}): {self.count} online")
        if self.on_count:
            self.on_count(self.count)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        try:
            await self.store.leave_presence(self.channel, self.session_key)
        except Exception as e:
            logger.error(f"Presence leave failed: {e}")

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
