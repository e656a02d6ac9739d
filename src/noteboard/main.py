#!/usr/bin/env python3

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

from .config import RedisConfig, SyncSettings
from .database.redis_manager import RedisNoteStore
from .models.note import Note
from .services.advisories import Advisory, AdvisoryCenter
from .services.change_listener import ChangeNotificationListener
from .services.compose_service import ComposeService
from .services.generation_client import GenerationClient
from .services.ownership_registry import OwnershipRegistry
from .services.persistence_gateway import PersistenceGateway
from .services.presence_tracker import PresenceTracker
from .services.sync_controller import EditPolicy, NoteSyncController
from .utils.cache import TtlCache
from .utils.local_storage import LocalStorage

logger = logging.getLogger(__name__)


class NoteBoardApp:
    """One board session: services are built once here and torn down in ``stop``."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        store: Optional[RedisNoteStore] = None,
        storage: Optional[LocalStorage] = None,
        generator: Optional[GenerationClient] = None,
    ):
        self.settings = settings or SyncSettings.from_env()
        self.store = store or RedisConfig.from_env().create_store()
        self.advisories = AdvisoryCenter(
            default_ttl=self.settings.advisory_ttl, on_change=self._on_advisories)
        self.registry = OwnershipRegistry(storage or LocalStorage(self.settings.storage_path))
        self.gateway = PersistenceGateway(
            self.store,
            cache=TtlCache(),
            retry_policy=self.settings.retry_policy(),
            page_ttl=self.settings.page_ttl,
            count_ttl=self.settings.count_ttl,
            invalidate_pages=self.settings.invalidate_pages,
        )
        self.controller = NoteSyncController(
            self.gateway,
            self.registry,
            advisories=self.advisories,
            page_size=self.settings.page_size,
            max_pages=self.settings.max_pages,
            policy=EditPolicy.STRICT if self.settings.strict_ownership else EditPolicy.OPEN_DRAG,
            revert_on_failure=self.settings.revert_on_failure,
        )
        self.listener = ChangeNotificationListener(
            self.store,
            self.gateway,
            self.controller,
            poll_interval=self.settings.poll_interval,
            min_refresh_interval=self.settings.min_refresh_interval,
        )
        self.presence = PresenceTracker(
            self.store, self.settings.board, on_count=self._on_presence, ttl=self.settings.presence_ttl)
        self.generator = generator or GenerationClient(
            self.settings.generation_url, self.settings.text_generation_url)
        self.compose = ComposeService(
            self.gateway, self.registry, self.controller,
            generator=self.generator, advisories=self.advisories)
        self.running = False

    def _on_advisories(self, active: List[Advisory]) -> None:
        for advisory in active:
            logger.debug(f"[{advisory.level}] {advisory.message}")

    def _on_presence(self, count: int) -> None:
        logger.info(f"{count} people on the board")

    async def start(self) -> None:
        if self.running:
            return
        self.running = True

        await self.store.connect()
        owned = self.registry.load()
        self.registry.on_change(self.listener.schedule_reconcile)

        notes = await self.controller.initial_load()
        logger.info(f"Board ready with {len(notes)} notes ({len(owned)} yours)")

        await self.listener.start(owned)
        try:
            await self.presence.start()
        except Exception as e:
            logger.warning(f"Presence unavailable, continuing without it: {e}")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False

        await self.listener.stop()
        await self.presence.stop()
        self.advisories.clear()
        self.generator.close()
        await self.store.close()
        logger.info("Board session closed")

    async def __aenter__(self) -> "NoteBoardApp":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def _describe(note: Note) -> str:
    return f"{note.id} [{note.type.value}] {note.author}: {note.text[:40]!r} at ({note.position_x:.0f}, {note.position_y:.0f})"


async def _run(args: argparse.Namespace) -> None:
    app = NoteBoardApp(settings=SyncSettings.from_env())
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    async with app:
        if args.post:
            await app.compose.compose_text(args.post, args.author)
        if args.write:
            await app.compose.compose_generated_text(args.write, args.author)
        if args.meme:
            await app.compose.compose_meme(args.meme, args.author, style=args.style)

        for note in app.controller.notes:
            print(_describe(note))

        if args.watch:
            app.controller.subscribe(lambda notes: logger.info(f"{len(notes)} notes on the board"))
            print("NoteBoard running. Press Ctrl+C to stop")
            await stop_event.wait()


def main() -> None:
    parser = argparse.ArgumentParser(description='NoteBoard sync client')
    parser.add_argument('--author', default='Anonymous', help='Name shown on posted notes')
    parser.add_argument('--post', metavar='MESSAGE', help='Post a text note')
    parser.add_argument('--meme', metavar='PROMPT', help='Generate and post a meme note')
    parser.add_argument('--write', metavar='PROMPT', help='Generate a message and post it as a text note')
    parser.add_argument('--style', help='Style for --meme')
    parser.add_argument('--watch', action='store_true', help='Stay connected and log changes')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s: %(message)s')

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
