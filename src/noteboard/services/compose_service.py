import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

from ..models.note import Note, NoteDraft, NoteKind, split_style, with_style
from .advisories import AdvisoryCenter
from .generation_client import GenerationClient, GenerationError
from .ownership_registry import OwnershipRegistry
from .persistence_gateway import GatewayError, PersistenceGateway
from .sync_controller import NoteSyncController

logger = logging.getLogger(__name__)

COLORS = [
    '#fef3c7',  # Yellow
    '#dbeafe',  # Blue
    '#dcfce7',  # Green
    '#fce7f3',  # Pink
    '#f3e8ff',  # Purple
]

MEME_COLOR = '#ff9999'
MEME_POSITION = (100.0, 100.0)
DEFAULT_STYLE = "cartoon sticker"
MAX_IMAGE_BYTES = 5 * 1024 * 1024


class ComposeError(Exception):
    pass


def visible_position(rng: random.Random) -> tuple:
    return 100 + rng.random() * 300, 100 + rng.random() * 300


def data_url_size(data_url: str) -> int:
    header, _, payload = data_url.partition(",")
    if ";base64" in header:
        payload = payload.strip()
        return len(payload) * 3 // 4 - payload[-2:].count("=")
    return len(payload.encode("utf-8"))


class ComposeService:
    """Turns compose actions into inserted, owned, visible notes."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        registry: OwnershipRegistry,
        controller: NoteSyncController,
        generator: Optional[GenerationClient] = None,
        advisories: Optional[AdvisoryCenter] = None,
        generation_attempts: int = 3,
        generation_delay: float = 2.0,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.registry = registry
        self.controller = controller
        self.generator = generator
        self.advisories = advisories or controller.advisories
        self.generation_attempts = generation_attempts
        self.generation_delay = generation_delay
        self.rng = rng or random.Random()
        self._sleep = sleep

    async def compose_text(self, content: str, author: str) -> Optional[Note]:
        if not content.strip() or not author.strip():
            raise ComposeError("A message and a name are required")
        x, y = visible_position(self.rng)
        draft = NoteDraft(
            content=content,
            author=author,
            position_x=x,
            position_y=y,
            color=self.rng.choice(COLORS),
            type=NoteKind.TEXT,
        )
        return await self._publish(draft)

    async def compose_generated_text(self, prompt: str, author: str) -> Optional[Note]:
        """Post a text note whose message is written by the text generator."""
        if self.generator is None:
            raise ComposeError("Text generation is not configured")
        if not prompt.strip() or not author.strip():
            raise ComposeError("A prompt and a name are required")
        try:
            content = await self.generator.generate_text(prompt)
        except GenerationError as e:
            logger.error(f"Text generation failed: {e}")
            self.advisories.post(f"Could not write the message: {e}", level="error")
            return None
        return await self.compose_text(content, author)

    async def compose_image(self, caption: str, author: str, data_url: str) -> Optional[Note]:
        if not author.strip():
            raise ComposeError("A name is required")
        if not data_url.startswith("data:image/"):
            raise ComposeError("Please upload an image")
        if data_url_size(data_url) > MAX_IMAGE_BYTES:
            raise ComposeError("Image size must be less than 5MB")

        x, y = visible_position(self.rng)
        draft = NoteDraft(
            content=caption,
            author=author,
            position_x=x,
            position_y=y,
            color=self.rng.choice(COLORS),
            type=NoteKind.IMAGE,
            meme_url=data_url,
        )
        return await self._publish(draft)

    async def compose_meme(self, prompt: str, author: str, style: Optional[str] = None) -> Optional[Note]:
        if self.generator is None:
            raise ComposeError("Meme generation is not configured")
        if not prompt.strip() or not author.strip():
            raise ComposeError("A description and a name are required")

        content = with_style(prompt, style)
        clean_prompt, parsed_style = split_style(content)
        url = await self._generate(clean_prompt, parsed_style or DEFAULT_STYLE)
        if url is None:
            return None

        draft = NoteDraft(
            content=content,
            author=author,
            position_x=MEME_POSITION[0],
            position_y=MEME_POSITION[1],
            color=MEME_COLOR,
            type=NoteKind.MEME,
            meme_url=url,
        )
        return await self._publish(draft)

    async def _generate(self, prompt: str, style: str) -> Optional[str]:
        for attempt in range(1, self.generation_attempts + 1):
            try:
                return await self.generator.generate_meme(prompt, style)
            except GenerationError as e:
                logger.error(f"Meme generation failed (attempt {attempt}/{self.generation_attempts}): {e}")
                if attempt < self.generation_attempts:
                    await self._sleep(self.generation_delay)
                else:
                    self.advisories.post(f"Could not generate the meme: {e}", level="error")
        return None

    async def _publish(self, draft: NoteDraft) -> Optional[Note]:
        try:
            note = await self.gateway.insert(draft)
        except GatewayError as e:
            logger.error(f"Error adding note: {e}")
            self.advisories.post(f"Your note could not be posted: {e}", level="error")
            return None

        self.registry.add(note.id)
        self.controller.add_local(note)
        logger.info(f"Posted {note.type.value} note {note.id}")
        return note
