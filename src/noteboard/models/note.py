import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from ulid import ULID

from ..utils.geometry import is_valid_color

DEFAULT_NOTE_SIZE = 256
DEFAULT_ROTATION = 0

# Fields that may change after a note is created.
MUTABLE_FIELDS = ("position_x", "position_y", "width", "height", "rotation", "color")

# Written by every schema revision, used when a newer column is rejected.
SAFE_UPDATE_FIELDS = ("position_x", "position_y", "color")

_STYLE_SUFFIX = re.compile(r"\s*\(Style:\s*([^)]*)\)\s*$", re.IGNORECASE)


class NoteKind(str, Enum):
    TEXT = "text"
    MEME = "meme"
    IMAGE = "image"


def new_note_id() -> str:
    return f"n_{ULID.from_datetime(datetime.now())}"


def display_content(content: str) -> str:
    """Content as shown on the board, without a trailing ``(Style: ...)``."""
    return _STYLE_SUFFIX.sub("", content)


def split_style(content: str) -> Tuple[str, Optional[str]]:
    match = _STYLE_SUFFIX.search(content)
    if not match:
        return content.strip(), None
    style = match.group(1).strip() or None
    return content[:match.start()].strip(), style


def with_style(prompt: str, style: Optional[str]) -> str:
    return f"{prompt} (Style: {style})" if style else prompt


def round_rotation(angle: float) -> int:
    """Round to the nearest whole degree, halves away from zero."""
    rounded = int(abs(angle) + 0.5)
    return rounded if angle >= 0 else -rounded


class Note(BaseModel):
    """A persisted note row, as stored and as carried by change events."""

    id: str
    content: str = ""
    position_x: float
    position_y: float
    author: str = ""
    color: str
    type: NoteKind = NoteKind.TEXT
    meme_url: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    width: Optional[int] = None
    height: Optional[int] = None
    rotation: Optional[int] = None

    @field_validator("meme_url", "width", "height", "rotation", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        # Hash-backed rows carry missing columns as empty strings.
        return None if value == "" else value

    @property
    def kind(self) -> NoteKind:
        return self.type

    @property
    def position(self) -> Tuple[float, float]:
        return self.position_x, self.position_y

    @property
    def size(self) -> Tuple[int, int]:
        return (
            self.width if self.width is not None else DEFAULT_NOTE_SIZE,
            self.height if self.height is not None else DEFAULT_NOTE_SIZE,
        )

    @property
    def angle(self) -> int:
        return self.rotation if self.rotation is not None else DEFAULT_ROTATION

    @property
    def text(self) -> str:
        return display_content(self.content)

    def with_fields(self, fields: Dict[str, Any]) -> "Note":
        return self.model_copy(update=fields)


class NoteDraft(BaseModel):
    """A note as submitted by a compose action, before the store assigns an id."""

    content: str
    position_x: float
    position_y: float
    author: str
    color: str
    type: NoteKind = NoteKind.TEXT
    meme_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    rotation: Optional[int] = None

    @field_validator("color")
    @classmethod
    def _color(cls, value: str) -> str:
        if not is_valid_color(value):
            raise ValueError(f"color must be #rrggbb or rgba(r,g,b,a), got {value!r}")
        return value

    @field_validator("meme_url")
    @classmethod
    def _media_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("http", "data:")):
            raise ValueError("media URL must be an http(s) or data: URL")
        return value


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A change-feed message: ``{eventType, new, old}``."""

    eventType: ChangeType
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    @property
    def note_id(self) -> Optional[str]:
        for row in (self.new, self.old):
            if row and row.get("id"):
                return str(row["id"])
        return None

    def full_row(self) -> Optional[Note]:
        """The new row as a ``Note`` when the payload carries every required column."""
        if not self.new:
            return None
        try:
            return Note.model_validate(self.new)
        except ValueError:
            return None

    def changed_fields(self) -> Dict[str, Any]:
        if not self.new:
            return {}
        return {key: self.new[key] for key in MUTABLE_FIELDS if key in self.new}
