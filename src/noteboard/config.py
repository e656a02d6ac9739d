import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from .database.redis_manager import RedisNoteStore
from .utils.retry import RetryPolicy


def load_env(env_path: Optional[Path] = None) -> None:
    if env_path is not None:
        load_dotenv(dotenv_path=env_path)
        return
    candidate = Path.cwd() / ".env"
    if candidate.exists():
        load_dotenv(dotenv_path=candidate)


def _to_bool(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


@dataclass(frozen=True)
class RedisConfig:
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> "RedisConfig":
        load_env(env_path)

        uri = os.getenv("REDIS_URI")
        if uri:
            return cls.from_uri(uri)

        return cls(
            host=os.getenv("REDIS_HOST", cls.host),
            port=_env_int("REDIS_PORT", cls.port),
            db=_env_int("REDIS_DB", cls.db),
            password=os.getenv("REDIS_PASSWORD") or None,
        )

    @classmethod
    def from_uri(cls, uri: str) -> "RedisConfig":
        parsed = urlparse(uri)
        if parsed.scheme not in {"redis", "rediss"}:
            raise ValueError(
                f"Unsupported Redis URI scheme: {parsed.scheme!r}")

        db_fragment = parsed.path.lstrip("/")
        return cls(
            host=parsed.hostname or cls.host,
            port=parsed.port or cls.port,
            db=int(db_fragment) if db_fragment else cls.db,
            password=parsed.password or None,
        )

    def create_store(self) -> RedisNoteStore:
        return RedisNoteStore(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
        )


@dataclass(frozen=True)
class SyncSettings:
    """Tunables of the sync layer. Times are in seconds."""

    board: str = "birthday-board"
    page_size: int = 20
    max_pages: int = 5
    page_ttl: float = 600.0
    count_ttl: float = 600.0
    invalidate_pages: bool = True
    max_attempts: int = 3
    base_timeout: float = 10.0
    timeout_cap: float = 30.0
    poll_interval: float = 30.0
    min_refresh_interval: float = 10.0
    presence_ttl: int = 30
    advisory_ttl: float = 5.0
    strict_ownership: bool = True
    revert_on_failure: bool = True
    generation_url: str = "http://localhost:8888/.netlify/functions/generate-meme"
    text_generation_url: str = "http://localhost:8888/.netlify/functions/generate-text"
    storage_path: Optional[Path] = None

    @classmethod
    def from_env(cls, *, env_path: Optional[Path] = None) -> "SyncSettings":
        load_env(env_path)
        storage = os.getenv("NOTEBOARD_STORAGE_PATH")
        return cls(
            board=os.getenv("NOTEBOARD_BOARD", cls.board),
            page_size=_env_int("NOTEBOARD_PAGE_SIZE", cls.page_size),
            max_pages=_env_int("NOTEBOARD_MAX_PAGES", cls.max_pages),
            page_ttl=_env_float("NOTEBOARD_PAGE_TTL", cls.page_ttl),
            count_ttl=_env_float("NOTEBOARD_COUNT_TTL", cls.count_ttl),
            invalidate_pages=_to_bool(os.getenv("NOTEBOARD_INVALIDATE_PAGES"), cls.invalidate_pages),
            max_attempts=_env_int("NOTEBOARD_MAX_ATTEMPTS", cls.max_attempts),
            base_timeout=_env_float("NOTEBOARD_BASE_TIMEOUT", cls.base_timeout),
            timeout_cap=_env_float("NOTEBOARD_TIMEOUT_CAP", cls.timeout_cap),
            poll_interval=_env_float("NOTEBOARD_POLL_INTERVAL", cls.poll_interval),
            min_refresh_interval=_env_float("NOTEBOARD_MIN_REFRESH_INTERVAL", cls.min_refresh_interval),
            presence_ttl=_env_int("NOTEBOARD_PRESENCE_TTL", cls.presence_ttl),
            advisory_ttl=_env_float("NOTEBOARD_ADVISORY_TTL", cls.advisory_ttl),
            strict_ownership=_to_bool(os.getenv("NOTEBOARD_STRICT_OWNERSHIP"), cls.strict_ownership),
            revert_on_failure=_to_bool(os.getenv("NOTEBOARD_REVERT_ON_FAILURE"), cls.revert_on_failure),
            generation_url=os.getenv("NOTEBOARD_GENERATION_URL", cls.generation_url),
            text_generation_url=os.getenv("NOTEBOARD_TEXT_GENERATION_URL", cls.text_generation_url),
            storage_path=Path(storage) if storage else None,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_timeout=self.base_timeout,
            timeout_cap=self.timeout_cap,
        )
