# config.py
# Environment-driven settings and the process-scoped context.
#
# Everything a stage needs (store, knowledge base, generator, file locations)
# is built once per process here and handed to the Pipeline. No module keeps
# global mutable state of its own.

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from fieldfix.generator import OPENROUTER_BASE_URL, Generator
from fieldfix.kb import DEFAULT_KB_DIR, KnowledgeBase
from fieldfix.models import utcnow
from fieldfix.scenarios import DEFAULT_FALLBACK_DIR
from fieldfix.store import MemoryStore, RecordStore

MEMORY_STORE_URL = "memory"


class Settings(BaseModel):
    api_key: str | None = None
    base_url: str = OPENROUTER_BASE_URL
    model: str = "google/gemini-2.5-flash"
    fallback_model: str | None = "google/gemini-2.5-pro"
    retry_attempts: int = Field(default=3, ge=1)
    database_url: str = "sqlite+aiosqlite:///fieldfix.db"
    kb_dir: Path = DEFAULT_KB_DIR
    fallback_dir: Path = DEFAULT_FALLBACK_DIR
    media_root: Path = Path("public")
    analyze_mock_on_error: bool = False
    log_level: str = "INFO"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_settings(**overrides) -> Settings:
    """Read settings from the environment (and a .env file, if present)."""
    load_dotenv()

    values = {
        "api_key": os.getenv("OPENROUTER_API_KEY"),
        "base_url": os.getenv("FIELDFIX_BASE_URL", OPENROUTER_BASE_URL),
        "model": os.getenv("FIELDFIX_MODEL", "google/gemini-2.5-flash"),
        "fallback_model": os.getenv("FIELDFIX_FALLBACK_MODEL", "google/gemini-2.5-pro") or None,
        "retry_attempts": int(os.getenv("FIELDFIX_RETRY_ATTEMPTS", "3")),
        "database_url": os.getenv("DATABASE_URL", "sqlite+aiosqlite:///fieldfix.db"),
        "kb_dir": Path(os.getenv("FIELDFIX_KB_DIR", str(DEFAULT_KB_DIR))),
        "fallback_dir": Path(os.getenv("FIELDFIX_FALLBACK_DIR", str(DEFAULT_FALLBACK_DIR))),
        "media_root": Path(os.getenv("FIELDFIX_MEDIA_ROOT", "public")),
        "analyze_mock_on_error": _env_flag("FIELDFIX_ANALYZE_MOCK_ON_ERROR"),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
    }
    values.update(overrides)
    return Settings(**values)


@dataclass
class AppContext:
    """Process-scoped dependencies shared by every session."""

    settings: Settings
    store: RecordStore
    kb: KnowledgeBase
    generator: Generator
    clock: Callable = field(default=utcnow)


def build_store(database_url: str) -> RecordStore:
    if database_url == MEMORY_STORE_URL:
        return MemoryStore()
    # SQL URLs only; the memory store needs no driver.
    from fieldfix.sql_store import SqlStore

    return SqlStore(database_url)


def build_context(settings: Settings | None = None, *, store: RecordStore | None = None, generator: Generator | None = None) -> AppContext:
    settings = settings or load_settings()
    return AppContext(
        settings=settings,
        store=store or build_store(settings.database_url),
        kb=KnowledgeBase(settings.kb_dir),
        generator=generator
        or Generator(
            settings.model,
            settings.fallback_model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            attempts=settings.retry_attempts,
        ),
    )
