from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import make_client
from fieldfix.config import Settings, build_context
from fieldfix.generator import Generator
from fieldfix.pipeline import Pipeline
from fieldfix.store import MemoryStore


@pytest.fixture
def client() -> MagicMock:
    return make_client()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(api_key="test-key", database_url="memory", media_root=tmp_path)


@pytest.fixture
def pipeline(settings, client) -> Pipeline:
    generator = Generator(
        settings.model,
        settings.fallback_model,
        api_key=settings.api_key,
        client=client,
        sleep=AsyncMock(),
    )
    return Pipeline(build_context(settings, store=MemoryStore(), generator=generator))
