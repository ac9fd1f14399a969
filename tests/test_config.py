from pathlib import Path

from fieldfix.config import build_context, build_store, load_settings
from fieldfix.sql_store import SqlStore
from fieldfix.store import MemoryStore


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    monkeypatch.setenv("FIELDFIX_MODEL", "google/gemini-2.0-flash")
    monkeypatch.setenv("FIELDFIX_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("FIELDFIX_ANALYZE_MOCK_ON_ERROR", "yes")
    monkeypatch.setenv("FIELDFIX_MEDIA_ROOT", "/srv/media")

    settings = load_settings()

    assert settings.api_key == "sk-test"
    assert settings.model == "google/gemini-2.0-flash"
    assert settings.retry_attempts == 5
    assert settings.analyze_mock_on_error is True
    assert settings.media_root == Path("/srv/media")


def test_overrides_win(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///other.db")
    assert load_settings(database_url="memory").database_url == "memory"


def test_build_store_selects_backend():
    assert isinstance(build_store("memory"), MemoryStore)
    assert isinstance(build_store("sqlite+aiosqlite:///:memory:"), SqlStore)


def test_build_context_wires_generator(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    context = build_context(load_settings(database_url="memory", api_key=None))
    assert context.generator.model == context.settings.model
    assert context.generator.attempts == context.settings.retry_attempts
