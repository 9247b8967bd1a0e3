"""
Tests for settings loading.
"""

import pytest
from pydantic import ValidationError

from querystream.core.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("DATABASE_URL", "PORT", "BATCH_SIZE", "GZIP_LEVEL", "POOL_MAX_SIZE"):
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the picture
    monkeypatch.chdir(tmp_path)


def test_defaults(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u@localhost/db")
    settings = Settings()
    assert settings.database_url == "postgresql://u@localhost/db"
    assert settings.port == 8080
    assert settings.batch_size == 1
    assert settings.fetch_size == 2000
    assert settings.gzip_level == 6


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u@localhost/db")
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("BATCH_SIZE", "500")
    settings = Settings()
    assert settings.port == 9000
    assert settings.batch_size == 500


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("DATABASE_URL=postgresql://from-dotenv/db\n")
    assert Settings().database_url == "postgresql://from-dotenv/db"


def test_database_url_is_required():
    with pytest.raises(ValidationError):
        Settings()


def test_database_url_must_not_be_empty(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "")
    with pytest.raises(ValidationError):
        Settings()


@pytest.mark.parametrize("name, value", [
    ("BATCH_SIZE", "0"),
    ("GZIP_LEVEL", "10"),
    ("POOL_MAX_SIZE", "0"),
])
def test_out_of_range_values_are_rejected(monkeypatch, name, value):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u@localhost/db")
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        Settings()
