import pytest

from securenotes.config import BACKEND_LOCAL, Settings


def test_defaults(tmp_path, monkeypatch):
    for name in ("SECURENOTES_BACKEND", "SECURENOTES_SIGNED_URL_TTL", "SECURENOTES_FETCH_RETRIES",
                 "SECURENOTES_PAGE_SIZE", "SECURENOTES_RETRY_BACKOFF"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(data_dir=str(tmp_path))
    assert settings.backend == BACKEND_LOCAL
    assert settings.signed_url_ttl == 600
    assert settings.fetch_retries == 2
    assert settings.retry_backoff == 0.25
    assert settings.page_size == 10
    assert settings.notes_db.endswith("notes.db")


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("SECURENOTES_SIGNED_URL_TTL", "3600")
    monkeypatch.setenv("SECURENOTES_PUBLIC_URL", "https://notes.example.edu/")
    settings = Settings(data_dir=str(tmp_path))
    assert settings.signed_url_ttl == 3600
    assert settings.public_url == "https://notes.example.edu"


def test_invalid_values(tmp_path, monkeypatch):
    with pytest.raises(ValueError):
        Settings(backend="firebase", data_dir=str(tmp_path))
    with pytest.raises(ValueError):
        Settings(backend="local", data_dir=str(tmp_path), signed_url_ttl=0)
    monkeypatch.setenv("SECURENOTES_FETCH_RETRIES", "two")
    with pytest.raises(ValueError, match="SECURENOTES_FETCH_RETRIES"):
        Settings(backend="local", data_dir=str(tmp_path))


def test_supabase_backend_needs_credentials(tmp_path, monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_KEY", raising=False)
    with pytest.raises(ValueError, match="SUPABASE_URL"):
        Settings(backend="supabase", data_dir=str(tmp_path))
