# securenotes/config.py

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ------------------------------------------------
# Load environment variables from .env (local + hosted)
# ------------------------------------------------
load_dotenv()

BACKEND_LOCAL = "local"
BACKEND_SUPABASE = "supabase"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


class Settings:
    """Runtime configuration. Every field can be overridden by keyword for tests."""

    def __init__(self, backend: Optional[str] = None, data_dir: Optional[str] = None,
                 public_url: Optional[str] = None, signing_secret: Optional[str] = None,
                 signed_url_ttl: Optional[int] = None, fetch_retries: Optional[int] = None,
                 retry_backoff: Optional[float] = None, page_size: Optional[int] = None,
                 log_level: Optional[str] = None, supabase_url: Optional[str] = None,
                 supabase_key: Optional[str] = None, supabase_bucket: Optional[str] = None):
        self.backend = (backend or os.getenv("SECURENOTES_BACKEND", BACKEND_LOCAL)).lower()
        self.data_dir = Path(data_dir or os.getenv("SECURENOTES_DATA_DIR", "data"))
        self.public_url = (public_url or os.getenv("SECURENOTES_PUBLIC_URL", "http://localhost:8000")).rstrip("/")
        self.signing_secret = signing_secret or os.getenv("SECURENOTES_SIGNING_SECRET", "change-this")
        self.signed_url_ttl = signed_url_ttl if signed_url_ttl is not None else _int_env("SECURENOTES_SIGNED_URL_TTL", 600)
        self.fetch_retries = fetch_retries if fetch_retries is not None else _int_env("SECURENOTES_FETCH_RETRIES", 2)
        self.retry_backoff = retry_backoff if retry_backoff is not None else _float_env("SECURENOTES_RETRY_BACKOFF", 0.25)
        self.page_size = page_size if page_size is not None else _int_env("SECURENOTES_PAGE_SIZE", 10)
        self.log_level = (log_level or os.getenv("SECURENOTES_LOG_LEVEL", "INFO")).upper()
        self.supabase_url = supabase_url or os.getenv("SUPABASE_URL")
        self.supabase_key = supabase_key or os.getenv("SUPABASE_KEY")
        self.supabase_bucket = supabase_bucket or os.getenv("SUPABASE_BUCKET", "secure-assets")

        if self.backend not in (BACKEND_LOCAL, BACKEND_SUPABASE):
            raise ValueError(f"Unknown backend {self.backend!r}")
        if self.signed_url_ttl <= 0:
            raise ValueError("Signed URL TTL must be positive")
        if self.fetch_retries < 0:
            raise ValueError("Fetch retries cannot be negative")
        if self.backend == BACKEND_SUPABASE and not (self.supabase_url and self.supabase_key):
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the supabase backend")

    @property
    def users_db(self) -> str:
        return str(self.data_dir / "users.db")

    @property
    def notes_db(self) -> str:
        return str(self.data_dir / "notes.db")

    @property
    def files_dir(self) -> str:
        return str(self.data_dir / "files")
