import hashlib
import hmac
import re
import secrets
import time
import uuid
from datetime import datetime, UTC

PBKDF2_ROUNDS = 120_000


def make_id(prefix: str) -> str:
    """Generate a unique ID with a given prefix."""
    return f"{prefix}_{uuid.uuid4()}"


def time_now() -> str:
    """Return the current time in ISO format (UTC, microseconds kept for ordering)."""
    return datetime.now(UTC).isoformat()


def now_millis() -> int:
    return int(time.time() * 1000)


def hash_password(password: str, salt: str = "") -> str:
    """
    Hash a password with PBKDF2-SHA256.

    The result is "salt$hexdigest" so verify_password can recover the salt.
    """
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    if "$" not in stored:
        return False
    salt, _ = stored.split("$", 1)
    return hmac.compare_digest(hash_password(password, salt), stored)


def hash_otp(phone: str, code: str) -> str:
    return hashlib.sha256(f"{phone}:{code}".encode()).hexdigest()


def make_otp() -> str:
    """Six random digits."""
    return f"{secrets.randbelow(10 ** 6):06d}"


def safe_file_name(name: str) -> str:
    """Lowercase a file name and collapse whitespace runs into dashes."""
    return re.sub(r"\s+", "-", name.strip()).lower()


def clean_optional(value):
    """Trim a form value; blank becomes None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so `text` matches literally (escape character is a backslash)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
