"""
Local collaborators: identity provider, metadata store and object signer.

These implement the same contract as the hosted backend in
``supabase_backend`` on top of SQLite and the filesystem, so the whole
application runs (and is tested) without a network. Every call is
synchronous; the note viewer moves calls onto worker threads.
"""

import contextlib
import hashlib
import hmac
import logging
import math
import os
import re
import sqlite3
import threading
import time
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, quote

from .domain import (
    ACTIVITY_ACTIONS, ROLE_ADMIN, ROLE_STUDENT, STATUS_ACTIVE, STATUS_PENDING,
    Account, ActivityLogEntry, Attachment, AuthError, BackendError, Conflict, NetworkError,
    Note, NotFound, Session, Unauthorized, validate_access,
)
from .password import password_strength
from .utils import escape_like, hash_otp, hash_password, make_id, make_otp, time_now, verify_password

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

OTP_EXPIRY_MINUTES = 10
MAX_OTP_SENDS_PER_HOUR = 3
MAX_OTP_VERIFY_ATTEMPTS = 5

PHONE_PATTERN = re.compile(r"^\+?1?\d{9,15}$")

SessionListener = Callable[[str, Optional[Session]], None]


def _strip_bearer(token: str) -> str:
    if token and token.startswith("Bearer "):
        return token[7:]
    return token or ""


def _log_otp(phone: str, code: str) -> None:
    logger.info("OTP for %s: %s", phone, code)


class AuthService:
    """Handles registration, password and OTP sign-in, and session validation."""

    def __init__(self, db_path: str = "users.db", otp_sender: Optional[Callable[[str, str], None]] = None):
        self.db_path = db_path
        self.lock = threading.Lock()
        self.otp_sender = otp_sender or _log_otp
        self._listeners: List[SessionListener] = []
        self._init_database()

    @contextlib.contextmanager
    def _get_db_connection(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise NetworkError(f"users database unavailable: {e}") from e
        finally:
            conn.close()

    def _init_database(self):
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE,
                phone TEXT UNIQUE,
                name TEXT,
                password_hash TEXT,
                created_time TEXT NOT NULL
            )
            """)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_time TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users (id)
            )
            """)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS otps (
                phone TEXT PRIMARY KEY,
                code_hash TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                sent_count INTEGER NOT NULL DEFAULT 0,
                window_start TEXT NOT NULL
            )
            """)
            conn.commit()

    # -------------------------------
    # Session change notifications
    # -------------------------------

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception("Session listener failed for %s", event)

    # -------------------------------
    # Password accounts
    # -------------------------------

    def sign_up(self, email: str, password: str, name: str = "") -> str:
        """
        Create an account and return its user id.

        Raises:
            AuthError: if the email is taken or the password is too weak
        """
        email = email.strip().lower()
        strength = password_strength(password)
        if not strength["is_strong_enough"]:
            raise AuthError(f"Password is too weak ({strength['label']})")

        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT 1 FROM users WHERE email = ?", (email,))
                if cursor.fetchone():
                    raise AuthError("Email already exists")
                uid = make_id("usr")
                cursor.execute(
                    "INSERT INTO users (id, email, phone, name, password_hash, created_time) VALUES (?, ?, ?, ?, ?, ?)",
                    (uid, email, None, name or email, hash_password(password), time_now())
                )
                conn.commit()
        logger.info("Registered user %s", uid)
        return uid

    def sign_in_with_password(self, email: str, password: str) -> Session:
        email = email.strip().lower()
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT id, password_hash FROM users WHERE email = ?", (email,))
            row = cursor.fetchone()
        if not row or not row[1] or not verify_password(password, row[1]):
            raise AuthError("Invalid email or password")
        return self._open_session(row[0])

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        raise AuthError("OAuth sign-in needs the hosted identity provider")

    # -------------------------------
    # Phone OTP
    # -------------------------------

    def send_otp(self, phone: str) -> None:
        """
        Generate a one-time code for a phone number and hand it to the sender.

        At most MAX_OTP_SENDS_PER_HOUR codes are sent per phone per hour;
        each code is valid for OTP_EXPIRY_MINUTES.
        """
        phone = phone.strip()
        if not PHONE_PATTERN.match(phone):
            raise AuthError("Invalid phone number")

        now = datetime.now(UTC)
        code = make_otp()
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT sent_count, window_start FROM otps WHERE phone = ?", (phone,))
                row = cursor.fetchone()
                sent_count, window_start = 0, now
                if row:
                    sent_count, window_start = row[0], datetime.fromisoformat(row[1])
                    if now - window_start >= timedelta(hours=1):
                        sent_count, window_start = 0, now
                if sent_count >= MAX_OTP_SENDS_PER_HOUR:
                    raise AuthError("Too many codes requested, try again later")
                cursor.execute(
                    "INSERT OR REPLACE INTO otps (phone, code_hash, expires_at, attempts, sent_count, window_start) "
                    "VALUES (?, ?, ?, 0, ?, ?)",
                    (phone, hash_otp(phone, code), (now + timedelta(minutes=OTP_EXPIRY_MINUTES)).isoformat(),
                     sent_count + 1, window_start.isoformat())
                )
                conn.commit()
        self.otp_sender(phone, code)

    def verify_otp(self, phone: str, code: str) -> Session:
        phone = phone.strip()
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT code_hash, expires_at, attempts FROM otps WHERE phone = ?", (phone,))
                row = cursor.fetchone()
                if not row:
                    raise AuthError("No code was requested for this phone")
                code_hash, expires_at, attempts = row
                if datetime.now(UTC) > datetime.fromisoformat(expires_at):
                    raise AuthError("Code expired")
                if attempts >= MAX_OTP_VERIFY_ATTEMPTS:
                    raise AuthError("Too many attempts, request a new code")
                if not hmac.compare_digest(code_hash, hash_otp(phone, code.strip())):
                    cursor.execute("UPDATE otps SET attempts = attempts + 1 WHERE phone = ?", (phone,))
                    conn.commit()
                    raise AuthError("Invalid code")

                # single use; keep the send counter so the hourly limit still applies
                cursor.execute("UPDATE otps SET code_hash = '', attempts = ? WHERE phone = ?",
                               (MAX_OTP_VERIFY_ATTEMPTS, phone))
                cursor.execute("SELECT id FROM users WHERE phone = ?", (phone,))
                user = cursor.fetchone()
                if user:
                    uid = user[0]
                else:
                    uid = make_id("usr")
                    cursor.execute(
                        "INSERT INTO users (id, email, phone, name, password_hash, created_time) VALUES (?, ?, ?, ?, ?, ?)",
                        (uid, None, phone, phone, None, time_now())
                    )
                conn.commit()
        return self._open_session(uid)

    # -------------------------------
    # Sessions
    # -------------------------------

    def _open_session(self, user_id: str) -> Session:
        token = make_id("sess")
        with self.lock:
            with self._get_db_connection() as conn:
                conn.execute(
                    "INSERT INTO sessions (token, user_id, created_time) VALUES (?, ?, ?)",
                    (token, user_id, time_now())
                )
                conn.commit()
        session = self.get_session(token)
        self._emit(SIGNED_IN, session)
        return session

    def get_session(self, token: str) -> Session:
        """
        Resolve a session token (with or without a "Bearer " prefix).

        Raises:
            AuthError: if the token is missing or unknown
        """
        token = _strip_bearer(token)
        if not token:
            raise AuthError("Authorization token is required")
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT u.id, u.email, u.phone, u.name FROM sessions s JOIN users u ON u.id = s.user_id "
                "WHERE s.token = ?",
                (token,)
            )
            row = cursor.fetchone()
        if not row:
            raise AuthError("Invalid or expired session token")
        user_id, email, phone, name = row
        metadata = {"name": name}
        if phone:
            metadata["phone"] = phone
        return Session(token, user_id, email or "", metadata)

    def sign_out(self, token: str) -> bool:
        token = _strip_bearer(token)
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM sessions WHERE token = ?", (token,))
                conn.commit()
                removed = cursor.rowcount > 0
        if removed:
            self._emit(SIGNED_OUT, None)
        return removed

    def count_users(self) -> int:
        with self._get_db_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]


class Storage:
    """
    Metadata store for profiles, notes, attachments and activity logs.

    Row-level rules are evaluated on every call from the caller's profile:
    - notes and attachments are readable by any active account
    - notes, attachments and other people's profiles are writable by active admins
    - activity rows can be appended by any signed-in caller for themselves
    Denials raise Unauthorized; the viewer treats them like NotFound.
    """

    def __init__(self, db_path: str = "notes.db"):
        self.db_path = db_path
        self.lock = threading.Lock()
        self._create_tables()

    @contextlib.contextmanager
    def _get_db_connection(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.execute('PRAGMA journal_mode=WAL;')
        conn.execute('PRAGMA foreign_keys=ON;')
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise NetworkError(f"notes database unavailable: {e}") from e
        finally:
            conn.close()

    def _create_tables(self):
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT,
                name TEXT,
                role TEXT NOT NULL DEFAULT 'student',
                status TEXT NOT NULL DEFAULT 'pending',
                avatar_url TEXT,
                created_at TEXT NOT NULL
            )
            """)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                subject TEXT,
                semester TEXT,
                body TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                note_id TEXT NOT NULL,
                name TEXT NOT NULL,
                path TEXT NOT NULL UNIQUE,
                mime_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (note_id) REFERENCES notes (id)
            )
            """)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS activity_logs (
                id TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                note_id TEXT NOT NULL,
                user_id TEXT,
                created_at TEXT NOT NULL
            )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes(updated_at DESC)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_attachments_note_id ON attachments(note_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_note_id ON activity_logs(note_id)")
            conn.commit()

    # -------------------------------
    # Access rules
    # -------------------------------

    def _profile(self, user_id: str) -> Optional[Account]:
        with self._get_db_connection() as conn:
            row = conn.execute(
                "SELECT id, email, name, role, status, created_at, avatar_url FROM profiles WHERE id = ?",
                (user_id,)
            ).fetchone()
        return Account(*row) if row else None

    def require_active(self, caller: Optional[Session]) -> Account:
        if caller is None:
            raise Unauthorized("anonymous access denied")
        account = self._profile(caller.user_id)
        if account is None or not account.is_active:
            raise Unauthorized("account is not active")
        return account

    def require_admin(self, caller: Optional[Session]) -> Account:
        account = self.require_active(caller)
        if account.role != ROLE_ADMIN:
            raise Unauthorized("admin role required")
        return account

    # -------------------------------
    # Profiles
    # -------------------------------

    def ensure_profile(self, caller: Session) -> Account:
        """
        Make sure there is a profiles row for the caller.

        Safe to call on every sign-in: email and name are refreshed, role and
        status keep whatever an admin set (new rows start as pending students).
        """
        meta = caller.metadata or {}
        name = meta.get("name") or meta.get("full_name") or meta.get("display_name") or caller.email
        with self.lock:
            with self._get_db_connection() as conn:
                conn.execute(
                    "INSERT INTO profiles (id, email, name, role, status, created_at) VALUES (?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET email = excluded.email, name = excluded.name",
                    (caller.user_id, caller.email, name, ROLE_STUDENT, STATUS_PENDING, time_now())
                )
                conn.commit()
        return self._profile(caller.user_id)

    def get_profile(self, caller: Optional[Session], user_id: str) -> Account:
        if caller is None:
            raise Unauthorized("anonymous access denied")
        if caller.user_id != user_id:
            self.require_admin(caller)
        account = self._profile(user_id)
        if account is None:
            raise NotFound(f"profile {user_id}")
        return account

    def list_profiles(self, caller: Optional[Session], status: Optional[str] = None) -> List[Account]:
        self.require_admin(caller)
        sql = "SELECT id, email, name, role, status, created_at, avatar_url FROM profiles"
        params = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC"
        with self._get_db_connection() as conn:
            return [Account(*row) for row in conn.execute(sql, params).fetchall()]

    def set_profile_access(self, caller: Optional[Session], user_id: str,
                           role: Optional[str] = None, status: Optional[str] = None) -> Account:
        self.require_admin(caller)
        validate_access(role, status)
        return self._set_access(user_id, role, status)

    def _set_access(self, user_id: str, role: Optional[str], status: Optional[str]) -> Account:
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE profiles SET role = COALESCE(?, role), status = COALESCE(?, status) WHERE id = ?",
                    (role, status, user_id)
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise NotFound(f"profile {user_id}")
        logger.info("Profile %s access set to role=%s status=%s", user_id, role, status)
        return self._profile(user_id)

    def promote_by_email(self, email: str) -> Account:
        """Operator bootstrap: make an existing profile an active admin. Bypasses row rules."""
        with self._get_db_connection() as conn:
            row = conn.execute("SELECT id FROM profiles WHERE email = ?", (email.strip().lower(),)).fetchone()
        if not row:
            raise NotFound(f"profile with email {email}")
        return self._set_access(row[0], ROLE_ADMIN, STATUS_ACTIVE)

    # -------------------------------
    # Notes
    # -------------------------------

    _NOTE_COLUMNS = "id, title, subject, semester, body, created_at, updated_at"

    def get_note(self, caller: Optional[Session], note_id: str) -> Note:
        self.require_active(caller)
        with self._get_db_connection() as conn:
            row = conn.execute(f"SELECT {self._NOTE_COLUMNS} FROM notes WHERE id = ?", (note_id,)).fetchone()
        if not row:
            raise NotFound(f"note {note_id}")
        return Note(*row)

    def list_notes(self, caller: Optional[Session], subject: Optional[str] = None,
                   semester: Optional[str] = None, search: Optional[str] = None,
                   offset: int = 0, limit: int = 10) -> List[Note]:
        """Notes ordered by last update, newest first."""
        self.require_active(caller)
        clauses, params = [], []
        if subject:
            clauses.append("LOWER(subject) = LOWER(?)")
            params.append(subject)
        if semester:
            clauses.append("LOWER(semester) = LOWER(?)")
            params.append(semester)
        if search:
            clauses.append("(title LIKE ? ESCAPE '\\' OR subject LIKE ? ESCAPE '\\' OR semester LIKE ? ESCAPE '\\')")
            like = f"%{escape_like(search)}%"
            params.extend([like, like, like])
        sql = f"SELECT {self._NOTE_COLUMNS} FROM notes"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY updated_at DESC, id ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._get_db_connection() as conn:
            return [Note(*row) for row in conn.execute(sql, params).fetchall()]

    def create_note(self, caller: Optional[Session], title: str, subject: Optional[str] = None,
                    semester: Optional[str] = None, body: Optional[str] = None) -> Note:
        self.require_admin(caller)
        now = time_now()
        note = Note(make_id("note"), title, subject, semester, body, now, now)
        with self.lock:
            with self._get_db_connection() as conn:
                conn.execute(
                    f"INSERT INTO notes ({self._NOTE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (note.id, note.title, note.subject, note.semester, note.body, note.created_at, note.updated_at)
                )
                conn.commit()
        return note

    def update_note(self, caller: Optional[Session], note_id: str, title: str, subject: Optional[str],
                    semester: Optional[str], body: Optional[str]) -> Note:
        self.require_admin(caller)
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE notes SET title = ?, subject = ?, semester = ?, body = ?, updated_at = ? WHERE id = ?",
                    (title, subject, semester, body, time_now(), note_id)
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise NotFound(f"note {note_id}")
        return self.get_note(caller, note_id)

    def delete_note(self, caller: Optional[Session], note_id: str) -> bool:
        """Delete a note and its attachment rows in one transaction."""
        self.require_admin(caller)
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute("DELETE FROM attachments WHERE note_id = ?", (note_id,))
                    cursor.execute("DELETE FROM notes WHERE id = ?", (note_id,))
                    deleted = cursor.rowcount > 0
                    conn.commit()
                except sqlite3.IntegrityError as e:
                    conn.rollback()
                    raise BackendError(f"Failed to delete note: {e}") from e
        return deleted

    # -------------------------------
    # Attachments
    # -------------------------------

    _ATTACHMENT_COLUMNS = "id, note_id, name, path, mime_type, created_at"

    def list_attachments(self, caller: Optional[Session], note_id: str) -> List[Attachment]:
        """Attachments of a note, oldest first."""
        self.require_active(caller)
        with self._get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT {self._ATTACHMENT_COLUMNS} FROM attachments WHERE note_id = ? ORDER BY created_at ASC, id ASC",
                (note_id,)
            ).fetchall()
        return [Attachment(*row) for row in rows]

    def get_attachment(self, caller: Optional[Session], attachment_id: str) -> Attachment:
        self.require_active(caller)
        with self._get_db_connection() as conn:
            row = conn.execute(
                f"SELECT {self._ATTACHMENT_COLUMNS} FROM attachments WHERE id = ?", (attachment_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"attachment {attachment_id}")
        return Attachment(*row)

    def insert_attachment(self, caller: Optional[Session], note_id: str, name: str, path: str,
                          mime_type: str) -> Attachment:
        self.require_admin(caller)
        attachment = Attachment(make_id("att"), note_id, name, path, mime_type, time_now())
        with self.lock:
            with self._get_db_connection() as conn:
                try:
                    conn.execute(
                        f"INSERT INTO attachments ({self._ATTACHMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                        (attachment.id, attachment.note_id, attachment.name, attachment.path,
                         attachment.mime_type, attachment.created_at)
                    )
                    conn.execute("UPDATE notes SET updated_at = ? WHERE id = ?", (attachment.created_at, note_id))
                    conn.commit()
                except sqlite3.IntegrityError as e:
                    conn.rollback()
                    if "UNIQUE" in str(e):
                        raise Conflict(f"attachment path {path} already exists") from e
                    raise NotFound(f"note {note_id}") from e
        return attachment

    def delete_attachment(self, caller: Optional[Session], attachment_id: str) -> bool:
        self.require_admin(caller)
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
                conn.commit()
                return cursor.rowcount > 0

    # -------------------------------
    # Activity logs
    # -------------------------------

    def insert_activity(self, caller: Optional[Session], action: str, note_id: str,
                        user_id: Optional[str]) -> ActivityLogEntry:
        if caller is None:
            raise Unauthorized("anonymous activity writes are not allowed")
        if user_id is not None and user_id != caller.user_id:
            raise Unauthorized("activity can only be recorded for yourself")
        if action not in ACTIVITY_ACTIONS:
            raise BackendError(f"Unknown activity action {action!r}")
        entry = ActivityLogEntry(make_id("act"), action, note_id, user_id, time_now())
        with self._get_db_connection() as conn:
            conn.execute(
                "INSERT INTO activity_logs (id, action, note_id, user_id, created_at) VALUES (?, ?, ?, ?, ?)",
                (entry.id, entry.action, entry.note_id, entry.user_id, entry.created_at)
            )
            conn.commit()
        return entry

    def list_activity(self, caller: Optional[Session], note_id: Optional[str] = None,
                      limit: int = 100) -> List[ActivityLogEntry]:
        self.require_admin(caller)
        sql = "SELECT id, action, note_id, user_id, created_at FROM activity_logs"
        params = []
        if note_id:
            sql += " WHERE note_id = ?"
            params.append(note_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._get_db_connection() as conn:
            return [ActivityLogEntry(*row) for row in conn.execute(sql, params).fetchall()]

    def counts(self) -> Dict[str, int]:
        with self._get_db_connection() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("profiles", "notes", "attachments", "activity_logs")
            }


class FileStore:
    """
    Object storage on the local filesystem with HMAC-signed read urls.

    Signed urls look like ``{public_url}/files/{path}?expires=..&token=..``
    where token is HMAC-SHA256 over ``path:expires``. Anyone holding the url
    can read the object until it expires.
    """

    def __init__(self, root: str, secret: str, public_url: str, access: Storage,
                 clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self.secret = secret.encode()
        self.public_url = public_url.rstrip("/")
        self.access = access
        self.clock = clock
        os.makedirs(self.root, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        if not path or path.startswith("/") or ".." in Path(path).parts:
            raise NotFound(f"invalid object path {path!r}")
        return self.root / path

    def _token(self, path: str, expires: int) -> str:
        return hmac.new(self.secret, f"{path}:{expires}".encode(), hashlib.sha256).hexdigest()

    def _signature_ok(self, path: str, expires: int, token: str) -> bool:
        return hmac.compare_digest(self._token(path, expires), token or "")

    def upload(self, caller: Optional[Session], path: str, data: bytes, content_type: str = "") -> str:
        self.access.require_admin(caller)
        target = self._resolve(path)
        if target.exists():
            raise Conflict(f"object {path} already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %s (%d bytes, %s)", path, len(data), content_type or "unknown type")
        return path

    def remove(self, caller: Optional[Session], paths: List[str]) -> int:
        self.access.require_admin(caller)
        removed = 0
        for path in paths:
            target = self._resolve(path)
            if target.exists():
                target.unlink()
                removed += 1
        return removed

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def create_signed_url(self, caller: Optional[Session], path: str, ttl_seconds: int) -> str:
        self.access.require_active(caller)
        if not self._resolve(path).exists():
            raise NotFound(f"object {path}")
        # rounded up so the url never expires before signed time + ttl
        expires = math.ceil(self.clock()) + ttl_seconds
        return f"{self.public_url}/files/{quote(path)}?expires={expires}&token={self._token(path, expires)}"

    def owns_url(self, path: str, url: str) -> bool:
        """True if `url` is an unexpired url this signer issued for `path`."""
        prefix = f"{self.public_url}/files/{quote(path)}?"
        if not url or not url.startswith(prefix):
            return False
        query = parse_qs(url[len(prefix):])
        try:
            expires = int(query["expires"][0])
            token = query["token"][0]
        except (KeyError, IndexError, ValueError):
            return False
        return self._signature_ok(path, expires, token) and self.clock() <= expires

    def verify(self, path: str, expires: int, token: str) -> bytes:
        """Return the object bytes for a valid, unexpired signed url."""
        if not self._signature_ok(path, expires, token):
            raise Unauthorized("bad signature")
        if self.clock() > expires:
            raise Unauthorized("signed url expired")
        target = self._resolve(path)
        if not target.exists():
            raise NotFound(f"object {path}")
        return target.read_bytes()
