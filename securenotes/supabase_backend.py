"""
Hosted collaborators backed by a Supabase project.

Same call contract as the local classes in ``services``. Access control is
not re-implemented here: every table read and write is issued with the
caller's own JWT so the project's row-level security policies decide, and
an empty result is reported as NotFound whether the row is missing or
hidden.
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from .domain import (
    ACTIVITY_ACTIONS, Account, ActivityLogEntry, Attachment, AuthError, BackendError, Conflict,
    NetworkError, Note, NotFound, Session, Unauthorized, validate_access,
)
from .password import password_strength
from .services import PHONE_PATTERN, SIGNED_IN, SIGNED_OUT, SessionListener
from .utils import escape_like, time_now

logger = logging.getLogger(__name__)

NOTE_COLUMNS = "id, title, subject, semester, body, created_at, updated_at"
ATTACHMENT_COLUMNS = "id, note_id, name, path, mime_type, created_at"
PROFILE_COLUMNS = "id, email, name, role, status, created_at, avatar_url"

DENIED_CODES = {"42501", "401", "403", "PGRST301", "PGRST302"}
CONFLICT_CODES = {"23505", "409"}


def _translate(exc: Exception) -> BackendError:
    """Map SDK and transport failures onto the collaborator error taxonomy."""
    if isinstance(exc, BackendError):
        return exc
    if isinstance(exc, httpx.TransportError):
        return NetworkError(str(exc))
    if isinstance(exc, APIError):
        if str(exc.code) in DENIED_CODES:
            return Unauthorized(exc.message or "denied")
        if str(exc.code) in CONFLICT_CODES:
            return Conflict(exc.message or "duplicate")
        return BackendError(exc.message or str(exc))
    message = str(exc)
    if "duplicate" in message.lower() or "already exists" in message.lower():
        return Conflict(message)
    if "not found" in message.lower():
        return NotFound(message)
    if "jwt" in message.lower() or "unauthorized" in message.lower():
        return Unauthorized(message)
    return BackendError(message)


def _quoted(value: str) -> str:
    """Double-quote a value inside a PostgREST logic filter so `,.:()` stay literal."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _session_from(auth_session) -> Session:
    user = auth_session.user
    return Session(auth_session.access_token, user.id, user.email or "", dict(user.user_metadata or {}))


def _note(row: Dict[str, Any]) -> Note:
    return Note(row["id"], row.get("title") or "", row.get("subject"), row.get("semester"),
                row.get("body"), row.get("created_at") or "", row.get("updated_at") or "")


def _attachment(row: Dict[str, Any]) -> Attachment:
    return Attachment(row["id"], row["note_id"], row.get("name") or "", row["path"],
                      row.get("mime_type") or "application/octet-stream", row.get("created_at") or "")


def _account(row: Dict[str, Any]) -> Account:
    return Account(row["id"], row.get("email") or "", row.get("name") or "", row.get("role") or "student",
                   row.get("status") or "pending", row.get("created_at") or "", row.get("avatar_url"))


class SupabaseProject:
    """Holds the project url/key and hands out clients scoped to a caller."""

    def __init__(self, url: str, key: str):
        self.url = url
        self.key = key
        self.client: Client = create_client(url, key)

    def client_for(self, caller: Optional[Session]) -> Client:
        if caller is None or not caller.token:
            return create_client(self.url, self.key)
        options = ClientOptions(headers={"Authorization": f"Bearer {caller.token}"})
        return create_client(self.url, self.key, options=options)


class SupabaseAuth:
    """Identity provider over Supabase Auth."""

    def __init__(self, project: SupabaseProject):
        self.project = project
        self.client = project.client

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        def relay(event, auth_session):
            mapped = SIGNED_OUT if event == "SIGNED_OUT" else SIGNED_IN
            try:
                callback(mapped, _session_from(auth_session) if auth_session else None)
            except Exception:
                logger.exception("Session listener failed for %s", event)

        subscription = self.client.auth.on_auth_state_change(relay)
        return subscription.unsubscribe

    def sign_up(self, email: str, password: str, name: str = "") -> str:
        strength = password_strength(password)
        if not strength["is_strong_enough"]:
            raise AuthError(f"Password is too weak ({strength['label']})")
        try:
            response = self.client.auth.sign_up({
                "email": email.strip().lower(),
                "password": password,
                "options": {"data": {"name": name}},
            })
        except Exception as e:
            raise AuthError(str(e)) from e
        if not response.user:
            raise AuthError("Sign up did not return a user")
        return response.user.id

    def sign_in_with_password(self, email: str, password: str) -> Session:
        try:
            response = self.client.auth.sign_in_with_password({"email": email.strip().lower(), "password": password})
        except Exception as e:
            raise AuthError(str(e)) from e
        if not response.session:
            raise AuthError("Invalid email or password")
        return _session_from(response.session)

    def send_otp(self, phone: str) -> None:
        if not PHONE_PATTERN.match(phone.strip()):
            raise AuthError("Invalid phone number")
        try:
            self.client.auth.sign_in_with_otp({"phone": phone.strip()})
        except Exception as e:
            raise AuthError(str(e)) from e

    def verify_otp(self, phone: str, code: str) -> Session:
        try:
            response = self.client.auth.verify_otp({"phone": phone.strip(), "token": code.strip(), "type": "sms"})
        except Exception as e:
            raise AuthError(str(e)) from e
        if not response.session:
            raise AuthError("Invalid code")
        return _session_from(response.session)

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        try:
            response = self.client.auth.sign_in_with_oauth({
                "provider": provider,
                "options": {"redirect_to": redirect_to},
            })
        except Exception as e:
            raise AuthError(str(e)) from e
        return response.url

    def get_session(self, token: str) -> Session:
        if token and token.startswith("Bearer "):
            token = token[7:]
        if not token:
            raise AuthError("Authorization token is required")
        try:
            response = self.client.auth.get_user(token)
        except Exception as e:
            raise AuthError("Invalid or expired session token") from e
        if not response or not response.user:
            raise AuthError("Invalid or expired session token")
        user = response.user
        return Session(token, user.id, user.email or "", dict(user.user_metadata or {}))

    def sign_out(self, token: str) -> bool:
        try:
            self.client.auth.admin.sign_out(token)
        except Exception as e:
            logger.warning("Sign out failed: %s", e)
            return False
        return True


class SupabaseStore:
    """Metadata store over PostgREST; row-level security does the authorization."""

    def __init__(self, project: SupabaseProject):
        self.project = project

    def _run(self, caller: Optional[Session], build):
        try:
            return build(self.project.client_for(caller)).execute().data or []
        except Exception as e:
            raise _translate(e) from e

    def _one(self, caller: Optional[Session], build, what: str) -> Dict[str, Any]:
        rows = self._run(caller, build)
        if not rows:
            raise NotFound(what)
        return rows[0]

    # profiles

    def ensure_profile(self, caller: Session) -> Account:
        meta = caller.metadata or {}
        name = meta.get("name") or meta.get("full_name") or meta.get("display_name") or caller.email
        # role/status are omitted so database defaults apply and existing values survive
        row = self._one(caller, lambda c: c.table("profiles").upsert(
            {"id": caller.user_id, "email": caller.email, "name": name}, on_conflict="id"
        ), f"profile {caller.user_id}")
        return _account(row)

    def get_profile(self, caller: Optional[Session], user_id: str) -> Account:
        return _account(self._one(caller, lambda c: c.table("profiles").select(PROFILE_COLUMNS)
                                  .eq("id", user_id).limit(1), f"profile {user_id}"))

    def list_profiles(self, caller: Optional[Session], status: Optional[str] = None) -> List[Account]:
        def build(c):
            query = c.table("profiles").select(PROFILE_COLUMNS)
            if status:
                query = query.eq("status", status)
            return query.order("created_at")
        return [_account(row) for row in self._run(caller, build)]

    def set_profile_access(self, caller: Optional[Session], user_id: str,
                           role: Optional[str] = None, status: Optional[str] = None) -> Account:
        validate_access(role, status)
        changes = {k: v for k, v in (("role", role), ("status", status)) if v is not None}
        if not changes:
            return self.get_profile(caller, user_id)
        return _account(self._one(caller, lambda c: c.table("profiles").update(changes).eq("id", user_id),
                                  f"profile {user_id}"))

    # notes

    def get_note(self, caller: Optional[Session], note_id: str) -> Note:
        return _note(self._one(caller, lambda c: c.table("notes").select(NOTE_COLUMNS)
                               .eq("id", note_id).limit(1), f"note {note_id}"))

    def list_notes(self, caller: Optional[Session], subject: Optional[str] = None,
                   semester: Optional[str] = None, search: Optional[str] = None,
                   offset: int = 0, limit: int = 10) -> List[Note]:
        def build(c):
            query = c.table("notes").select(NOTE_COLUMNS)
            if subject:
                query = query.ilike("subject", escape_like(subject))
            if semester:
                query = query.ilike("semester", escape_like(semester))
            if search:
                like = _quoted(f"%{escape_like(search)}%")
                query = query.or_(f"title.ilike.{like},subject.ilike.{like},semester.ilike.{like}")
            return query.order("updated_at", desc=True).range(offset, offset + limit - 1)
        return [_note(row) for row in self._run(caller, build)]

    def create_note(self, caller: Optional[Session], title: str, subject: Optional[str] = None,
                    semester: Optional[str] = None, body: Optional[str] = None) -> Note:
        payload = {"title": title, "subject": subject, "semester": semester, "body": body}
        return _note(self._one(caller, lambda c: c.table("notes").insert(payload), "new note"))

    def update_note(self, caller: Optional[Session], note_id: str, title: str, subject: Optional[str],
                    semester: Optional[str], body: Optional[str]) -> Note:
        payload = {"title": title, "subject": subject, "semester": semester, "body": body, "updated_at": time_now()}
        return _note(self._one(caller, lambda c: c.table("notes").update(payload).eq("id", note_id),
                               f"note {note_id}"))

    def delete_note(self, caller: Optional[Session], note_id: str) -> bool:
        self._run(caller, lambda c: c.table("attachments").delete().eq("note_id", note_id))
        return bool(self._run(caller, lambda c: c.table("notes").delete().eq("id", note_id)))

    # attachments

    def list_attachments(self, caller: Optional[Session], note_id: str) -> List[Attachment]:
        rows = self._run(caller, lambda c: c.table("attachments").select(ATTACHMENT_COLUMNS)
                         .eq("note_id", note_id).order("created_at").order("id"))
        return [_attachment(row) for row in rows]

    def get_attachment(self, caller: Optional[Session], attachment_id: str) -> Attachment:
        return _attachment(self._one(caller, lambda c: c.table("attachments").select(ATTACHMENT_COLUMNS)
                                     .eq("id", attachment_id).limit(1), f"attachment {attachment_id}"))

    def insert_attachment(self, caller: Optional[Session], note_id: str, name: str, path: str,
                          mime_type: str) -> Attachment:
        payload = {"note_id": note_id, "name": name, "path": path, "mime_type": mime_type}
        return _attachment(self._one(caller, lambda c: c.table("attachments").insert(payload), "new attachment"))

    def delete_attachment(self, caller: Optional[Session], attachment_id: str) -> bool:
        return bool(self._run(caller, lambda c: c.table("attachments").delete().eq("id", attachment_id)))

    # activity

    def insert_activity(self, caller: Optional[Session], action: str, note_id: str,
                        user_id: Optional[str]) -> ActivityLogEntry:
        if action not in ACTIVITY_ACTIONS:
            raise BackendError(f"Unknown activity action {action!r}")
        payload = {"action": action, "note_id": note_id, "user_id": user_id}
        row = self._one(caller, lambda c: c.table("activity_logs").insert(payload), "new activity")
        return ActivityLogEntry(row["id"], row["action"], row["note_id"], row.get("user_id"),
                                row.get("created_at") or "")

    def list_activity(self, caller: Optional[Session], note_id: Optional[str] = None,
                      limit: int = 100) -> List[ActivityLogEntry]:
        def build(c):
            query = c.table("activity_logs").select("id, action, note_id, user_id, created_at")
            if note_id:
                query = query.eq("note_id", note_id)
            return query.order("created_at", desc=True).limit(limit)
        return [ActivityLogEntry(r["id"], r["action"], r["note_id"], r.get("user_id"), r.get("created_at") or "")
                for r in self._run(caller, build)]


class SupabaseFiles:
    """Object storage bucket and url signer."""

    def __init__(self, project: SupabaseProject, bucket: str):
        self.project = project
        self.bucket = bucket

    def _bucket(self, caller: Optional[Session]):
        return self.project.client_for(caller).storage.from_(self.bucket)

    def upload(self, caller: Optional[Session], path: str, data: bytes, content_type: str = "") -> str:
        options = {"cache-control": "3600", "upsert": "false"}
        if content_type:
            options["content-type"] = content_type
        try:
            self._bucket(caller).upload(path, data, options)
        except Exception as e:
            raise _translate(e) from e
        return path

    def remove(self, caller: Optional[Session], paths: List[str]) -> int:
        if not paths:
            return 0
        try:
            removed = self._bucket(caller).remove(paths)
        except Exception as e:
            raise _translate(e) from e
        return len(removed or [])

    def create_signed_url(self, caller: Optional[Session], path: str, ttl_seconds: int) -> str:
        try:
            result = self._bucket(caller).create_signed_url(path, ttl_seconds)
        except Exception as e:
            raise _translate(e) from e
        url = (result or {}).get("signedURL") or (result or {}).get("signedUrl")
        if not url:
            raise NotFound(f"object {path}")
        return url

    def owns_url(self, path: str, url: str) -> bool:
        """True if `url` is a signed read url of this bucket for `path`. Expiry is checked by storage."""
        prefix = f"{self.project.url.rstrip('/')}/storage/v1/object/sign/{self.bucket}/"
        return bool(url) and any(url.startswith(f"{prefix}{p}?") for p in {path, quote(path)})
