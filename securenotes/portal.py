import logging
import mimetypes
from typing import Any, Dict, Iterable, List, Optional

from .domain import Account, ActivityLogEntry, Attachment, BackendError, Conflict, Note, Session
from .utils import clean_optional, now_millis, safe_file_name

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
UPLOAD_PATH_ATTEMPTS = 5


def attachment_path(note_id: str, file_name: str, millis: Optional[int] = None) -> str:
    """Object path for an upload: notes/{note_id}/{millis}-{safe name}."""
    stamp = millis if millis is not None else now_millis()
    return f"notes/{note_id}/{stamp}-{safe_file_name(file_name)}"


def filter_notes(notes: Iterable[Note], search: str = "", subject: str = "", semester: str = "") -> List[Note]:
    """
    Filter an already-fetched list of notes, keeping order.

    `search` is a case-insensitive substring of title, subject or semester;
    `subject` and `semester` must match exactly (ignoring case) when given.
    """
    search = (search or "").strip().lower()
    subject = (subject or "").strip().lower()
    semester = (semester or "").strip().lower()
    kept = []
    for note in notes:
        if subject and (note.subject or "").lower() != subject:
            continue
        if semester and (note.semester or "").lower() != semester:
            continue
        if search:
            haystack = " ".join(v for v in (note.title, note.subject, note.semester) if v).lower()
            if search not in haystack:
                continue
        kept.append(note)
    return kept


class Portal:
    """Main app logic: accounts, admin console and the student dashboard."""

    def __init__(self, auth, store, files, page_size: int = 10):
        self.auth = auth
        self.store = store
        self.files = files
        self.page_size = page_size

    # -------------------------------
    # Accounts
    # -------------------------------

    def register_user(self, email: str, password: str, name: str = "") -> str:
        """New accounts start as pending students until an admin activates them."""
        uid = self.auth.sign_up(email, password, name)
        self._ensure_profile(Session("", uid, email.strip().lower(), {"name": name}))
        return uid

    def login(self, email: str, password: str) -> Session:
        session = self.auth.sign_in_with_password(email, password)
        self._ensure_profile(session)
        return session

    def send_otp(self, phone: str) -> None:
        self.auth.send_otp(phone)

    def verify_otp(self, phone: str, code: str) -> Session:
        session = self.auth.verify_otp(phone, code)
        self._ensure_profile(session)
        return session

    def oauth_url(self, provider: str, redirect_to: str) -> str:
        return self.auth.oauth_url(provider, redirect_to)

    def _ensure_profile(self, session: Session) -> None:
        try:
            self.store.ensure_profile(session)
        except BackendError as e:
            logger.error("Failed to ensure profile row for %s: %s", session.user_id, e)

    def logout(self, token: str) -> bool:
        return self.auth.sign_out(token)

    def session_for(self, token: str) -> Session:
        return self.auth.get_session(token)

    def me(self, session: Session) -> Account:
        return self.store.get_profile(session, session.user_id)

    # -------------------------------
    # Student dashboard
    # -------------------------------

    def list_notes(self, session: Optional[Session], page: int = 0, subject: Optional[str] = None,
                   semester: Optional[str] = None, search: Optional[str] = None) -> Dict[str, Any]:
        if page < 0:
            raise ValueError("Page cannot be negative")
        notes = self.store.list_notes(session, subject=clean_optional(subject), semester=clean_optional(semester),
                                      search=clean_optional(search), offset=page * self.page_size,
                                      limit=self.page_size)
        return {"notes": notes, "page": page, "has_more": len(notes) == self.page_size}

    # -------------------------------
    # Admin console
    # -------------------------------

    def list_profiles(self, session: Session, status: Optional[str] = None) -> List[Account]:
        return self.store.list_profiles(session, status=status)

    def set_access(self, session: Session, user_id: str, role: Optional[str] = None,
                   status: Optional[str] = None) -> Account:
        return self.store.set_profile_access(session, user_id, role=role, status=status)

    def create_note(self, session: Session, title: str, subject: Optional[str] = None,
                    semester: Optional[str] = None, body: Optional[str] = None) -> Note:
        title = (title or "").strip()
        if not title:
            raise ValueError("Please enter a title")
        return self.store.create_note(session, title, clean_optional(subject), clean_optional(semester),
                                      clean_optional(body))

    def update_note(self, session: Session, note_id: str, title: str, subject: Optional[str] = None,
                    semester: Optional[str] = None, body: Optional[str] = None) -> Note:
        title = (title or "").strip()
        if not title:
            raise ValueError("Note title cannot be empty")
        return self.store.update_note(session, note_id, title, clean_optional(subject),
                                      clean_optional(semester), clean_optional(body))

    def delete_note(self, session: Session, note_id: str) -> bool:
        """Remove stored files, then attachment rows and the note itself."""
        attachments = self.store.list_attachments(session, note_id)
        paths = [a.path for a in attachments]
        if paths:
            self.files.remove(session, paths)
        return self.store.delete_note(session, note_id)

    def upload_attachment(self, session: Session, note_id: str, file_name: str, data: bytes,
                          content_type: Optional[str] = None) -> Attachment:
        """
        Store a file and attach it to a note.

        The object is written first; if the attachments row cannot be
        inserted the object is removed again, so rows and stored objects
        stay one-to-one.
        """
        file_name = (file_name or "").strip()
        if not file_name:
            raise ValueError("Please choose a file")
        if not data:
            raise ValueError("File is empty")
        mime_type = content_type or mimetypes.guess_type(file_name)[0] or DEFAULT_MIME_TYPE

        self.store.get_note(session, note_id)
        path = self._store_object(session, note_id, file_name, data, mime_type)
        try:
            return self.store.insert_attachment(session, note_id, file_name, path, mime_type)
        except Exception:
            logger.exception("Insert attachment failed, removing %s", path)
            try:
                self.files.remove(session, [path])
            except BackendError as cleanup_error:
                logger.error("Could not remove orphaned object %s: %s", path, cleanup_error)
            raise

    def _store_object(self, session: Session, note_id: str, file_name: str, data: bytes, mime_type: str) -> str:
        """Upload under a fresh path, moving to the next millisecond while the path is taken."""
        millis = now_millis()
        for attempt in range(UPLOAD_PATH_ATTEMPTS):
            path = attachment_path(note_id, file_name, millis + attempt)
            try:
                return self.files.upload(session, path, data, mime_type)
            except Conflict:
                logger.info("Object path %s taken, trying the next one", path)
        raise Conflict(f"Could not find a free path for {file_name}")

    def delete_attachment(self, session: Session, attachment_id: str) -> bool:
        attachment = self.store.get_attachment(session, attachment_id)
        self.files.remove(session, [attachment.path])
        return self.store.delete_attachment(session, attachment_id)

    def list_activity(self, session: Session, note_id: Optional[str] = None) -> List[ActivityLogEntry]:
        return self.store.list_activity(session, note_id=note_id)
