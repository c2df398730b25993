from typing import Any, Dict, List, Optional

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"

ACTION_NOTE_VIEW = "note_view"
ACTION_ATTACHMENT_OPEN = "attachment_open"
ACTIVITY_ACTIONS = (ACTION_NOTE_VIEW, ACTION_ATTACHMENT_OPEN)


def validate_access(role: Optional[str], status: Optional[str]) -> None:
    if role is not None and role not in (ROLE_STUDENT, ROLE_ADMIN):
        raise ValueError(f"Unknown role {role!r}")
    if status is not None and status not in (STATUS_PENDING, STATUS_ACTIVE):
        raise ValueError(f"Unknown status {status!r}")


class Session:
    """Identity of the caller, passed explicitly to every store call."""

    def __init__(self, token: str, user_id: str, email: str, metadata: Optional[Dict[str, Any]] = None):
        self.token = token
        self.user_id = user_id
        self.email = email
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "metadata": dict(self.metadata),
        }


class Account:
    """A row of the profiles table."""

    def __init__(self, id: str, email: str, name: str, role: str = ROLE_STUDENT,
                 status: str = STATUS_PENDING, created_at: str = "", avatar_url: Optional[str] = None):
        self.id = id
        self.email = email
        self.name = name
        self.role = role
        self.status = status
        self.created_at = created_at
        self.avatar_url = avatar_url

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN and self.status == STATUS_ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at,
        }


class Note:
    """Represents one shareable unit of course content."""

    def __init__(self, id: str, title: str, subject: Optional[str], semester: Optional[str],
                 body: Optional[str], created_at: str, updated_at: str):
        self.id = id
        self.title = title
        self.subject = subject
        self.semester = semester
        self.body = body
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "subject": self.subject,
            "semester": self.semester,
            "body": self.body,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Attachment:
    """A stored file owned by exactly one note."""

    def __init__(self, id: str, note_id: str, name: str, path: str, mime_type: str, created_at: str):
        self.id = id
        self.note_id = note_id
        self.name = name
        self.path = path
        self.mime_type = mime_type
        self.created_at = created_at

    def to_dict(self) -> Dict[str, Any]:
        # path stays private, callers only ever see signed urls
        return {
            "id": self.id,
            "note_id": self.note_id,
            "name": self.name,
            "mime_type": self.mime_type,
            "created_at": self.created_at,
        }


class SignedAttachment(Attachment):
    """Attachment plus a short-lived url. Never persisted."""

    def __init__(self, attachment: Attachment, url: str, signed_at: float, expires_in: int):
        super().__init__(attachment.id, attachment.note_id, attachment.name,
                         attachment.path, attachment.mime_type, attachment.created_at)
        self.url = url
        self.signed_at = signed_at
        self.expires_in = expires_in

    def is_expired(self, now: float) -> bool:
        return now - self.signed_at >= self.expires_in

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["url"] = self.url
        data["signed_at"] = self.signed_at
        data["expires_in"] = self.expires_in
        return data


class ActivityLogEntry:
    def __init__(self, id: str, action: str, note_id: str, user_id: Optional[str], created_at: str):
        self.id = id
        self.action = action
        self.note_id = note_id
        self.user_id = user_id
        self.created_at = created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "note_id": self.note_id,
            "user_id": self.user_id,
            "created_at": self.created_at,
        }


class PartialAttachmentFailure:
    """Diagnostic for an attachment that was dropped from a view."""

    def __init__(self, attachment_id: str, name: str, reason: str):
        self.attachment_id = attachment_id
        self.name = name
        self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        return {"attachment_id": self.attachment_id, "name": self.name, "reason": self.reason}


class NoteView:
    """Everything needed to render one note."""

    def __init__(self, note: Note, attachments: List[SignedAttachment],
                 failures: Optional[List[PartialAttachmentFailure]] = None, produced_at: float = 0.0,
                 watermark=None):
        self.note = note
        self.attachments = attachments
        self.failures = failures or []
        self.produced_at = produced_at
        self.watermark = watermark

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)

    def find_attachment(self, attachment_id: str) -> Optional[SignedAttachment]:
        for attachment in self.attachments:
            if attachment.id == attachment_id:
                return attachment
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "note": self.note.to_dict(),
            "attachments": [a.to_dict() for a in self.attachments],
            "partial": self.is_partial,
        }


# -------------------------------
# Errors
# -------------------------------

class AuthError(Exception):
    """Custom exception for authentication errors."""
    pass


class BackendError(Exception):
    """Raised by a collaborator (store, signer, identity provider)."""
    pass


class NotFound(BackendError):
    pass


class Unauthorized(BackendError):
    """The collaborator's access rules rejected the caller."""
    pass


class NetworkError(BackendError):
    """Transient failure talking to a collaborator. Safe to retry reads."""
    pass


class Conflict(BackendError):
    """A write collided with an existing row or stored object."""
    pass


class NoteViewError(Exception):
    """Terminal failure of the note viewer. `message` is safe to show users."""

    message = "Something went wrong."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.message)
        self.detail = detail


class InvalidRequest(NoteViewError):
    message = "Note not found."


class NotFoundOrForbidden(NoteViewError):
    message = "This note was not found or you do not have access to it."


class TransientNetworkError(NoteViewError):
    message = "Could not reach the server. Please try again."
