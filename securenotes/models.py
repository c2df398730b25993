from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr


class UserCreds(BaseModel):
    email: EmailStr
    password: str


class RegisterData(UserCreds):
    name: str = ""


class OtpRequest(BaseModel):
    phone: str


class OtpVerify(BaseModel):
    phone: str
    code: str


class NoteData(BaseModel):
    title: str
    subject: Optional[str] = None
    semester: Optional[str] = None
    body: Optional[str] = None


class ProfileAccess(BaseModel):
    role: Optional[str] = None
    status: Optional[str] = None


class OpenAttachmentRequest(BaseModel):
    """The url and signing time the client got with the note view, if any."""
    url: Optional[str] = None
    signed_at: Optional[float] = None


class UserResponse(BaseModel):
    success: bool
    user_id: str
    message: str = "Account requested. An administrator will review and activate your access."


class LoginResponse(BaseModel):
    success: bool
    token: str
    user: Dict[str, Any]
    message: str = "Login successful"


class OAuthResponse(BaseModel):
    success: bool
    url: str


class StrengthResponse(BaseModel):
    score: int
    label: str
    is_strong_enough: bool


class NoteResponse(BaseModel):
    success: bool
    note: Dict[str, Any]
    message: str = "Note operation successful"


class NotesListResponse(BaseModel):
    success: bool
    notes: List[Dict[str, Any]]
    count: int
    page: int
    has_more: bool


class NoteViewResponse(BaseModel):
    success: bool
    note: Dict[str, Any]
    attachments: List[Dict[str, Any]]
    partial: bool
    warning: Optional[str] = None
    watermark: Dict[str, Any]


class OpenAttachmentResponse(BaseModel):
    success: bool
    url: str


class AttachmentResponse(BaseModel):
    success: bool
    attachment: Dict[str, Any]
    message: str = "File uploaded and attached to the note."


class ProfileResponse(BaseModel):
    success: bool
    profile: Dict[str, Any]


class ProfilesListResponse(BaseModel):
    success: bool
    profiles: List[Dict[str, Any]]
    count: int


class ActivityListResponse(BaseModel):
    success: bool
    entries: List[Dict[str, Any]]
    count: int


class MessageResponse(BaseModel):
    success: bool
    message: str
