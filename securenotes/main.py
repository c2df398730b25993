"""
FastAPI application for SecureNotes.

Routes are grouped as:
- accounts: register, login (password / phone OTP / OAuth), logout
- student dashboard and note viewer
- admin console: account approval, notes, attachments, activity
- signed file downloads for the local storage backend
"""

import asyncio
import contextlib
import logging
import mimetypes
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .activity import ActivityDispatcher
from .config import BACKEND_LOCAL, Settings
from .domain import (
    AuthError, BackendError, Conflict, InvalidRequest, NetworkError, NotFound, NotFoundOrForbidden,
    NoteViewError, Session, TransientNetworkError, Unauthorized,
)
from .models import (
    ActivityListResponse, AttachmentResponse, LoginResponse, MessageResponse, NoteData,
    NoteResponse, NotesListResponse, NoteViewResponse, OAuthResponse, OpenAttachmentRequest,
    OpenAttachmentResponse, OtpRequest, OtpVerify, ProfileAccess, ProfileResponse,
    ProfilesListResponse, RegisterData, StrengthResponse, UserCreds, UserResponse,
)
from .password import password_strength
from .portal import Portal
from .utils import time_now
from .viewer import NoteAccessOrchestrator, identity_label, view_warning
from .watermark import compose_watermark, watermark_timestamp

logger = logging.getLogger(__name__)

router = APIRouter()


# -------------------------------
# Wiring
# -------------------------------

def build_services(settings: Settings):
    """Create identity provider, metadata store and file signer for the configured backend."""
    if settings.backend == BACKEND_LOCAL:
        from .services import AuthService, FileStore, Storage

        settings.data_dir.mkdir(parents=True, exist_ok=True)
        store = Storage(settings.notes_db)
        auth = AuthService(settings.users_db)
        files = FileStore(settings.files_dir, settings.signing_secret, settings.public_url, store)
    else:
        from .supabase_backend import SupabaseAuth, SupabaseFiles, SupabaseProject, SupabaseStore

        project = SupabaseProject(settings.supabase_url, settings.supabase_key)
        store = SupabaseStore(project)
        auth = SupabaseAuth(project)
        files = SupabaseFiles(project, settings.supabase_bucket)
    return auth, store, files


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("SecureNotes API starting with %s backend", app.state.settings.backend)
    yield
    await app.state.orchestrator.activity.drain()
    logger.info("SecureNotes API shutting down")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    auth, store, files = build_services(settings)

    app = FastAPI(
        title="SecureNotes API",
        description="Course notes for registered students, with signed file access",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.portal = Portal(auth, store, files, page_size=settings.page_size)
    app.state.orchestrator = NoteAccessOrchestrator(
        store, files, ActivityDispatcher(store),
        signed_url_ttl=settings.signed_url_ttl,
        fetch_retries=settings.fetch_retries,
        retry_backoff=settings.retry_backoff,
    )
    app.state.files = files
    app.include_router(router)
    return app


# -------------------------------
# Dependencies
# -------------------------------

def get_portal(request: Request) -> Portal:
    return request.app.state.portal


def get_orchestrator(request: Request) -> NoteAccessOrchestrator:
    return request.app.state.orchestrator


def current_session(request: Request, authorization: Optional[str] = Header(None)) -> Optional[Session]:
    """Resolve the Authorization header. No header means an anonymous caller."""
    if not authorization:
        return None
    try:
        return request.app.state.portal.session_for(authorization)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


def require_session(session: Optional[Session] = Depends(current_session)) -> Session:
    if session is None:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    return session


def view_error(e: NoteViewError) -> HTTPException:
    if isinstance(e, InvalidRequest):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, TransientNetworkError):
        return HTTPException(status_code=503, detail=e.message)
    return HTTPException(status_code=404, detail=NotFoundOrForbidden.message)


def backend_error(e: BackendError) -> HTTPException:
    if isinstance(e, Unauthorized):
        return HTTPException(status_code=403, detail="You do not have access to this resource")
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail="Not found")
    if isinstance(e, Conflict):
        return HTTPException(status_code=409, detail="This item already exists")
    if isinstance(e, NetworkError):
        return HTTPException(status_code=503, detail="Could not reach the server. Please try again.")
    logger.error("Backend error: %s", e)
    return HTTPException(status_code=500, detail="Internal server error")


# -------------------------------
# Service
# -------------------------------

@router.get("/")
async def read_root():
    return {"message": "SecureNotes API is running", "version": "1.0.0"}


@router.get("/health")
def health_check(request: Request):
    status = {"status": "healthy", "timestamp": time_now(), "backend": request.app.state.settings.backend}
    store = request.app.state.portal.store
    if hasattr(store, "counts"):
        try:
            status["counts"] = store.counts()
        except BackendError as e:
            status["status"] = "degraded"
            status["error"] = str(e)
    return status


# -------------------------------
# Accounts
# -------------------------------

@router.get("/password/strength", response_model=StrengthResponse)
def check_password_strength(password: str = Query("")):
    return StrengthResponse(**password_strength(password))


@router.post("/register", response_model=UserResponse)
def register(data: RegisterData, portal: Portal = Depends(get_portal)):
    try:
        uid = portal.register_user(data.email, data.password, data.name)
        return UserResponse(success=True, user_id=uid)
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)
    except Exception:
        logger.exception("Registration error")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/login", response_model=LoginResponse)
def login(creds: UserCreds, portal: Portal = Depends(get_portal)):
    try:
        session = portal.login(creds.email, creds.password)
        return LoginResponse(success=True, token=session.token, user=session.to_dict())
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except BackendError as e:
        raise backend_error(e)
    except Exception:
        logger.exception("Login error")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/otp/send", response_model=MessageResponse)
def send_otp(data: OtpRequest, portal: Portal = Depends(get_portal)):
    try:
        portal.send_otp(data.phone)
        return MessageResponse(success=True, message="Code sent")
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.post("/otp/verify", response_model=LoginResponse)
def verify_otp(data: OtpVerify, portal: Portal = Depends(get_portal)):
    try:
        session = portal.verify_otp(data.phone, data.code)
        return LoginResponse(success=True, token=session.token, user=session.to_dict())
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.get("/oauth/{provider}", response_model=OAuthResponse)
def oauth_start(provider: str, redirect_to: str = Query(...), portal: Portal = Depends(get_portal)):
    try:
        return OAuthResponse(success=True, url=portal.oauth_url(provider, redirect_to))
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/logout", response_model=MessageResponse)
def logout(authorization: str = Header(...), portal: Portal = Depends(get_portal)):
    try:
        if portal.logout(authorization):
            return MessageResponse(success=True, message="Logged out successfully")
        return MessageResponse(success=False, message="Already logged out")
    except BackendError as e:
        raise backend_error(e)


@router.get("/me", response_model=ProfileResponse)
def me(session: Session = Depends(require_session), portal: Portal = Depends(get_portal)):
    try:
        return ProfileResponse(success=True, profile=portal.me(session).to_dict())
    except BackendError as e:
        raise backend_error(e)


# -------------------------------
# Student dashboard and viewer
# -------------------------------

@router.get("/notes", response_model=NotesListResponse)
def list_notes(page: int = Query(0, ge=0), subject: Optional[str] = None, semester: Optional[str] = None,
               q: Optional[str] = None, session: Optional[Session] = Depends(current_session),
               portal: Portal = Depends(get_portal)):
    try:
        result = portal.list_notes(session, page=page, subject=subject, semester=semester, search=q)
        notes = [n.to_dict() for n in result["notes"]]
        return NotesListResponse(success=True, notes=notes, count=len(notes), page=result["page"],
                                 has_more=result["has_more"])
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.get("/notes/{note_id}", response_model=NoteViewResponse)
async def view_note(note_id: str, session: Optional[Session] = Depends(current_session),
                    orchestrator: NoteAccessOrchestrator = Depends(get_orchestrator)):
    try:
        view = await orchestrator.load_note_view(note_id, session)
    except NoteViewError as e:
        raise view_error(e)
    data = view.to_dict()
    return NoteViewResponse(success=True, note=data["note"], attachments=data["attachments"],
                            partial=data["partial"], warning=view_warning(view),
                            watermark=view.watermark.to_dict())


@router.post("/notes/{note_id}/attachments/{attachment_id}/open", response_model=OpenAttachmentResponse)
async def open_attachment(note_id: str, attachment_id: str, held: Optional[OpenAttachmentRequest] = None,
                          session: Optional[Session] = Depends(current_session),
                          orchestrator: NoteAccessOrchestrator = Depends(get_orchestrator)):
    held = held or OpenAttachmentRequest()
    try:
        attachment = await orchestrator.resolve_attachment(note_id, attachment_id, session, held.url, held.signed_at)
        url = await orchestrator.open_attachment(note_id, attachment, session)
    except NoteViewError as e:
        raise view_error(e)
    return OpenAttachmentResponse(success=True, url=url)


@router.get("/watermark.svg")
def watermark_image(session: Session = Depends(require_session)):
    watermark = compose_watermark(identity_label(session), watermark_timestamp())
    return Response(content=watermark.svg, media_type="image/svg+xml", headers={"Cache-Control": "no-store"})


@router.get("/files/{path:path}")
def download_file(path: str, request: Request, expires: int = Query(...), token: str = Query(...)):
    files = request.app.state.files
    if not hasattr(files, "verify"):
        raise HTTPException(status_code=404, detail="Not found")
    try:
        data = files.verify(path, expires, token)
    except Unauthorized:
        raise HTTPException(status_code=403, detail="This link is invalid or has expired")
    except NotFound:
        raise HTTPException(status_code=404, detail="Not found")
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type,
                    headers={"Cache-Control": "no-store", "Content-Disposition": "inline"})


# -------------------------------
# Admin console
# -------------------------------

@router.get("/admin/profiles", response_model=ProfilesListResponse)
def admin_list_profiles(status: Optional[str] = None, session: Session = Depends(require_session),
                        portal: Portal = Depends(get_portal)):
    try:
        profiles = [p.to_dict() for p in portal.list_profiles(session, status)]
        return ProfilesListResponse(success=True, profiles=profiles, count=len(profiles))
    except BackendError as e:
        raise backend_error(e)


@router.patch("/admin/profiles/{user_id}", response_model=ProfileResponse)
def admin_set_access(user_id: str, access: ProfileAccess, session: Session = Depends(require_session),
                     portal: Portal = Depends(get_portal)):
    try:
        account = portal.set_access(session, user_id, role=access.role, status=access.status)
        return ProfileResponse(success=True, profile=account.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.post("/admin/notes", response_model=NoteResponse)
def admin_create_note(note: NoteData, session: Session = Depends(require_session),
                      portal: Portal = Depends(get_portal)):
    try:
        created = portal.create_note(session, note.title, note.subject, note.semester, note.body)
        return NoteResponse(success=True, note=created.to_dict(), message="Note created successfully.")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.put("/admin/notes/{note_id}", response_model=NoteResponse)
def admin_update_note(note_id: str, note: NoteData, session: Session = Depends(require_session),
                      portal: Portal = Depends(get_portal)):
    try:
        updated = portal.update_note(session, note_id, note.title, note.subject, note.semester, note.body)
        return NoteResponse(success=True, note=updated.to_dict(), message="Note updated successfully")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.delete("/admin/notes/{note_id}", response_model=MessageResponse)
def admin_delete_note(note_id: str, session: Session = Depends(require_session),
                      portal: Portal = Depends(get_portal)):
    try:
        if portal.delete_note(session, note_id):
            return MessageResponse(success=True, message="Note deleted successfully")
    except BackendError as e:
        raise backend_error(e)
    raise HTTPException(status_code=404, detail="Note not found")


@router.post("/admin/notes/{note_id}/attachments", response_model=AttachmentResponse)
async def admin_upload_attachment(note_id: str, file: UploadFile = File(...),
                                  session: Session = Depends(require_session),
                                  portal: Portal = Depends(get_portal)):
    data = await file.read()
    try:
        attachment = await asyncio.to_thread(
            portal.upload_attachment, session, note_id, file.filename or "", data, file.content_type
        )
        return AttachmentResponse(success=True, attachment=attachment.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendError as e:
        raise backend_error(e)


@router.delete("/admin/attachments/{attachment_id}", response_model=MessageResponse)
def admin_delete_attachment(attachment_id: str, session: Session = Depends(require_session),
                            portal: Portal = Depends(get_portal)):
    try:
        if portal.delete_attachment(session, attachment_id):
            return MessageResponse(success=True, message="Attachment deleted")
    except BackendError as e:
        raise backend_error(e)
    raise HTTPException(status_code=404, detail="Attachment not found")


@router.get("/admin/activity", response_model=ActivityListResponse)
def admin_list_activity(note_id: Optional[str] = None, session: Session = Depends(require_session),
                        portal: Portal = Depends(get_portal)):
    try:
        entries = [e.to_dict() for e in portal.list_activity(session, note_id)]
        return ActivityListResponse(success=True, entries=entries, count=len(entries))
    except BackendError as e:
        raise backend_error(e)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
