"""
Note access flow: fetch a note, sign its attachments, record the access.

`NoteAccessOrchestrator` performs no authorization of its own. The metadata
store and the url signer are the only authority; whatever they reject is
reported as NotFoundOrForbidden, exactly like a missing note, so callers
cannot tell which notes exist.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from .activity import ActivityDispatcher
from .domain import (
    ACTION_ATTACHMENT_OPEN, ACTION_NOTE_VIEW, Attachment, BackendError, InvalidRequest, NetworkError,
    NotFound, NotFoundOrForbidden, NoteView, NoteViewError, PartialAttachmentFailure,
    Session, SignedAttachment, TransientNetworkError, Unauthorized,
)
from .watermark import compose_watermark, watermark_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SIGNED_URL_TTL = 600

NO_FILES_MESSAGE = "No files available yet."
PARTIAL_MESSAGE = "Some files could not be loaded."


def view_warning(view: NoteView) -> Optional[str]:
    """Soft message for a degraded but usable view."""
    if not view.attachments:
        return NO_FILES_MESSAGE
    if view.is_partial:
        return PARTIAL_MESSAGE
    return None


def identity_label(session: Optional[Session]) -> str:
    if session is None:
        return "your account"
    return session.email or session.metadata.get("phone") or session.user_id


class NoteAccessOrchestrator:
    """Builds a renderable NoteView for one caller."""

    def __init__(self, store, signer, activity: Optional[ActivityDispatcher] = None,
                 signed_url_ttl: int = DEFAULT_SIGNED_URL_TTL, fetch_retries: int = 2,
                 retry_backoff: float = 0.25, clock: Callable[[], float] = time.time):
        self.store = store
        self.signer = signer
        self.activity = activity or ActivityDispatcher(store)
        self.signed_url_ttl = signed_url_ttl
        self.fetch_retries = fetch_retries
        self.retry_backoff = retry_backoff
        self.clock = clock

    async def _read(self, fn, *args):
        """
        Run a metadata read on a worker thread.

        NotFound and Unauthorized collapse into NotFoundOrForbidden. A
        NetworkError is retried up to `fetch_retries` times with doubling
        backoff, then surfaces as TransientNetworkError.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(fn, *args)
            except (NotFound, Unauthorized) as e:
                logger.info("Read denied or missing: %s", e)
                raise NotFoundOrForbidden() from None
            except NetworkError as e:
                if attempt >= self.fetch_retries:
                    raise TransientNetworkError(str(e)) from e
                delay = self.retry_backoff * (2 ** attempt)
                attempt += 1
                logger.warning("Read failed (%s), retry %d in %.2fs", e, attempt, delay)
                await asyncio.sleep(delay)
            except BackendError as e:
                logger.error("Read failed: %s", e)
                raise NotFoundOrForbidden() from None

    async def _sign(self, attachment: Attachment, session: Optional[Session]) -> SignedAttachment:
        # signed_at is never later than the signer's own clock
        signed_at = self.clock()
        url = await asyncio.to_thread(self.signer.create_signed_url, session, attachment.path, self.signed_url_ttl)
        if not url:
            raise NotFound(f"empty signed url for {attachment.path}")
        return SignedAttachment(attachment, url, signed_at, self.signed_url_ttl)

    async def sign_all(self, attachments: List[Attachment], session: Optional[Session]):
        """
        Sign every attachment concurrently, keeping the input order.

        Returns (signed, failures). A failed signature drops only that
        attachment; signing is never retried.
        """
        results = await asyncio.gather(*(self._sign(a, session) for a in attachments), return_exceptions=True)
        signed, failures = [], []
        for attachment, result in zip(attachments, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning("Dropping attachment %s (%s): %s", attachment.id, attachment.name, result)
                failures.append(PartialAttachmentFailure(attachment.id, attachment.name, str(result)))
            else:
                signed.append(result)
        return signed, failures

    async def load_note_view(self, note_id: str, session: Optional[Session]) -> NoteView:
        if not note_id or not str(note_id).strip():
            raise InvalidRequest("note id is required")

        note = await self._read(self.store.get_note, session, note_id)
        self.activity.dispatch(session, ACTION_NOTE_VIEW, note.id)

        attachments = await self._read(self.store.list_attachments, session, note.id)
        signed, failures = await self.sign_all(attachments, session)
        if failures:
            logger.warning("Note %s loaded with %d of %d attachments", note.id, len(signed), len(attachments))

        watermark = compose_watermark(identity_label(session), watermark_timestamp())
        return NoteView(note, signed, failures, self.clock(), watermark)

    async def open_attachment(self, note_id: str, attachment: SignedAttachment,
                              session: Optional[Session]) -> str:
        """
        Record an attachment_open and return a usable url.

        The url minted with the view is reused until the ttl window has
        passed; only then is it signed again.
        """
        if not note_id or attachment is None:
            raise InvalidRequest("note id and attachment are required")
        if attachment.note_id != note_id:
            raise NotFoundOrForbidden()

        self.activity.dispatch(session, ACTION_ATTACHMENT_OPEN, note_id)

        if not attachment.is_expired(self.clock()):
            return attachment.url
        try:
            fresh = await self._sign(attachment, session)
        except Exception as e:
            logger.warning("Could not re-sign attachment %s: %s", attachment.id, e)
            raise NotFoundOrForbidden() from None
        attachment.url = fresh.url
        attachment.signed_at = fresh.signed_at
        return attachment.url

    def _held_url_valid(self, attachment: Attachment, url: Optional[str], signed_at: Optional[float]) -> bool:
        if not url or signed_at is None:
            return False
        now = self.clock()
        if not now - self.signed_url_ttl <= signed_at <= now:
            logger.info("Ignoring held url for %s: signed_at outside the ttl window", attachment.id)
            return False
        if not self.signer.owns_url(attachment.path, url):
            logger.info("Ignoring held url for %s: not issued for this attachment", attachment.id)
            return False
        return True

    async def resolve_attachment(self, note_id: str, attachment_id: str, session: Optional[Session],
                                 url: Optional[str] = None, signed_at: Optional[float] = None) -> SignedAttachment:
        """
        Rebuild a SignedAttachment from what a client still holds.

        Used by stateless callers. A held url is kept only if it was signed
        within the ttl window and the signer recognizes it for this
        attachment; otherwise the attachment counts as expired, so
        `open_attachment` signs it again.
        """
        if not note_id or not attachment_id:
            raise InvalidRequest("note id and attachment id are required")
        row = await self._read(self.store.get_attachment, session, attachment_id)
        if row.note_id != note_id:
            raise NotFoundOrForbidden()
        if self._held_url_valid(row, url, signed_at):
            return SignedAttachment(row, url, signed_at, self.signed_url_ttl)
        return SignedAttachment(row, "", self.clock() - self.signed_url_ttl, self.signed_url_ttl)


class NoteViewer:
    """
    View state for one page showing one note at a time.

    Writes to the state are guarded: once `close()` is called, or once a newer
    `load()` has started, results of older loads are discarded.
    """

    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"

    def __init__(self, orchestrator: NoteAccessOrchestrator, session: Optional[Session]):
        self.orchestrator = orchestrator
        self.session = session
        self.status = self.LOADING
        self.view: Optional[NoteView] = None
        self.error_message: Optional[str] = None
        self.warning: Optional[str] = None
        self._alive = True
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self._alive

    def _current(self, generation: int) -> bool:
        return self._alive and generation == self._generation

    async def load(self, note_id: str) -> None:
        if not self._alive:
            return
        self._generation += 1
        generation = self._generation
        if self._task is not None and not self._task.done():
            self._task.cancel()

        self.status, self.view, self.error_message, self.warning = self.LOADING, None, None, None
        task = asyncio.get_running_loop().create_task(self.orchestrator.load_note_view(note_id, self.session))
        self._task = task
        try:
            view = await task
        except asyncio.CancelledError:
            if task.cancelled() and not self._current(generation):
                return
            raise
        except NoteViewError as e:
            if self._current(generation):
                self.status, self.error_message = self.ERROR, e.message
            return

        if not self._current(generation):
            return
        self.view = view
        self.status = self.LOADED
        self.warning = view_warning(view)

    async def open(self, attachment_id: str) -> str:
        if self.view is None:
            raise InvalidRequest("nothing loaded")
        attachment = self.view.find_attachment(attachment_id)
        if attachment is None:
            raise NotFoundOrForbidden()
        return await self.orchestrator.open_attachment(self.view.note.id, attachment, self.session)

    def close(self) -> None:
        """Navigate away: stop in-flight work and freeze the state."""
        self._alive = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
