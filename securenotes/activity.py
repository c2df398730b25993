import asyncio
import logging
from typing import Optional, Set

from .domain import ActivityLogEntry, Session

logger = logging.getLogger(__name__)


def log_activity(store, caller: Optional[Session], action: str, note_id: str) -> Optional[ActivityLogEntry]:
    """
    Append one activity row. Never raises.

    A missed entry is an acceptable loss, so failures are recorded in the
    application log and dropped. Writes are never retried.
    """
    user_id = caller.user_id if caller else None
    try:
        return store.insert_activity(caller, action, note_id, user_id)
    except Exception as e:
        logger.warning("Failed to log %s for note %s: %s", action, note_id, e)
        return None


class ActivityDispatcher:
    """
    Fire-and-forget activity writes on the running event loop.

    Each write runs on a worker thread. Pending tasks are kept referenced so
    they are not garbage collected mid-flight, and `drain()` waits for them
    (used at shutdown and in tests).
    """

    def __init__(self, store):
        self.store = store
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, caller: Optional[Session], action: str, note_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            asyncio.to_thread(log_activity, self.store, caller, action, note_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Activity task failed: %s", error)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
