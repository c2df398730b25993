import asyncio

from securenotes.activity import ActivityDispatcher, log_activity
from securenotes.domain import ACTION_NOTE_VIEW, BackendError, Session

SESSION = Session("tok", "user-1", "student@example.edu")


class RecordingStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.rows = []

    def insert_activity(self, caller, action, note_id, user_id):
        if self.fail:
            raise BackendError("write rejected")
        self.rows.append((action, note_id, user_id))
        return self.rows[-1]


def test_log_activity_records_caller():
    store = RecordingStore()
    log_activity(store, SESSION, ACTION_NOTE_VIEW, "n1")
    log_activity(store, None, ACTION_NOTE_VIEW, "n1")
    assert store.rows == [(ACTION_NOTE_VIEW, "n1", "user-1"), (ACTION_NOTE_VIEW, "n1", None)]


def test_log_activity_swallows_failures(caplog):
    assert log_activity(RecordingStore(fail=True), SESSION, ACTION_NOTE_VIEW, "n1") is None
    assert "Failed to log note_view" in caplog.text


def test_dispatcher_drains_pending_writes():
    store = RecordingStore()
    dispatcher = ActivityDispatcher(store)

    async def main():
        for note_id in ("n1", "n2", "n3"):
            dispatcher.dispatch(SESSION, ACTION_NOTE_VIEW, note_id)
        assert dispatcher.pending == 3
        await dispatcher.drain()
        assert dispatcher.pending == 0

    asyncio.run(main())
    assert sorted(row[1] for row in store.rows) == ["n1", "n2", "n3"]
