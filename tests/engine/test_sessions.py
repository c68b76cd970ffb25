"""
Session store tests — upsert semantics, recency ordering, corruption isolation
and failed writes.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from engine.errors import PersistenceFailure
from engine.sessions import ChatSession, SessionStore, format_size, generate_title


def _session(messages=None, last_chat_at=None, created_at=None, session_id=None):
    ts = last_chat_at or datetime(2026, 2, 4, 12, 0, tzinfo=timezone.utc)
    return ChatSession(
        id=session_id or uuid.uuid4(),
        title=generate_title(messages or ["User: hi"]),
        messages=list(messages or ["User: hi", "AI: hello"]),
        model_filename="Qwen2.5-0.5B-Instruct-Q4_K_M.gguf",
        created_at=created_at or ts,
        last_chat_at=ts,
    )


# ---------------------------------------------------------------------------
# Titles
# ---------------------------------------------------------------------------

class TestGenerateTitle:
    def test_long_first_user_message_is_truncated(self):
        title = generate_title(["User: Hello there, how is the long weather today please"])
        assert title == "Hello there, how is the long w..."
        assert len(title) <= 33
        assert title.endswith("...")
        assert not title.startswith("User:")

    def test_short_message_kept_whole(self):
        assert generate_title(["System: Ready!", "User: Quick one", "AI: Sure"]) == "Quick one"

    def test_exactly_thirty_chars_has_no_ellipsis(self):
        text = "a" * 30
        assert generate_title([f"User: {text}"]) == text

    def test_no_user_message(self):
        assert generate_title(["System: Ready! Chat with me."]) == "New Chat"
        assert generate_title([]) == "New Chat"

    def test_empty_user_message(self):
        assert generate_title(["User: "]) == "New Chat"


def test_format_size():
    assert format_size(0) == "0 bytes"
    assert format_size(512) == "512 bytes"
    assert format_size(2300) == "2.3 KB"
    assert format_size(1_500_000) == "1.5 MB"


def test_session_dict_round_trip():
    session = _session()
    restored = ChatSession.from_dict(json.loads(json.dumps(session.to_dict())))
    assert restored == session


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TestSessionStore:
    def test_save_same_id_twice_keeps_one_record_with_later_timestamp(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = uuid.uuid4()
        early = datetime(2026, 2, 4, 9, 0, tzinfo=timezone.utc)
        late = early + timedelta(hours=2)

        store.save(_session(session_id=sid, last_chat_at=early))
        store.save(_session(session_id=sid, last_chat_at=late, messages=["User: hi", "AI: hello", "User: more"]))

        sessions = store.list()
        assert len(sessions) == 1
        assert sessions[0].last_chat_at == late
        assert sessions[0].messages[-1] == "User: more"

    def test_update_preserves_created_at(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = uuid.uuid4()
        created = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.save(_session(session_id=sid, created_at=created, last_chat_at=created))

        store.save(_session(session_id=sid, last_chat_at=created + timedelta(days=1)))
        assert store.get(sid).created_at == created

    def test_list_sorted_by_last_chat_desc(self, tmp_path):
        store = SessionStore(tmp_path)
        base = datetime(2026, 2, 4, tzinfo=timezone.utc)
        old = store.save(_session(last_chat_at=base))
        new = store.save(_session(last_chat_at=base + timedelta(hours=3)))
        mid = store.save(_session(last_chat_at=base + timedelta(hours=1)))
        assert [s.id for s in store.list()] == [new.id, mid.id, old.id]

    def test_identical_content_is_two_records(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(_session())
        store.save(_session())
        assert len(store.list()) == 2

    def test_malformed_records_are_skipped(self, tmp_path):
        store = SessionStore(tmp_path)
        good = store.save(_session())
        (tmp_path / f"{uuid.uuid4()}.json").write_text("{ truncated", encoding="utf-8")
        (tmp_path / f"{uuid.uuid4()}.json").write_text(json.dumps({"id": "x"}), encoding="utf-8")
        (tmp_path / f"{uuid.uuid4()}.json").write_text("[1, 2]", encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignore me", encoding="utf-8")

        assert [s.id for s in store.list()] == [good.id]

    def test_delete_existing(self, tmp_path):
        store = SessionStore(tmp_path)
        session = store.save(_session())
        store.delete(session.id)
        assert store.list() == []
        assert store.get(session.id) is None

    def test_delete_missing_is_noop(self, tmp_path):
        store = SessionStore(tmp_path)
        kept = store.save(_session())
        store.delete(uuid.uuid4())
        assert [s.id for s in store.list()] == [kept.id]

    def test_size_of(self, tmp_path):
        store = SessionStore(tmp_path)
        session = store.save(_session())
        assert store.size_of(session.id) == (tmp_path / f"{session.id}.json").stat().st_size
        assert store.size_of(session.id) > 0
        assert store.size_of(uuid.uuid4()) == 0

    def test_failed_write_raises_and_leaves_listing_untouched(self, tmp_path, monkeypatch):
        store = SessionStore(tmp_path)
        sid = uuid.uuid4()
        original = store.save(_session(session_id=sid, messages=["User: original"]))

        def boom(*_args, **_kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("engine.sessions.os.replace", boom)
        with pytest.raises(PersistenceFailure):
            store.save(_session(session_id=sid, messages=["User: changed"]))
        monkeypatch.undo()

        sessions = store.list()
        assert len(sessions) == 1
        assert sessions[0].messages == original.messages
        assert not list(tmp_path.glob(".*.tmp"))

    def test_failed_update_leaves_callers_session_untouched(self, tmp_path, monkeypatch):
        store = SessionStore(tmp_path)
        sid = uuid.uuid4()
        first = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.save(_session(session_id=sid, created_at=first, last_chat_at=first))

        later = first + timedelta(days=2)
        update = _session(session_id=sid, created_at=later, last_chat_at=later)

        def boom(*_args, **_kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("engine.sessions.os.replace", boom)
        with pytest.raises(PersistenceFailure):
            store.save(update)
        assert update.created_at == later

    def test_update_returns_copy_with_original_created_at(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = uuid.uuid4()
        first = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.save(_session(session_id=sid, created_at=first, last_chat_at=first))

        later = first + timedelta(days=2)
        update = _session(session_id=sid, created_at=later, last_chat_at=later)
        saved = store.save(update)
        assert saved.created_at == first
        assert update.created_at == later

    @pytest.mark.parametrize("bad_id", ["not-a-uuid", "", "1234"])
    def test_unparseable_id_is_treated_as_absent(self, tmp_path, bad_id):
        store = SessionStore(tmp_path)
        kept = store.save(_session())
        store.delete(bad_id)
        assert store.get(bad_id) is None
        assert store.size_of(bad_id) == 0
        assert [s.id for s in store.list()] == [kept.id]

    def test_signal_emitted_after_save_and_delete(self, tmp_path):
        store = SessionStore(tmp_path)
        seen = []
        store.sig_sessions_changed.connect(lambda sessions: seen.append(len(sessions)))
        session = store.save(_session())
        store.delete(session.id)
        assert seen == [1, 0]

    def test_file_is_named_by_uuid(self, tmp_path):
        store = SessionStore(tmp_path)
        session = store.save(_session())
        data = json.loads((tmp_path / f"{session.id}.json").read_text(encoding="utf-8"))
        assert data["id"] == str(session.id)
        assert data["model_filename"] == "Qwen2.5-0.5B-Instruct-Q4_K_M.gguf"
        assert set(data) == {"id", "title", "messages", "model_filename", "created_at", "last_chat_at"}
