"""Unit tests for the in-memory and SQLite session stores."""

import sqlite3
from datetime import timedelta

import pytest

from vitae.contexts.extraction.exceptions import SessionExpiredError, SessionNotFoundError
from vitae.contexts.extraction.session_store import (
    InMemorySessionStore,
    SQLiteSessionStore,
    StepResult,
    build_final_result,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path, clock):
    """Each session-store implementation, sharing one fake clock and a 2h TTL."""
    options = {"ttl": timedelta(hours=2), "preview_chars": 20, "clock": clock}
    if request.param == "memory":
        return InMemorySessionStore(**options)
    return SQLiteSessionStore(tmp_path / "sessions.db", **options)


class TestSessionLifecycle:
    """Test creation, expiry and deletion."""

    @pytest.mark.unit
    def test_create_and_get(self, store):
        session_id = store.create_session("user-1", "A" * 100, meta={"processor": "fake/scripted"})
        session = store.get_session(session_id)

        assert session.owner_id == "user-1"
        assert session.raw_text_preview == "A" * 20
        assert session.step_count == 0
        assert session.current_step == "none"
        assert session.meta == {"processor": "fake/scripted"}
        assert session.expires_at - session.created_at == timedelta(hours=2)

    @pytest.mark.unit
    @pytest.mark.parametrize("owner_id", ["", "   ", None])
    def test_owner_required(self, store, owner_id):
        with pytest.raises(ValueError):
            store.create_session(owner_id, "text")

    @pytest.mark.unit
    def test_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.get_session("does-not-exist")

    @pytest.mark.unit
    def test_expired_session_is_not_found(self, store, clock):
        """Test that reads and writes after the TTL fail as not found."""
        session_id = store.create_session("user-1", "text")
        clock.advance(hours=2, seconds=1)

        with pytest.raises(SessionExpiredError):
            store.get_session(session_id)
        with pytest.raises(SessionNotFoundError):
            store.store_step_result(session_id, "basic_info", {"name": "Ada"}, 0.6)

    @pytest.mark.unit
    def test_session_live_at_exact_expiry(self, store, clock):
        session_id = store.create_session("user-1", "text")
        clock.advance(hours=2)
        assert store.get_session(session_id).id == session_id

    @pytest.mark.unit
    def test_delete_session(self, store):
        session_id = store.create_session("user-1", "text")

        assert store.delete_session(session_id) is True
        assert store.delete_session(session_id) is False
        with pytest.raises(SessionNotFoundError):
            store.get_session(session_id)

    @pytest.mark.unit
    def test_cleanup_expired(self, store, clock):
        old_id = store.create_session("user-1", "old")
        clock.advance(hours=1)
        new_id = store.create_session("user-2", "new")
        clock.advance(hours=1, minutes=30)

        assert store.cleanup_expired() == 1
        assert store.get_session(new_id).owner_id == "user-2"
        with pytest.raises(SessionNotFoundError):
            store.get_session(old_id)


class TestStepResults:
    """Test appending step results and reading context."""

    @pytest.mark.unit
    def test_store_increments_step_count(self, store):
        session_id = store.create_session("user-1", "text")
        store.store_step_result(session_id, "basic_info", {"name": "Ada"}, 0.6)
        store.store_step_result(session_id, "professional", {"skills": ["Python"]}, 0.6, meta={"prompt_chars": 10})

        session = store.get_session(session_id)
        assert session.step_count == 2
        assert session.current_step == "professional"
        assert list(session.step_results) == ["basic_info", "professional"]
        assert session.step_results["professional"].meta == {"prompt_chars": 10}

    @pytest.mark.unit
    def test_duplicate_step_rejected(self, store):
        session_id = store.create_session("user-1", "text")
        store.store_step_result(session_id, "basic_info", {"name": "Ada"}, 0.6)

        with pytest.raises(ValueError):
            store.store_step_result(session_id, "basic_info", {"name": "Grace"}, 0.6)
        assert store.get_session(session_id).step_results["basic_info"].data == {"name": "Ada"}

    @pytest.mark.unit
    @pytest.mark.parametrize("confidence", [-0.1, 1.01])
    def test_confidence_out_of_range(self, store, confidence):
        session_id = store.create_session("user-1", "text")
        with pytest.raises(ValueError):
            store.store_step_result(session_id, "basic_info", {"name": "Ada"}, confidence)

    @pytest.mark.unit
    def test_stored_data_is_isolated_from_caller(self, store):
        """Test that mutating the caller's dict after storing does not change the session."""
        session_id = store.create_session("user-1", "text")
        data = {"name": "Ada", "skills": ["Python"]}
        store.store_step_result(session_id, "basic_info", data, 0.7)
        data["skills"].append("Injected")

        assert store.get_session(session_id).step_results["basic_info"].data["skills"] == ["Python"]

    @pytest.mark.unit
    def test_context_known_facts(self, store):
        session_id = store.create_session("user-1", "text")
        store.store_step_result(session_id, "basic_info", {"name": "Ada", "title": "Software Engineer"}, 0.7)

        context = store.get_context(session_id)
        assert context.step_count == 1
        assert context.current_step == "basic_info"
        assert context.known_facts.name == "Ada"
        assert context.known_facts.profession == "software_developer"
        assert context.known_facts.experience_level is None


class TestFinalResult:
    """Test final profile assembly."""

    @pytest.mark.unit
    def test_final_result_merges_steps(self, store):
        session_id = store.create_session("user-1", "text", meta={"processor": "fake/scripted"})
        store.store_step_result(
            session_id, "basic_info", {"name": "Ada", "title": "Engineer", "summary": "Analytical."}, 0.8
        )
        store.store_step_result(
            session_id,
            "professional",
            {"experience": [{"company": "Babbage & Co"}], "skills": {"core": ["Python"]}, "education": None},
            0.7,
        )
        store.store_step_result(session_id, "additional", {"projects": [{"name": "Note G"}], "awards": []}, 0.6)

        result = store.get_final_result(session_id)

        assert result["personal_info"]["name"] == "Ada"
        assert result["personal_info"]["current_title"] == "Engineer"
        assert result["personal_info"]["email"] is None
        assert result["summary"] == "Analytical."
        assert result["experience"] == [{"company": "Babbage & Co"}]
        assert result["education"] == []
        assert result["skills"] == ["Python"]
        assert result["projects"] == [{"name": "Note G"}]
        assert result["languages"] == []
        assert result["processing_info"]["steps_completed"] == 3
        assert result["processing_info"]["processor"] == "fake/scripted"
        assert result["processing_info"]["confidence_scores"] == {
            "basic_info": 0.8,
            "professional": 0.7,
            "additional": 0.6,
        }

    @pytest.mark.unit
    def test_final_result_is_idempotent(self, store):
        session_id = store.create_session("user-1", "text")
        store.store_step_result(session_id, "basic_info", {"name": "Ada"}, 0.6)

        first = store.get_final_result(session_id)
        first["personal_info"]["name"] = "Mutated"

        assert store.get_final_result(session_id)["personal_info"]["name"] == "Ada"
        assert store.get_final_result(session_id) == store.get_final_result(session_id)

    @pytest.mark.unit
    def test_later_step_only_fills_missing_identity(self, store):
        """Test that basic info is authoritative for identity fields."""
        session_id = store.create_session("user-1", "text")
        store.store_step_result(session_id, "basic_info", {"name": "Ada", "email": None}, 0.6)
        store.store_step_result(
            session_id, "professional", {"name": "Somebody Else", "email": "ada@example.com"}, 0.7
        )

        personal_info = store.get_final_result(session_id)["personal_info"]
        assert personal_info["name"] == "Ada"
        assert personal_info["email"] == "ada@example.com"


@pytest.mark.unit
def test_build_final_result_without_steps(clock):
    """Test that an empty session still yields every section."""
    store = InMemorySessionStore(clock=clock)
    session = store.get_session(store.create_session("user-1", "text"))

    result = build_final_result(session)
    assert result["personal_info"]["name"] is None
    assert result["skills"] == []
    assert result["processing_info"]["experience_level"] is None
    assert result["processing_info"]["steps_completed"] == 0


@pytest.mark.unit
def test_delete_session_failure_is_swallowed(clock):
    """Test that delete is best effort: storage errors are logged, not raised."""

    class BrokenDeleteStore(InMemorySessionStore):
        def _delete(self, session_id):
            raise OSError("disk unavailable")

    store = BrokenDeleteStore(clock=clock)
    session_id = store.create_session("user-1", "text")

    assert store.delete_session(session_id) is False


class TestAppendStepLiveness:
    """Test that a step is only appended to a session that is still live at write time."""

    @pytest.mark.unit
    def test_session_deleted_before_write(self, store, clock):
        """Test a delete landing between the read check and the insert."""
        session_id = store.create_session("user-1", "text")
        store.delete_session(session_id)

        result = StepResult(data={"name": "Ada"}, confidence=0.6, completed_at=clock())
        with pytest.raises(SessionNotFoundError):
            store._append_step(session_id, "basic_info", result)

    @pytest.mark.unit
    def test_session_expired_before_write(self, store, clock):
        session_id = store.create_session("user-1", "text")
        clock.advance(hours=2, seconds=1)

        result = StepResult(data={"name": "Ada"}, confidence=0.6, completed_at=clock())
        with pytest.raises(SessionExpiredError):
            store._append_step(session_id, "basic_info", result)

    @pytest.mark.unit
    def test_no_orphan_step_rows(self, tmp_path, clock):
        store = SQLiteSessionStore(tmp_path / "sessions.db", clock=clock)
        session_id = store.create_session("user-1", "text")
        store.delete_session(session_id)

        with pytest.raises(SessionNotFoundError):
            store._append_step(session_id, "basic_info", StepResult(data={}, confidence=0.5, completed_at=clock()))

        with sqlite3.connect(str(tmp_path / "sessions.db")) as conn:
            (count,) = conn.execute("SELECT COUNT(*) FROM session_steps").fetchone()
        assert count == 0
