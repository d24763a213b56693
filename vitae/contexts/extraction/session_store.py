"""
Session storage for multi-step extraction runs.

A ProcessingSession bridges independent LLM calls into one pipeline run: each
completed step appends a StepResult, and later steps read the accumulated
results (plus known facts derived from them) as context.

Two implementations share the same contract:
- InMemorySessionStore: lock-guarded dict, for single-process deployments and tests
- SQLiteSessionStore: sessions and step results in SQLite (JSON columns)

Sessions expire ttl after creation. An expired session is treated as not
found for reads and writes (SessionExpiredError).
"""

import copy
import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

from vitae.contexts.extraction.exceptions import SessionExpiredError, SessionNotFoundError
from vitae.contexts.extraction.facts import (
    IDENTITY_FIELDS,
    STEP_ADDITIONAL,
    STEP_PROFESSIONAL,
    KnownFacts,
    derive_known_facts,
    flatten_skills,
    get_identity_field,
)
from vitae.contexts.extraction.logger import _log_debug, _log_warning
from vitae.utils.timestamp import from_iso, now, to_iso

DEFAULT_TTL = timedelta(hours=2)
DEFAULT_PREVIEW_CHARS = 500

# Final-result list fields -> step that produces them
LIST_FIELDS = {
    "experience": STEP_PROFESSIONAL,
    "education": STEP_PROFESSIONAL,
    "projects": STEP_ADDITIONAL,
    "certifications": STEP_ADDITIONAL,
    "awards": STEP_ADDITIONAL,
    "publications": STEP_ADDITIONAL,
    "volunteer": STEP_ADDITIONAL,
    "languages": STEP_ADDITIONAL,
}


@dataclass
class StepResult:
    """Output of one completed pipeline step."""

    data: dict
    confidence: float
    completed_at: datetime
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "data": copy.deepcopy(self.data),
            "confidence": self.confidence,
            "completed_at": to_iso(self.completed_at),
            "meta": copy.deepcopy(self.meta),
        }


@dataclass
class ProcessingSession:
    """Accumulated state of one extraction run."""

    id: str
    owner_id: str
    raw_text_preview: str
    created_at: datetime
    expires_at: datetime
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    meta: dict = field(default_factory=dict)

    @property
    def step_count(self) -> int:
        return len(self.step_results)

    @property
    def current_step(self) -> str:
        """Most recently completed step, or "none"."""
        return next(reversed(self.step_results), "none")

    def is_expired(self, at: datetime) -> bool:
        return at > self.expires_at


@dataclass
class SessionContext:
    """What a pipeline step sees: earlier results plus derived known facts."""

    step_results: Dict[str, StepResult]
    known_facts: KnownFacts
    step_count: int
    current_step: str


def build_final_result(session: ProcessingSession) -> dict:
    """
    Merge a session's step results into the final profile.

    Pure function of the stored results: repeated calls return equal dicts.
    Identity fields come from the basic-info step; a later step may only fill
    an identity field that basic info left empty.

    Returns:
        Profile dict with personal_info, summary, list sections, skills and
        processing_info
    """
    step_data = {name: result.data for name, result in session.step_results.items()}
    facts = derive_known_facts(step_data)

    personal_info = {}
    for field_name in IDENTITY_FIELDS:
        value = None
        for data in step_data.values():
            value = get_identity_field(data, field_name)
            if value is not None:
                break
        personal_info[field_name] = value

    result = {
        "personal_info": personal_info,
        "summary": personal_info["summary"],
    }
    for list_field, step_name in LIST_FIELDS.items():
        result[list_field] = _as_list(step_data.get(step_name, {}).get(list_field))
    result["skills"] = flatten_skills(step_data.get(STEP_PROFESSIONAL, {}).get("skills"))

    result["processing_info"] = {
        "session_id": session.id,
        "steps_completed": session.step_count,
        "profession": facts.profession,
        "experience_level": facts.experience_level,
        "confidence_scores": {name: step.confidence for name, step in session.step_results.items()},
        "processor": session.meta.get("processor"),
    }
    return copy.deepcopy(result)


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [value]


class SessionStore(ABC):
    """
    Base class for session stores.

    Subclasses implement the storage primitives (_insert, _load, _append_step,
    _delete, _delete_expired); validation, expiry and known-facts derivation
    live here so every store behaves the same.

    Args:
        ttl: Session lifetime after creation
        preview_chars: Cap on the stored raw-text preview
        clock: Callable returning the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        clock: Callable[[], datetime] = now,
    ):
        self.ttl = ttl
        self.preview_chars = preview_chars
        self.clock = clock

    # --- storage primitives ---

    @abstractmethod
    def _insert(self, session: ProcessingSession) -> None:
        pass

    @abstractmethod
    def _load(self, session_id: str) -> Optional[ProcessingSession]:
        pass

    @abstractmethod
    def _append_step(self, session_id: str, step_name: str, result: StepResult) -> None:
        """Append a step result; raise ValueError if step_name is already stored."""
        pass

    @abstractmethod
    def _delete(self, session_id: str) -> bool:
        pass

    @abstractmethod
    def _delete_expired(self, at: datetime) -> int:
        pass

    # --- public contract ---

    def create_session(self, owner_id: str, text_preview: str, meta: Optional[dict] = None) -> str:
        """
        Create a session and return its id.

        Raises:
            ValueError: If owner_id is empty
        """
        if not owner_id or not str(owner_id).strip():
            raise ValueError("owner_id is required to create a session")

        created_at = self.clock()
        session = ProcessingSession(
            id=uuid.uuid4().hex,
            owner_id=str(owner_id),
            raw_text_preview=(text_preview or "")[: self.preview_chars],
            created_at=created_at,
            expires_at=created_at + self.ttl,
            meta=copy.deepcopy(meta or {}),
        )
        self._insert(session)
        _log_debug(f"Created session {session.id} for owner {session.owner_id}")
        return session.id

    def get_session(self, session_id: str) -> ProcessingSession:
        """
        Load a live session.

        Raises:
            SessionNotFoundError: Unknown id
            SessionExpiredError: TTL elapsed
        """
        session = self._load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.is_expired(self.clock()):
            raise SessionExpiredError(session_id, expires_at=to_iso(session.expires_at))
        return session

    def store_step_result(
        self,
        session_id: str,
        step_name: str,
        data: dict,
        confidence: float,
        meta: Optional[dict] = None,
    ) -> None:
        """
        Append one step's result to a live session.

        Raises:
            SessionNotFoundError / SessionExpiredError: Session is not accessible
            ValueError: step_name already stored or confidence outside [0, 1]
        """
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")

        session = self.get_session(session_id)
        if step_name in session.step_results:
            raise ValueError(f"Step '{step_name}' already stored for session {session_id}")

        result = StepResult(
            data=copy.deepcopy(data),
            confidence=confidence,
            completed_at=self.clock(),
            meta=copy.deepcopy(meta or {}),
        )
        self._append_step(session_id, step_name, result)

    def get_context(self, session_id: str) -> SessionContext:
        """Earlier step results plus freshly derived known facts."""
        session = self.get_session(session_id)
        step_data = {name: result.data for name, result in session.step_results.items()}
        return SessionContext(
            step_results=session.step_results,
            known_facts=derive_known_facts(step_data),
            step_count=session.step_count,
            current_step=session.current_step,
        )

    def get_final_result(self, session_id: str) -> dict:
        """Final profile assembled from all stored step results."""
        return build_final_result(self.get_session(session_id))

    def delete_session(self, session_id: str) -> bool:
        """Best-effort delete. Failures are logged and never raised."""
        try:
            return self._delete(session_id)
        except Exception as e:
            _log_warning(f"Failed to delete session {session_id}: {e}")
            return False

    def cleanup_expired(self) -> int:
        """Delete every expired session. Returns the number removed."""
        removed = self._delete_expired(self.clock())
        if removed:
            _log_debug(f"Removed {removed} expired session(s)")
        return removed


class InMemorySessionStore(SessionStore):
    """Session store backed by a lock-guarded dict. Reads return deep copies."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._sessions: Dict[str, ProcessingSession] = {}
        self._lock = threading.RLock()

    def _insert(self, session: ProcessingSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def _load(self, session_id: str) -> Optional[ProcessingSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session is not None else None

    def _append_step(self, session_id: str, step_name: str, result: StepResult) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.is_expired(result.completed_at):
                raise SessionExpiredError(session_id, expires_at=to_iso(session.expires_at))
            if step_name in session.step_results:
                raise ValueError(f"Step '{step_name}' already stored for session {session_id}")
            session.step_results[step_name] = result

    def _delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def _delete_expired(self, at: datetime) -> int:
        with self._lock:
            expired = [sid for sid, session in self._sessions.items() if session.is_expired(at)]
            for session_id in expired:
                del self._sessions[session_id]
            return len(expired)


class SQLiteSessionStore(SessionStore):
    """
    Session store persisted in SQLite.

    Step results live in their own table keyed by (session_id, step_name) so a
    duplicate step is rejected by the primary key. Timestamps are stored as
    UTC ISO 8601 strings, which sort chronologically.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS processing_sessions (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            raw_text_preview TEXT,
            meta TEXT,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS session_steps (
            session_id TEXT NOT NULL,
            step_name TEXT NOT NULL,
            step_index INTEGER NOT NULL,
            data TEXT NOT NULL,
            confidence REAL NOT NULL,
            completed_at TEXT NOT NULL,
            meta TEXT,
            PRIMARY KEY (session_id, step_name)
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_expires ON processing_sessions(expires_at);
    """

    def __init__(self, db_path: Path, **kwargs):
        super().__init__(**kwargs)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success (rollback on error), always close."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _insert(self, session: ProcessingSession) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO processing_sessions (id, owner_id, raw_text_preview, meta, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.owner_id,
                    session.raw_text_preview,
                    json.dumps(session.meta),
                    to_iso(session.created_at),
                    to_iso(session.expires_at),
                ),
            )

    def _load(self, session_id: str) -> Optional[ProcessingSession]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM processing_sessions WHERE id = ?", (session_id,)).fetchone()
            step_rows = conn.execute(
                "SELECT * FROM session_steps WHERE session_id = ? ORDER BY step_index", (session_id,)
            ).fetchall()

        if row is None:
            return None

        step_results = {
            step["step_name"]: StepResult(
                data=json.loads(step["data"]),
                confidence=step["confidence"],
                completed_at=from_iso(step["completed_at"]),
                meta=json.loads(step["meta"] or "{}"),
            )
            for step in step_rows
        }
        return ProcessingSession(
            id=row["id"],
            owner_id=row["owner_id"],
            raw_text_preview=row["raw_text_preview"] or "",
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            step_results=step_results,
            meta=json.loads(row["meta"] or "{}"),
        )

    def _append_step(self, session_id: str, step_name: str, result: StepResult) -> None:
        try:
            with self._connection() as conn:
                # Liveness check and insert share one write transaction (no orphan step rows)
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT expires_at FROM processing_sessions WHERE id = ?", (session_id,)
                ).fetchone()
                if row is None:
                    raise SessionNotFoundError(session_id)
                if row["expires_at"] < to_iso(result.completed_at):
                    raise SessionExpiredError(session_id, expires_at=row["expires_at"])

                (count,) = conn.execute(
                    "SELECT COUNT(*) FROM session_steps WHERE session_id = ?", (session_id,)
                ).fetchone()
                conn.execute(
                    "INSERT INTO session_steps "
                    "(session_id, step_name, step_index, data, confidence, completed_at, meta) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        step_name,
                        count,
                        json.dumps(result.data),
                        result.confidence,
                        to_iso(result.completed_at),
                        json.dumps(result.meta),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Step '{step_name}' already stored for session {session_id}") from e

    def _delete(self, session_id: str) -> bool:
        with self._connection() as conn:
            conn.execute("DELETE FROM session_steps WHERE session_id = ?", (session_id,))
            deleted = conn.execute("DELETE FROM processing_sessions WHERE id = ?", (session_id,)).rowcount
        return deleted > 0

    def _delete_expired(self, at: datetime) -> int:
        cutoff = to_iso(at)
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM session_steps WHERE session_id IN "
                "(SELECT id FROM processing_sessions WHERE expires_at < ?)",
                (cutoff,),
            )
            removed = conn.execute("DELETE FROM processing_sessions WHERE expires_at < ?", (cutoff,)).rowcount
        return removed
