"""Session snapshot persistence backed by SQLite."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from config import DB_PATH, SNAPSHOT_KEY
from services.exam_models import ChatMessage, Feedback, MarkSchemeEntry, Phase, Question

LOGGER = logging.getLogger("exam_engine.store")


def _now_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat()


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


@dataclass
class RestoredState:
    """Session fields rebuilt from a snapshot."""

    questions: list[Question]
    answers: dict[str, Any] = field(default_factory=dict)
    feedbacks: dict[str, Feedback] = field(default_factory=dict)
    insert_content: str | None = None
    current_index: int = 0
    skipped: set[str] = field(default_factory=set)
    chats: dict[str, list[ChatMessage]] = field(default_factory=dict)
    mark_scheme: dict[str, MarkSchemeEntry] = field(default_factory=dict)
    time_elapsed: int = 0
    paper_name: str | None = None
    timestamp: int = 0


def serialize(session: Any) -> dict[str, Any]:
    """Snapshot of an ExamSession as a JSON-ready dict."""
    return {
        "activeQuestions": [q.to_dict() for q in session.questions],
        "userAnswers": dict(session.answers),
        "feedbacks": {qid: fb.to_dict() for qid, fb in session.feedbacks.items()},
        "insertContent": session.insert_content,
        "currentQIndex": session.current_index,
        "skippedQuestions": sorted(session.skipped),
        "followUpChats": {qid: [m.to_dict() for m in msgs] for qid, msgs in session.chats.items()},
        "markScheme": {qid: entry.to_dict() for qid, entry in session.mark_scheme.items()},
        "timeElapsed": session.time_elapsed,
        "paperName": session.paper_name,
        "timestamp": int(time.time() * 1000),
    }


def _restore_scheme(raw: Any) -> dict[str, MarkSchemeEntry]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, MarkSchemeEntry] = {}
    for qid, entry in raw.items():
        if isinstance(entry, dict):
            out[str(qid)] = MarkSchemeEntry(
                total_marks=int(entry.get("totalMarks") or 0),
                criteria=tuple(entry.get("criteria") or ()),
                acceptable_answers=tuple(entry.get("acceptableAnswers") or ()),
            )
    return out


def restore(snapshot: Any) -> RestoredState | None:
    """
    Rebuild session state from a snapshot dict.

    Returns:
        RestoredState, or None when the snapshot is malformed or has no questions.
    """
    if not isinstance(snapshot, dict):
        return None
    raw_questions = snapshot.get("activeQuestions")
    if not isinstance(raw_questions, list) or not raw_questions:
        return None
    try:
        questions = [Question.from_dict(q) for q in raw_questions]
        feedbacks = {
            str(qid): Feedback.from_dict(fb)
            for qid, fb in (snapshot.get("feedbacks") or {}).items()
            if isinstance(fb, dict)
        }
        chats = {
            str(qid): [ChatMessage.from_dict(m) for m in msgs if isinstance(m, dict)]
            for qid, msgs in (snapshot.get("followUpChats") or {}).items()
            if isinstance(msgs, list)
        }
        current_index = int(snapshot.get("currentQIndex") or 0)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        LOGGER.warning("Discarding malformed snapshot: %s", e)
        return None
    answers = snapshot.get("userAnswers")
    return RestoredState(
        questions=questions,
        answers=dict(answers) if isinstance(answers, dict) else {},
        feedbacks=feedbacks,
        insert_content=snapshot.get("insertContent"),
        current_index=max(0, min(current_index, len(questions))),
        skipped={str(s) for s in snapshot.get("skippedQuestions") or []},
        chats=chats,
        mark_scheme=_restore_scheme(snapshot.get("markScheme")),
        time_elapsed=int(snapshot.get("timeElapsed") or 0),
        paper_name=snapshot.get("paperName"),
        timestamp=int(snapshot.get("timestamp") or 0),
    )


class SessionStore:
    """
    Last-write-wins snapshot slot in the session_snapshots table.

    When bound to a session, every change while the session is in the exam phase
    schedules one write; changes within the same event-loop turn share it.
    """

    def __init__(self, key: str = SNAPSHOT_KEY) -> None:
        self.key = key
        self._pending_loop: asyncio.AbstractEventLoop | None = None
        self.write_count = 0

    def save(self, snapshot: dict[str, Any]) -> None:
        with _connect() as conn:
            conn.execute(
                """
                INSERT INTO session_snapshots (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (self.key, json.dumps(snapshot, ensure_ascii=False), _now_iso()),
            )
        self.write_count += 1

    def load(self) -> dict[str, Any] | None:
        with _connect() as conn:
            row = conn.execute("SELECT value FROM session_snapshots WHERE key=?", (self.key,)).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row["value"])
        except json.JSONDecodeError as e:
            LOGGER.warning("Stored snapshot is not valid JSON: %s", e)
            return None
        return data if isinstance(data, dict) else None

    def load_resumable(self) -> dict[str, Any] | None:
        """The stored snapshot if it can be offered for resume (at least one question)."""
        snapshot = self.load()
        return snapshot if restore(snapshot) is not None else None

    def clear(self) -> None:
        with _connect() as conn:
            conn.execute("DELETE FROM session_snapshots WHERE key=?", (self.key,))

    def save_session(self, session: Any) -> bool:
        if session.phase is not Phase.EXAM or not session.questions:
            return False
        self.save(serialize(session))
        return True

    def bind(self, session: Any) -> None:
        """Autosave session changes and clear the slot when the session is reset."""
        session.add_listener(self._on_change)
        session.add_reset_hook(self.clear)

    def _on_change(self, session: Any) -> None:
        if session.phase is not Phase.EXAM:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save_session(session)
            return
        if self._pending_loop is loop:
            return
        self._pending_loop = loop
        loop.call_soon(self._flush, session)

    def _flush(self, session: Any) -> None:
        self._pending_loop = None
        try:
            self.save_session(session)
        except sqlite3.Error as e:
            LOGGER.error("Snapshot write failed: %s", e)
