"""Minimal stability self-check for migrations and session snapshots."""

from __future__ import annotations

import sqlite3
import sys
import uuid
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from config import DB_PATH
from migrations.migrate import latest_migration_version, migrate_to_latest
from services.exam_models import Feedback, Phase, Question
from services.exam_session import ExamSession
from services.session_store import SessionStore, serialize


def check_migrations_idempotent() -> None:
    first = migrate_to_latest()
    second = migrate_to_latest()
    latest = latest_migration_version()
    assert second == first, f"migrate_to_latest not idempotent: {first} vs {second}"
    assert second == latest, f"schema version not latest: {second} vs {latest}"

    conn = sqlite3.connect(DB_PATH)
    try:
        row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
        assert row is not None, "meta.schema_version row missing"
        assert int(row[0]) == latest, f"DB schema_version != latest ({row[0]} vs {latest})"
        tables = {str(r[0]) for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        missing = {"meta", "session_snapshots", "operation_metrics"} - tables
        assert not missing, f"missing tables: {sorted(missing)}"
    finally:
        conn.close()


def check_snapshot_round_trip() -> None:
    store = SessionStore(key=f"selfcheck_{uuid.uuid4().hex[:8]}")
    session = ExamSession()
    session.questions = [
        Question(id="1", section="A", type="short_text", marks=2, text="Name a noble gas."),
        Question(id="2", section="A", type="list", marks=2, text="List two metals.", list_count=2),
    ]
    session.answers = {"1": "Neon", "2": ["Iron", ""]}
    session.feedbacks = {"1": Feedback(score=2, total_marks=2, text="Correct", rewrite="**Neon**")}
    session.skipped = {"2"}
    session.current_index = 1
    session.phase = Phase.EXAM
    try:
        assert store.save_session(session), "exam-phase session was not saved"
        loaded = store.load_resumable()
        assert loaded is not None, "saved snapshot not offered for resume"
        restored = ExamSession()
        assert restored.resume(loaded), "resume rejected a valid snapshot"
        keys = ("activeQuestions", "userAnswers", "feedbacks", "currentQIndex", "skippedQuestions", "followUpChats")
        before, after = serialize(session), serialize(restored)
        for key in keys:
            assert before[key] == after[key], f"snapshot round trip changed {key}"
    finally:
        store.clear()


def main() -> None:
    check_migrations_idempotent()
    check_snapshot_round_trip()
    print("self_check: OK")


if __name__ == "__main__":
    main()
