"""Tests for snapshot serialisation, restore and the SQLite-backed SessionStore."""

from __future__ import annotations

import asyncio

from conftest import FakeLLM
from services.exam_ai_service import ExamAIService
from services.exam_models import ChatMessage, Feedback, MarkSchemeEntry, Phase, Question
from services.exam_session import ExamSession
from services.session_store import SessionStore, restore, serialize

QUESTIONS = [
    Question(id="1", section="A", type="short_text", marks=2, text="Name a noble gas.", page_number=2),
    Question(id="2", section="A", type="list", marks=2, text="List two metals.", list_count=2),
    Question(id="3", section="B", type="graph_drawing", marks=3, text="Plot the data.", graph_config={"xMin": 0}),
]


def _session(llm: FakeLLM | None = None) -> ExamSession:
    return ExamSession(ai=ExamAIService(llm or FakeLLM()), reveal_delay=0)


def _exam_session() -> ExamSession:
    session = _session()
    session.questions = list(QUESTIONS)
    session._enter_exam()
    return session


def _snapshot(**overrides) -> dict:
    snap = {
        "activeQuestions": [q.to_dict() for q in QUESTIONS],
        "userAnswers": {"1": "Neon", "2": ["iron", ""]},
        "feedbacks": {"1": {"score": 2, "totalMarks": 2, "feedback": "Correct", "rewrite": "Neon"}},
        "insertContent": "Source A",
        "currentQIndex": 1,
        "skippedQuestions": ["3"],
        "followUpChats": {"1": [{"role": "user", "text": "why?"}, {"role": "ai", "text": "because"}]},
        "markScheme": {"1": {"totalMarks": 2, "criteria": ["any noble gas"], "acceptableAnswers": []}},
        "timeElapsed": 95,
        "paperName": "paper.pdf",
        "timestamp": 1700000000000,
    }
    snap.update(overrides)
    return snap


# ──────────────────────────────────────────────────────────────
# serialize / restore
# ──────────────────────────────────────────────────────────────

class TestSerialize:
    def test_keys_and_values(self):
        session = _exam_session()
        session.answers = {"1": "Neon"}
        session.feedbacks = {"1": Feedback(score=2, total_marks=2, text="ok", rewrite="Neon")}
        session.skipped = {"3", "2"}
        session.chats = {"1": [ChatMessage(role="user", text="hi")]}
        session.mark_scheme = {"1": MarkSchemeEntry(total_marks=2, criteria=("noble gas",))}
        session.time_elapsed = 12
        snap = serialize(session)
        assert set(snap) == {
            "activeQuestions", "userAnswers", "feedbacks", "insertContent", "currentQIndex",
            "skippedQuestions", "followUpChats", "markScheme", "timeElapsed", "paperName", "timestamp",
        }
        assert snap["skippedQuestions"] == ["2", "3"]
        assert snap["feedbacks"]["1"]["score"] == 2
        assert snap["followUpChats"]["1"] == [{"role": "user", "text": "hi"}]
        assert isinstance(snap["timestamp"], int)


class TestRestore:
    def test_full_snapshot(self):
        state = restore(_snapshot())
        assert [q.id for q in state.questions] == ["1", "2", "3"]
        assert state.answers["2"] == ["iron", ""]
        assert state.feedbacks["1"].score == 2
        assert state.skipped == {"3"}
        assert state.chats["1"][1] == ChatMessage(role="ai", text="because")
        assert state.mark_scheme["1"].criteria == ("any noble gas",)
        assert state.current_index == 1
        assert state.time_elapsed == 95

    def test_no_questions_is_not_resumable(self):
        assert restore(_snapshot(activeQuestions=[])) is None
        assert restore({}) is None
        assert restore("junk") is None

    def test_index_clamped(self):
        assert restore(_snapshot(currentQIndex=99)).current_index == 3
        assert restore(_snapshot(currentQIndex=-4)).current_index == 0

    def test_malformed_index(self):
        assert restore(_snapshot(currentQIndex="abc")) is None


# ──────────────────────────────────────────────────────────────
# SessionStore
# ──────────────────────────────────────────────────────────────

class TestSessionStore:
    def test_save_load_clear(self, tmp_db):
        store = SessionStore(key="t1")
        store.save(_snapshot())
        assert store.load()["paperName"] == "paper.pdf"
        store.clear()
        assert store.load() is None

    def test_last_write_wins(self, tmp_db):
        store = SessionStore(key="t2")
        store.save(_snapshot(timeElapsed=1))
        store.save(_snapshot(timeElapsed=2))
        assert store.load()["timeElapsed"] == 2

    def test_load_resumable_requires_questions(self, tmp_db):
        store = SessionStore(key="t3")
        store.save(_snapshot(activeQuestions=[]))
        assert store.load() is not None
        assert store.load_resumable() is None

    def test_save_session_only_in_exam(self, tmp_db):
        store = SessionStore(key="t4")
        assert store.save_session(_session()) is False
        assert store.save_session(_exam_session()) is True
        assert store.load()["currentQIndex"] == 0

    def test_bound_session_autosaves_without_loop(self, tmp_db):
        store = SessionStore(key="t5")
        session = _exam_session()
        store.bind(session)
        session.set_answer("1", "Argon")
        assert store.load()["userAnswers"] == {"1": "Argon"}

    def test_changes_in_one_loop_turn_share_a_write(self, tmp_db):
        store = SessionStore(key="t6")
        session = _exam_session()
        store.bind(session)

        async def run():
            session.set_answer("1", "He")
            session.set_answer("2", ["iron", "copper"])
            session.jump_to_question(2)
            await asyncio.sleep(0)

        asyncio.run(run())
        session._stop_timer()
        assert store.write_count == 1
        snap = store.load()
        assert snap["userAnswers"] == {"1": "He", "2": ["iron", "copper"]}
        assert snap["currentQIndex"] == 2

    def test_changes_outside_exam_not_saved(self, tmp_db):
        store = SessionStore(key="t7")
        session = _session()
        store.bind(session)
        session.error = "x"
        session._changed()
        assert store.load() is None

    def test_reset_clears_restart_keeps(self, tmp_db):
        store = SessionStore(key="t8")
        session = _exam_session()
        store.bind(session)
        session.set_answer("1", "Neon")
        session.restart()
        assert store.load() is not None
        session.questions = list(QUESTIONS)
        session._enter_exam()
        session.reset()
        assert store.load() is None
        assert session.phase is Phase.UPLOAD

    def test_resume_round_trip(self, tmp_db):
        store = SessionStore(key="t9")
        store.save(_snapshot())
        session = _session()
        assert session.resume(store.load_resumable())
        assert session.phase is Phase.EXAM
        assert session.current_index == 1
        assert session.answers["1"] == "Neon"
        assert session.is_locked("1")
        assert set(session.transient) == {"1", "2", "3"}
