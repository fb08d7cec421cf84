"""
Exam session state machine.

One ExamSession owns everything a student does with one paper: the extracted
questions, their answers and feedback, per-question tutor state, navigation and
the session timer. Async operations run on the caller's event loop; responses are
applied to the question id captured when the request started and dropped if that
question no longer belongs to the session.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from config import FALLBACK_GRADE, GRADE_BOUNDARIES, QUESTION_REVEAL_DELAY_S
from services.answer_capture import is_answer_empty, is_scalar_answer
from services.document_processor import UploadedDocument
from services.exam_ai_service import (
    ExamAIService,
    ExtractionFailed,
    MarkingFailed,
    TransientAIError,
    auto_verify,
    build_study_plan,
    error_feedback,
)
from services.exam_models import ChatMessage, Feedback, MarkSchemeEntry, Phase, Question
from services.llm_service import MissingCredentialError
from services.session_store import restore

LOGGER = logging.getLogger("exam_engine.session")

FOLLOW_UP_FAILURE_TEXT = "Sorry, I couldn't answer that just now."

PageJump = Callable[[int, str], Any]
Listener = Callable[["ExamSession"], None]


@dataclass
class QuestionState:
    """Tutor state for one question; lives only as long as the question does."""

    hint: str | None = None
    explanation: str | None = None
    hint_pending: bool = False
    explain_pending: bool = False
    follow_up_pending: bool = False
    failed_messages: set[int] = field(default_factory=set)


@dataclass(frozen=True)
class SummaryStats:
    total_score: int
    total_possible: int
    percentage: int
    grade: str
    weakness_counts: dict[str, int]
    answered: int
    skipped: int


def grade_for(percentage: int) -> str:
    for threshold, grade in GRADE_BOUNDARIES:
        if percentage >= threshold:
            return grade
    return FALLBACK_GRADE


class ExamSession:
    """
    Phases: upload -> parsing -> exam -> summary -> upload.

    Args:
        ai: AI operations; a default ExamAIService when omitted.
        page_jump: Called as page_jump(page_number, surface) when the paper view
            should follow the current question or a referenced figure.
        reveal_delay: Seconds between questions appearing after extraction.
        tick_interval: Seconds per timer tick while in the exam phase.
    """

    def __init__(
        self,
        ai: ExamAIService | None = None,
        page_jump: PageJump | None = None,
        reveal_delay: float = QUESTION_REVEAL_DELAY_S,
        tick_interval: float = 1.0,
    ) -> None:
        self.ai = ai or ExamAIService()
        self.page_jump = page_jump
        self.reveal_delay = reveal_delay
        self.tick_interval = tick_interval
        self._listeners: list[Listener] = []
        self._reset_hooks: list[Callable[[], None]] = []
        self._timer: asyncio.Task | None = None
        self._generation = 0
        self._clear_state()

    def _clear_state(self) -> None:
        self.phase = Phase.UPLOAD
        self.error: str | None = None
        self.parsing_status = ""
        self.questions: list[Question] = []
        self.answers: dict[str, Any] = {}
        self.feedbacks: dict[str, Feedback] = {}
        self.skipped: set[str] = set()
        self.chats: dict[str, list[ChatMessage]] = {}
        self.mark_scheme: dict[str, MarkSchemeEntry] = {}
        self.insert_content: str | None = None
        self.current_index = 0
        self.time_elapsed = 0
        self.paper_name: str | None = None
        self.study_plan: str | None = None
        self.transient: dict[str, QuestionState] = {}
        self._marking: dict[str, Any] = {}
        self._api_key = ""

    # ──────────────────────────────────────────────────────────────
    # Observers
    # ──────────────────────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_reset_hook(self, hook: Callable[[], None]) -> None:
        self._reset_hooks.append(hook)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # ──────────────────────────────────────────────────────────────
    # Lookups
    # ──────────────────────────────────────────────────────────────

    @property
    def current_question(self) -> Question | None:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    def question(self, question_id: str) -> Question | None:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None

    def is_marking(self, question_id: str) -> bool:
        return question_id in self._marking

    def is_locked(self, question_id: str) -> bool:
        return question_id in self.feedbacks or question_id in self._marking

    def _live_state(self, question_id: str, generation: int) -> QuestionState | None:
        """Transient state for a response, or None if the response is stale."""
        if generation != self._generation:
            return None
        return self.transient.get(question_id)

    # ──────────────────────────────────────────────────────────────
    # Phase transitions
    # ──────────────────────────────────────────────────────────────

    def _set_phase(self, phase: Phase) -> None:
        if self.phase is phase:
            return
        LOGGER.info("Phase %s -> %s", self.phase.value, phase.value)
        if self.phase is Phase.EXAM:
            self._stop_timer()
        self.phase = phase
        if phase is Phase.EXAM:
            self._start_timer()

    def _start_timer(self) -> None:
        self._stop_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.create_task(self._tick())

    def _stop_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def _tick(self) -> None:
        while self.phase is Phase.EXAM:
            await asyncio.sleep(self.tick_interval)
            if self.phase is not Phase.EXAM:
                break
            self.time_elapsed += 1
            self._changed()

    def _jump_to_question_page(self, index: int) -> None:
        if self.page_jump is None or not 0 <= index < len(self.questions):
            return
        page = self.questions[index].page_number
        if page:
            self.page_jump(page, "paper")

    def _enter_exam(self, index: int = 0) -> None:
        for q in self.questions:
            self.transient.setdefault(q.id, QuestionState())
        self.current_index = index
        self._set_phase(Phase.EXAM)
        self._jump_to_question_page(index)
        self._changed()

    def _abort_parsing(self, message: str) -> bool:
        LOGGER.warning("Parsing aborted: %s", message)
        self._clear_state()
        self.error = message
        self._changed()
        return False

    def _set_status(self, status: str) -> None:
        self.parsing_status = status
        self._changed()

    async def start_parsing(
        self,
        paper: UploadedDocument | None,
        api_key: str,
        insert: UploadedDocument | None = None,
        scheme: UploadedDocument | None = None,
    ) -> bool:
        """
        Extract questions from the uploaded documents and enter the exam.

        The mark scheme is parsed alongside extraction and the insert text after
        it; both are best-effort. Any extraction failure returns the session to
        upload with `error` set and nothing from the attempt kept.

        Returns:
            True if the session entered the exam phase.
        """
        if self.phase is not Phase.UPLOAD:
            LOGGER.warning("start_parsing ignored in phase %s", self.phase.value)
            return False
        if paper is None:
            self.error = "Please upload a question paper."
            self._changed()
            return False
        if not (api_key and api_key.strip()):
            self.error = "API key is missing. Please enter your API key."
            self._changed()
            return False

        self._generation += 1
        generation = self._generation
        self._clear_state()
        self._set_phase(Phase.PARSING)
        self._set_status("AI analyzing exam paper...")

        scheme_task = asyncio.ensure_future(self._load_mark_scheme(scheme, api_key)) if scheme else None
        try:
            result = await self.ai.extract_questions(paper, insert, api_key)
        except (ExtractionFailed, MissingCredentialError) as e:
            if scheme_task is not None:
                scheme_task.cancel()
            if generation != self._generation:
                return False
            return self._abort_parsing(str(e))

        insert_content = None
        if insert is not None and generation == self._generation:
            self._set_status("Reading insert/source material...")
            try:
                insert_content = await self.ai.extract_insert_content(insert, api_key)
            except TransientAIError as e:
                LOGGER.warning("Insert text unavailable: %s", e)

        mark_scheme: dict[str, MarkSchemeEntry] = {}
        if scheme_task is not None:
            if generation == self._generation:
                self._set_status("Reading mark scheme...")
            mark_scheme = await scheme_task

        if generation != self._generation:
            LOGGER.info("Parsing result dropped: session was restarted")
            return False
        self.mark_scheme = mark_scheme
        self.insert_content = insert_content
        self.paper_name = paper.name
        self._api_key = api_key.strip()

        self._set_status("Loading questions...")
        async for _ in self._reveal_questions(result.questions):
            pass
        if generation != self._generation:
            return False
        self._set_status("Ready!")
        self._enter_exam()
        return True

    async def _load_mark_scheme(self, scheme: UploadedDocument, api_key: str) -> dict[str, MarkSchemeEntry]:
        try:
            return await self.ai.parse_mark_scheme(scheme, api_key)
        except TransientAIError as e:
            LOGGER.warning("Mark scheme unavailable: %s", e)
            return {}

    async def _reveal_questions(self, questions: list[Question]) -> AsyncIterator[Question]:
        """Append questions one at a time, pausing reveal_delay before each; stops on restart."""
        if self.phase is not Phase.PARSING or self.questions:
            LOGGER.warning("Question reveal ignored in phase %s", self.phase.value)
            return
        generation = self._generation
        for q in list(questions):
            await asyncio.sleep(self.reveal_delay)
            if generation != self._generation:
                return
            self.questions.append(q)
            self.transient[q.id] = QuestionState()
            self._changed()
            yield q

    def resume(self, snapshot: dict[str, Any], api_key: str = "") -> bool:
        """
        Restore a saved session. Only offered from the upload phase.

        Returns:
            False if the snapshot is unusable.
        """
        if self.phase is not Phase.UPLOAD:
            return False
        state = restore(snapshot)
        if state is None:
            return False
        self._generation += 1
        self._clear_state()
        self.questions = state.questions
        self.answers = state.answers
        self.feedbacks = state.feedbacks
        self.insert_content = state.insert_content
        self.skipped = state.skipped
        self.chats = state.chats
        self.mark_scheme = state.mark_scheme
        self.time_elapsed = state.time_elapsed
        self.paper_name = state.paper_name
        self._api_key = (api_key or "").strip()
        LOGGER.info("Resumed session with %d questions", len(self.questions))
        if state.current_index >= len(self.questions):
            self.current_index = len(self.questions)
            self._set_phase(Phase.SUMMARY)
            self._changed()
        else:
            self._enter_exam(state.current_index)
        return True

    def set_api_key(self, api_key: str) -> None:
        self._api_key = (api_key or "").strip()

    def restart(self) -> None:
        """Back to upload with every piece of session state discarded."""
        self._stop_timer()
        self._generation += 1
        self._clear_state()
        self._changed()

    def reset(self) -> None:
        """restart() plus clearing any saved snapshot."""
        self.restart()
        for hook in list(self._reset_hooks):
            hook()

    # ──────────────────────────────────────────────────────────────
    # Answers and marking
    # ──────────────────────────────────────────────────────────────

    def set_answer(self, question_id: str, value: Any) -> bool:
        """Store an answer; refused for unknown, marked or in-flight questions."""
        if self.question(question_id) is None or self.is_locked(question_id):
            return False
        self.answers[question_id] = value
        self._changed()
        return True

    def insert_quote(self, question_id: str, quote: str) -> bool:
        """Append a quoted passage from the insert to a text answer."""
        text = (quote or "").strip()
        existing = self.answers.get(question_id)
        if not text or (existing is not None and not is_scalar_answer(existing)):
            return False
        existing = str(existing or "")
        return self.set_answer(question_id, f'{existing}\n\n"{text}"' if existing else f'"{text}"')

    def _apply_feedback(self, question_id: str, feedback: Feedback) -> None:
        self.feedbacks[question_id] = feedback
        self.skipped.discard(question_id)
        self._changed()

    async def submit_answer(self, question_id: str | None = None) -> Feedback | None:
        """
        Mark the answer for a question (the current one by default).

        No-op for empty answers, already marked questions and questions whose
        marking is in flight. Provider failures produce a zero-score "Error
        marking." feedback. A response for an answer edited since the request
        started is discarded.
        """
        q = self.question(question_id) if question_id is not None else self.current_question
        if q is None or self.phase is not Phase.EXAM or self.is_locked(q.id):
            return None
        answer = self.answers.get(q.id)
        if is_answer_empty(q.type, answer):
            return None

        verified = auto_verify(q, answer)
        if verified is not None:
            self._apply_feedback(q.id, verified)
            return verified

        qid = q.id
        generation = self._generation
        captured = copy.deepcopy(answer)
        self._marking[qid] = captured
        self._changed()
        feedback: Feedback | None
        try:
            feedback = await self.ai.mark_answer(q, captured, self.mark_scheme.get(qid), self._api_key)
        except MarkingFailed as e:
            LOGGER.warning("%s", e)
            feedback = error_feedback(q)
        except MissingCredentialError as e:
            feedback = None
            if generation == self._generation:
                self.error = str(e)
        finally:
            if generation == self._generation:
                self._marking.pop(qid, None)

        if self._live_state(qid, generation) is None:
            LOGGER.info("Dropping marking response for %s: session changed", qid)
            return None
        if feedback is None:
            self._changed()
            return None
        if self.answers.get(qid) != captured:
            LOGGER.info("Dropping marking response for %s: answer edited during marking", qid)
            self._changed()
            return None
        self._apply_feedback(qid, feedback)
        return feedback

    # ──────────────────────────────────────────────────────────────
    # Navigation
    # ──────────────────────────────────────────────────────────────

    def next(self) -> None:
        """Advance one question; past the last one the session moves to summary."""
        if self.phase is not Phase.EXAM:
            return
        self.current_index += 1
        if self.current_index >= len(self.questions):
            self.current_index = len(self.questions)
            self._set_phase(Phase.SUMMARY)
        else:
            self._jump_to_question_page(self.current_index)
        self._changed()

    def skip(self, question_id: str | None = None) -> None:
        """Flag a question as skipped and advance. Marked or in-flight questions are not flagged."""
        if self.phase is not Phase.EXAM:
            return
        q = self.question(question_id) if question_id is not None else self.current_question
        if q is not None and not self.is_locked(q.id):
            self.skipped.add(q.id)
        self.next()

    def jump_to_question(self, index: int) -> bool:
        if self.phase is not Phase.EXAM or not 0 <= index < len(self.questions):
            return False
        self.current_index = index
        self._jump_to_question_page(index)
        self._changed()
        return True

    def show_figure(self, question_id: str) -> bool:
        """Point the paper view at the page holding a question's referenced figure."""
        q = self.question(question_id)
        if q is None or not q.figure_page or self.page_jump is None:
            return False
        self.page_jump(q.figure_page, "paper")
        return True

    # ──────────────────────────────────────────────────────────────
    # Tutor requests
    # ──────────────────────────────────────────────────────────────

    async def get_hint(self, question_id: str) -> str | None:
        q = self.question(question_id)
        state = self.transient.get(question_id)
        if q is None or state is None:
            return None
        generation = self._generation
        state.hint_pending = True
        self._changed()
        try:
            text = await self.ai.get_hint(q, self.mark_scheme.get(question_id), self._api_key)
        except (TransientAIError, MissingCredentialError) as e:
            LOGGER.info("Hint for %s unavailable: %s", question_id, e)
            text = None
        live = self._live_state(question_id, generation)
        if live is None:
            return None
        live.hint_pending = False
        if text is not None:
            live.hint = text
        self._changed()
        return text

    async def explain_feedback(self, question_id: str) -> str | None:
        q = self.question(question_id)
        state = self.transient.get(question_id)
        feedback = self.feedbacks.get(question_id)
        if q is None or state is None or feedback is None:
            return None
        generation = self._generation
        state.explain_pending = True
        self._changed()
        try:
            text = await self.ai.explain_feedback(
                q, self.answers.get(question_id), feedback, self.mark_scheme.get(question_id), self._api_key
            )
        except (TransientAIError, MissingCredentialError) as e:
            LOGGER.info("Explanation for %s unavailable: %s", question_id, e)
            text = None
        live = self._live_state(question_id, generation)
        if live is None:
            return None
        live.explain_pending = False
        if text is not None:
            live.explanation = text
        self._changed()
        return text

    async def send_follow_up(self, question_id: str, text: str) -> ChatMessage | None:
        """
        Append the student's message, then the tutor's reply or an inline
        failure entry.
        """
        q = self.question(question_id)
        state = self.transient.get(question_id)
        message = (text or "").strip()
        if q is None or state is None or not message:
            return None
        generation = self._generation
        chat = self.chats.setdefault(question_id, [])
        chat.append(ChatMessage(role="user", text=message))
        history = list(chat)
        state.follow_up_pending = True
        self._changed()
        failed = False
        try:
            reply_text = await self.ai.follow_up(
                q, self.answers.get(question_id), self.feedbacks.get(question_id), history, self._api_key
            )
        except (TransientAIError, MissingCredentialError) as e:
            LOGGER.info("Follow-up for %s failed: %s", question_id, e)
            reply_text = FOLLOW_UP_FAILURE_TEXT
            failed = True
        live = self._live_state(question_id, generation)
        if live is None:
            return None
        live.follow_up_pending = False
        reply = ChatMessage(role="ai", text=reply_text)
        chat = self.chats.setdefault(question_id, [])
        chat.append(reply)
        if failed:
            live.failed_messages.add(len(chat) - 1)
        self._changed()
        return reply

    # ──────────────────────────────────────────────────────────────
    # Summary
    # ──────────────────────────────────────────────────────────────

    def summary_stats(self) -> SummaryStats:
        total_score = sum(fb.score for fb in self.feedbacks.values())
        total_possible = sum(q.marks for q in self.questions)
        percentage = round(total_score / total_possible * 100) if total_possible else 0
        weaknesses: dict[str, int] = {}
        for fb in self.feedbacks.values():
            if fb.primary_flaw:
                weaknesses[fb.primary_flaw] = weaknesses.get(fb.primary_flaw, 0) + 1
        return SummaryStats(
            total_score=total_score,
            total_possible=total_possible,
            percentage=percentage,
            grade=grade_for(percentage),
            weakness_counts=weaknesses,
            answered=len(self.feedbacks),
            skipped=len(self.skipped),
        )

    async def generate_study_plan(self) -> str:
        """AI revision plan from the summary, or a locally built one if that fails."""
        stats = self.summary_stats()
        generation = self._generation
        try:
            plan = await self.ai.generate_study_plan(
                stats.percentage, stats.weakness_counts, len(self.questions), self._api_key
            )
        except (TransientAIError, MissingCredentialError) as e:
            LOGGER.info("Study plan falling back to local plan: %s", e)
            plan = build_study_plan(stats.percentage, stats.weakness_counts)
        if generation == self._generation:
            self.study_plan = plan
            self._changed()
        return plan
