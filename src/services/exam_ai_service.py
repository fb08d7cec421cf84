"""
AI operations for an exam session: question extraction, insert text, mark scheme
parsing, marking, hints, explanations, follow-up tutoring and study plans.

Every call goes through LLMProcessor.complete and every JSON response through
parse_json_with_fixes before it is trusted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from config import (
    EXTRACTION_TEMPERATURE,
    MARKING_TEMPERATURE,
    MIN_INSERT_TEXT,
    MIN_TEXT_FOR_TEXT_EXTRACTION,
    TUTOR_TEMPERATURE,
    VISION_MODEL,
)
from services.answer_capture import is_scalar_answer, serialize_answer
from services.document_processor import PDFProcessor, UploadedDocument
from services.exam_models import (
    ChatMessage,
    Feedback,
    MarkSchemeEntry,
    Question,
    clamp_score,
    normalize_extraction_result,
    normalize_mark_scheme,
)
from services.llm_service import (
    LLMProcessor,
    ProviderError,
    parse_json_with_fixes,
    strip_code_fences,
)
from utils.metrics import log_metric

LOGGER = logging.getLogger("exam_engine.ai")


class ExtractionFailed(RuntimeError):
    """Raised when no questions could be extracted from the paper."""


class MarkingFailed(RuntimeError):
    """Raised when the marking request itself fails."""


class TransientAIError(RuntimeError):
    """Raised by best-effort calls (hint, explanation, follow-up, insert, scheme, plan)."""


AUTO_VERIFIED_TEXT = "Correct! (Auto-verified)"
MARKING_ERROR_TEXT = "Error marking."

QUESTION_SCHEMA = (
    "{\n"
    '  "metadata": {"subject": "string", "paper": "string"},\n'
    '  "questions": [\n'
    "    {\n"
    '      "id": "1a",\n'
    '      "section": "Section A",\n'
    '      "type": "multiple_choice | short_text | long_text | list | numerical | table | graph_drawing",\n'
    '      "marks": 2,\n'
    '      "pageNumber": 3,\n'
    '      "question": "full question text",\n'
    '      "options": ["only for multiple_choice"],\n'
    '      "listCount": 2,\n'
    '      "tableStructure": {"headers": ["..."], "initialData": [["prefilled or null"]]},\n'
    '      "graphConfig": {"xLabel": "...", "yLabel": "...", "xMin": 0, "xMax": 10, "yMin": 0, "yMax": 10},\n'
    '      "context": {"type": "text | figure", "title": "...", "content": "..."},\n'
    '      "relatedFigure": "Figure 2",\n'
    '      "figurePage": 4,\n'
    '      "markingRegex": "only for short exact answers, e.g. ^42$"\n'
    "    }\n"
    "  ]\n"
    "}"
)

EXTRACTION_SYSTEM_PROMPT = (
    "You extract every answerable question from an exam paper. "
    "Return ONLY valid JSON (no markdown, no extra text) matching this schema:\n"
    f"{QUESTION_SCHEMA}\n"
    "Use the paper's own question numbering for ids. Omit fields that do not apply."
)

EXTRACTION_TEXT_PROMPT = (
    "Structure the questions in the following exam paper text. "
    'Page boundaries are marked "--- Page N ---"; use them for pageNumber.'
)

EXTRACTION_VISION_PROMPT = "Extract all questions from the attached exam paper."

INSERT_NOTE = "NOTE: An insert/source booklet is also provided as the second file."

INSERT_EXTRACTION_PROMPT = (
    "Extract ALL text from this insert/source PDF so a student can quote from it. "
    "Output plain text only."
)

MARK_SCHEME_SYSTEM_PROMPT = (
    "You convert exam mark schemes into JSON. Return ONLY valid JSON:\n"
    '{"markScheme": {"<question id>": {"totalMarks": 2, "criteria": ["..."], '
    '"acceptableAnswers": ["..."]}}}'
)

MARKING_SYSTEM_PROMPT = (
    "You are a strict GCSE examiner. Mark against the scheme when one is given. "
    'Return ONLY JSON: {"score": number, "feedback": "...", "rewrite": "...", '
    '"primaryFlaw": "one short phrase naming the main weakness"}'
)

HINT_SYSTEM_PROMPT = "Provide a short, exam-specific hint. Do NOT give the full answer. Format with Markdown."
EXPLAIN_SYSTEM_PROMPT = (
    "Explain the marking decision briefly in Markdown. "
    "Focus on what was missing relative to the mark scheme."
)
TUTOR_SYSTEM_PROMPT = "Act as a friendly tutor. Keep replies concise and practical. Format with Markdown."
STUDY_PLAN_SYSTEM_PROMPT = (
    "Create a concise 3-step revision plan in Markdown that targets the repeated weaknesses listed."
)


@dataclass(frozen=True)
class ExtractionResult:
    questions: list[Question]
    metadata: dict[str, Any] = field(default_factory=dict)
    method: str = "text"


def check_regex(pattern: str, value: str) -> bool:
    """Case-insensitive search; an invalid pattern counts as no match."""
    try:
        return re.search(pattern, value, re.IGNORECASE) is not None
    except re.error as e:
        LOGGER.warning("Invalid marking regex %r: %s", pattern, e)
        return False


def auto_verify(question: Question, answer: Any) -> Feedback | None:
    """Full-marks Feedback when a scalar answer matches the question's markingRegex."""
    if not question.marking_regex or not is_scalar_answer(answer):
        return None
    trimmed = str(answer).strip()
    if not check_regex(question.marking_regex, trimmed):
        return None
    return Feedback(
        score=question.marks,
        total_marks=question.marks,
        text=AUTO_VERIFIED_TEXT,
        rewrite=f"**{trimmed}**",
        method="regex",
    )


def error_feedback(question: Question) -> Feedback:
    return Feedback(score=0, total_marks=question.marks, text=MARKING_ERROR_TEXT, rewrite="", method="error")


def build_marking_prompt(question: Question, answer: Any, scheme: MarkSchemeEntry | None) -> str:
    context = (question.context or {}).get("content") or ""
    lines = [
        f"Mark this GCSE answer. Question ({question.marks}m): {question.text}",
        f"Context: {context}",
    ]
    if question.related_figure:
        lines.append(f"Figure: {question.related_figure}")
    lines.append(f"Scheme: {json.dumps(scheme.to_dict() if scheme else {}, ensure_ascii=False)}")
    lines.append(f"Student: {serialize_answer(answer) or '(no answer)'}")
    return "\n".join(lines)


def parse_feedback_response(raw: str, marks: int) -> Feedback:
    """
    Turn a marking response into Feedback.

    Unparseable text becomes the feedback body with score 0 and rewrite "N/A".
    """
    try:
        obj = parse_json_with_fixes(raw)
    except ValueError:
        obj = None
    if not isinstance(obj, dict):
        return Feedback(score=0, total_marks=marks, text=strip_code_fences(raw), rewrite="N/A", method="degraded")
    flaw = obj.get("primaryFlaw") or obj.get("primary_flaw")
    return Feedback(
        score=clamp_score(obj.get("score"), marks),
        total_marks=marks,
        text=str(obj.get("feedback") or obj.get("text") or ""),
        rewrite=str(obj.get("rewrite") or ""),
        method="llm",
        primary_flaw=str(flaw).strip() if isinstance(flaw, str) and flaw.strip() else None,
    )


def build_study_plan(percentage: int, weakness_counts: dict[str, int]) -> str:
    """Deterministic plan used when the AI plan cannot be generated."""
    top = sorted(weakness_counts.items(), key=lambda kv: kv[1], reverse=True)[:3]
    if top:
        focus = "\n".join(
            f"- {weak} (seen {count}x): drill 2 short paragraphs per day that fix this flaw." for weak, count in top
        )
    else:
        focus = "- Mixed weaknesses: keep practising timed questions and mark them against the scheme."
    return (
        "### Quick Study Plan\n\n"
        f"Current performance: {percentage}%.\n\n"
        f"Focus areas:\n{focus}\n\n"
        "Daily loop:\n"
        "1) 15 mins: revisit a model answer and annotate what earns the marks\n"
        "2) 15 mins: write a fresh answer fixing the listed weakness\n"
        "3) 10 mins: self-mark against the scheme and refine"
    )


def _parse_extraction(raw: str, method: str) -> ExtractionResult:
    try:
        parsed = parse_json_with_fixes(raw)
    except ValueError as e:
        raise ExtractionFailed("Failed to parse AI response.") from e
    metadata, questions = normalize_extraction_result(parsed)
    if not questions:
        raise ExtractionFailed("No questions were extracted.")
    return ExtractionResult(questions=questions, metadata=metadata, method=method)


class ExamAIService:
    """AI calls for one exam session. The credential is passed per call."""

    def __init__(self, llm: LLMProcessor | None = None, pdf: PDFProcessor | None = None) -> None:
        self._llm = llm or LLMProcessor()
        self._pdf = pdf or PDFProcessor()

    async def _page_text(self, doc: UploadedDocument | None) -> str:
        if doc is None or not doc.is_pdf:
            return ""
        try:
            return await asyncio.to_thread(self._pdf.extract_marked_text, doc.data)
        except ValueError as e:
            LOGGER.info("No text layer for %s: %s", doc.name, e)
            return ""

    async def extract_questions(
        self,
        paper: UploadedDocument,
        insert: UploadedDocument | None,
        api_key: str,
    ) -> ExtractionResult:
        """
        Extract questions, trying the paper's text layer first and the attached
        documents (vision) when the text is too thin or the text pass fails.

        Raises:
            MissingCredentialError: If api_key is empty.
            ExtractionFailed: If neither pass yields at least one question.
        """
        started = time.perf_counter()
        paper_text = await self._page_text(paper)
        if len(paper_text.strip()) >= MIN_TEXT_FOR_TEXT_EXTRACTION:
            insert_text = await self._page_text(insert)
            prompt = f"{EXTRACTION_TEXT_PROMPT}\n\nPAPER TEXT:\n{paper_text}"
            if insert_text:
                prompt += f"\n\nINSERT / SOURCE TEXT:\n{insert_text}"
            try:
                raw = await self._llm.complete(
                    prompt,
                    api_key=api_key,
                    system_prompt=EXTRACTION_SYSTEM_PROMPT,
                    temperature=EXTRACTION_TEMPERATURE,
                )
                result = _parse_extraction(raw, "text")
            except (ProviderError, ExtractionFailed) as e:
                LOGGER.warning("Text-first extraction failed, falling back to vision: %s", e)
            else:
                log_metric("extract", time.perf_counter() - started, method="text", questions=len(result.questions))
                return result

        try:
            attachments = [paper.to_attachment()]
            if insert is not None:
                attachments.append(insert.to_attachment())
        except ValueError as e:
            raise ExtractionFailed(str(e)) from e
        prompt = EXTRACTION_VISION_PROMPT + (f"\n\n{INSERT_NOTE}" if insert is not None else "")
        try:
            raw = await self._llm.complete(
                prompt,
                attachments,
                api_key,
                system_prompt=EXTRACTION_SYSTEM_PROMPT,
                temperature=EXTRACTION_TEMPERATURE,
                model=VISION_MODEL,
            )
        except ProviderError as e:
            raise ExtractionFailed(f"Failed to extract questions: {e!s}") from e
        if not raw:
            raise ExtractionFailed("No response from AI.")
        result = _parse_extraction(raw, "vision")
        log_metric("extract", time.perf_counter() - started, method="vision", questions=len(result.questions))
        return result

    async def extract_insert_content(self, insert: UploadedDocument, api_key: str) -> str:
        """Quotable insert text: the PDF text layer when usable, otherwise an AI transcription."""
        text = (await self._page_text(insert)).strip()
        if len(text) >= MIN_INSERT_TEXT:
            return text
        try:
            raw = await self._llm.complete(
                INSERT_EXTRACTION_PROMPT,
                [insert.to_attachment()],
                api_key,
                temperature=EXTRACTION_TEMPERATURE,
                model=VISION_MODEL,
            )
        except (ProviderError, ValueError) as e:
            raise TransientAIError(f"Insert extraction failed: {e!s}") from e
        return (raw or "").strip()

    async def parse_mark_scheme(self, scheme: UploadedDocument, api_key: str) -> dict[str, MarkSchemeEntry]:
        """
        Parse a mark scheme document into per-question entries.

        Raises:
            TransientAIError: If the scheme could not be read or parsed.
        """
        started = time.perf_counter()
        scheme_text = await self._page_text(scheme)
        try:
            if len(scheme_text.strip()) >= MIN_TEXT_FOR_TEXT_EXTRACTION:
                raw = await self._llm.complete(
                    f"MARK SCHEME TEXT:\n{scheme_text}",
                    api_key=api_key,
                    system_prompt=MARK_SCHEME_SYSTEM_PROMPT,
                    temperature=MARKING_TEMPERATURE,
                )
            else:
                raw = await self._llm.complete(
                    "Convert the attached mark scheme.",
                    [scheme.to_attachment()],
                    api_key,
                    system_prompt=MARK_SCHEME_SYSTEM_PROMPT,
                    temperature=MARKING_TEMPERATURE,
                    model=VISION_MODEL,
                )
            parsed = parse_json_with_fixes(raw)
        except (ProviderError, ValueError) as e:
            raise TransientAIError(f"Mark scheme parsing failed: {e!s}") from e
        entries = normalize_mark_scheme(parsed.get("markScheme") if isinstance(parsed, dict) else None)
        log_metric("mark_scheme", time.perf_counter() - started, entries=len(entries))
        return entries

    async def mark_answer(
        self,
        question: Question,
        answer: Any,
        scheme: MarkSchemeEntry | None,
        api_key: str,
    ) -> Feedback:
        """
        Mark one answer. Regex-verifiable answers never reach the provider.

        Raises:
            MissingCredentialError: If api_key is empty.
            MarkingFailed: If the provider call fails.
        """
        verified = auto_verify(question, answer)
        if verified is not None:
            return verified
        started = time.perf_counter()
        try:
            raw = await self._llm.complete(
                build_marking_prompt(question, answer, scheme),
                api_key=api_key,
                system_prompt=MARKING_SYSTEM_PROMPT,
                temperature=MARKING_TEMPERATURE,
            )
        except ProviderError as e:
            log_metric("mark", time.perf_counter() - started, method="error", question_id=question.id)
            raise MarkingFailed(f"Marking question {question.id} failed: {e!s}") from e
        feedback = parse_feedback_response(raw or "", question.marks)
        log_metric("mark", time.perf_counter() - started, question_id=question.id, method=feedback.method)
        return feedback

    async def _tutor_call(self, operation: str, system_prompt: str, prompt: str, api_key: str) -> str:
        started = time.perf_counter()
        try:
            raw = await self._llm.complete(
                prompt,
                api_key=api_key,
                system_prompt=system_prompt,
                temperature=TUTOR_TEMPERATURE,
            )
        except ProviderError as e:
            raise TransientAIError(f"{operation} request failed: {e!s}") from e
        text = (raw or "").strip()
        if not text:
            raise TransientAIError(f"{operation} returned an empty response.")
        log_metric(operation, time.perf_counter() - started)
        return text

    async def get_hint(self, question: Question, scheme: MarkSchemeEntry | None, api_key: str) -> str:
        context = (question.context or {}).get("content") or "N/A"
        prompt = (
            f"Question: {question.text}\n"
            f"Context: {context}\n"
            f"Mark scheme: {json.dumps(scheme.to_dict() if scheme else {}, ensure_ascii=False)}"
        )
        return await self._tutor_call("hint", HINT_SYSTEM_PROMPT, prompt, api_key)

    async def explain_feedback(
        self,
        question: Question,
        answer: Any,
        feedback: Feedback,
        scheme: MarkSchemeEntry | None,
        api_key: str,
    ) -> str:
        prompt = (
            f"Question: {question.text}\n"
            f"Student answer: {serialize_answer(answer)}\n"
            f"Feedback: {feedback.text}\n"
            f"Mark scheme: {json.dumps(scheme.to_dict() if scheme else {}, ensure_ascii=False)}\n"
            f"Score: {feedback.score}/{feedback.total_marks}"
        )
        return await self._tutor_call("explain", EXPLAIN_SYSTEM_PROMPT, prompt, api_key)

    async def follow_up(
        self,
        question: Question,
        answer: Any,
        feedback: Feedback | None,
        history: list[ChatMessage],
        api_key: str,
    ) -> str:
        transcript = "\n".join(f"{m.role}: {m.text}" for m in history)
        prompt = (
            f"Question: {question.text}\n"
            f"Student answer: {serialize_answer(answer)}\n"
            f"Feedback: {feedback.text if feedback else 'Not marked yet.'}\n"
            f"Chat so far:\n{transcript}"
        )
        return await self._tutor_call("follow_up", TUTOR_SYSTEM_PROMPT, prompt, api_key)

    async def generate_study_plan(
        self,
        percentage: int,
        weakness_counts: dict[str, int],
        question_count: int,
        api_key: str,
    ) -> str:
        summary = ", ".join(f'"{k}" ({v}x)' for k, v in weakness_counts.items())
        prompt = (
            f"Student scored {percentage}%. "
            f"Repeated weaknesses: {summary or 'Not enough data yet.'}. "
            f"Total questions: {question_count}."
        )
        return await self._tutor_call("study_plan", STUDY_PLAN_SYSTEM_PROMPT, prompt, api_key)
