"""
Exam data types: questions, feedback, follow-up chat and mark scheme entries.

Wire dicts use the camelCase keys produced by the extraction prompt and stored in
session snapshots; Python attributes are snake_case.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from config import MAX_QUESTION_MARKS


class Phase(str, Enum):
    """Session phases; transitions are owned by ExamSession."""

    UPLOAD = "upload"
    PARSING = "parsing"
    EXAM = "exam"
    SUMMARY = "summary"


QUESTION_TYPES = (
    "multiple_choice",
    "short_text",
    "long_text",
    "list",
    "numerical",
    "table",
    "graph_drawing",
)


def _coerce_int(value: Any, minimum: int | None = None, maximum: int | None = None) -> int | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    out = int(number)
    if minimum is not None:
        out = max(minimum, out)
    if maximum is not None:
        out = min(maximum, out)
    return out


def _coerce_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


@dataclass(frozen=True)
class Question:
    """One extracted exam question. Never modified after extraction."""

    id: str
    section: str
    type: str
    marks: int
    text: str
    page_number: int | None = None
    options: tuple[str, ...] | None = None
    list_count: int | None = None
    table_structure: dict[str, Any] | None = None
    graph_config: dict[str, Any] | None = None
    context: dict[str, Any] | None = None
    related_figure: str | None = None
    figure_page: int | None = None
    marking_regex: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "section": self.section,
            "type": self.type,
            "marks": self.marks,
            "question": self.text,
        }
        optional = {
            "pageNumber": self.page_number,
            "options": list(self.options) if self.options is not None else None,
            "listCount": self.list_count,
            "tableStructure": self.table_structure,
            "graphConfig": self.graph_config,
            "context": self.context,
            "relatedFigure": self.related_figure,
            "figurePage": self.figure_page,
            "markingRegex": self.marking_regex,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Question":
        """Rebuild a question from its own to_dict() output (snapshot restore)."""
        options = raw.get("options")
        return cls(
            id=str(raw["id"]),
            section=str(raw.get("section") or "Section"),
            type=str(raw.get("type") or "short_text"),
            marks=int(raw.get("marks") or 1),
            text=str(raw.get("question") or raw.get("text") or ""),
            page_number=raw.get("pageNumber"),
            options=tuple(str(o) for o in options) if isinstance(options, list) else None,
            list_count=raw.get("listCount"),
            table_structure=raw.get("tableStructure"),
            graph_config=raw.get("graphConfig"),
            context=raw.get("context"),
            related_figure=raw.get("relatedFigure"),
            figure_page=raw.get("figurePage"),
            marking_regex=raw.get("markingRegex"),
        )


def infer_question_type(raw: dict[str, Any]) -> str:
    """Guess a question type when the extractor omitted one."""
    if isinstance(raw.get("options"), list) and raw["options"]:
        return "multiple_choice"
    if raw.get("tableStructure"):
        return "table"
    if raw.get("graphConfig"):
        return "graph_drawing"
    list_count = _coerce_int(raw.get("listCount"))
    if list_count is not None and list_count > 1:
        return "list"
    marks = _coerce_int(raw.get("marks"))
    if marks is not None and marks >= 6:
        return "long_text"
    return "short_text"


def _normalize_table_structure(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    headers = raw.get("headers") if isinstance(raw.get("headers"), list) else []
    initial = raw.get("initialData") if isinstance(raw.get("initialData"), list) else []
    rows: list[list[str | None]] = []
    for row in initial:
        if not isinstance(row, list):
            continue
        rows.append([None if cell is None else str(cell) for cell in row])
    out: dict[str, Any] = {"headers": [str(h) for h in headers], "initialData": rows}
    row_count = _coerce_int(raw.get("rows"), minimum=1, maximum=50)
    if row_count is not None:
        out["rows"] = row_count
    return out


def _normalize_graph_config(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    x_min = _coerce_float(raw.get("xMin"), 0.0)
    x_max = _coerce_float(raw.get("xMax"), 10.0)
    y_min = _coerce_float(raw.get("yMin"), 0.0)
    y_max = _coerce_float(raw.get("yMax"), 10.0)
    return {
        "xLabel": str(raw.get("xLabel") or "X Axis"),
        "yLabel": str(raw.get("yLabel") or "Y Axis"),
        "xMin": x_min,
        "xMax": x_max if x_max > x_min else x_min + 1,
        "yMin": y_min,
        "yMax": y_max if y_max > y_min else y_min + 1,
    }


def normalize_question(raw: Any, fallback_id: str) -> Question | None:
    """
    Validate one extracted question dict.

    Returns:
        A Question, or None when the entry has no usable text.
    """
    if not isinstance(raw, dict):
        return None
    text = raw.get("question") if isinstance(raw.get("question"), str) else raw.get("text")
    text = str(text or "").strip()
    if not text:
        return None
    qid = str(raw.get("id") if raw.get("id") is not None else "").strip() or fallback_id
    marks = _coerce_int(raw.get("marks"), minimum=1, maximum=MAX_QUESTION_MARKS) or 1
    qtype = raw.get("type") if isinstance(raw.get("type"), str) and raw.get("type") else infer_question_type(raw)
    options = raw.get("options")
    context = raw.get("context") if isinstance(raw.get("context"), dict) else None
    regex = raw.get("markingRegex")
    return Question(
        id=qid,
        section=raw.get("section") if isinstance(raw.get("section"), str) else "Section",
        type=str(qtype).strip(),
        marks=marks,
        text=text,
        page_number=_coerce_int(raw.get("pageNumber"), minimum=1),
        options=tuple(str(o) for o in options) if isinstance(options, list) else None,
        list_count=_coerce_int(raw.get("listCount"), minimum=1, maximum=50),
        table_structure=_normalize_table_structure(raw.get("tableStructure")),
        graph_config=_normalize_graph_config(raw.get("graphConfig")),
        context=context,
        related_figure=raw.get("relatedFigure") if isinstance(raw.get("relatedFigure"), str) else None,
        figure_page=_coerce_int(raw.get("figurePage"), minimum=1),
        marking_regex=regex if isinstance(regex, str) and regex.strip() else None,
    )


def normalize_extraction_result(parsed: Any) -> tuple[dict[str, Any], list[Question]]:
    """
    Turn parsed extraction JSON into (metadata, questions).

    Duplicate or empty ids are replaced by the question's 1-based position.
    """
    if not isinstance(parsed, dict):
        return {}, []
    metadata = parsed.get("metadata") if isinstance(parsed.get("metadata"), dict) else {}
    raw_questions = parsed.get("questions") if isinstance(parsed.get("questions"), list) else []
    questions: list[Question] = []
    seen: set[str] = set()
    for idx, raw in enumerate(raw_questions):
        position = str(idx + 1)
        q = normalize_question(raw, position)
        if q is None:
            continue
        if q.id in seen:
            candidate = position
            while candidate in seen:
                candidate = f"{candidate}_{idx + 1}"
            q = replace(q, id=candidate)
        seen.add(q.id)
        questions.append(q)
    return metadata, questions


def clamp_score(raw: Any, marks: int) -> int:
    """Coerce a model-reported score into [0, marks]."""
    value = _coerce_int(raw)
    if value is None:
        return 0
    return max(0, min(marks, value))


@dataclass(frozen=True)
class Feedback:
    """Marking result for one question."""

    score: int
    total_marks: int
    text: str
    rewrite: str
    method: str = "llm"
    primary_flaw: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "score": self.score,
            "totalMarks": self.total_marks,
            "text": self.text,
            "rewrite": self.rewrite,
            "method": self.method,
        }
        if self.primary_flaw:
            out["primaryFlaw"] = self.primary_flaw
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Feedback":
        total = int(raw.get("totalMarks") or 0)
        return cls(
            score=clamp_score(raw.get("score"), total) if total else 0,
            total_marks=total,
            text=str(raw.get("text") or raw.get("feedback") or ""),
            rewrite=str(raw.get("rewrite") or ""),
            method=str(raw.get("method") or "llm"),
            primary_flaw=raw.get("primaryFlaw") or None,
        )


@dataclass(frozen=True)
class ChatMessage:
    """One follow-up chat entry; role is 'user' or 'ai'."""

    role: str
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ChatMessage":
        role = str(raw.get("role") or "ai")
        return cls(role=role if role in ("user", "ai") else "ai", text=str(raw.get("text") or ""))


@dataclass(frozen=True)
class MarkSchemeEntry:
    total_marks: int
    criteria: tuple[str, ...] = field(default_factory=tuple)
    acceptable_answers: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalMarks": self.total_marks,
            "criteria": list(self.criteria),
            "acceptableAnswers": list(self.acceptable_answers),
        }


def _str_tuple(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(str(v).strip() for v in raw if str(v or "").strip())


def normalize_mark_scheme(raw: Any) -> dict[str, MarkSchemeEntry]:
    """Validate a {questionId: {totalMarks, criteria, acceptableAnswers}} mapping."""
    if not isinstance(raw, dict):
        return {}
    out: dict[str, MarkSchemeEntry] = {}
    for qid, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        out[str(qid)] = MarkSchemeEntry(
            total_marks=_coerce_int(entry.get("totalMarks"), minimum=0, maximum=MAX_QUESTION_MARKS) or 0,
            criteria=_str_tuple(entry.get("criteria")),
            acceptable_answers=_str_tuple(entry.get("acceptableAnswers")),
        )
    return out
