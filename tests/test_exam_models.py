"""Tests for exam data types and extraction normalisation."""

from __future__ import annotations

from services.exam_models import (
    ChatMessage,
    Feedback,
    Question,
    clamp_score,
    infer_question_type,
    normalize_extraction_result,
    normalize_mark_scheme,
    normalize_question,
)


class TestNormalizeQuestion:
    def test_minimal_question(self):
        q = normalize_question({"id": "1", "type": "short_text", "marks": 4, "question": "Explain X"}, "1")
        assert q == Question(id="1", section="Section", type="short_text", marks=4, text="Explain X")

    def test_question_without_text_is_dropped(self):
        assert normalize_question({"id": "1", "marks": 2, "question": "   "}, "1") is None
        assert normalize_question("not a dict", "1") is None

    def test_marks_coerced_and_clamped(self):
        assert normalize_question({"question": "Q", "marks": "3"}, "1").marks == 3
        assert normalize_question({"question": "Q", "marks": -5}, "1").marks == 1
        assert normalize_question({"question": "Q", "marks": 999}, "1").marks == 200
        assert normalize_question({"question": "Q", "marks": "lots"}, "1").marks == 1

    def test_page_numbers_coerced(self):
        q = normalize_question({"question": "Q", "pageNumber": "4", "figurePage": 0}, "1")
        assert q.page_number == 4
        assert q.figure_page == 1

    def test_missing_id_uses_fallback(self):
        assert normalize_question({"question": "Q"}, "7").id == "7"

    def test_unknown_type_kept(self):
        assert normalize_question({"question": "Q", "type": "essay_plan"}, "1").type == "essay_plan"

    def test_blank_regex_dropped(self):
        assert normalize_question({"question": "Q", "markingRegex": "  "}, "1").marking_regex is None

    def test_graph_config_defaults_and_ordering(self):
        q = normalize_question({"question": "Plot", "graphConfig": {"xMin": 5, "xMax": 2}}, "1")
        assert q.graph_config["xLabel"] == "X Axis"
        assert q.graph_config["xMax"] > q.graph_config["xMin"]
        assert q.graph_config["yMin"] == 0.0 and q.graph_config["yMax"] == 10.0

    def test_table_prefilled_cells_keep_nulls(self):
        q = normalize_question(
            {"question": "Fill", "tableStructure": {"headers": ["a", "b"], "initialData": [["1", None]]}}, "1"
        )
        assert q.table_structure["initialData"] == [["1", None]]


class TestInferQuestionType:
    def test_options_means_multiple_choice(self):
        assert infer_question_type({"options": ["a", "b"]}) == "multiple_choice"

    def test_table_and_graph(self):
        assert infer_question_type({"tableStructure": {"headers": []}}) == "table"
        assert infer_question_type({"graphConfig": {}}) == "graph_drawing"

    def test_list_count(self):
        assert infer_question_type({"listCount": 3}) == "list"

    def test_long_text_by_marks(self):
        assert infer_question_type({"marks": 6}) == "long_text"
        assert infer_question_type({"marks": 2}) == "short_text"


class TestNormalizeExtractionResult:
    def test_example_single_question(self):
        metadata, questions = normalize_extraction_result(
            {"questions": [{"id": "1", "type": "short_text", "marks": 4, "question": "Explain X"}]}
        )
        assert metadata == {}
        assert [q.id for q in questions] == ["1"]
        assert questions[0].marks == 4

    def test_duplicate_ids_renumbered(self):
        _, questions = normalize_extraction_result(
            {"questions": [{"id": "1", "question": "A"}, {"id": "1", "question": "B"}, {"question": "C"}]}
        )
        ids = [q.id for q in questions]
        assert len(set(ids)) == 3
        assert ids[0] == "1"
        assert ids[1] == "2"

    def test_non_dict_returns_nothing(self):
        assert normalize_extraction_result(["x"]) == ({}, [])

    def test_missing_questions_key(self):
        assert normalize_extraction_result({"metadata": {"paper": "1H"}}) == ({"paper": "1H"}, [])


class TestQuestionDict:
    def test_round_trip(self):
        q = Question(
            id="2b",
            section="B",
            type="multiple_choice",
            marks=1,
            text="Pick one",
            page_number=3,
            options=("A", "B"),
            context={"type": "text", "title": "Source", "content": "..."},
        )
        raw = q.to_dict()
        assert raw["question"] == "Pick one"
        assert raw["options"] == ["A", "B"]
        assert "graphConfig" not in raw
        assert Question.from_dict(raw) == q


class TestClampScore:
    def test_over_range(self):
        assert clamp_score(9, 4) == 4

    def test_negative(self):
        assert clamp_score(-3, 4) == 0

    def test_non_numeric(self):
        assert clamp_score("three", 4) == 0
        assert clamp_score(None, 4) == 0

    def test_numeric_string(self):
        assert clamp_score("2", 4) == 2


class TestFeedbackAndChat:
    def test_feedback_round_trip(self):
        fb = Feedback(score=2, total_marks=3, text="ok", rewrite="better", method="llm", primary_flaw="No units")
        assert Feedback.from_dict(fb.to_dict()) == fb

    def test_feedback_from_dict_clamps(self):
        assert Feedback.from_dict({"score": 10, "totalMarks": 3}).score == 3

    def test_chat_message_unknown_role_becomes_ai(self):
        assert ChatMessage.from_dict({"role": "system", "text": "x"}).role == "ai"


class TestNormalizeMarkScheme:
    def test_entries_normalised(self):
        scheme = normalize_mark_scheme(
            {"1": {"totalMarks": "2", "criteria": ["units", ""], "acceptableAnswers": ["42"]}, "2": "junk"}
        )
        assert list(scheme) == ["1"]
        assert scheme["1"].total_marks == 2
        assert scheme["1"].criteria == ("units",)
        assert scheme["1"].to_dict()["acceptableAnswers"] == ["42"]

    def test_non_dict(self):
        assert normalize_mark_scheme(None) == {}
