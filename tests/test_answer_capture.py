"""Tests for answer capture surfaces, emptiness rules and answer serialisation."""

from __future__ import annotations

import pytest

from services.answer_capture import (
    GRID_STROKE,
    ChoiceCapture,
    GraphCapture,
    GraphFrame,
    Line,
    ListCapture,
    Point,
    TableCapture,
    TextCapture,
    canvas_object_geometry,
    capture_for,
    is_answer_empty,
    serialize_answer,
    to_canvas,
    to_graph,
)
from services.exam_models import Question


def _q(qtype: str, **kwargs) -> Question:
    return Question(id="1", section="A", type=qtype, marks=2, text="Q", **kwargs)


# ──────────────────────────────────────────────────────────────
# capture_for
# ──────────────────────────────────────────────────────────────

class TestCaptureFor:
    def test_closed_mapping(self):
        assert isinstance(capture_for(_q("multiple_choice", options=("a", "b"))), ChoiceCapture)
        assert isinstance(capture_for(_q("list", list_count=3)), ListCapture)
        assert isinstance(capture_for(_q("table", table_structure={"headers": ["x"]})), TableCapture)
        assert isinstance(capture_for(_q("graph_drawing", graph_config={})), GraphCapture)
        assert isinstance(capture_for(_q("numerical")), TextCapture)

    def test_long_text_is_multiline(self):
        assert capture_for(_q("long_text")).multiline is True
        assert capture_for(_q("short_text")).multiline is False

    def test_unknown_type_falls_back_to_text(self):
        assert isinstance(capture_for(_q("essay_plan")), TextCapture)


# ──────────────────────────────────────────────────────────────
# Scalar, list and table captures
# ──────────────────────────────────────────────────────────────

class TestTextAndChoice:
    def test_symbol_insertion_appends(self):
        cap = TextCapture()
        assert cap.insert_symbol("x", "²") == "x²"
        assert cap.insert_symbol(None, "π") == "π"
        assert "√" in cap.symbols

    def test_choice_rejects_unknown_option(self):
        cap = ChoiceCapture(["A", "B"])
        assert cap.select("B") == "B"
        with pytest.raises(ValueError):
            cap.select("C")


class TestListCapture:
    def test_initial_and_set_item(self):
        cap = ListCapture(3)
        value = cap.initial_value()
        assert value == ["", "", ""]
        updated = cap.set_item(value, 1, "iron")
        assert updated == ["", "iron", ""]
        assert value == ["", "", ""]

    def test_out_of_range(self):
        with pytest.raises(IndexError):
            ListCapture(2).set_item(["", ""], 2, "x")


class TestTableCapture:
    def test_prefilled_cells_read_only(self):
        cap = TableCapture({"headers": ["t", "v"], "initialData": [["0", None], ["1", None]]})
        grid = cap.initial_value()
        assert grid == [["0", ""], ["1", ""]]
        assert cap.is_prefilled(0, 0)
        assert not cap.is_prefilled(0, 1)
        with pytest.raises(ValueError):
            cap.set_cell(grid, 0, 0, "9")
        assert cap.set_cell(grid, 1, 1, "4.2") == [["0", ""], ["1", "4.2"]]

    def test_blank_grid_from_headers(self):
        cap = TableCapture({"headers": ["a", "b", "c"]})
        assert cap.initial_value() == [["", "", ""]] * 3


# ──────────────────────────────────────────────────────────────
# Graph drawing
# ──────────────────────────────────────────────────────────────

class TestGraphTransforms:
    def test_plot_corners_map_to_axis_range(self):
        frame = GraphFrame(x_min=0, x_max=10, y_min=-5, y_max=5)
        assert to_graph(50, 350, frame) == pytest.approx((0.0, -5.0))
        assert to_graph(550, 50, frame) == pytest.approx((10.0, 5.0))

    def test_inverse_transform(self):
        frame = GraphFrame(x_min=-2, x_max=8, y_min=0, y_max=100)
        cx, cy = to_canvas(3.0, 40.0, frame)
        assert to_graph(cx, cy, frame) == pytest.approx((3.0, 40.0))


class TestGraphCapture:
    def test_point_tool_records_axis_coordinates(self):
        cap = GraphCapture({"xMin": 0, "xMax": 10, "yMin": 0, "yMax": 10})
        cap.pointer_down(300, 200)
        assert cap.ops == [Point(5.0, 5.0)]
        assert cap.value == {"points": [{"x": 5.0, "y": 5.0}], "lines": []}

    def test_clicks_outside_plot_area_ignored(self):
        cap = GraphCapture()
        cap.pointer_down(10, 10)
        cap.pointer_down(300, 390)
        assert cap.ops == []

    def test_line_tool_down_move_up(self):
        cap = GraphCapture({"xMin": 0, "xMax": 10, "yMin": 0, "yMax": 10})
        cap.set_tool("line")
        cap.pointer_down(50, 350)
        assert cap.pointer_move(300, 200) == (50, 350, 300, 200)
        cap.pointer_up(550, 50)
        assert cap.ops == [Line(0.0, 0.0, 10.0, 10.0)]
        assert cap.pointer_move(10, 10) is None

    def test_up_without_down_does_nothing(self):
        cap = GraphCapture()
        cap.set_tool("line")
        cap.pointer_up(300, 200)
        assert cap.ops == []

    def test_clear_and_on_change(self):
        seen = []
        cap = GraphCapture(on_change=seen.append)
        cap.pointer_down(300, 200)
        cap.clear()
        assert cap.value == {"points": [], "lines": []}
        assert len(seen) == 2
        assert seen[-1] == {"points": [], "lines": []}

    def test_unknown_tool(self):
        with pytest.raises(ValueError):
            GraphCapture().set_tool("eraser")

    def test_load_and_canvas_ops(self):
        cap = GraphCapture({"xMin": 0, "xMax": 10, "yMin": 0, "yMax": 10})
        cap.load({"points": [{"x": 0, "y": 0}], "lines": [{"x1": 0, "y1": 0, "x2": 10, "y2": 10}]})
        ops = cap.canvas_ops()
        assert ops[0] == ("point", pytest.approx((50.0, 350.0)))
        assert ops[1][0] == "line"
        assert ops[1][1] == pytest.approx((50.0, 350.0, 550.0, 50.0))


class TestCanvasObjects:
    def test_circle_and_line_geometry(self):
        circle = {"type": "circle", "left": 296, "top": 196, "radius": 4, "originX": "left", "originY": "top"}
        assert canvas_object_geometry(circle) == ("point", pytest.approx((300.0, 200.0)))
        centred = {"type": "circle", "left": 300, "top": 200, "radius": 4, "originX": "center", "originY": "center"}
        assert canvas_object_geometry(centred) == ("point", pytest.approx((300.0, 200.0)))
        # a line dragged right-to-left and upwards
        line = {"type": "line", "left": 100, "top": 50, "width": 200, "height": 100,
                "x1": 100, "y1": 50, "x2": -100, "y2": -50}
        assert canvas_object_geometry(line) == ("line", pytest.approx((300.0, 150.0, 100.0, 50.0)))

    def test_grid_and_other_shapes_ignored(self):
        assert canvas_object_geometry({"type": "line", "stroke": GRID_STROKE}) is None
        assert canvas_object_geometry({"type": "rect", "left": 1, "top": 1}) is None

    def test_new_objects_replayed_as_pointer_events(self):
        seen = []
        cap = GraphCapture({"xMin": 0, "xMax": 10, "yMin": 0, "yMax": 10}, on_change=seen.append)
        objects = list(cap.canvas_drawing()["objects"])
        objects.append({"type": "circle", "left": 300, "top": 200, "radius": 4,
                        "originX": "center", "originY": "center"})
        assert cap.apply_canvas_objects(objects) == 1
        objects.append({"type": "line", "left": 50, "top": 50, "width": 500, "height": 300,
                        "x1": -250, "y1": 150, "x2": 250, "y2": -150})
        assert cap.apply_canvas_objects(objects) == 1
        assert cap.ops == [Point(5.0, 5.0), Line(0.0, 0.0, 10.0, 10.0)]
        assert cap.tool == "point"
        assert len(seen) == 2
        assert cap.apply_canvas_objects(objects) == 0

    def test_click_outside_plot_not_recorded(self):
        cap = GraphCapture()
        corner = {"type": "circle", "left": 5, "top": 5, "radius": 4, "originX": "center", "originY": "center"}
        assert cap.apply_canvas_objects([corner]) == 1
        assert cap.ops == []

    def test_loaded_answer_not_replayed(self):
        cap = GraphCapture({"xMin": 0, "xMax": 10, "yMin": 0, "yMax": 10})
        cap.load({"points": [{"x": 2, "y": 3}], "lines": [{"x1": 0, "y1": 0, "x2": 10, "y2": 10}]})
        drawing = cap.canvas_drawing()
        shapes = [canvas_object_geometry(o) for o in drawing["objects"]]
        shapes = [s for s in shapes if s is not None]
        assert [kind for kind, _ in shapes] == ["point", "line"]
        assert shapes[1][1] == pytest.approx((50.0, 350.0, 550.0, 50.0))
        assert cap.apply_canvas_objects(drawing["objects"]) == 0
        assert len(cap.ops) == 2

    def test_clear_resets_seen_shapes(self):
        cap = GraphCapture()
        dot = {"type": "circle", "left": 300, "top": 200, "radius": 4, "originX": "center", "originY": "center"}
        cap.apply_canvas_objects([dot])
        cap.clear()
        assert cap.apply_canvas_objects([dot]) == 1
        assert len(cap.ops) == 1


# ──────────────────────────────────────────────────────────────
# Emptiness and serialisation
# ──────────────────────────────────────────────────────────────

class TestIsAnswerEmpty:
    @pytest.mark.parametrize(
        "qtype,answer",
        [
            ("short_text", None),
            ("short_text", "   "),
            ("list", ["", "  "]),
            ("table", [["", ""], [" ", ""]]),
            ("graph_drawing", {"points": [], "lines": []}),
            ("graph_drawing", "not a graph"),
        ],
    )
    def test_empty(self, qtype, answer):
        assert is_answer_empty(qtype, answer)

    @pytest.mark.parametrize(
        "qtype,answer",
        [
            ("short_text", " 42 "),
            ("numerical", 42),
            ("list", ["", "iron"]),
            ("table", [["", "3"]]),
            ("graph_drawing", {"points": [{"x": 1, "y": 1}], "lines": []}),
            ("graph_drawing", {"points": [], "lines": [{"x1": 0, "y1": 0, "x2": 1, "y2": 1}]}),
        ],
    )
    def test_not_empty(self, qtype, answer):
        assert not is_answer_empty(qtype, answer)


class TestSerializeAnswer:
    def test_scalar(self):
        assert serialize_answer("Neon") == "Neon"

    def test_list_joined_by_newlines(self):
        assert serialize_answer(["iron", "copper"]) == "iron\ncopper"

    def test_table_rows_pipe_separated(self):
        assert serialize_answer([["0", "1.5"], ["1", "3"]]) == "0 | 1.5\n1 | 3"

    def test_graph_enumerated(self):
        text = serialize_answer(
            {"points": [{"x": 1.0, "y": 2.5}], "lines": [{"x1": 0, "y1": 0, "x2": 4, "y2": 8}]}
        )
        assert "1 point(s), 1 line(s)" in text
        assert "Point 1: (1, 2.5)" in text
        assert "Line 1: from (0, 0) to (4, 8)" in text

    def test_none(self):
        assert serialize_answer(None) == ""
