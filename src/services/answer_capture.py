"""
Answer capture: one input model per question type.

Each capture turns user interaction into the canonical Answer value stored by the
session: str for choice/text questions, list[str] for lists, list[list[str]] for
tables and {"points": [...], "lines": [...]} for graph drawing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Union

from config import GRAPH_HEIGHT, GRAPH_PADDING, GRAPH_WIDTH, MATH_SYMBOLS
from services.exam_models import Question

Answer = Union[str, list[str], list[list[str]], dict[str, list[dict[str, float]]]]


def is_scalar_answer(answer: Any) -> bool:
    return isinstance(answer, (str, int, float)) and not isinstance(answer, bool)


def is_answer_empty(question_type: str, answer: Any) -> bool:
    """
    Type-specific emptiness check used before submitting.

    Graph answers need a point or a line, list/table answers need one non-blank
    cell, everything else needs non-blank text.
    """
    if answer is None:
        return True
    if question_type == "graph_drawing" or isinstance(answer, dict):
        if not isinstance(answer, dict):
            return True
        return not (answer.get("points") or answer.get("lines"))
    if isinstance(answer, list):
        cells: list[Any] = []
        for item in answer:
            cells.extend(item if isinstance(item, list) else [item])
        return not any(str(cell or "").strip() for cell in cells)
    if is_scalar_answer(answer):
        return not str(answer).strip()
    return True


def _fmt(value: float) -> str:
    return f"{float(value):.2f}".rstrip("0").rstrip(".") or "0"


def serialize_answer(answer: Any) -> str:
    """Render an answer as plain text for a marking or tutoring prompt."""
    if answer is None:
        return ""
    if is_scalar_answer(answer):
        return str(answer)
    if isinstance(answer, list):
        if answer and isinstance(answer[0], list):
            return "\n".join(" | ".join(str(c or "") for c in row) for row in answer)
        return "\n".join(str(item or "") for item in answer)
    if isinstance(answer, dict) and ("points" in answer or "lines" in answer):
        points = answer.get("points") or []
        lines = answer.get("lines") or []
        parts = [f"Graph submission: {len(points)} point(s), {len(lines)} line(s)."]
        for i, p in enumerate(points, 1):
            parts.append(f"Point {i}: ({_fmt(p['x'])}, {_fmt(p['y'])})")
        for i, ln in enumerate(lines, 1):
            parts.append(
                f"Line {i}: from ({_fmt(ln['x1'])}, {_fmt(ln['y1'])}) to ({_fmt(ln['x2'])}, {_fmt(ln['y2'])})"
            )
        return "\n".join(parts)
    return json.dumps(answer, ensure_ascii=False)


class TextCapture:
    """Single-line or long-form text, with symbol insertion from the math keyboard."""

    def __init__(self, multiline: bool = False) -> None:
        self.multiline = multiline
        self.symbols = list(MATH_SYMBOLS)

    def initial_value(self) -> str:
        return ""

    def set_text(self, text: str) -> str:
        return str(text or "")

    def insert_symbol(self, value: Any, symbol: str) -> str:
        return f"{value or ''}{symbol}"


class ChoiceCapture:
    def __init__(self, options: list[str]) -> None:
        self.options = list(options)

    def initial_value(self) -> str:
        return ""

    def select(self, option: str) -> str:
        if option not in self.options:
            raise ValueError(f"Unknown option: {option!r}")
        return option


class ListCapture:
    def __init__(self, list_count: int) -> None:
        self.list_count = max(1, int(list_count or 1))

    def initial_value(self) -> list[str]:
        return [""] * self.list_count

    def set_item(self, value: Any, index: int, text: str) -> list[str]:
        items = list(value) if isinstance(value, list) else self.initial_value()
        items += [""] * (self.list_count - len(items))
        if not 0 <= index < self.list_count:
            raise IndexError(f"List item {index} out of range")
        items[index] = str(text or "")
        return items


class TableCapture:
    """Grid input; cells pre-filled by the paper are read-only."""

    def __init__(self, table_structure: dict[str, Any] | None) -> None:
        structure = table_structure or {}
        self.headers = list(structure.get("headers") or ["Column 1", "Column 2"])
        self.initial_data = [list(row) for row in structure.get("initialData") or []]
        self.row_count = len(self.initial_data) or int(structure.get("rows") or 3)

    def initial_value(self) -> list[list[str]]:
        if self.initial_data:
            return [["" if cell is None else str(cell) for cell in row] for row in self.initial_data]
        return [[""] * len(self.headers) for _ in range(self.row_count)]

    def is_prefilled(self, row: int, col: int) -> bool:
        if row >= len(self.initial_data) or col >= len(self.initial_data[row]):
            return False
        return self.initial_data[row][col] is not None

    def set_cell(self, value: Any, row: int, col: int, text: str) -> list[list[str]]:
        if self.is_prefilled(row, col):
            raise ValueError(f"Cell ({row}, {col}) is pre-filled and cannot be edited")
        grid = [list(r) for r in value] if isinstance(value, list) else self.initial_value()
        grid[row][col] = str(text or "")
        return grid


# ──────────────────────────────────────────────────────────────
# Graph drawing
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Line:
    x1: float
    y1: float
    x2: float
    y2: float


DrawOp = Union[Point, Line]


@dataclass(frozen=True)
class GraphFrame:
    """Canvas geometry plus the logical axis ranges from the question's graphConfig."""

    x_min: float = 0.0
    x_max: float = 10.0
    y_min: float = 0.0
    y_max: float = 10.0
    width: int = GRAPH_WIDTH
    height: int = GRAPH_HEIGHT
    padding: int = GRAPH_PADDING

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> "GraphFrame":
        cfg = config or {}
        x_min = float(cfg.get("xMin", 0.0))
        x_max = float(cfg.get("xMax", 10.0))
        y_min = float(cfg.get("yMin", 0.0))
        y_max = float(cfg.get("yMax", 10.0))
        return cls(
            x_min=x_min,
            x_max=x_max if x_max > x_min else x_min + 1,
            y_min=y_min,
            y_max=y_max if y_max > y_min else y_min + 1,
        )

    def contains(self, cx: float, cy: float) -> bool:
        return (
            self.padding <= cx <= self.width - self.padding
            and self.padding <= cy <= self.height - self.padding
        )


def to_graph(cx: float, cy: float, frame: GraphFrame) -> tuple[float, float]:
    """Canvas pixel coordinates -> logical axis coordinates."""
    plot_w = frame.width - 2 * frame.padding
    plot_h = frame.height - 2 * frame.padding
    x = (cx - frame.padding) / plot_w * (frame.x_max - frame.x_min) + frame.x_min
    y = (frame.height - frame.padding - cy) / plot_h * (frame.y_max - frame.y_min) + frame.y_min
    return x, y


def to_canvas(x: float, y: float, frame: GraphFrame) -> tuple[float, float]:
    """Logical axis coordinates -> canvas pixels; only used when drawing."""
    plot_w = frame.width - 2 * frame.padding
    plot_h = frame.height - 2 * frame.padding
    cx = frame.padding + (x - frame.x_min) / (frame.x_max - frame.x_min) * plot_w
    cy = frame.height - frame.padding - (y - frame.y_min) / (frame.y_max - frame.y_min) * plot_h
    return cx, cy


GRID_STROKE = "#d0d7de"
INK_STROKE = "#1f4e79"
POINT_RADIUS = 4
GRID_DIVISIONS = 10


def _grid_line(x1: float, y1: float, x2: float, y2: float, stroke: str, width: float) -> dict[str, Any]:
    """A drawing-canvas line object in the canvas's own serialised form (endpoints relative to centre)."""
    w, h = abs(x2 - x1), abs(y2 - y1)
    rx = -w / 2 if x1 <= x2 else w / 2
    ry = -h / 2 if y1 <= y2 else h / 2
    return {
        "type": "line",
        "originX": "left",
        "originY": "top",
        "left": min(x1, x2),
        "top": min(y1, y2),
        "width": w,
        "height": h,
        "x1": rx,
        "y1": ry,
        "x2": -rx,
        "y2": -ry,
        "stroke": stroke,
        "strokeWidth": width,
        "selectable": False,
        "evented": False,
    }


def canvas_object_geometry(obj: dict[str, Any]) -> tuple[str, tuple[float, ...]] | None:
    """
    Read a drawing-canvas object back into canvas pixels.

    Returns ("point", (cx, cy)) for circles, ("line", (x1, y1, x2, y2)) for lines,
    and None for anything else, including the graph-paper grid.
    """
    if obj.get("stroke") == GRID_STROKE:
        return None
    kind = obj.get("type")
    left = float(obj.get("left") or 0.0)
    top = float(obj.get("top") or 0.0)
    scale_x = float(obj.get("scaleX") or 1.0)
    scale_y = float(obj.get("scaleY") or 1.0)
    if kind == "circle":
        radius = float(obj.get("radius") or 0.0)
        cx = left if obj.get("originX") == "center" else left + radius * scale_x
        cy = top if obj.get("originY") == "center" else top + radius * scale_y
        return "point", (cx, cy)
    if kind == "line":
        w = float(obj.get("width") or 0.0) * scale_x
        h = float(obj.get("height") or 0.0) * scale_y
        cx = left if obj.get("originX") == "center" else left + w / 2
        cy = top if obj.get("originY") == "center" else top + h / 2
        return "line", (
            cx + float(obj.get("x1") or 0.0) * scale_x,
            cy + float(obj.get("y1") or 0.0) * scale_y,
            cx + float(obj.get("x2") or 0.0) * scale_x,
            cy + float(obj.get("y2") or 0.0) * scale_y,
        )
    return None


class GraphCapture:
    """
    Point-and-line drawing on graph paper.

    Pointer events arrive in canvas pixels. Committed drawing operations are kept
    in order and stored in axis units, so the answer can be described to the
    marker without a raster image.
    """

    TOOLS = ("point", "line")

    def __init__(
        self,
        graph_config: dict[str, Any] | None = None,
        on_change: Callable[[dict[str, list[dict[str, float]]]], None] | None = None,
    ) -> None:
        self.frame = GraphFrame.from_config(graph_config)
        self.x_label = str((graph_config or {}).get("xLabel") or "X Axis")
        self.y_label = str((graph_config or {}).get("yLabel") or "Y Axis")
        self.tool = "point"
        self.ops: list[DrawOp] = []
        self._drag_start: tuple[float, float] | None = None
        self._canvas_seen = 0
        self._on_change = on_change

    def initial_value(self) -> dict[str, list[dict[str, float]]]:
        return {"points": [], "lines": []}

    def set_tool(self, tool: str) -> None:
        if tool not in self.TOOLS:
            raise ValueError(f"Unknown drawing tool: {tool!r}")
        self.tool = tool
        self._drag_start = None

    def pointer_down(self, cx: float, cy: float) -> None:
        if not self.frame.contains(cx, cy):
            return
        if self.tool == "point":
            x, y = to_graph(cx, cy, self.frame)
            self._commit(Point(x, y))
        else:
            self._drag_start = (cx, cy)

    def pointer_move(self, cx: float, cy: float) -> tuple[float, float, float, float] | None:
        """Return the rubber-band preview segment in canvas pixels while dragging a line."""
        if self._drag_start is None or self.tool != "line":
            return None
        return (self._drag_start[0], self._drag_start[1], cx, cy)

    def pointer_up(self, cx: float, cy: float) -> None:
        start = self._drag_start
        self._drag_start = None
        if start is None or self.tool != "line":
            return
        x1, y1 = to_graph(start[0], start[1], self.frame)
        x2, y2 = to_graph(cx, cy, self.frame)
        self._commit(Line(x1, y1, x2, y2))

    def pointer_leave(self) -> None:
        self._drag_start = None

    def clear(self) -> None:
        self.ops = []
        self._drag_start = None
        self._canvas_seen = 0
        self._notify()

    def load(self, value: Any) -> None:
        """Rebuild the op log from a stored answer (points first, then lines)."""
        self.ops = []
        if isinstance(value, dict):
            for p in value.get("points") or []:
                self.ops.append(Point(float(p["x"]), float(p["y"])))
            for ln in value.get("lines") or []:
                self.ops.append(Line(float(ln["x1"]), float(ln["y1"]), float(ln["x2"]), float(ln["y2"])))
        self._canvas_seen = len(self.ops)

    @property
    def value(self) -> dict[str, list[dict[str, float]]]:
        points = [{"x": op.x, "y": op.y} for op in self.ops if isinstance(op, Point)]
        lines = [
            {"x1": op.x1, "y1": op.y1, "x2": op.x2, "y2": op.y2}
            for op in self.ops
            if isinstance(op, Line)
        ]
        return {"points": points, "lines": lines}

    def canvas_ops(self) -> list[tuple[str, tuple[float, ...]]]:
        """Committed ops in canvas pixels, in drawing order, for a rendering backend."""
        out: list[tuple[str, tuple[float, ...]]] = []
        for op in self.ops:
            if isinstance(op, Point):
                out.append(("point", to_canvas(op.x, op.y, self.frame)))
            else:
                out.append(("line", to_canvas(op.x1, op.y1, self.frame) + to_canvas(op.x2, op.y2, self.frame)))
        return out

    def canvas_drawing(self) -> dict[str, Any]:
        """Graph-paper grid plus the committed ops, as an initial drawing for a canvas widget."""
        f = self.frame
        left, right = f.padding, f.width - f.padding
        top, bottom = f.padding, f.height - f.padding
        objects: list[dict[str, Any]] = []
        for i in range(GRID_DIVISIONS + 1):
            x = left + (right - left) * i / GRID_DIVISIONS
            y = top + (bottom - top) * i / GRID_DIVISIONS
            edge = i in (0, GRID_DIVISIONS)
            objects.append(_grid_line(x, top, x, bottom, GRID_STROKE, 2 if edge else 1))
            objects.append(_grid_line(left, y, right, y, GRID_STROKE, 2 if edge else 1))
        for kind, coords in self.canvas_ops():
            if kind == "point":
                objects.append({
                    "type": "circle",
                    "originX": "center",
                    "originY": "center",
                    "left": coords[0],
                    "top": coords[1],
                    "radius": POINT_RADIUS,
                    "fill": INK_STROKE,
                    "stroke": INK_STROKE,
                    "strokeWidth": 1,
                })
            else:
                objects.append(_grid_line(*coords, INK_STROKE, 3))
        return {"version": "4.4.0", "objects": objects}

    def apply_canvas_objects(self, objects: list[dict[str, Any]]) -> int:
        """
        Replay shapes a canvas widget added since the last call as pointer events.

        `objects` is the widget's full object list; shapes already seen (including
        those from canvas_drawing) are skipped. Returns the number replayed.
        """
        shapes = [s for s in (canvas_object_geometry(o) for o in objects or []) if s is not None]
        fresh = shapes[self._canvas_seen:]
        self._canvas_seen = len(shapes)
        tool = self.tool
        for kind, coords in fresh:
            self.set_tool(kind)
            self.pointer_down(coords[0], coords[1])
            if kind == "line":
                self.pointer_move(coords[2], coords[3])
                self.pointer_up(coords[2], coords[3])
        self.set_tool(tool)
        return len(fresh)

    def _commit(self, op: DrawOp) -> None:
        self.ops.append(op)
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.value)


Capture = Union[TextCapture, ChoiceCapture, ListCapture, TableCapture, GraphCapture]


def capture_for(question: Question) -> Capture:
    """Pick the capture for a question; unknown types get plain text input."""
    if question.type == "multiple_choice":
        return ChoiceCapture(list(question.options or ()))
    if question.type == "list":
        return ListCapture(question.list_count or 1)
    if question.type == "table":
        return TableCapture(question.table_structure)
    if question.type == "graph_drawing":
        return GraphCapture(question.graph_config)
    return TextCapture(multiline=question.type == "long_text")
