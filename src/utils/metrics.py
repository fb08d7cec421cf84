"""AI call timings for the exam engine, stored in SQLite and summarised in the sidebar."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any

from config import DB_PATH


def _now_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat()


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def log_metric(operation: str, elapsed_s: float, method: str | None = None, **meta: Any) -> None:
    """Record one AI call. Never raises; a lost metric must not interrupt an exam.

    Args:
        operation: "extract", "insert", "mark_scheme", "mark", "hint", "explain",
            "follow_up" or "study_plan".
        elapsed_s: Wall-clock seconds the call took.
        method: How the call resolved, e.g. "text"/"vision" for extraction or
            "llm"/"degraded"/"error" for marking.
        **meta: Extra key-value pairs stored as JSON (e.g. question_id="3b").
    """
    try:
        meta_json = json.dumps(meta, ensure_ascii=False, default=str)
        with _connect() as conn:
            conn.execute(
                """
                INSERT INTO operation_metrics (operation, method, elapsed_s, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (operation, method, round(elapsed_s, 3), meta_json, _now_iso()),
            )
    except Exception:  # noqa: BLE001
        pass


def get_metrics_summary() -> dict[str, Any]:
    """
    Per-operation call counts and timings, with a per-method breakdown.

    Example:
        {"mark": {"total": 5, "avg_s": 2.1, "max_s": 4.0, "last_at": "...",
                  "methods": {"llm": 4, "degraded": 1}}}

    Returns {} on any database error.
    """
    try:
        with _connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    operation,
                    COALESCE(method, '')  AS method,
                    COUNT(*)              AS total,
                    SUM(elapsed_s)        AS sum_s,
                    MAX(elapsed_s)        AS max_s,
                    MAX(created_at)       AS last_at
                FROM operation_metrics
                GROUP BY operation, COALESCE(method, '')
                """
            ).fetchall()
    except sqlite3.Error:
        return {}

    summary: dict[str, Any] = {}
    for row in rows:
        item = summary.setdefault(
            row["operation"],
            {"total": 0, "sum_s": 0.0, "max_s": 0.0, "last_at": "", "methods": {}},
        )
        item["total"] += row["total"]
        item["sum_s"] += row["sum_s"]
        item["max_s"] = max(item["max_s"], row["max_s"])
        item["last_at"] = max(item["last_at"], row["last_at"])
        if row["method"]:
            item["methods"][row["method"]] = row["total"]
    for item in summary.values():
        item["avg_s"] = round(item.pop("sum_s") / item["total"], 2)
        item["max_s"] = round(item["max_s"], 2)
    return dict(sorted(summary.items(), key=lambda kv: -kv[1]["total"]))


def format_metric_line(operation: str, row: dict[str, Any]) -> str:
    """One sidebar line, e.g. "mark: 5 calls, avg 2.1s (llm 4, degraded 1)"."""
    line = f"{operation}: {row['total']} calls, avg {row['avg_s']}s"
    if row.get("methods"):
        parts = ", ".join(f"{m} {n}" for m, n in sorted(row["methods"].items(), key=lambda kv: (-kv[1], kv[0])))
        line += f" ({parts})"
    return line
