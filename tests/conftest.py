"""Shared pytest fixtures for the exam session engine test suite."""

from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure src/ is on the path so all service imports resolve.
SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

MIGRATIONS_SQL_DIR = SRC_DIR / "migrations" / "sql"

import fitz  # noqa: E402

from services import llm_service  # noqa: E402


def _apply_migrations(db_path: str) -> None:
    """Run all SQL migration files in order against *db_path*."""
    conn = sqlite3.connect(db_path)
    try:
        sql_files = sorted(MIGRATIONS_SQL_DIR.glob("[0-9][0-9][0-9]_*.sql"))
        for sql_file in sql_files:
            conn.executescript(sql_file.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT INTO meta(key, value) VALUES('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (str(len(sql_files)),),
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    """Temporary SQLite DB with all migrations applied.

    Monkeypatches DB_PATH in every module that opens the database.
    """
    db_file = tmp_path / "test_exam_engine.db"
    _apply_migrations(str(db_file))

    import migrations.migrate as migrate_mod
    import services.session_store as store_mod
    import utils.metrics as metrics_mod

    monkeypatch.setattr(migrate_mod, "DB_PATH", db_file)
    monkeypatch.setattr(store_mod, "DB_PATH", db_file)
    monkeypatch.setattr(metrics_mod, "DB_PATH", db_file)
    return str(db_file)


@pytest.fixture(autouse=True)
def _no_metrics_db(monkeypatch, tmp_path):
    """Keep metric writes from tests out of the real data/ directory."""
    import utils.metrics as metrics_mod

    monkeypatch.setattr(metrics_mod, "DB_PATH", tmp_path / "metrics_unmigrated.db")


def make_pdf(*pages: str) -> bytes:
    """Build a PDF with one page per string (newlines start new lines)."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text, fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


Response = Any  # str | Exception | Callable[[str, str | None], Any]


class FakeLLM:
    """Stands in for LLMProcessor: same call shape, scripted responses, no network.

    Each response is a string, an exception to raise, or a callable
    ``(prompt, system_prompt) -> str | awaitable`` for gated or computed replies.
    """

    def __init__(self, responses: list[Response] | None = None, default: Response | None = None) -> None:
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        prompt: str,
        attachments: list[Any] | None = None,
        api_key: str = "",
        *,
        system_prompt: str | None = None,
        temperature: float = 0.2,
        model: str | None = None,
    ):
        llm_service._require_credential(api_key)
        self.calls.append(
            {
                "prompt": prompt,
                "attachments": list(attachments or []),
                "system_prompt": system_prompt,
                "temperature": temperature,
                "model": model,
            }
        )
        response = self.responses.pop(0) if self.responses else self.default
        return self._respond(response, prompt, system_prompt)

    async def _respond(self, response: Response, prompt: str, system_prompt: str | None) -> str:
        if response is None:
            raise AssertionError(f"unexpected LLM call: {prompt[:80]!r}")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            result = response(prompt, system_prompt)
            if asyncio.iscoroutine(result):
                result = await result
            if isinstance(result, Exception):
                raise result
            return result
        return response


@pytest.fixture
def fake_llm_factory() -> Callable[..., FakeLLM]:
    return FakeLLM
