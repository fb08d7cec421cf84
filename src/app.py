"""Exam Marker main entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any

import streamlit as st
from streamlit_drawable_canvas import st_canvas

from config import API_KEY_ENV, GRAPH_HEIGHT, GRAPH_WIDTH, PAGE_ICON, PAGE_TITLE, SCALE_STEP
from migrations.migrate import BACKUPS_DIR, MigrationError, MigrationInProgressError, migrate_to_latest
from services.answer_capture import (
    INK_STROKE,
    POINT_RADIUS,
    ChoiceCapture,
    GraphCapture,
    ListCapture,
    TableCapture,
    TextCapture,
    capture_for,
)
from services.document_processor import UploadedDocument
from services.document_renderer import DocumentViewer, RenderCancelled, RenderFailed
from services.exam_models import Phase, Question
from services.exam_session import ExamSession
from services.session_store import SessionStore
from utils.metrics import format_metric_line, get_metrics_summary

LOGGER = logging.getLogger("exam_engine.app")
_MIGRATIONS_DONE = False


def _ensure_migrations_once() -> None:
    global _MIGRATIONS_DONE
    if _MIGRATIONS_DONE:
        return
    try:
        version = migrate_to_latest()
    except MigrationInProgressError:
        st.info("Migration in progress. Please refresh shortly.")
        st.stop()
    except MigrationError as e:
        st.error(f"{e}")
        st.error(f"Recovery: restore from backups in {BACKUPS_DIR}")
        st.stop()
    LOGGER.info("Database at schema version %s", version)
    _MIGRATIONS_DONE = True


def _api_key() -> str:
    return str(st.session_state.get("api_key") or "").strip()


def _viewer() -> DocumentViewer:
    if "viewer" not in st.session_state:
        st.session_state["viewer"] = DocumentViewer()
    return st.session_state["viewer"]


def _store() -> SessionStore:
    if "store" not in st.session_state:
        st.session_state["store"] = SessionStore()
    return st.session_state["store"]


def _session() -> ExamSession:
    if "exam_session" not in st.session_state:
        viewer = _viewer()
        session = ExamSession(page_jump=lambda page, surface: viewer.select_page(page, surface))
        _store().bind(session)
        st.session_state["exam_session"] = session
    return st.session_state["exam_session"]


def _advance_clock(session: ExamSession) -> None:
    """Streamlit has no event loop between reruns; credit wall-clock time per rerun instead."""
    if session.phase is not Phase.EXAM:
        st.session_state["clock_last_tick"] = None
        return
    now = time.monotonic()
    last = st.session_state.get("clock_last_tick")
    if last is None:
        st.session_state["clock_last_tick"] = now
        return
    whole = int(now - last)
    session.time_elapsed += whole
    st.session_state["clock_last_tick"] = last + whole


def _end_session(session: ExamSession, clear_snapshot: bool) -> None:
    """Restart or reset the session and drop per-question widget state."""
    if clear_snapshot:
        session.reset()
    else:
        session.restart()
    viewer = _viewer()
    viewer.close("paper")
    viewer.close("insert")
    for key in list(st.session_state.keys()):
        if str(key).startswith(("answer_", "graph_", "quote_", "chat_")):
            del st.session_state[key]


def _format_time(seconds: int) -> str:
    return f"{seconds // 60}:{seconds % 60:02d}"


async def _render_active(viewer: DocumentViewer) -> bytes | None:
    handle = viewer.render()
    if handle is None:
        return None
    frame = await handle
    return frame.png


def _render_sidebar(session: ExamSession) -> None:
    st.sidebar.header(PAGE_TITLE)
    st.sidebar.text_input("OpenAI API key", type="password", key="api_key")
    if session.phase is Phase.EXAM:
        st.sidebar.metric("Time", _format_time(session.time_elapsed))
        if st.sidebar.button("Reset session", key="reset_session"):
            _end_session(session, clear_snapshot=True)
            st.rerun()
    summary = get_metrics_summary()
    if summary:
        with st.sidebar.expander("AI timings"):
            for operation, row in summary.items():
                st.caption(format_metric_line(operation, row))


# ──────────────────────────────────────────────────────────────
# Upload / parsing
# ──────────────────────────────────────────────────────────────

def _render_upload(session: ExamSession) -> None:
    st.title("Upload an exam paper")
    snapshot = _store().load_resumable()
    if snapshot is not None:
        name = snapshot.get("paperName") or "previous paper"
        st.info(f"A saved session for {name} is available.")
        if st.button("Resume session", key="resume_session"):
            session.resume(snapshot, _api_key())
            st.rerun()

    paper = st.file_uploader("Question paper", type=["pdf", "png", "jpg", "jpeg"], key="upload_paper")
    col1, col2 = st.columns(2)
    with col1:
        scheme = st.file_uploader("Mark scheme (optional)", type=["pdf"], key="upload_scheme")
    with col2:
        insert = st.file_uploader("Insert / source (optional)", type=["pdf"], key="upload_insert")

    if session.error:
        st.error(session.error)

    if st.button("Start", type="primary", disabled=paper is None, key="start_parsing"):
        try:
            paper_doc = UploadedDocument.from_upload(paper)
            insert_doc = UploadedDocument.from_upload(insert) if insert is not None else None
            scheme_doc = UploadedDocument.from_upload(scheme) if scheme is not None else None
        except ValueError as e:
            st.error(str(e))
            return
        with st.status("Parsing exam paper...", expanded=True) as status:
            def show_status(s: ExamSession) -> None:
                status.update(label=s.parsing_status or "Parsing exam paper...")

            session.add_listener(show_status)
            try:
                ok = asyncio.run(session.start_parsing(paper_doc, _api_key(), insert=insert_doc, scheme=scheme_doc))
            finally:
                session.remove_listener(show_status)
        if ok:
            viewer = _viewer()
            if paper_doc.is_pdf:
                viewer.open("paper", paper_doc.data, paper_doc.name)
            if insert_doc is not None:
                viewer.open("insert", insert_doc.data, insert_doc.name)
            first = session.current_question
            if first is not None and first.page_number:
                viewer.select_page(first.page_number, "paper")
        st.rerun()


# ──────────────────────────────────────────────────────────────
# Exam
# ──────────────────────────────────────────────────────────────

def _render_viewer() -> None:
    viewer = _viewer()
    tabs = ["paper"] + (["insert"] if viewer.documents.get("insert") else [])
    if viewer.documents.get("paper") is None and len(tabs) == 1:
        st.caption(viewer.errors.get("paper") or "No preview available for this paper.")
        return
    tab = st.radio("View", tabs, horizontal=True, index=tabs.index(viewer.active_tab) if viewer.active_tab in tabs else 0)
    viewer.set_active_tab(tab)
    cols = st.columns(5)
    if cols[0].button("◀", key="page_prev"):
        viewer.select_page(viewer.pages[tab] - 1, tab)
    if cols[1].button("▶", key="page_next"):
        viewer.select_page(viewer.pages[tab] + 1, tab)
    if cols[2].button("−", key="zoom_out"):
        viewer.set_scale(viewer.scale - SCALE_STEP)
    if cols[3].button("+", key="zoom_in"):
        viewer.set_scale(viewer.scale + SCALE_STEP)
    cols[4].caption(f"Page {viewer.pages[tab]} / {viewer.page_count(tab)} · {int(viewer.scale * 100)}%")
    try:
        png = asyncio.run(_render_active(viewer))
    except RenderCancelled:
        png = None
    except RenderFailed as e:
        st.warning(str(e))
        png = None
    if png:
        st.image(png, use_container_width=True)


def _render_graph_input(session: ExamSession, q: Question, locked: bool) -> None:
    key = f"graph_{q.id}"
    if key not in st.session_state:
        capture = GraphCapture(q.graph_config, on_change=lambda value: session.set_answer(q.id, value))
        capture.load(session.answers.get(q.id))
        st.session_state[key] = capture
        st.session_state[f"{key}_canvas"] = 0
        st.session_state[f"{key}_drawing"] = capture.canvas_drawing()
    capture: GraphCapture = st.session_state[key]
    st.caption(f"{capture.x_label} ({capture.frame.x_min}..{capture.frame.x_max}) vs "
               f"{capture.y_label} ({capture.frame.y_min}..{capture.frame.y_max})")

    tool_row = st.columns([2, 1])
    with tool_row[0]:
        tool = st.radio("Tool", GraphCapture.TOOLS, horizontal=True, label_visibility="collapsed",
                        key=f"{key}_tool", disabled=locked)
    if tool_row[1].button("🗑️ Clear", use_container_width=True, key=f"{key}_clear", disabled=locked):
        capture.clear()
        st.session_state[f"{key}_canvas"] += 1
        st.session_state[f"{key}_drawing"] = capture.canvas_drawing()
        st.rerun()
    capture.set_tool(tool)

    canvas_result = st_canvas(
        fill_color=INK_STROKE,
        stroke_width=3,
        stroke_color=INK_STROKE,
        background_color="#ffffff",
        initial_drawing=st.session_state[f"{key}_drawing"],
        height=GRAPH_HEIGHT,
        width=GRAPH_WIDTH,
        drawing_mode="transform" if locked else tool,
        point_display_radius=POINT_RADIUS,
        key=f"{key}_canvas_{st.session_state[f'{key}_canvas']}",
        display_toolbar=False,
        update_streamlit=True,
    )
    if not locked and canvas_result is not None and canvas_result.json_data is not None:
        capture.apply_canvas_objects(canvas_result.json_data.get("objects") or [])
    value = capture.value
    st.caption(f"{len(value['points'])} point(s), {len(value['lines'])} line(s)")


def _render_answer_input(session: ExamSession, q: Question) -> None:
    locked = session.is_locked(q.id)
    capture = capture_for(q)
    current = session.answers.get(q.id)
    key = f"answer_{q.id}"
    if isinstance(capture, ChoiceCapture):
        options = capture.options
        index = options.index(current) if current in options else None
        choice = st.radio("Answer", options, index=index, key=key, disabled=locked)
        if choice is not None and choice != current:
            session.set_answer(q.id, capture.select(choice))
    elif isinstance(capture, ListCapture):
        value = current if isinstance(current, list) else capture.initial_value()
        for i in range(capture.list_count):
            item = st.text_input(f"{i + 1}.", value=value[i] if i < len(value) else "", key=f"{key}_{i}", disabled=locked)
            if not locked and item != (value[i] if i < len(value) else ""):
                value = capture.set_item(value, i, item)
                session.set_answer(q.id, value)
    elif isinstance(capture, TableCapture):
        grid = current if isinstance(current, list) else capture.initial_value()
        cols = st.columns(len(capture.headers))
        for c, header in enumerate(capture.headers):
            cols[c].markdown(f"**{header}**")
        for r, row in enumerate(grid):
            cols = st.columns(len(capture.headers))
            for c in range(len(capture.headers)):
                cell = row[c] if c < len(row) else ""
                readonly = locked or capture.is_prefilled(r, c)
                new = cols[c].text_input(f"r{r}c{c}", value=cell, key=f"{key}_{r}_{c}",
                                         disabled=readonly, label_visibility="collapsed")
                if not readonly and new != cell:
                    grid = capture.set_cell(grid, r, c, new)
                    session.set_answer(q.id, grid)
    elif isinstance(capture, GraphCapture):
        _render_graph_input(session, q, locked)
    elif isinstance(capture, TextCapture):
        widget = st.text_area if capture.multiline else st.text_input
        text = widget("Answer", value=str(current or ""), key=key, disabled=locked)
        if not locked and text != str(current or ""):
            session.set_answer(q.id, capture.set_text(text))
        if not locked:
            with st.expander("Symbols"):
                cols = st.columns(10)
                for i, symbol in enumerate(capture.symbols):
                    if cols[i % 10].button(symbol, key=f"{key}_sym_{i}"):
                        session.set_answer(q.id, capture.insert_symbol(session.answers.get(q.id), symbol))
                        st.session_state.pop(key, None)
                        st.rerun()


def _render_feedback(session: ExamSession, q: Question) -> None:
    feedback = session.feedbacks.get(q.id)
    if feedback is None:
        return
    st.success(f"Score: {feedback.score}/{feedback.total_marks}")
    st.markdown(feedback.text)
    if feedback.rewrite and feedback.rewrite != "N/A":
        with st.expander("Model answer"):
            st.markdown(feedback.rewrite)
    state = session.transient.get(q.id)
    if state is not None and state.explanation:
        st.info(state.explanation)
    elif st.button("Explain this mark", key=f"explain_{q.id}"):
        asyncio.run(session.explain_feedback(q.id))
        st.rerun()

    st.markdown("**Ask a follow-up**")
    for i, msg in enumerate(session.chats.get(q.id, [])):
        failed = state is not None and i in state.failed_messages
        with st.chat_message("user" if msg.role == "user" else "assistant"):
            (st.warning if failed else st.markdown)(msg.text)
    prompt = st.chat_input("Ask about this question", key=f"chat_{q.id}")
    if prompt:
        asyncio.run(session.send_follow_up(q.id, prompt))
        st.rerun()


def _render_exam(session: ExamSession) -> None:
    q = session.current_question
    if q is None:
        return
    total = len(session.questions)
    left, right = st.columns([1, 1])
    with left:
        _render_viewer()
    with right:
        labels = [f"{i + 1}. {x.id}" + (" ✓" if x.id in session.feedbacks else " ⤼" if x.id in session.skipped else "")
                  for i, x in enumerate(session.questions)]
        picked = st.selectbox("Question", range(total), index=session.current_index, format_func=lambda i: labels[i])
        if picked != session.current_index:
            session.jump_to_question(picked)
            st.rerun()
        st.caption(f"{q.section} · {q.marks} mark{'s' if q.marks != 1 else ''}")
        if q.context and q.context.get("content"):
            with st.expander(q.context.get("title") or "Context"):
                st.markdown(str(q.context["content"]))
        st.markdown(f"**{q.text}**")
        if q.related_figure and q.figure_page and st.button(f"Show {q.related_figure}", key=f"fig_{q.id}"):
            session.show_figure(q.id)
            st.rerun()

        _render_answer_input(session, q)

        if session.insert_content and q.id not in session.feedbacks:
            with st.expander("Quote from the insert"):
                quote = st.text_area("Passage", key=f"quote_{q.id}")
                if st.button("Insert quote", key=f"quote_btn_{q.id}") and session.insert_quote(q.id, quote):
                    st.session_state.pop(f"answer_{q.id}", None)
                    st.rerun()

        state = session.transient.get(q.id)
        if state is not None and state.hint:
            st.info(state.hint)

        c1, c2, c3, c4 = st.columns(4)
        if c1.button("Submit", type="primary", key=f"submit_{q.id}", disabled=session.is_locked(q.id)):
            with st.spinner("Marking..."):
                asyncio.run(session.submit_answer(q.id))
            st.rerun()
        if c2.button("Hint", key=f"hint_{q.id}", disabled=q.id in session.feedbacks):
            asyncio.run(session.get_hint(q.id))
            st.rerun()
        if c3.button("Skip", key=f"skip_{q.id}", disabled=q.id in session.feedbacks):
            session.skip(q.id)
            st.rerun()
        if c4.button("Next", key=f"next_{q.id}"):
            session.next()
            st.rerun()
        if session.error:
            st.error(session.error)

        _render_feedback(session, q)


# ──────────────────────────────────────────────────────────────
# Summary
# ──────────────────────────────────────────────────────────────

def _render_summary(session: ExamSession) -> None:
    stats = session.summary_stats()
    st.title("Results")
    c1, c2, c3 = st.columns(3)
    c1.metric("Score", f"{stats.total_score}/{stats.total_possible}")
    c2.metric("Percentage", f"{stats.percentage}%")
    c3.metric("Grade", stats.grade)
    st.caption(f"Answered {stats.answered} · skipped {stats.skipped} · time {_format_time(session.time_elapsed)}")
    if stats.weakness_counts:
        st.markdown("**Repeated weaknesses**")
        for flaw, count in sorted(stats.weakness_counts.items(), key=lambda kv: kv[1], reverse=True):
            st.write(f"- {flaw} ({count}x)")
    if session.study_plan:
        st.markdown(session.study_plan)
    elif st.button("Generate study plan", key="study_plan"):
        with st.spinner("Building a study plan..."):
            asyncio.run(session.generate_study_plan())
        st.rerun()
    if st.button("Upload another paper", key="restart"):
        _end_session(session, clear_snapshot=False)
        st.rerun()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    st.set_page_config(page_title=PAGE_TITLE, page_icon=PAGE_ICON, layout="wide")
    if "api_key" not in st.session_state:
        st.session_state["api_key"] = os.getenv(API_KEY_ENV, "")
    _ensure_migrations_once()
    session = _session()
    session.set_api_key(_api_key())
    _advance_clock(session)
    _render_sidebar(session)
    if session.phase is Phase.EXAM:
        _render_exam(session)
    elif session.phase is Phase.SUMMARY:
        _render_summary(session)
    else:
        _render_upload(session)


if __name__ == "__main__":
    main()
