"""
Paginated PDF rendering with one active render job per surface.

Rasterisation runs in a worker thread via asyncio.to_thread. Starting a render on
a surface cancels the surface's previous job. The new job waits until the old
job's rasterisation thread has returned before it starts its own, and only the
surface's current job may commit a frame. PyMuPDF documents are not thread-safe,
so each handle also serialises its rasterisations behind a lock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import fitz  # PyMuPDF

from config import DEFAULT_SCALE, MAX_SCALE, MIN_SCALE, SCALE_STEP

LOGGER = logging.getLogger("exam_engine.renderer")

SURFACES = ("paper", "insert")


class DocumentLoadError(ValueError):
    """Raised when a document cannot be opened for rendering."""


class RenderFailed(RuntimeError):
    """Raised when rasterising a page fails."""


class RenderCancelled(Exception):
    """Raised to awaiters of a render job that was superseded or cancelled."""


@dataclass
class DocumentHandle:
    name: str
    document: Any = field(repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def page_count(self) -> int:
        return int(self.document.page_count)

    def close(self) -> None:
        with self.lock:
            self.document.close()


def load_document(data: bytes, name: str = "document.pdf") -> DocumentHandle:
    """
    Open PDF bytes for rendering.

    Raises:
        DocumentLoadError: If the bytes are empty, not a PDF, or have no pages.
    """
    if not data:
        raise DocumentLoadError(f"{name} is empty.")
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise DocumentLoadError(f"Unable to open {name}: {e!s}") from e
    if doc.page_count < 1:
        doc.close()
        raise DocumentLoadError(f"{name} has no pages.")
    return DocumentHandle(name=name, document=doc)


def number_of_pages(handle: DocumentHandle) -> int:
    return handle.page_count


def rasterize_page(handle: DocumentHandle, page_number: int, scale: float) -> bytes:
    """Render one 1-based page to PNG bytes (blocking)."""
    page = handle.document.load_page(page_number - 1)
    pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale))
    return pix.tobytes("png")


@dataclass(frozen=True)
class Frame:
    page_number: int
    scale: float
    png: bytes = field(repr=False)


class RenderSurface:
    """A named drawing target; holds the last committed frame."""

    def __init__(self, name: str) -> None:
        if name not in SURFACES:
            raise ValueError(f"Unknown render surface: {name!r}")
        self.name = name
        self.frame: Frame | None = None
        self.commit_count = 0
        self._active: RenderHandle | None = None
        self._retired: RenderHandle | None = None

    @property
    def active_job(self) -> Optional["RenderHandle"]:
        return self._active

    def clear(self) -> None:
        if self._active is not None:
            self._active.cancel()
            self._retired = self._active
        self._active = None
        self.frame = None


class RenderHandle:
    """
    One render job. Awaiting the handle yields the committed Frame, or raises
    RenderCancelled if the job was superseded.
    """

    def __init__(
        self,
        surface: RenderSurface,
        page_number: int,
        scale: float,
        previous: Optional["RenderHandle"] = None,
    ) -> None:
        self.surface = surface
        self.page_number = page_number
        self.scale = scale
        self.previous = previous
        self.cancelled = False
        self.task: asyncio.Task | None = None
        self.worker: asyncio.Future | None = None

    def cancel(self) -> None:
        # The worker thread cannot be interrupted; it is shielded and left to finish.
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def settled(self) -> None:
        """Wait until this job, its predecessors and any thread they started have finished."""
        if self.previous is not None:
            await self.previous.settled()
        pending = [f for f in (self.task, self.worker) if f is not None and not f.done()]
        if pending:
            await asyncio.wait(pending)

    async def wait(self) -> Frame:
        if self.task is None:
            raise RenderCancelled("render job was never started")
        try:
            return await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                raise RenderCancelled(f"render of page {self.page_number} cancelled") from None
            raise

    def __await__(self):
        return self.wait().__await__()


def _retrieve_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class DocumentRenderer:
    """Drives render jobs onto surfaces."""

    def __init__(self, rasterizer: Callable[[DocumentHandle, int, float], bytes] = rasterize_page) -> None:
        self._rasterizer = rasterizer
        self.surfaces = {name: RenderSurface(name) for name in SURFACES}

    def render_page(
        self,
        handle: DocumentHandle,
        page_number: int,
        scale: float = DEFAULT_SCALE,
        surface: str = "paper",
    ) -> RenderHandle:
        """
        Cancel the surface's current job and start rendering page_number.

        Must be called from a running event loop.
        """
        target = self.surfaces[surface]
        previous = target._active or target._retired
        target._retired = None
        if previous is not None:
            previous.cancel()
        job = RenderHandle(target, page_number, scale, previous=previous)
        target._active = job
        job.task = asyncio.get_running_loop().create_task(self._run(job, handle))
        job.task.add_done_callback(_retrieve_result)
        return job

    def _rasterize_locked(self, handle: DocumentHandle, page_number: int, scale: float) -> bytes:
        with handle.lock:
            return self._rasterizer(handle, page_number, scale)

    async def _run(self, job: RenderHandle, handle: DocumentHandle) -> Frame:
        if job.previous is not None:
            await job.previous.settled()
            job.previous = None
        if job.cancelled:
            raise RenderCancelled(f"render of page {job.page_number} cancelled")
        job.worker = asyncio.ensure_future(
            asyncio.to_thread(self._rasterize_locked, handle, job.page_number, job.scale)
        )
        job.worker.add_done_callback(_retrieve_result)
        try:
            png = await asyncio.shield(job.worker)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.warning("Render of %s page %s failed: %s", handle.name, job.page_number, e)
            raise RenderFailed(f"Could not render page {job.page_number}: {e!s}") from e
        if job.cancelled or job.surface._active is not job:
            raise RenderCancelled(f"render of page {job.page_number} superseded")
        frame = Frame(page_number=job.page_number, scale=job.scale, png=png)
        job.surface.frame = frame
        job.surface.commit_count += 1
        return frame


def clamp_scale(scale: float) -> float:
    return round(max(MIN_SCALE, min(MAX_SCALE, scale)), 2)


class DocumentViewer:
    """
    Two-tab viewer (exam paper and insert) with page navigation and zoom.

    Every page or zoom change cancels the running render and starts a new one.
    A document that fails to load leaves its tab blank.
    """

    def __init__(self, renderer: DocumentRenderer | None = None) -> None:
        self.renderer = renderer or DocumentRenderer()
        self.documents: dict[str, DocumentHandle | None] = {name: None for name in SURFACES}
        self.pages: dict[str, int] = {name: 1 for name in SURFACES}
        self.scale = DEFAULT_SCALE
        self.active_tab = "paper"
        self.errors: dict[str, str] = {}

    def open(self, surface: str, data: bytes, name: str = "document.pdf") -> DocumentHandle | None:
        self.close(surface)
        try:
            handle = load_document(data, name)
        except DocumentLoadError as e:
            LOGGER.warning("Viewer could not load %s: %s", name, e)
            self.errors[surface] = str(e)
            return None
        self.errors.pop(surface, None)
        self.documents[surface] = handle
        self.pages[surface] = 1
        return handle

    def close(self, surface: str) -> None:
        self.renderer.surfaces[surface].clear()
        handle = self.documents.get(surface)
        if handle is not None:
            handle.close()
        self.documents[surface] = None
        self.pages[surface] = 1

    def page_count(self, surface: str | None = None) -> int:
        handle = self.documents.get(surface or self.active_tab)
        return number_of_pages(handle) if handle is not None else 0

    def set_active_tab(self, surface: str) -> None:
        if surface not in SURFACES:
            raise ValueError(f"Unknown render surface: {surface!r}")
        self.active_tab = surface

    def render(self, surface: str | None = None) -> RenderHandle | None:
        name = surface or self.active_tab
        handle = self.documents.get(name)
        if handle is None:
            return None
        return self.renderer.render_page(handle, self.pages[name], self.scale, surface=name)

    def select_page(self, page: int, surface: str = "paper") -> bool:
        """Switch to surface and set its page, clamped to [1, page count], without rendering."""
        self.set_active_tab(surface)
        count = self.page_count(surface)
        if count < 1:
            return False
        self.pages[surface] = max(1, min(count, int(page)))
        return True

    def jump_to_page(self, page: int, surface: str = "paper") -> RenderHandle | None:
        """select_page, then render the result."""
        if not self.select_page(page, surface):
            return None
        return self.render(surface)

    def next_page(self) -> RenderHandle | None:
        return self.jump_to_page(self.pages[self.active_tab] + 1, self.active_tab)

    def previous_page(self) -> RenderHandle | None:
        return self.jump_to_page(self.pages[self.active_tab] - 1, self.active_tab)

    def set_scale(self, scale: float) -> float:
        self.scale = clamp_scale(scale)
        return self.scale

    def zoom_in(self) -> RenderHandle | None:
        self.set_scale(self.scale + SCALE_STEP)
        return self.render()

    def zoom_out(self) -> RenderHandle | None:
        self.set_scale(self.scale - SCALE_STEP)
        return self.render()

    def frame(self, surface: str | None = None) -> Frame | None:
        return self.renderer.surfaces[surface or self.active_tab].frame
