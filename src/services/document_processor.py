"""
Uploaded document handling: raw bytes, base64 attachments and page text.
"""

import base64
import io
import mimetypes
from dataclasses import dataclass
from typing import Any

from pypdf import PdfReader

from services.llm_service import Attachment


@dataclass(frozen=True)
class UploadedDocument:
    """An exam paper or insert booklet as uploaded by the student."""

    name: str
    data: bytes
    mime_type: str = "application/pdf"

    @classmethod
    def from_upload(cls, uploaded_file: Any) -> "UploadedDocument":
        """Build from a file-like object with .read() and an optional .name / .type."""
        data = PDFProcessor().read_bytes(uploaded_file)
        name = str(getattr(uploaded_file, "name", "") or "document.pdf")
        mime = getattr(uploaded_file, "type", None) or mimetypes.guess_type(name)[0] or "application/pdf"
        return cls(name=name, data=data, mime_type=mime)

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf" or self.data[:5] == b"%PDF-"

    def to_attachment(self) -> Attachment:
        """
        Base64-encode the document for an AI request.

        Raises:
            ValueError: If the document has no content.
        """
        if not self.data:
            raise ValueError(f"{self.name} is empty and cannot be encoded.")
        encoded = base64.b64encode(self.data).decode("ascii")
        return Attachment(mime_type=self.mime_type, base64_data=encoded, filename=self.name)


class PDFProcessor:
    """Extracts text from PDF files."""

    def read_bytes(self, uploaded_file: Any) -> bytes:
        """Read raw bytes from a file-like object."""
        try:
            data = uploaded_file.read()
        except Exception as e:
            raise ValueError(f"Unable to read file: {e!s}") from e

        if not data:
            raise ValueError("File is empty and cannot be processed.")
        return data

    def extract_pages_from_bytes(self, data: bytes) -> list[dict[str, Any]]:
        """
        Extract per-page text from PDF bytes.

        Returns:
            List of {"page": int, "text": str}; pages without text are skipped.
        """
        if not data:
            raise ValueError("File is empty and cannot be processed.")

        try:
            reader = PdfReader(io.BytesIO(data))
        except Exception as e:
            raise ValueError(f"Unable to parse PDF (possibly corrupted): {e!s}") from e

        pages: list[dict[str, Any]] = []
        try:
            for idx, page in enumerate(reader.pages):
                text = (page.extract_text() or "").strip()
                if text:
                    pages.append({"page": idx + 1, "text": text})
        except Exception as e:
            raise ValueError(f"Error extracting page text: {e!s}") from e

        return pages

    def extract_marked_text(self, data: bytes) -> str:
        """
        Page text joined with "--- Page N ---" markers so the extractor can
        attribute each question to the page it sits on.
        """
        pages = self.extract_pages_from_bytes(data)
        return "\n\n".join(f"--- Page {p['page']} ---\n{p['text']}" for p in pages)
