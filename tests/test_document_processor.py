"""Tests for UploadedDocument and PDFProcessor text extraction."""

from __future__ import annotations

import base64
import io

import pytest

from conftest import make_pdf
from services.document_processor import PDFProcessor, UploadedDocument


class _Upload(io.BytesIO):
    def __init__(self, data: bytes, name: str = "paper.pdf", type: str | None = None) -> None:
        super().__init__(data)
        self.name = name
        self.type = type


class TestUploadedDocument:
    def test_from_upload_reads_bytes_and_name(self):
        data = make_pdf("Question 1")
        doc = UploadedDocument.from_upload(_Upload(data, "Paper 1H.pdf", "application/pdf"))
        assert doc.name == "Paper 1H.pdf"
        assert doc.data == data
        assert doc.is_pdf

    def test_mime_guessed_from_name(self):
        doc = UploadedDocument.from_upload(_Upload(b"\x89PNG....", "figure.png"))
        assert doc.mime_type == "image/png"
        assert not doc.is_pdf

    def test_empty_upload_raises(self):
        with pytest.raises(ValueError, match="empty"):
            UploadedDocument.from_upload(_Upload(b""))

    def test_to_attachment_is_base64(self):
        doc = UploadedDocument(name="p.pdf", data=b"%PDF-1.4 abc")
        att = doc.to_attachment()
        assert att.filename == "p.pdf"
        assert att.mime_type == "application/pdf"
        assert base64.b64decode(att.base64_data) == b"%PDF-1.4 abc"

    def test_to_attachment_empty_raises(self):
        with pytest.raises(ValueError):
            UploadedDocument(name="p.pdf", data=b"").to_attachment()


class TestPDFProcessor:
    def setup_method(self):
        self.processor = PDFProcessor()

    def test_extract_pages_from_bytes_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            self.processor.extract_pages_from_bytes(b"")

    def test_extract_pages_from_bytes_invalid_raises(self):
        with pytest.raises(ValueError):
            self.processor.extract_pages_from_bytes(b"not a pdf at all")

    def test_extract_pages_numbers_each_page(self):
        pages = self.processor.extract_pages_from_bytes(make_pdf("Alpha question", "Beta question"))
        assert [p["page"] for p in pages] == [1, 2]
        assert "Alpha" in pages[0]["text"]
        assert "Beta" in pages[1]["text"]

    def test_blank_pages_skipped(self):
        pages = self.processor.extract_pages_from_bytes(make_pdf("First", "", "Third"))
        assert [p["page"] for p in pages] == [1, 3]

    def test_marked_text_has_page_markers(self):
        text = self.processor.extract_marked_text(make_pdf("Alpha", "Beta"))
        assert text.startswith("--- Page 1 ---\n")
        assert "--- Page 2 ---\nBeta" in text

    def test_read_bytes_empty_file_raises(self):
        with pytest.raises(ValueError, match="empty"):
            self.processor.read_bytes(_Upload(b""))

    def test_read_bytes_unreadable_raises(self):
        class Broken:
            def read(self):
                raise OSError("disk gone")

        with pytest.raises(ValueError, match="Unable to read"):
            self.processor.read_bytes(Broken())
