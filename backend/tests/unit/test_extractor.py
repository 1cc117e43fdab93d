"""
Unit Tests — Content Extraction (metadata stage)
═════════════════════════════════════════════════

Coverage targets:
  ✅ read_source: missing file → SourceFileError
  ✅ Page estimate for text: ceil(lines / 40), at least 1
  ✅ PDF page count via pypdf; image-only PDF classified as scanned
  ✅ Corrupt PDF never raises
  ✅ DOCX paragraphs via python-docx
  ✅ JSON re-indented
  ✅ Financial detection by content and by file name
  ✅ Scanned detection by file name
"""

from __future__ import annotations

import io
import json

import pytest

from app.processing.extractor import (
    analyze,
    count_pages,
    detect_financial_tables,
    detect_scanned,
    extract_text,
    read_source,
)
from app.processing.patterns import parse
from app.services.errors import SourceFileError
from tests.conftest import FINANCIAL_STATEMENT_TEXT, plain_text


def _blank_pdf(pages: int) -> bytes:
    from pypdf import PdfWriter

    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def _docx(paragraphs: list[str]) -> bytes:
    import docx

    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


@pytest.mark.unit
@pytest.mark.extraction
class TestReadSource:

    def test_reads_bytes(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        assert read_source(str(path)) == b"hello"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(SourceFileError) as exc_info:
            read_source(str(tmp_path / "nope.txt"))
        assert "file not found" in str(exc_info.value)

    def test_directory_is_not_a_file(self, tmp_path):
        with pytest.raises(SourceFileError):
            read_source(str(tmp_path))


@pytest.mark.unit
@pytest.mark.extraction
class TestPageCount:

    @pytest.mark.parametrize("lines,pages", [(0, 1), (1, 1), (40, 1), (41, 2), (100, 3), (600, 15)])
    def test_text_estimate(self, lines, pages):
        text = plain_text(lines) if lines else ""
        assert count_pages(text.encode(), text) == pages

    def test_pdf_pages_from_pypdf(self):
        data = _blank_pdf(4)
        assert count_pages(data, "") == 4

    def test_corrupt_pdf_estimates(self):
        data = b"%PDF-1.4 this is not really a pdf"
        assert count_pages(data, data.decode()) == 1


@pytest.mark.unit
@pytest.mark.extraction
class TestExtractText:

    def test_plain_text(self):
        assert extract_text(b"hello\nworld", "notes.txt") == "hello\nworld"

    def test_latin1_fallback(self):
        assert extract_text("café".encode("latin-1"), "menu.txt") == "café"

    def test_json_is_reindented(self):
        text = extract_text(json.dumps({"Revenue": 100, "Year": 2024}).encode(), "data.json")
        assert '"Revenue": 100' in text
        assert text.count("\n") >= 2

    def test_invalid_json_falls_back_to_raw(self):
        assert extract_text(b"{not json", "data.json") == "{not json"

    def test_docx_paragraphs(self):
        data = _docx(["Balance Sheet", "", "Cash: 100"])
        assert extract_text(data, "report.docx") == "Balance Sheet\nCash: 100"

    def test_corrupt_docx_never_raises(self):
        assert extract_text(b"PK\x03\x04 broken", "report.docx").startswith("PK")


@pytest.mark.unit
@pytest.mark.extraction
class TestHeuristics:

    def test_statement_text_is_financial(self):
        assert detect_financial_tables(FINANCIAL_STATEMENT_TEXT)

    def test_keyword_without_amounts_is_not_financial(self):
        assert not detect_financial_tables("We discussed revenue and assets at length.")

    def test_financial_text_also_parses_as_patterns(self):
        text = "Total Assets: 5,000\nTotal Liabilities: 2,000\nOperating Costs: 1,500\nRetained Earnings: 3,000\n"

        assert detect_financial_tables(text)
        assert parse(text) is not None

    def test_amounts_without_keywords_are_not_financial(self):
        assert not detect_financial_tables("Apples: 10\nPears: 20\nPlums: 30")

    @pytest.mark.parametrize("name", ["financial_report.txt", "Bank-Statement.pdf"])
    def test_file_name_marks_financial(self, name):
        assert detect_financial_tables("", name)

    def test_scan_in_name(self):
        assert detect_scanned("plenty of text " * 100, 1, "scan_0001.txt")

    def test_text_file_is_never_scanned_by_density(self):
        assert not detect_scanned("", 5, "empty.txt")

    def test_sparse_pdf_is_scanned(self):
        assert detect_scanned("x" * 40, 1, "doc.pdf")
        assert not detect_scanned("x" * 500, 1, "doc.pdf")


@pytest.mark.unit
@pytest.mark.extraction
class TestAnalyze:

    def test_plain_document(self):
        data = plain_text(100).encode()
        analysis = analyze(data, "notes.txt")

        assert analysis.page_count == 3
        assert not analysis.has_financial_tables
        assert not analysis.is_scanned
        assert analysis.file_size == len(data)
        assert analysis.text.startswith("Line 1 ")

    def test_long_document(self):
        assert analyze(plain_text(600).encode(), "notes.txt").page_count == 15

    def test_financial_document(self):
        analysis = analyze(FINANCIAL_STATEMENT_TEXT.encode(), "q4.txt")
        assert analysis.has_financial_tables
        assert analysis.page_count == 1

    def test_image_only_pdf_is_scanned(self):
        analysis = analyze(_blank_pdf(2), "contract.pdf")
        assert analysis.page_count == 2
        assert analysis.is_scanned
