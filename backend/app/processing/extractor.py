"""
Content Extraction — bytes → text + document characteristics
════════════════════════════════════════════════════════════

Used by the metadata stage of the orchestrator.

  read_source(path)          bytes, or SourceFileError (the one fatal input error)
  extract_text(data, name)   best-effort plain text; never raises
  count_pages(data, text)    pypdf page count, else ceil(lines / 40), always ≥ 1
  analyze(data, name)        DocumentAnalysis used by the routing engine

Format dispatch (by extension):
  .pdf   pypdf, page texts joined by blank lines
  .docx  python-docx paragraphs
  .json  re-indented JSON (keeps "Label": value pairs on their own lines)
  other  UTF-8, falling back to latin-1

Scanned heuristic:
  a PDF whose average extracted characters per page is below
  MIN_CHARS_PER_PAGE_THRESHOLD has no usable text layer.
"""

from __future__ import annotations

import io
import json
import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path

from app.processing.patterns import AMOUNT_LINE_RE
from app.services.errors import SourceFileError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# If average extracted chars per page is below this threshold,
# the document is classified as scanned / image-based.
MIN_CHARS_PER_PAGE_THRESHOLD = 50

# Page estimate for documents without a page structure
LINES_PER_PAGE = 40

_FINANCIAL_KEYWORDS = re.compile(
    r"balance sheet|profit and loss|p&l|income statement|cash flow|"
    r"revenue|net profit|ebitda|assets|liabilities",
    re.IGNORECASE,
)


@dataclass
class DocumentAnalysis:
    """
    page_count           : ≥ 1
    text                 : extracted plain text (may be empty)
    has_financial_tables : statement keywords + at least two amount lines
                           (patterns.AMOUNT_LINE_RE, the same lines the
                           pattern tier turns into rows)
    is_scanned           : PDF with almost no text layer, or "scan" in the name
    file_size            : raw byte length
    """
    page_count:           int
    text:                 str
    has_financial_tables: bool
    is_scanned:           bool
    file_size:            int


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def read_source(path: str) -> bytes:
    """Read the uploaded file. Missing or unreadable files are fatal."""
    p = Path(path)
    if not p.is_file():
        raise SourceFileError(path, "file not found")
    try:
        return p.read_bytes()
    except OSError as exc:
        raise SourceFileError(path, str(exc)) from exc


def _extension(file_name: str) -> str:
    return Path(file_name).suffix.lower()


def _extract_pdf(data: bytes) -> str:
    """Extract text from PDF bytes using pypdf."""
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages)


def _extract_docx(data: bytes) -> str:
    """Extract text from DOCX bytes using python-docx."""
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace")


def extract_text(data: bytes, file_name: str) -> str:
    """
    Extract plain text from PDF, DOCX, JSON or text content.
    Parse failures are logged and fall back to a lossy decode of the raw bytes.
    """
    ext = _extension(file_name)
    try:
        if ext == ".pdf":
            return _extract_pdf(data)
        if ext == ".docx":
            return _extract_docx(data)
        if ext == ".json":
            return json.dumps(json.loads(_decode(data)), indent=2, ensure_ascii=False)
        return _decode(data)
    except Exception as exc:
        logger.warning("Text extraction fallback | file=%s error=%s", file_name, exc)
        return data.decode("utf-8", errors="replace")


def count_pages(data: bytes, text: str) -> int:
    """Best-effort page count; never raises, always ≥ 1."""
    if data.startswith(b"%PDF"):
        try:
            from pypdf import PdfReader

            pages = len(PdfReader(io.BytesIO(data)).pages)
            if pages > 0:
                return pages
        except Exception as exc:
            logger.debug("PDF page count failed, estimating | error=%s", exc)
    lines = len(text.splitlines())
    return max(1, math.ceil(lines / LINES_PER_PAGE))


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def detect_financial_tables(text: str, file_name: str = "") -> bool:
    name = file_name.lower()
    if "financial" in name or "statement" in name:
        return True
    if not _FINANCIAL_KEYWORDS.search(text):
        return False
    amount_lines = sum(1 for line in text.splitlines() if AMOUNT_LINE_RE.match(line))
    return amount_lines >= 2


def detect_scanned(text: str, page_count: int, file_name: str = "") -> bool:
    if "scan" in file_name.lower():
        return True
    if _extension(file_name) != ".pdf":
        return False
    avg_chars = len(text.strip()) / max(page_count, 1)
    return avg_chars < MIN_CHARS_PER_PAGE_THRESHOLD


def analyze(data: bytes, file_name: str) -> DocumentAnalysis:
    text       = extract_text(data, file_name)
    page_count = count_pages(data, text)
    analysis = DocumentAnalysis(
        page_count=page_count,
        text=text,
        has_financial_tables=detect_financial_tables(text, file_name),
        is_scanned=detect_scanned(text, page_count, file_name),
        file_size=len(data),
    )
    logger.info(
        "Analysis | file=%s pages=%d chars=%d financial=%s scanned=%s",
        file_name, analysis.page_count, len(text),
        analysis.has_financial_tables, analysis.is_scanned,
    )
    return analysis
