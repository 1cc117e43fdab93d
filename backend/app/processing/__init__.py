"""
Document Processing Package
════════════════════════════

Everything the orchestrator needs before and after the LLM:

  Bytes → Text + Characteristics → (routing) → Structured Content

Modules
───────
  extractor.py  pypdf / python-docx text extraction, page count, financial
                and scanned heuristics
  patterns.py   regex pass over financial statements (first extraction tier)
  simulated.py  schema-valid generated content (last extraction tier)

Design principles
─────────────────
  • Pure functions over bytes and text; no store or network access.
  • Never raise on malformed input; a missing source file is the only
    fatal error (SourceFileError from read_source).
"""

from app.processing.extractor import DocumentAnalysis, analyze, extract_text, read_source
from app.processing.patterns import StatementParse, parse
from app.processing.simulated import SimulatedContentGenerator

__all__ = [
    "DocumentAnalysis",
    "SimulatedContentGenerator",
    "StatementParse",
    "analyze",
    "extract_text",
    "parse",
    "read_source",
]
