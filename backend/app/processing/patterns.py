"""
Pattern Extraction — financial statements without a network call
═══════════════════════════════════════════════════════════════

Two families of patterns are applied to the plain text:

  1. Statement sections, parsed line by line:

       Balance Sheet                    → Assets: / Liabilities: / Equity:
       Profit and Loss Statement        → Revenue: / Expenses: / Net Profit: X
       Cash Flow Statement              → Label: amount
       Notes to Accounts:               → "1. ..." numbered notes (key findings)

     Line items have the form "- Label: amount". Running totals of assets,
     liabilities, equity, revenue and expenses feed the summary.

  2. Inline mentions anywhere in the text:

       "Revenue: $12.5 million"   metric
       "Margin: 12%"              performance indicator
       "Q3 2024", "FY 2023"       reporting period

A result is produced only when the text yields more than `min_metrics`
distinct metric labels; otherwise parse() returns None and the caller
moves on to the next tier.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from app.schemas.documents import ExtractedDocumentData, ExtractedTable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_AMOUNT = r"[$€£¥₹]?\s*\d[\d,]*(?:\.\d+)?"

# `- Label: amount` or `Label: amount`, the amount closing the line.
# Shared with the financial-table heuristic in app.processing.extractor.
AMOUNT_LINE_RE = re.compile(rf"^\s*-?\s*(?P<label>[A-Za-z][^:\n]{{0,80}}?):\s*(?P<amount>{_AMOUNT})\s*$")
NET_PROFIT_RE  = re.compile(rf"^\s*-?\s*Net Profit\s*:\s*(?P<amount>{_AMOUNT})", re.IGNORECASE)
NOTE_RE        = re.compile(r"(\d+)\.\s+(.+?)(?=\s+\d+\.\s+|$)")

METRIC_RE = re.compile(
    r"\b(Revenue|Sales|Income|Profit|Earnings|EBITDA|EPS|ROI)\b\s*[:=]?\s*[$€£¥]?\s*"
    r"(\d+(?:\.\d+)?)\s*(million|billion|M|B|K)?\b",
    re.IGNORECASE,
)
PERCENT_RE = re.compile(
    r"\b(Growth|Increase|Decrease|Margin|Ratio)\b\s*[:=]?\s*([+-])?\s*(\d+(?:\.\d+)?)\s*%",
    re.IGNORECASE,
)
PERIOD_RE = re.compile(r"\b(Q[1-4]|Quarter [1-4]|FY|Fiscal Year)\s*(20\d{2})\b", re.IGNORECASE)

_SECTION_HEADERS: list[tuple[str, str]] = [
    ("balance sheet",             "balance"),
    ("profit and loss statement", "pl"),
    ("profit and loss",           "pl"),
    ("income statement",          "pl"),
    ("cash flow statement",       "cash"),
    ("notes to accounts",         "notes"),
]
_SUBSECTION_RE = re.compile(r"^\s*(Assets|Liabilities|Equity|Revenue|Expenses)\s*:\s*$", re.IGNORECASE)
_ROW_TYPE = {
    "assets":      "Asset",
    "liabilities": "Liability",
    "equity":      "Equity",
    "revenue":     "Revenue",
    "expenses":    "Expense",
}


def parse_amount(raw: str) -> float:
    cleaned = re.sub(r"[^0-9.\-]", "", raw)
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def _fmt(value: float, currency: str) -> str:
    number = f"{value:,.0f}" if value == int(value) else f"{value:,.2f}"
    return f"{currency}{number}"


# ---------------------------------------------------------------------------
# Parse state
# ---------------------------------------------------------------------------

@dataclass
class StatementParse:
    balance_rows: list[list[str]] = field(default_factory=list)   # [type, category, amount]
    pl_rows:      list[list[str]] = field(default_factory=list)
    cash_rows:    list[list[str]] = field(default_factory=list)   # [category, amount]
    other_rows:   list[list[str]] = field(default_factory=list)
    notes:        list[str]       = field(default_factory=list)
    metrics:      list[list[str]] = field(default_factory=list)   # inline [metric, value]
    indicators:   list[list[str]] = field(default_factory=list)   # inline [indicator, value]
    periods:      list[tuple[str, str]] = field(default_factory=list)
    totals:       dict[str, float] = field(default_factory=lambda: {
        "Asset": 0.0, "Liability": 0.0, "Equity": 0.0, "Revenue": 0.0, "Expense": 0.0,
    })
    currency:     str = ""
    labels:       set[str] = field(default_factory=set)

    @property
    def distinct_metrics(self) -> int:
        return len(self.labels)

    @property
    def has_statements(self) -> bool:
        return bool(self.balance_rows or self.pl_rows)

    def note_amount(self, raw: str) -> None:
        if not self.currency:
            symbol = raw.strip()[:1]
            if symbol in "$€£¥₹":
                self.currency = symbol


def _section_for(line: str) -> str | None:
    lowered = line.strip().lower().rstrip(":")
    for header, section in _SECTION_HEADERS:
        if lowered.startswith(header):
            return section
    return None


def scan(text: str) -> StatementParse:
    """Walk the text once, collecting statement rows and inline mentions."""
    result     = StatementParse()
    section    = None
    subsection = None

    for line in text.splitlines():
        if not line.strip():
            continue

        header = _section_for(line)
        if header is not None:
            section, subsection = header, None
            # "Notes to Accounts: 1. ... 2. ..." on a single line
            if header == "notes" and ":" in line:
                _collect_notes(line.split(":", 1)[1], result)
            continue

        sub = _SUBSECTION_RE.match(line)
        if sub:
            subsection = sub.group(1).lower()
            continue

        if section == "notes":
            _collect_notes(line, result)
            continue

        net = NET_PROFIT_RE.match(line)
        if net and section == "pl":
            amount = net.group("amount").strip()
            result.note_amount(amount)
            result.pl_rows.append(["Net Profit", "Total", amount])
            result.labels.add("net profit")
            continue

        if section == "cash":
            item = AMOUNT_LINE_RE.match(line)
            if item:
                label, amount = item.group("label").strip(), item.group("amount").strip()
                result.note_amount(amount)
                result.cash_rows.append([label, amount])
                result.labels.add(label.lower())
            continue

        item = AMOUNT_LINE_RE.match(line)
        if not item:
            continue
        label, amount = item.group("label").strip(), item.group("amount").strip()
        result.note_amount(amount)
        result.labels.add(label.lower())

        row_type = _ROW_TYPE.get(subsection or "")
        if section == "balance" and row_type in ("Asset", "Liability", "Equity"):
            result.balance_rows.append([row_type, label, amount])
            result.totals[row_type] += parse_amount(amount)
        elif section == "pl" and row_type in ("Revenue", "Expense"):
            result.pl_rows.append([row_type, label, amount])
            result.totals[row_type] += parse_amount(amount)
        else:
            result.other_rows.append([label, amount])

    for m in METRIC_RE.finditer(text):
        metric, value, unit = m.group(1), m.group(2), m.group(3)
        result.metrics.append([metric, value + (f" {unit}" if unit else "")])
        result.labels.add(metric.lower())

    for m in PERCENT_RE.finditer(text):
        indicator, sign, value = m.group(1), m.group(2) or "", m.group(3)
        result.indicators.append([indicator, f"{sign}{value}%"])
        result.labels.add(indicator.lower())

    result.periods = [(m.group(1), m.group(2)) for m in PERIOD_RE.finditer(text)]
    return result


def _collect_notes(fragment: str, result: StatementParse) -> None:
    for _, note in NOTE_RE.findall(fragment.strip()):
        note = note.strip()
        if note:
            result.notes.append(note)


# ---------------------------------------------------------------------------
# Payload assembly
# ---------------------------------------------------------------------------

def _table(title: str, header: list[str], rows: list[list[str]]) -> ExtractedTable | None:
    if not rows:
        return None
    return ExtractedTable(title=title, rows=[header, *rows], location={"page": 1})


def _report_period(periods: list[tuple[str, str]]) -> str:
    if not periods:
        return "Unknown Period"
    period, year = max(periods, key=lambda p: int(p[1]))
    return f"{period} {year}"


def build_payload(parsed: StatementParse) -> ExtractedDocumentData:
    cur    = parsed.currency
    totals = parsed.totals
    net    = totals["Revenue"] - totals["Expense"]
    period = _report_period(parsed.periods)

    tables = [
        _table("Balance Sheet",             ["Type", "Category", "Amount"], parsed.balance_rows),
        _table("Profit and Loss Statement", ["Type", "Category", "Amount"], parsed.pl_rows),
        _table("Cash Flow Statement",       ["Category", "Amount"],         parsed.cash_rows),
        _table("Line Items",                ["Item", "Amount"],             parsed.other_rows),
        _table("Key Financial Metrics",     ["Metric", "Value"],            parsed.metrics),
        _table("Key Performance Indicators", ["Indicator", "Value"],        parsed.indicators),
    ]

    if parsed.has_statements:
        summary = (
            f"This financial report contains a Balance Sheet with {_fmt(totals['Asset'], cur)} "
            f"in total assets, {_fmt(totals['Liability'], cur)} in liabilities, and "
            f"{_fmt(totals['Equity'], cur)} in equity. The Profit and Loss Statement shows "
            f"{_fmt(totals['Revenue'], cur)} in total revenue and {_fmt(totals['Expense'], cur)} "
            f"in expenses, resulting in a net profit of {_fmt(net, cur)}."
        )
    else:
        summary = (
            f"This financial report covers {period} and includes "
            f"{parsed.distinct_metrics} distinct financial metrics."
        )

    findings = list(parsed.notes)
    if not findings:
        if parsed.has_statements:
            findings = [
                f"Total assets: {_fmt(totals['Asset'], cur)}",
                f"Total revenue: {_fmt(totals['Revenue'], cur)}",
                f"Net profit: {_fmt(net, cur)}",
            ]
        findings.append(f"{parsed.distinct_metrics} financial metrics identified")
        if parsed.indicators:
            findings.append(f"{len(parsed.indicators)} performance indicators identified")

    metadata = {
        "documentType":    "Financial Report",
        "reportPeriod":    period,
        "confidenceLevel": "Medium",
    }
    if cur:
        metadata["currency"] = cur

    return ExtractedDocumentData(
        tables=[t for t in tables if t is not None],
        summary=summary,
        key_findings=findings,
        metadata=metadata,
    )


def parse(text: str, min_metrics: int = 3) -> ExtractedDocumentData | None:
    """Return a payload when more than `min_metrics` distinct metrics are found."""
    parsed = scan(text)
    logger.debug(
        "Pattern scan | distinct_metrics=%d statements=%s notes=%d",
        parsed.distinct_metrics, parsed.has_statements, len(parsed.notes),
    )
    if parsed.distinct_metrics <= min_metrics:
        return None
    return build_payload(parsed)
