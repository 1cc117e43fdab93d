"""
Simulated extraction — schema-valid content with no external dependency.

Last tier of every provider's fallback chain: fixed structure, randomized
content. Used when no credential is configured, when the vendor is down,
or when its reply cannot be parsed, so the pipeline always completes.

Shape of every result:
  tables       2–3 distinct tables from TABLE_TEMPLATES (header row + 3–6 rows)
  summary      one of SUMMARY_TEMPLATES
  keyFindings  3–5 distinct entries from FINDING_TEMPLATES
  metadata     documentType, fiscalYear, authoringDepartment, approvalDate,
               distributionLevel
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from app.schemas.documents import ExtractedDocumentData, ExtractedTable


@dataclass(frozen=True)
class TableTemplate:
    title:         str
    headers:       tuple[str, ...]
    row_labels:    tuple[str, ...]
    value_prefix:  str  = ""
    value_suffix:  str  = ""
    include_total: bool = False


TABLE_TEMPLATES: tuple[TableTemplate, ...] = (
    TableTemplate(
        title         = "Revenue by Business Segment",
        headers       = ("Business Segment", "Current Year", "Previous Year", "% Change", "Notes"),
        row_labels    = ("Software Development", "Consulting Services", "Managed Services",
                         "Product Licensing", "Support & Maintenance"),
        value_prefix  = "$",
        value_suffix  = "M",
        include_total = True,
    ),
    TableTemplate(
        title        = "Financial Highlights",
        headers      = ("Metric", "2021", "2022", "2023", "2024E"),
        row_labels   = ("Revenue", "Gross Profit", "Operating Income", "EBITDA", "Net Income", "EPS"),
        value_prefix = "$",
        value_suffix = "M",
    ),
    TableTemplate(
        title      = "Risk Exposure Analysis",
        headers    = ("Risk Category", "Exposure Level", "Previous Level", "Mitigation Status", "Priority"),
        row_labels = ("Market Risk", "Credit Risk", "Operational Risk", "Liquidity Risk",
                      "Compliance Risk", "Strategic Risk"),
    ),
    TableTemplate(
        title         = "Geographic Revenue Distribution",
        headers       = ("Region", "Q1", "Q2", "Q3", "Q4", "Annual Total"),
        row_labels    = ("North America", "Europe", "Asia-Pacific", "Latin America", "Middle East & Africa"),
        value_prefix  = "$",
        value_suffix  = "M",
        include_total = True,
    ),
    TableTemplate(
        title      = "Customer Satisfaction Metrics",
        headers    = ("Customer Segment", "CSAT Score", "NPS", "YoY Change", "Industry Benchmark"),
        row_labels = ("Enterprise", "Mid-Market", "Small Business", "Government", "Education", "Overall"),
    ),
    TableTemplate(
        title         = "Cost Structure Analysis",
        headers       = ("Cost Category", "Amount", "% of Revenue", "YoY Change", "Budget Variance"),
        row_labels    = ("Personnel", "Technology", "Facilities", "Marketing", "R&D", "G&A"),
        value_prefix  = "$",
        value_suffix  = "M",
        include_total = True,
    ),
)

SUMMARY_TEMPLATES: tuple[str, ...] = (
    "This financial report indicates strong performance across all business segments, with "
    "particularly notable growth in {segment1} and {segment2}. The company has successfully "
    "implemented cost reduction measures while maintaining quality standards and customer satisfaction.",
    "Analysis of this quarterly report reveals mixed results with {segment1} outperforming "
    "expectations, while {segment2} faced challenges due to market conditions. Overall cash "
    "position remains strong with sufficient reserves for planned expansion initiatives.",
    "The annual financial statement demonstrates resilient performance despite industry headwinds. "
    "Revenue diversification strategies have proven effective, with {segment1} now representing a "
    "larger portion of the company's income.",
    "This comprehensive financial analysis indicates the company has entered a transformational "
    "phase, with significant investments in {segment1}. Short-term margin pressure is expected to "
    "yield long-term competitive advantages.",
    "The fiscal report highlights exceptional growth across digital channels, with {segment1} "
    "revenue increasing by double digits. Expansion into new geographic markets produced "
    "better-than-anticipated results.",
    "Examination of the quarterly report indicates cautious but stable performance. The company has "
    "maintained profitability despite challenging economic conditions, with {segment1} providing "
    "resilient revenue streams.",
)

FINDING_TEMPLATES: tuple[str, ...] = (
    "Overall revenue increased by {X}% year-over-year, exceeding market growth rates",
    "Profit margins expanded to {X}%, reflecting improved operational efficiency",
    "The {segment1} division demonstrated exceptional growth at {X}% compared to industry average of {Y}%",
    "Cash reserves increased by {X}%, providing additional flexibility for strategic initiatives",
    "R&D investments of ${X}M yielded {Y} new product launches, exceeding planned targets",
    "Customer retention improved to {X}%, reducing acquisition costs as a percentage of revenue",
    "The company maintained its market leadership position with {X}% share in core segments",
    "Digital transformation initiatives resulted in {X}% improvement in operational efficiency",
    "International expansion contributed {X}% to overall growth, with particular strength in {region}",
    "Debt-to-EBITDA ratio improved to {X}x, well below the industry average",
    "Employee productivity metrics improved by {X}%, driving margin expansion",
    "Sustainability initiatives reduced carbon footprint by {X}% while generating cost savings",
    "The board approved a dividend increase of {X}%, reflecting confidence in future performance",
    "Operational expenses as a percentage of revenue decreased by {X} percentage points",
)

BUSINESS_SEGMENTS: tuple[str, ...] = (
    "Cloud Services", "Enterprise Solutions", "Consumer Products", "Digital Marketing",
    "Data Analytics", "Cybersecurity", "Mobile Applications", "Professional Services",
    "IoT Platforms", "AI Solutions", "Managed Services", "Infrastructure Services",
)

REGIONS: tuple[str, ...] = (
    "North America", "Western Europe", "Asia-Pacific", "Latin America", "Northern Europe",
    "Southeast Asia", "Middle East", "Eastern Europe", "Africa", "Oceania",
)

_LEVELS   = ("Low", "Medium", "High", "Critical")
_STATUSES = ("Implemented", "In Progress", "Planned", "Under Review")


class SimulatedContentGenerator:
    """
    Build schema-valid ExtractedDocumentData.

    Pass a seeded random.Random for reproducible output in tests.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(self) -> ExtractedDocumentData:
        rng = self._rng
        segment1, segment2 = rng.sample(BUSINESS_SEGMENTS, 2)

        templates = rng.sample(TABLE_TEMPLATES, rng.randint(2, 3))
        tables = [self._table(t) for t in templates]

        summary = rng.choice(SUMMARY_TEMPLATES).format(segment1=segment1, segment2=segment2)

        wanted   = rng.randint(3, 5)
        findings: list[str] = []
        for template in rng.sample(FINDING_TEMPLATES, len(FINDING_TEMPLATES)):
            if len(findings) == wanted:
                break
            finding = template.format(
                X=f"{rng.uniform(5, 30):.1f}",
                Y=f"{rng.uniform(2, 12):.1f}",
                segment1=segment1,
                region=rng.choice(REGIONS),
            )
            if finding not in findings:
                findings.append(finding)

        year = rng.randint(2022, 2025)
        metadata = {
            "documentType":        rng.choice(("Annual Report", "Quarterly Financial Statement")),
            "fiscalYear":          str(year),
            "authoringDepartment": rng.choice(("Finance", "Investor Relations")),
            "approvalDate":        f"{year}-{rng.randint(1, 12):02d}-{rng.randint(1, 28):02d}",
            "distributionLevel":   "Board Only" if rng.random() > 0.7 else "All Stakeholders",
        }

        return ExtractedDocumentData(
            tables=tables,
            summary=summary,
            key_findings=findings,
            metadata=metadata,
        )

    # -----------------------------------------------------------------------
    # Cells
    # -----------------------------------------------------------------------

    def _table(self, template: TableTemplate) -> ExtractedTable:
        rng = self._rng
        rows: list[list[str]] = [list(template.headers)]
        totals = [0.0] * len(template.headers)

        row_count = min(rng.randint(3, 6), len(template.row_labels))
        for label in template.row_labels[:row_count]:
            row = [label]
            for k, header in enumerate(template.headers[1:], start=1):
                cell, amount = self._cell(header, template)
                if amount is not None:
                    totals[k] += amount
                row.append(cell)
            rows.append(row)

        if template.include_total:
            total_row = ["Total"]
            for k, header in enumerate(template.headers[1:], start=1):
                if self._is_amount_column(header):
                    total_row.append(f"{template.value_prefix}{totals[k]:.1f}{template.value_suffix}")
                else:
                    total_row.append("")
            rows.append(total_row)

        return ExtractedTable(
            title=template.title,
            rows=rows,
            location={"page": rng.randint(1, 20)},
        )

    @staticmethod
    def _is_amount_column(header: str) -> bool:
        markers = ("Change", "Variance", "Score", "NPS", "Level", "Status",
                   "Priority", "% of", "Benchmark", "Notes")
        return not any(m in header for m in markers)

    def _cell(self, header: str, template: TableTemplate) -> tuple[str, float | None]:
        rng = self._rng
        if "Change" in header or "Variance" in header:
            change = rng.uniform(-10, 20)
            return f"{'+' if change > 0 else ''}{change:.1f}%", None
        if "CSAT" in header:
            return f"{rng.uniform(3.5, 5.0):.1f}", None
        if "NPS" in header:
            return str(rng.randint(20, 80)), None
        if "Level" in header or "Priority" in header:
            return rng.choice(_LEVELS), None
        if "Status" in header:
            return rng.choice(_STATUSES), None
        if "% of" in header:
            return f"{rng.uniform(5, 35):.1f}%", None
        if "Benchmark" in header:
            return f"{rng.uniform(3, 5):.1f}", None
        if "Notes" in header:
            return rng.choice(("On track", "Above plan", "Below plan", "")), None
        amount = float(rng.randint(5, 99))
        return f"{template.value_prefix}{amount:.1f}{template.value_suffix}", amount
