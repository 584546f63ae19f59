"""
Classify stage: keyword classification of sheets and text.

Sheet types:
- pl_statement: P&L / income statement
- census_report: patient days, occupancy, payer mix
- rate_schedule: PPD / per diem rate sheets and letters
- summary: consolidated or portfolio rollups
- unknown
"""

import re
from collections import Counter
from dataclasses import dataclass, field

from ..models.document import NormalizedContent, SheetContent
from ..models.extraction import SheetSummary

PL_STATEMENT = 'pl_statement'
CENSUS_REPORT = 'census_report'
RATE_SCHEDULE = 'rate_schedule'
SUMMARY = 'summary'
UNKNOWN = 'unknown'

# Rows scanned for keyword matching
SCAN_ROWS = 30
# Keyword hits needed to classify on content alone
MIN_SCORE = 2

INDICATORS: dict[str, tuple[str, ...]] = {
    PL_STATEMENT: (
        'revenue', 'expense', 'income statement', 'p&l', 'profit', 'loss',
        'ebitda', 'ebitdar', 'net operating', 'operating income', 'gross margin',
        'total revenue', 'total expense', 'operating expense', 'net income',
        'room & board', 'patient service', 'salary', 'wages', 'payroll',
        'dietary', 'housekeeping', 'nursing', 'administrative', 'supplies',
    ),
    CENSUS_REPORT: (
        'patient days', 'census', 'resident days', 'occupancy',
        'medicare days', 'medicaid days', 'private days', 'managed care days',
        'adc', 'average daily census', 'payer mix', 'payor mix',
        'skilled days', 'custodial days', 'total days',
    ),
    RATE_SCHEDULE: (
        'ppd', 'per diem', 'daily rate', 'rate sheet', 'rate letter',
        'medicare rate', 'medicaid rate', 'private rate', 'reimbursement rate',
        'effective rate', 'contracted rate', 'rate schedule',
    ),
    SUMMARY: (
        'summary', 'consolidated', 'rollup', 'roll-up', 'portfolio',
        'all facilities', 'combined', 'total portfolio',
    ),
}

_NAME_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    (PL_STATEMENT, re.compile(r'(?<![a-z])p\s*&?\s*l(?![a-z])|profit.*loss|income\s*statement|financial', re.I)),
    (CENSUS_REPORT, re.compile(r'census|patient\s*days|occupancy', re.I)),
    (RATE_SCHEDULE, re.compile(r'rate|ppd|per\s*diem|per\s*patient', re.I)),
    (SUMMARY, re.compile(r'summary|dashboard|kpi', re.I)),
)

_DOLLAR_RE = re.compile(r'\$[\d,]+')


@dataclass
class Classification:
    """Classifier output for one document."""

    document_type: str
    sheets: list[SheetSummary] = field(default_factory=list)

    @property
    def sheet_types(self) -> dict[str, str]:
        return {s.name: s.sheet_type for s in self.sheets}


def _scores(text: str) -> dict[str, list[str]]:
    return {
        sheet_type: [kw for kw in keywords if kw in text]
        for sheet_type, keywords in INDICATORS.items()
    }


def _best(scores: dict[str, list[str]]) -> tuple[str, list[str]]:
    sheet_type, hits = max(scores.items(), key=lambda item: len(item[1]))
    if len(hits) >= MIN_SCORE:
        return sheet_type, hits
    return UNKNOWN, hits


def _has_dollar_amounts(rows: list[list]) -> bool:
    for row in rows:
        for cell in row:
            if isinstance(cell, float) and abs(cell) > 1000:
                return True
            if isinstance(cell, str) and _DOLLAR_RE.search(cell):
                return True
    return False


def classify_sheet(sheet: SheetContent) -> SheetSummary:
    """Classify one sheet by name first, then by content keywords."""
    for sheet_type, pattern in _NAME_PATTERNS:
        if pattern.search(sheet.name):
            return SheetSummary(
                name=sheet.name,
                sheet_type=sheet_type,
                row_count=sheet.row_count,
                column_count=sheet.column_count,
                detected_hints=[f'name:{sheet.name}'],
            )

    cells = [*sheet.headers]
    for row in sheet.rows[:SCAN_ROWS]:
        cells.extend(str(c) for c in row if c is not None)
    text = ' '.join(cells).lower()

    sheet_type, hits = _best(_scores(text))
    if sheet_type == UNKNOWN and 'total' in text and _has_dollar_amounts(sheet.rows):
        sheet_type = PL_STATEMENT
        hits = [*hits, 'dollar_amounts']

    return SheetSummary(
        name=sheet.name,
        sheet_type=sheet_type,
        row_count=sheet.row_count,
        column_count=sheet.column_count,
        detected_hints=hits,
    )


def classify_text(text: str) -> str:
    """Classify a block of free text (PDF pages, plain text)."""
    sheet_type, _ = _best(_scores(text.lower()))
    return sheet_type


def classify_document(content: NormalizedContent) -> Classification:
    """
    Classify every sheet and derive a document type hint.

    The hint is the most common known sheet type weighted by row count,
    falling back to the text classification.
    """
    sheets = [classify_sheet(s) for s in content.sheets]

    weights: Counter[str] = Counter()
    for summary in sheets:
        if summary.sheet_type != UNKNOWN:
            weights[summary.sheet_type] += max(summary.row_count, 1)

    if weights:
        document_type = weights.most_common(1)[0][0]
    elif content.text:
        document_type = classify_text(content.text)
    else:
        document_type = UNKNOWN

    return Classification(document_type=document_type, sheets=sheets)
