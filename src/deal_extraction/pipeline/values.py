"""
Extract-values stage: deterministic candidate line items.

Scans classified sheets (and PDF/plain text) for labelled numeric rows.
Candidates are hints for the structuring stage, not final records.
"""

import re
from dataclasses import dataclass, field

from ..models.document import NormalizedContent, SheetContent
from .classifier import Classification

# Label keyword -> category
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ('census', ('patient days', 'resident days', 'census', 'occupancy', 'beds')),
    ('rate', ('ppd', 'per diem', 'daily rate', 'rate')),
    ('metric', ('ebitdar', 'ebitda', 'noi', 'net operating', 'net income', 'margin')),
    ('revenue', ('revenue', 'income', 'room & board', 'patient service')),
    ('expense', (
        'expense', 'salary', 'salaries', 'wages', 'payroll', 'benefits', 'dietary',
        'housekeeping', 'nursing', 'administrative', 'supplies', 'utilities',
        'management fee', 'insurance', 'property tax', 'agency',
    )),
)

_NUMBER_RE = re.compile(r'^\(?-?\$?\s*-?[\d,]*\.?\d+\)?%?$')
_TEXT_LINE_RE = re.compile(
    r'^\s*(?P<label>[A-Za-z][A-Za-z &/\-\.]{2,60}?)\s*[:\-]?\s+'
    r'(?P<value>\(?-?\$?\s*[\d,]*\.?\d+\)?%?)\s*$'
)

# Candidates kept per document
MAX_CANDIDATES = 200


@dataclass
class CandidateValue:
    """A labelled numeric row found by keyword scan."""

    label: str
    category: str
    values: list[float] = field(default_factory=list)
    source: str | None = None

    def describe(self) -> str:
        shown = ', '.join(f"{v:,.2f}" for v in self.values[:6])
        where = f" [{self.source}]" if self.source else ''
        return f"{self.category}: {self.label} = {shown}{where}"


def parse_number(cell) -> float | None:
    """
    Parse a spreadsheet-style number.

    Handles '$1,234.50', '(1,234)' as negative and '82%' as 0.82.
    """
    if cell is None or isinstance(cell, bool):
        return None
    if isinstance(cell, (int, float)):
        return float(cell)

    text = str(cell).strip()
    if not text or not _NUMBER_RE.match(text):
        return None

    negative = text.startswith('(') and text.endswith(')')
    percent = text.endswith('%')
    cleaned = text.strip('()%').replace('$', '').replace(',', '').replace(' ', '')
    try:
        number = float(cleaned)
    except ValueError:
        return None

    if negative:
        number = -abs(number)
    if percent:
        number = number / 100
    return number


def categorize(label: str) -> str | None:
    lowered = label.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(kw in lowered for kw in keywords):
            return category
    return None


def _row_candidate(row: list, source: str) -> CandidateValue | None:
    label = None
    numbers: list[float] = []
    for cell in row:
        number = parse_number(cell)
        if number is not None:
            if label is not None:
                numbers.append(number)
        elif label is None and isinstance(cell, str):
            label = cell.strip()

    if not label or not numbers:
        return None
    category = categorize(label)
    if category is None:
        return None
    return CandidateValue(label=label, category=category, values=numbers, source=source)


def _sheet_candidates(sheet: SheetContent) -> list[CandidateValue]:
    found = []
    for row in sheet.rows:
        candidate = _row_candidate(row, sheet.name)
        if candidate is not None:
            found.append(candidate)
    return found


def _text_candidates(text: str) -> list[CandidateValue]:
    found = []
    for line in text.splitlines():
        match = _TEXT_LINE_RE.match(line)
        if not match:
            continue
        label = match.group('label').strip()
        category = categorize(label)
        number = parse_number(match.group('value'))
        if category is None or number is None:
            continue
        found.append(CandidateValue(label=label, category=category, values=[number]))
    return found


def extract_candidates(
    content: NormalizedContent,
    classification: Classification,
) -> list[CandidateValue]:
    """
    Find candidate line items in classified content.

    Sheets classified as unknown are still scanned, since the classifier
    only looks at the first rows.
    """
    candidates: list[CandidateValue] = []
    for sheet in content.sheets:
        candidates.extend(_sheet_candidates(sheet))
    if content.text:
        candidates.extend(_text_candidates(content.text))

    # Known sheet types first so truncation keeps the useful rows
    known = {s.name for s in classification.sheets if s.sheet_type != 'unknown'}
    candidates.sort(key=lambda c: 0 if c.source in known else 1)
    return candidates[:MAX_CANDIDATES]
