"""
Parse stage: raw bytes -> NormalizedContent.

Handles:
- Excel workbooks (every sheet, every row) via pandas + openpyxl
- CSV files via pandas
- PDF text via PyMuPDF
- Plain text
"""

import io
import math
from datetime import date, datetime

import fitz  # PyMuPDF
import pandas as pd

from ..errors import StageError
from ..models.document import FileType, NormalizedContent, SheetContent

STAGE = 'parse'


def _coerce_cell(value) -> str | float | None:
    """Reduce a pandas cell to str, float or None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


def _frame_to_sheet(name: str, frame: pd.DataFrame) -> SheetContent | None:
    rows = [
        [_coerce_cell(v) for v in record]
        for record in frame.itertuples(index=False, name=None)
    ]
    # Drop fully empty rows
    rows = [r for r in rows if any(c is not None for c in r)]
    if not rows:
        return None

    header_row = rows[0]
    headers = ['' if c is None else str(c) for c in header_row]
    return SheetContent(name=name, headers=headers, rows=rows[1:])


def parse_excel(content: bytes) -> NormalizedContent:
    frames = pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, dtype=object)
    sheets = []
    for name, frame in frames.items():
        sheet = _frame_to_sheet(str(name), frame)
        if sheet is not None:
            sheets.append(sheet)
    return NormalizedContent(file_type=FileType.EXCEL, sheets=sheets)


def parse_csv(content: bytes, name: str = 'csv') -> NormalizedContent:
    try:
        frame = pd.read_csv(
            io.BytesIO(content),
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines='skip',
        )
    except pd.errors.EmptyDataError:
        return NormalizedContent(file_type=FileType.CSV)

    sheet = _frame_to_sheet(name, frame)
    return NormalizedContent(file_type=FileType.CSV, sheets=[sheet] if sheet else [])


def parse_pdf(content: bytes) -> NormalizedContent:
    pages = []
    with fitz.open(stream=content, filetype='pdf') as doc:
        for page_num, page in enumerate(doc, start=1):
            text = page.get_text().strip()
            if text:
                pages.append(f"=== PAGE {page_num} ===\n{text}")
    return NormalizedContent(file_type=FileType.PDF, text='\n\n'.join(pages) or None)


def parse_text(content: bytes) -> NormalizedContent:
    return NormalizedContent(
        file_type=FileType.TEXT,
        text=content.decode('utf-8', errors='replace'),
    )


def parse_document(content: bytes, file_type: FileType, filename: str) -> NormalizedContent:
    """
    Normalize raw document bytes.

    Args:
        content: Raw file bytes
        file_type: Type inferred from the filename
        filename: Original filename (used to name CSV sheets)

    Returns:
        NormalizedContent with sheets and/or text

    Raises:
        StageError: If the type is unsupported or the bytes cannot be read
    """
    if file_type == FileType.UNKNOWN:
        raise StageError(
            STAGE,
            f"Unsupported file type: {filename}",
            context={'filename': filename},
        )

    try:
        if file_type == FileType.EXCEL:
            return parse_excel(content)
        if file_type == FileType.CSV:
            return parse_csv(content, name=filename)
        if file_type == FileType.PDF:
            return parse_pdf(content)
        return parse_text(content)
    except StageError:
        raise
    except Exception as e:
        raise StageError(
            STAGE,
            f"Failed to read {filename}: {e}",
            context={'filename': filename, 'file_type': file_type.value},
        ) from e
