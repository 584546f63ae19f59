"""
Document references and normalized document content.

DocumentRef identifies a stored file for one deal. NormalizedContent is the
output of the parse stage: every supported file type (workbook, CSV, PDF,
plain text) is reduced to a list of sheets and/or a block of text before
classification and structuring.
"""

from enum import Enum

from pydantic import BaseModel, Field


class FileType(str, Enum):
    """File types understood by the parse stage."""

    EXCEL = 'excel'
    CSV = 'csv'
    PDF = 'pdf'
    TEXT = 'text'
    UNKNOWN = 'unknown'


_EXTENSION_MAP = {
    'xlsx': FileType.EXCEL,
    'xlsm': FileType.EXCEL,
    'xls': FileType.EXCEL,
    'csv': FileType.CSV,
    'pdf': FileType.PDF,
    'txt': FileType.TEXT,
    'md': FileType.TEXT,
}


def file_type_for(filename: str) -> FileType:
    """Infer the file type from a filename extension."""
    ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    return _EXTENSION_MAP.get(ext, FileType.UNKNOWN)


class DocumentRef(BaseModel):
    """Pointer to one stored document belonging to a deal."""

    document_id: str = Field(..., description='Document identifier')
    deal_id: str = Field(..., description='Owning deal identifier')
    filename: str = Field(..., description='Original filename including extension')
    location: str | None = Field(
        default=None, description='Store-specific location (path, key, ...)'
    )

    @property
    def file_type(self) -> FileType:
        return file_type_for(self.filename)


class SheetContent(BaseModel):
    """A rectangular block of cells (worksheet, CSV body or PDF table)."""

    name: str
    headers: list[str] = Field(default_factory=list)
    rows: list[list[str | float | None]] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def column_count(self) -> int:
        if self.headers:
            return len(self.headers)
        return max((len(r) for r in self.rows), default=0)


class NormalizedContent(BaseModel):
    """Parse-stage output handed to the classifier and the structuring service."""

    file_type: FileType
    sheets: list[SheetContent] = Field(default_factory=list)
    text: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.sheets and not (self.text and self.text.strip())

    def to_prompt_text(self, max_rows_per_sheet: int = 200) -> str:
        """Render content as compact text for an LLM prompt."""
        parts: list[str] = []
        for sheet in self.sheets:
            parts.append(f"## Sheet: {sheet.name}")
            if sheet.headers:
                parts.append(' | '.join(sheet.headers))
            for row in sheet.rows[:max_rows_per_sheet]:
                parts.append(' | '.join('' if c is None else str(c) for c in row))
            if sheet.row_count > max_rows_per_sheet:
                parts.append(f"... ({sheet.row_count - max_rows_per_sheet} more rows)")
        if self.text:
            parts.append('## Text')
            parts.append(self.text)
        return '\n'.join(parts)
