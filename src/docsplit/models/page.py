"""Page-level and layout models.

PageRecords are the per-page text corpus used for boundary detection.
LayoutResult is the normalized output of the layout analysis service for a
single sub-document: page text, tables, key-value pairs and the typed field
dictionary of the analyzed invoice.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class PageRecord(BaseModel):
    """Text of a single physical page. Immutable once produced."""

    page_number: int = Field(..., ge=1, description="1-indexed page number")
    text: str = Field(default="")
    word_count: int = Field(default=0, ge=0)

    model_config = {"frozen": True}

    @classmethod
    def from_text(cls, page_number: int, text: str) -> "PageRecord":
        """Build a record, counting whitespace-separated words."""
        text = (text or "").strip()
        return cls(page_number=page_number, text=text, word_count=len(text.split()))


class LayoutWord(BaseModel):
    """Single word from the layout service."""

    content: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class LayoutPage(BaseModel):
    """Page text and words as returned by the layout service."""

    page_number: int = Field(..., ge=1)
    text: str = ""
    words: list[LayoutWord] = Field(default_factory=list)

    @property
    def word_count(self) -> int:
        return len(self.words) or len(self.text.split())


class LayoutCell(BaseModel):
    """Table cell addressed by 0-indexed row and column."""

    row_index: int = Field(..., ge=0)
    column_index: int = Field(..., ge=0)
    content: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class LayoutTable(BaseModel):
    """Table detected by the layout service."""

    row_count: int = Field(default=0, ge=0)
    column_count: int = Field(default=0, ge=0)
    cells: list[LayoutCell] = Field(default_factory=list)

    def get_cell(self, row: int, col: int) -> Optional[LayoutCell]:
        """Get cell at specified row and column."""
        for cell in self.cells:
            if cell.row_index == row and cell.column_index == col:
                return cell
        return None

    def get_row(self, row: int) -> list[str]:
        """Get cell contents of a row, ordered by column."""
        return [
            c.content
            for c in sorted(
                (c for c in self.cells if c.row_index == row),
                key=lambda c: c.column_index,
            )
        ]

    @property
    def headers(self) -> list[str]:
        return self.get_row(0)

    def rows(self) -> list[list[str]]:
        """All non-empty rows in order."""
        n_rows = self.row_count or (max((c.row_index for c in self.cells), default=-1) + 1)
        return [r for r in (self.get_row(i) for i in range(n_rows)) if r]


class KeyValuePair(BaseModel):
    """Key-value pair detected by the layout service."""

    key: str
    value: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class LayoutResult(BaseModel):
    """Normalized layout analysis of one document."""

    content: str = ""
    pages: list[LayoutPage] = Field(default_factory=list)
    tables: list[LayoutTable] = Field(default_factory=list)
    key_value_pairs: list[KeyValuePair] = Field(default_factory=list)
    fields: dict[str, Any] = Field(
        default_factory=dict,
        description="Typed document fields keyed by service field name (camelCase payload)",
    )

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def to_page_records(self) -> list[PageRecord]:
        """Convert layout pages to the PageCorpus used for boundary detection."""
        return [PageRecord.from_text(p.page_number, p.text) for p in self.pages]
