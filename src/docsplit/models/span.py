"""Span models for sub-document boundaries."""

import math
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _coerce_page(value: Any) -> int:
    """Coerce an oracle-supplied page number, defaulting to 1."""
    if isinstance(value, bool):
        return 1
    if isinstance(value, float) and not math.isfinite(value):
        return 1
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 1


class CandidateSpan(BaseModel):
    """Proposed sub-document page range from the inference oracle.

    Candidates may overlap, leave gaps or extend past the bundle; the
    reconciler turns them into ValidatedSpans.
    """

    label: str = Field(default="", description="Invoice number or label")
    start_page: int = Field(default=1, description="1-indexed first page")
    end_page: int = Field(default=1, description="1-indexed last page, inclusive")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    rationale: str = Field(default="")

    @field_validator("start_page", "end_page", mode="before")
    @classmethod
    def coerce_page(cls, v: Any) -> int:
        return _coerce_page(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> float:
        if isinstance(v, bool) or v is None:
            return 0.5
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        if value != value:  # NaN
            return 0.5
        return min(1.0, max(0.0, value))

    @field_validator("label", "rationale", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class ValidatedSpan(CandidateSpan):
    """Span belonging to a tiling of the bundle's page range."""

    id: str = Field(..., description="Positional span id, e.g. invoice_1")

    @property
    def page_range(self) -> str:
        return f"{self.start_page}-{self.end_page}"

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1

    def pages(self) -> range:
        """1-indexed page numbers covered by this span."""
        return range(self.start_page, self.end_page + 1)
