"""Extracted invoice record models."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .base import ConfidenceLevel, ExtractionTier


class LineItemType(str, Enum):
    """Kinds of invoice lines."""

    PRODUCT = "product"
    SHIPPING = "shipping"
    TAX = "tax"
    FEE = "fee"
    DISCOUNT = "discount"
    OTHER = "other"


class ExtractedField(BaseModel):
    """One canonical field with its provenance.

    `raw_value` keeps what the tier returned; `value` is what normalization
    produced. Computed fields carry no tier.
    """

    name: str
    value: Any = None
    raw_value: Any = None
    tier: Optional[ExtractionTier] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: str = ""
    computed: bool = False

    @property
    def is_empty(self) -> bool:
        return is_empty_value(self.value)


class LineItem(BaseModel):
    """Invoice line, in source table order."""

    description: Optional[str] = None
    product_code: Optional[str] = None
    hs_code: Optional[str] = None
    origin_country: Optional[str] = None
    size: Optional[str] = None
    client_order: Optional[str] = None
    po_number: Optional[str] = None
    unit: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    total_amount: Optional[float] = None
    net_weight: Optional[float] = None
    gross_weight: Optional[float] = None
    discount: Optional[float] = None
    currency: Optional[str] = None
    type: LineItemType = LineItemType.PRODUCT

    @field_validator(
        "description",
        "product_code",
        "hs_code",
        "origin_country",
        "size",
        "client_order",
        "po_number",
        "unit",
        "currency",
        mode="before",
    )
    @classmethod
    def scalar_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, (dict, list)):
            raise ValueError("expected a scalar value")
        text = str(v).strip()
        return text or None

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v: Any) -> LineItemType:
        if isinstance(v, LineItemType):
            return v
        if v is None or str(v).strip() == "":
            return LineItemType.PRODUCT
        try:
            return LineItemType(str(v).strip().lower())
        except ValueError:
            return LineItemType.OTHER


class ValidationReport(BaseModel):
    """Outcome of record validation."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class InvoiceRecord(BaseModel):
    """Normalized extraction result for one sub-document."""

    span_id: str
    label: str = ""
    page_range: str = ""
    fields: dict[str, ExtractedField] = Field(default_factory=dict)
    items: list[LineItem] = Field(default_factory=list)
    item_tier: Optional[ExtractionTier] = None
    item_evidence: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    validation: ValidationReport = Field(default_factory=ValidationReport)
    error: Optional[str] = None

    def value(self, name: str) -> Any:
        """Normalized value of a field, None when absent."""
        field = self.fields.get(name)
        return field.value if field else None

    @property
    def amount_due(self) -> Optional[float]:
        return self.value("amount_due")

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return ConfidenceLevel.from_score(self.confidence)

    def to_flat_dict(self) -> dict[str, Any]:
        """Plain field/value mapping with items, for export."""
        flat: dict[str, Any] = {
            "span_id": self.span_id,
            "page_range": self.page_range,
            "confidence": self.confidence,
        }
        flat.update((name, f.value) for name, f in self.fields.items())
        flat["items"] = [item.model_dump(mode="json") for item in self.items]
        return flat


def is_empty_value(value: Any) -> bool:
    """None, blank strings and empty containers count as absent."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False
