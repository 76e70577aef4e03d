"""Base models and common types for the invoice bundle pipeline."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ExtractionTier(str, Enum):
    """Extraction strategies ordered by trust (highest first)."""

    DETERMINISTIC = "deterministic"
    TARGETED_LOOKUP = "targeted_lookup"
    INFERENCE_FALLBACK = "inference_fallback"


# Merge precedence, highest trust first
TIER_ORDER: tuple[ExtractionTier, ...] = (
    ExtractionTier.DETERMINISTIC,
    ExtractionTier.TARGETED_LOOKUP,
    ExtractionTier.INFERENCE_FALLBACK,
)


class FieldKind(str, Enum):
    """Value kind of a canonical field, drives normalization."""

    TEXT = "text"
    DATE = "date"
    CURRENCY = "currency"
    COUNTRY = "country"
    NUMBER = "number"


class ConfidenceLevel(str, Enum):
    """Confidence classification for extracted records."""

    HIGH = "high"  # >0.9 confidence
    MEDIUM = "medium"  # 0.7-0.9 confidence
    LOW = "low"  # 0.5-0.7 confidence
    VERY_LOW = "very_low"  # <0.5 confidence - needs review

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        """Classify a 0-1 confidence score."""
        if score > 0.9:
            return cls.HIGH
        if score >= 0.7:
            return cls.MEDIUM
        if score >= 0.5:
            return cls.LOW
        return cls.VERY_LOW


class BaseIRModel(BaseModel):
    """Base class for persisted models with common fields."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True  # For SQLAlchemy compatibility
