"""Adapters for the external services used by the pipeline."""

from .layout import (
    AzureLayoutClient,
    LayoutAnalysis,
    LayoutClient,
    PageExtractionResult,
    layout_from_analyze_result,
)
from .oracle import InferenceOracle, OpenAIOracle, create_openai_client

__all__ = [
    # Layout analysis
    "AzureLayoutClient",
    "LayoutAnalysis",
    "LayoutClient",
    "PageExtractionResult",
    "layout_from_analyze_result",
    # Inference oracle
    "InferenceOracle",
    "OpenAIOracle",
    "create_openai_client",
]
