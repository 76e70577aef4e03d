"""Pytest configuration and fixtures."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import fitz
import pytest

from docsplit.clients import LayoutAnalysis, PageExtractionResult
from docsplit.models import LayoutPage, LayoutResult, LayoutWord, PageRecord


def write_pdf(path: Path, page_texts: list[str]) -> Path:
    """Write a PDF with one page per text."""
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    doc.save(path)
    doc.close()
    return path


def pdf_page_texts(path: Path) -> list[str]:
    with fitz.open(path) as doc:
        return [page.get_text().strip() for page in doc]


def currency(amount: float, code: str = "EUR") -> dict:
    return {
        "type": "currency",
        "valueCurrency": {"amount": amount, "currencyCode": code},
        "confidence": 0.95,
    }


def string(value: str, confidence: float = 0.9) -> dict:
    return {"type": "string", "valueString": value, "content": value, "confidence": confidence}


@pytest.fixture
def read_pdf():
    """Page texts of a PDF file."""
    return pdf_page_texts


@pytest.fixture
def make_pdf(tmp_path):
    """Factory writing a PDF with the given page texts."""

    def _make(page_texts: list[str], name: str = "bundle.pdf") -> Path:
        return write_pdf(tmp_path / name, page_texts)

    return _make


@pytest.fixture
def bundle_pdf(make_pdf):
    """Five-page bundle holding two invoices."""
    return make_pdf(
        [
            "INVOICE INV-001 page 1",
            "INV-001 continued page 2",
            "INVOICE INV-002 page 3",
            "INV-002 continued page 4",
            "INV-002 totals page 5",
        ]
    )


@pytest.fixture
def page_corpus():
    """Factory for a PageCorpus of n pages."""

    def _make(n: int, text: str = "Invoice page") -> list[PageRecord]:
        return [PageRecord.from_text(i + 1, f"{text} {i + 1}") for i in range(n)]

    return _make


@pytest.fixture
def invoice_fields():
    """prebuilt-invoice fields payload for a two-line invoice."""
    return {
        "InvoiceId": string("FA-2025-0042", 0.97),
        "InvoiceDate": {"type": "date", "valueDate": "2025-09-21", "content": "21.09.2025", "confidence": 0.96},
        "VendorName": string("Atelier Dupont SA"),
        "CustomerName": string("Northwind GmbH"),
        "InvoiceTotal": currency(2378.02, "CHF"),
        "SubTotal": currency(2200.0, "CHF"),
        "Items": {
            "type": "array",
            "confidence": 0.88,
            "valueArray": [
                {
                    "type": "object",
                    "valueObject": {
                        "Description": string("Ring gold 18k"),
                        "ProductCode": string("R-100"),
                        "Quantity": {"type": "number", "valueNumber": 2, "confidence": 0.9},
                        "UnitPrice": currency(500.0, "CHF"),
                        "Amount": currency(1000.0, "CHF"),
                    },
                },
                {
                    "type": "object",
                    "valueObject": {
                        "Description": string("Chain platinum"),
                        "Quantity": {"type": "number", "valueNumber": 4, "confidence": 0.9},
                        "UnitPrice": currency(300.0, "CHF"),
                        "Amount": currency(1200.0, "CHF"),
                    },
                },
            ],
        },
    }


@pytest.fixture
def invoice_layout(invoice_fields):
    """LayoutResult of a one-page invoice."""
    words = "Facture FA-2025-0042 Made in Italy Total TTC 2'378.02 CHF".split()
    return LayoutResult(
        content=" ".join(words),
        pages=[
            LayoutPage(
                page_number=1,
                text=" ".join(words),
                words=[LayoutWord(content=w, confidence=0.99) for w in words],
            )
        ],
        fields=invoice_fields,
    )


@pytest.fixture
def fake_layout_client(invoice_layout):
    """Layout client answering every call with the sample invoice."""
    client = MagicMock()
    client.extract_pages = AsyncMock(
        return_value=PageExtractionResult(
            success=True,
            pages=[PageRecord.from_text(i + 1, f"INVOICE page {i + 1}") for i in range(5)],
        )
    )
    client.analyze = AsyncMock(return_value=LayoutAnalysis(success=True, layout=invoice_layout))
    return client


@pytest.fixture
def fake_oracle():
    """Oracle whose replies are set per test through `complete.return_value`."""
    oracle = MagicMock()
    oracle.complete = AsyncMock(return_value=json.dumps({"fields": {}}))
    return oracle
