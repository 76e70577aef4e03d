"""Tests for the layout analysis client."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from azure.core.exceptions import HttpResponseError

from docsplit.clients.layout import (
    INVOICE_MODEL_ID,
    LAYOUT_MODEL_ID,
    AzureLayoutClient,
    layout_from_analyze_result,
)
from docsplit.config import Settings
from docsplit.errors import ConfigurationError


@pytest.fixture
def analyze_result(invoice_fields):
    """AnalyzeResult payload of a two-page invoice."""
    return {
        "content": "Facture FA-2025-0042\nTotal 2378.02",
        "pages": [
            {
                "pageNumber": 1,
                "words": [
                    {"content": "Facture", "confidence": 0.99},
                    {"content": "FA-2025-0042", "confidence": 0.97},
                ],
                "lines": [{"content": "Facture FA-2025-0042"}],
            },
            {
                "pageNumber": 2,
                "words": [{"content": "Total", "confidence": 0.98}],
                "lines": [{"content": "Total 2378.02"}],
            },
        ],
        "paragraphs": [
            {"content": "Facture FA-2025-0042", "boundingRegions": [{"pageNumber": 1}]},
        ],
        "tables": [
            {
                "rowCount": 2,
                "columnCount": 2,
                "cells": [
                    {"rowIndex": 0, "columnIndex": 1, "content": "Qty"},
                    {"rowIndex": 0, "columnIndex": 0, "content": "Description"},
                    {"rowIndex": 1, "columnIndex": 0, "content": "Ring", "confidence": 0.9},
                    {"rowIndex": 1, "columnIndex": 1, "content": "2"},
                ],
            }
        ],
        "keyValuePairs": [
            {"key": {"content": "Made in"}, "value": {"content": "Italy"}, "confidence": 0.8},
            {"key": {"content": ""}, "value": {"content": "orphan"}},
        ],
        "documents": [{"docType": "invoice", "fields": invoice_fields}],
    }


@pytest.fixture
def client():
    return AzureLayoutClient("https://di.example.com", "secret", timeout=5)


class TestLayoutFromAnalyzeResult:
    """Tests for converting AnalyzeResult payloads."""

    def test_pages(self, analyze_result):
        layout = layout_from_analyze_result(analyze_result)

        assert layout.page_count == 2
        assert layout.pages[0].text == "Facture FA-2025-0042"
        assert [w.content for w in layout.pages[0].words] == ["Facture", "FA-2025-0042"]

    def test_page_without_paragraphs_uses_lines(self, analyze_result):
        layout = layout_from_analyze_result(analyze_result)

        assert layout.pages[1].text == "Total 2378.02"

    def test_tables(self, analyze_result):
        table = layout_from_analyze_result(analyze_result).tables[0]

        assert table.headers == ["Description", "Qty"]
        assert table.rows() == [["Description", "Qty"], ["Ring", "2"]]
        assert table.get_cell(1, 0).confidence == 0.9

    def test_key_value_pairs_skip_empty_keys(self, analyze_result):
        pairs = layout_from_analyze_result(analyze_result).key_value_pairs

        assert len(pairs) == 1
        assert (pairs[0].key, pairs[0].value) == ("Made in", "Italy")

    def test_fields_of_first_document(self, analyze_result, invoice_fields):
        layout = layout_from_analyze_result(analyze_result)

        assert layout.fields == invoice_fields

    def test_empty_result(self):
        layout = layout_from_analyze_result({})

        assert layout.pages == []
        assert layout.fields == {}


class TestAzureLayoutClient:
    """Tests for AzureLayoutClient with the service call patched."""

    @pytest.mark.asyncio
    async def test_extract_pages(self, client, analyze_result):
        with patch.object(
            client, "_analyze_raw", AsyncMock(return_value=analyze_result)
        ) as raw:
            result = await client.extract_pages(b"%PDF")

        assert result.success
        assert [p.page_number for p in result.pages] == [1, 2]
        assert result.pages[0].word_count == 2
        assert result.total_words == 4
        raw.assert_awaited_once_with(LAYOUT_MODEL_ID, b"%PDF")

    @pytest.mark.asyncio
    async def test_extract_pages_without_pages(self, client):
        with patch.object(client, "_analyze_raw", AsyncMock(return_value={"pages": []})):
            result = await client.extract_pages(b"%PDF")

        assert not result.success
        assert result.error == "No pages found"

    @pytest.mark.asyncio
    async def test_extract_pages_service_error(self, client):
        error = HttpResponseError(message="401 Unauthorized")
        with patch.object(client, "_analyze_raw", AsyncMock(side_effect=error)):
            result = await client.extract_pages(b"%PDF")

        assert not result.success
        assert "Unauthorized" in result.error

    @pytest.mark.asyncio
    async def test_analyze_passes_query_fields(self, client, analyze_result):
        with patch.object(
            client, "_analyze_raw", AsyncMock(return_value=analyze_result)
        ) as raw:
            result = await client.analyze(b"%PDF", ["ExporterCity"])

        assert result.success
        assert result.layout.fields["InvoiceId"]["valueString"] == "FA-2025-0042"
        raw.assert_awaited_once_with(INVOICE_MODEL_ID, b"%PDF", ["ExporterCity"])

    @pytest.mark.asyncio
    async def test_analyze_timeout(self, client):
        with patch.object(
            client, "_analyze_raw", AsyncMock(side_effect=asyncio.TimeoutError())
        ):
            result = await client.analyze(b"%PDF")

        assert not result.success
        assert result.error == "Layout analysis timed out"
        assert result.layout is None


class TestFromSettings:
    """Tests for building the client from settings."""

    def test_missing_credentials(self):
        settings = Settings(_env_file=None, azure_di_endpoint=None, azure_di_key=None)

        with pytest.raises(ConfigurationError):
            AzureLayoutClient.from_settings(settings)

    def test_configured(self):
        settings = Settings(
            _env_file=None,
            azure_di_endpoint="https://di.example.com",
            azure_di_key="secret",
            layout_timeout_seconds=42,
        )

        client = AzureLayoutClient.from_settings(settings)

        assert client.endpoint == "https://di.example.com"
        assert client.timeout == 42
