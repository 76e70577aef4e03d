"""Tests for pipeline wiring and the CLI."""

import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from docsplit.cli import app
from docsplit.config import Settings
from docsplit.context import PipelineContext, build_context
from docsplit.errors import ConfigurationError
from docsplit.pipeline import (
    BatchController,
    BoundaryDetector,
    FieldExtractor,
    PDFSplitter,
    RecordNormalizer,
)
from docsplit.pipeline.stage_boundary import BOUNDARY_SYSTEM_PROMPT
from docsplit.storage import InMemoryBatchStore, SqlBatchStore

runner = CliRunner()


def configured_settings(tmp_path, **overrides):
    values = {
        "azure_di_endpoint": "https://di.example.com",
        "azure_di_key": "di-key",
        "azure_openai_endpoint": None,
        "azure_openai_key": None,
        "openai_api_key": "sk-test",
        "split_dir": str(tmp_path / "splits"),
        "page_text_budget": 500,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def pipeline_context(tmp_path, fake_layout_client, fake_oracle):
    """In-memory context over the fake services."""

    async def reply(system, user, **kwargs):
        if system == BOUNDARY_SYSTEM_PROMPT:
            return json.dumps(
                [
                    {"invoiceNumber": "INV-001", "startPage": 1, "endPage": 2},
                    {"invoiceNumber": "INV-002", "startPage": 3, "endPage": 5},
                ]
            )
        return json.dumps({"fields": {}})

    fake_oracle.complete.side_effect = reply
    store = InMemoryBatchStore()
    controller = BatchController(
        store=store,
        layout_client=fake_layout_client,
        detector=BoundaryDetector(fake_oracle),
        splitter=PDFSplitter(tmp_path / "splits"),
        extractor=FieldExtractor(fake_layout_client, fake_oracle),
        normalizer=RecordNormalizer(),
    )
    return PipelineContext(settings=Settings(_env_file=None), controller=controller, store=store)


class TestBuildContext:
    """Tests for build_context."""

    def test_in_memory(self, tmp_path):
        ctx = build_context(configured_settings(tmp_path), in_memory=True)

        assert isinstance(ctx.store, InMemoryBatchStore)
        assert ctx.engine is None
        assert ctx.controller.detector.page_text_budget == 500
        assert ctx.controller.splitter.output_dir == tmp_path / "splits"

    @pytest.mark.asyncio
    async def test_database_store(self, tmp_path):
        ctx = build_context(
            configured_settings(tmp_path),
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'batches.db'}",
        )

        assert isinstance(ctx.store, SqlBatchStore)
        assert ctx.engine is not None
        await ctx.close()

    def test_missing_credentials(self, tmp_path):
        settings = configured_settings(tmp_path, azure_di_key=None)

        with pytest.raises(ConfigurationError):
            build_context(settings, in_memory=True)


class TestProcessCommand:
    """Tests for `docsplit process`."""

    def test_process_writes_records(self, pipeline_context, bundle_pdf, tmp_path):
        output = tmp_path / "records.json"

        with patch("docsplit.cli.build_context", return_value=pipeline_context):
            result = runner.invoke(app, ["process", str(bundle_pdf), "-o", str(output)])

        assert result.exit_code == 0, result.output
        assert "DATA_VALIDATION_PENDING" in result.output
        records = json.loads(output.read_text(encoding="utf-8"))
        assert [r["page_range"] for r in records] == ["1-2", "3-5"]
        assert records[0]["fields"]["invoice_id"]["value"] == "FA-2025-0042"

    def test_flat_records(self, pipeline_context, bundle_pdf, tmp_path):
        output = tmp_path / "flat.json"

        with patch("docsplit.cli.build_context", return_value=pipeline_context):
            result = runner.invoke(
                app, ["process", str(bundle_pdf), "-o", str(output), "--flat"]
            )

        assert result.exit_code == 0, result.output
        records = json.loads(output.read_text(encoding="utf-8"))
        assert records[0]["span_id"] == "invoice_1"
        assert records[0]["invoice_id"] == "FA-2025-0042"
        assert "fields" not in records[0]
        assert len(records[0]["items"]) == 2

    def test_configuration_error(self, bundle_pdf):
        with patch(
            "docsplit.cli.build_context", side_effect=ConfigurationError("no credentials")
        ):
            result = runner.invoke(app, ["process", str(bundle_pdf)])

        assert result.exit_code == 2
        assert "no credentials" in result.output

    def test_failed_batch_exits_non_zero(self, pipeline_context, fake_layout_client, bundle_pdf):
        fake_layout_client.extract_pages.return_value.success = False
        fake_layout_client.extract_pages.return_value.error = "No pages found"

        with patch("docsplit.cli.build_context", return_value=pipeline_context):
            result = runner.invoke(app, ["process", str(bundle_pdf)])

        assert result.exit_code == 1
        assert "ERROR" in result.output
        assert "No pages found" in result.output
