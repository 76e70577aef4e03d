"""Wiring of services and pipeline stages from settings."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from docsplit.clients import AzureLayoutClient, OpenAIOracle
from docsplit.config import Settings
from docsplit.pipeline import (
    BatchController,
    BoundaryDetector,
    FieldExtractor,
    PDFSplitter,
    RecordNormalizer,
)
from docsplit.storage import (
    BatchStore,
    InMemoryBatchStore,
    SqlBatchStore,
    close_db,
    create_engine,
    create_session_factory,
)


@dataclass
class PipelineContext:
    """Everything a CLI command needs to run the pipeline."""

    settings: Settings
    controller: BatchController
    store: BatchStore
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.engine is not None:
            await close_db(self.engine)


def build_context(
    settings: Settings,
    in_memory: bool = False,
    database_url: Optional[str] = None,
) -> PipelineContext:
    """Build the controller and its collaborators.

    Args:
        settings: Application settings
        in_memory: Keep batches in process memory instead of the database
        database_url: Override the database URL from settings

    Raises:
        ConfigurationError: If layout or oracle credentials are missing
    """
    layout_client = AzureLayoutClient.from_settings(settings)
    oracle = OpenAIOracle.from_settings(settings)

    engine = None
    if in_memory:
        store: BatchStore = InMemoryBatchStore()
    else:
        engine = create_engine(settings, database_url)
        store = SqlBatchStore(create_session_factory(engine))

    controller = BatchController(
        store=store,
        layout_client=layout_client,
        detector=BoundaryDetector(
            oracle,
            page_text_budget=settings.page_text_budget,
            fallback_confidence=settings.fallback_confidence,
        ),
        splitter=PDFSplitter(Path(settings.split_dir)),
        extractor=FieldExtractor(
            layout_client,
            oracle,
            query_batch_size=settings.query_batch_size,
            max_excerpt_bytes=settings.max_json_window_bytes,
            table_chunk_rows=settings.table_chunk_rows,
        ),
        normalizer=RecordNormalizer(settings.guardrail_high, settings.guardrail_low),
    )
    return PipelineContext(settings=settings, controller=controller, store=store, engine=engine)
