"""End-to-end analysis of one exam paper."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import logging

import httpx
from psycopg_pool import AsyncConnectionPool

from .config import AppConfig, PipelineConfig
from .cropping import build_cropper
from .database import PostgresQuestionStore
from .dispatcher import DispatchSummary, SideEffectDispatcher
from .extraction import BatchResult, ExtractionClient, build_instruction
from .geometry import FigureLocation
from .llm import LLMClient
from .mark_scheme import AnswerKeyProcessor
from .merge import merge_records
from .models import MergedRecord, SourceDocument
from .partition import partition_pages
from .pdf import download_document, slice_pages
from .storage import FigureStorage

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AnalysisRequest:
    paper_id: str
    document_url: str
    answer_key_url: str | None = None
    category: str | None = None
    start_page: int | None = None
    end_page: int | None = None


@dataclass(slots=True)
class AnalysisSummary:
    """Counts reported back to the caller after a run."""

    items_extracted: int = 0
    figures_attempted: int = 0
    figures_cropped: int = 0
    answers_attempted: int = 0
    answers_extracted: int = 0
    batches: int = 0
    batches_failed: int = 0
    total_pages: int = 0
    batch_results: list[BatchResult] = field(default_factory=list, repr=False)

    def to_response(self) -> dict[str, object]:
        return {
            "success": True,
            "itemsExtracted": self.items_extracted,
            "figuresAttempted": self.figures_attempted,
            "figuresCropped": self.figures_cropped,
            "answersAttempted": self.answers_attempted,
            "answersExtracted": self.answers_extracted,
            "batches": self.batches,
            "batchesFailed": self.batches_failed,
            "totalPages": self.total_pages,
        }


def attach_page_dimensions(
    records: dict[int, MergedRecord],
    document: SourceDocument,
) -> int:
    """Stamp every figure with its page size; drop figures outside the document.

    Returns:
        Number of figures dropped.
    """

    dropped = 0

    def _resolve(location: FigureLocation, number: int) -> FigureLocation | None:
        nonlocal dropped
        size = document.page_size(location.page)
        if size is None:
            LOGGER.warning(
                "Dropping figure of question %s: page %s is outside the %s-page document",
                number,
                location.page,
                document.page_count,
            )
            dropped += 1
            return None
        return location.with_dimensions(*size)

    for number, record in records.items():
        if record.figure is not None:
            record.figure = _resolve(record.figure, number)
        for index, block in enumerate(record.blocks):
            if block.figure is not None:
                record.blocks[index] = replace(block, figure=_resolve(block.figure, number))
    return dropped


class PaperAnalysisPipeline:
    """Fetch, partition, extract, merge and dispatch a single paper."""

    def __init__(
        self,
        store: PostgresQuestionStore,
        extractor: ExtractionClient,
        dispatcher: SideEffectDispatcher,
        http: httpx.AsyncClient,
        config: PipelineConfig,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._dispatcher = dispatcher
        self._http = http
        self._config = config

    async def run(self, request: AnalysisRequest) -> AnalysisSummary:
        """Analyse one paper end to end.

        Raises:
            PaperNotFoundError: If the paper row does not exist.
            DocumentFetchError: If the source PDF cannot be downloaded.
        """

        paper = await self._store.get_paper(request.paper_id)
        topics = await self._store.list_topics(str(paper["subject_id"]))
        topic_ids = [topic["id"] for topic in topics]
        LOGGER.info("Analysing paper %s with %s allowed topic(s)", request.paper_id, len(topic_ids))

        document = await download_document(
            request.document_url,
            self._http,
            max_attempts=self._config.max_attempts,
            base_delay=self._config.base_delay,
        )
        ranges = partition_pages(
            document.page_count,
            self._config.batch_size,
            self._config.overlap,
            first_page=request.start_page or 1,
            last_page=request.end_page,
        )

        instruction = build_instruction(request.category)
        results: list[BatchResult] = []
        for page_range in ranges:
            content = await asyncio.to_thread(slice_pages, document, page_range)
            results.append(await self._extractor.extract(content, instruction, topic_ids, page_range))

        merged = merge_records(record for result in results for record in result.records)
        attach_page_dimensions(merged, document)
        LOGGER.info(
            "Merged %s question(s) from %s batch(es) of paper %s",
            len(merged),
            len(results),
            request.paper_id,
        )

        dispatch: DispatchSummary = await self._dispatcher.dispatch(
            request.paper_id,
            document,
            [merged[number] for number in sorted(merged)],
            topic_ids,
            answer_key_url=request.answer_key_url,
        )

        summary = AnalysisSummary(
            items_extracted=dispatch.items_upserted,
            figures_attempted=dispatch.figures_attempted,
            figures_cropped=dispatch.figures_cropped,
            answers_attempted=dispatch.answers_attempted,
            answers_extracted=dispatch.answers_extracted,
            batches=len(results),
            batches_failed=sum(1 for result in results if not result.ok),
            total_pages=document.page_count,
            batch_results=results,
        )
        if summary.batches_failed:
            LOGGER.warning(
                "Paper %s finished with %s of %s batch(es) failed",
                request.paper_id,
                summary.batches_failed,
                summary.batches,
            )
        return summary


def build_answer_key_processor(
    config: AppConfig,
    store: PostgresQuestionStore,
    llm: LLMClient,
    http: httpx.AsyncClient,
) -> AnswerKeyProcessor:
    return AnswerKeyProcessor(
        store,
        llm,
        http,
        group_size=config.pipeline.side_effect_concurrency,
        group_delay=config.pipeline.side_effect_delay,
        max_attempts=config.pipeline.max_attempts,
        base_delay=config.pipeline.base_delay,
    )


def build_pipeline(
    config: AppConfig,
    http: httpx.AsyncClient,
    pool: AsyncConnectionPool,
) -> PaperAnalysisPipeline:
    """Wire the concrete services for ``config``."""

    store = PostgresQuestionStore(pool)
    llm = LLMClient(config.model)
    dispatcher = SideEffectDispatcher(
        store,
        build_cropper(config.cropper, http),
        FigureStorage(config.storage),
        build_answer_key_processor(config, store, llm, http),
        group_size=config.pipeline.side_effect_concurrency,
        group_delay=config.pipeline.side_effect_delay,
        max_attempts=config.pipeline.max_attempts,
        base_delay=config.pipeline.base_delay,
    )
    return PaperAnalysisPipeline(store, ExtractionClient(llm), dispatcher, http, config.pipeline)
