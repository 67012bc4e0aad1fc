"""Persist merged questions and run their per-record side effects."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
import logging
import re
from typing import Any

from .cropping import Cropper
from .database import PostgresQuestionStore
from .errors import CroppingError, DocumentFetchError
from .geometry import FigureLocation
from .mark_scheme import AnswerKeyProcessor
from .models import Block, JsonDict, MergedRecord, QUESTION_TYPES, SourceDocument
from .retry import gather_in_groups, retry_with_backoff
from .storage import FigureStorage, figure_object_name

LOGGER = logging.getLogger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
SUMMARY_LENGTH = 200


@dataclass(slots=True)
class DispatchSummary:
    items_upserted: int = 0
    figures_attempted: int = 0
    figures_cropped: int = 0
    answers_attempted: int = 0
    answers_extracted: int = 0


@dataclass(slots=True)
class PreparedQuestion:
    """A validated question row plus the blocks its figures point into."""

    question_number: int
    kind: str
    content: str
    topic_ids: list[str]
    marks: int
    options: list[dict[str, str]]
    figure: FigureLocation | None
    blocks: list[Block] = field(default_factory=list)
    ai_answer: str | None = None

    def to_row(self) -> JsonDict:
        ai_answer: JsonDict | None = None
        if self.ai_answer:
            ai_answer = {"ai_solution": self.ai_answer}
        return {
            "question_number": self.question_number,
            "type": self.kind,
            "content": self.content,
            "topic_ids": self.topic_ids,
            "marks": self.marks,
            "options": self.options or None,
            "structure_data": {"blocks": [b.to_payload() for b in self.blocks]} if self.blocks else None,
            "figure_location": self.figure.to_payload() if self.figure else None,
            "ai_answer": ai_answer,
        }


@dataclass(slots=True)
class _CropJob:
    question: PreparedQuestion
    question_id: str
    index: int
    location: FigureLocation
    block: Block | None = None
    url: str | None = None


def filter_topic_ids(topic_ids: Iterable[str], allowed: set[str]) -> list[str]:
    """Keep ids that are UUID-shaped and belong to the allowed set, in order."""
    kept: list[str] = []
    for topic_id in topic_ids:
        if not UUID_RE.match(topic_id):
            LOGGER.warning("Filtering out invalid topic_id (not UUID): %s", topic_id)
        elif topic_id not in allowed:
            LOGGER.warning("Filtering out topic_id (not allowed): %s", topic_id)
        elif topic_id not in kept:
            kept.append(topic_id)
    return kept


def make_labels_unique(blocks: list[Block]) -> list[Block]:
    """Suffix repeated part labels: ``(i)``, ``(i)_1``, ``(i)_2``."""
    counts: dict[str, int] = {}
    unique: list[Block] = []
    for block in blocks:
        if block.kind == "question_part" and block.label:
            count = counts.get(block.label, 0)
            counts[block.label] = count + 1
            if count:
                LOGGER.debug("Deduplicating label %r -> %r", block.label, f"{block.label}_{count}")
                block = replace(block, label=f"{block.label}_{count}")
        unique.append(block)
    return unique


def prepare_question(record: MergedRecord, allowed_topics: set[str]) -> PreparedQuestion:
    """Validate and coerce one merged record into a storable question."""

    kind = record.kind if record.kind in QUESTION_TYPES else ("mcq" if record.options else "structured")
    blocks: list[Block] = []
    for block in record.blocks:
        if block.kind == "question_part" and not (block.marks and block.marks > 0):
            block = replace(block, kind="text", marks=None)
        blocks.append(block)
    blocks = make_labels_unique(blocks)

    part_marks = sum(b.marks for b in blocks if b.kind == "question_part" and b.marks)
    if part_marks > 0:
        marks = part_marks
    elif record.marks and record.marks > 0:
        marks = record.marks
    else:
        marks = 1

    content = record.content
    if kind == "structured" and not content:
        texts = [b.content for b in blocks if b.kind == "text" and b.content]
        content = " ".join(texts)[:SUMMARY_LENGTH] if texts else f"Structured Question {record.question_number}"

    return PreparedQuestion(
        question_number=record.question_number,
        kind=kind,
        content=content,
        topic_ids=filter_topic_ids(record.topic_ids, allowed_topics),
        marks=marks,
        options=record.options,
        figure=record.figure,
        blocks=blocks,
        ai_answer=record.ai_answer,
    )


def keep_answer_key_fields(question: PreparedQuestion, existing: JsonDict | None) -> None:
    """Carry answer-key and figure results of a stored row onto a re-extracted question.

    Part answers and rationales are matched by label and figure URLs by
    position. Once an MCQ row has an official answer its marks and
    ``ai_answer`` belong to the answer key and are kept as stored.
    """

    if not existing:
        return
    if existing.get("official_answer") and question.kind == "mcq":
        if existing.get("marks"):
            question.marks = int(existing["marks"])
        stored_answer = existing.get("ai_answer")
        if isinstance(stored_answer, dict) and stored_answer.get("ai_solution"):
            question.ai_answer = stored_answer["ai_solution"]

    structure = existing.get("structure_data")
    payloads = structure.get("blocks") if isinstance(structure, dict) else None
    stored = [Block.from_payload(block) for block in payloads or [] if isinstance(block, dict)]
    if not stored or not question.blocks:
        return
    stored_parts = {block.label: block for block in stored if block.kind == "question_part" and block.label}
    stored_figures = [block for block in stored if block.kind == "figure"]

    figure_index = 0
    for index, block in enumerate(question.blocks):
        if block.kind == "question_part":
            previous = stored_parts.get(block.label)
            if previous is None or not (previous.official_answer or previous.ai_explanation):
                continue
            question.blocks[index] = replace(
                block,
                official_answer=block.official_answer or previous.official_answer,
                ai_explanation=block.ai_explanation or previous.ai_explanation,
                marks=previous.marks if previous.official_answer and previous.marks else block.marks,
            )
        elif block.kind == "figure":
            if figure_index < len(stored_figures) and stored_figures[figure_index].url and not block.url:
                question.blocks[index] = replace(block, url=stored_figures[figure_index].url)
            figure_index += 1


class SideEffectDispatcher:
    """Upsert questions, then crop their figures and apply the answer key."""

    def __init__(
        self,
        store: PostgresQuestionStore,
        cropper: Cropper,
        storage: FigureStorage,
        answer_keys: AnswerKeyProcessor | None = None,
        *,
        group_size: int = 1,
        group_delay: float = 1.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._store = store
        self._cropper = cropper
        self._storage = storage
        self._answer_keys = answer_keys
        self._group_size = group_size
        self._group_delay = group_delay
        self._max_attempts = max_attempts
        self._base_delay = base_delay

    async def dispatch(
        self,
        paper_id: str,
        document: SourceDocument,
        records: Iterable[MergedRecord],
        allowed_topics: Iterable[str],
        answer_key_url: str | None = None,
    ) -> DispatchSummary:
        allowed = set(allowed_topics)
        prepared = [prepare_question(record, allowed) for record in records]
        summary = DispatchSummary()
        if not prepared:
            LOGGER.info("Nothing to persist for paper %s", paper_id)
        else:
            stored = {row["question_number"]: row for row in await self._store.list_questions(paper_id)}
            for question in prepared:
                keep_answer_key_fields(question, stored.get(question.question_number))
            ids = await self._store.upsert_questions(paper_id, [question.to_row() for question in prepared])
            summary.items_upserted = len(ids)
            await self._crop_figures(document, prepared, ids, summary)

        if answer_key_url and self._answer_keys is not None:
            try:
                answers = await self._answer_keys.process(paper_id, answer_key_url)
            except DocumentFetchError as exc:
                LOGGER.error("Skipping answer key for paper %s: %s", paper_id, exc)
            else:
                summary.answers_attempted = answers.answers_attempted
                summary.answers_extracted = answers.answers_extracted

        LOGGER.info(
            "Dispatch for paper %s: %s upserted, %s/%s figures, %s/%s answers",
            paper_id,
            summary.items_upserted,
            summary.figures_cropped,
            summary.figures_attempted,
            summary.answers_extracted,
            summary.answers_attempted,
        )
        return summary

    async def _crop_figures(
        self,
        document: SourceDocument,
        prepared: list[PreparedQuestion],
        ids: dict[int, str],
        summary: DispatchSummary,
    ) -> None:
        jobs = _crop_jobs(prepared, ids)
        summary.figures_attempted = len(jobs)
        if not jobs:
            return

        outcomes = await gather_in_groups(
            [lambda job=job: self._crop_one(document, job) for job in jobs],
            group_size=self._group_size,
            delay=self._group_delay,
        )
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.error(
                    "Figure %s of question %s (page %s) failed: %s",
                    job.index,
                    job.question.question_number,
                    job.location.page,
                    outcome,
                )

        # A figure counts once its URL is stored on the question row
        for question in prepared:
            question_jobs = [job for job in jobs if job.question is question and job.url]
            if not question_jobs:
                continue
            fields: dict[str, Any] = {"image_url": question_jobs[0].url}
            if any(job.block is not None for job in question_jobs):
                fields["structure_data"] = {"blocks": [block.to_payload() for block in question.blocks]}
            try:
                await self._store.update_question(question_jobs[0].question_id, fields)
            except Exception:
                LOGGER.exception("Failed to store figure URLs for question %s", question.question_number)
            else:
                summary.figures_cropped += len(question_jobs)

    async def _crop_one(self, document: SourceDocument, job: _CropJob) -> str:
        image = await retry_with_backoff(
            lambda: self._cropper.crop(document, job.location),
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            retry_on=(CroppingError,),
            description=f"Crop of question {job.question.question_number} figure {job.index}",
        )
        object_name = figure_object_name(job.question_id, job.index, self._storage.folder)
        url = await self._storage.upload_png(image, object_name)
        job.url = url
        if job.block is not None:
            job.block.url = url
        return url


def _crop_jobs(prepared: list[PreparedQuestion], ids: dict[int, str]) -> list[_CropJob]:
    jobs: list[_CropJob] = []
    for question in prepared:
        question_id = ids.get(question.question_number)
        if question_id is None:
            continue
        locations: list[tuple[FigureLocation, Block | None]] = []
        if question.figure is not None:
            locations.append((question.figure, None))
        for index, block in enumerate(question.blocks):
            if block.kind == "figure" and block.figure is not None:
                # Copy so the uploaded URL is set on this question only
                block = replace(block)
                question.blocks[index] = block
                locations.append((block.figure, block))
        for index, (location, block) in enumerate(locations):
            if not location.has_dimensions:
                LOGGER.warning(
                    "Skipping figure on page %s of question %s: no page dimensions",
                    location.page,
                    question.question_number,
                )
                continue
            jobs.append(_CropJob(question, question_id, index, location, block))
    return jobs
