"""Fold per-batch records into one record per question number."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
import logging

from .models import Block, MergedRecord, RawRecord

LOGGER = logging.getLogger(__name__)


def merge_records(records: Iterable[RawRecord]) -> dict[int, MergedRecord]:
    """Merge raw records keyed by ``question_number``.

    Figures are moved onto absolute document pages using each record's
    ``batch_offset``. When a number repeats, content is joined with a blank
    line, blocks are appended, marks keep the larger value and the first
    non-empty figure, options, topic ids, type and answer win.

    A later fragment can therefore not correct an earlier one; a placeholder
    extracted from an overlap page sticks.
    """

    merged: dict[int, MergedRecord] = {}
    for record in records:
        figure = record.figure.shifted(record.batch_offset) if record.figure else None
        blocks = [_shift_block(block, record.batch_offset) for block in record.blocks]

        existing = merged.get(record.question_number)
        if existing is None:
            merged[record.question_number] = MergedRecord(
                question_number=record.question_number,
                content=record.content,
                kind=record.kind,
                topic_ids=list(record.topic_ids),
                marks=record.marks,
                options=list(record.options),
                figure=figure,
                blocks=blocks,
                ai_answer=record.ai_answer,
            )
            continue

        LOGGER.debug("Merging fragment of question %s", record.question_number)
        if record.content:
            existing.content = f"{existing.content}\n\n{record.content}" if existing.content else record.content
        existing.blocks.extend(blocks)
        existing.marks = _larger(existing.marks, record.marks)
        existing.figure = existing.figure or figure
        existing.options = existing.options or list(record.options)
        existing.topic_ids = existing.topic_ids or list(record.topic_ids)
        existing.kind = existing.kind or record.kind
        existing.ai_answer = existing.ai_answer or record.ai_answer
        existing.fragments += 1

    return merged


def _shift_block(block: Block, offset: int) -> Block:
    if block.figure is None or not offset:
        return replace(block)
    return replace(block, figure=block.figure.shifted(offset))


def _larger(left: int | None, right: int | None) -> int | None:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)
