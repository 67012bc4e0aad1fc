"""Per-batch question extraction against the model."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
import logging

import openai

from .adapters import adapt_records
from .errors import ExtractionParseError
from .llm import LLMClient
from .models import PageRange, RawRecord
from .repair import RepairStage, repair_json

LOGGER = logging.getLogger(__name__)

CATEGORIES = ("structured", "mcq")

_COMMON_RULES = """\
Rules:
- Return a single JSON object and nothing else.
- question_number is the integer printed on the paper.
- Only use topic ids from the allowed list; use an empty list when unsure.
- Figure boxes are percentages of the page: x and y are the top-left corner,
  width and height the size, all between 0 and 100.
- page numbers are 1-indexed and relative to the attached document.
- A question continued from a previous page keeps its original question_number.
"""

_STRUCTURED_INSTRUCTION = """\
Extract every structured question from the attached exam paper pages.

Return {"questions": [{"question_number": int, "type": "structured",
"topic_ids": [str], "total_marks": int, "blocks": [...]}]} where blocks keep
the printed order and are one of:
  {"type": "text", "content": str}
  {"type": "figure", "figure_label": str, "description": str,
   "page": int, "bbox": {"x": num, "y": num, "width": num, "height": num}}
  {"type": "question_part", "label": str, "content": str, "marks": int,
   "ai_answer": str}
Ignore cover pages, instructions and blank pages.
"""

_MCQ_INSTRUCTION = """\
Extract every multiple-choice question from the attached exam paper pages.

Return {"questions": [{"question_number": int, "type": "mcq", "content": str,
"topic_ids": [str], "marks": int, "options": [{"label": "A", "text": str}],
"figure": {"page": int, "x": num, "y": num, "width": num, "height": num} or null,
"ai_answer": str}]}.
Include the option letters A-D exactly as printed.
"""

_MARK_SCHEME_INSTRUCTION = """\
Extract every answer from the attached official mark scheme.

Return {"answers": [{"question_number": int, "sub_part": str or null,
"official_answer": str, "marks": int}]}. For multiple-choice questions the
official_answer is the single correct letter. For structured questions use
the printed part label (for example "a", "b(i)") as sub_part.
"""


def build_instruction(category: str | None) -> str:
    """Return the extraction prompt for a paper category."""

    if category == "mcq":
        return _MCQ_INSTRUCTION + "\n" + _COMMON_RULES
    return _STRUCTURED_INSTRUCTION + "\n" + _COMMON_RULES


def build_mark_scheme_instruction() -> str:
    return _MARK_SCHEME_INSTRUCTION


@dataclass(slots=True)
class ExtractionFailure:
    """Why a batch produced no records."""

    kind: str
    message: str


@dataclass(slots=True)
class BatchResult:
    """Outcome of one extraction call."""

    page_range: PageRange
    records: list[RawRecord] = field(default_factory=list)
    failure: ExtractionFailure | None = None
    repair_stage: RepairStage | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class ExtractionClient:
    """Turn one batch of PDF pages into raw question records."""

    def __init__(self, llm: LLMClient, max_output_tokens: int | None = None) -> None:
        self._llm = llm
        self._max_output_tokens = max_output_tokens

    async def extract(
        self,
        content: bytes,
        instruction: str,
        valid_tags: Iterable[str],
        page_range: PageRange,
    ) -> BatchResult:
        """Extract records from ``content``; batch-level failures are returned."""

        prompt = _with_allowed_topics(instruction, valid_tags)
        LOGGER.info("Extracting pages %s-%s", page_range.start, page_range.end)
        try:
            text = await self._llm.complete(
                prompt,
                attachment=content,
                filename=f"pages_{page_range.start}_{page_range.end}.pdf",
                json_output=True,
                max_output_tokens=self._max_output_tokens,
            )
        except openai.OpenAIError as exc:
            LOGGER.error("Model call failed for pages %s-%s: %s", page_range.start, page_range.end, exc)
            return BatchResult(page_range, failure=ExtractionFailure("upstream", str(exc)))

        try:
            result = repair_json(text)
        except ExtractionParseError as exc:
            LOGGER.error(
                "Discarding pages %s-%s: %s chars of unparseable output, starting %r",
                page_range.start,
                page_range.end,
                exc.raw_length,
                exc.prefix,
            )
            return BatchResult(page_range, failure=ExtractionFailure("parse", str(exc)))

        try:
            records = adapt_records(result.data, batch_offset=page_range.offset)
        except (AttributeError, KeyError, OverflowError, TypeError, ValueError) as exc:
            LOGGER.error("Discarding pages %s-%s: unexpected response shape: %s", page_range.start, page_range.end, exc)
            return BatchResult(
                page_range,
                failure=ExtractionFailure("shape", str(exc)),
                repair_stage=result.stage,
            )
        if result.repaired:
            LOGGER.warning(
                "Pages %s-%s needed JSON repair (stage %s); kept %s record(s)",
                page_range.start,
                page_range.end,
                result.stage.name,
                len(records),
            )
        else:
            LOGGER.info("Pages %s-%s yielded %s record(s)", page_range.start, page_range.end, len(records))
        return BatchResult(page_range, records=records, repair_stage=result.stage)


def _with_allowed_topics(instruction: str, valid_tags: Iterable[str]) -> str:
    tags = sorted(set(valid_tags))
    allowed = "\n".join(f"- {tag}" for tag in tags) if tags else "(none: leave topic_ids empty)"
    return f"{instruction}\nAllowed topic ids:\n{allowed}\n"
