"""Attach official mark-scheme answers to already persisted questions."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any

import httpx
import openai

from .adapters import adapt_answer_key
from .database import PostgresQuestionStore
from .errors import ExtractionParseError
from .extraction import build_mark_scheme_instruction
from .llm import LLMClient
from .models import AnswerKeyEntry, Block
from .pdf import download_document
from .repair import repair_json
from .retry import gather_in_groups

LOGGER = logging.getLogger(__name__)

_MCQ_LETTER_RE = re.compile(r"^[A-D]$", re.IGNORECASE)
_LABEL_STRIP_RE = re.compile(r"[^a-z0-9]")


@dataclass(slots=True)
class AnswerKeySummary:
    answers_attempted: int = 0
    answers_extracted: int = 0


@dataclass(slots=True)
class _Match:
    """One question (MCQ) or question part (structured) with its official answer."""

    question_id: str
    prompt_content: str
    official_answer: str
    marks: int | None = None
    block: Block | None = None
    rationale: str | None = None


@dataclass(slots=True)
class _QuestionUpdate:
    question: dict[str, Any]
    blocks: list[Block] = field(default_factory=list)
    matches: list[_Match] = field(default_factory=list)


def normalize_label(label: str | None) -> str:
    """Lowercase alphanumerics only, so ``"(b)(i)"`` becomes ``"bi"``."""
    return _LABEL_STRIP_RE.sub("", (label or "").lower())


def labels_match(part_label: str | None, answer_label: str | None) -> bool:
    """Equal after normalising, or the answer's label ends with the part's."""
    part = normalize_label(part_label)
    answer = normalize_label(answer_label)
    if not part or not answer:
        return False
    return answer == part or answer.endswith(part)


def mcq_answer(entry: AnswerKeyEntry) -> str | None:
    """Return a usable MCQ answer, or None when the entry is not a letter."""
    answer = entry.official_answer.strip()
    if len(answer) <= 2:
        return answer
    if _MCQ_LETTER_RE.match(answer):
        return answer.upper()
    return None


class AnswerKeyProcessor:
    """Extract an answer key with the model and write it onto question rows."""

    def __init__(
        self,
        store: PostgresQuestionStore,
        llm: LLMClient,
        http: httpx.AsyncClient,
        *,
        group_size: int = 1,
        group_delay: float = 1.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._store = store
        self._llm = llm
        self._http = http
        self._group_size = group_size
        self._group_delay = group_delay
        self._max_attempts = max_attempts
        self._base_delay = base_delay

    async def process(self, paper_id: str, answer_key_url: str) -> AnswerKeySummary:
        """Match the answer key at ``answer_key_url`` against the paper's questions.

        Raises:
            DocumentFetchError: If the answer key cannot be downloaded.
        """

        questions = await self._store.list_questions(paper_id)
        if not questions:
            LOGGER.info("No questions stored for paper %s; skipping answer key", paper_id)
            return AnswerKeySummary()

        document = await download_document(
            answer_key_url,
            self._http,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
        )
        entries = await self._extract_entries(document.data)
        if not entries:
            LOGGER.warning("No official answers extracted for paper %s", paper_id)
            return AnswerKeySummary()
        LOGGER.info("Extracted %s official answer(s) for paper %s", len(entries), paper_id)

        updates = [self._match_question(question, entries) for question in questions]
        updates = [update for update in updates if update.matches]
        matches = [match for update in updates for match in update.matches]
        summary = AnswerKeySummary(answers_attempted=len(matches))
        if not matches:
            return summary

        await gather_in_groups(
            [lambda match=match: self._add_rationale(match) for match in matches],
            group_size=self._group_size,
            delay=self._group_delay,
        )

        outcomes = await gather_in_groups(
            [lambda update=update: self._save(update) for update in updates],
            group_size=self._group_size,
        )
        for update, outcome in zip(updates, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.error(
                    "Failed to save official answers for question %s: %s",
                    update.question.get("question_number"),
                    outcome,
                )
                continue
            summary.answers_extracted += len(update.matches)

        LOGGER.info(
            "Answer key for paper %s: %s/%s answer(s) saved",
            paper_id,
            summary.answers_extracted,
            summary.answers_attempted,
        )
        return summary

    async def _extract_entries(self, data: bytes) -> list[AnswerKeyEntry]:
        try:
            text = await self._llm.complete(
                build_mark_scheme_instruction(),
                attachment=data,
                filename="mark_scheme.pdf",
                json_output=True,
            )
        except openai.OpenAIError as exc:
            LOGGER.error("Answer key extraction failed: %s", exc)
            return []
        try:
            return adapt_answer_key(repair_json(text).data)
        except ExtractionParseError as exc:
            LOGGER.error("Answer key output could not be parsed: %s", exc)
            return []

    def _match_question(self, question: dict[str, Any], entries: list[AnswerKeyEntry]) -> _QuestionUpdate:
        number = question.get("question_number")
        candidates = [entry for entry in entries if entry.question_number == number]
        update = _QuestionUpdate(question=question)
        if not candidates:
            return update

        if question.get("type") == "mcq":
            answer = mcq_answer(candidates[0])
            if answer:
                update.matches.append(
                    _Match(
                        question_id=question["id"],
                        prompt_content=question.get("content") or "",
                        official_answer=answer,
                        marks=candidates[0].marks,
                    ),
                )
            return update

        structure = question.get("structure_data") or {}
        update.blocks = [Block.from_payload(block) for block in structure.get("blocks", [])]
        for block in update.blocks:
            if block.kind != "question_part":
                continue
            entry = next((c for c in candidates if labels_match(block.label, c.sub_part)), None)
            if entry is None:
                continue
            block.official_answer = entry.official_answer
            block.marks = entry.marks or block.marks
            update.matches.append(
                _Match(
                    question_id=question["id"],
                    prompt_content=block.content or "",
                    official_answer=entry.official_answer,
                    marks=entry.marks,
                    block=block,
                ),
            )
        return update

    async def _add_rationale(self, match: _Match) -> None:
        if match.block is None:
            prompt = (
                f'Explain why "{match.official_answer}" is correct for: '
                f'"{match.prompt_content}". 3 sentences max.'
            )
        else:
            prompt = (
                f'Model answer for: "{match.prompt_content}". '
                f'Points: "{match.official_answer}". 3 sentences max.'
            )
        try:
            text = await self._llm.complete(prompt)
        except openai.OpenAIError as exc:
            LOGGER.warning("Rationale request failed for question %s: %s", match.question_id, exc)
            return
        match.rationale = text.strip() or None
        if match.block is not None:
            match.block.ai_explanation = match.rationale

    async def _save(self, update: _QuestionUpdate) -> None:
        question = update.question
        if question.get("type") == "mcq":
            match = update.matches[0]
            fields: dict[str, Any] = {"official_answer": match.official_answer}
            if match.marks:
                fields["marks"] = match.marks
            ai_answer = dict(question.get("ai_answer") or {})
            if match.rationale:
                ai_answer["ai_solution"] = match.rationale
            fields["ai_answer"] = ai_answer or None
        else:
            structure = dict(question.get("structure_data") or {})
            structure["blocks"] = [block.to_payload() for block in update.blocks]
            fields = {"structure_data": structure}
        await self._store.update_question(question["id"], fields)
