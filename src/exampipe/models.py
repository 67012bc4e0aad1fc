"""Shared dataclasses and type aliases."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

from .geometry import FigureLocation

JsonDict = dict[str, Any]

QUESTION_TYPES = ("structured", "mcq")
BLOCK_KINDS = ("text", "figure", "question_part")


@dataclass(frozen=True, slots=True)
class PageRange:
    """An inclusive, 1-indexed span of pages processed as one batch."""

    start: int
    end: int

    @property
    def offset(self) -> int:
        """Number of pages preceding this batch in the full document."""
        return self.start - 1

    def __len__(self) -> int:
        return self.end - self.start + 1

    def indices(self) -> Iterator[int]:
        """0-based page indices, as used by PDF libraries."""
        return iter(range(self.start - 1, self.end))


@dataclass(frozen=True, slots=True)
class SourceDocument:
    """Raw PDF bytes plus the size of every page, in points."""

    url: str
    data: bytes = field(repr=False)
    page_sizes: tuple[tuple[float, float], ...]

    @property
    def page_count(self) -> int:
        return len(self.page_sizes)

    def page_size(self, page: int) -> tuple[float, float] | None:
        """Width and height of a 1-indexed page, or None when out of range."""
        if 1 <= page <= self.page_count:
            return self.page_sizes[page - 1]
        return None


@dataclass(slots=True)
class Block:
    """One element of a structured question's ordered content flow."""

    kind: str
    content: str | None = None
    label: str | None = None
    marks: int | None = None
    figure_label: str | None = None
    description: str | None = None
    ai_answer: str | None = None
    figure: FigureLocation | None = None
    url: str | None = None
    official_answer: str | None = None
    ai_explanation: str | None = None

    def to_payload(self) -> JsonDict:
        payload: JsonDict = {"type": self.kind}
        for key in (
            "content",
            "label",
            "marks",
            "figure_label",
            "description",
            "ai_answer",
            "url",
            "official_answer",
            "ai_explanation",
        ):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.figure is not None:
            location = self.figure.to_payload()
            payload["page"] = location.pop("page")
            payload["page_width"] = location.pop("page_width")
            payload["page_height"] = location.pop("page_height")
            payload["bbox"] = location
        return payload

    @classmethod
    def from_payload(cls, payload: JsonDict) -> Block:
        figure = None
        bbox = payload.get("bbox")
        if isinstance(bbox, dict) and payload.get("page") is not None:
            figure = FigureLocation.from_payload(
                {
                    **bbox,
                    "page": payload["page"],
                    "page_width": payload.get("page_width"),
                    "page_height": payload.get("page_height"),
                },
            )
        return cls(
            kind=str(payload.get("type", "text")),
            content=payload.get("content"),
            label=payload.get("label"),
            marks=payload.get("marks"),
            figure_label=payload.get("figure_label"),
            description=payload.get("description"),
            ai_answer=payload.get("ai_answer"),
            figure=figure,
            url=payload.get("url"),
            official_answer=payload.get("official_answer"),
            ai_explanation=payload.get("ai_explanation"),
        )


@dataclass(slots=True)
class RawRecord:
    """One question as returned by the model, before merging.

    Figure pages are relative to the batch; ``batch_offset`` maps them back
    onto the full document.
    """

    question_number: int
    content: str = ""
    kind: str | None = None
    topic_ids: list[str] = field(default_factory=list)
    marks: int | None = None
    options: list[dict[str, str]] = field(default_factory=list)
    figure: FigureLocation | None = None
    blocks: list[Block] = field(default_factory=list)
    ai_answer: str | None = None
    batch_offset: int = 0


@dataclass(slots=True)
class MergedRecord:
    """The single canonical record for a question number within a paper."""

    question_number: int
    content: str = ""
    kind: str | None = None
    topic_ids: list[str] = field(default_factory=list)
    marks: int | None = None
    options: list[dict[str, str]] = field(default_factory=list)
    figure: FigureLocation | None = None
    blocks: list[Block] = field(default_factory=list)
    ai_answer: str | None = None
    fragments: int = 1


@dataclass(slots=True)
class AnswerKeyEntry:
    """A row of an official mark scheme."""

    question_number: int
    sub_part: str | None
    official_answer: str
    marks: int | None = None


__all__ = [
    "AnswerKeyEntry",
    "BLOCK_KINDS",
    "Block",
    "JsonDict",
    "MergedRecord",
    "PageRange",
    "QUESTION_TYPES",
    "RawRecord",
    "SourceDocument",
]
