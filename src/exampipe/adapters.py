"""Convert the model's accepted JSON shapes into canonical records.

Three response shapes are understood, each with its own adapter:

* a bare array of question objects
* ``{"questions": [...]}`` (flat questions or ones carrying ``blocks``)
* ``{"d": [[...], ...]}`` compact rows, read through :class:`CompactRow`

Everything downstream only ever sees :class:`RawRecord`.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, NamedTuple

from .geometry import FigureLocation
from .models import AnswerKeyEntry, Block, BLOCK_KINDS, QUESTION_TYPES, RawRecord

LOGGER = logging.getLogger(__name__)


class CompactRow(NamedTuple):
    """Positional layout of one ``{"d": [...]}`` row.

    ``[number, content, type, topic_ids, marks, figure, options]`` where
    ``figure`` is ``[page, x, y, width, height]`` in percent and ``options``
    is a list of ``[label, text]`` pairs. Trailing fields may be omitted.
    """

    question_number: Any
    content: Any = None
    kind: Any = None
    topic_ids: Any = None
    marks: Any = None
    figure: Any = None
    options: Any = None

    @classmethod
    def from_sequence(cls, row: list[Any]) -> CompactRow:
        return cls(*row[: len(cls._fields)])


def adapt_records(payload: Any, batch_offset: int = 0) -> list[RawRecord]:
    """Pick the adapter for ``payload``'s shape and return its records."""

    adapter, items = _select_adapter(payload)
    if adapter is None:
        LOGGER.warning("Unrecognised model response shape: %s", type(payload).__name__)
        return []

    records: list[RawRecord] = []
    for item in items:
        record = adapter(item)
        if record is None:
            continue
        record.batch_offset = batch_offset
        records.append(record)

    dropped = len(items) - len(records)
    if dropped:
        LOGGER.warning("Dropped %s item(s) without a usable question number", dropped)
    return records


def adapt_answer_key(payload: Any) -> list[AnswerKeyEntry]:
    """Read ``{"answers": [...]}`` (or a bare array) into mark-scheme rows."""

    if isinstance(payload, dict):
        items = payload.get("answers") or []
    elif isinstance(payload, list):
        items = payload
    else:
        return []

    entries: list[AnswerKeyEntry] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        number = _as_int(item.get("question_number"))
        answer = _as_text(item.get("official_answer"))
        if number is None or not answer:
            continue
        entries.append(
            AnswerKeyEntry(
                question_number=number,
                sub_part=_as_text(item.get("sub_part")) or None,
                official_answer=answer,
                marks=_as_int(item.get("marks")),
            ),
        )
    return entries


def _select_adapter(payload: Any) -> tuple[Callable[[Any], RawRecord | None] | None, list[Any]]:
    if isinstance(payload, list):
        return _from_question_object, payload
    if isinstance(payload, dict):
        if isinstance(payload.get("questions"), list):
            return _from_question_object, payload["questions"]
        if isinstance(payload.get("d"), list):
            return _from_compact_row, payload["d"]
        if "question_number" in payload:
            return _from_question_object, [payload]
    return None, []


def _from_question_object(item: Any) -> RawRecord | None:
    if not isinstance(item, dict):
        return None
    number = _as_int(item.get("question_number"))
    if number is None:
        return None
    return RawRecord(
        question_number=number,
        content=_as_text(item.get("content")),
        kind=_as_kind(item.get("type")),
        topic_ids=_as_str_list(item.get("topic_ids")),
        marks=_as_int(item.get("total_marks", item.get("marks"))),
        options=_as_options(item.get("options")),
        figure=_as_figure(item.get("figure")),
        blocks=_as_blocks(item.get("blocks")),
        ai_answer=_as_text(item.get("ai_answer")) or None,
    )


def _from_compact_row(item: Any) -> RawRecord | None:
    if not isinstance(item, list) or not item:
        return None
    row = CompactRow.from_sequence(item)
    number = _as_int(row.question_number)
    if number is None:
        return None
    figure = None
    if isinstance(row.figure, list) and len(row.figure) == 5:
        page, x, y, width, height = row.figure
        figure = _as_figure({"page": page, "x": x, "y": y, "width": width, "height": height})
    options = []
    if isinstance(row.options, list):
        options = _as_options(
            [{"label": pair[0], "text": pair[1]} for pair in row.options if isinstance(pair, list) and len(pair) == 2],
        )
    return RawRecord(
        question_number=number,
        content=_as_text(row.content),
        kind=_as_kind(row.kind),
        topic_ids=_as_str_list(row.topic_ids),
        marks=_as_int(row.marks),
        options=options,
        figure=figure,
    )


def _as_blocks(value: Any) -> list[Block]:
    if not isinstance(value, list):
        return []
    return [block for block in (_as_block(item) for item in value) if block]


def _as_block(item: Any) -> Block | None:
    if not isinstance(item, dict):
        return None
    kind = str(item.get("type") or "text")
    if kind not in BLOCK_KINDS:
        kind = "text"
    figure = None
    if kind == "figure":
        page = _as_int(item.get("page"))
        bbox = item.get("bbox")
        if isinstance(bbox, list) and len(bbox) == 4:
            bbox = dict(zip(("x", "y", "width", "height"), bbox))
        if isinstance(bbox, dict) and page is not None:
            figure = _as_figure({**bbox, "page": page})
        elif isinstance(item.get("box_2d"), list) and page is not None:
            figure = _as_figure({"box_2d": item["box_2d"], "page": page})
    return Block(
        kind=kind,
        content=_as_text(item.get("content")) or None,
        label=_as_text(item.get("label")) or None,
        marks=_as_int(item.get("marks")),
        figure_label=_as_text(item.get("figure_label")) or None,
        description=_as_text(item.get("description")) or None,
        ai_answer=_as_text(item.get("ai_answer")) or None,
        figure=figure,
    )


def _as_figure(value: Any) -> FigureLocation | None:
    if not isinstance(value, dict):
        return None
    page = _as_int(value.get("page"))
    if page is None or page < 1:
        return None
    try:
        if isinstance(value.get("box_2d"), list):
            location = FigureLocation.from_normalized(value["box_2d"], page)
        else:
            location = FigureLocation(
                page=page,
                x=float(value["x"]),
                y=float(value["y"]),
                width=float(value["width"]),
                height=float(value["height"]),
            )
    except (KeyError, TypeError, ValueError):
        LOGGER.warning("Ignoring malformed figure box: %s", value)
        return None
    if not all(math.isfinite(v) for v in (location.x, location.y, location.width, location.height)):
        LOGGER.warning("Ignoring figure box with non-finite values: %s", value)
        return None
    if location.width <= 0 or location.height <= 0:
        return None
    return location


def _as_options(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, list):
        return []
    options: list[dict[str, str]] = []
    for option in value:
        if isinstance(option, dict) and option.get("label") is not None:
            options.append({"label": str(option["label"]).strip(), "text": _as_text(option.get("text"))})
    return options


def _as_kind(value: Any) -> str | None:
    if isinstance(value, str) and value.strip().lower() in QUESTION_TYPES:
        return value.strip().lower()
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, (str, int))]
