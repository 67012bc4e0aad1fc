from __future__ import annotations

import asyncio
import json

import pytest

from exampipe.config import PipelineConfig
from exampipe.dispatcher import SideEffectDispatcher
from exampipe.errors import DocumentFetchError, PaperNotFoundError
from exampipe.extraction import ExtractionClient
from exampipe.models import PageRange
from exampipe.pipeline import AnalysisRequest, PaperAnalysisPipeline
from exampipe.repair import RepairStage

from fakes import PAPER_ID, PDF_URL, TOPIC_A, FakeCropper, FakeStorage, FakeStore, make_llm, make_pdf, pdf_http


def _run(outputs: list, pages: int = 3, batch_size: int = 10, overlap: int = 0, store: FakeStore | None = None, **request):
    store = store or FakeStore()
    llm, responses = make_llm(outputs, max_attempts=1)
    cropper, storage = FakeCropper(), FakeStorage()
    config = PipelineConfig(batch_size=batch_size, overlap=overlap, side_effect_delay=0.0, max_attempts=1, base_delay=0.0)
    pipeline = PaperAnalysisPipeline(
        store,
        ExtractionClient(llm),
        SideEffectDispatcher(store, cropper, storage, group_delay=0.0, max_attempts=1, base_delay=0.0),
        pdf_http({PDF_URL: make_pdf(pages)}),
        config,
    )
    args = {"paper_id": PAPER_ID, "document_url": PDF_URL, **request}
    summary = asyncio.run(pipeline.run(AnalysisRequest(**args)))
    return summary, store, responses, cropper


def test_clean_three_page_run() -> None:
    output = json.dumps(
        {
            "questions": [
                {"question_number": 1, "type": "mcq", "content": "Which gas?", "topic_ids": [TOPIC_A, "junk"], "marks": 1},
                {
                    "question_number": 2,
                    "type": "mcq",
                    "content": "Read the graph.",
                    "figure": {"page": 2, "x": 10, "y": 20, "width": 50, "height": 25},
                },
            ],
        },
    )

    summary, store, responses, cropper = _run([output])

    assert len(responses.calls) == 1
    assert summary.batches == 1
    assert summary.batches_failed == 0
    assert summary.batch_results[0].repair_stage is RepairStage.DIRECT
    assert summary.total_pages == 3
    assert summary.items_extracted == 2
    assert (summary.figures_attempted, summary.figures_cropped) == (1, 1)

    q1 = store.question_by_number(PAPER_ID, 1)
    q2 = store.question_by_number(PAPER_ID, 2)
    assert q1["topic_ids"] == [TOPIC_A]
    assert q2["figure_location"] == {
        "page": 2,
        "x": 10.0,
        "y": 20.0,
        "width": 50.0,
        "height": 25.0,
        "page_width": 600.0,
        "page_height": 800.0,
    }
    assert q2["image_url"]
    assert cropper.calls[0].page == 2


def test_truncated_output_keeps_leading_questions() -> None:
    output = (
        '{"questions": [{"question_number": 1, "type": "mcq", "content": "One"}, '
        '{"question_number": 2, "type": "mcq", "content": "Two"}, '
        '{"question_number": 3, "type": "mcq", "content": "Thr'
    )

    summary, store, _, _ = _run([output])

    assert summary.batches_failed == 0
    assert summary.batch_results[0].repair_stage is RepairStage.BRACKETS
    assert summary.items_extracted >= 2
    assert store.question_by_number(PAPER_ID, 1)["content"] == "One"
    assert store.question_by_number(PAPER_ID, 2)["content"] == "Two"


def test_overlapping_batches_merge_a_split_question() -> None:
    first = json.dumps({"questions": [{"question_number": 5, "type": "mcq", "content": "Start of question"}]})
    second = json.dumps(
        {
            "questions": [
                {
                    "question_number": 5,
                    "content": "end of question",
                    "marks": 3,
                    "figure": {"page": 1, "x": 0, "y": 0, "width": 10, "height": 10},
                },
            ],
        },
    )

    summary, store, responses, cropper = _run([first, second], pages=5, batch_size=3, overlap=1)

    assert [r.page_range for r in summary.batch_results] == [PageRange(1, 3), PageRange(3, 5)]
    assert len(responses.calls) == 2
    assert summary.items_extracted == 1
    question = store.question_by_number(PAPER_ID, 5)
    assert question["content"] == "Start of question\n\nend of question"
    assert question["marks"] == 3
    assert question["figure_location"]["page"] == 3
    assert cropper.calls[0].page == 3


def test_failed_batch_is_counted_and_others_survive() -> None:
    good = json.dumps({"questions": [{"question_number": 1, "type": "mcq", "content": "Kept"}]})

    summary, store, _, _ = _run([good, "model refused"], pages=4, batch_size=2)

    assert summary.batches == 2
    assert summary.batches_failed == 1
    assert summary.batch_results[1].failure.kind == "parse"
    assert summary.items_extracted == 1
    assert store.question_by_number(PAPER_ID, 1)["content"] == "Kept"


def test_figures_outside_the_document_are_dropped() -> None:
    output = json.dumps(
        {"questions": [{"question_number": 1, "type": "mcq", "content": "x", "figure": {"page": 9, "x": 1, "y": 1, "width": 5, "height": 5}}]},
    )

    summary, store, _, cropper = _run([output])

    assert summary.figures_attempted == 0
    assert cropper.calls == []
    assert store.question_by_number(PAPER_ID, 1)["figure_location"] is None


def test_page_window_limits_extraction() -> None:
    summary, _, responses, _ = _run(["[]"], pages=6, batch_size=10, start_page=2, end_page=4)

    assert [r.page_range for r in summary.batch_results] == [PageRange(2, 4)]
    assert len(responses.calls) == 1
    assert summary.items_extracted == 0


def test_unknown_paper_is_rejected_before_any_model_call() -> None:
    store = FakeStore()
    store.papers.clear()

    with pytest.raises(PaperNotFoundError):
        _run(["[]"], store=store)


def test_unreachable_document_raises_fetch_error() -> None:
    with pytest.raises(DocumentFetchError):
        _run(["[]"], document_url="https://files.example.com/missing.pdf")
