from __future__ import annotations

import asyncio
import json

from exampipe.dispatcher import SideEffectDispatcher
from exampipe.mark_scheme import AnswerKeyProcessor, labels_match, mcq_answer, normalize_label
from exampipe.models import AnswerKeyEntry, SourceDocument

from fakes import ANSWER_KEY_URL, PAPER_ID, PDF_URL, FakeCropper, FakeStorage, FakeStore, make_llm, make_pdf, pdf_http

ANSWERS = {
    "answers": [
        {"question_number": 1, "sub_part": None, "official_answer": "B", "marks": 1},
        {"question_number": 2, "sub_part": "2(a)(i)", "official_answer": "Sun", "marks": 1},
        {"question_number": 2, "sub_part": "(b)", "official_answer": "Energy flows; lost as heat", "marks": 2},
        {"question_number": 3, "sub_part": None, "official_answer": "The answer is C", "marks": 1},
    ],
}


def _seed(store: FakeStore) -> None:
    rows = [
        {"question_number": 1, "type": "mcq", "content": "Which gas?", "marks": 1, "ai_answer": None},
        {
            "question_number": 2,
            "type": "structured",
            "content": "Food chains",
            "marks": 3,
            "structure_data": {
                "blocks": [
                    {"type": "text", "content": "A food chain."},
                    {"type": "question_part", "label": "(a)(i)", "content": "Source of energy?", "marks": 1},
                    {"type": "question_part", "label": "(b)", "content": "Explain.", "marks": 2},
                ],
            },
        },
        {"question_number": 3, "type": "mcq", "content": "Which organ?", "marks": 1},
    ]
    asyncio.run(store.upsert_questions(PAPER_ID, rows))


def _processor(store: FakeStore, outputs: list, documents: dict[str, bytes]) -> AnswerKeyProcessor:
    llm, _ = make_llm(outputs)
    return AnswerKeyProcessor(store, llm, pdf_http(documents), group_delay=0.0, max_attempts=1, base_delay=0.0)


def test_label_normalisation_and_matching() -> None:
    assert normalize_label("(b)(ii)") == "bii"
    assert labels_match("(a)(i)", "2(a)(i)")
    assert labels_match("(b)", "b")
    assert not labels_match("(b)", "(a)(i)")
    assert not labels_match("", "(a)")


def test_mcq_answers_must_look_like_letters() -> None:
    assert mcq_answer(AnswerKeyEntry(1, None, "B")) == "B"
    assert mcq_answer(AnswerKeyEntry(1, None, "c")) == "c"
    assert mcq_answer(AnswerKeyEntry(1, None, "The answer is B")) is None


def test_answers_and_rationales_are_written_back() -> None:
    store = FakeStore()
    _seed(store)
    outputs = [json.dumps(ANSWERS), "Oxygen is B.", "The Sun supplies energy.", "Energy is lost as heat."]
    processor = _processor(store, outputs, {ANSWER_KEY_URL: make_pdf(1)})

    summary = asyncio.run(processor.process(PAPER_ID, ANSWER_KEY_URL))

    assert summary.answers_attempted == 3
    assert summary.answers_extracted == 3

    q1 = store.question_by_number(PAPER_ID, 1)
    assert q1["official_answer"] == "B"
    assert q1["ai_answer"] == {"ai_solution": "Oxygen is B."}

    q2 = store.question_by_number(PAPER_ID, 2)
    parts = [b for b in q2["structure_data"]["blocks"] if b["type"] == "question_part"]
    assert [p["official_answer"] for p in parts] == ["Sun", "Energy flows; lost as heat"]
    assert [p["ai_explanation"] for p in parts] == ["The Sun supplies energy.", "Energy is lost as heat."]
    assert q2["official_answer"] is None

    q3 = store.question_by_number(PAPER_ID, 3)
    assert q3["official_answer"] is None


def test_unparseable_answer_key_changes_nothing() -> None:
    store = FakeStore()
    _seed(store)
    processor = _processor(store, ["no answers here"], {ANSWER_KEY_URL: make_pdf(1)})

    summary = asyncio.run(processor.process(PAPER_ID, ANSWER_KEY_URL))

    assert (summary.answers_attempted, summary.answers_extracted) == (0, 0)
    assert store.updates == []


def test_missing_answer_key_document_is_a_partial_failure() -> None:
    store = FakeStore()
    _seed(store)
    processor = _processor(store, [], {})
    dispatcher = SideEffectDispatcher(store, FakeCropper(), FakeStorage(), processor, group_delay=0.0, base_delay=0.0)
    document = SourceDocument(url=PDF_URL, data=b"%PDF", page_sizes=((600.0, 800.0),))

    summary = asyncio.run(dispatcher.dispatch(PAPER_ID, document, [], [], answer_key_url=ANSWER_KEY_URL))

    assert summary.answers_attempted == 0
    assert summary.answers_extracted == 0
