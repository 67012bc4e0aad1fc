from __future__ import annotations

import asyncio
import json
from typing import Iterator

from fastapi.testclient import TestClient
import httpx
import openai
import pytest

from exampipe.api import Services, app, get_services
from exampipe.config import PipelineConfig
from exampipe.dispatcher import SideEffectDispatcher
from exampipe.errors import ConfigurationError
from exampipe.extraction import ExtractionClient
from exampipe.grading import AnswerChecker
from exampipe.mark_scheme import AnswerKeyProcessor
from exampipe.pipeline import PaperAnalysisPipeline
from exampipe.tutor import GENERATED_MESSAGE, TutorChat

from fakes import (
    BUCKET,
    PAPER_ID,
    PDF_URL,
    FakeCropper,
    FakeResponses,
    FakeStorage,
    FakeStore,
    make_llm,
    make_pdf,
    pdf_http,
)


def _services(outputs: list) -> tuple[Services, FakeResponses]:
    store, cropper, storage = FakeStore(), FakeCropper(), FakeStorage()
    llm, responses = make_llm(outputs, max_attempts=1)
    http = pdf_http({PDF_URL: make_pdf(2)})
    answer_keys = AnswerKeyProcessor(store, llm, http, group_delay=0.0, max_attempts=1, base_delay=0.0)
    dispatcher = SideEffectDispatcher(store, cropper, storage, answer_keys, group_delay=0.0, max_attempts=1, base_delay=0.0)
    pipeline = PaperAnalysisPipeline(
        store,
        ExtractionClient(llm),
        dispatcher,
        http,
        PipelineConfig(side_effect_delay=0.0, max_attempts=1, base_delay=0.0),
    )
    services = Services(
        store=store,
        pipeline=pipeline,
        answer_keys=answer_keys,
        checker=AnswerChecker(llm, store),
        cropper=cropper,
        storage=storage,
        tutor=TutorChat(llm, store),
    )
    return services, responses


@pytest.fixture
def make_client() -> Iterator:
    def _make(outputs: list | None = None) -> tuple[TestClient, Services, FakeResponses]:
        services, responses = _services(outputs or [])
        app.dependency_overrides[get_services] = lambda: services
        return TestClient(app, raise_server_exceptions=False), services, responses

    yield _make
    app.dependency_overrides.clear()


def test_healthz(make_client) -> None:
    client, _, _ = make_client()

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_analyze_reports_counts(make_client) -> None:
    output = json.dumps({"questions": [{"question_number": 1, "type": "mcq", "content": "Which gas?"}]})
    client, services, _ = make_client([output])

    response = client.post("/analyze", json={"documentId": PAPER_ID, "documentUrl": PDF_URL})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["itemsExtracted"] == 1
    assert body["totalPages"] == 2
    assert body["batchesFailed"] == 0
    assert services.store.question_by_number(PAPER_ID, 1)["content"] == "Which gas?"


def test_analyze_requires_a_document_url(make_client) -> None:
    client, _, _ = make_client()

    response = client.post("/analyze", json={"documentId": PAPER_ID})

    assert response.status_code == 400
    assert "error" in response.json()


def test_analyze_unknown_paper_is_404(make_client) -> None:
    client, _, _ = make_client()

    response = client.post(
        "/analyze",
        json={"documentId": "99999999-9999-9999-9999-999999999999", "documentUrl": PDF_URL},
    )

    assert response.status_code == 404
    assert "not found" in response.json()["error"]


def test_analyze_unreachable_document_is_502(make_client) -> None:
    client, _, _ = make_client()

    response = client.post("/analyze", json={"documentId": PAPER_ID, "documentUrl": "https://files.example.com/gone.pdf"})

    assert response.status_code == 502


def test_check_answer_requires_an_answer(make_client) -> None:
    client, _, _ = make_client()

    response = client.post("/check-answer", json={"questionContent": "Which gas?", "studentAnswer": "   "})

    assert response.status_code == 400
    assert "Student answer is required" in response.json()["error"]


def test_check_answer_returns_model_feedback(make_client) -> None:
    output = json.dumps({"isCorrect": True, "score": 90, "feedback": "Well done.", "hints": []})
    client, _, _ = make_client([output])

    response = client.post(
        "/check-answer",
        json={"questionContent": "Which gas?", "officialAnswer": "B", "studentAnswer": "B", "marks": 1},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["isCorrect"] is True
    assert body["score"] == 90
    assert "perPartResults" not in body


def test_grade_answer_records_an_attempt(make_client) -> None:
    client, services, _ = make_client()
    store = services.store
    ids = asyncio.run(
        store.upsert_questions(PAPER_ID, [{"question_number": 1, "type": "structured", "content": "Q", "marks": 4}]),
    )
    asyncio.run(store.update_question(ids[1], {"official_answer": "Photosynthesis needs light energy"}))

    response = client.post(
        "/grade-answer",
        json={"user_id": "user-1", "question_id": ids[1], "user_answer_text": "photosynthesis needs light"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["score"] == 3
    assert body["is_correct"] is True
    assert body["max_marks"] == 4
    assert body["feedback"] == "Great job! Your answer is correct."
    assert body["attempt_id"] == store.attempts[0]["id"]


def test_grade_answer_unknown_question_is_404(make_client) -> None:
    client, _, _ = make_client()

    response = client.post("/grade-answer", json={"user_id": "u", "question_id": "missing", "user_answer_text": "x"})

    assert response.status_code == 404


def test_render_page(make_client) -> None:
    client, _, _ = make_client()

    response = client.post("/render-page", json={"pdfUrl": PDF_URL, "page": 1})

    assert response.status_code == 200
    assert response.json() == {"success": True, "image_base64": "aW1hZ2U="}


def test_render_page_rejects_page_zero(make_client) -> None:
    client, _, _ = make_client()

    response = client.post("/render-page", json={"pdfUrl": PDF_URL, "page": 0})

    assert response.status_code == 400


def test_delete_paper_removes_questions_and_figures(make_client) -> None:
    client, services, _ = make_client()
    store = services.store
    ids = asyncio.run(
        store.upsert_questions(
            PAPER_ID,
            [
                {"question_number": 1, "type": "mcq", "content": "a", "marks": 1},
                {"question_number": 2, "type": "mcq", "content": "b", "marks": 1},
            ],
        ),
    )
    image_url = f"https://storage.googleapis.com/{BUCKET}/figures/{ids[1]}.png"
    asyncio.run(store.update_question(ids[1], {"image_url": image_url}))

    response = client.post("/delete-paper", json={"paperId": PAPER_ID})

    assert response.status_code == 200
    assert response.json() == {"success": True, "filesDeleted": 1, "questionsDeleted": 2}
    assert services.storage.deleted == [f"figures/{ids[1]}.png"]
    assert store.questions == {}


def test_configuration_error_is_500() -> None:
    def _broken() -> Services:
        raise ConfigurationError("Environment variable DATABASE_URL is required.")

    app.dependency_overrides[get_services] = _broken
    try:
        response = TestClient(app).get("/healthz")
        assert response.status_code == 200
        response = TestClient(app).post("/render-page", json={"pdfUrl": PDF_URL, "page": 1})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert "DATABASE_URL" in response.json()["error"]


def test_unexpected_errors_are_500(make_client) -> None:
    client, services, _ = make_client()

    async def explode(*_args, **_kwargs) -> str:
        raise RuntimeError("renderer crashed")

    services.cropper.render_page = explode

    response = client.post("/render-page", json={"pdfUrl": PDF_URL, "page": 1})

    assert response.status_code == 500
    assert response.json()["error"] == "Unexpected error"


def _seed_question(store: FakeStore) -> str:
    ids = asyncio.run(
        store.upsert_questions(PAPER_ID, [{"question_number": 1, "type": "structured", "content": "Explain osmosis.", "marks": 3}]),
    )
    asyncio.run(store.update_question(ids[1], {"official_answer": "Water moves across a membrane"}))
    return ids[1]


def test_ai_chat_requires_message_and_question(make_client) -> None:
    client, _, _ = make_client()

    no_message = client.post("/ai-chat", json={"questionId": "q-1", "userMessage": "  "})
    no_question = client.post("/ai-chat", json={"userMessage": "Help?"})

    assert no_message.status_code == 400
    assert "Message is required" in no_message.json()["error"]
    assert no_question.status_code == 400
    assert "Question ID is required" in no_question.json()["error"]


def test_ai_chat_unknown_question_is_404(make_client) -> None:
    client, _, responses = make_client(["unused"])

    response = client.post("/ai-chat", json={"questionId": "missing", "userMessage": "Help?"})

    assert response.status_code == 404
    assert responses.calls == []


def test_ai_chat_replies_with_question_context(make_client) -> None:
    client, services, responses = make_client(["Think about which way the water flows."])
    question_id = _seed_question(services.store)
    history = [{"message": f"turn {n}", "isAI": n % 2 == 1} for n in range(8)]

    response = client.post(
        "/ai-chat",
        json={
            "questionId": question_id,
            "userMessage": "Why did I lose marks?",
            "conversationHistory": history,
            "userAnswer": "Salt moves",
            "userScore": 33,
        },
    )

    assert response.status_code == 200
    assert response.json() == {"message": "Think about which way the water flows.", "generated_question": None}
    prompt = responses.calls[0]["input"][0]["content"][0]["text"]
    assert "Explain osmosis." in prompt
    assert "Water moves across a membrane" in prompt
    assert "Score received: 33%" in prompt
    assert "turn 1" not in prompt
    assert "AI: turn 7" in prompt
    assert "Student: turn 2" in prompt


def test_ai_chat_generates_a_similar_question(make_client) -> None:
    generated = {"is_structured_question": True, "content": "Explain diffusion.", "marks": 3}
    client, services, responses = make_client([json.dumps(generated)])
    question_id = _seed_question(services.store)

    response = client.post(
        "/ai-chat",
        json={"questionId": question_id, "userMessage": "Give me another one", "intent": "generate_question"},
    )

    assert response.status_code == 200
    assert response.json() == {"message": GENERATED_MESSAGE, "generated_question": generated}
    assert responses.calls[0]["text"] == {"format": {"type": "json_object"}}


def test_ai_chat_model_outage_is_502(make_client) -> None:
    error = openai.APIConnectionError(message="down", request=httpx.Request("POST", "https://api.example.com"))
    client, services, _ = make_client([error])
    question_id = _seed_question(services.store)

    response = client.post("/ai-chat", json={"questionId": question_id, "userMessage": "Help?"})

    assert response.status_code == 502
    assert response.json()["error"] == "AI service unavailable"
