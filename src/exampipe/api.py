from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import os
from typing import Annotated, Any, Literal

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import httpx
import openai
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .config import load_config
from .cropping import Cropper, build_cropper
from .database import PostgresQuestionStore, init_pool
from .errors import (
    ConfigurationError,
    CroppingError,
    DocumentFetchError,
    PaperNotFoundError,
    QuestionNotFoundError,
)
from .grading import AnswerChecker, StructuredPartAnswer, feedback_for, grade_answer
from .llm import LLMClient
from .logger import setup_logger
from .mark_scheme import AnswerKeyProcessor
from .pipeline import AnalysisRequest, PaperAnalysisPipeline, build_answer_key_processor, build_pipeline
from .storage import FigureStorage
from .tutor import ChatTurn, TutorChat

LOGGER = setup_logger()


@dataclass(slots=True)
class Services:
    """Everything the endpoints need, built once per process."""

    store: PostgresQuestionStore
    pipeline: PaperAnalysisPipeline
    answer_keys: AnswerKeyProcessor
    checker: AnswerChecker
    cropper: Cropper
    storage: FigureStorage
    tutor: TutorChat


@asynccontextmanager
async def lifespan(app: FastAPI):
    LOGGER.info("Starting exampipe API application lifespan.")
    app.state.services = None
    app.state.startup_error = None
    try:
        config = load_config()
    except ConfigurationError as exc:
        # Requests report this as a 500 instead of the process failing to boot
        LOGGER.error("Configuration error: %s", exc)
        app.state.startup_error = exc
        yield
        return

    http = httpx.AsyncClient(timeout=config.pipeline.http_timeout_seconds)
    pool = init_pool(config.database)
    await pool.open()
    store = PostgresQuestionStore(pool)
    llm = LLMClient(config.model)
    app.state.services = Services(
        store=store,
        pipeline=build_pipeline(config, http, pool),
        answer_keys=build_answer_key_processor(config, store, llm, http),
        checker=AnswerChecker(llm, store),
        cropper=build_cropper(config.cropper, http),
        storage=FigureStorage(config.storage),
        tutor=TutorChat(llm, store),
    )
    try:
        yield
    finally:
        await http.aclose()
        await pool.close()


app = FastAPI(title="exampipe API", version="0.1.0", lifespan=lifespan)
origins = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if o.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    error = getattr(request.app.state, "startup_error", None)
    if error is not None:
        raise error
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError("Services are not initialised.")
    return services


ServicesDep = Annotated[Services, Depends(get_services)]


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AnalyzeRequest(CamelModel):
    document_id: str = Field(alias="documentId", min_length=1)
    document_url: str = Field(alias="documentUrl", min_length=1)
    answer_key_url: str | None = Field(default=None, alias="answerKeyUrl")
    category: str | None = None
    start_page: int | None = Field(default=None, alias="startPage", ge=1)
    end_page: int | None = Field(default=None, alias="endPage", ge=1)


class MarkSchemeRequest(CamelModel):
    document_id: str = Field(alias="documentId", min_length=1)
    answer_key_url: str = Field(alias="answerKeyUrl", min_length=1)


class StructuredAnswerIn(CamelModel):
    label: str
    student_answer: str = Field(default="", alias="studentAnswer")
    official_answer: str | None = Field(default=None, alias="officialAnswer")
    marks: int = Field(default=1, ge=0)


class CheckAnswerRequest(CamelModel):
    question_id: str | None = Field(default=None, alias="questionId")
    question_content: str = Field(default="", alias="questionContent")
    official_answer: str | None = Field(default=None, alias="officialAnswer")
    student_answer: str = Field(default="", alias="studentAnswer")
    marks: int | None = None
    structured_answers: list[StructuredAnswerIn] | None = Field(default=None, alias="structuredAnswers")
    user_id: str | None = Field(default=None, alias="userId")
    time_spent: int | None = Field(default=None, alias="timeSpent")
    hints_used: int | None = Field(default=None, alias="hintsUsed")

    @model_validator(mode="after")
    def _require_answer(self) -> CheckAnswerRequest:
        if self.structured_answers:
            if not self.question_id:
                raise ValueError("questionId is required for structured answers")
        elif not self.student_answer.strip():
            raise ValueError("Student answer is required")
        return self


class GradeAnswerRequest(BaseModel):
    user_id: str = Field(min_length=1)
    question_id: str = Field(min_length=1)
    user_answer_text: str
    time_spent: int | None = None
    hints_count: int | None = None


class RenderPageRequest(CamelModel):
    pdf_url: str = Field(alias="pdfUrl", min_length=1)
    page: int = Field(ge=1)


class DeletePaperRequest(CamelModel):
    paper_id: str = Field(alias="paperId", min_length=1)


class ChatTurnIn(CamelModel):
    message: str
    is_ai: bool = Field(default=False, alias="isAI")


class AIChatRequest(CamelModel):
    question_id: str = Field(default="", alias="questionId")
    user_message: str = Field(default="", alias="userMessage")
    conversation_history: list[ChatTurnIn] = Field(default_factory=list, alias="conversationHistory")
    user_answer: str | None = Field(default=None, alias="userAnswer")
    user_score: float | None = Field(default=None, alias="userScore", ge=0, le=100)
    intent: Literal["chat", "generate_question"] = "chat"

    @model_validator(mode="after")
    def _require_message_and_question(self) -> AIChatRequest:
        if not self.user_message.strip():
            raise ValueError("Message is required")
        if not self.question_id:
            raise ValueError("Question ID is required")
        return self


def _error(status_code: int, message: str, details: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [str(error.get("msg", "Invalid request")) for error in exc.errors()]
    LOGGER.warning("Rejected request: %s", "; ".join(messages))
    return _error(400, messages[0] if messages else "Invalid request", messages)


@app.exception_handler(ConfigurationError)
async def _configuration_error(_: Request, exc: ConfigurationError) -> JSONResponse:
    return _error(500, str(exc))


@app.exception_handler(PaperNotFoundError)
@app.exception_handler(QuestionNotFoundError)
async def _not_found(_: Request, exc: LookupError) -> JSONResponse:
    return _error(404, str(exc))


@app.exception_handler(DocumentFetchError)
async def _fetch_error(_: Request, exc: DocumentFetchError) -> JSONResponse:
    return _error(502, str(exc))


@app.exception_handler(CroppingError)
async def _cropping_error(_: Request, exc: CroppingError) -> JSONResponse:
    return _error(502, "Rendering service error", str(exc))


@app.exception_handler(openai.OpenAIError)
async def _model_error(_: Request, exc: openai.OpenAIError) -> JSONResponse:
    LOGGER.error("Model service error: %s", exc)
    return _error(502, "AI service unavailable", str(exc))


@app.exception_handler(Exception)
async def _unexpected_error(_: Request, exc: Exception) -> JSONResponse:
    LOGGER.error("Unexpected error: %s", exc, exc_info=exc)
    return _error(500, "Unexpected error", str(exc))


@app.get("/healthz", tags=["Health"])
async def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.post("/analyze", tags=["Papers"])
async def analyze(payload: AnalyzeRequest, services: ServicesDep) -> dict[str, Any]:
    summary = await services.pipeline.run(
        AnalysisRequest(
            paper_id=payload.document_id,
            document_url=payload.document_url,
            answer_key_url=payload.answer_key_url,
            category=payload.category,
            start_page=payload.start_page,
            end_page=payload.end_page,
        ),
    )
    return summary.to_response()


@app.post("/mark-scheme", tags=["Papers"])
async def mark_scheme(payload: MarkSchemeRequest, services: ServicesDep) -> dict[str, Any]:
    await services.store.get_paper(payload.document_id)
    summary = await services.answer_keys.process(payload.document_id, payload.answer_key_url)
    return {
        "success": True,
        "answersAttempted": summary.answers_attempted,
        "answersExtracted": summary.answers_extracted,
    }


@app.post("/check-answer", tags=["Grading"])
async def check_answer(payload: CheckAnswerRequest, services: ServicesDep) -> dict[str, Any]:
    if payload.structured_answers:
        result = await services.checker.check_structured(
            payload.question_id or "",
            [
                StructuredPartAnswer(
                    label=part.label,
                    student_answer=part.student_answer,
                    official_answer=part.official_answer,
                    marks=part.marks,
                )
                for part in payload.structured_answers
            ],
            user_id=payload.user_id,
            time_spent=payload.time_spent,
            hints_used=payload.hints_used,
        )
    else:
        result = await services.checker.check(
            payload.question_content,
            payload.official_answer,
            payload.student_answer,
            payload.marks,
        )
        LOGGER.info("Answer checked for question %s: %s%%", payload.question_id, result.score)
    return result.to_response()


@app.post("/grade-answer", tags=["Grading"])
async def grade_answer_endpoint(payload: GradeAnswerRequest, services: ServicesDep) -> dict[str, Any]:
    question = await services.store.get_question(payload.question_id)
    max_marks = int(question.get("marks") or 1)
    result = grade_answer(payload.user_answer_text, question.get("official_answer"), max_marks)
    attempt_id = await services.store.insert_attempt(
        {
            "user_id": payload.user_id,
            "question_id": payload.question_id,
            "answer_text": payload.user_answer_text,
            "score": result.score,
            "is_correct": result.is_correct,
            "time_spent_seconds": payload.time_spent,
            "hints_used": payload.hints_count,
        },
    )
    return {
        "success": True,
        "attempt_id": attempt_id,
        "score": result.score,
        "is_correct": result.is_correct,
        "max_marks": max_marks,
        "feedback": feedback_for(result),
    }


@app.post("/render-page", tags=["Papers"])
async def render_page(payload: RenderPageRequest, services: ServicesDep) -> dict[str, Any]:
    LOGGER.info("Rendering page %s of %s", payload.page, payload.pdf_url)
    image = await services.cropper.render_page(payload.pdf_url, payload.page)
    return {"success": True, "image_base64": image}


@app.post("/ai-chat", tags=["Grading"])
async def ai_chat(payload: AIChatRequest, services: ServicesDep) -> dict[str, Any]:
    reply = await services.tutor.reply(
        payload.question_id,
        payload.user_message,
        history=[ChatTurn(message=turn.message, is_ai=turn.is_ai) for turn in payload.conversation_history],
        user_answer=payload.user_answer,
        user_score=payload.user_score,
        intent=payload.intent,
    )
    return reply.to_response()


@app.post("/delete-paper", tags=["Papers"])
async def delete_paper(payload: DeletePaperRequest, services: ServicesDep) -> dict[str, Any]:
    urls = await services.store.paper_asset_urls(payload.paper_id)
    object_names = [name for name in (services.storage.object_name_for(url) for url in urls) if name]
    LOGGER.info("Deleting paper %s with %s stored file(s)", payload.paper_id, len(object_names))

    files_deleted = 0
    if object_names:
        try:
            files_deleted = await services.storage.delete_objects(object_names)
        except Exception as exc:
            LOGGER.warning("Storage delete warning for paper %s: %s", payload.paper_id, exc)

    questions_deleted = await services.store.delete_paper(payload.paper_id)
    return {"success": True, "filesDeleted": files_deleted, "questionsDeleted": questions_deleted}
