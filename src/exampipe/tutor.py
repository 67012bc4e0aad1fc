"""Tutoring chat about a stored question."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from .database import PostgresQuestionStore
from .errors import ExtractionParseError
from .llm import LLMClient
from .repair import repair_json

LOGGER = logging.getLogger(__name__)

HISTORY_LIMIT = 6

GENERATED_MESSAGE = "Sure, I can generate a similar question for you. Here is one based on the topic:"
GENERATION_FAILED_MESSAGE = (
    "I tried to generate a similar question, but I encountered an error formatting it. "
    "Let me try explaining the concept instead."
)
FALLBACK_MESSAGE = (
    "I'm having trouble processing that right now. Could you try rephrasing your question, "
    "or ask me to explain a specific part of the question?"
)


@dataclass(slots=True)
class ChatTurn:
    message: str
    is_ai: bool = False


@dataclass(slots=True)
class ChatReply:
    message: str
    generated_question: dict[str, Any] | None = None

    def to_response(self) -> dict[str, Any]:
        return {"message": self.message, "generated_question": self.generated_question}


_CHAT_PROMPT = """\
You are a patient study assistant helping a student with one exam question.
Give hints before answers, explain step by step in plain language and keep
replies to two or three short paragraphs.

QUESTION:
{question}
{context}{history}
STUDENT:
{message}
"""

_GENERATE_PROMPT = """\
Write one new exam question that tests the same ideas as the question below
with different values or context.

QUESTION:
{question}
MARKS: {marks}

Return a JSON object with "is_structured_question" (boolean), "content"
(markdown), "marks" (integer), "official_answer", "explanation", "topic" and
"syllabus_level".
"""


def build_chat_prompt(
    question: dict[str, Any],
    message: str,
    history: list[ChatTurn],
    user_answer: str | None = None,
    user_score: float | None = None,
) -> str:
    """Assemble the chat prompt; only the last ``HISTORY_LIMIT`` turns are kept."""

    context = ""
    if question.get("official_answer"):
        context += f"\nOFFICIAL ANSWER:\n{question['official_answer']}\n"
    if question.get("marks"):
        context += f"\nMARKS: {question['marks']}\n"
    if user_answer:
        context += f"\nSTUDENT'S SUBMITTED ANSWER:\n{user_answer}\n"
        if user_score is not None:
            context += f"Score received: {user_score:g}%\n"
        context += "Compare it with the official answer when they ask what they missed.\n"

    turns = history[-HISTORY_LIMIT:]
    transcript = ""
    if turns:
        lines = "\n".join(f"{'AI' if turn.is_ai else 'Student'}: {turn.message}" for turn in turns)
        transcript = f"\nCONVERSATION SO FAR:\n{lines}\n"

    return _CHAT_PROMPT.format(
        question=question.get("content") or "",
        context=context,
        history=transcript,
        message=message,
    )


class TutorChat:
    """Answer a student's message in the context of one question."""

    def __init__(self, llm: LLMClient, store: PostgresQuestionStore) -> None:
        self._llm = llm
        self._store = store

    async def reply(
        self,
        question_id: str,
        message: str,
        *,
        history: list[ChatTurn] | None = None,
        user_answer: str | None = None,
        user_score: float | None = None,
        intent: str = "chat",
    ) -> ChatReply:
        """Reply to ``message``, or draft a similar question for ``generate_question``.

        Raises:
            QuestionNotFoundError: If ``question_id`` does not exist.
            openai.OpenAIError: If the model stays unavailable after retries.
        """

        question = await self._store.get_question(question_id)
        if intent == "generate_question":
            return await self._generate(question)

        prompt = build_chat_prompt(question, message, history or [], user_answer, user_score)
        text = (await self._llm.complete(prompt)).strip()
        if not text:
            LOGGER.warning("Empty chat reply for question %s", question_id)
            return ChatReply(FALLBACK_MESSAGE)
        LOGGER.info("Chat reply generated for question %s", question_id)
        return ChatReply(text)

    async def _generate(self, question: dict[str, Any]) -> ChatReply:
        prompt = _GENERATE_PROMPT.format(question=question.get("content") or "", marks=question.get("marks") or 1)
        text = await self._llm.complete(prompt, json_output=True)
        try:
            data = repair_json(text).data
        except ExtractionParseError as exc:
            LOGGER.error("Generated question could not be parsed: %s", exc)
            return ChatReply(GENERATION_FAILED_MESSAGE)
        if not isinstance(data, dict):
            return ChatReply(GENERATION_FAILED_MESSAGE)
        return ChatReply(GENERATED_MESSAGE, generated_question=data)
