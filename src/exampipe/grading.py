"""Answer grading: a keyword heuristic and model-written feedback."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import math
from typing import Any

import openai

from .database import PostgresQuestionStore
from .errors import ExtractionParseError
from .llm import LLMClient
from .repair import repair_json

LOGGER = logging.getLogger(__name__)

CORRECT_THRESHOLD = 0.7
CORRECT_PERCENT = 70
KEYWORD_MIN_LENGTH = 4

FEEDBACK_CORRECT = "Great job! Your answer is correct."
FEEDBACK_PARTIAL = "Partially correct. Review the official answer for more details."
FEEDBACK_INCORRECT = "Incorrect. Try reviewing the relevant topic and attempt again."


@dataclass(slots=True)
class GradeResult:
    score: int
    is_correct: bool


def grade_answer(user_answer: str, official_answer: str | None, max_marks: int) -> GradeResult:
    """Score an answer by exact match, else by overlap of official keywords.

    Keywords are official-answer words longer than three characters. The
    score is ``floor(max_marks * matched / keywords)`` and the answer counts
    as correct from a 70% match.
    """

    if not official_answer:
        return GradeResult(score=0, is_correct=False)

    user = user_answer.strip().lower()
    official = official_answer.strip().lower()
    if user == official:
        return GradeResult(score=max_marks, is_correct=True)

    keywords = [word for word in official.split() if len(word) >= KEYWORD_MIN_LENGTH]
    user_words = set(user.split())
    fraction = sum(1 for word in keywords if word in user_words) / len(keywords) if keywords else 0.0
    return GradeResult(
        score=math.floor(max_marks * fraction),
        is_correct=fraction >= CORRECT_THRESHOLD,
    )


def feedback_for(result: GradeResult) -> str:
    if result.is_correct:
        return FEEDBACK_CORRECT
    if result.score > 0:
        return FEEDBACK_PARTIAL
    return FEEDBACK_INCORRECT


@dataclass(slots=True)
class AnswerFeedback:
    """Model verdict on a free-text answer; ``score`` is a 0-100 percentage."""

    is_correct: bool
    score: int
    feedback: str
    hints: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)
    per_part_results: list[dict[str, Any]] | None = None
    total_marks: int | None = None
    earned_marks: int | None = None
    attempt_id: str | None = None

    @classmethod
    def fallback(cls) -> AnswerFeedback:
        return cls(
            is_correct=False,
            score=0,
            feedback="Unable to evaluate your answer. Please try again.",
            improvements=["Try again with a clearer answer"],
        )

    def to_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {
            "isCorrect": self.is_correct,
            "score": self.score,
            "feedback": self.feedback,
            "hints": self.hints,
            "strengths": self.strengths,
            "improvements": self.improvements,
        }
        if self.per_part_results is not None:
            response["perPartResults"] = self.per_part_results
            response["totalMarks"] = self.total_marks
            response["earnedMarks"] = self.earned_marks
        if self.attempt_id:
            response["attemptId"] = self.attempt_id
        return response


@dataclass(slots=True)
class StructuredPartAnswer:
    label: str
    student_answer: str
    official_answer: str | None
    marks: int


@dataclass(slots=True)
class PartResult:
    label: str
    is_correct: bool
    score: int
    feedback: str


_CHECK_PROMPT = """\
You are an expert exam examiner. Compare a student's answer to the official
mark scheme and give feedback.

QUESTION:
{question}

OFFICIAL ANSWER/MARK SCHEME:
{official}

STUDENT'S ANSWER:
{student}
{marks}
Return a JSON object with:
"isCorrect": boolean, true if the answer is substantially correct (>70% accurate)
"score": number 0-100, percentage score
"feedback": string, 2-3 encouraging sentences
"hints": 1-3 hints if the answer is wrong or incomplete, else []
"strengths": 1-3 things the student did well
"improvements": 1-3 specific improvements, else []
For multiple-choice questions only check the letter.
"""

_PART_PROMPT = """\
You are grading a student's answer for an exam question.

Question: {label}
Official Answer: {official}
Student Answer: {student}
Maximum Marks: {marks}

Explain why the answer is or is not correct and give hints rather than the answer.
Return JSON: {{"score": number (0-{marks}), "isCorrect": boolean (true if score >= 70% of max marks),
"feedback": "2-3 sentences"}}
"""


class AnswerChecker:
    """Grade answers with the model and optionally record the attempt."""

    def __init__(self, llm: LLMClient, store: PostgresQuestionStore | None = None) -> None:
        self._llm = llm
        self._store = store

    async def check(
        self,
        question_content: str,
        official_answer: str | None,
        student_answer: str,
        marks: int | None = None,
    ) -> AnswerFeedback:
        prompt = _CHECK_PROMPT.format(
            question=question_content,
            official=official_answer or "Not available - use your knowledge to evaluate",
            student=student_answer,
            marks=f"TOTAL MARKS: {marks}\n" if marks else "",
        )
        try:
            text = await self._llm.complete(prompt, json_output=True)
            data = repair_json(text).data
        except (openai.OpenAIError, ExtractionParseError) as exc:
            LOGGER.error("Answer evaluation failed: %s", exc)
            return AnswerFeedback.fallback()
        if not isinstance(data, dict):
            return AnswerFeedback.fallback()

        return AnswerFeedback(
            is_correct=bool(data.get("isCorrect", False)),
            score=_clamp(data.get("score"), 0, 100),
            feedback=str(data.get("feedback") or "Unable to evaluate answer."),
            hints=_str_list(data.get("hints")),
            strengths=_str_list(data.get("strengths")),
            improvements=_str_list(data.get("improvements")),
        )

    async def check_structured(
        self,
        question_id: str,
        parts: list[StructuredPartAnswer],
        *,
        user_id: str | None = None,
        time_spent: int | None = None,
        hints_used: int | None = None,
    ) -> AnswerFeedback:
        """Grade each part separately and total against the question's marks.

        Raises:
            QuestionNotFoundError: If ``question_id`` does not exist.
        """

        stored_marks = None
        if self._store is not None:
            question = await self._store.get_question(question_id)
            stored_marks = question.get("marks")
        total_marks = stored_marks or sum(part.marks for part in parts)

        results: list[PartResult] = []
        for part in parts:
            results.append(await self._grade_part(part))
        earned = sum(result.score for result in results)

        percent = round(earned / total_marks * 100) if total_marks > 0 else 0
        feedback = AnswerFeedback(
            is_correct=percent >= CORRECT_PERCENT,
            score=percent,
            feedback=f"You scored {earned}/{total_marks} marks ({percent}%)",
            strengths=[f"Part {r.label}: Correct!" for r in results if r.is_correct],
            improvements=[f"Part {r.label}: {r.feedback}" for r in results if not r.is_correct],
            per_part_results=[
                {"label": r.label, "isCorrect": r.is_correct, "score": r.score, "feedback": r.feedback}
                for r in results
            ],
            total_marks=total_marks,
            earned_marks=earned,
        )
        LOGGER.info("Structured question %s graded %s/%s (%s%%)", question_id, earned, total_marks, percent)

        if user_id and self._store is not None:
            try:
                feedback.attempt_id = await self._store.insert_attempt(
                    {
                        "user_id": user_id,
                        "question_id": question_id,
                        "answer_text": json.dumps([{part.label: part.student_answer} for part in parts]),
                        "score": percent,
                        "is_correct": feedback.is_correct,
                        "time_spent_seconds": time_spent,
                        "hints_used": hints_used,
                    },
                )
            except Exception:
                LOGGER.exception("Failed to save attempt for user %s", user_id)
        return feedback

    async def _grade_part(self, part: StructuredPartAnswer) -> PartResult:
        if not part.student_answer or not part.student_answer.strip():
            return PartResult(part.label, False, 0, "No answer provided")

        prompt = _PART_PROMPT.format(
            label=part.label,
            official=part.official_answer or "Not provided",
            student=part.student_answer,
            marks=part.marks,
        )
        try:
            text = await self._llm.complete(prompt, json_output=True)
            data = repair_json(text).data
            if not isinstance(data, dict):
                raise ExtractionParseError(text)
        except (openai.OpenAIError, ExtractionParseError) as exc:
            LOGGER.error("Error grading part %s: %s", part.label, exc)
            return PartResult(part.label, False, 0, "Unable to grade this part")

        return PartResult(
            label=part.label,
            is_correct=bool(data.get("isCorrect", False)),
            score=_clamp(data.get("score"), 0, part.marks),
            feedback=str(data.get("feedback") or "Graded"),
        )


def _clamp(value: Any, low: int, high: int) -> int:
    try:
        number = round(float(value))
    except (OverflowError, TypeError, ValueError):
        number = 0
    return max(low, min(high, number))


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


__all__ = [
    "AnswerChecker",
    "AnswerFeedback",
    "GradeResult",
    "StructuredPartAnswer",
    "feedback_for",
    "grade_answer",
]
