from __future__ import annotations

import asyncio
import json

from exampipe.grading import (
    FEEDBACK_CORRECT,
    FEEDBACK_INCORRECT,
    FEEDBACK_PARTIAL,
    AnswerChecker,
    StructuredPartAnswer,
    feedback_for,
    grade_answer,
)

from fakes import PAPER_ID, FakeStore, make_llm

OFFICIAL = "Photosynthesis needs light energy"


def test_exact_match_scores_full_marks() -> None:
    result = grade_answer("  photosynthesis NEEDS light energy ", OFFICIAL, 4)

    assert (result.score, result.is_correct) == (4, True)
    assert feedback_for(result) == FEEDBACK_CORRECT


def test_keyword_overlap_scores_proportionally() -> None:
    mostly = grade_answer("photosynthesis needs light", OFFICIAL, 4)
    barely = grade_answer("it uses light", OFFICIAL, 4)
    nothing = grade_answer("no idea", OFFICIAL, 4)

    assert (mostly.score, mostly.is_correct) == (3, True)
    assert (barely.score, barely.is_correct) == (1, False)
    assert feedback_for(barely) == FEEDBACK_PARTIAL
    assert (nothing.score, nothing.is_correct) == (0, False)
    assert feedback_for(nothing) == FEEDBACK_INCORRECT


def test_missing_official_answer_scores_zero() -> None:
    result = grade_answer("anything", None, 3)

    assert (result.score, result.is_correct) == (0, False)


def test_check_clamps_the_model_score() -> None:
    output = json.dumps({"isCorrect": True, "score": 140, "feedback": "Nice work.", "strengths": ["Clear"]})
    llm, responses = make_llm([output])

    feedback = asyncio.run(AnswerChecker(llm).check("Which gas?", "B", "B", marks=1))

    assert feedback.is_correct
    assert feedback.score == 100
    assert feedback.strengths == ["Clear"]
    assert "TOTAL MARKS: 1" in responses.calls[0]["input"][0]["content"][0]["text"]
    assert "perPartResults" not in feedback.to_response()


def test_check_falls_back_when_the_output_is_unusable() -> None:
    llm, _ = make_llm(["I cannot grade this"])

    feedback = asyncio.run(AnswerChecker(llm).check("Which gas?", None, "oxygen"))

    assert not feedback.is_correct
    assert feedback.score == 0
    assert feedback.feedback.startswith("Unable to evaluate")


def _seed_question(store: FakeStore, marks: int) -> str:
    ids = asyncio.run(
        store.upsert_questions(PAPER_ID, [{"question_number": 1, "type": "structured", "content": "Cells", "marks": marks}]),
    )
    return ids[1]


def test_structured_parts_are_graded_and_recorded() -> None:
    store = FakeStore()
    question_id = _seed_question(store, marks=5)
    llm, responses = make_llm([json.dumps({"score": 5, "isCorrect": True, "feedback": "Good."})])
    parts = [
        StructuredPartAnswer(label="(a)", student_answer="Mitochondria", official_answer="Mitochondria", marks=2),
        StructuredPartAnswer(label="(b)", student_answer="  ", official_answer="Respiration", marks=3),
    ]

    feedback = asyncio.run(
        AnswerChecker(llm, store).check_structured(question_id, parts, user_id="user-1", time_spent=42, hints_used=1),
    )

    assert len(responses.calls) == 1
    assert feedback.earned_marks == 2
    assert feedback.total_marks == 5
    assert feedback.score == 40
    assert not feedback.is_correct
    assert feedback.feedback == "You scored 2/5 marks (40%)"
    assert [r["feedback"] for r in feedback.per_part_results] == ["Good.", "No answer provided"]
    assert feedback.strengths == ["Part (a): Correct!"]

    assert len(store.attempts) == 1
    attempt = store.attempts[0]
    assert feedback.attempt_id == attempt["id"]
    assert attempt["score"] == 40
    assert attempt["time_spent_seconds"] == 42
    assert json.loads(attempt["answer_text"]) == [{"(a)": "Mitochondria"}, {"(b)": "  "}]

    response = feedback.to_response()
    assert response["totalMarks"] == 5
    assert response["attemptId"] == attempt["id"]


def test_ungradeable_part_scores_zero_without_an_attempt() -> None:
    store = FakeStore()
    question_id = _seed_question(store, marks=0)
    llm, _ = make_llm(["not json"])
    parts = [StructuredPartAnswer(label="(a)", student_answer="Osmosis", official_answer=None, marks=4)]

    feedback = asyncio.run(AnswerChecker(llm, store).check_structured(question_id, parts))

    assert feedback.total_marks == 4
    assert feedback.per_part_results[0]["feedback"] == "Unable to grade this part"
    assert feedback.score == 0
    assert store.attempts == []
    assert feedback.attempt_id is None


def test_non_finite_scores_are_treated_as_zero() -> None:
    llm, _ = make_llm(['{"isCorrect": false, "score": 1e999, "feedback": "Hmm."}'])

    feedback = asyncio.run(AnswerChecker(llm).check("Which gas?", "B", "C"))

    assert feedback.score == 0
    assert feedback.feedback == "Hmm."


def test_non_finite_part_score_stays_within_bounds() -> None:
    store = FakeStore()
    question_id = _seed_question(store, marks=3)
    llm, _ = make_llm(['{"isCorrect": true, "score": -Infinity, "feedback": "Odd."}'])
    parts = [StructuredPartAnswer(label="(a)", student_answer="Diffusion", official_answer="Diffusion", marks=3)]

    feedback = asyncio.run(AnswerChecker(llm, store).check_structured(question_id, parts))

    assert feedback.earned_marks == 0
    assert feedback.per_part_results[0]["score"] == 0
