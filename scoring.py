"""
Scoring engine

Walks a test section by section and grades every question against the
attempt's answers: +marks for the correct option, a flat -negative_marking
for any other option, 0 for a skip. The total is floored at zero.
"""

from typing import Dict, List

from schemas import Answer, Attempt, MockTest, SectionResult


def _percent(part: float, whole: float) -> float:
    if not whole:
        return 0.0
    return part / whole * 100


def score_attempt(attempt: Attempt, test: MockTest) -> Attempt:
    """Return a copy of ``attempt`` with per-answer, per-section and total results filled in.

    Answers that name a question the test does not contain are dropped. If a
    question was answered more than once, the last answer wins.
    """
    by_question: Dict[str, Answer] = {}
    for answer in attempt.answers:
        by_question[answer.question_id] = answer

    graded: List[Answer] = []
    section_results: List[SectionResult] = []
    total = 0.0

    for section in test.sections:
        result = SectionResult(
            section_id=section.id,
            section_title=section.title,
            total_questions=len(section.questions),
        )
        for question in section.questions:
            result.total_marks += question.marks
            answer = by_question.get(question.id)

            if answer is None or answer.selected_answer is None:
                result.skipped_questions += 1
                if answer is not None:
                    graded.append(answer.model_copy(update={"is_correct": False, "marks_awarded": 0}))
                continue

            result.attempted_questions += 1
            is_correct = answer.selected_answer == question.correct_answer
            if is_correct:
                awarded = question.marks
                result.correct_answers += 1
            else:
                # flat per-test deduction, not scaled by the question's marks
                awarded = -test.negative_marking
                result.wrong_answers += 1
            result.marks_obtained += awarded
            graded.append(answer.model_copy(update={"is_correct": is_correct, "marks_awarded": awarded}))

        result.accuracy = _percent(result.correct_answers, result.attempted_questions)
        total += result.marks_obtained
        section_results.append(result)

    attempted = sum(r.attempted_questions for r in section_results)
    correct = sum(r.correct_answers for r in section_results)
    score = max(0.0, total)

    return attempt.model_copy(
        update={
            "answers": graded,
            "section_results": section_results,
            "score": score,
            "total_marks": test.total_marks,
            "percentage": _percent(score, test.total_marks),
            "total_questions": test.total_questions,
            "attempted_questions": attempted,
            "correct_answers": correct,
            "wrong_answers": sum(r.wrong_answers for r in section_results),
            "skipped_questions": sum(r.skipped_questions for r in section_results),
            "accuracy": _percent(correct, attempted),
        }
    )
