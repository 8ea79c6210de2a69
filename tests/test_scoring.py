"""
Tests for the scoring engine.
"""

from datetime import datetime, timezone

import pytest

from schemas import Answer, Attempt, MockTest
from scoring import score_attempt


def make_test(sections, negative_marking=0.0):
    return MockTest(
        title="Unit Test",
        description="scoring",
        duration=30,
        negative_marking=negative_marking,
        sections=[
            {
                "id": f"s{i}",
                "title": f"Section {i}",
                "order": i,
                "questions": [
                    {"id": qid, "text": qid, "options": ["a", "b", "c", "d"], "correct_answer": correct, "marks": marks}
                    for qid, correct, marks in questions
                ],
            }
            for i, questions in enumerate(sections, start=1)
        ],
    )


def make_attempt(test, answers):
    return Attempt(
        user_id="u1",
        test_id="t1",
        answers=[Answer(question_id=q, selected_answer=a) for q, a in answers],
        total_marks=test.total_marks,
        total_questions=test.total_questions,
        started_at=datetime.now(timezone.utc),
    )


class TestScoreAttempt:
    def test_negative_marking_with_skip(self):
        """One correct (2 marks), one wrong, one skipped at 0.25 negative marking."""
        test = make_test([[("q1", 0, 2), ("q2", 1, 1), ("q3", 2, 1)]], negative_marking=0.25)
        scored = score_attempt(make_attempt(test, [("q1", 0), ("q2", 3)]), test)

        assert scored.score == pytest.approx(1.75)
        assert scored.correct_answers == 1
        assert scored.wrong_answers == 1
        assert scored.skipped_questions == 1
        assert scored.percentage == pytest.approx(1.75 / 4 * 100)

    def test_correct_and_incorrect_without_negative_marking(self):
        test = make_test([[("q1", 0, 4), ("q2", 1, 4)]])
        scored = score_attempt(make_attempt(test, [("q1", 0), ("q2", 2)]), test)

        assert scored.score == 4
        assert scored.percentage == 50
        assert scored.accuracy == 50
        assert scored.correct_answers == 1
        assert scored.wrong_answers == 1
        assert scored.skipped_questions == 0
        assert scored.attempted_questions == 2

    def test_score_is_floored_at_zero(self):
        test = make_test([[("q1", 0, 1), ("q2", 0, 1), ("q3", 0, 1)]], negative_marking=1)
        scored = score_attempt(make_attempt(test, [("q1", 1), ("q2", 1), ("q3", 1)]), test)

        assert scored.score == 0
        assert scored.percentage == 0
        # the section keeps its raw (negative) total
        assert scored.section_results[0].marks_obtained == -3

    def test_negative_marking_is_flat_per_question(self):
        test = make_test([[("big", 0, 10), ("small", 0, 1)]], negative_marking=0.5)
        scored = score_attempt(make_attempt(test, [("big", 3), ("small", 3)]), test)

        awarded = {a.question_id: a.marks_awarded for a in scored.answers}
        assert awarded == {"big": -0.5, "small": -0.5}

    def test_section_breakdown(self):
        test = make_test([[("q1", 0, 1), ("q2", 1, 1)], [("q3", 2, 3)]], negative_marking=0.25)
        scored = score_attempt(make_attempt(test, [("q1", 0), ("q2", 0), ("q3", 2)]), test)

        first, second = scored.section_results
        assert (first.section_id, first.total_marks, first.marks_obtained) == ("s1", 2, 0.75)
        assert first.accuracy == 50
        assert (second.section_title, second.total_marks, second.marks_obtained) == ("Section 2", 3, 3)
        assert second.accuracy == 100
        assert scored.score == pytest.approx(3.75)

    def test_section_with_nothing_attempted_has_zero_accuracy(self):
        test = make_test([[("q1", 0, 1)], [("q2", 0, 1)]])
        scored = score_attempt(make_attempt(test, [("q1", 0)]), test)

        assert scored.section_results[1].attempted_questions == 0
        assert scored.section_results[1].accuracy == 0
        assert scored.accuracy == 100

    def test_null_selection_counts_as_skipped(self):
        test = make_test([[("q1", 0, 1), ("q2", 0, 1)]])
        scored = score_attempt(make_attempt(test, [("q1", None), ("q2", 0)]), test)

        assert scored.skipped_questions == 1
        assert scored.attempted_questions == 1
        assert [a.is_correct for a in scored.answers] == [False, True]

    def test_unknown_questions_are_dropped(self):
        test = make_test([[("q1", 0, 1)]])
        scored = score_attempt(make_attempt(test, [("q1", 0), ("ghost", 1)]), test)

        assert [a.question_id for a in scored.answers] == ["q1"]
        assert scored.attempted_questions == 1

    def test_last_answer_for_a_question_wins(self):
        test = make_test([[("q1", 2, 1)]])
        scored = score_attempt(make_attempt(test, [("q1", 0), ("q1", 2)]), test)

        assert scored.correct_answers == 1
        assert scored.wrong_answers == 0

    def test_scoring_does_not_touch_the_input(self):
        test = make_test([[("q1", 0, 1)]])
        attempt = make_attempt(test, [("q1", 0)])
        score_attempt(attempt, test)

        assert attempt.score is None
        assert attempt.answers[0].is_correct is False

    @pytest.mark.parametrize(
        "answers",
        [
            [],
            [("q1", 0), ("q2", 0), ("q3", 0), ("q4", 0)],
            [("q1", 1), ("q2", None), ("q4", 3)],
            [("q2", 1), ("q3", 2)],
        ],
    )
    def test_counts_always_add_up(self, answers):
        test = make_test([[("q1", 0, 1), ("q2", 1, 2)], [("q3", 2, 1), ("q4", 3, 5)]], negative_marking=0.5)
        scored = score_attempt(make_attempt(test, answers), test)

        assert scored.attempted_questions + scored.skipped_questions == scored.total_questions == 4
        assert scored.correct_answers + scored.wrong_answers == scored.attempted_questions
        assert scored.score >= 0
        for section in scored.section_results:
            assert section.attempted_questions + section.skipped_questions == section.total_questions
            assert section.correct_answers + section.wrong_answers == section.attempted_questions
