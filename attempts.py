"""
Attempt lifecycle

NotStarted -> InProgress -> Submitted. An attempt document is created on
start, only its answers change while in progress, and submit freezes it,
scores it and re-ranks the test in one guarded transition. The server's
started_at is the only clock that counts; remaining time is always derived
from it, never taken from the client.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import get_db
from ranking import recalculate_rankings
from schemas import Answer, AnswerIn, Attempt, AttemptView, MockTest
from scoring import score_attempt

logger = logging.getLogger(__name__)

# Seconds after the deadline during which a client auto-submit is still awaited
SUBMIT_GRACE_SECONDS = int(os.getenv("SUBMIT_GRACE_SECONDS", 30))

RESULT_FIELDS = {
    "answers",
    "score",
    "total_marks",
    "percentage",
    "section_results",
    "total_questions",
    "attempted_questions",
    "correct_answers",
    "wrong_answers",
    "skipped_questions",
    "accuracy",
}


class AttemptError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(AttemptError):
    status_code = 400


class NotAuthorized(AttemptError):
    status_code = 403


class NotFound(AttemptError):
    status_code = 404


class StateConflict(AttemptError):
    status_code = 409


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_object_id(value: str, what: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid {what}")


def time_remaining(started_at: datetime, duration_minutes: int, now: Optional[datetime] = None) -> int:
    """Whole seconds left before the attempt's deadline, never below zero."""
    now = now or utcnow()
    elapsed = (now - as_utc(started_at)).total_seconds()
    return max(0, int(duration_minutes * 60 - elapsed))


def is_past_grace(started_at: datetime, duration_minutes: int, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    elapsed = (now - as_utc(started_at)).total_seconds()
    return elapsed > duration_minutes * 60 + SUBMIT_GRACE_SECONDS


def load_test(test_id: str, active_only: bool = True) -> MockTest:
    doc = get_db()["mocktest"].find_one({"_id": parse_object_id(test_id, "test id")})
    if not doc:
        raise NotFound("Test not found")
    if active_only and not doc.get("is_active", True):
        raise NotAuthorized("Test is not active")
    return MockTest.model_validate(doc)


def load_owned_attempt(attempt_id: str, user: Dict[str, Any], allow_admin: bool = False) -> Dict[str, Any]:
    doc = get_db()["attempt"].find_one({"_id": parse_object_id(attempt_id, "attempt id")})
    if not doc:
        raise NotFound("Test attempt not found")
    if doc["user_id"] != str(user["_id"]) and not (allow_admin and user.get("role") == "admin"):
        raise NotAuthorized("Unauthorized")
    return doc


def _stored_answers(answers: List[AnswerIn]) -> List[Dict[str, Any]]:
    return [
        Answer(question_id=a.question_id, selected_answer=a.selected_answer, time_taken=a.time_taken).model_dump()
        for a in answers
    ]


def start_attempt(test_id: str, user: Dict[str, Any]) -> Tuple[Dict[str, Any], MockTest, bool]:
    """Start a new attempt or resume the caller's in-progress one.

    Returns the attempt document, the test and whether it was resumed.
    """
    test = load_test(test_id)
    attempts = get_db()["attempt"]
    now = utcnow()
    key = {"user_id": str(user["_id"]), "test_id": test_id, "is_completed": False}
    fresh = Attempt(
        user_id=key["user_id"],
        test_id=test_id,
        total_marks=test.total_marks,
        total_questions=test.total_questions,
        started_at=now,
    ).model_dump(exclude=set(key))
    fresh["created_at"] = now
    fresh["updated_at"] = now

    # upsert keyed on the in-progress slot; the one_open_attempt index makes a
    # racing second insert fail, and that caller resumes the winner's attempt
    try:
        before = attempts.find_one_and_update(
            key,
            {"$setOnInsert": fresh},
            upsert=True,
            return_document=ReturnDocument.BEFORE,
        )
    except DuplicateKeyError:
        before = attempts.find_one(key)
        if before is None:
            raise StateConflict("Attempt could not be started, please retry")
    resumed = before is not None
    doc = before if resumed else attempts.find_one(key)

    if resumed:
        logger.info("Resuming attempt %s for user %s on test %s", doc["_id"], key["user_id"], test_id)
    else:
        get_db()["mocktest"].update_one({"_id": ObjectId(test_id)}, {"$inc": {"attempt_count": 1}})
        logger.info("Started attempt %s for user %s on test %s", doc["_id"], key["user_id"], test_id)
    return doc, test, resumed


def _check_attempt_for_test(doc: Dict[str, Any], test_id: str) -> None:
    if doc["test_id"] != test_id:
        raise ValidationFailed("Attempt does not belong to this test")
    if doc.get("is_completed"):
        raise StateConflict("Test already submitted")


def save_progress(test_id: str, attempt_id: str, answers: List[AnswerIn], user: Dict[str, Any]) -> None:
    """Persist the current answer set without finalizing."""
    doc = load_owned_attempt(attempt_id, user)
    _check_attempt_for_test(doc, test_id)
    test = load_test(test_id, active_only=False)
    if is_past_grace(doc["started_at"], test.duration):
        raise StateConflict("Time is up for this attempt")

    result = get_db()["attempt"].update_one(
        {"_id": doc["_id"], "is_completed": False},
        {"$set": {"answers": _stored_answers(answers), "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise StateConflict("Test already submitted")
    logger.debug("Saved %d answers on attempt %s", len(answers), attempt_id)


def finalize_attempt(
    doc: Dict[str, Any],
    test: MockTest,
    answers: Optional[List[Dict[str, Any]]] = None,
    is_auto_submit: bool = False,
) -> Dict[str, Any]:
    """Freeze, score and rank an in-progress attempt.

    The write is conditional on is_completed being false, so of two racing
    submissions exactly one is stored; the other gets StateConflict.
    """
    now = utcnow()
    if answers is None:
        answers = doc.get("answers") or []
    attempt = Attempt.model_validate({**doc, "answers": answers})
    scored = score_attempt(attempt, test)
    started_at = as_utc(doc["started_at"])

    update = scored.model_dump(include=RESULT_FIELDS)
    update.update(
        {
            "submitted_at": now,
            "time_spent": max(0, int((now - started_at).total_seconds())),
            "is_completed": True,
            "is_auto_submitted": bool(is_auto_submit) or is_past_grace(started_at, test.duration, now),
            "updated_at": now,
        }
    )
    final = get_db()["attempt"].find_one_and_update(
        {"_id": doc["_id"], "is_completed": False},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if final is None:
        raise StateConflict("Test already submitted")

    logger.info(
        "Submitted attempt %s (auto=%s): score %s/%s",
        doc["_id"], update["is_auto_submitted"], update["score"], update["total_marks"],
    )
    recalculate_rankings(get_db(), doc["test_id"])
    return get_db()["attempt"].find_one({"_id": doc["_id"]})


def submit_attempt(
    test_id: str,
    attempt_id: str,
    answers: Optional[List[AnswerIn]],
    is_auto_submit: bool,
    user: Dict[str, Any],
) -> Dict[str, Any]:
    doc = load_owned_attempt(attempt_id, user)
    _check_attempt_for_test(doc, test_id)
    test = load_test(test_id, active_only=False)
    stored = _stored_answers(answers) if answers is not None else None
    if stored is not None and is_past_grace(doc["started_at"], test.duration):
        # answers sent after the deadline are not accepted, only the last autosave counts
        logger.warning("Late submit on attempt %s, scoring its last autosave", attempt_id)
        stored = None
    return finalize_attempt(doc, test, stored, is_auto_submit)


def fetch_attempt(attempt_id: str, user: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[MockTest]]:
    """Load an attempt for viewing, closing it out if its deadline and grace have passed."""
    doc = load_owned_attempt(attempt_id, user, allow_admin=True)
    try:
        test = load_test(doc["test_id"], active_only=False)
    except NotFound:
        return doc, None

    if not doc.get("is_completed") and is_past_grace(doc["started_at"], test.duration):
        logger.info("Attempt %s expired without a final submit, closing it", doc["_id"])
        try:
            doc = finalize_attempt(doc, test, is_auto_submit=True)
        except StateConflict:
            doc = get_db()["attempt"].find_one({"_id": doc["_id"]})
    return doc, test


def attempt_view(doc: Dict[str, Any], test: Optional[MockTest] = None) -> AttemptView:
    view = AttemptView.model_validate({**doc, "attempt_id": str(doc["_id"])})
    view.started_at = as_utc(view.started_at)
    if view.submitted_at is not None:
        view.submitted_at = as_utc(view.submitted_at)
    if test is not None:
        view.test_title = test.title
        if not view.is_completed:
            view.time_remaining = time_remaining(view.started_at, test.duration)
            view.is_expired = view.time_remaining == 0
    return view


def answer_key(attempt_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """Correct answers, explanations and the caller's own answers, for a finished attempt."""
    doc = load_owned_attempt(attempt_id, user, allow_admin=True)
    if not doc.get("is_completed"):
        raise NotAuthorized("Test must be completed to view answers")
    test = load_test(doc["test_id"], active_only=False)
    answers = {a["question_id"]: a for a in doc.get("answers") or []}

    sections = []
    for section in test.sections:
        questions = []
        for q in section.questions:
            mine = answers.get(q.id)
            questions.append({
                "questionId": q.id,
                "text": q.text,
                "options": q.options,
                "correctAnswer": q.correct_answer,
                "explanation": q.explanation,
                "marks": q.marks,
                "difficulty": q.difficulty,
                "subject": q.subject,
                "userAnswer": {
                    "selectedAnswer": mine.get("selected_answer"),
                    "isCorrect": mine.get("is_correct", False),
                    "marksAwarded": mine.get("marks_awarded", 0),
                } if mine else None,
            })
        sections.append({"sectionId": section.id, "sectionTitle": section.title, "questions": questions})

    return {"testTitle": test.title, "negativeMarking": test.negative_marking, "answerKey": sections}
