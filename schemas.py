"""
Mock Test Portal Schemas

Each Pydantic model below maps to a MongoDB collection. The collection name is the lowercase of the class name.
Stored documents use snake_case keys; JSON sent over HTTP uses camelCase (see CamelModel).

Collections:
- user: accounts for admin/student
- mocktest: timed tests made of ordered sections of multiple-choice questions
- attempt: one user's run at one test, its answers and, once submitted, its score and rank
"""

import re
from datetime import datetime
from typing import List, Optional, Literal, Dict

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["admin", "student"]
QuestionDifficulty = Literal["easy", "medium", "hard"]
TestDifficulty = Literal["easy", "medium", "hard", "mixed"]


def new_id() -> str:
    return str(ObjectId())


def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(BaseModel):
    name: str
    email: str
    password_hash: str
    role: Role = "student"
    is_active: bool = True


class Question(CamelModel):
    id: str = Field(default_factory=new_id)
    text: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=2, description="Ordered answer options")
    correct_answer: int = Field(..., ge=0, description="0-based index into options")
    explanation: Optional[str] = None
    marks: float = Field(1, ge=0)
    difficulty: QuestionDifficulty = "medium"
    subject: Optional[str] = None
    tags: List[str] = []

    @model_validator(mode="after")
    def check_correct_answer(self):
        if self.correct_answer >= len(self.options):
            raise ValueError("Correct answer index must be within options range")
        return self


class Section(CamelModel):
    id: str = Field(default_factory=new_id)
    title: str = Field(..., min_length=1)
    questions: List[Question] = Field(..., min_length=1)
    time_limit: Optional[int] = Field(None, ge=0, description="Minutes, optional per section")
    order: int = Field(..., ge=1)


class MockTest(CamelModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    duration: int = Field(..., ge=1, description="Minutes")
    negative_marking: float = Field(0, ge=0, description="Flat deduction per wrong answer")
    instructions: List[str] = []
    sections: List[Section] = Field(..., min_length=1)
    category: Optional[str] = None
    exam_type: Optional[str] = None
    difficulty: TestDifficulty = "mixed"
    is_active: bool = True
    is_paid: bool = False
    price: float = Field(0, ge=0)
    attempt_count: int = 0
    created_by: Optional[str] = None
    # derived on every validation
    slug: Optional[str] = None
    total_marks: float = 0
    total_questions: int = 0

    @model_validator(mode="after")
    def derive_fields(self):
        orders = [s.order for s in self.sections]
        if len(orders) != len(set(orders)):
            raise ValueError("Section order must be unique within a test")
        self.sections.sort(key=lambda s: s.order)
        self.slug = slugify(self.title)
        self.total_marks = sum(q.marks for s in self.sections for q in s.questions)
        self.total_questions = sum(len(s.questions) for s in self.sections)
        return self

    def questions_by_id(self) -> Dict[str, Question]:
        return {q.id: q for s in self.sections for q in s.questions}


class MockTestUpdate(CamelModel):
    """Partial update for a test; unset fields are left alone."""
    title: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = Field(None, ge=1)
    negative_marking: Optional[float] = Field(None, ge=0)
    instructions: Optional[List[str]] = None
    sections: Optional[List[Section]] = None
    category: Optional[str] = None
    exam_type: Optional[str] = None
    difficulty: Optional[TestDifficulty] = None
    is_active: Optional[bool] = None
    is_paid: Optional[bool] = None
    price: Optional[float] = Field(None, ge=0)


class Answer(CamelModel):
    question_id: str
    selected_answer: Optional[int] = Field(None, ge=0)
    is_correct: bool = False
    marks_awarded: float = 0
    time_taken: int = Field(0, ge=0, description="Seconds")


class SectionResult(CamelModel):
    section_id: str
    section_title: str
    total_questions: int
    attempted_questions: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    skipped_questions: int = 0
    marks_obtained: float = 0
    total_marks: float = 0
    accuracy: float = 0


class Attempt(CamelModel):
    user_id: str
    test_id: str
    answers: List[Answer] = []
    score: Optional[float] = None
    total_marks: float
    percentage: float = 0
    rank: Optional[int] = None
    total_attempts: int = 0
    time_spent: int = 0
    started_at: datetime
    submitted_at: Optional[datetime] = None
    is_completed: bool = False
    is_auto_submitted: bool = False
    section_results: List[SectionResult] = []
    total_questions: int
    attempted_questions: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    skipped_questions: int = 0
    accuracy: float = 0


class AttemptView(Attempt):
    """Attempt as returned to its owner; time_remaining is only set while in progress."""
    attempt_id: str
    test_title: Optional[str] = None
    time_remaining: Optional[int] = None
    is_expired: bool = False


# ---------------------- Request bodies ----------------------
class AnswerIn(CamelModel):
    question_id: str = Field(..., min_length=1)
    selected_answer: Optional[int] = Field(None, ge=0)
    time_taken: int = Field(0, ge=0)


class SaveProgressPayload(CamelModel):
    attempt_id: str
    answers: List[AnswerIn] = []


class SubmitPayload(CamelModel):
    attempt_id: str
    # None keeps whatever autosave last stored
    answers: Optional[List[AnswerIn]] = None
    is_auto_submit: bool = False


# ---------------------- Student-facing views ----------------------
class PublicQuestion(CamelModel):
    id: str
    text: str
    options: List[str]
    marks: float
    difficulty: QuestionDifficulty
    subject: Optional[str] = None


class PublicSection(CamelModel):
    id: str
    title: str
    order: int
    time_limit: Optional[int] = None
    questions: List[PublicQuestion]


class PublicTest(CamelModel):
    id: str
    title: str
    description: str
    duration: int
    total_marks: float
    total_questions: int
    negative_marking: float
    instructions: List[str]
    category: Optional[str] = None
    exam_type: Optional[str] = None
    difficulty: TestDifficulty
    sections: List[PublicSection]

    @classmethod
    def from_test(cls, test_id: str, test: MockTest) -> "PublicTest":
        """Strip correct answers and explanations before a test reaches a student."""
        return cls(
            id=test_id,
            title=test.title,
            description=test.description,
            duration=test.duration,
            total_marks=test.total_marks,
            total_questions=test.total_questions,
            negative_marking=test.negative_marking,
            instructions=test.instructions,
            category=test.category,
            exam_type=test.exam_type,
            difficulty=test.difficulty,
            sections=[
                PublicSection(
                    id=s.id,
                    title=s.title,
                    order=s.order,
                    time_limit=s.time_limit,
                    questions=[
                        PublicQuestion(
                            id=q.id,
                            text=q.text,
                            options=q.options,
                            marks=q.marks,
                            difficulty=q.difficulty,
                            subject=q.subject,
                        )
                        for q in s.questions
                    ],
                )
                for s in test.sections
            ],
        )


class StartResponse(CamelModel):
    attempt_id: str
    started_at: datetime
    duration: int
    time_remaining: int
    resumed: bool = False
    answers: List[Answer] = []
    test: PublicTest
