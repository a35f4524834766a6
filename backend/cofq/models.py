"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table and uses relationships where appropriate.
Table names follow the SQLModel default (lower-cased class name) and
must stay in sync with `migrations/*.sql`.
"""

from typing import Optional
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON
from datetime import datetime, date, timezone
from typing import List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    created_at: datetime = Field(default_factory=_utcnow)


class Question(SQLModel, table=True):
    """A multiple-choice practice question belonging to a topic."""
    id: Optional[int] = Field(default=None, primary_key=True)
    topic: str = Field(index=True)
    question_text: str
    explanation: Optional[str] = None
    difficulty: Optional[str] = None
    question_type: Optional[str] = None
    source: Optional[str] = None
    answers: List['Answer'] = Relationship(back_populates='question')


class Answer(SQLModel, table=True):
    """Possible answer for a `Question`.

    `is_correct` marks whether this answer is considered correct.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key='question.id', index=True)
    answer_text: str
    is_correct: bool = False
    question: Optional[Question] = Relationship(back_populates='answers')


class QuizResult(SQLModel, table=True):
    """A stored quiz result for a user with aggregated score."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    topic: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    score: Optional[int] = None
    percentage: Optional[float] = None
    total_questions: Optional[int] = None
    items: List['QuizResultItem'] = Relationship(back_populates='quiz_result')


class QuizResultItem(SQLModel, table=True):
    """A single question outcome inside a `QuizResult`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_result_id: int = Field(foreign_key='quizresult.id')
    question_id: int = Field(foreign_key='question.id')
    given_answer: Optional[str]
    correct: bool = False
    quiz_result: Optional[QuizResult] = Relationship(back_populates='items')


class WeeklyGoal(SQLModel, table=True):
    """A simple per-user weekly goal record.

    `week_start` should be a date representing the first day of the
    tracking week.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id')
    week_start: date
    goal_type: str
    goal_value: int
    created_at: datetime = Field(default_factory=_utcnow)


class Passage(SQLModel, table=True):
    """A chunk of study material used as retrieval context.

    `embedding` holds the vector produced by the configured embedder as
    a JSON list of floats; its length depends on the embedder.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    topic: str = Field(index=True)
    source: str
    chunk_index: int = 0
    text: str
    embedding: List[float] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow)


class PracticeAttempt(SQLModel, table=True):
    """A persisted practice question and the answer the provider gave."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    topic: str = Field(index=True)
    prompt: str
    answer_text: str
    citations: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    provider: str
    model: str
    latency_ms: float = 0.0
    created_at: datetime = Field(default_factory=_utcnow)


class Flashcard(SQLModel, table=True):
    """A per-user flashcard with SM-2 review state."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    topic: Optional[str] = None
    front: str
    back: str
    question_id: Optional[int] = Field(default=None, foreign_key='question.id')
    repetitions: int = 0
    interval_days: int = 0
    ease_factor: float = 2.5
    due_date: date = Field(default_factory=lambda: _utcnow().date())
    last_reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
