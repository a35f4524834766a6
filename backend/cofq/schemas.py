"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from pydantic import BaseModel, Field
from typing import List, Optional


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class QuizSubmissionItem(BaseModel):
    """Single submitted answer item used when grading a quiz."""
    question_id: int
    given_answer: Optional[str] = None
    answer_id: Optional[int] = None


class QuizSubmission(BaseModel):
    """Request model for grading containing a list of answers."""
    topic: Optional[str] = None
    answers: List[QuizSubmissionItem]


class PracticeRequest(BaseModel):
    """A free-form practice question asked about a topic.

    `user_id` is optional; when sent it must match the authenticated user.
    """
    topic: str = Field(min_length=1, max_length=200)
    prompt: str = Field(min_length=1, max_length=4000)
    user_id: Optional[int] = None
    top_k: Optional[int] = Field(default=None, ge=1)


class Citation(BaseModel):
    """A context passage the answer was grounded on."""
    passage_id: int
    source: str
    score: float
    snippet: str


class PracticeAnswer(BaseModel):
    """Answer returned for a `PracticeRequest`."""
    attempt_id: int
    answer: str
    citations: List[Citation] = []
    provider: str
    model: str


class PassageIn(BaseModel):
    """Raw study material to chunk, embed and store."""
    topic: str = Field(min_length=1, max_length=200)
    source: str = Field(min_length=1, max_length=300)
    text: str = Field(min_length=1)


class FlashcardIn(BaseModel):
    """Payload for creating a flashcard by hand."""
    front: str = Field(min_length=1)
    back: str = Field(min_length=1)
    topic: Optional[str] = None


class FlashcardReview(BaseModel):
    """Self-graded recall quality, 0 (blackout) to 5 (perfect)."""
    quality: int = Field(ge=0, le=5)
