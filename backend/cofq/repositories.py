"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
questions, answers, quizzes, goals, passages, practice attempts,
flashcards). Repositories return SQLModel objects and perform
commits/refreshes where appropriate.
"""

from datetime import date, datetime
from typing import List, Optional
from sqlmodel import Session, select
from sqlalchemy import func
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class QuestionRepository:
    """CRUD operations for `Question` and related `Answer` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, question: models.Question, answers: List[models.Answer]) -> models.Question:
        """Create a question and attach provided answers.

        The question is flushed first to obtain an id, then that id is
        assigned to the answers before a single commit.
        """
        self.session.add(question)
        self.session.flush()
        for a in answers:
            a.question_id = question.id
            self.session.add(a)
        self.session.commit()
        self.session.refresh(question)
        return question

    def update(self, question: models.Question) -> models.Question:
        self.session.add(question)
        self.session.commit()
        self.session.refresh(question)
        return question

    def list_by_topic(self, topic: Optional[str] = None) -> List[models.Question]:
        """Return all questions for `topic`, or every question when `topic` is None."""
        stmt = select(models.Question)
        if topic is not None:
            stmt = stmt.where(models.Question.topic == topic)
        return self.session.exec(stmt.order_by(models.Question.id)).all()

    def exists_by_topic_and_text(self, topic: str, question_text: str) -> bool:
        """Return True if a question with the same topic/text already exists."""
        stmt = select(models.Question.id).where(
            models.Question.topic == topic,
            models.Question.question_text == question_text
        )
        return self.session.exec(stmt).first() is not None

    def get_random(self, topic: Optional[str], limit: int = 10) -> List[models.Question]:
        """Return up to `limit` random questions for `topic` (any topic when None)."""
        stmt = select(models.Question)
        if topic is not None:
            stmt = stmt.where(models.Question.topic == topic)
        return self.session.exec(stmt.order_by(func.random()).limit(limit)).all()

    def get(self, question_id: int) -> Optional[models.Question]:
        """Fetch a question by id."""
        return self.session.get(models.Question, question_id)


class AnswerRepository:
    """Query helpers for `Answer` records."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, answer_id: int) -> Optional[models.Answer]:
        """Fetch a single answer by id."""
        return self.session.get(models.Answer, answer_id)

    def list_for_question(self, question_id: int) -> List[models.Answer]:
        """List all answer rows for the provided `question_id`."""
        stmt = select(models.Answer).where(models.Answer.question_id == question_id).order_by(models.Answer.id)
        return self.session.exec(stmt).all()


class QuizRepository:
    """Persist quiz result aggregates and their items."""
    def __init__(self, session: Session):
        self.session = session

    def create_result(self, result: models.QuizResult, items: List[models.QuizResultItem]) -> models.QuizResult:
        """Store a `QuizResult` and attach its `QuizResultItem`s."""
        self.session.add(result)
        self.session.flush()
        for it in items:
            it.quiz_result_id = result.id
            self.session.add(it)
        self.session.commit()
        self.session.refresh(result)
        return result

    def list_for_user_between(self, user_id: int, start: datetime, end: datetime) -> List[models.QuizResult]:
        stmt = select(models.QuizResult).where(
            models.QuizResult.user_id == user_id,
            models.QuizResult.timestamp >= start,
            models.QuizResult.timestamp < end
        )
        return self.session.exec(stmt).all()


class GoalRepository:
    """Repository for weekly goal upserts and queries."""
    def __init__(self, session: Session):
        self.session = session

    def set_goal(self, goal: models.WeeklyGoal) -> models.WeeklyGoal:
        """Upsert a weekly goal for a user/week/type combination."""
        existing = self.session.exec(
            select(models.WeeklyGoal).where(
                models.WeeklyGoal.user_id == goal.user_id,
                models.WeeklyGoal.week_start == goal.week_start,
                models.WeeklyGoal.goal_type == goal.goal_type
            )
        ).first()
        if existing:
            existing.goal_value = goal.goal_value
            self.session.add(existing)
            self.session.commit()
            self.session.refresh(existing)
            return existing
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def get_goals_for_user_week(self, user_id: int, week_start: date) -> List[models.WeeklyGoal]:
        """Return all goals for `user_id` in the specified `week_start`."""
        stmt = select(models.WeeklyGoal).where(models.WeeklyGoal.user_id == user_id, models.WeeklyGoal.week_start == week_start)
        return self.session.exec(stmt).all()


class PassageRepository:
    """Storage for retrieval context passages."""
    def __init__(self, session: Session):
        self.session = session

    def add_many(self, passages: List[models.Passage]) -> List[models.Passage]:
        for p in passages:
            self.session.add(p)
        self.session.commit()
        for p in passages:
            self.session.refresh(p)
        return passages

    def exists(self, source: str, text: str) -> bool:
        """Return True if the same chunk text is already stored for `source`."""
        stmt = select(models.Passage.id).where(models.Passage.source == source, models.Passage.text == text)
        return self.session.exec(stmt).first() is not None

    def list_by_topic(self, topic: Optional[str] = None) -> List[models.Passage]:
        """Return passages for `topic` ordered by id; all passages when `topic` is None."""
        stmt = select(models.Passage)
        if topic is not None:
            stmt = stmt.where(models.Passage.topic == topic)
        return self.session.exec(stmt.order_by(models.Passage.id)).all()


class AttemptRepository:
    """Practice attempt history."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: models.PracticeAttempt) -> models.PracticeAttempt:
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    def list_for_user(self, user_id: int, topic: Optional[str] = None, limit: int = 20) -> List[models.PracticeAttempt]:
        """Return the newest `limit` attempts for `user_id`, optionally for one topic."""
        stmt = select(models.PracticeAttempt).where(models.PracticeAttempt.user_id == user_id)
        if topic is not None:
            stmt = stmt.where(models.PracticeAttempt.topic == topic)
        stmt = stmt.order_by(models.PracticeAttempt.created_at.desc(), models.PracticeAttempt.id.desc()).limit(limit)
        return self.session.exec(stmt).all()

    def count_for_user_between(self, user_id: int, start: datetime, end: datetime) -> int:
        stmt = select(func.count(models.PracticeAttempt.id)).where(
            models.PracticeAttempt.user_id == user_id,
            models.PracticeAttempt.created_at >= start,
            models.PracticeAttempt.created_at < end
        )
        return self.session.exec(stmt).one()


class FlashcardRepository:
    """CRUD and due-queue queries for `Flashcard` records."""
    def __init__(self, session: Session):
        self.session = session

    def save(self, card: models.Flashcard) -> models.Flashcard:
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def get(self, card_id: int) -> Optional[models.Flashcard]:
        return self.session.get(models.Flashcard, card_id)

    def list_due(self, user_id: int, today: date, limit: int = 20) -> List[models.Flashcard]:
        """Return cards due on or before `today`, most overdue first."""
        stmt = select(models.Flashcard).where(
            models.Flashcard.user_id == user_id,
            models.Flashcard.due_date <= today
        ).order_by(models.Flashcard.due_date, models.Flashcard.id).limit(limit)
        return self.session.exec(stmt).all()
