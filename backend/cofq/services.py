"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
parsers, the retrieval index and the language-model provider. Services
are intentionally thin: they perform validation, execute domain logic
and persist aggregates via repositories.

Invalid input raises `ValueError`; a missing record raises
`NotFoundError` (a `ValueError` subclass) so controllers can answer 404.
Provider failures surface as `LLMProviderError` and leave nothing
persisted.
"""

import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi.concurrency import run_in_threadpool
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .llm import LLMProvider, LLMProviderError
from .prompts import build_explain_messages, build_practice_messages, cited_markers
from .retrieval import ScoredPassage, chunk_text, get_embedder, top_k
from .utils.parsers import extract_text, parse_file_to_questions

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
SNIPPET_CHARS = 200

logger = logging.getLogger("cofq.services")


class NotFoundError(ValueError):
    """Raised when a referenced record does not exist or is not visible to the caller."""


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class ImportService:
    """Import questions from files and persist them to the DB."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)

    def import_file(self, file_bytes: bytes, filename: str, topic: str, deduplicate: bool = True, dry_run: bool = False):
        """Parse `filename` contents and create `Question` and `Answer` rows.

        Returns a dictionary with the number of `created` questions, the
        number of `valid` items, `skipped` duplicates and any validation
        `errors` encountered per item. When `deduplicate` is True,
        questions with identical topic/text are skipped.
        """
        parsed = parse_file_to_questions(file_bytes, filename)
        created = 0
        valid = 0
        skipped = 0
        errors = []
        for idx, p in enumerate(parsed):
            try:
                self._validate_parsed_question(p)
            except ValueError as e:
                errors.append({'index': idx, 'error': str(e), 'item': p})
                continue
            valid += 1
            question_text = p['question_text'].strip()
            if deduplicate and self.q_repo.exists_by_topic_and_text(topic, question_text):
                skipped += 1
                continue
            if dry_run:
                continue
            q = models.Question(
                topic=topic,
                question_text=question_text,
                explanation=p.get('explanation'),
                difficulty=p.get('difficulty'),
                question_type=p.get('question_type'),
                source=filename
            )
            possible_answers = p['possible_answers']
            # If no answers are explicitly marked correct, mark the first.
            has_marked_correct = any(bool(a.get('is_correct')) for a in possible_answers)
            answers = [
                models.Answer(answer_text=a['answer_text'], is_correct=bool(a.get('is_correct')) or (not has_marked_correct and i == 0))
                for i, a in enumerate(possible_answers)
            ]
            self.q_repo.create(q, answers)
            created += 1
        logger.info("imported %s into %r: created=%d skipped=%d errors=%d", filename, topic, created, skipped, len(errors))
        return {'created': created, 'valid': valid, 'skipped': skipped, 'errors': errors}

    def _validate_parsed_question(self, p: dict):
        """Validate a parsed question dictionary and raise ValueError on error."""
        if not isinstance(p, dict):
            raise ValueError('question item must be an object')
        qt = p.get('question_text')
        if not qt or not isinstance(qt, str) or not qt.strip():
            raise ValueError('missing or empty question_text')
        pas = p.get('possible_answers')
        if not pas or not isinstance(pas, list):
            raise ValueError('possible_answers missing or empty')
        for a in pas:
            if not isinstance(a, dict):
                raise ValueError('each possible_answer must be an object')
            if not a.get('answer_text'):
                raise ValueError('answer missing answer_text')


def correct_answer_texts(answers: List[models.Answer]) -> List[str]:
    """Return the texts of answers marked correct, or the first answer when none is marked."""
    texts = [a.answer_text for a in answers if a.is_correct]
    if not texts and answers:
        texts = [answers[0].answer_text]
    return texts


class GradingService:
    """Grade submitted quizzes and persist results."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)
        self.a_repo = repositories.AnswerRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)

    def grade(self, user_id: int, answers: List[dict], topic: Optional[str] = None):
        """Grade a list of `{question_id, given_answer, answer_id}` dicts.

        Correctness compares the submitted answer text, case- and
        whitespace-insensitively, to the stored correct answers. When
        `answer_id` is given it takes precedence over `given_answer` and
        must belong to the question. The quiz result and per-question
        items are persisted and a summary payload is returned.
        """
        total = len(answers)
        correct = 0
        items = []
        payload_items = []
        for a in answers:
            q = self.q_repo.get(a['question_id'])
            if not q:
                raise NotFoundError(f"question not found: {a['question_id']}")
            correct_texts = correct_answer_texts(self.a_repo.list_for_question(q.id))
            answer_id = a.get('answer_id')
            if answer_id is not None:
                db_answer = self.a_repo.get(answer_id)
                if not db_answer or db_answer.question_id != q.id:
                    raise ValueError(f"answer not found for question: {answer_id}")
                submitted_text = db_answer.answer_text
            else:
                submitted_text = a.get('given_answer')
            if submitted_text is None:
                raise ValueError("given_answer or answer_id required")
            norm = lambda s: " ".join(s.split()).lower()
            is_correct = norm(submitted_text) in {norm(c) for c in correct_texts}
            if is_correct:
                correct += 1
            items.append(models.QuizResultItem(question_id=q.id, given_answer=submitted_text, correct=is_correct))
            payload_items.append({
                'question_id': q.id,
                'given': submitted_text,
                'correct': is_correct,
                'correct_answers': correct_texts,
                'explanation': q.explanation
            })
        percentage = (correct / total) * 100 if total > 0 else 0.0
        result = models.QuizResult(user_id=user_id, topic=topic, score=correct, percentage=percentage, total_questions=total)
        created = self.quiz_repo.create_result(result, items)
        return {
            'result_id': created.id,
            'score': created.score,
            'percentage': created.percentage,
            'total': created.total_questions,
            'items': payload_items
        }


class GoalService:
    """Manage weekly goals and compute progress summaries."""
    def __init__(self, session: Session):
        self.session = session
        self.goal_repo = repositories.GoalRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)

    def set_weekly_goal(self, user_id: int, week_start: date, goal_type: str, goal_value: int):
        """Create or update a weekly goal record."""
        if goal_value < 0:
            raise ValueError("goal_value must be >= 0")
        if not goal_type.strip():
            raise ValueError("goal_type required")
        g = models.WeeklyGoal(user_id=user_id, week_start=week_start, goal_type=goal_type.strip(), goal_value=goal_value)
        return self.goal_repo.set_goal(g)

    def get_progress(self, user_id: int, week_start: date):
        """Return a progress summary for the seven days starting at `week_start`.

        Counts quizzes, graded questions and practice attempts recorded in
        that window and returns any configured goals.
        """
        start = datetime.combine(week_start, datetime.min.time())
        end = start + timedelta(days=7)
        results = self.quiz_repo.list_for_user_between(user_id, start, end)
        goals = self.goal_repo.get_goals_for_user_week(user_id, week_start)
        return {
            'quizzes_completed': len(results),
            'questions_completed': sum(r.total_questions or 0 for r in results),
            'practice_attempts': self.attempt_repo.count_for_user_between(user_id, start, end),
            'goals': {g.goal_type: g.goal_value for g in goals}
        }


class PassageService:
    """Chunk, embed and search study-material passages."""
    def __init__(self, session: Session, embedder=None):
        self.session = session
        self.repo = repositories.PassageRepository(session)
        self.embedder = embedder or get_embedder()

    async def ingest_text(self, topic: str, source: str, text: str, max_chars: int = 800, overlap: int = 100):
        """Store `text` as embedded passages under `topic`.

        Chunks already stored for the same `source` are skipped, so
        re-ingesting a document only adds what changed; a chunk repeated
        within `text` is stored once.
        """
        topic = topic.strip()
        source = source.strip()
        if not topic or not source:
            raise ValueError("topic and source required")
        chunks = chunk_text(text, max_chars=max_chars, overlap=overlap)
        if not chunks:
            raise ValueError("no text to ingest")
        fresh = await run_in_threadpool(self._fresh_chunks, source, chunks)
        vectors = await self.embedder.embed([c for _, c in fresh])
        if len(vectors) != len(fresh):
            raise LLMProviderError(f"embedding count mismatch: sent {len(fresh)}, got {len(vectors)}")
        passages = [
            models.Passage(topic=topic, source=source, chunk_index=i, text=c, embedding=v)
            for (i, c), v in zip(fresh, vectors)
        ]
        await run_in_threadpool(self.repo.add_many, passages)
        logger.info("ingested %s into %r: created=%d skipped=%d", source, topic, len(passages), len(chunks) - len(fresh))
        return {
            'created': len(passages),
            'skipped': len(chunks) - len(fresh),
            'passage_ids': [p.id for p in passages]
        }

    def _fresh_chunks(self, source: str, chunks: List[str]):
        seen = set()
        fresh = []
        for i, c in enumerate(chunks):
            if c in seen or self.repo.exists(source, c):
                continue
            seen.add(c)
            fresh.append((i, c))
        return fresh

    async def ingest_file(self, file_bytes: bytes, filename: str, topic: str):
        text = await run_in_threadpool(extract_text, file_bytes, filename)
        return await self.ingest_text(topic, filename, text)

    async def search(self, query: str, topic: Optional[str] = None, k: int = 4, min_score: float = 0.0) -> List[ScoredPassage]:
        """Return the `k` passages most similar to `query`.

        Passages of `topic` are searched first; when that topic has no
        passages at all, every stored passage is searched instead.
        """
        candidates = await run_in_threadpool(self._candidates, topic)
        if not candidates:
            return []
        vectors = await self.embedder.embed([query])
        if len(vectors) != 1:
            raise LLMProviderError(f"embedding count mismatch: sent 1, got {len(vectors)}")
        [query_vec] = vectors
        return top_k(query_vec, candidates, k, min_score=min_score)

    def _candidates(self, topic: Optional[str]):
        candidates = self.repo.list_by_topic(topic) if topic else []
        return candidates or self.repo.list_by_topic(None)


class PracticeService:
    """Retrieval-augmented answering of free-form practice questions."""
    def __init__(self, session: Session, provider: LLMProvider, embedder=None):
        self.session = session
        self.provider = provider
        self.passages = PassageService(session, embedder=embedder)
        self.attempt_repo = repositories.AttemptRepository(session)

    async def answer(self, user_id: int, topic: str, prompt: str, top_k: Optional[int] = None):
        """Answer `prompt` with the provider, grounded on the top-k passages.

        Citations are the passages referenced as `[n]` in the answer; when
        the answer references none, every retrieved passage is cited. The
        attempt is persisted only after the provider answered.
        """
        topic = (topic or '').strip()
        prompt = (prompt or '').strip()
        if not topic or not prompt:
            raise ValueError("topic and prompt required")
        k = settings.RAG_TOP_K if top_k is None else top_k
        if not 1 <= k <= settings.RAG_MAX_TOP_K:
            raise ValueError(f"top_k must be between 1 and {settings.RAG_MAX_TOP_K}")
        context = await self.passages.search(prompt, topic=topic, k=k, min_score=settings.RAG_MIN_SCORE)
        messages = build_practice_messages(topic, prompt, context)
        started = time.perf_counter()
        answer = await self.provider.complete(messages)
        latency_ms = round((time.perf_counter() - started) * 1000.0, 2)
        cited = cited_markers(answer, len(context))
        chosen = [p for i, p in enumerate(context, start=1) if i in cited] if cited else context
        citations = [
            {'passage_id': p.passage_id, 'source': p.source, 'score': p.score, 'snippet': p.text[:SNIPPET_CHARS]}
            for p in chosen
        ]
        attempt = await run_in_threadpool(self.attempt_repo.create, models.PracticeAttempt(
            user_id=user_id,
            topic=topic,
            prompt=prompt,
            answer_text=answer,
            citations=citations,
            provider=self.provider.name,
            model=self.provider.model,
            latency_ms=latency_ms
        ))
        logger.info("practice answered user=%s topic=%r provider=%s latency_ms=%s context=%d citations=%d",
                    user_id, topic, self.provider.name, latency_ms, len(context), len(citations))
        return {
            'attempt_id': attempt.id,
            'answer': answer,
            'citations': citations,
            'provider': attempt.provider,
            'model': attempt.model
        }

    def history(self, user_id: int, topic: Optional[str] = None, limit: int = 20):
        """Return the user's newest practice attempts first."""
        if not 1 <= limit <= 100:
            raise ValueError("limit must be between 1 and 100")
        return [
            {
                'attempt_id': a.id,
                'topic': a.topic,
                'prompt': a.prompt,
                'answer': a.answer_text,
                'citations': a.citations,
                'provider': a.provider,
                'model': a.model,
                'created_at': a.created_at.isoformat()
            }
            for a in self.attempt_repo.list_for_user(user_id, topic=topic, limit=limit)
        ]


class ExplanationService:
    """Explanations for multiple-choice questions, generated on first request."""
    def __init__(self, session: Session, provider: LLMProvider):
        self.session = session
        self.provider = provider
        self.q_repo = repositories.QuestionRepository(session)
        self.a_repo = repositories.AnswerRepository(session)

    async def explain(self, question_id: int):
        """Return the stored explanation, generating and storing one if missing."""
        q = await run_in_threadpool(self.q_repo.get, question_id)
        if not q:
            raise NotFoundError(f"question not found: {question_id}")
        if q.explanation:
            return {'question_id': q.id, 'explanation': q.explanation, 'generated': False}
        answers = await run_in_threadpool(self.a_repo.list_for_question, q.id)
        messages = build_explain_messages(q.question_text, [a.answer_text for a in answers], correct_answer_texts(answers))
        q.explanation = await self.provider.complete(messages)
        await run_in_threadpool(self.q_repo.update, q)
        return {'question_id': q.id, 'explanation': q.explanation, 'generated': True}


MIN_EASE = 1.3


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def sm2_schedule(repetitions: int, interval_days: int, ease_factor: float, quality: int):
    """Apply one SM-2 review and return `(repetitions, interval_days, ease_factor)`.

    A failed recall (quality < 3) restarts the repetition count with a
    one-day interval and leaves the ease factor unchanged.
    """
    if not 0 <= quality <= 5:
        raise ValueError("quality must be between 0 and 5")
    if quality < 3:
        return 0, 1, ease_factor
    if repetitions == 0:
        interval = 1
    elif repetitions == 1:
        interval = 6
    else:
        interval = round(interval_days * ease_factor)
    ease = ease_factor + (0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02))
    return repetitions + 1, interval, max(MIN_EASE, round(ease, 4))


def _card_payload(card: models.Flashcard) -> dict:
    return {
        'id': card.id,
        'topic': card.topic,
        'front': card.front,
        'back': card.back,
        'question_id': card.question_id,
        'repetitions': card.repetitions,
        'interval_days': card.interval_days,
        'ease_factor': card.ease_factor,
        'due_date': card.due_date.isoformat()
    }


class FlashcardService:
    """Create flashcards and schedule their reviews."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.FlashcardRepository(session)
        self.q_repo = repositories.QuestionRepository(session)
        self.a_repo = repositories.AnswerRepository(session)

    def create(self, user_id: int, front: str, back: str, topic: Optional[str] = None, today: Optional[date] = None):
        if not front.strip() or not back.strip():
            raise ValueError("front and back required")
        card = models.Flashcard(user_id=user_id, front=front.strip(), back=back.strip(), topic=topic,
                                due_date=today or _utc_today())
        return _card_payload(self.repo.save(card))

    def create_from_question(self, user_id: int, question_id: int, today: Optional[date] = None):
        """Turn a question into a card: the back holds the correct answers and any explanation."""
        q = self.q_repo.get(question_id)
        if not q:
            raise NotFoundError(f"question not found: {question_id}")
        back = "; ".join(correct_answer_texts(self.a_repo.list_for_question(q.id))) or "(no answer stored)"
        if q.explanation:
            back = f"{back}\n\n{q.explanation}"
        card = models.Flashcard(user_id=user_id, front=q.question_text, back=back, topic=q.topic,
                                question_id=q.id, due_date=today or _utc_today())
        return _card_payload(self.repo.save(card))

    def due(self, user_id: int, today: Optional[date] = None, limit: int = 20):
        return [_card_payload(c) for c in self.repo.list_due(user_id, today or _utc_today(), limit=limit)]

    def review(self, user_id: int, card_id: int, quality: int, today: Optional[date] = None):
        """Record a review and move the card's due date forward."""
        card = self.repo.get(card_id)
        if not card or card.user_id != user_id:
            raise NotFoundError(f"flashcard not found: {card_id}")
        reps, interval, ease = sm2_schedule(card.repetitions, card.interval_days, card.ease_factor, quality)
        card.repetitions = reps
        card.interval_days = interval
        card.ease_factor = ease
        card.due_date = (today or _utc_today()) + timedelta(days=interval)
        card.last_reviewed_at = datetime.now(timezone.utc)
        return _card_payload(self.repo.save(card))
