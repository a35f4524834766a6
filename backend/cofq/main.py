"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the C of Q study backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses.

Endpoints implemented:
- POST /auth/register
- POST /auth/login
- GET /questions
- POST /questions/import
- GET /questions/{question_id}/explanation
- GET /quiz
- POST /quiz/grade
- POST /practice
- GET /practice/history
- POST /passages
- POST /passages/upload
- GET /passages/search
- POST /flashcards
- POST /flashcards/from_question/{question_id}
- GET /flashcards/due
- POST /flashcards/{card_id}/review
- POST /goals/set
- GET /goals/progress
- GET /health
"""

from contextlib import asynccontextmanager
from datetime import date
from typing import Optional
import json
import logging
import os
import time
import uuid

from fastapi import FastAPI, Depends, UploadFile, File, HTTPException, Form, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlmodel import Session

from . import services, repositories, models
from .auth import get_current_user
from .config import settings
from .database import create_db_and_tables, get_session
from .llm import LLMProvider, LLMProviderError, close_llm_provider, get_llm_provider
from .retrieval import get_embedder
from .schemas import (
    FlashcardIn,
    FlashcardReview,
    PassageIn,
    PracticeAnswer,
    PracticeRequest,
    QuizSubmission,
    RegisterIn,
    TokenOut,
)
from .utils.parsers import QUESTION_EXTENSIONS, TEXT_EXTENSIONS
from .utils.rate_limit import InMemoryRateLimiter

logger = logging.getLogger("cofq.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

LOGGED_PREFIXES = ("/practice", "/passages")
_practice_rate_limiter = InMemoryRateLimiter()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await close_llm_provider()


app = FastAPI(title="C of Q Study API", lifespan=lifespan)

# Wide-open CORS keeps a local frontend dev server working without extra config.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    logged = request.url.path.startswith(LOGGED_PREFIXES)
    event = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        if logged:
            event["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
            logger.exception("request_failed %s", json.dumps(event, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    if logged:
        event["status_code"] = response.status_code
        event["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.info("request_done %s", json.dumps(event, ensure_ascii=True))
    return response


def _read_upload(file: UploadFile, allowed_extensions) -> bytes:
    if not file.filename:
        raise HTTPException(status_code=400, detail='no file')
    if "/" in file.filename or "\\" in file.filename or len(file.filename) > 200:
        raise HTTPException(status_code=400, detail='invalid filename')
    if not file.filename.lower().endswith(tuple(allowed_extensions)):
        raise HTTPException(status_code=400, detail='unsupported file type')
    content = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail='file too large')
    return content


def _enforce_practice_rate_limit(request: Request, user_id: int) -> None:
    max_per_min = int(os.getenv("PRACTICE_RATE_LIMIT_PER_MIN", "30"))
    window = int(os.getenv("PRACTICE_RATE_LIMIT_WINDOW_SECONDS", "60"))
    allowed, retry_after = _practice_rate_limiter.allow(f"{user_id}:{request.url.path}", max_per_min, window)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _question_payload(db: Session, q: models.Question, with_meta: bool = True) -> dict:
    answers = repositories.AnswerRepository(db).list_for_question(q.id)
    out = {
        'id': q.id,
        'topic': q.topic,
        'question_text': q.question_text,
        'answers': [{'id': a.id, 'answer_text': a.answer_text} for a in answers]
    }
    if with_meta:
        out['difficulty'] = q.difficulty
        out['question_type'] = q.question_type
    return out


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is already taken.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username}
    user = services.AuthService(db).register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a JWT carrying `user_id` and `username`."""
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.get('/questions')
def list_questions(topic: Optional[str] = None, db: Session = Depends(get_session)):
    """List questions with their answers, optionally for a single topic."""
    qs = repositories.QuestionRepository(db).list_by_topic(topic)
    return [_question_payload(db, q) for q in qs]


@app.post('/questions/import')
def import_questions(
    file: UploadFile = File(...),
    topic: str = Form(default="General"),
    dry_run: bool = Form(default=False),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Upload a CSV, TXT, JSON, PDF or DOCX file and import its questions.

    Returns a JSON summary with created/skipped counts and per-item errors.
    """
    content = _read_upload(file, QUESTION_EXTENSIONS)
    try:
        return services.ImportService(db).import_file(content, file.filename, topic=topic.strip() or "General", dry_run=dry_run)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/questions/{question_id}/explanation')
async def question_explanation(question_id: int, db: Session = Depends(get_session),
                               provider: LLMProvider = Depends(get_llm_provider)):
    """Return the question's explanation, asking the provider for one the first time."""
    try:
        return await services.ExplanationService(db, provider).explain(question_id)
    except services.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LLMProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.get('/quiz')
def random_quiz(topic: Optional[str] = None, limit: int = Query(default=10, ge=1, le=50),
                db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return up to `limit` random questions, without revealing correct answers."""
    qs = repositories.QuestionRepository(db).get_random(topic, limit=limit)
    return [_question_payload(db, q, with_meta=False) for q in qs]


@app.post('/quiz/grade')
def grade(submission: QuizSubmission, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Grade a submitted quiz and store the result for the authenticated user."""
    answers = [{'question_id': a.question_id, 'given_answer': a.given_answer, 'answer_id': a.answer_id} for a in submission.answers]
    try:
        return services.GradingService(db).grade(user.id, answers, topic=submission.topic)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/practice', response_model=PracticeAnswer)
async def practice(
    payload: PracticeRequest,
    request: Request,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    provider: LLMProvider = Depends(get_llm_provider),
    embedder=Depends(get_embedder),
):
    """Answer a practice question using retrieved study material as context.

    The attempt, including its citations, is stored in the user's history.
    """
    if payload.user_id is not None and payload.user_id != user.id:
        raise HTTPException(status_code=403, detail='user_id does not match the authenticated user')
    _enforce_practice_rate_limit(request, user.id)
    svc = services.PracticeService(db, provider, embedder=embedder)
    try:
        return await svc.answer(user.id, payload.topic, payload.prompt, top_k=payload.top_k)
    except LLMProviderError as e:
        logger.warning("practice provider failure user=%s: %s", user.id, e)
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/practice/history')
def practice_history(topic: Optional[str] = None, limit: int = 20, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """Return the authenticated user's practice attempts, newest first."""
    svc = services.PracticeService(db, provider=None)
    try:
        return svc.history(user.id, topic=topic, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/passages')
async def add_passage(payload: PassageIn, db: Session = Depends(get_session),
                      user: models.User = Depends(get_current_user), embedder=Depends(get_embedder)):
    """Chunk, embed and store study material given as text."""
    try:
        return await services.PassageService(db, embedder=embedder).ingest_text(payload.topic, payload.source, payload.text)
    except LLMProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/passages/upload')
async def upload_passages(
    file: UploadFile = File(...),
    topic: str = Form(...),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
    embedder=Depends(get_embedder),
):
    """Ingest a TXT, Markdown, PDF or DOCX file as study material."""
    content = await run_in_threadpool(_read_upload, file, TEXT_EXTENSIONS)
    try:
        return await services.PassageService(db, embedder=embedder).ingest_file(content, file.filename, topic)
    except LLMProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/passages/search')
async def search_passages(q: str = Query(min_length=1), topic: Optional[str] = None,
                          k: int = Query(default=settings.RAG_TOP_K, ge=1, le=settings.RAG_MAX_TOP_K),
                          db: Session = Depends(get_session), embedder=Depends(get_embedder)):
    """Return the passages most similar to `q`; useful to inspect retrieval."""
    try:
        hits = await services.PassageService(db, embedder=embedder).search(q, topic=topic, k=k)
    except LLMProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [{'passage_id': h.passage_id, 'source': h.source, 'score': h.score, 'text': h.text} for h in hits]


@app.post('/flashcards')
def create_flashcard(payload: FlashcardIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        return services.FlashcardService(db).create(user.id, payload.front, payload.back, topic=payload.topic)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/flashcards/from_question/{question_id}')
def flashcard_from_question(question_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Create a flashcard from a stored question and its correct answer."""
    try:
        return services.FlashcardService(db).create_from_question(user.id, question_id)
    except services.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get('/flashcards/due')
def due_flashcards(limit: int = Query(default=20, ge=1, le=100), db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    return services.FlashcardService(db).due(user.id, limit=limit)


@app.post('/flashcards/{card_id}/review')
def review_flashcard(card_id: int, payload: FlashcardReview, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """Record a review (quality 0-5) and return the rescheduled card."""
    try:
        return services.FlashcardService(db).review(user.id, card_id, payload.quality)
    except services.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/goals/set')
def set_goal(week_start: date, goal_type: str, goal_value: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Set or update a weekly goal for the authenticated user.

    `goal_type` is a short string like `quizzes`, `questions` or
    `practice` and `goal_value` is an integer >= 0.
    """
    try:
        g = services.GoalService(db).set_weekly_goal(user.id, week_start, goal_type, goal_value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {'status': 'ok', 'goal_id': g.id}


@app.get('/goals/progress')
def get_progress(week_start: date, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return progress for the week starting at `week_start` from stored history."""
    return services.GoalService(db).get_progress(user.id, week_start)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
