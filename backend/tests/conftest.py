import os
import tempfile
import uuid
from pathlib import Path

import pytest

# Configure the app before any test module imports `cofq`.
_TMP = Path(tempfile.mkdtemp(prefix="cofq-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["ENV"] = "dev"
os.environ["LLM_PROVIDER"] = "stub"
os.environ["EMBEDDING_PROVIDER"] = "hashing"
os.environ.pop("LLM_API_KEY", None)

from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel, Session, create_engine  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from cofq import main  # noqa: E402
from cofq.llm import get_llm_provider  # noqa: E402


@pytest.fixture(autouse=True)
def reset_app_state():
    """Give every test a fresh rate limiter and no provider override."""
    main._practice_rate_limiter.reset()
    yield
    main.app.dependency_overrides.pop(get_llm_provider, None)


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def make_user(client):
    """Register and log in a fresh user; returns `(user_id, headers)`."""
    def _make():
        username = f"user-{uuid.uuid4().hex[:10]}"
        r = client.post('/auth/register', json={'username': username, 'password': 'pw123'})
        assert r.status_code == 200
        user_id = r.json()['id']
        token = client.post('/auth/login', json={'username': username, 'password': 'pw123'}).json()['access_token']
        return user_id, {'Authorization': f'Bearer {token}'}
    return _make


@pytest.fixture
def use_provider():
    """Route the app's provider dependency to the given provider for one test."""
    def _use(provider):
        main.app.dependency_overrides[get_llm_provider] = lambda: provider
        return provider
    return _use


@pytest.fixture
def session():
    """An isolated in-memory database for service-level tests."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    with Session(engine) as s:
        yield s


@pytest.fixture
def topic():
    """A topic name unique to the test, so tests sharing the app DB don't collide."""
    return f"topic-{uuid.uuid4().hex[:8]}"
