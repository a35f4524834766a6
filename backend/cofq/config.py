"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    DATABASE_URL: str
    MAX_UPLOAD_BYTES: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LLM_PROVIDER: str
    LLM_BASE_URL: str
    LLM_API_KEY: str
    LLM_MODEL: str
    LLM_TIMEOUT_SECONDS: float
    LLM_TEMPERATURE: float
    EMBEDDING_PROVIDER: str
    EMBEDDING_MODEL: str
    EMBEDDING_DIM: int
    RAG_TOP_K: int
    RAG_MAX_TOP_K: int
    RAG_MIN_SCORE: float

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))  # 10 MB default
        self.ALLOW_INSECURE_JWT = _env_bool("ALLOW_INSECURE_JWT", "false")
        self.ALLOW_DEV_CORS = _env_bool("ALLOW_DEV_CORS", "true")
        # "stub" answers locally without network access; "openai" talks to any
        # OpenAI-compatible chat completions endpoint.
        self.LLM_PROVIDER = os.getenv("LLM_PROVIDER", "stub").lower()
        self.LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1").rstrip("/")
        self.LLM_API_KEY = os.getenv("LLM_API_KEY", "")
        self.LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
        self.LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
        self.LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.2"))
        self.EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "hashing").lower()
        self.EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
        self.EMBEDDING_DIM = int(os.getenv("EMBEDDING_DIM", "256"))
        self.RAG_TOP_K = int(os.getenv("RAG_TOP_K", "4"))
        self.RAG_MAX_TOP_K = int(os.getenv("RAG_MAX_TOP_K", "10"))
        self.RAG_MIN_SCORE = float(os.getenv("RAG_MIN_SCORE", "0.05"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.LLM_PROVIDER not in ("stub", "openai"):
            raise RuntimeError(f"unsupported LLM_PROVIDER: {self.LLM_PROVIDER}")
        if self.EMBEDDING_PROVIDER not in ("hashing", "openai"):
            raise RuntimeError(f"unsupported EMBEDDING_PROVIDER: {self.EMBEDDING_PROVIDER}")
        if "openai" in (self.LLM_PROVIDER, self.EMBEDDING_PROVIDER) and not self.LLM_API_KEY:
            raise RuntimeError("LLM_API_KEY must be set when LLM_PROVIDER or EMBEDDING_PROVIDER is openai")
        if not 1 <= self.RAG_TOP_K <= self.RAG_MAX_TOP_K:
            raise RuntimeError("RAG_TOP_K must be between 1 and RAG_MAX_TOP_K")

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


settings = Settings()
