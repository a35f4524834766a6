"""Context retrieval for practice answers.

Passages are embedded when ingested and stored with their vector. A
query is embedded the same way and scored against stored passages by
cosine similarity; no re-ranking is applied.

`HashingEmbedder` needs no network access and is the default. Set
`EMBEDDING_PROVIDER=openai` to embed through an OpenAI-compatible
`/embeddings` endpoint instead. Vectors from different embedders are not
comparable, so switching embedder requires re-ingesting passages;
mismatched vectors are skipped when scoring.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx
import numpy as np

from .config import settings
from .llm import LLMProviderError

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


class HashingEmbedder:
    """Signed feature hashing of word unigrams and bigrams, L2-normalised."""

    name = "hashing"

    def __init__(self, dim: Optional[int] = None):
        self.dim = dim or settings.EMBEDDING_DIM

    def _embed_one(self, text: str) -> List[float]:
        vec = np.zeros(self.dim, dtype=np.float64)
        tokens = tokenize(text)
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feat in features:
            digest = hashlib.md5(feat.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[idx] += sign
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec.tolist()

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._embed_one(t) for t in texts]


class OpenAIEmbedder:
    name = "openai"

    def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None,
                 model: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or settings.LLM_API_KEY
        if not self.api_key:
            raise ValueError("LLM_API_KEY is not configured")
        self.model = model or settings.EMBEDDING_MODEL
        self.base_url = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self._transport = transport

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(base_url=self.base_url, timeout=settings.LLM_TIMEOUT_SECONDS,
                                     headers=headers, transport=self._transport) as client:
            try:
                r = await client.post("/embeddings", json={"model": self.model, "input": list(texts)})
                r.raise_for_status()
                data = r.json()["data"]
                # the API may return items out of order; `index` is authoritative
                ordered = sorted(data, key=lambda d: d.get("index", 0))
                vectors = [list(map(float, d["embedding"])) for d in ordered]
            except httpx.HTTPError as err:
                raise LLMProviderError(f"embedding request failed: {err}") from err
            except (ValueError, KeyError, TypeError, AttributeError) as err:
                raise LLMProviderError("unexpected embedding response") from err
        if len(vectors) != len(texts):
            raise LLMProviderError(f"embedding count mismatch: sent {len(texts)}, got {len(vectors)}")
        return vectors


def get_embedder():
    if settings.EMBEDDING_PROVIDER == "openai":
        return OpenAIEmbedder()
    return HashingEmbedder()


def chunk_text(text: str, max_chars: int = 800, overlap: int = 100) -> List[str]:
    """Split `text` into chunks of at most `max_chars`.

    Paragraphs (blank-line separated) are packed together while they fit.
    A paragraph longer than `max_chars` is cut into windows that overlap
    by `overlap` characters.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if not 0 <= overlap < max_chars:
        raise ValueError("overlap must be in [0, max_chars)")
    paragraphs = [" ".join(p.split()) for p in re.split(r"\n\s*\n", text)]
    paragraphs = [p for p in paragraphs if p]
    chunks: List[str] = []
    current = ""
    for para in paragraphs:
        if len(para) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            step = max_chars - overlap
            for start in range(0, len(para), step):
                piece = para[start:start + max_chars]
                chunks.append(piece)
                if start + max_chars >= len(para):
                    break
            continue
        candidate = f"{current}\n\n{para}" if current else para
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = para
    if current:
        chunks.append(current)
    return chunks


@dataclass
class ScoredPassage:
    passage_id: int
    source: str
    text: str
    score: float


def top_k(query_vec: Sequence[float], candidates: Sequence, k: int, min_score: float = 0.0) -> List[ScoredPassage]:
    """Rank `candidates` (objects with id/source/text/embedding) by cosine similarity.

    Results are ordered by descending score, then ascending id. Candidates
    whose embedding is empty or of a different dimension are ignored.
    """
    q = np.asarray(query_vec, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    if k <= 0 or q_norm == 0:
        return []
    usable = [c for c in candidates if c.embedding and len(c.embedding) == q.shape[0]]
    if not usable:
        return []
    matrix = np.asarray([c.embedding for c in usable], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0] = 1.0
    scores = matrix @ q / (norms * q_norm)
    scored = [
        ScoredPassage(passage_id=c.id, source=c.source, text=c.text, score=round(float(s), 6))
        for c, s in zip(usable, scores)
        if s >= min_score
    ]
    scored.sort(key=lambda sp: (-sp.score, sp.passage_id))
    return scored[:k]
