"""Prompt templates sent to the language-model provider."""

import re
from typing import List, Sequence, Set

from .retrieval import ScoredPassage

PRACTICE_SYSTEM_PROMPT = (
    "You are a tutor helping an apprentice electrician prepare for the "
    "Certificate of Qualification (C of Q) exam. Answer the question about "
    "the given topic clearly and concisely, explain the reasoning, and mention "
    "the relevant code rule when one applies. When you use a context passage, "
    "cite it with its bracketed number, e.g. [1]. If the context does not "
    "cover the question, say so and answer from general knowledge."
)

EXPLAIN_SYSTEM_PROMPT = (
    "You are a tutor for the electrical-trade C of Q exam. Explain in a short "
    "paragraph why the correct answer to the multiple-choice question is "
    "correct and why the common wrong choices are wrong."
)

_CITATION_RE = re.compile(r"\[(\d+)\]")


def build_practice_messages(topic: str, prompt: str, passages: Sequence[ScoredPassage]) -> List[dict]:
    if passages:
        context = "\n\n".join(f"[{i}] ({p.source}) {p.text}" for i, p in enumerate(passages, start=1))
    else:
        context = "(no study material available)"
    user = f"Topic: {topic}\n\nContext:\n{context}\n\nQuestion: {prompt}"
    return [
        {"role": "system", "content": PRACTICE_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def build_explain_messages(question_text: str, answers: Sequence[str], correct: Sequence[str]) -> List[dict]:
    choices = "\n".join(f"- {a}" for a in answers)
    user = (
        f"Question: {question_text}\n\nChoices:\n{choices}\n\n"
        f"Correct answer: {', '.join(correct) if correct else 'unknown'}"
    )
    return [
        {"role": "system", "content": EXPLAIN_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def cited_markers(answer: str, n_passages: int) -> Set[int]:
    """Return the 1-based passage numbers cited in `answer` that are in range."""
    return {int(m) for m in _CITATION_RE.findall(answer) if 1 <= int(m) <= n_passages}
