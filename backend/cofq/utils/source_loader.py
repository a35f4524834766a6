"""Helpers to discover importable files under a local folder.

The loader scans a folder recursively for supported extensions and
returns a sorted list of `Path` objects suitable for feeding to the
question import or passage ingestion services.
"""

from pathlib import Path
from typing import List, Iterable, Optional

DEFAULT_SKIP_KEYWORDS = ('draft', '~$')


def _should_skip(file_path: Path, skip_keywords: Iterable[str]) -> bool:
    """Return True if filename contains any skip keyword (case-insensitive)."""
    name = file_path.name.lower()
    return any(kw and kw.lower() in name for kw in skip_keywords)


def find_source_files(root: Path, extensions: Iterable[str], skip_keywords: Optional[Iterable[str]] = None) -> List[Path]:
    """Return supported files under `root`, sorted for deterministic order.

    Files whose names contain any of `skip_keywords` (drafts and Office
    lock files by default) are ignored. The top-level folder a file sits
    in is used by callers as its topic.
    """
    skip_keywords = list(skip_keywords) if skip_keywords is not None else list(DEFAULT_SKIP_KEYWORDS)
    exts = {e.lower() for e in extensions}
    if not root.exists():
        return []
    return sorted(
        f for f in root.rglob('*')
        if f.is_file() and f.suffix.lower() in exts and not _should_skip(f, skip_keywords)
    )


def topic_for(root: Path, file_path: Path, default: str) -> str:
    """Return the first folder below `root` containing `file_path`, or `default`."""
    rel = file_path.relative_to(root)
    return rel.parts[0] if len(rel.parts) > 1 else default
