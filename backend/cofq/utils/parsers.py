"""File parsing utilities.

`parse_file_to_questions` converts supported question files into a
normalized question list; each item is a dict with keys `question_text`,
`possible_answers`, `explanation`, `difficulty` and `question_type`.

`extract_text` pulls plain text out of study material (TXT, Markdown,
PDF, DOCX) for passage ingestion.

Supported question types: JSON, CSV, TXT, PDF and DOCX.
"""

import io
import json
import csv
from typing import List, Dict, Tuple
import pdfplumber
import docx

QUESTION_EXTENSIONS = ('.json', '.csv', '.txt', '.pdf', '.docx')
TEXT_EXTENSIONS = ('.txt', '.md', '.pdf', '.docx')


def parse_file_to_questions(file_bytes: bytes, filename: str) -> List[Dict]:
    """Dispatch to the appropriate parser based on file extension."""
    name = filename.lower()
    if name.endswith('.json'):
        return parse_json(file_bytes)
    if name.endswith('.csv'):
        return parse_csv(file_bytes)
    if name.endswith('.txt'):
        return parse_blocks(_split_blocks(file_bytes.decode('utf-8')))
    if name.endswith('.pdf'):
        return parse_blocks(_split_blocks(_pdf_text(file_bytes)))
    if name.endswith('.docx'):
        return parse_blocks(_docx_blocks(file_bytes))
    raise ValueError('Unsupported file type')


def extract_text(file_bytes: bytes, filename: str) -> str:
    """Return the plain text of a study-material file."""
    name = filename.lower()
    if name.endswith(('.txt', '.md')):
        return file_bytes.decode('utf-8')
    if name.endswith('.pdf'):
        return _pdf_text(file_bytes)
    if name.endswith('.docx'):
        return '\n\n'.join(_docx_blocks(file_bytes))
    raise ValueError('Unsupported file type')


def parse_json(b: bytes) -> List[Dict]:
    """Parse a JSON array of question objects and normalize them."""
    data = json.loads(b.decode('utf-8'))
    if isinstance(data, dict):
        data = data.get('questions', [])
    if not isinstance(data, list):
        raise ValueError('JSON must be a list of questions or {"questions": [...]}')
    return [normalize_question(item) if isinstance(item, dict) else item for item in data]


def parse_csv(b: bytes) -> List[Dict]:
    """Parse a CSV where a single column contains pipe-separated answers.

    Expected columns: `question` or `question_text`, optional `answers`
    (pipe separated) and optional `correct` naming the correct answer.
    `explanation`, `difficulty` and `question_type` pass through.
    """
    out = []
    reader = csv.DictReader(io.StringIO(b.decode('utf-8-sig')))
    for row in reader:
        answers_raw = row.get('answers') or row.get('possible_answers') or ''
        correct = (row.get('correct') or '').strip()
        answers = []
        for part in answers_raw.split('|'):
            text, marked = _parse_answer_line(part)
            if text:
                answers.append({'answer_text': text, 'is_correct': marked or (bool(correct) and text == correct)})
        out.append({
            'question_text': str(row.get('question') or row.get('question_text') or '').strip(),
            'possible_answers': answers,
            'explanation': row.get('explanation') or None,
            'difficulty': row.get('difficulty') or None,
            'question_type': row.get('question_type') or 'multiple_choice'
        })
    return out


def parse_blocks(blocks: List[str]) -> List[Dict]:
    """Build questions from text blocks.

    A block is either `question|answer1|answer2...` on one line, or a
    question line followed by one answer per line. Answers may be marked
    correct with a leading `*` or a trailing `(correct)`; when none is
    marked, the first answer is taken as correct.
    """
    out = []
    for blk in blocks:
        if '|' in blk:
            parts = [x.strip() for x in blk.split('|') if x.strip()]
        else:
            parts = [x.strip() for x in blk.splitlines() if x.strip()]
        if not parts:
            continue
        answers = [_parse_answer_line(x) for x in parts[1:]]
        has_marked = any(marked for _, marked in answers)
        out.append({
            'question_text': parts[0],
            'possible_answers': [
                {'answer_text': text, 'is_correct': marked or (not has_marked and i == 0)}
                for i, (text, marked) in enumerate(answers)
            ],
            'explanation': None,
            'difficulty': None,
            'question_type': 'multiple_choice'
        })
    return out


def normalize_question(item: dict) -> dict:
    """Map alternative keys of a parsed question object to the canonical shape."""
    answers = item.get('possible_answers') or item.get('answers') or []
    # allow plain strings as answers in hand-written JSON
    answers = [{'answer_text': a, 'is_correct': False} if isinstance(a, str) else a for a in answers]
    correct = item.get('correct')
    if correct:
        for a in answers:
            if isinstance(a, dict) and a.get('answer_text') == correct:
                a['is_correct'] = True
    return {
        'question_text': item.get('question_text') or item.get('question') or '',
        'possible_answers': answers,
        'explanation': item.get('explanation') or item.get('solution') or None,
        'difficulty': item.get('difficulty'),
        'question_type': item.get('question_type') or 'multiple_choice'
    }


def _split_blocks(text: str) -> List[str]:
    return [blk.strip() for blk in text.replace('\r\n', '\n').split('\n\n') if blk.strip()]


def _pdf_text(b: bytes) -> str:
    # pdfminer raises its own exception types on damaged files
    try:
        with pdfplumber.open(io.BytesIO(b)) as pdf:
            return '\n'.join((page.extract_text() or '') for page in pdf.pages)
    except Exception as err:
        raise ValueError('could not read PDF') from err


def _docx_blocks(b: bytes) -> List[str]:
    """Group DOCX paragraphs into blocks separated by empty paragraphs."""
    try:
        doc = docx.Document(io.BytesIO(b))
    except Exception as err:
        raise ValueError('could not read DOCX') from err
    blocks = []
    current = []
    for p in doc.paragraphs:
        text = (p.text or '').strip()
        if not text:
            if current:
                blocks.append('\n'.join(current))
                current = []
            continue
        current.append(text)
    if current:
        blocks.append('\n'.join(current))
    return blocks


def _parse_answer_line(text: str) -> Tuple[str, bool]:
    """Detect correctness markers in an answer line.

    Supports a leading '*' or trailing markers like '(correct)'.
    """
    is_correct = False
    cleaned = text.strip()
    lower = cleaned.lower()
    for marker in ('(correct)', '[correct]', '{correct}'):
        if lower.endswith(marker):
            is_correct = True
            cleaned = cleaned[: -len(marker)].strip()
            break
    if cleaned.startswith('*'):
        is_correct = True
        cleaned = cleaned.lstrip('*').strip()
    return cleaned, is_correct
