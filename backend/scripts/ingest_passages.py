"""CLI script to ingest study material (TXT, Markdown, PDF, DOCX) as retrieval passages.

Files directly under the folder go to `--topic`; files inside a
subfolder use the subfolder name as their topic.

Usage: python scripts/ingest_passages.py FOLDER [--topic TOPIC]
"""
import sys
import asyncio
import argparse
import pathlib
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from cofq.database import engine, create_db_and_tables
from cofq import services
from cofq.llm import LLMProviderError
from cofq.utils.parsers import TEXT_EXTENSIONS
from cofq.utils.source_loader import find_source_files, topic_for


async def ingest(folder: pathlib.Path, topic: str = 'General') -> int:
    """Ingest every supported file under `folder`; returns the number of new passages."""
    files = find_source_files(folder, TEXT_EXTENSIONS)
    if not files:
        print(f'No files found to ingest under {folder}')
        return 0
    create_db_and_tables()
    total = 0
    with Session(engine) as session:
        svc = services.PassageService(session)
        for f in files:
            try:
                result = await svc.ingest_file(f.read_bytes(), f.name, topic_for(folder, f, topic))
            except (ValueError, UnicodeDecodeError, LLMProviderError) as e:
                print(f'Error ingesting {f}: {e}')
                continue
            total += result['created']
            print(f"Ingested {f}: created {result['created']}, skipped {result['skipped']}")
    print(f'Total new passages: {total}')
    return total


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('folder', type=pathlib.Path, help='Folder to scan for study material')
    parser.add_argument('--topic', default='General', help='Topic for files not inside a topic subfolder')
    args = parser.parse_args()
    asyncio.run(ingest(args.folder, topic=args.topic))
