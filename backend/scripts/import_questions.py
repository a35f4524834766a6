"""CLI script to import question files from a local folder into the backend DB.

Files directly under the folder go to `--topic`; files inside a
subfolder use the subfolder name as their topic.

Usage: python scripts/import_questions.py FOLDER [--topic TOPIC] [--dry-run]
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `cofq` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from cofq.database import engine, create_db_and_tables
from cofq import services
from cofq.utils.parsers import QUESTION_EXTENSIONS
from cofq.utils.source_loader import find_source_files, topic_for


def main(folder: pathlib.Path, topic: str = 'General', dry_run: bool = False) -> int:
    """Import every supported file under `folder` and print a summary.

    Returns the total number of created questions.
    """
    files = find_source_files(folder, QUESTION_EXTENSIONS)
    if not files:
        print(f'No files found to import under {folder}')
        return 0
    create_db_and_tables()
    total_created = 0
    total_skipped = 0
    with Session(engine) as session:
        svc = services.ImportService(session)
        for f in files:
            try:
                result = svc.import_file(f.read_bytes(), f.name, topic=topic_for(folder, f, topic), dry_run=dry_run)
            except (ValueError, UnicodeDecodeError) as e:
                print(f'Error importing {f}: {e}')
                continue
            total_created += result['created']
            total_skipped += result['skipped']
            print(f"Imported {f}: created {result['created']}, skipped {result['skipped']}, errors {len(result['errors'])}")
    print(f'Total created questions: {total_created}, skipped {total_skipped}')
    return total_created


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('folder', type=pathlib.Path, help='Folder to scan for question files')
    parser.add_argument('--topic', default='General', help='Topic for files not inside a topic subfolder')
    parser.add_argument('--dry-run', action='store_true', help='Validate without writing to the database')
    args = parser.parse_args()
    main(args.folder, topic=args.topic, dry_run=args.dry_run)
