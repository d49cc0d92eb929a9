#!/usr/bin/env python3
"""Load a content dataset (lessons, grammar points, vocab, packs, sentences) into the database.

The dataset directory holds one JSON array per file; missing files are skipped:
    lessons.json  grammar_points.json  vocab.json  vocab_packs.json  sentences.json

Usage:
    python scripts/import_content.py data/content
    python scripts/import_content.py data/content --dry-run
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pydantic import ValidationError

from app.database import Base, SessionLocal, engine
from app.services.activity_log import log_activity
from app.services.content_service import import_dataset

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)

DATASET_FILES = ["lessons", "grammar_points", "vocab", "vocab_packs", "sentences"]


def load_dataset(directory: Path) -> dict[str, list[dict]]:
    dataset: dict[str, list[dict]] = {}
    for key in DATASET_FILES:
        path = directory / f"{key}.json"
        if not path.exists():
            logger.info("No %s, skipping", path.name)
            continue
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"{path.name} must contain a JSON array")
        dataset[key] = data
    return dataset


def main():
    parser = argparse.ArgumentParser(description="Import a content dataset")
    parser.add_argument("directory", type=Path, help="Directory containing the dataset JSON files")
    parser.add_argument("--dry-run", action="store_true", help="Validate and count without writing")
    args = parser.parse_args()

    dataset = load_dataset(args.directory)
    if not dataset:
        logger.error("No dataset files found in %s", args.directory)
        sys.exit(1)

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if args.dry_run:
            counts = import_dataset(db, dataset, commit=False)
            db.rollback()
            print(f"Dry run, nothing written: {counts}")
            return
        counts = import_dataset(db, dataset)
        log_activity(db, "content_imported", f"Imported content from {args.directory.name}", counts)
        print(f"Imported: {counts}")
    except ValidationError as e:
        db.rollback()
        logger.error("Dataset failed validation:\n%s", e)
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
