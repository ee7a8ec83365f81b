#!/usr/bin/env python
"""Install the bundled book sources into the source store."""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from booksource.sources.builtin import builtin_sources
from booksource.sources.manager import SourceManager
from booksource.storage.kv import JsonFileStore


def seed_sources(manager: SourceManager) -> List[str]:
    """Upsert every bundled source, keeping the enabled flag of ones already present."""
    seeded: List[str] = []
    for source in builtin_sources():
        existing = manager.get(source.id)
        if existing is not None:
            source = source.model_copy(update={"enabled": existing.enabled})
        manager.upsert(source)
        seeded.append(source.id)
    return seeded


def main() -> None:
    """CLI entrypoint used by `booksource seed-sources`."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Seed the source store with the bundled sources")
    parser.add_argument(
        "--store",
        type=Path,
        default=Path(".booksource/store.json"),
        help="Path to the JSON key/value store",
    )
    args = parser.parse_args()
    seeded = seed_sources(SourceManager(JsonFileStore(args.store)))
    print(f"seeded {len(seeded)} sources")


if __name__ == "__main__":
    main()
