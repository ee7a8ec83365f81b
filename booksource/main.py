"""Command-line entrypoints for the book-source rule engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from booksource.errors import BookSourceError
from booksource.observability.log import configure_logging
from booksource.parse.rules import Dialect
from booksource.pipeline.context import load_settings, open_context
from booksource.pipeline.service import BookService
from booksource.sources.keys import book_id
from booksource.sources.manager import SourceManager
from booksource.sources.models import ContentType, Source
from booksource.storage.content_cache import ContentCache
from booksource.storage.kv import JsonFileStore
from booksource.storage.models import BookInfo, ChapterInfo


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="booksource", description="ESO / Legado book-source rule engine")
    parser.add_argument("--settings", type=Path, help="Path to settings.toml (overrides BOOKSOURCE_SETTINGS)")
    parser.add_argument("--log-level", help="Root log level override")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-sources", help="Install the bundled sources")

    importer = sub.add_parser("import", help="Import sources from a file ('-' for stdin)")
    importer.add_argument("path", help="File holding eso:// lines or Legado/ESO JSON")

    exporter = sub.add_parser("export", help="Export sources in their wire format")
    exporter.add_argument("--ids", nargs="*", help="Source ids to export (default: all)")
    exporter.add_argument("--dialect", choices=[dialect.value for dialect in Dialect], help="Dialect to export")
    exporter.add_argument("--output", type=Path, help="Write to this file instead of stdout")

    listing = sub.add_parser("sources", help="List configured sources")
    listing.add_argument("--group", help="Only sources in this group")
    listing.add_argument("--type", choices=[kind.value for kind in ContentType], help="Only this content type")
    listing.add_argument("--query", help="Case-insensitive match over name, URL and group")
    listing.add_argument("--groups", action="store_true", help="Print the distinct group names instead")

    for name, help_text in (
        ("enable", "Enable sources"),
        ("disable", "Disable sources"),
        ("delete", "Delete sources"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("ids", nargs="+", help="Source ids")

    search = sub.add_parser("search", help="Search books")
    search.add_argument("keyword", help="Search keyword")
    search.add_argument("--source", action="append", dest="sources", help="Restrict to these source ids")

    chapters = sub.add_parser("chapters", help="List a book's chapters")
    chapters.add_argument("--source", required=True, help="Source id")
    chapters.add_argument("--book-url", required=True, help="Book page URL")
    chapters.add_argument("--name", default="", help="Book name (for logs)")

    content = sub.add_parser("content", help="Fetch one chapter's content")
    content.add_argument("--source", required=True, help="Source id")
    content.add_argument("--chapter-url", required=True, help="Chapter URL")
    content.add_argument("--name", default="chapter", help="Chapter name (for logs)")

    cache = sub.add_parser("cache", help="Inspect or clear the content cache")
    cache.add_argument("action", choices=["stats", "clear"], help="Cache operation")
    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _source_row(source: Source) -> Dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "base_url": source.base_url,
        "dialect": source.dialect.value,
        "type": source.content_type.value,
        "group": source.group,
        "enabled": source.enabled,
    }


def _require_source(manager: SourceManager, source_id: str) -> Source:
    source = manager.get(source_id)
    if source is None:
        raise SystemExit(f"unknown source: {source_id}")
    return source


def _read_input(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def cmd_sources(args: argparse.Namespace, manager: SourceManager) -> None:
    if args.groups:
        _emit(manager.get_groups())
        return
    sources = manager.get_all()
    if args.query:
        sources = manager.search(args.query)
    if args.group:
        sources = [source for source in sources if source.group == args.group]
    if args.type:
        sources = [source for source in sources if source.content_type.value == args.type]
    _emit([_source_row(source) for source in sources])


def cmd_toggle(args: argparse.Namespace, manager: SourceManager) -> None:
    if args.command == "delete":
        _emit({"deleted": manager.delete_many(args.ids)})
        return
    enabled = args.command == "enable"
    changed = [source_id for source_id in args.ids if manager.set_enabled(source_id, enabled)]
    _emit({"updated": changed, "enabled": enabled})


async def run_remote(args: argparse.Namespace, settings: Dict[str, Dict[str, Any]], store: JsonFileStore) -> int:
    async with open_context(settings, store=store) as context:
        service = BookService(context)
        manager = context.sources
        try:
            if args.command == "search":
                targets: Optional[List[Source]] = None
                if args.sources:
                    targets = [_require_source(manager, source_id) for source_id in args.sources]
                books = await service.search_all(args.keyword, targets)
                _emit([book.model_dump(mode="json") for book in books])
            elif args.command == "chapters":
                source = _require_source(manager, args.source)
                name = args.name or args.book_url
                book = BookInfo(
                    book_id=book_id(name),
                    name=name,
                    book_url=args.book_url,
                    source_id=source.id,
                    source_name=source.name,
                )
                chapters = await service.get_chapters(source, book)
                _emit([chapter.model_dump(mode="json") for chapter in chapters])
            elif args.command == "content":
                source = _require_source(manager, args.source)
                chapter = ChapterInfo(name=args.name, url=args.chapter_url)
                _emit({"url": chapter.url, "content": await service.get_content(source, chapter)})
        except BookSourceError as error:
            _emit({"error": str(error), "kind": error.kind.value, "source_id": error.source_id})
            return 1
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args.settings)
    configure_logging(Path(settings["app"]["logging_config"]), level=args.log_level)
    store = JsonFileStore(Path(settings["app"]["store_path"]))

    if args.command == "seed-sources":
        from scripts.seed_sources import seed_sources

        _emit({"seeded": seed_sources(SourceManager(store))})
        return

    if args.command in ("search", "chapters", "content"):
        exit_code = asyncio.run(run_remote(args, settings, store))
        if exit_code:
            raise SystemExit(exit_code)
        return

    if args.command == "cache":
        cache_settings = settings["cache"]
        cache = ContentCache(
            store,
            max_size=int(cache_settings["max_size"]),
            max_entry_size=int(cache_settings["max_entry_size"]),
        )
        if args.action == "clear":
            cache.clear_all()
        stats = cache.stats()
        _emit({"count": stats.count, "size": stats.size, "size_text": stats.size_text})
        return

    manager = SourceManager(store)
    if args.command == "import":
        result = manager.import_sources(_read_input(args.path))
        _emit({"success": result.success_count, "failed": result.failed_count, "errors": result.errors})
        if not result.success_count:
            raise SystemExit(1)
        return

    if args.command == "export":
        dialect = Dialect(args.dialect) if args.dialect else None
        try:
            text = manager.export_sources(args.ids, dialect)
        except ValueError as error:
            raise SystemExit(str(error)) from error
        if args.output:
            args.output.write_text(text, encoding="utf-8")
            _emit({"written": str(args.output)})
        else:
            print(text)
        return

    if args.command == "sources":
        cmd_sources(args, manager)
        return

    if args.command in ("enable", "disable", "delete"):
        cmd_toggle(args, manager)


if __name__ == "__main__":
    main()
