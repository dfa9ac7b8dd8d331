"""Command line interface for indexing and searching a directory of documents."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

from refsearch.config import Settings, get_settings
from refsearch.errors import SemanticIndexError
from refsearch.indexing import JobStatus
from refsearch.runtime import ServiceContainer, build_services
from refsearch.sources import DirectoryDocumentSource


def _settings_for(args: argparse.Namespace) -> Settings:
    override: dict[str, object] = {}
    if args.data_dir is not None:
        override["data_dir"] = args.data_dir
    if args.provider is not None:
        override["embedding_provider"] = args.provider
    return get_settings(override or None)


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _cmd_index(services: ServiceContainer, args: argparse.Namespace) -> int:
    result = services.orchestrator.build_index(rebuild=args.rebuild)
    _print(
        {
            "result": result.to_dict(),
            "failed_items": [item.to_dict() for item in services.orchestrator.get_failed_items()],
        }
    )
    return 1 if result.status is JobStatus.ERROR else 0


def _cmd_search(services: ServiceContainer, args: argparse.Namespace) -> int:
    matches = services.retriever.search(
        args.query,
        top_k=args.top_k or services.settings.default_top_k,
        language=args.language,
        min_score=args.min_score if args.min_score is not None else services.settings.default_min_score,
    )
    _print([asdict(match) for match in matches])
    return 0


def _cmd_similar(services: ServiceContainer, args: argparse.Namespace) -> int:
    matches = services.orchestrator.find_similar(args.document_id, top_k=args.top_k)
    _print([asdict(match) for match in matches])
    return 0


def _cmd_fulltext(services: ServiceContainer, args: argparse.Namespace) -> int:
    hits = services.store.search_cached_content(args.term, limit=args.limit, case_sensitive=args.case_sensitive)
    _print([asdict(hit) for hit in hits])
    return 0


def _cmd_stats(services: ServiceContainer, args: argparse.Namespace) -> int:
    _print(services.orchestrator.get_stats())
    return 0


def _cmd_clear(services: ServiceContainer, args: argparse.Namespace) -> int:
    if args.all:
        services.orchestrator.clear_all()
    else:
        services.orchestrator.clear_index()
    _print({"cleared": "all" if args.all else "vectors"})
    return 0


def _cmd_usage(services: ServiceContainer, args: argparse.Namespace) -> int:
    if args.reset:
        services.embeddings.reset_usage_stats(cumulative=args.cumulative)
    _print(services.embeddings.get_usage_stats().to_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="refsearch", description="Semantic search over a reference library.")
    parser.add_argument("--data-dir", type=Path, default=None, help="Directory holding the index database")
    parser.add_argument(
        "--provider",
        choices=["auto", "openai", "ollama", "ollama-openai", "hash"],
        default=None,
        help="Override the configured embedding provider",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    index = commands.add_parser("index", help="Index every document under a directory")
    index.add_argument("directory", type=Path)
    index.add_argument("--rebuild", action="store_true", help="Re-embed everything, ignoring change detection")
    index.set_defaults(handler=_cmd_index)

    search = commands.add_parser("search", help="Semantic search over indexed documents")
    search.add_argument("directory", type=Path)
    search.add_argument("query")
    search.add_argument("--top-k", type=int, default=None)
    search.add_argument("--language", choices=["all", "auto", "zh", "en"], default=None)
    search.add_argument("--min-score", type=float, default=None)
    search.set_defaults(handler=_cmd_search)

    similar = commands.add_parser("similar", help="Documents similar to an indexed document")
    similar.add_argument("directory", type=Path)
    similar.add_argument("document_id")
    similar.add_argument("--top-k", type=int, default=5)
    similar.set_defaults(handler=_cmd_similar)

    fulltext = commands.add_parser("fulltext", help="Substring search over cached document text")
    fulltext.add_argument("term")
    fulltext.add_argument("--limit", type=int, default=20)
    fulltext.add_argument("--case-sensitive", action="store_true")
    fulltext.set_defaults(handler=_cmd_fulltext)

    stats = commands.add_parser("stats", help="Index, usage and job statistics")
    stats.set_defaults(handler=_cmd_stats)

    clear = commands.add_parser("clear", help="Drop indexed vectors")
    clear.add_argument("--all", action="store_true", help="Also drop the content cache")
    clear.set_defaults(handler=_cmd_clear)

    usage = commands.add_parser("usage", help="Show embedding usage statistics")
    usage.add_argument("--reset", action="store_true")
    usage.add_argument("--cumulative", action="store_true", help="With --reset, also reset persisted totals")
    usage.set_defaults(handler=_cmd_usage)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv if argv is not None else sys.argv[1:])
    settings = _settings_for(args)
    directory = getattr(args, "directory", None)
    source = DirectoryDocumentSource(directory) if directory is not None else None
    services = build_services(settings, source=source)
    try:
        return args.handler(services, args)
    except SemanticIndexError as exc:
        print(exc.user_message(), file=sys.stderr)
        return 1
    finally:
        services.close()


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
