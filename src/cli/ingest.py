# =============================================================================
# src/cli/ingest.py - CLI Ingest Command (Agent Knowledge Base Management)
# =============================================================================
#
# Standalone CLI for loading an agent's knowledge base from local files or
# web pages, and for inspecting or pruning it afterwards.
#
# Supported subcommands:
#
#   file      - Ingest one text, markdown or HTML file
#   directory - Bulk-ingest every supported file in a directory (one job)
#   url       - Fetch a web page and ingest its main content
#   remove    - Deactivate (or purge) a source and its children
#   stats     - Display knowledge base statistics for an agent
#   backfill  - Embed chunks a failed run left without a vector
#   job       - Show the progress of a training job
#
# Every source goes through the same pipeline as the HTTP API:
#   extract -> compress -> chunk -> deduplicate -> embed -> store
#
# Storage: pass --db PATH to write to a SQLite knowledge base.  Without it
# the STORE_BACKEND setting applies; the in-memory backend is discarded
# when the command exits.
#
# Usage examples:
#   python -m src.cli.ingest file --agent support --file faq.md --db data/kb.db
#   python -m src.cli.ingest directory --agent support --path docs/ --db data/kb.db
#   python -m src.cli.ingest url --agent support --url https://example.com/help
#   python -m src.cli.ingest stats --agent support --db data/kb.db
# =============================================================================

"""Standalone CLI for building an agent's knowledge base.

Usage::

    python -m src.cli.ingest file --agent support --file faq.md --db data/kb.db
    python -m src.cli.ingest directory --agent support --path docs/
    python -m src.cli.ingest url --agent support --url https://example.com/help
    python -m src.cli.ingest stats --agent support --db data/kb.db
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

import httpx

from src.config.settings import Settings
from src.models.rag import IngestionResult
from src.models.source import IngestRequest, SourceType
from src.utils.errors import AgentRAGError, IngestionPhaseError

SUPPORTED_SUFFIXES = frozenset({".txt", ".md", ".markdown", ".html", ".htm"})
_MARKUP_SUFFIXES = frozenset({".html", ".htm"})
_FETCH_TIMEOUT = 30.0


def _build_components(app_settings: Settings, db_path: str | None = None) -> dict[str, Any]:
    """Wire the same services the web app uses, optionally over a SQLite file.

    Imports are deferred so ``--help`` stays fast.  Also called by
    ``ask.py``.
    """
    from src.main import build_components

    store = None
    if db_path:
        from src.providers.store.sqlite_store import SQLiteKnowledgeStore

        store = SQLiteKnowledgeStore(db_path=db_path)
    elif app_settings.store_backend.lower() == "memory":
        print(
            "Warning: in-memory store; pass --db PATH to keep ingested content.",
            file=sys.stderr,
        )
    return build_components(app_settings, store=store)


def file_request(agent_id: str, path: Path) -> IngestRequest:
    """Build the ingest request for a local file."""
    return IngestRequest(
        agent_id=agent_id,
        content=path.read_text(encoding="utf-8", errors="replace"),
        source_type=SourceType.FILE,
        title=path.name,
        url=path.resolve().as_uri(),
        is_markup=path.suffix.lower() in _MARKUP_SUFFIXES,
    )


def _print_result(result: IngestionResult) -> None:
    print("\nIngestion complete:")
    print(f"  Source ID:        {result.source_id}")
    print(f"  Job ID:           {result.job_id}")
    print(f"  Mode:             {result.processing_mode}")
    print(f"  Chunks created:   {result.chunks_created}")
    print(f"  Duplicates:       {result.duplicate_chunks}")
    print(f"  Embeddings:       {result.embeddings_created}")
    print(f"  Total tokens:     {result.total_tokens}")
    print(f"  Compression:      {result.compression_method} ({result.compression_ratio:.2f})")
    print(f"  Time:             {result.ingestion_time:.2f}s")


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


async def _handle_file(args: argparse.Namespace, components: dict[str, Any]) -> int:
    path = Path(args.file)
    if not path.is_file():
        print(f"Error: {path} is not a file", file=sys.stderr)
        return 1
    print(f"Ingesting file: {path} (agent: {args.agent})")
    result = await components["ingestion_service"].ingest(file_request(args.agent, path))
    _print_result(result)
    return 0


async def _handle_directory(args: argparse.Namespace, components: dict[str, Any]) -> int:
    """Ingest every supported file in a directory under one training job."""
    root = Path(args.path)
    if not root.is_dir():
        print(f"Error: {root} is not a directory", file=sys.stderr)
        return 1
    pattern = "**/*" if args.recursive else "*"
    paths = sorted(
        p for p in root.glob(pattern) if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES
    )
    if not paths:
        print(f"No supported files ({', '.join(sorted(SUPPORTED_SUFFIXES))}) in {root}")
        return 0

    print(f"Ingesting directory: {root} ({len(paths)} files, agent: {args.agent})")
    outcomes = await components["ingestion_service"].ingest_many(
        [file_request(args.agent, p) for p in paths]
    )

    failures = [o for o in outcomes if isinstance(o, IngestionPhaseError)]
    results = [o for o in outcomes if not isinstance(o, IngestionPhaseError)]
    print("\nDirectory ingestion complete:")
    print(f"  Files processed: {len(results)}")
    print(f"  Files failed:    {len(failures)}")
    print(f"  Total chunks:    {sum(r.chunks_created for r in results)}")
    print(f"  Duplicates:      {sum(r.duplicate_chunks for r in results)}")
    print(f"  Total tokens:    {sum(r.total_tokens for r in results)}")
    for path, outcome in zip(paths, outcomes):
        if isinstance(outcome, IngestionPhaseError):
            print(f"    FAILED {path.name} [{outcome.phase}]: {outcome.message}", file=sys.stderr)
    return 1 if failures else 0


async def _handle_url(args: argparse.Namespace, components: dict[str, Any]) -> int:
    print(f"Fetching: {args.url}")
    async with httpx.AsyncClient(timeout=_FETCH_TIMEOUT, follow_redirects=True) as client:
        response = await client.get(args.url)
        response.raise_for_status()
    content_type = response.headers.get("content-type", "")
    request = IngestRequest(
        agent_id=args.agent,
        content=response.text,
        source_type=SourceType.WEBSITE,
        url=str(response.url),
        title=args.title,
        is_markup="html" in content_type or None,
    )
    result = await components["ingestion_service"].ingest(request)
    _print_result(result)
    return 0


async def _handle_remove(args: argparse.Namespace, components: dict[str, Any]) -> int:
    if args.purge and not args.yes:
        confirm = input(f"  Permanently delete source {args.source}? [y/N] ").strip().lower()
        if confirm not in ("y", "yes"):
            print("  Aborted.")
            return 0
    removed = await components["ingestion_service"].remove_source(args.source, purge=args.purge)
    if removed == 0:
        print(f"Source {args.source} not found.")
        return 1
    action = "Purged" if args.purge else "Deactivated"
    print(f"{action} {removed} source(s).")
    return 0


async def _handle_stats(args: argparse.Namespace, components: dict[str, Any]) -> int:
    stats = await components["ingestion_service"].get_corpus_stats(args.agent)
    print(f"Knowledge Base Statistics: {args.agent}")
    print("=" * 40)
    print(f"  Sources:          {stats.total_sources} ({stats.active_sources} active)")
    print(f"  Chunks:           {stats.total_chunks}")
    print(f"  Duplicate chunks: {stats.duplicate_chunks}")
    print(f"  Embeddings:       {stats.total_embeddings}")
    if stats.sources_by_type:
        print("\n  Sources by type:")
        for src_type, count in sorted(stats.sources_by_type.items()):
            print(f"    {src_type:<15} {count}")
    return 0


async def _handle_backfill(args: argparse.Namespace, components: dict[str, Any]) -> int:
    written = await components["ingestion_service"].backfill_embeddings(args.agent)
    print(f"Embedded {written} chunk(s) that had no vector.")
    return 0


async def _handle_job(args: argparse.Namespace, components: dict[str, Any]) -> int:
    job = await components["ingestion_service"].get_job(args.job)
    if job is None:
        print(f"Job {args.job} not found.")
        return 1
    print(f"Job {job.id} ({job.agent_id})")
    print(f"  Status:   {job.status.value}")
    print(f"  Progress: {job.progress * 100:.1f}% ({job.processed_sources}/{job.total_sources} sources)")
    print(f"  Chunks:   {job.processed_chunks} processed, {job.failed_chunks} failed")
    if job.error:
        print(f"  Error:    [{job.failed_phase}] {job.error}")
    return 0


_HANDLERS = {
    "file": _handle_file,
    "directory": _handle_directory,
    "url": _handle_url,
    "remove": _handle_remove,
    "stats": _handle_stats,
    "backfill": _handle_backfill,
    "job": _handle_job,
}


async def _run(args: argparse.Namespace, app_settings: Settings) -> int:
    components = _build_components(app_settings, args.db)
    store = components["store"]
    await store.initialize()
    try:
        return await _HANDLERS[args.command](args, components)
    except AgentRAGError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except httpx.HTTPError as exc:
        print(f"Error fetching page: {exc}", file=sys.stderr)
        return 1
    finally:
        await store.close()


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ingestion CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m src.cli.ingest",
        description="Manage an agent's RAG knowledge base.",
    )
    parser.add_argument("--db", default=None, help="SQLite knowledge base path")
    subparsers = parser.add_subparsers(dest="command", help="Ingestion commands")

    file_parser = subparsers.add_parser("file", help="Ingest a text, markdown or HTML file")
    file_parser.add_argument("--agent", required=True, help="Agent id")
    file_parser.add_argument("--file", required=True, help="Path to the file")

    dir_parser = subparsers.add_parser("directory", help="Ingest all files in a directory")
    dir_parser.add_argument("--agent", required=True, help="Agent id")
    dir_parser.add_argument("--path", required=True, help="Directory path")
    dir_parser.add_argument(
        "--recursive", action="store_true", help="Include files in subdirectories"
    )

    url_parser = subparsers.add_parser("url", help="Fetch and ingest a web page")
    url_parser.add_argument("--agent", required=True, help="Agent id")
    url_parser.add_argument("--url", required=True, help="Page URL")
    url_parser.add_argument("--title", default=None, help="Override the page title")

    remove_parser = subparsers.add_parser("remove", help="Deactivate or purge a source")
    remove_parser.add_argument("--source", required=True, help="Source id")
    remove_parser.add_argument("--purge", action="store_true", help="Delete permanently")
    remove_parser.add_argument("--yes", action="store_true", help="Skip confirmation")

    stats_parser = subparsers.add_parser("stats", help="Show knowledge base statistics")
    stats_parser.add_argument("--agent", required=True, help="Agent id")

    backfill_parser = subparsers.add_parser(
        "backfill", help="Embed chunks left without a vector by a failed run"
    )
    backfill_parser.add_argument("--agent", required=True, help="Agent id")

    job_parser = subparsers.add_parser("job", help="Show training job progress")
    job_parser.add_argument("--job", required=True, help="Job id")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the ingestion tool."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()
    sys.exit(asyncio.run(_run(args, app_settings)))


if __name__ == "__main__":
    main()
