# =============================================================================
# src/cli/ask.py - CLI Ask Command
# =============================================================================
#
# Asks one question of an agent's knowledge base from the terminal, using
# the same orchestrator as POST /api/v1/chat.  With --stream the answer is
# printed as it is generated; Ctrl-C cancels generation cleanly.
#
# Usage examples:
#   python -m src.cli.ask --agent demo-support --db data/kb.db "How do I reset my password?"
#   python -m src.cli.ask --agent demo-docs --stream --show-sources "What does init() do?"
# =============================================================================

"""Ask an agent a question from the command line."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

from src.cli.ingest import _build_components
from src.config.loader import resolve_agent_config
from src.config.settings import Settings
from src.models.llm import StreamEventType
from src.models.pipeline import RAGRequest
from src.models.query import CitedSource
from src.services.llm.streaming import CancellationToken
from src.utils.errors import AgentRAGError


def _print_sources(sources: list[CitedSource]) -> None:
    if not sources:
        return
    print("\nRetrieved sources:")
    for source in sources:
        print(f"  - {source.name} (relevance {source.relevance:.2f}, id {source.id})")


async def _ask(args: argparse.Namespace, components: dict[str, Any]) -> int:
    agent_config = resolve_agent_config(components["config"], args.agent)
    request = RAGRequest(query=args.query, agent_id=args.agent, config=agent_config)
    orchestrator = components["orchestrator"]

    result = await orchestrator.answer(request)
    print(result.answer)
    if args.show_sources:
        _print_sources(result.sources)
    if result.cache_hit:
        print("\n(cached answer)", file=sys.stderr)
    for error in result.errors:
        print(f"[{error.stage.value}] {error.error_type}: {error.message}", file=sys.stderr)
    return 1 if result.failed else 0


async def _ask_stream(args: argparse.Namespace, components: dict[str, Any]) -> int:
    agent_config = resolve_agent_config(components["config"], args.agent)
    request = RAGRequest(query=args.query, agent_id=args.agent, config=agent_config, stream=True)
    token = CancellationToken()
    exit_code = 0

    stream = components["orchestrator"].answer_stream(request, token)
    try:
        async for event in stream:
            if event.type == StreamEventType.DELTA:
                print(event.text, end="", flush=True)
            elif event.type == StreamEventType.ERROR:
                print(f"\n{event.error}", file=sys.stderr)
                exit_code = 1
            elif event.type == StreamEventType.COMPLETE:
                print()
                if event.cancelled:
                    print("(cancelled)", file=sys.stderr)
                if args.show_sources:
                    _print_sources(event.sources)
                if event.usage is not None:
                    estimated = " (estimated)" if event.usage.estimated else ""
                    print(
                        f"\n{event.provider}/{event.model}: "
                        f"{event.usage.input_tokens} in, {event.usage.output_tokens} out{estimated}",
                        file=sys.stderr,
                    )
    except asyncio.CancelledError:
        token.cancel()
        raise
    finally:
        await stream.aclose()
    return exit_code


async def _run(args: argparse.Namespace, app_settings: Settings) -> int:
    components = _build_components(app_settings, args.db)
    store = components["store"]
    await store.initialize()
    try:
        if args.stream:
            return await _ask_stream(args, components)
        return await _ask(args, components)
    except AgentRAGError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await store.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m src.cli.ask",
        description="Ask an agent a question from its knowledge base.",
    )
    parser.add_argument("query", help="The question to ask")
    parser.add_argument("--agent", required=True, help="Agent id")
    parser.add_argument("--db", default=None, help="SQLite knowledge base path")
    parser.add_argument("--stream", action="store_true", help="Print the answer as it streams")
    parser.add_argument(
        "--show-sources", action="store_true", dest="show_sources", help="List cited sources"
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the ask tool."""
    args = _build_parser().parse_args(argv)
    app_settings = Settings()
    try:
        exit_code = asyncio.run(_run(args, app_settings))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
