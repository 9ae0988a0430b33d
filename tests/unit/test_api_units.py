"""Unit tests for the error mapping, application wiring and CLI tools."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

import pytest

from src.api.middleware import status_for
from src.cli import ask as ask_cli
from src.cli import ingest as ingest_cli
from src.config.settings import Settings
from src.models.source import SourceType
from src.providers.store.memory_store import MemoryKnowledgeStore
from src.utils.errors import (
    AgentRAGError,
    ConfigurationError,
    EmbeddingError,
    LLMError,
    RateLimitError,
    RetrievalDegraded,
    ValidationError,
)
from tests.conftest import PASSWORD_FAQ, MockEmbeddingProvider, MockLLMProvider, text_request


def _offline_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "_env_file": None,
        "openai_api_key": "",
        "anthropic_api_key": "",
        "ollama_base_url": "",
    }
    values.update(overrides)
    return Settings(**values)


# ======================================================================
# Error -> HTTP status mapping
# ======================================================================


class TestStatusFor:
    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (ValidationError(errors=["query: must not be empty"]), 422),
            (RateLimitError(provider_name="openai"), 429),
            (LLMError("upstream 502", provider_name="openai", transient=True), 503),
            (EmbeddingError("bad key", provider_name="openai"), 503),
            (ConfigurationError("no provider"), 500),
            (RetrievalDegraded(), 500),
            (AgentRAGError(), 500),
        ],
    )
    def test_mapping(self, error: AgentRAGError, status: int) -> None:
        assert status_for(error) == status


# ======================================================================
# build_components
# ======================================================================


class TestBuildComponents:
    def test_injected_fakes_are_wired(self, app_components: dict[str, Any]) -> None:
        registry = app_components["provider_registry"]
        assert registry == {
            "llm": ["mock-llm"],
            "llm_default": "mock-llm",
            "embedding": ["mock-embedding"],
            "embedding_default": "mock-embedding",
            "store": "memory",
        }
        for key in ("orchestrator", "ingestion_service", "query_engine", "response_cache", "usage_tracker"):
            assert app_components[key] is not None

    def test_unknown_store_backend(self) -> None:
        from src.main import build_components

        with pytest.raises(ConfigurationError, match="STORE_BACKEND"):
            build_components(
                _offline_settings(store_backend="cassandra"),
                llm_providers={"mock-llm": MockLLMProvider()},
                embedding_providers={"mock-embedding": MockEmbeddingProvider()},
                config={},
            )

    def test_no_llm_provider(self) -> None:
        from src.main import build_components

        with pytest.raises(ConfigurationError, match="LLM"):
            build_components(_offline_settings(), store=MemoryKnowledgeStore(), config={})

    def test_no_embedding_provider(self) -> None:
        from src.main import build_components

        with pytest.raises(ConfigurationError, match="embedding"):
            build_components(
                _offline_settings(),
                store=MemoryKnowledgeStore(),
                llm_providers={"mock-llm": MockLLMProvider()},
                config={},
            )

    def test_settings_driven_provider_registration(self) -> None:
        from src.main import _build_embedding_providers, _build_llm_providers

        app_settings = _offline_settings(
            openai_api_key="sk-test", ollama_base_url="http://localhost:11434"
        )

        assert sorted(_build_llm_providers(app_settings)) == ["ollama", "openai"]
        providers, default = _build_embedding_providers(app_settings)
        assert sorted(providers) == ["nomic", "openai"]
        assert default == "openai"

    def test_explicit_default_embedding_provider(self) -> None:
        from src.main import _build_embedding_providers

        app_settings = _offline_settings(
            openai_api_key="sk-test",
            ollama_base_url="http://localhost:11434",
            default_embedding_provider="nomic",
        )

        _, default = _build_embedding_providers(app_settings)
        assert default == "nomic"


# ======================================================================
# Ingestion CLI
# ======================================================================


class TestIngestCli:
    def test_parser_subcommands(self) -> None:
        parser = ingest_cli._build_parser()

        args = parser.parse_args(["--db", "kb.db", "directory", "--agent", "a1", "--path", "docs", "--recursive"])
        assert (args.command, args.db, args.agent, args.path, args.recursive) == (
            "directory",
            "kb.db",
            "a1",
            "docs",
            True,
        )
        remove = parser.parse_args(["remove", "--source", "s1", "--purge", "--yes"])
        assert remove.purge and remove.yes
        backfill = parser.parse_args(["backfill", "--agent", "a1"])
        assert (backfill.command, backfill.agent) == ("backfill", "a1")

    def test_missing_required_option_exits(self) -> None:
        with pytest.raises(SystemExit):
            ingest_cli._build_parser().parse_args(["file", "--agent", "a1"])

    def test_no_command_exits_with_error(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            ingest_cli.main([])
        assert exc_info.value.code == 1

    def test_file_request(self, tmp_path: Path) -> None:
        page = tmp_path / "help.HTML"
        page.write_text("<html><body><p>Hello</p></body></html>", encoding="utf-8")
        notes = tmp_path / "notes.md"
        notes.write_text("# Notes\n\nPlain text.", encoding="utf-8")

        html_request = ingest_cli.file_request("a1", page)
        md_request = ingest_cli.file_request("a1", notes)

        assert html_request.is_markup is True
        assert html_request.source_type == SourceType.FILE
        assert html_request.title == "help.HTML"
        assert html_request.url.startswith("file://")
        assert md_request.is_markup is False
        assert md_request.content == "# Notes\n\nPlain text."

    def test_supported_suffixes(self) -> None:
        assert {".txt", ".md", ".html"} <= ingest_cli.SUPPORTED_SUFFIXES
        assert ".pdf" not in ingest_cli.SUPPORTED_SUFFIXES

    @pytest.mark.asyncio
    async def test_file_and_stats_handlers(
        self, tmp_path: Path, app_components: dict[str, Any], capsys: pytest.CaptureFixture[str]
    ) -> None:
        faq = tmp_path / "faq.txt"
        faq.write_text(PASSWORD_FAQ, encoding="utf-8")

        code = await ingest_cli._handle_file(
            argparse.Namespace(agent="support-bot", file=str(faq)), app_components
        )
        assert code == 0
        assert "Chunks created:   1" in capsys.readouterr().out

        await ingest_cli._handle_stats(argparse.Namespace(agent="support-bot"), app_components)
        out = capsys.readouterr().out
        assert "Sources:          1 (1 active)" in out
        assert "file" in out

    @pytest.mark.asyncio
    async def test_file_handler_rejects_missing_file(
        self, tmp_path: Path, app_components: dict[str, Any]
    ) -> None:
        code = await ingest_cli._handle_file(
            argparse.Namespace(agent="support-bot", file=str(tmp_path / "missing.txt")), app_components
        )
        assert code == 1

    @pytest.mark.asyncio
    async def test_directory_handler(
        self, tmp_path: Path, app_components: dict[str, Any], capsys: pytest.CaptureFixture[str]
    ) -> None:
        (tmp_path / "a.txt").write_text(PASSWORD_FAQ, encoding="utf-8")
        (tmp_path / "b.md").write_text(PASSWORD_FAQ, encoding="utf-8")
        (tmp_path / "skip.pdf").write_bytes(b"%PDF-1.4")

        code = await ingest_cli._handle_directory(
            argparse.Namespace(agent="support-bot", path=str(tmp_path), recursive=False),
            app_components,
        )

        out = capsys.readouterr().out
        assert code == 0
        assert "Files processed: 2" in out
        assert "Duplicates:      1" in out

    @pytest.mark.asyncio
    async def test_remove_and_job_handlers(
        self, app_components: dict[str, Any], capsys: pytest.CaptureFixture[str]
    ) -> None:
        result = await app_components["ingestion_service"].ingest(text_request(PASSWORD_FAQ))

        assert await ingest_cli._handle_job(argparse.Namespace(job=result.job_id), app_components) == 0
        assert "Status:   completed" in capsys.readouterr().out

        code = await ingest_cli._handle_remove(
            argparse.Namespace(source=result.source_id, purge=False, yes=False), app_components
        )
        assert code == 0
        assert "Deactivated 1 source(s)." in capsys.readouterr().out

        missing = await ingest_cli._handle_job(argparse.Namespace(job="nope"), app_components)
        assert missing == 1


# ======================================================================
# Ask CLI
# ======================================================================


class TestAskCli:
    def test_parser(self) -> None:
        args = ask_cli._build_parser().parse_args(
            ["--agent", "support-bot", "--stream", "--show-sources", "How do I reset?"]
        )
        assert (args.query, args.agent, args.stream, args.show_sources, args.db) == (
            "How do I reset?",
            "support-bot",
            True,
            True,
            None,
        )

    @pytest.mark.asyncio
    async def test_ask_prints_answer_and_sources(
        self,
        app_components: dict[str, Any],
        mock_llm_provider: MockLLMProvider,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        await app_components["ingestion_service"].ingest(text_request(PASSWORD_FAQ, title="Password FAQ"))
        args = argparse.Namespace(
            query="How do I reset my password?", agent="support-bot", show_sources=True, stream=False
        )

        code = await ask_cli._ask(args, app_components)

        out = capsys.readouterr().out
        assert code == 0
        assert mock_llm_provider.reply in out
        assert "Retrieved sources:" in out
        assert "Password FAQ (relevance" in out

    @pytest.mark.asyncio
    async def test_ask_stream_prints_deltas(
        self,
        app_components: dict[str, Any],
        mock_llm_provider: MockLLMProvider,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        args = argparse.Namespace(
            query="How do I reset my password?", agent="support-bot", show_sources=False, stream=True
        )

        code = await ask_cli._ask_stream(args, app_components)

        captured = capsys.readouterr()
        assert code == 0
        assert mock_llm_provider.reply in captured.out
        assert "mock-llm/mock-chat-v1" in captured.err

    @pytest.mark.asyncio
    async def test_ask_failure_exit_code(
        self,
        app_components: dict[str, Any],
        mock_llm_provider: MockLLMProvider,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        mock_llm_provider.error = LLMError("invalid api key", provider_name="mock-llm")
        args = argparse.Namespace(
            query="How do I reset my password?", agent="support-bot", show_sources=False, stream=False
        )

        code = await ask_cli._ask(args, app_components)

        assert code == 1
        assert "[GENERATING] LLMError: invalid api key" in capsys.readouterr().err
