# =============================================================================
# src/cli/__init__.py - CLI Module Overview
# =============================================================================
#
# Standalone command-line tools for agent-rag.  Each submodule is a
# self-contained CLI utility run via `python -m src.cli.<module>`:
#
#   1. INGESTION (ingest.py)
#      Loads files, directories and web pages into an agent's knowledge
#      base; also shows stats and job progress and removes sources.
#
#   2. ASK (ask.py)
#      Asks one question through the full RAG pipeline, optionally
#      streaming the answer.
#
# Architecture Notes:
#   - argparse only; no Click/Typer.
#   - Both tools reuse src.main.build_components, so the CLI runs the
#     exact service graph the web app runs.
# =============================================================================

"""CLI tools for agent-rag.

- ``python -m src.cli.ingest`` - build and inspect an agent's knowledge base
- ``python -m src.cli.ask`` - ask an agent a question
"""
