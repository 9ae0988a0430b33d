# =============================================================================
# src/cli/__main__.py - Package Entry Point
# =============================================================================
#
# `python -m src.cli` delegates to the ingestion CLI, the most common
# operation.  For questions run `python -m src.cli.ask`.
# =============================================================================

"""Allow ``python -m src.cli`` execution."""

from src.cli.ingest import main

main()
