"""YAML configuration loader with environment variable overrides.

Configuration is loaded in layers (later layers override earlier):

  1. config/config.yaml  -- static defaults checked into the repo, including
     the default agent RAG options and per-agent overrides
  2. .env file           -- local developer overrides (not committed)
  3. environment vars    -- set at deploy time

:func:`load_config` reads the YAML file first, then deep-merges the
environment-based values on top.  :func:`resolve_agent_config` turns the
merged ``rag`` section into a validated :class:`AgentRAGConfig` for one
agent::

    rag.defaults  <-  template named by agents.<id>.template  <-  agents.<id>
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from src.config.settings import Settings
from src.models.agent_config import TEMPLATES, AgentRAGConfig
from src.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)


def load_config(path: str | None = None, settings: Settings | None = None) -> dict:
    """Load YAML config and merge with environment-based Settings.

    Parameters
    ----------
    path:
        YAML file to read; defaults to ``settings.agent_config_path``.
        A missing file yields an empty base config.
    settings:
        Settings instance supplying the env overrides.

    Raises
    ------
    ConfigurationError
        If the file exists but is not a YAML mapping.
    """
    settings = settings or Settings()
    config_path = Path(path or settings.agent_config_path)
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            try:
                yaml_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(yaml_config, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
    else:
        logger.info("config_file_missing", path=str(config_path))
        yaml_config = {}

    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "llm": {
            "default_provider": settings.resolve_default_llm_provider(),
            "available_providers": settings.get_available_llm_providers(),
            "timeout_seconds": settings.llm_timeout_seconds,
        },
        "cache": {
            "max_entries": settings.cache_max_entries,
            "ttl_seconds": settings.cache_ttl_seconds,
        },
        "store": {
            "backend": settings.store_backend,
            "sqlite_db_path": settings.sqlite_db_path,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def resolve_agent_config(
    config: dict, agent_id: str | None = None, overrides: dict | None = None
) -> AgentRAGConfig:
    """Build the validated RAG config for *agent_id* from a loaded config dict.

    *overrides* (per-request options) are merged last.

    Raises
    ------
    ValidationError
        If the merged options violate any constraint.
    """
    rag_section = config.get("rag") or {}
    merged: dict[str, Any] = {}
    _deep_merge(merged, _copy(rag_section.get("defaults") or {}))

    agent_section = _copy((config.get("agents") or {}).get(agent_id or "", {}) or {})
    template = agent_section.pop("template", None)
    if template is not None:
        if template not in TEMPLATES:
            raise ConfigurationError(
                f"Agent {agent_id!r} names unknown template {template!r}"
            )
        _deep_merge(merged, _copy(TEMPLATES[template]))
    _deep_merge(merged, agent_section)
    if overrides:
        _deep_merge(merged, _copy(overrides))
    return AgentRAGConfig.from_dict(merged)


def _copy(data: dict) -> dict:
    return {k: _copy(v) if isinstance(v, dict) else v for k, v in data.items()}


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
