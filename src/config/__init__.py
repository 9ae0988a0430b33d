"""Configuration module: exports Settings and the YAML config loaders."""

from src.config.loader import load_config, resolve_agent_config
from src.config.settings import Settings

__all__ = ["Settings", "load_config", "resolve_agent_config"]
