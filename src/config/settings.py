"""Application settings loaded from environment variables via pydantic-settings.

Values are read from (highest priority first):

  1. environment variables, e.g. ``OPENAI_API_KEY=sk-...``
  2. the ``.env`` file in the project root

Field ``openai_api_key`` maps to env var ``OPENAI_API_KEY``; defaults apply
when neither source sets a value.  Per-agent retrieval options do not live
here -- see :class:`src.models.agent_config.AgentRAGConfig` and the YAML
loader in :mod:`src.config.loader`.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """agent-rag process settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # === LLM Providers ===
    # Empty string = "not configured"; provider selection skips it.
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_chat_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    anthropic_api_key: str = ""
    anthropic_chat_model: str = "claude-3-5-sonnet-20241022"
    ollama_base_url: str = "http://localhost:11434"
    ollama_chat_model: str = "llama3.1"
    default_llm_provider: str = ""  # empty = first configured (anthropic -> openai -> ollama)
    llm_timeout_seconds: float = 30.0

    # === Embeddings ===
    default_embedding_provider: str = ""  # empty = openai when keyed, else nomic
    long_text_embedding_provider: str = ""
    nomic_embedding_model: str = "nomic-embed-text"
    embedding_batch_size: int = 100
    embedding_max_concurrent_batches: int = 3
    embedding_batch_delay_seconds: float = 1.0
    embedding_max_retries: int = 3

    # === Knowledge store ===
    store_backend: str = "memory"  # "memory" or "sqlite"
    sqlite_db_path: str = "data/knowledge.db"

    # === Response cache ===
    cache_max_entries: int = 1000
    cache_ttl_seconds: int = 900

    # === Ingestion ===
    ingestion_max_concurrent_sources: int = 4

    # === App Config ===
    agent_config_path: str = "config/config.yaml"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"

    def get_available_llm_providers(self) -> list[str]:
        """Return LLM provider names that have credentials or an endpoint configured."""
        providers: list[str] = []
        if self.anthropic_api_key:
            providers.append("anthropic")
        if self.openai_api_key:
            providers.append("openai")
        if self.ollama_base_url:
            providers.append("ollama")
        return providers

    def resolve_default_llm_provider(self) -> str:
        """Return the configured default chat provider, or the first available one."""
        available = self.get_available_llm_providers()
        if self.default_llm_provider and self.default_llm_provider in available:
            return self.default_llm_provider
        return available[0] if available else "ollama"
