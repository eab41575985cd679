from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "production"
    port: int = 3000
    upstream_timeout_seconds: float = 30.0
    upstream_connect_timeout_seconds: float = 10.0
    provider_catalog_path: str | None = None
    search_provider: str | None = None
    tavily_api_key: str | None = None
    searchapi_api_key: str | None = None
    search_timeout_seconds: float = 20.0
    markitdown_service_url: str = "http://markitdown:8080/mcp"
    tool_connect_timeout_seconds: float = 10.0
    embeddings_provider: str = "openai"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_embedding_model: str = "text-embedding-3-small"
    ollama_base_url: str = "http://localhost:11434"
    ollama_embedding_model: str = "nomic-embed-text"
    crawl_default_max_depth: int = 2
    crawl_default_limit: int = 50
    crawl_max_concurrency: int = 5
    crawl_navigation_timeout_seconds: float = 60.0
    crawl_request_timeout_seconds: float = 60.0
    crawl_max_fetch_retries: int = 1
    crawl_headless: bool = True
    observability_tracing_enabled: bool = False
    observability_service_name: str = "calliope-proxy"
    observability_otlp_endpoint: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"

    @property
    def normalized_embeddings_provider(self) -> str:
        return (self.embeddings_provider or "").strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()
