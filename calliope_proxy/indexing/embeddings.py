from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from calliope_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


class EmbeddingError(RuntimeError):
    pass


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...

    async def close(self) -> None: ...


def _raise_for_status(provider: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    raise EmbeddingError(
        f"{provider} embeddings request failed with status code "
        f"{response.status_code}: {response.text[:200]}"
    )


class OpenAIEmbedder:
    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = await self.client.post(
            f"{self.base_url}/embeddings",
            json={"model": self.model, "input": texts},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        _raise_for_status("OpenAI", response)
        data: list[dict[str, Any]] = response.json().get("data") or []
        ordered = sorted(data, key=lambda item: int(item.get("index", 0)))
        vectors = [list(item["embedding"]) for item in ordered]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"OpenAI returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors

    async def close(self) -> None:
        await self.client.aclose()


class OllamaEmbedder:
    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://localhost:11434",
        timeout_seconds: float = 60.0,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = await self.client.post(
            f"{self.base_url}/api/embed",
            json={"model": self.model, "input": texts},
        )
        _raise_for_status("Ollama", response)
        vectors = [list(item) for item in response.json().get("embeddings") or []]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors

    async def close(self) -> None:
        await self.client.aclose()


def build_embedder(settings: Settings) -> Embedder | None:
    provider = settings.normalized_embeddings_provider or "openai"
    if provider == "openai":
        if not settings.openai_api_key:
            logger.warning(
                "embeddings_disabled provider=openai reason=missing_openai_api_key"
            )
            return None
        logger.info(
            "embeddings_enabled provider=openai model=%s",
            settings.openai_embedding_model,
        )
        return OpenAIEmbedder(
            api_key=settings.openai_api_key,
            model=settings.openai_embedding_model,
            base_url=settings.openai_base_url,
        )
    if provider == "ollama":
        logger.info(
            "embeddings_enabled provider=ollama model=%s base_url=%s",
            settings.ollama_embedding_model,
            settings.ollama_base_url,
        )
        return OllamaEmbedder(
            model=settings.ollama_embedding_model,
            base_url=settings.ollama_base_url,
        )
    logger.warning("embeddings_disabled provider=%s reason=unknown_provider", provider)
    return None
