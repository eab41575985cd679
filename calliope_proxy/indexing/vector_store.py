from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

import chromadb
from chromadb.config import Settings as ChromaSettings

from calliope_proxy.indexing.embeddings import Embedder

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class IndexedDocument:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredDocument:
    content: str
    metadata: dict[str, Any]
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "metadata": self.metadata, "score": self.score}


class DocumentIndex(Protocol):
    async def add_documents(self, documents: list[IndexedDocument]) -> None: ...

    async def similarity_search(self, query: str, k: int = 5) -> list[ScoredDocument]: ...


def _store_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be non-null scalars.
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaVectorIndex:
    """Ephemeral Chroma collection fed with embeddings from an `Embedder`.

    Contents live only as long as the process; each index gets its own
    collection so separate app instances never share documents.
    """

    def __init__(
        self,
        embedder: Embedder,
        collection_prefix: str = "crawled-pages",
        client: Any | None = None,
    ) -> None:
        self.embedder = embedder
        self.client = client or chromadb.EphemeralClient(
            settings=ChromaSettings(anonymized_telemetry=False)
        )
        self.collection_name = f"{collection_prefix}-{uuid4().hex[:12]}"
        self.collection = self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )
        logger.info("vector_index_created collection=%s", self.collection_name)

    async def count(self) -> int:
        return await asyncio.to_thread(self.collection.count)

    async def add_documents(self, documents: list[IndexedDocument]) -> None:
        if not documents:
            return
        vectors = await self.embedder.embed([doc.content for doc in documents])
        metadatas = [_store_metadata(doc.metadata) for doc in documents]
        # Chroma rejects empty metadata dicts.
        await asyncio.to_thread(
            self.collection.add,
            ids=[uuid4().hex for _ in documents],
            documents=[doc.content for doc in documents],
            metadatas=metadatas if all(metadatas) else None,
            embeddings=vectors,
        )

    async def similarity_search(self, query: str, k: int = 5) -> list[ScoredDocument]:
        if k <= 0:
            return []
        total = await self.count()
        if total == 0:
            return []
        query_vectors = await self.embedder.embed([query])
        result = await asyncio.to_thread(
            self.collection.query,
            query_embeddings=query_vectors,
            n_results=min(k, total),
            include=["documents", "metadatas", "distances"],
        )
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        return [
            ScoredDocument(
                content=content or "",
                metadata=dict(metadata or {}),
                score=1.0 - float(distance),
            )
            for content, metadata, distance in zip(
                documents, metadatas, distances, strict=True
            )
        ]

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self.client.delete_collection, self.collection_name)
        except Exception as exc:
            logger.warning(
                "vector_index_drop_failed collection=%s error=%s",
                self.collection_name,
                exc,
            )
        await self.embedder.close()
