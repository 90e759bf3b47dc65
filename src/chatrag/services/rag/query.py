from __future__ import annotations

import math
from pathlib import Path
from typing import Sequence

from chatrag.errors import DimensionMismatchError, EmptyStoreError
from chatrag.services.rag.embedding_client import EmbeddingClient
from chatrag.services.rag.gateway import EmbeddingGateway
from chatrag.services.rag.types import SearchHit
from chatrag.services.rag.vector_store import IndexStore


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def search(store: IndexStore, query_vector: Sequence[float], k: int) -> list[SearchHit]:
    """Exact top-k by cosine similarity; equal scores order by chunk id."""
    if k <= 0:
        raise ValueError("k must be > 0")

    records = store.snapshot()
    if not records:
        raise EmptyStoreError("The index store has no records; nothing to search")
    if len(query_vector) != store.dimension:
        raise DimensionMismatchError(
            expected=store.dimension,
            actual=len(query_vector),
            context="query vector",
        )

    hits = [
        SearchHit(chunk=record.chunk, score=_cosine(query_vector, record.vector))
        for record in records
    ]
    hits.sort(key=lambda hit: (-hit.score, hit.chunk_id))
    return hits[:k]


def search_index(
    *,
    store_path: Path,
    query_text: str,
    top_k: int = 4,
    embedding_client: EmbeddingClient | EmbeddingGateway,
) -> list[SearchHit]:
    normalized_query = query_text.strip()
    if not normalized_query:
        raise ValueError("query_text must not be empty")

    store = IndexStore.load(store_path)
    if store.size() == 0:
        raise EmptyStoreError(f"The index store at {store_path} is empty; nothing to search")

    gateway = (
        embedding_client
        if isinstance(embedding_client, EmbeddingGateway)
        else EmbeddingGateway(embedding_client)
    )
    query_embedding = gateway.embed_query(normalized_query)
    return search(store, query_embedding, top_k)
