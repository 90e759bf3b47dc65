from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import httpx

from chatrag.errors import ConfigError, EmbeddingError

if TYPE_CHECKING:
    from chatrag.config import Settings

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OllamaEmbeddingClient:
    def __init__(self, *, base_url: str, model: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds

    @property
    def model_name(self) -> str:
        return self._model

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            transient = exc.response.status_code in TRANSIENT_STATUS_CODES
            raise EmbeddingError(str(exc), transient=transient) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingError(str(exc), transient=True) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError(f"Invalid embeddings payload: response is not JSON ({exc})") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingError("Invalid embeddings payload: missing data")

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingError("Invalid embeddings payload: missing embedding vector")
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise EmbeddingError(f"Invalid embeddings payload: non-numeric vector value ({exc})") from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        return vectors


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embed_backend == "ollama":
        return OllamaEmbeddingClient(
            base_url=settings.ollama_embed_base_url,
            model=settings.ollama_embed_model,
            timeout_seconds=settings.ollama_timeout_seconds,
        )
    if settings.embed_backend == "hash":
        from chatrag.services.rag.embedder import HashEmbeddingClient

        return HashEmbeddingClient(dimensions=settings.embedding_dim)
    raise ConfigError(f"Unknown embedding backend: {settings.embed_backend!r}")
