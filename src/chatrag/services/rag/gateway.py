from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
from random import random
from threading import Event
from typing import TYPE_CHECKING, Sequence

from chatrag.errors import EmbeddingError, OperationCancelledError
from chatrag.services.rag.embedding_client import EmbeddingClient

if TYPE_CHECKING:
    from chatrag.config import Settings

logger = logging.getLogger(__name__)


class EmbeddingGateway:
    def __init__(
        self,
        client: EmbeddingClient,
        *,
        batch_size: int = 32,
        max_workers: int = 1,
        max_attempts: int = 4,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 8.0,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._client = client
        self._batch_size = batch_size
        self._max_workers = max_workers
        self._max_attempts = max_attempts
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds

    @property
    def client(self) -> EmbeddingClient:
        return self._client

    @property
    def model_name(self) -> str | None:
        return getattr(self._client, "model_name", None)

    def embed_batch(
        self,
        texts: Sequence[str],
        *,
        cancel_event: Event | None = None,
    ) -> list[list[float]]:
        items = list(texts)
        if not items:
            return []

        waiter = cancel_event or Event()
        batches = [
            items[offset : offset + self._batch_size]
            for offset in range(0, len(items), self._batch_size)
        ]

        if self._max_workers > 1 and len(batches) > 1:
            results = self._embed_parallel(batches, waiter)
        else:
            results = [self._embed_with_retry(batch, waiter) for batch in batches]

        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        if len(vectors) != len(items):
            raise EmbeddingError(f"Embedding count mismatch: expected {len(items)}, got {len(vectors)}")

        dimensions = {len(vector) for vector in vectors}
        if len(dimensions) != 1 or 0 in dimensions:
            raise EmbeddingError(
                f"Embedding provider returned inconsistent dimensions: {sorted(dimensions)}"
            )

        return vectors

    def embed_query(self, text: str, *, cancel_event: Event | None = None) -> list[float]:
        return self.embed_batch([text], cancel_event=cancel_event)[0]

    def _embed_parallel(self, batches: list[list[str]], waiter: Event) -> list[list[list[float]]]:
        workers = min(self._max_workers, len(batches))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chatrag-embed") as pool:
            futures = [pool.submit(self._embed_with_retry, batch, waiter) for batch in batches]
            try:
                return [future.result() for future in futures]
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _embed_with_retry(self, batch: list[str], waiter: Event) -> list[list[float]]:
        delay = self._retry_base_seconds
        attempt = 1

        while True:
            if waiter.is_set():
                raise OperationCancelledError("embedding cancelled")

            try:
                vectors = self._client.embed_texts(batch)
            except EmbeddingError as exc:
                if not exc.transient or attempt >= self._max_attempts:
                    raise
                logger.warning(
                    "embedding batch failed attempt=%d/%d error=%s; retrying in %.1fs",
                    attempt,
                    self._max_attempts,
                    exc,
                    delay,
                )
                if waiter.wait(delay + random() * 0.2 * delay):
                    raise OperationCancelledError("embedding cancelled") from exc
                delay = min(delay * 2, self._retry_max_seconds)
                attempt += 1
                continue

            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"Embedding count mismatch: expected {len(batch)}, got {len(vectors)}"
                )
            return vectors


def build_gateway(settings: Settings, client: EmbeddingClient) -> EmbeddingGateway:
    return EmbeddingGateway(
        client,
        batch_size=settings.embed_batch_size,
        max_workers=settings.embed_workers,
        max_attempts=settings.retry_attempts,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )
