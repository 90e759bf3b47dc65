from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile
from time import perf_counter
from typing import TypedDict

from chatrag.config import Settings
from chatrag.errors import IngestionError
from chatrag.services.rag.chunker import validate_chunking
from chatrag.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from chatrag.services.rag.gateway import build_gateway
from chatrag.services.rag.ingest import ingest_exports
from chatrag.services.rag.vector_store import IndexStore, store_exists

logger = logging.getLogger(__name__)

DIMENSION_SAMPLE_TEXT = "dimension check"


class ReindexResult(TypedDict):
    documents: int
    chunks: int
    failed: list[dict[str, str]]
    skipped: list[str]
    store_path: str
    duration_ms: int
    embedding_dim: int
    embed_model: str | None


def _self_check(store_path: Path, expected_records: int) -> int:
    reloaded = IndexStore.load(store_path)
    if reloaded.size() != expected_records:
        raise IngestionError(
            f"reindex self-check failed: wrote {expected_records} records, read back {reloaded.size()}"
        )
    return reloaded.dimension


def run_reindex_job(
    *,
    data_dir: Path,
    store_path: Path,
    chunk_size: int,
    chunk_overlap: int,
    settings: Settings,
    embedding_client: EmbeddingClient | None = None,
    dimension: int | None = None,
) -> ReindexResult:
    validate_chunking(max_size=chunk_size, overlap=chunk_overlap)
    start = perf_counter()

    if embedding_client is None:
        embedding_client = build_embedding_client(settings)
    gateway = build_gateway(settings, embedding_client)

    if dimension is None:
        dimension = len(gateway.embed_query(DIMENSION_SAMPLE_TEXT))

    store = IndexStore(dimension, embed_model=gateway.model_name)
    summary = ingest_exports(
        data_dir=data_dir,
        store=store,
        gateway=gateway,
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        day_first=settings.day_first,
    )

    if store.size() == 0:
        details = "; ".join(f"{path}: {error}" for path, error in summary.failed_documents)
        raise IngestionError(
            f"reindex self-check failed: no chunks ingested from {data_dir}"
            + (f" ({details})" if details else "")
        )

    # concurrent rebuilds of the same store each get their own building file
    store_path.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(dir=store_path.parent, prefix=f"{store_path.name}.", suffix=".building")
    os.close(fd)
    building_path = Path(name)
    try:
        store.persist(building_path)
        embedding_dim = _self_check(building_path, store.size())
        os.replace(building_path, store_path)
    finally:
        if building_path.exists():
            building_path.unlink()

    duration_ms = int((perf_counter() - start) * 1000)
    return {
        "documents": summary.document_count,
        "chunks": summary.chunk_count,
        "failed": [{"source_path": path, "error": error} for path, error in summary.failed_documents],
        "skipped": summary.skipped_documents,
        "store_path": str(store_path),
        "duration_ms": duration_ms,
        "embedding_dim": embedding_dim,
        "embed_model": store.embed_model,
    }


def open_or_build(
    settings: Settings,
    *,
    embedding_client: EmbeddingClient | None = None,
    data_dir: Path | None = None,
    store_path: Path | None = None,
) -> IndexStore:
    """Load the persisted store, ingesting the exports first when none exists.

    A store that exists but cannot be read raises CorruptStoreError instead of
    being rebuilt.
    """
    resolved_store_path = store_path or Path(settings.store_path)
    if not store_exists(resolved_store_path):
        logger.info("no index at %s; ingesting exports first", resolved_store_path)
        run_reindex_job(
            data_dir=data_dir or Path(settings.data_dir),
            store_path=resolved_store_path,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            settings=settings,
            embedding_client=embedding_client,
        )
    return IndexStore.load(resolved_store_path)
