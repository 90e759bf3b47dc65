from __future__ import annotations

import logging
from pathlib import Path
from threading import Event

from chatrag.errors import ChatRagError, OperationCancelledError
from chatrag.services.rag.assembler import assemble, document_id_for
from chatrag.services.rag.chunker import split_document, validate_chunking
from chatrag.services.rag.gateway import EmbeddingGateway
from chatrag.services.rag.loader import discover_exports
from chatrag.services.rag.parser import parse, read_export
from chatrag.services.rag.types import IngestionSummary
from chatrag.services.rag.vector_store import IndexStore

logger = logging.getLogger(__name__)


def _ingest_export(
    path: Path,
    *,
    doc_id: str,
    source_path: str,
    store: IndexStore,
    gateway: EmbeddingGateway,
    chunk_size: int,
    chunk_overlap: int,
    day_first: bool,
    cancel_event: Event | None,
) -> int:
    messages = parse(read_export(path), day_first=day_first)
    document = assemble(doc_id, messages, source_path=source_path)
    chunks = split_document(document, max_size=chunk_size, overlap=chunk_overlap)
    vectors = gateway.embed_batch([chunk.text for chunk in chunks], cancel_event=cancel_event)
    store.add_document(document, chunks, vectors)
    return len(chunks)


def ingest_exports(
    *,
    data_dir: Path,
    store: IndexStore,
    gateway: EmbeddingGateway,
    chunk_size: int,
    chunk_overlap: int,
    day_first: bool = False,
    cancel_event: Event | None = None,
) -> IngestionSummary:
    validate_chunking(max_size=chunk_size, overlap=chunk_overlap)

    document_count = 0
    chunk_count = 0
    skipped: list[str] = []
    failed: list[tuple[str, str]] = []

    for path in discover_exports(data_dir):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("ingestion cancelled")

        source_path = path.relative_to(data_dir).as_posix()
        indexed = {info.source_path: info.doc_id for info in store.documents()}
        if source_path in indexed:
            logger.info("skipping %s: document %s already indexed", source_path, indexed[source_path])
            skipped.append(source_path)
            continue

        doc_id = document_id_for(path, data_dir)
        if store.has_document(doc_id):
            # another export already slugs to this id
            doc_id = document_id_for(path, data_dir, disambiguate=True)

        try:
            added = _ingest_export(
                path,
                doc_id=doc_id,
                source_path=source_path,
                store=store,
                gateway=gateway,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                day_first=day_first,
                cancel_event=cancel_event,
            )
        except OperationCancelledError:
            raise
        except ChatRagError as exc:
            logger.warning("failed to ingest %s: %s", source_path, exc)
            failed.append((source_path, str(exc)))
            continue

        logger.info("ingested %s as %s chunks=%d", source_path, doc_id, added)
        document_count += 1
        chunk_count += added

    return IngestionSummary(
        document_count=document_count,
        chunk_count=chunk_count,
        skipped_documents=skipped,
        failed_documents=failed,
    )
