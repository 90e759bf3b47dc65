from __future__ import annotations

from array import array
from contextlib import closing
from datetime import datetime, timezone
import hashlib
import logging
import os
from pathlib import Path
import sqlite3
import sys
import tempfile
from threading import RLock
from typing import Sequence

from chatrag.errors import (
    CorruptStoreError,
    DimensionMismatchError,
    DuplicateChunkError,
    StoreNotFoundError,
)
from chatrag.services.rag.types import Chunk, Document, DocumentInfo, VectorRecord

logger = logging.getLogger(__name__)

STORE_MAGIC = "chatrag-index"
FORMAT_VERSION = "1"


def _encode_embedding(values: Sequence[float]) -> bytes:
    vector = array("d", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes, *, byteorder: str) -> tuple[float, ...]:
    vector = array("d")
    vector.frombytes(blob)
    if byteorder != sys.byteorder:
        vector.byteswap()
    return tuple(vector)


def _content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _ensure_schema(connection: sqlite3.Connection) -> None:
    connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            source_path TEXT NOT NULL,
            span_start TEXT NOT NULL,
            span_end TEXT NOT NULL,
            message_count INTEGER NOT NULL,
            content_hash TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS chunks (
            id TEXT PRIMARY KEY,
            doc_id TEXT NOT NULL,
            chunk_index INTEGER NOT NULL,
            text TEXT NOT NULL,
            char_length INTEGER NOT NULL,
            overlap INTEGER NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL,
            seq INTEGER NOT NULL UNIQUE
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_doc_id ON chunks(doc_id);
        """
    )


class IndexStore:
    """Append-only collection of chunks and their embeddings.

    All mutation and persistence go through one lock; readers work on
    snapshots, so a search never observes a half-applied ``add_document``.
    """

    def __init__(self, dimension: int, *, embed_model: str | None = None) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")
        self._dimension = dimension
        self._embed_model = embed_model
        self._records: list[VectorRecord] = []
        self._chunk_ids: set[str] = set()
        self._documents: dict[str, DocumentInfo] = {}
        self._lock = RLock()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def embed_model(self) -> str | None:
        return self._embed_model

    def size(self) -> int:
        with self._lock:
            return len(self._records)

    def snapshot(self) -> tuple[VectorRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def chunk_ids(self) -> list[str]:
        return [record.chunk_id for record in self.snapshot()]

    def has_document(self, doc_id: str) -> bool:
        with self._lock:
            return doc_id in self._documents or any(
                record.chunk.document_id == doc_id for record in self._records
            )

    def documents(self) -> list[DocumentInfo]:
        with self._lock:
            return sorted(self._documents.values(), key=lambda info: info.doc_id)

    def _checked_vector(self, chunk: Chunk, vector: Sequence[float]) -> tuple[float, ...]:
        if len(vector) != self._dimension:
            raise DimensionMismatchError(
                expected=self._dimension,
                actual=len(vector),
                context=f"chunk {chunk.chunk_id}",
            )
        return tuple(float(value) for value in vector)

    def add(self, chunk: Chunk, vector: Sequence[float]) -> None:
        with self._lock:
            values = self._checked_vector(chunk, vector)
            if chunk.chunk_id in self._chunk_ids:
                raise DuplicateChunkError(f"Chunk already stored: {chunk.chunk_id}")
            self._records.append(VectorRecord(chunk=chunk, vector=values))
            self._chunk_ids.add(chunk.chunk_id)

    def add_document(
        self,
        document: Document,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
    ) -> None:
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")

        with self._lock:
            if document.doc_id in self._documents:
                raise DuplicateChunkError(f"Document already stored: {document.doc_id}")

            records: list[VectorRecord] = []
            seen: set[str] = set()
            for chunk, vector in zip(chunks, vectors):
                if chunk.chunk_id in self._chunk_ids or chunk.chunk_id in seen:
                    raise DuplicateChunkError(f"Chunk already stored: {chunk.chunk_id}")
                seen.add(chunk.chunk_id)
                records.append(VectorRecord(chunk=chunk, vector=self._checked_vector(chunk, vector)))

            self._records.extend(records)
            self._chunk_ids.update(seen)
            self._documents[document.doc_id] = DocumentInfo(
                doc_id=document.doc_id,
                source_path=document.source_path,
                span_start=document.span_start,
                span_end=document.span_end,
                message_count=document.message_count,
                content_hash=_content_hash(document.text),
            )

    def persist(self, path: Path) -> Path:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(dir=path.parent, prefix=f"{path.name}.", suffix=".tmp")
            os.close(fd)
            tmp_path = Path(name)

            try:
                with closing(sqlite3.connect(tmp_path)) as connection:
                    with connection:
                        _ensure_schema(connection)
                        self._write(connection)
                os.replace(tmp_path, path)
            finally:
                if tmp_path.exists():
                    tmp_path.unlink()

            logger.info("persisted %d records (dim=%d) to %s", len(self._records), self._dimension, path)
        return path

    def _write(self, connection: sqlite3.Connection) -> None:
        connection.executemany(
            "INSERT INTO meta (key, value) VALUES (?, ?)",
            [
                ("magic", STORE_MAGIC),
                ("format_version", FORMAT_VERSION),
                ("dimension", str(self._dimension)),
                ("embed_model", self._embed_model or ""),
                ("byteorder", sys.byteorder),
                ("created_at", datetime.now(timezone.utc).isoformat()),
            ],
        )

        connection.executemany(
            """
            INSERT INTO documents (id, source_path, span_start, span_end, message_count, content_hash)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    info.doc_id,
                    info.source_path,
                    info.span_start.isoformat(),
                    info.span_end.isoformat(),
                    info.message_count,
                    info.content_hash,
                )
                for info in self._documents.values()
            ],
        )

        connection.executemany(
            """
            INSERT INTO chunks (
                id, doc_id, chunk_index, text, char_length, overlap,
                start_time, end_time, embedding, embedding_dim, seq
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    record.chunk.chunk_id,
                    record.chunk.document_id,
                    record.chunk.ordinal,
                    record.chunk.text,
                    record.chunk.length,
                    record.chunk.overlap_with_predecessor,
                    record.chunk.start_time.isoformat(),
                    record.chunk.end_time.isoformat(),
                    sqlite3.Binary(_encode_embedding(record.vector)),
                    record.dimension,
                    seq,
                )
                for seq, record in enumerate(self._records)
            ],
        )

    @classmethod
    def load(cls, path: Path) -> IndexStore:
        if not path.exists():
            raise StoreNotFoundError(f"Index store not found: {path}")

        try:
            with closing(sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)) as connection:
                meta = dict(connection.execute("SELECT key, value FROM meta").fetchall())
                store = cls._from_meta(meta, path)
                document_rows = connection.execute(
                    """
                    SELECT id, source_path, span_start, span_end, message_count, content_hash
                    FROM documents
                    ORDER BY id
                    """
                ).fetchall()
                chunk_rows = connection.execute(
                    """
                    SELECT id, doc_id, chunk_index, text, overlap, start_time, end_time,
                           embedding, embedding_dim
                    FROM chunks
                    ORDER BY seq
                    """
                ).fetchall()
        except sqlite3.DatabaseError as exc:
            raise CorruptStoreError(f"Index store {path} is unreadable: {exc}") from exc

        byteorder = meta.get("byteorder", sys.byteorder)
        try:
            for doc_id, source_path, span_start, span_end, message_count, content_hash in document_rows:
                store._documents[doc_id] = DocumentInfo(
                    doc_id=doc_id,
                    source_path=source_path,
                    span_start=datetime.fromisoformat(span_start),
                    span_end=datetime.fromisoformat(span_end),
                    message_count=int(message_count),
                    content_hash=content_hash,
                )

            for row in chunk_rows:
                store._load_chunk_row(row, byteorder=byteorder, path=path)
        except (TypeError, ValueError) as exc:
            raise CorruptStoreError(f"Index store {path} has a malformed record: {exc}") from exc

        logger.info("loaded %d records (dim=%d) from %s", store.size(), store.dimension, path)
        return store

    @classmethod
    def _from_meta(cls, meta: dict[str, str], path: Path) -> IndexStore:
        if meta.get("magic") != STORE_MAGIC:
            raise CorruptStoreError(f"Index store {path} has an unknown format marker")
        if meta.get("format_version") != FORMAT_VERSION:
            raise CorruptStoreError(
                f"Index store {path} has format version {meta.get('format_version')!r}, "
                f"expected {FORMAT_VERSION!r}; rebuild it with chatrag-ingest"
            )
        dimension_raw = meta.get("dimension", "")
        if not dimension_raw.isdigit() or int(dimension_raw) <= 0:
            raise CorruptStoreError(f"Index store {path} has an invalid dimension: {dimension_raw!r}")
        return cls(int(dimension_raw), embed_model=meta.get("embed_model") or None)

    def _load_chunk_row(self, row: tuple[object, ...], *, byteorder: str, path: Path) -> None:
        (
            chunk_id,
            doc_id,
            chunk_index,
            text,
            overlap,
            start_time,
            end_time,
            embedding_blob,
            embedding_dim,
        ) = row
        if (
            not isinstance(chunk_id, str)
            or not isinstance(doc_id, str)
            or not isinstance(text, str)
            or not isinstance(embedding_blob, bytes)
        ):
            raise CorruptStoreError(f"Index store {path} has a malformed chunk row: {chunk_id!r}")
        if embedding_dim != self._dimension:
            raise CorruptStoreError(
                f"Index store {path} mixes dimensions: chunk {chunk_id} has {embedding_dim}, "
                f"store has {self._dimension}"
            )
        if len(embedding_blob) != self._dimension * array("d").itemsize:
            raise CorruptStoreError(f"Index store {path} has a truncated vector for chunk {chunk_id}")

        chunk = Chunk(
            chunk_id=chunk_id,
            document_id=doc_id,
            ordinal=int(chunk_index),
            text=text,
            overlap_with_predecessor=int(overlap),
            start_time=datetime.fromisoformat(str(start_time)),
            end_time=datetime.fromisoformat(str(end_time)),
        )
        self._records.append(
            VectorRecord(chunk=chunk, vector=_decode_embedding(embedding_blob, byteorder=byteorder))
        )
        self._chunk_ids.add(chunk_id)


def store_exists(path: Path) -> bool:
    return path.is_file()
