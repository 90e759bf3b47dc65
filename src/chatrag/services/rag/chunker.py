from __future__ import annotations

from typing import Sequence

from chatrag.errors import ConfigError
from chatrag.services.rag.assembler import render_message
from chatrag.services.rag.types import Chunk, Document


def validate_chunking(*, max_size: int, overlap: int) -> None:
    if max_size <= 0:
        raise ConfigError("chunk_size must be > 0")
    if overlap < 0:
        raise ConfigError("chunk_overlap must be >= 0")
    if overlap >= max_size:
        raise ConfigError("chunk_overlap must be smaller than chunk_size")


def _overlap_width(*, previous_length: int, line_length: int, max_size: int, overlap: int) -> int:
    # the joining newline counts toward overlap; the tail stays inside the previous chunk
    tail = min(overlap - 1, previous_length)
    # keep the first line of the body inside max_size
    tail = min(tail, max_size - line_length - 1)
    if tail <= 0:
        return 0
    return tail + 1


def split_document(document: Document, *, max_size: int, overlap: int) -> list[Chunk]:
    validate_chunking(max_size=max_size, overlap=overlap)

    lines = [render_message(message) for message in document.messages]
    rendering = "\n".join(lines)

    starts: list[int] = []
    cursor = 0
    for line in lines:
        starts.append(cursor)
        cursor += len(line) + 1
    ends = [start + len(line) for start, line in zip(starts, lines)]

    chunks: list[Chunk] = []
    index = 0
    while index < len(lines):
        body_start = starts[index]
        width = 0
        if chunks and overlap > 0:
            width = _overlap_width(
                previous_length=chunks[-1].length,
                line_length=len(lines[index]),
                max_size=max_size,
                overlap=overlap,
            )

        last = index
        while last + 1 < len(lines) and width + (ends[last + 1] - body_start) <= max_size:
            last += 1

        ordinal = len(chunks)
        chunks.append(
            Chunk(
                chunk_id=f"{document.doc_id}-{ordinal:04d}",
                document_id=document.doc_id,
                ordinal=ordinal,
                text=rendering[body_start - width : ends[last]],
                overlap_with_predecessor=width,
                start_time=document.messages[index].timestamp,
                end_time=document.messages[last].timestamp,
            )
        )
        index = last + 1

    return chunks


def chunk_documents(
    documents: Sequence[Document],
    *,
    chunk_size: int,
    chunk_overlap: int,
) -> list[Chunk]:
    chunk_records: list[Chunk] = []
    for document in documents:
        chunk_records.extend(split_document(document, max_size=chunk_size, overlap=chunk_overlap))
    return chunk_records


def reconstruct(chunks: Sequence[Chunk]) -> str:
    """Rebuild a document's canonical rendering from its ordered chunks."""
    return "\n".join(chunk.body for chunk in chunks)
