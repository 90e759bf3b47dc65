from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal


@dataclass(frozen=True)
class Message:
    timestamp: datetime
    sender: str
    text: str


@dataclass(frozen=True)
class Document:
    doc_id: str
    source_path: str
    messages: tuple[Message, ...]
    span_start: datetime
    span_end: datetime
    message_count: int
    text: str


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    document_id: str
    ordinal: int
    text: str
    overlap_with_predecessor: int
    start_time: datetime
    end_time: datetime

    @property
    def length(self) -> int:
        return len(self.text)

    @property
    def body(self) -> str:
        return self.text[self.overlap_with_predecessor :]


@dataclass(frozen=True)
class VectorRecord:
    chunk: Chunk
    vector: tuple[float, ...]

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class DocumentInfo:
    doc_id: str
    source_path: str
    span_start: datetime
    span_end: datetime
    message_count: int
    content_hash: str


@dataclass(frozen=True)
class SearchHit:
    chunk: Chunk
    score: float

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def document_id(self) -> str:
        return self.chunk.document_id

    @property
    def text(self) -> str:
        return self.chunk.text

    def to_dict(self) -> dict[str, object]:
        return {
            "chunk_id": self.chunk.chunk_id,
            "document_id": self.chunk.document_id,
            "score": round(self.score, 6),
            "start_time": self.chunk.start_time.isoformat(),
            "end_time": self.chunk.end_time.isoformat(),
            "text": self.chunk.text,
        }


@dataclass(frozen=True)
class Turn:
    role: Literal["user", "assistant"]
    text: str


@dataclass(frozen=True)
class AskResult:
    answer: str
    sources: list[SearchHit]
    model: str | None = None
    generated: bool = False


@dataclass(frozen=True)
class IngestionSummary:
    document_count: int
    chunk_count: int
    store_path: str | None = None
    skipped_documents: list[str] = field(default_factory=list)
    failed_documents: list[tuple[str, str]] = field(default_factory=list)
