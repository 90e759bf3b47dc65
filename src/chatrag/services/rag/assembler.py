from __future__ import annotations

import hashlib
from pathlib import Path
import re
from typing import Sequence

from chatrag.errors import EmptyDocumentError
from chatrag.services.rag.types import Document, Message

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def render_message(message: Message) -> str:
    return f"[{message.timestamp.strftime(TIMESTAMP_FORMAT)}] {message.sender}: {message.text}"


def document_id_for(path: Path, root: Path | None = None, *, disambiguate: bool = False) -> str:
    relative = path.relative_to(root) if root is not None else Path(path.name)
    stem = relative.with_suffix("").as_posix()
    slug = re.sub(r"[^a-z0-9]+", "-", stem.lower()).strip("-") or "conversation"
    if not disambiguate:
        return slug
    digest = hashlib.sha256(relative.as_posix().encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def assemble(
    doc_id: str,
    messages: Sequence[Message],
    *,
    source_path: str | None = None,
) -> Document:
    if not messages:
        raise EmptyDocumentError(f"No messages recognized for document {doc_id!r}")

    # sorted() is stable, so equal timestamps keep file order
    ordered = tuple(sorted(messages, key=lambda message: message.timestamp))

    return Document(
        doc_id=doc_id,
        source_path=source_path or doc_id,
        messages=ordered,
        span_start=ordered[0].timestamp,
        span_end=ordered[-1].timestamp,
        message_count=len(ordered),
        text="\n".join(render_message(message) for message in ordered),
    )
