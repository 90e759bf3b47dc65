from pathlib import Path
from typing import Annotated, Any, Literal, NoReturn

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from chatrag.config import get_settings
from chatrag.errors import (
    ConfigError,
    CorruptStoreError,
    DimensionMismatchError,
    EmbeddingError,
    EmptyStoreError,
    GenerationError,
    IngestionError,
    OperationCancelledError,
    StoreNotFoundError,
)
from chatrag.llm import Generator, build_generator
from chatrag.services.rag import RetrievalSession, search_index
from chatrag.services.rag.embedding_client import EmbeddingClient, build_embedding_client
from chatrag.services.rag.gateway import build_gateway
from chatrag.services.rag.reindex_job_runner import run_reindex_job
from chatrag.services.rag.types import Turn
from chatrag.services.rag.vector_store import IndexStore

app = FastAPI(title="chatrag", version="0.1.0")


class TurnModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant"]
    text: str


class AskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(min_length=1)
    k: int = Field(default=4, ge=1, le=20)
    history: list[TurnModel] = Field(default_factory=list)


class IngestRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: str | None = None
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_overlap: int | None = Field(default=None, ge=0)


def get_llm_client() -> Generator | None:
    return build_generator(get_settings())


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def _raise_retrieval_error(exc: Exception) -> NoReturn:
    if isinstance(exc, StoreNotFoundError):
        raise HTTPException(
            status_code=503,
            detail=f"{exc}. Run `chatrag-ingest` first.",
        ) from exc
    if isinstance(exc, EmptyStoreError):
        raise HTTPException(status_code=409, detail=f"nothing to search: {exc}") from exc
    if isinstance(exc, CorruptStoreError):
        raise HTTPException(
            status_code=500,
            detail=f"{exc}. Rebuild the index with `chatrag-ingest`.",
        ) from exc
    if isinstance(exc, DimensionMismatchError):
        raise HTTPException(
            status_code=500,
            detail=f"{exc}. The embedding model does not match the index; rebuild it.",
        ) from exc
    if isinstance(exc, EmbeddingError):
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc
    raise exc


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/rag/search")
def rag_search(
    q: str,
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    k: int = 4,
) -> list[dict[str, object]]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    settings = get_settings()
    top_k = max(1, min(k, 20))

    try:
        hits = search_index(
            store_path=Path(settings.store_path),
            query_text=q,
            top_k=top_k,
            embedding_client=build_gateway(settings, embedding_client),
        )
    except (StoreNotFoundError, EmptyStoreError, CorruptStoreError, DimensionMismatchError, EmbeddingError) as exc:
        _raise_retrieval_error(exc)

    return [hit.to_dict() for hit in hits]


@app.post("/ask")
def ask(
    request: AskRequest,
    llm_client: Annotated[Generator | None, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> dict[str, Any]:
    question = request.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="question must not be empty")

    settings = get_settings()

    try:
        store = IndexStore.load(Path(settings.store_path))
        session = RetrievalSession(
            store,
            build_gateway(settings, embedding_client),
            llm_client,
            default_k=settings.top_k,
        )
        result = session.ask(
            question,
            request.k,
            [Turn(role=turn.role, text=turn.text) for turn in request.history],
            timeout_seconds=settings.ask_timeout_seconds,
        )
    except GenerationError as exc:
        raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc
    except OperationCancelledError as exc:
        raise HTTPException(
            status_code=504,
            detail=f"Question timed out after {settings.ask_timeout_seconds}s: {exc}",
        ) from exc
    except (StoreNotFoundError, EmptyStoreError, CorruptStoreError, DimensionMismatchError, EmbeddingError) as exc:
        _raise_retrieval_error(exc)

    return {
        "answer": result.answer,
        "sources": [hit.to_dict() for hit in result.sources],
        "meta": {
            "model": result.model,
            "generated": result.generated,
            "retrieval_k": request.k,
            "retrieved_count": len(result.sources),
            "store_path": settings.store_path,
        },
    }


@app.post("/rag/ingest")
def rag_ingest(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    request: IngestRequest | None = None,
) -> dict[str, Any]:
    settings = get_settings()
    payload = request or IngestRequest()

    try:
        metrics = run_reindex_job(
            data_dir=Path(payload.data_dir or settings.data_dir),
            store_path=Path(settings.store_path),
            chunk_size=payload.chunk_size or settings.chunk_size,
            chunk_overlap=(
                payload.chunk_overlap if payload.chunk_overlap is not None else settings.chunk_overlap
            ),
            settings=settings,
            embedding_client=embedding_client,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (FileNotFoundError, NotADirectoryError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except IngestionError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except EmbeddingError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc

    return dict(metrics)


def run() -> None:
    import uvicorn

    uvicorn.run("chatrag.main:app", host="127.0.0.1", port=8000, reload=False)


if __name__ == "__main__":
    run()
