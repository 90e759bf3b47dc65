from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    data_dir: str
    store_dir: str
    store_path: str
    chunk_size: int
    chunk_overlap: int
    top_k: int
    day_first: bool
    embed_backend: str
    embedding_dim: int
    embed_batch_size: int
    embed_workers: int
    retry_attempts: int
    retry_base_seconds: float
    retry_max_seconds: float
    generator: str
    stream: bool
    ask_timeout_seconds: float | None
    log_level: str
    ollama_base_url: str
    ollama_model: str
    ollama_fallback_model: str
    ollama_embed_base_url: str
    ollama_embed_model: str
    ollama_timeout_seconds: float


@lru_cache
def get_settings() -> Settings:
    store_dir = os.getenv("CHATRAG_STORE_DIR", "data/chatrag_index")
    store_path = os.getenv("CHATRAG_STORE_PATH") or str(Path(store_dir) / "index.db")
    ask_timeout = _to_float(os.getenv("CHATRAG_ASK_TIMEOUT_SECONDS"), default=0.0, minimum=0.0)
    ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")

    return Settings(
        data_dir=os.getenv("CHATRAG_DATA_DIR", "data/exports"),
        store_dir=store_dir,
        store_path=store_path,
        chunk_size=_to_int(os.getenv("CHATRAG_CHUNK_SIZE"), default=1000, minimum=1),
        chunk_overlap=_to_int(os.getenv("CHATRAG_CHUNK_OVERLAP"), default=100, minimum=0),
        top_k=_to_int(os.getenv("CHATRAG_TOP_K"), default=4, minimum=1),
        day_first=_to_bool(os.getenv("CHATRAG_DAY_FIRST"), default=False),
        embed_backend=os.getenv("CHATRAG_EMBED_BACKEND", "ollama").strip().lower(),
        embedding_dim=_to_int(os.getenv("CHATRAG_EMBEDDING_DIM"), default=768, minimum=1),
        embed_batch_size=_to_int(os.getenv("CHATRAG_EMBED_BATCH_SIZE"), default=32, minimum=1),
        embed_workers=_to_int(os.getenv("CHATRAG_EMBED_WORKERS"), default=2, minimum=1),
        retry_attempts=_to_int(os.getenv("CHATRAG_RETRY_ATTEMPTS"), default=4, minimum=1),
        retry_base_seconds=_to_float(
            os.getenv("CHATRAG_RETRY_BASE_SECONDS"), default=0.5, minimum=0.0
        ),
        retry_max_seconds=_to_float(
            os.getenv("CHATRAG_RETRY_MAX_SECONDS"), default=8.0, minimum=0.0
        ),
        generator=os.getenv("CHATRAG_GENERATOR", "ollama").strip().lower(),
        stream=_to_bool(os.getenv("CHATRAG_STREAM"), default=False),
        ask_timeout_seconds=ask_timeout or None,
        log_level=os.getenv("CHATRAG_LOG_LEVEL", "INFO").strip().upper(),
        ollama_base_url=ollama_base_url,
        ollama_model=os.getenv("OLLAMA_MODEL", "qwen2.5:7b-instruct-q4_K_M"),
        ollama_fallback_model=os.getenv("OLLAMA_FALLBACK_MODEL", "qwen2.5:3b-instruct-q4_K_M"),
        ollama_embed_base_url=os.getenv("OLLAMA_EMBED_BASE_URL", ollama_base_url),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        ollama_timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "30")),
    )
