from chatrag.services.rag.ingest import ingest_exports
from chatrag.services.rag.query import search, search_index
from chatrag.services.rag.session import RetrievalSession
from chatrag.services.rag.types import AskResult, IngestionSummary, SearchHit
from chatrag.services.rag.vector_store import IndexStore

__all__ = [
    "AskResult",
    "IndexStore",
    "IngestionSummary",
    "RetrievalSession",
    "SearchHit",
    "ingest_exports",
    "search",
    "search_index",
]
