from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
import logging
from threading import Event, Timer
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Sequence, TypeVar

from chatrag.errors import EmptyStoreError, OperationCancelledError
from chatrag.services.rag.gateway import EmbeddingGateway
from chatrag.services.rag.query import search
from chatrag.services.rag.types import AskResult, SearchHit, Turn
from chatrag.services.rag.vector_store import IndexStore

if TYPE_CHECKING:
    from chatrag.llm import Generator

logger = logging.getLogger(__name__)

_VALID_ROLES = {"user", "assistant"}
_POLL_SECONDS = 0.02
_END_OF_STREAM = object()

T = TypeVar("T")


def _coerce_turns(history: Iterable[Turn | tuple[str, str]]) -> list[Turn]:
    turns: list[Turn] = []
    for item in history:
        turn = item if isinstance(item, Turn) else Turn(role=item[0], text=item[1])  # type: ignore[arg-type]
        if turn.role not in _VALID_ROLES:
            raise ValueError(f"history role must be one of {sorted(_VALID_ROLES)}, got {turn.role!r}")
        turns.append(turn)
    return turns


def retrieval_only_answer(hits: Sequence[SearchHit]) -> str:
    if not hits:
        return "No matching messages found."
    blocks = [
        f"{position}. [{hit.document_id}] score={hit.score:.3f}\n{hit.text}"
        for position, hit in enumerate(hits, start=1)
    ]
    return "Most relevant excerpts:\n\n" + "\n\n".join(blocks)


def _raise_if_cancelled(token: Event, stage: str) -> None:
    if token.is_set():
        raise OperationCancelledError(f"ask cancelled during {stage}")


def _wait_for(future: Future[T], token: Event, stage: str) -> T:
    while True:
        try:
            return future.result(timeout=_POLL_SECONDS)
        except FutureTimeoutError:
            if token.is_set():
                future.cancel()
                raise OperationCancelledError(f"ask cancelled during {stage}") from None


class RetrievalSession:
    """Embed a question, retrieve top-k chunks, and hand them to a generator.

    The session holds no conversation state; callers pass prior turns in
    ``history`` on every call.
    """

    def __init__(
        self,
        store: IndexStore,
        gateway: EmbeddingGateway,
        generator: Generator | None = None,
        *,
        default_k: int = 4,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._generator = generator
        self._default_k = default_k

    @property
    def store(self) -> IndexStore:
        return self._store

    def ask(
        self,
        query: str,
        k: int | None = None,
        history: Iterable[Turn | tuple[str, str]] = (),
        *,
        cancel_event: Event | None = None,
        timeout_seconds: float | None = None,
        on_fragment: Callable[[str], None] | None = None,
    ) -> AskResult:
        """Answer ``query`` from the store.

        Setting ``cancel_event`` (or reaching ``timeout_seconds``, which sets it)
        raises OperationCancelledError within a few milliseconds, even while an
        embedding or generation request is still blocked. The abandoned request
        finishes on its worker thread and its result is discarded.
        """
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must not be empty")

        top_k = self._default_k if k is None else k
        if top_k <= 0:
            raise ValueError("k must be > 0")
        turns = _coerce_turns(history)

        if self._store.size() == 0:
            raise EmptyStoreError("The index store has no records; nothing to search")

        token = cancel_event or Event()
        timer: Timer | None = None
        if timeout_seconds is not None:
            timer = Timer(timeout_seconds, token.set)
            timer.daemon = True
            timer.start()

        # provider calls run on this worker so a blocked request never holds up cancellation
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chatrag-ask")
        try:
            return self._ask(normalized_query, top_k, turns, token, on_fragment, pool)
        finally:
            pool.shutdown(wait=False)
            if timer is not None:
                timer.cancel()

    def _ask(
        self,
        query: str,
        top_k: int,
        turns: list[Turn],
        token: Event,
        on_fragment: Callable[[str], None] | None,
        pool: ThreadPoolExecutor,
    ) -> AskResult:
        _raise_if_cancelled(token, "embedding")
        query_vector = _wait_for(
            pool.submit(self._gateway.embed_query, query, cancel_event=token),
            token,
            "embedding",
        )
        _raise_if_cancelled(token, "embedding")

        hits = search(self._store, query_vector, top_k)
        logger.debug("retrieved %d chunks for query", len(hits))

        if self._generator is None:
            return AskResult(answer=retrieval_only_answer(hits), sources=hits)

        output = _wait_for(
            pool.submit(self._generator.generate, query=query, context_chunks=hits, history=turns),
            token,
            "generation",
        )
        if isinstance(output, str):
            _raise_if_cancelled(token, "generation")
            if on_fragment is not None:
                on_fragment(output)
            answer = output
        else:
            answer = self._consume_fragments(output, token, on_fragment, pool)

        return AskResult(
            answer=answer.strip(),
            sources=hits,
            model=getattr(self._generator, "model_name", None),
            generated=True,
        )

    def _consume_fragments(
        self,
        fragments: Iterator[str],
        token: Event,
        on_fragment: Callable[[str], None] | None,
        pool: ThreadPoolExecutor,
    ) -> str:
        parts: list[str] = []
        iterator = iter(fragments)
        pending: Future[object] | None = None
        try:
            while True:
                pending = pool.submit(next, iterator, _END_OF_STREAM)
                fragment = _wait_for(pending, token, "generation")
                if fragment is _END_OF_STREAM:
                    break
                _raise_if_cancelled(token, "generation")
                parts.append(fragment)
                if on_fragment is not None:
                    on_fragment(fragment)
        finally:
            close = getattr(fragments, "close", None)
            if close is not None:
                if pending is None or pending.done():
                    close()
                else:
                    # a generator cannot be closed while the worker is still inside next()
                    pool.submit(close)
        return "".join(parts)
