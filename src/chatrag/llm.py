from __future__ import annotations

from contextlib import closing
from functools import partial
import json
import logging
from random import random
from time import sleep
from typing import TYPE_CHECKING, Callable, Iterator, Protocol, Sequence, TypeVar

import httpx

from chatrag.errors import ConfigError, GenerationError
from chatrag.services.rag.embedding_client import TRANSIENT_STATUS_CODES
from chatrag.services.rag.types import SearchHit, Turn

if TYPE_CHECKING:
    from chatrag.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_PROMPT = (
    "You answer questions about the user's own chat history. "
    "Answer using only the provided conversation excerpts when possible and "
    "mention who said what and when. If the excerpts are insufficient, say so briefly."
)


class Generator(Protocol):
    def generate(
        self,
        *,
        query: str,
        context_chunks: Sequence[SearchHit],
        history: Sequence[Turn],
    ) -> str | Iterator[str]: ...


def format_context(hits: Sequence[SearchHit]) -> str:
    return "\n\n".join(
        f"[{hit.document_id}#{hit.chunk_id}] ({hit.score:.3f})\n{hit.text}"
        for hit in hits
    ) or "No relevant context found in the chat archive."


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


class OllamaChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str,
        timeout_seconds: float = 30.0,
        stream: bool = False,
        max_attempts: int = 3,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 8.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._timeout_seconds = timeout_seconds
        self._stream = stream
        self._max_attempts = max_attempts
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds

    @property
    def model_name(self) -> str:
        return self._default_model

    def generate(
        self,
        *,
        query: str,
        context_chunks: Sequence[SearchHit],
        history: Sequence[Turn],
    ) -> str | Iterator[str]:
        messages = self._build_messages(query=query, context=format_context(context_chunks), history=history)
        if self._stream:
            return self._stream_with_fallback(messages)

        for model, used_fallback in self._model_candidates():
            try:
                return self._with_retry(model, partial(self._chat_completion, model=model, messages=messages))
            except (httpx.HTTPError, ValueError) as exc:
                if used_fallback or not self._has_fallback():
                    raise GenerationError(str(exc)) from exc
                logger.warning("model %s failed (%s); falling back to %s", model, exc, self._fallback_model)

        raise GenerationError("No model candidates configured")

    def _with_retry(self, model: str, call: Callable[[], T]) -> T:
        delay = self._retry_base_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except httpx.HTTPError as exc:
                if not _is_transient(exc) or attempt >= self._max_attempts:
                    raise
                delay = self._back_off(model, attempt, delay, exc)

    def _back_off(self, model: str, attempt: int, delay: float, exc: Exception) -> float:
        logger.warning(
            "chat completion failed model=%s attempt=%d/%d error=%s; retrying in %.1fs",
            model,
            attempt,
            self._max_attempts,
            exc,
            delay,
        )
        sleep(delay + random() * 0.2 * delay)
        return min(delay * 2, self._retry_max_seconds)

    def _has_fallback(self) -> bool:
        return bool(self._fallback_model) and self._fallback_model != self._default_model

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._has_fallback():
            candidates.append((self._fallback_model, True))
        return candidates

    def _build_messages(
        self,
        *,
        query: str,
        context: str,
        history: Sequence[Turn],
    ) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages.extend({"role": turn.role, "content": turn.text} for turn in history)
        messages.append({"role": "user", "content": f"Context:\n{context}\n\nQuestion: {query}"})
        return messages

    def _chat_completion(self, *, model: str, messages: list[dict[str, str]]) -> str:
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={"model": model, "messages": messages, "temperature": 0},
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()

    def _stream_with_fallback(self, messages: list[dict[str, str]]) -> Iterator[str]:
        for model, used_fallback in self._model_candidates():
            delay = self._retry_base_seconds
            attempt = 0
            while True:
                attempt += 1
                emitted = False
                try:
                    with closing(self._stream_completion(model=model, messages=messages)) as fragments:
                        for fragment in fragments:
                            emitted = True
                            yield fragment
                    return
                except (httpx.HTTPError, ValueError) as exc:
                    # neither a retry nor a fallback can restart a stream the caller has already seen
                    if emitted:
                        raise GenerationError(str(exc)) from exc
                    if _is_transient(exc) and attempt < self._max_attempts:
                        delay = self._back_off(model, attempt, delay, exc)
                        continue
                    if used_fallback or not self._has_fallback():
                        raise GenerationError(str(exc)) from exc
                    logger.warning("model %s failed (%s); falling back to %s", model, exc, self._fallback_model)
                    break

    def _stream_completion(self, *, model: str, messages: list[dict[str, str]]) -> Iterator[str]:
        with httpx.stream(
            "POST",
            f"{self._base_url}/chat/completions",
            json={"model": model, "messages": messages, "temperature": 0, "stream": True},
            timeout=self._timeout_seconds,
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if data == "[DONE]":
                    return

                payload = json.loads(data)
                choices = payload.get("choices") if isinstance(payload, dict) else None
                if not isinstance(choices, list) or not choices:
                    raise ValueError("Invalid chat completion chunk: missing choices")
                delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
                content = delta.get("content") if isinstance(delta, dict) else None
                if isinstance(content, str) and content:
                    yield content


def build_generator(settings: Settings) -> Generator | None:
    if settings.generator == "none":
        return None
    if settings.generator == "ollama":
        return OllamaChatClient(
            base_url=settings.ollama_base_url,
            default_model=settings.ollama_model,
            fallback_model=settings.ollama_fallback_model,
            timeout_seconds=settings.ollama_timeout_seconds,
            stream=settings.stream,
            max_attempts=settings.retry_attempts,
            retry_base_seconds=settings.retry_base_seconds,
            retry_max_seconds=settings.retry_max_seconds,
        )
    raise ConfigError(f"Unknown generator: {settings.generator!r}")
