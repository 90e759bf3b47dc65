from datetime import datetime

import httpx
import pytest

from chatrag.config import get_settings
from chatrag.errors import ConfigError, GenerationError
from chatrag.llm import OllamaChatClient, build_generator, format_context
from chatrag.services.rag.types import Chunk, SearchHit, Turn


class _FakeResponse:
    def __init__(self, payload: dict[str, object], *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://ollama:11434/v1/chat/completions")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> dict[str, object]:
        return self._payload


class _FakeStream:
    def __init__(self, lines: list[str], *, status_code: int = 200) -> None:
        self._lines = lines
        self._status_code = status_code
        self.closed = False

    def __enter__(self) -> "_FakeStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    def raise_for_status(self) -> None:
        _FakeResponse({}, status_code=self._status_code).raise_for_status()

    def iter_lines(self):
        yield from self._lines


def _hit() -> SearchHit:
    moment = datetime(2024, 3, 14, 18, 2)
    chunk = Chunk(
        chunk_id="family-0000",
        document_id="family",
        ordinal=0,
        text="[2024-03-14 18:02:00] Mom: dinner on Sunday?",
        overlap_with_predecessor=0,
        start_time=moment,
        end_time=moment,
    )
    return SearchHit(chunk=chunk, score=0.9)


def _client(*, stream: bool = False, fallback_model: str = "small") -> OllamaChatClient:
    return OllamaChatClient(
        base_url="http://ollama:11434/v1",
        default_model="big",
        fallback_model=fallback_model,
        timeout_seconds=5,
        stream=stream,
        max_attempts=3,
        retry_base_seconds=0,
    )


def _completion(content: str) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_generate_sends_context_and_history(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        captured["url"] = url
        captured["json"] = json
        return _FakeResponse(_completion(" Sunday at 7. "))

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)

    answer = _client().generate(
        query="when is dinner?",
        context_chunks=[_hit()],
        history=[Turn(role="user", text="hi"), Turn(role="assistant", text="hello")],
    )

    assert answer == "Sunday at 7."
    assert captured["url"] == "http://ollama:11434/v1/chat/completions"
    payload = captured["json"]
    assert payload["model"] == "big"
    messages = payload["messages"]
    assert [message["role"] for message in messages] == ["system", "user", "assistant", "user"]
    assert "[family#family-0000]" in messages[-1]["content"]
    assert "Question: when is dinner?" in messages[-1]["content"]


def test_generate_falls_back_to_secondary_model(monkeypatch: pytest.MonkeyPatch) -> None:
    models: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        models.append(json["model"])
        if json["model"] == "big":
            return _FakeResponse({}, status_code=500)
        return _FakeResponse(_completion("from fallback"))

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)

    answer = _client().generate(query="q", context_chunks=[], history=[])

    assert answer == "from fallback"
    assert models == ["big", "big", "big", "small"]


def test_generate_retries_transient_failures_before_succeeding(monkeypatch: pytest.MonkeyPatch) -> None:
    statuses = [503, 429]
    models: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        models.append(json["model"])
        if statuses:
            return _FakeResponse({}, status_code=statuses.pop(0))
        return _FakeResponse(_completion("after retries"))

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)

    answer = _client().generate(query="q", context_chunks=[], history=[])

    assert answer == "after retries"
    assert models == ["big", "big", "big"]


def test_generate_does_not_retry_client_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    models: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        models.append(json["model"])
        return _FakeResponse({}, status_code=400)

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)

    with pytest.raises(GenerationError):
        _client(fallback_model="big").generate(query="q", context_chunks=[], history=[])
    assert models == ["big"]


def test_generate_retries_connection_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        attempts.append(json["model"])
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused")
        return _FakeResponse(_completion("reconnected"))

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)

    assert _client(fallback_model="big").generate(query="q", context_chunks=[], history=[]) == "reconnected"
    assert attempts == ["big", "big"]


def test_generate_raises_generation_error_without_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        return _FakeResponse({"choices": []})

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)

    with pytest.raises(GenerationError, match="missing choices"):
        _client(fallback_model="big").generate(query="q", context_chunks=[], history=[])


def test_streaming_yields_delta_fragments(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = _FakeStream(
        [
            "",
            'data: {"choices": [{"delta": {"role": "assistant"}}]}',
            'data: {"choices": [{"delta": {"content": "Sun"}}]}',
            'data: {"choices": [{"delta": {"content": "day"}}]}',
            "data: [DONE]",
        ]
    )
    captured: dict[str, object] = {}

    def fake_stream(method: str, url: str, *, json: dict[str, object], timeout: float) -> _FakeStream:
        captured["method"] = method
        captured["json"] = json
        return stream

    monkeypatch.setattr("chatrag.llm.httpx.stream", fake_stream)

    fragments = _client(stream=True).generate(query="q", context_chunks=[_hit()], history=[])

    assert list(fragments) == ["Sun", "day"]
    assert captured["method"] == "POST"
    assert captured["json"]["stream"] is True
    assert stream.closed is True


def test_streaming_error_after_output_is_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def fake_stream(method: str, url: str, *, json: dict[str, object], timeout: float) -> _FakeStream:
        calls.append(json["model"])
        return _FakeStream(['data: {"choices": [{"delta": {"content": "partial"}}]}', "data: {not json"])

    monkeypatch.setattr("chatrag.llm.httpx.stream", fake_stream)

    fragments = _client(stream=True).generate(query="q", context_chunks=[], history=[])

    assert next(fragments) == "partial"
    with pytest.raises(GenerationError):
        next(fragments)
    assert calls == ["big"]


def test_streaming_retries_transient_failure_before_first_fragment(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def fake_stream(method: str, url: str, *, json: dict[str, object], timeout: float) -> _FakeStream:
        calls.append(json["model"])
        if len(calls) == 1:
            return _FakeStream([], status_code=502)
        return _FakeStream(['data: {"choices": [{"delta": {"content": "ok"}}]}', "data: [DONE]"])

    monkeypatch.setattr("chatrag.llm.httpx.stream", fake_stream)

    fragments = _client(stream=True).generate(query="q", context_chunks=[], history=[])

    assert list(fragments) == ["ok"]
    assert calls == ["big", "big"]


def test_build_generator_uses_retry_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATRAG_GENERATOR", "ollama")
    monkeypatch.setenv("CHATRAG_RETRY_ATTEMPTS", "2")
    monkeypatch.setenv("CHATRAG_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("OLLAMA_FALLBACK_MODEL", "")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3")
    statuses: list[int] = []

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        statuses.append(503)
        return _FakeResponse({}, status_code=503)

    monkeypatch.setattr("chatrag.llm.httpx.post", fake_post)
    generator = build_generator(get_settings())

    with pytest.raises(GenerationError):
        generator.generate(query="q", context_chunks=[], history=[])
    assert len(statuses) == 2


def test_format_context_without_hits() -> None:
    assert format_context([]) == "No relevant context found in the chat archive."


def test_build_generator_follows_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATRAG_GENERATOR", "none")
    assert build_generator(get_settings()) is None

    get_settings.cache_clear()
    monkeypatch.setenv("CHATRAG_GENERATOR", "ollama")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3")
    generator = build_generator(get_settings())
    assert isinstance(generator, OllamaChatClient)
    assert generator.model_name == "llama3"

    get_settings.cache_clear()
    monkeypatch.setenv("CHATRAG_GENERATOR", "openai")
    with pytest.raises(ConfigError):
        build_generator(get_settings())
