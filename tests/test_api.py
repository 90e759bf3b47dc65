from pathlib import Path
from threading import Event

from fastapi.testclient import TestClient
import pytest

from chatrag.config import get_settings
from chatrag.errors import GenerationError
from chatrag.main import app, get_embedding_client, get_llm_client
from chatrag.services.rag.reindex_job_runner import run_reindex_job
from chatrag.services.rag.vector_store import IndexStore


class FakeGenerator:
    model_name = "fake-model"

    def __init__(self) -> None:
        self.calls: list[dict[str, object]] = []

    def generate(self, *, query, context_chunks, history):
        self.calls.append({"query": query, "context_chunks": list(context_chunks), "history": list(history)})
        return "mocked answer"


class FailingGenerator:
    def generate(self, *, query, context_chunks, history):
        raise GenerationError("simulated failure")


class StalledGenerator:
    def __init__(self, release: Event) -> None:
        self.release = release

    def generate(self, *, query, context_chunks, history):
        self.release.wait(5)
        return "too late"


def _build_index(exports_dir: Path, store_path: Path, embedding_client) -> None:
    run_reindex_job(
        data_dir=exports_dir,
        store_path=store_path,
        chunk_size=120,
        chunk_overlap=20,
        settings=get_settings(),
        embedding_client=embedding_client,
    )


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ask_endpoint_returns_answer_sources_and_meta(
    client: TestClient,
    chatrag_env: Path,
    exports_dir: Path,
    fake_embedding_client,
) -> None:
    _build_index(exports_dir, chatrag_env, fake_embedding_client)
    generator = FakeGenerator()
    app.dependency_overrides[get_llm_client] = lambda: generator
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post(
        "/ask",
        json={
            "question": "Is the hiking trip on?",
            "k": 2,
            "history": [{"role": "user", "text": "hi"}, {"role": "assistant", "text": "hello"}],
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["answer"] == "mocked answer"
    assert len(payload["sources"]) == 2
    assert payload["sources"][0]["document_id"] == "friends"
    assert {"chunk_id", "document_id", "score", "start_time", "end_time", "text"} == set(
        payload["sources"][0].keys()
    )
    assert payload["meta"] == {
        "model": "fake-model",
        "generated": True,
        "retrieval_k": 2,
        "retrieved_count": 2,
        "store_path": str(chatrag_env),
    }
    assert generator.calls[0]["query"] == "Is the hiking trip on?"
    assert len(generator.calls[0]["history"]) == 2


def test_ask_endpoint_without_generator_returns_excerpts(
    client: TestClient,
    chatrag_env: Path,
    exports_dir: Path,
    fake_embedding_client,
) -> None:
    _build_index(exports_dir, chatrag_env, fake_embedding_client)
    app.dependency_overrides[get_llm_client] = lambda: None
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/ask", json={"question": "invoice status"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["meta"]["generated"] is False
    assert payload["answer"].startswith("Most relevant excerpts:")
    assert payload["sources"][0]["document_id"] == "work"


def test_ask_endpoint_requires_question_field(client: TestClient) -> None:
    response = client.post("/ask", json={"q": "missing required field"})

    assert response.status_code == 422


def test_ask_endpoint_validates_k_bounds(client: TestClient) -> None:
    response = client.post("/ask", json={"question": "hello", "k": 0})

    assert response.status_code == 422


def test_ask_endpoint_without_index_returns_503(
    client: TestClient,
    chatrag_env: Path,
    fake_embedding_client,
) -> None:
    generator = FakeGenerator()
    app.dependency_overrides[get_llm_client] = lambda: generator
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/ask", json={"question": "hello"})

    assert response.status_code == 503
    assert "chatrag-ingest" in response.json()["detail"]
    assert generator.calls == []


def test_ask_endpoint_on_empty_index_returns_409(
    client: TestClient,
    chatrag_env: Path,
    fake_embedding_client,
) -> None:
    IndexStore(4).persist(chatrag_env)
    app.dependency_overrides[get_llm_client] = lambda: FakeGenerator()
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/ask", json={"question": "hello"})

    assert response.status_code == 409
    assert response.json()["detail"].startswith("nothing to search")


def test_ask_endpoint_maps_llm_failure_to_502(
    client: TestClient,
    chatrag_env: Path,
    exports_dir: Path,
    fake_embedding_client,
) -> None:
    _build_index(exports_dir, chatrag_env, fake_embedding_client)
    app.dependency_overrides[get_llm_client] = lambda: FailingGenerator()
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/ask", json={"question": "hello"})

    assert response.status_code == 502
    assert response.json()["detail"] == "LLM request failed: simulated failure"


def test_ask_endpoint_maps_timeout_to_504(
    client: TestClient,
    chatrag_env: Path,
    exports_dir: Path,
    fake_embedding_client,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _build_index(exports_dir, chatrag_env, fake_embedding_client)
    monkeypatch.setenv("CHATRAG_ASK_TIMEOUT_SECONDS", "0.05")
    get_settings.cache_clear()
    release = Event()
    app.dependency_overrides[get_llm_client] = lambda: StalledGenerator(release)
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    try:
        response = client.post("/ask", json={"question": "hello"})
    finally:
        release.set()

    assert response.status_code == 504
    assert "timed out" in response.json()["detail"]


def test_ask_endpoint_maps_corrupt_index_to_500(
    client: TestClient,
    chatrag_env: Path,
    fake_embedding_client,
) -> None:
    chatrag_env.parent.mkdir(parents=True)
    chatrag_env.write_bytes(b"garbage" * 200)
    app.dependency_overrides[get_llm_client] = lambda: None
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/ask", json={"question": "hello"})

    assert response.status_code == 500
    assert "Rebuild the index" in response.json()["detail"]


def test_search_endpoint_returns_ranked_hits(
    client: TestClient,
    chatrag_env: Path,
    exports_dir: Path,
    fake_embedding_client,
) -> None:
    _build_index(exports_dir, chatrag_env, fake_embedding_client)
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.get("/rag/search", params={"q": "birthday dinner", "k": 1})

    assert response.status_code == 200
    hits = response.json()
    assert len(hits) == 1
    assert hits[0]["document_id"] == "family-whatsapp-chat-with-mom"


def test_search_endpoint_rejects_blank_query(client: TestClient, chatrag_env: Path) -> None:
    response = client.get("/rag/search", params={"q": "   "})

    assert response.status_code == 400


def test_ingest_endpoint_rebuilds_index(
    client: TestClient,
    chatrag_env: Path,
    fake_embedding_client,
) -> None:
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/rag/ingest", json={"chunk_size": 200, "chunk_overlap": 10})

    assert response.status_code == 200
    payload = response.json()
    assert payload["documents"] == 3
    assert payload["store_path"] == str(chatrag_env)
    assert IndexStore.load(chatrag_env).size() == payload["chunks"]


def test_ingest_endpoint_maps_missing_directory_to_404(
    client: TestClient,
    chatrag_env: Path,
    tmp_path: Path,
    fake_embedding_client,
) -> None:
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/rag/ingest", json={"data_dir": str(tmp_path / "nowhere")})

    assert response.status_code == 404


def test_ingest_endpoint_maps_bad_chunking_to_400(
    client: TestClient,
    chatrag_env: Path,
    fake_embedding_client,
) -> None:
    app.dependency_overrides[get_embedding_client] = lambda: fake_embedding_client

    response = client.post("/rag/ingest", json={"chunk_size": 50, "chunk_overlap": 50})

    assert response.status_code == 400
