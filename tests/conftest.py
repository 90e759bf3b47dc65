from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from chatrag.config import get_settings
from chatrag.main import app

KEYWORDS = ("hiking", "dinner", "birthday", "invoice")

FAMILY_EXPORT = """\
Messages and calls are end-to-end encrypted. No one outside of this chat can read them.
3/14/24, 6:02 PM - Mom: Are you coming to dinner on Sunday?
3/14/24, 6:05 PM - Sam: yes! should I bring dessert
for the birthday too?
3/15/24, 9:30 AM - Mom: Bring the cake, dinner is at 7
"""

FRIENDS_EXPORT = """\
4/2/24, 8:00 AM - Alex: hiking trip this weekend?
4/2/24, 8:04 AM - Jo: only if we start early, the trail gets crowded
4/3/24, 7:45 PM - Alex: booked the cabin, hiking boots ready
"""

WORK_EXPORT = """\
5/6/24, 10:00 AM - Dana: the invoice for April is overdue
5/6/24, 10:12 AM - Lee: sending it today
"""


class FakeEmbeddingClient:
    model_name = "fake-keywords"

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        vectors: list[list[float]] = []
        for text in texts:
            normalized = text.lower()
            vectors.append([float(normalized.count(keyword)) for keyword in KEYWORDS])
        return vectors


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def exports_dir(tmp_path: Path) -> Path:
    data_dir = tmp_path / "exports"
    (data_dir / "family").mkdir(parents=True)
    (data_dir / "family" / "WhatsApp Chat with Mom.txt").write_text(FAMILY_EXPORT, encoding="utf-8")
    (data_dir / "friends.txt").write_text(FRIENDS_EXPORT, encoding="utf-8")
    (data_dir / "work.txt").write_text(WORK_EXPORT, encoding="utf-8")
    return data_dir


@pytest.fixture
def chatrag_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, exports_dir: Path) -> Path:
    store_path = tmp_path / "index" / "index.db"
    monkeypatch.setenv("CHATRAG_DATA_DIR", str(exports_dir))
    monkeypatch.setenv("CHATRAG_STORE_PATH", str(store_path))
    monkeypatch.setenv("CHATRAG_CHUNK_SIZE", "120")
    monkeypatch.setenv("CHATRAG_CHUNK_OVERLAP", "20")
    monkeypatch.setenv("CHATRAG_EMBED_WORKERS", "1")
    monkeypatch.setenv("CHATRAG_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("CHATRAG_GENERATOR", "none")
    get_settings.cache_clear()
    return store_path


@pytest.fixture
def client() -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
