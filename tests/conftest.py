"""Shared fixtures."""

import pytest

from memorybook.config import Settings, VectorSearchSettings
from memorybook.memory.manager import MemoryManager
from tests.fixtures.fake_embedding import FakeEmbeddingProvider
from tests.fixtures.mock_llm import MockLLM

PROVIDER_ENV_VARS = ("OPENAI_API_KEY", "VOYAGE_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY")


@pytest.fixture
def no_provider_env(monkeypatch):
    for name in PROVIDER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def mock_llm():
    return MockLLM()


@pytest.fixture
def keyword_settings(tmp_path):
    """No embedding backend: keyword-only retrieval everywhere."""
    return Settings(
        storage_dir=tmp_path / "memories",
        vector_search=VectorSearchSettings(enabled=False),
    )


@pytest.fixture
def vector_settings(tmp_path):
    return Settings(storage_dir=tmp_path / "memories")


@pytest.fixture
def keyword_manager(keyword_settings):
    mgr = MemoryManager(keyword_settings)
    yield mgr
    mgr.close()


@pytest.fixture
def vector_manager(vector_settings, fake_provider):
    mgr = MemoryManager(vector_settings, embedding_provider=fake_provider)
    yield mgr
    mgr.close()
