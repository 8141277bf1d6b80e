"""PipelineConfig defaults, validation and environment loading."""

import pytest

from utils.config import PipelineConfig, clamp_retrieval_k
from utils.exceptions import ConfigurationError


def test_mock_mode_never_touches_external_services(tmp_path):
    config = PipelineConfig(mock_mode=True, vector_db_provider="pinecone", embedding_provider="jina", data_dir=tmp_path)
    assert config.vector_db_provider == "memory"
    assert config.embedding_provider == "mock"
    assert config.course_catalog_path == tmp_path / "courses.json"


def test_unsupported_provider_names_the_key():
    with pytest.raises(ConfigurationError) as exc:
        PipelineConfig(vector_db_provider="chroma")
    assert exc.value.context["config_key"] == "VECTOR_DB_PROVIDER"


def test_require_reports_missing_credential():
    config = PipelineConfig(vector_db_provider="memory")
    with pytest.raises(ConfigurationError) as exc:
        config.require("pinecone_api_key", "PINECONE_API_KEY")
    assert exc.value.message == "PINECONE_API_KEY not found in environment"


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("VECTOR_DB_PROVIDER", "Memory")
    monkeypatch.setenv("LLM_PROVIDER", "groq")
    monkeypatch.setenv("FLASHCARD_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("PRESERVE_APPROVED_DECKS", "false")
    monkeypatch.delenv("FLASHCARD_MOCK_MODE", raising=False)

    config = PipelineConfig.from_env()

    assert config.vector_db_provider == "memory"
    assert config.llm_model == "llama-3.3-70b-versatile"
    assert config.preserve_approved_decks is False
    assert config.data_dir == tmp_path


def test_bad_integer_env(monkeypatch):
    monkeypatch.setenv("VECTOR_DB_PROVIDER", "memory")
    monkeypatch.setenv("EMBEDDING_BATCH_SIZE", "lots")
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_env()


def test_clamp_retrieval_k():
    assert clamp_retrieval_k(None) == 8
    assert clamp_retrieval_k(0) == 4
    assert clamp_retrieval_k(99) == 15
