"""
Runtime configuration for the flashcard pipeline.
Everything comes from the environment (with .env support via python-dotenv).
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from utils.exceptions import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).parent.parent

# Retrieval bounds
MIN_RETRIEVAL_K = 4
MAX_RETRIEVAL_K = 15
MIN_CHUNKS_FOR_GENERATION = 4

# Answer ceiling enforced by prompt contract and post-processing
MAX_ANSWER_WORDS = 40
MAX_ANSWER_CHARS = 300

DEFAULT_EMBEDDING_MODELS = {
    "openai": ("text-embedding-3-small", 1536),
    "jina": ("jina-embeddings-v3", 1024),
    "mock": ("mock-hash-embedding", 64),
}

DEFAULT_LLM_MODELS = {
    "openai": "gpt-4o-mini",
    "groq": "llama-3.3-70b-versatile",
}

SUPPORTED_VECTOR_PROVIDERS = ("qdrant", "pinecone", "memory")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", config_key=name)


def clamp_retrieval_k(k: Optional[int]) -> int:
    """Clamp a requested top-K into the supported retrieval window."""
    if k is None:
        k = 8
    return max(MIN_RETRIEVAL_K, min(MAX_RETRIEVAL_K, int(k)))


@dataclass
class PipelineConfig:
    """Connection and behaviour settings for one pipeline instance."""

    vector_db_provider: str = "qdrant"
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "flashcard_chunks"
    pinecone_api_key: Optional[str] = None
    pinecone_index: str = "flashcard-chunks"
    pinecone_cloud: str = "aws"
    pinecone_region: str = "us-east-1"

    embedding_provider: str = "openai"
    embedding_model: Optional[str] = None
    embedding_dimension: Optional[int] = None
    embedding_batch_size: int = 64
    jina_api_key: Optional[str] = None

    llm_provider: str = "openai"
    llm_model: Optional[str] = None
    openai_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None

    data_dir: Path = field(default_factory=lambda: BASE_DIR / "data")
    course_catalog_path: Optional[Path] = None

    mock_mode: bool = False
    preserve_approved_decks: bool = True
    stage_a_max_chars: int = 24000
    max_retries: int = 3

    def __post_init__(self):
        if self.mock_mode:
            # Offline mode never touches external services
            self.vector_db_provider = "memory"
            self.embedding_provider = "mock"
        if self.vector_db_provider not in SUPPORTED_VECTOR_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported VECTOR_DB_PROVIDER: {self.vector_db_provider}. "
                f"Use one of {', '.join(SUPPORTED_VECTOR_PROVIDERS)}",
                config_key="VECTOR_DB_PROVIDER",
            )
        if self.embedding_provider not in DEFAULT_EMBEDDING_MODELS:
            raise ConfigurationError(
                f"Unsupported EMBEDDING_PROVIDER: {self.embedding_provider}",
                config_key="EMBEDDING_PROVIDER",
            )
        if self.llm_provider not in DEFAULT_LLM_MODELS:
            raise ConfigurationError(
                f"Unsupported LLM_PROVIDER: {self.llm_provider}",
                config_key="LLM_PROVIDER",
            )
        default_model, default_dim = DEFAULT_EMBEDDING_MODELS[self.embedding_provider]
        self.embedding_model = self.embedding_model or default_model
        self.embedding_dimension = self.embedding_dimension or default_dim
        self.llm_model = self.llm_model or DEFAULT_LLM_MODELS[self.llm_provider]
        self.data_dir = Path(self.data_dir)
        if self.course_catalog_path is None:
            self.course_catalog_path = self.data_dir / "courses.json"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build config from environment variables."""
        catalog = os.getenv("COURSE_CATALOG_PATH")
        config = cls(
            vector_db_provider=os.getenv("VECTOR_DB_PROVIDER", "qdrant").lower(),
            qdrant_url=os.getenv("QDRANT_URL", "http://localhost:6333"),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            qdrant_collection=os.getenv("QDRANT_COLLECTION_NAME", "flashcard_chunks"),
            pinecone_api_key=os.getenv("PINECONE_API_KEY"),
            pinecone_index=os.getenv("PINECONE_INDEX", "flashcard-chunks"),
            pinecone_cloud=os.getenv("PINECONE_CLOUD", "aws"),
            pinecone_region=os.getenv("PINECONE_REGION", "us-east-1"),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "openai").lower(),
            embedding_model=os.getenv("EMBEDDING_MODEL") or None,
            embedding_dimension=_env_int("EMBEDDING_DIMENSION", 0) or None,
            embedding_batch_size=_env_int("EMBEDDING_BATCH_SIZE", 64),
            jina_api_key=os.getenv("JINA_API_KEY"),
            llm_provider=os.getenv("LLM_PROVIDER", "openai").lower(),
            llm_model=os.getenv("LLM_MODEL") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            data_dir=Path(os.getenv("FLASHCARD_DATA_DIR", str(BASE_DIR / "data"))),
            course_catalog_path=Path(catalog) if catalog else None,
            mock_mode=_env_bool("FLASHCARD_MOCK_MODE"),
            preserve_approved_decks=_env_bool("PRESERVE_APPROVED_DECKS", True),
            stage_a_max_chars=_env_int("STAGE_A_MAX_CHARS", 24000),
            max_retries=_env_int("FLASHCARD_MAX_RETRIES", 3),
        )
        logger.info(
            f"Pipeline config: vector_db={config.vector_db_provider}, "
            f"embeddings={config.embedding_provider}/{config.embedding_model}, "
            f"llm={config.llm_provider}/{config.llm_model}, mock_mode={config.mock_mode}"
        )
        return config

    def require(self, attr: str, env_key: str) -> str:
        """Return a credential or raise ConfigurationError naming the env key."""
        value = getattr(self, attr)
        if not value:
            raise ConfigurationError(f"{env_key} not found in environment", config_key=env_key)
        return value

    def summary(self) -> Dict[str, str]:
        return {
            "vector_db_provider": self.vector_db_provider,
            "embedding_provider": self.embedding_provider,
            "llm_provider": self.llm_provider,
            "llm_model": self.llm_model,
            "mock_mode": str(self.mock_mode),
        }
