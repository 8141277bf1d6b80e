import logging
from typing import List, Dict, Any, Optional

from pinecone import Pinecone, ServerlessSpec

from clients.vector_store import VectorStore, chunk_from_payload, MAX_MODULE_CHUNKS
from models.flashcard_models import Chunk
from utils.config import PipelineConfig
from utils.exceptions import NetworkError

logger = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 100
# Pinecone metadata is capped at 40KB per vector
MAX_METADATA_TEXT = 30000


def _vector_id(module_id: str, chunk_id: str) -> str:
    """Vector ids are prefixed by module so list(prefix=...) finds a module's chunks."""
    return f"{module_id}_{chunk_id}"


def _clean_metadata(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Pinecone rejects null metadata values; drop them and cap the text size."""
    metadata = {k: v for k, v in payload.items() if v is not None}
    if isinstance(metadata.get("text"), str):
        metadata["text"] = metadata["text"][:MAX_METADATA_TEXT]
    return metadata


def _network_error(action: str, e: Exception) -> NetworkError:
    return NetworkError(
        f"Pinecone {action} failed: {e}",
        provider="pinecone",
        http_status=getattr(e, "status", None),
    )


class PineconeVectorStore(VectorStore):
    """Chunks in one Pinecone index, looked up by id prefix `{module_id}_` then fetched."""

    provider = "pinecone"

    def __init__(self, config: PipelineConfig, client: Optional[Pinecone] = None):
        api_key = config.require("pinecone_api_key", "PINECONE_API_KEY")
        self.pc = client or Pinecone(api_key=api_key)
        self.index_name = config.pinecone_index
        self.cloud = config.pinecone_cloud
        self.region = config.pinecone_region
        self._index = None
        logger.info(f"Initialized Pinecone client for index '{self.index_name}'")

    @property
    def index(self):
        if self._index is None:
            self._index = self.pc.Index(self.index_name)
        return self._index

    def ensure_collection(self, dimension: int) -> None:
        if self._index is not None:
            return
        try:
            existing = [index.name for index in self.pc.list_indexes()]
            if self.index_name not in existing:
                logger.info(f"Creating new Pinecone index: {self.index_name} (dim={dimension})")
                self.pc.create_index(
                    name=self.index_name,
                    dimension=dimension,
                    metric="cosine",
                    spec=ServerlessSpec(cloud=self.cloud, region=self.region),
                )
        except Exception as e:
            raise _network_error("ensure_index", e) from e
        self._index = self.pc.Index(self.index_name)

    def fetch_module_chunks(self, module_id: str, limit: int = MAX_MODULE_CHUNKS) -> List[Chunk]:
        prefix = f"{module_id}_"
        try:
            ids: List[str] = []
            for page in self.index.list(prefix=prefix):
                ids.extend(page)
                if len(ids) >= limit:
                    break
            ids = ids[:limit]

            chunks: List[Chunk] = []
            for i in range(0, len(ids), FETCH_BATCH_SIZE):
                response = self.index.fetch(ids=ids[i:i + FETCH_BATCH_SIZE])
                for vector_id, vector in response.vectors.items():
                    metadata = dict(vector.metadata or {})
                    metadata.setdefault("chunk_id", vector_id[len(prefix):])
                    chunks.append(chunk_from_payload(metadata))
        except Exception as e:
            raise _network_error("list/fetch", e) from e

        logger.info(f"Pinecone returned {len(chunks)} chunks for module {module_id}")
        return chunks

    def upsert_points(self, module_id: str, points: List[Dict[str, Any]]) -> int:
        vectors = [
            {
                "id": _vector_id(module_id, point["id"]),
                "values": point["vector"],
                "metadata": _clean_metadata(point["payload"]),
            }
            for point in points
        ]
        try:
            self.index.upsert(vectors=vectors)
        except Exception as e:
            raise _network_error("upsert", e) from e
        logger.info(f"Upserted {len(vectors)} vectors to Pinecone for module {module_id}")
        return len(vectors)
