import uuid
import logging
from typing import List, Dict, Any, Optional

from qdrant_client import QdrantClient
from qdrant_client.models import (
    PointStruct, Filter, FieldCondition, MatchValue, VectorParams, Distance,
)

from clients.vector_store import VectorStore, chunk_from_payload, MAX_MODULE_CHUNKS
from models.flashcard_models import Chunk
from utils.config import PipelineConfig
from utils.exceptions import NetworkError

logger = logging.getLogger(__name__)

SCROLL_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _to_qdrant_id(string_id: str) -> str:
    """Convert an arbitrary string ID to a UUID5 string for Qdrant compatibility."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, string_id))


def _build_filter(module_id: Optional[str] = None, extra_conditions: Optional[List] = None) -> Optional[Filter]:
    """Build a Qdrant Filter from standard query parameters."""
    conditions = []
    if module_id:
        conditions.append(FieldCondition(key="module_id", match=MatchValue(value=module_id)))
    if extra_conditions:
        conditions.extend(extra_conditions)
    return Filter(must=conditions) if conditions else None


def _network_error(action: str, e: Exception) -> NetworkError:
    return NetworkError(
        f"Qdrant {action} failed: {e}",
        provider="qdrant",
        http_status=getattr(e, "status_code", None),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class QdrantVectorStore(VectorStore):
    """Chunks in one Qdrant collection, filtered by the module_id payload field."""

    provider = "qdrant"

    def __init__(self, config: PipelineConfig, client: Optional[QdrantClient] = None):
        self.collection = config.qdrant_collection
        self.client = client or QdrantClient(url=config.qdrant_url, api_key=config.qdrant_api_key, timeout=60)
        self._collection_ready = False
        logger.info(f"Initialized Qdrant client for collection '{self.collection}'")

    def ensure_collection(self, dimension: int) -> None:
        if self._collection_ready:
            return
        try:
            if not self.client.collection_exists(self.collection):
                logger.info(f"Creating Qdrant collection {self.collection} (dim={dimension}, cosine)")
                self.client.create_collection(
                    collection_name=self.collection,
                    vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
                )
                self.client.create_payload_index(
                    collection_name=self.collection,
                    field_name="module_id",
                    field_schema="keyword",
                )
        except Exception as e:
            raise _network_error("ensure_collection", e) from e
        self._collection_ready = True

    def fetch_module_chunks(self, module_id: str, limit: int = MAX_MODULE_CHUNKS) -> List[Chunk]:
        """Scroll every point whose payload.module_id matches, up to `limit`."""
        chunks: List[Chunk] = []
        offset = None
        scroll_filter = _build_filter(module_id=module_id)

        try:
            while len(chunks) < limit:
                points, offset = self.client.scroll(
                    collection_name=self.collection,
                    scroll_filter=scroll_filter,
                    limit=min(SCROLL_PAGE_SIZE, limit - len(chunks)),
                    offset=offset,
                    with_payload=True,
                    with_vectors=False,
                )
                chunks.extend(chunk_from_payload(p.payload or {}) for p in points)
                if offset is None or not points:
                    break
        except Exception as e:
            raise _network_error("scroll", e) from e

        logger.info(f"Qdrant returned {len(chunks)} chunks for module {module_id}")
        return chunks

    def upsert_points(self, module_id: str, points: List[Dict[str, Any]]) -> int:
        structs = []
        for point in points:
            payload = dict(point["payload"])
            payload["_original_id"] = point["id"]
            structs.append(PointStruct(
                id=_to_qdrant_id(f"{module_id}_{point['id']}"),
                vector=point["vector"],
                payload=payload,
            ))
        try:
            self.client.upsert(collection_name=self.collection, points=structs, wait=True)
        except Exception as e:
            raise _network_error("upsert", e) from e
        logger.info(f"Upserted {len(structs)} points to Qdrant for module {module_id}")
        return len(structs)
