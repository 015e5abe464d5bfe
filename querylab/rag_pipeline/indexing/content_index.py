"""Content index: domain-partitioned nearest-neighbour lookup.

Both implementations share one contract:

    search(domain, embedding, k) -> List[IndexHit]   (nearest first)

- WeaviateContentIndex queries a Weaviate collection with near_vector,
  filtered on the chunk's domain property.
- InMemoryContentIndex keeps chunks in numpy arrays and ranks them by cosine
  distance. It is meant for local experiments and tests, where running a
  Weaviate container is overkill.

The index only reads chunks. Chunking, field extraction and embedding are
done upstream before chunks are added or uploaded.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np
from weaviate.classes.query import Filter, MetadataQuery
from weaviate.exceptions import WeaviateBaseError, WeaviateQueryError, WeaviateTimeoutError

from querylab.config import CONTENT_COLLECTION
from querylab.errors import GatewayError, GatewayTimeout
from querylab.rag_pipeline.retrieval.preprocessing.schemas import Domain
from querylab.shared.files import setup_logging

logger = setup_logging(__name__)


@dataclass
class ContentChunk:
    """A unit of indexed corpus text keyed by (item_id, domain).

    Attributes:
        chunk_id: Unique chunk identifier.
        item_id: Source item the chunk was cut from.
        domain: Partition of the index the chunk lives in.
        text: Chunk text (sent to the reranker).
        embedding: Chunk embedding vector.
    """

    chunk_id: str
    item_id: str
    domain: Domain
    text: str
    embedding: List[float]


@dataclass
class IndexHit:
    """One search hit: chunk identity, text and vector distance."""

    chunk_id: str
    text: str
    distance: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def _is_deadline_exceeded(exc: BaseException) -> bool:
    # gRPC searches surface deadlines as WeaviateQueryError wrapping the RpcError
    return any(
        err is not None and "deadline" in str(err).lower()
        for err in (exc, exc.__cause__, exc.__context__)
    )


def _nearest_first(hits: List[IndexHit]) -> List[IndexHit]:
    # Stable: equal distances keep the backend's order
    return sorted(hits, key=lambda hit: hit.distance)


class WeaviateContentIndex:
    """Content index backed by a Weaviate collection.

    Args:
        client: Connected WeaviateClient (see weaviate_client.get_client()).
            The caller owns it and closes it.
        collection_name: Collection holding every domain's chunks.
    """

    def __init__(self, client: Any, collection_name: str = CONTENT_COLLECTION):
        self.client = client
        self.collection_name = collection_name

    def search(self, domain: Domain, embedding: Sequence[float], k: int) -> List[IndexHit]:
        """Return up to k chunks of a domain, nearest first.

        Raises:
            GatewayTimeout: If the query timed out.
            GatewayError: On any other Weaviate error.
        """
        domain = Domain(domain)
        collection = self.client.collections.get(self.collection_name)

        try:
            response = collection.query.near_vector(
                near_vector=list(embedding),
                limit=k,
                filters=Filter.by_property("domain").equal(domain.value),
                return_metadata=MetadataQuery(distance=True),
                return_properties=["chunk_id", "item_id", "domain", "text"],
            )
        except WeaviateTimeoutError as exc:
            raise GatewayTimeout(f"[index] Weaviate query timed out: {exc}") from exc
        except WeaviateQueryError as exc:
            if _is_deadline_exceeded(exc):
                raise GatewayTimeout(f"[index] Weaviate query deadline exceeded: {exc}") from exc
            raise GatewayError(f"[index] Weaviate query failed: {exc}") from exc
        except WeaviateBaseError as exc:
            raise GatewayError(f"[index] Weaviate query failed: {exc}") from exc

        hits = [
            IndexHit(
                chunk_id=obj.properties["chunk_id"],
                text=obj.properties.get("text", ""),
                distance=float(obj.metadata.distance),
                metadata={
                    "item_id": obj.properties.get("item_id", ""),
                    "domain": obj.properties.get("domain", domain.value),
                },
            )
            for obj in response.objects
        ]
        logger.debug(f"[index] {self.collection_name} {domain.value}: {len(hits)} hits (k={k})")
        return _nearest_first(hits)


class InMemoryContentIndex:
    """Content index held in memory, ranked by cosine distance.

    Example:
        >>> index = InMemoryContentIndex()
        >>> index.add(ContentChunk("c1", "item1", Domain.SETTING, "a ship at sea", [1.0, 0.0]))
        >>> [hit.chunk_id for hit in index.search(Domain.SETTING, [1.0, 0.1], k=5)]
        ['c1']
    """

    def __init__(self):
        self._chunks: Dict[Domain, List[ContentChunk]] = {}
        self._matrices: Dict[Domain, np.ndarray] = {}

    def add(self, chunk: ContentChunk) -> None:
        domain = Domain(chunk.domain)
        self._chunks.setdefault(domain, []).append(chunk)
        # Rebuilt lazily on the next search
        self._matrices.pop(domain, None)

    def add_many(self, chunks: Sequence[ContentChunk]) -> None:
        for chunk in chunks:
            self.add(chunk)

    def __len__(self) -> int:
        return sum(len(chunks) for chunks in self._chunks.values())

    def _matrix(self, domain: Domain) -> np.ndarray:
        if domain not in self._matrices:
            vectors = np.array([c.embedding for c in self._chunks[domain]], dtype=float)
            norms = np.linalg.norm(vectors, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrices[domain] = vectors / norms
        return self._matrices[domain]

    def search(self, domain: Domain, embedding: Sequence[float], k: int) -> List[IndexHit]:
        """Return up to k chunks of a domain, nearest first (cosine distance)."""
        domain = Domain(domain)
        chunks = self._chunks.get(domain, [])
        if not chunks or k <= 0:
            return []

        query = np.asarray(embedding, dtype=float)
        norm = np.linalg.norm(query)
        if norm == 0:
            similarities = np.zeros(len(chunks))
        else:
            similarities = self._matrix(domain) @ (query / norm)
        distances = 1.0 - similarities

        order = np.argsort(distances, kind="stable")[:k]
        return [
            IndexHit(
                chunk_id=chunks[i].chunk_id,
                text=chunks[i].text,
                distance=float(distances[i]),
                metadata={"item_id": chunks[i].item_id, "domain": domain.value},
            )
            for i in order
        ]
