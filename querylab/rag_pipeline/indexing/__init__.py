"""Content index for QueryLab.

Provides:
- Domain-partitioned nearest-neighbour search (Weaviate or in-memory)
- Weaviate client wrapper for collection management
- Batch upload of pre-embedded chunks
"""

from querylab.rag_pipeline.indexing.content_index import (
    ContentChunk,
    IndexHit,
    InMemoryContentIndex,
    WeaviateContentIndex,
)
from querylab.rag_pipeline.indexing.weaviate_client import (
    create_collection,
    delete_collection,
    get_client,
    get_collection_count,
    upload_chunks,
)

__all__ = [
    # Index
    "ContentChunk",
    "IndexHit",
    "InMemoryContentIndex",
    "WeaviateContentIndex",
    # Client management
    "get_client",
    "create_collection",
    "delete_collection",
    "upload_chunks",
    "get_collection_count",
]
