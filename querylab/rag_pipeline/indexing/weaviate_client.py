"""Weaviate client wrapper for QueryLab.

Provides functions for:
- Connecting to a local Weaviate instance with bounded timeouts
- Creating/deleting the content collection
- Batch uploading pre-embedded content chunks

Chunking and embedding happen upstream; this module only stores what it is
given. Uses Weaviate Python client v4 (requires gRPC).
"""

import uuid
from typing import Iterable

import weaviate
from weaviate.classes.config import Configure, DataType, Property, VectorDistances
from weaviate.classes.init import AdditionalConfig, Timeout

from querylab.config import (
    WEAVIATE_BATCH_SIZE,
    WEAVIATE_GRPC_PORT,
    WEAVIATE_HOST,
    WEAVIATE_HTTP_PORT,
    WEAVIATE_QUERY_TIMEOUT,
)
from querylab.rag_pipeline.indexing.content_index import ContentChunk


def get_client(
    host: str = WEAVIATE_HOST,
    port: int = WEAVIATE_HTTP_PORT,
    grpc_port: int = WEAVIATE_GRPC_PORT,
    query_timeout: int = WEAVIATE_QUERY_TIMEOUT,
) -> weaviate.WeaviateClient:
    """
    Create and return a Weaviate client connected to a local instance.

    Returns:
        Connected WeaviateClient instance. The caller closes it.

    Raises:
        weaviate.exceptions.WeaviateConnectionError: If connection fails.
    """
    return weaviate.connect_to_local(
        host=host,
        port=port,
        grpc_port=grpc_port,
        additional_config=AdditionalConfig(
            timeout=Timeout(init=10, query=query_timeout, insert=60),
        ),
    )


def create_collection(client: weaviate.WeaviateClient, collection_name: str) -> None:
    """
    Create the content collection with self-provided vectors.

    Properties: chunk_id, item_id, domain (partition filter), text.
    """
    client.collections.create(
        name=collection_name,
        vector_config=Configure.Vectors.self_provided(
            vector_index_config=Configure.VectorIndex.hnsw(
                distance_metric=VectorDistances.COSINE,
            ),
        ),
        properties=[
            Property(name="chunk_id", data_type=DataType.TEXT),
            Property(name="item_id", data_type=DataType.TEXT),
            Property(name="domain", data_type=DataType.TEXT),
            Property(name="text", data_type=DataType.TEXT),
        ],
    )


def delete_collection(client: weaviate.WeaviateClient, collection_name: str) -> bool:
    """
    Delete a collection if it exists.

    Returns:
        True if collection was deleted, False if it did not exist.
    """
    if client.collections.exists(collection_name):
        client.collections.delete(collection_name)
        return True
    return False


def chunk_uuid(chunk_id: str) -> str:
    """Deterministic UUID from chunk_id, so re-uploads overwrite instead of duplicating."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, chunk_id))


def upload_chunks(
    client: weaviate.WeaviateClient,
    collection_name: str,
    chunks: Iterable[ContentChunk],
    batch_size: int = WEAVIATE_BATCH_SIZE,
) -> int:
    """
    Upload embedded chunks to the content collection.

    Returns:
        Number of objects queued for upload.
    """
    collection = client.collections.get(collection_name)
    uploaded_count = 0

    with collection.batch.fixed_size(batch_size=batch_size) as batch:
        for chunk in chunks:
            batch.add_object(
                properties={
                    "chunk_id": chunk.chunk_id,
                    "item_id": chunk.item_id,
                    "domain": chunk.domain.value,
                    "text": chunk.text,
                },
                vector=list(chunk.embedding),
                uuid=chunk_uuid(chunk.chunk_id),
            )
            uploaded_count += 1

    return uploaded_count


def get_collection_count(client: weaviate.WeaviateClient, collection_name: str) -> int:
    """Number of objects in a collection."""
    collection = client.collections.get(collection_name)
    return collection.aggregate.over_all(total_count=True).total_count
