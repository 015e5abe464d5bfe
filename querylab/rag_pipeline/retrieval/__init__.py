"""Retrieval module: cross-encoder reranking of content index hits."""

from querylab.rag_pipeline.retrieval.reranking import (
    RerankClient,
    RerankScore,
    ScoredChunk,
    align_scores,
    rerank_candidates,
)

__all__ = [
    "RerankClient",
    "RerankScore",
    "ScoredChunk",
    "align_scores",
    "rerank_candidates",
]
