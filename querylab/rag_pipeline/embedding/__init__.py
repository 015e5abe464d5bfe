"""Embedding gateway (OpenRouter / OpenAI-compatible /embeddings)."""

from querylab.rag_pipeline.embedding.embedder import OpenRouterEmbedder, align_embeddings

__all__ = ["OpenRouterEmbedder", "align_embeddings"]
