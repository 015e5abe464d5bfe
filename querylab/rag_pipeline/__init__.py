"""Retrieval building blocks for QueryLab.

- embedding/: embedding gateway with index-aligned batch responses
- indexing/: content index (Weaviate or in-memory) and collection helpers
- retrieval/: rerank gateway, query rewriting and classification
"""
