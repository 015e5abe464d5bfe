"""Query preprocessing for QueryLab.

Provides query classification and rewriting:
- Reply type (results vs recommendation)
- Content index domain
- Improved phrasing for semantic search
"""

from querylab.rag_pipeline.retrieval.preprocessing.query_rewriter import QueryRewriter
from querylab.rag_pipeline.retrieval.preprocessing.schemas import (
    Domain,
    QueryClassification,
    ReplyType,
)

__all__ = [
    "Domain",
    "ReplyType",
    "QueryClassification",
    "QueryRewriter",
]
