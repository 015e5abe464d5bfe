"""Cross-encoder reranking gateway and result alignment.

## Two-Stage Retrieval

The content index is a bi-encoder lookup: query and chunks are embedded
separately and compared by vector distance. It is fast but approximate.
A cross-encoder reads each (query, chunk) pair together and returns a
relevance score, which is slower but much more precise.

```
Query embedding
    ↓
Stage 1: Content index (nearest K chunks, cheap)
    ↓
Stage 2: Rerank gateway (relevance score per chunk)
    ↓
Scored chunks (amplitude / routed results)
```

## Alignment

The rerank API returns results in arbitrary order (usually by score), each
tagged with the position of the document it scored. align_scores() sorts by
that index and checks it is a permutation of the input positions before any
score is attached to a chunk. Zipping the raw response against the
candidates would silently pair documents with the wrong scores.

## Library Usage

Uses `requests` through post_json() against a Cohere/Jina compatible
/rerank endpoint.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from querylab.config import (
    BACKOFF_BASE,
    MAX_RETRIES,
    RERANK_API_KEY,
    RERANK_BASE_URL,
    RERANK_MODEL,
    RERANK_TIMEOUT,
)
from querylab.errors import IndexMismatch
from querylab.shared.files import setup_logging
from querylab.shared.openrouter_client import post_json

logger = setup_logging(__name__)


@dataclass
class RerankScore:
    """One rerank result: the scored document's input position and its score."""

    index: int
    relevance_score: float


@dataclass
class ScoredChunk:
    """A content chunk with its vector distance and relevance score.

    Attributes:
        chunk_id: Chunk identifier from the content index.
        text: Chunk text that was reranked.
        distance: Vector distance from the query embedding (lower is closer).
        relevance_score: Cross-encoder relevance score.
        metadata: Extra properties returned by the index (item_id, domain).
    """

    chunk_id: str
    text: str
    distance: float
    relevance_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def align_scores(results: Sequence[RerankScore], expected: int) -> List[float]:
    """Return relevance scores in input-document order.

    Args:
        results: Rerank results in any order.
        expected: Number of documents that were sent.

    Returns:
        scores[i] is the relevance score of document i.

    Raises:
        IndexMismatch: If the result indices are not exactly 0..expected-1.

    Example:
        >>> align_scores([RerankScore(1, 0.2), RerankScore(0, 0.9)], 2)
        [0.9, 0.2]
    """
    ordered = sorted(results, key=lambda r: r.index)
    indices = [r.index for r in ordered]
    if indices != list(range(expected)):
        raise IndexMismatch(
            f"Rerank response indices {indices} do not cover 0..{expected - 1}"
        )
    return [r.relevance_score for r in ordered]


def attach_scores(
    candidates: Sequence[Any],
    results: Sequence[RerankScore],
) -> List[ScoredChunk]:
    """Pair each candidate with its aligned relevance score.

    Args:
        candidates: IndexHit objects in the order they were sent to rerank.
        results: Rerank results in any order.

    Returns:
        ScoredChunk list in candidate order.
    """
    scores = align_scores(results, len(candidates))
    return [
        ScoredChunk(
            chunk_id=hit.chunk_id,
            text=hit.text,
            distance=hit.distance,
            relevance_score=score,
            metadata=dict(hit.metadata),
        )
        for hit, score in zip(candidates, scores)
    ]


def _parse_results(body: Dict[str, Any]) -> List[RerankScore]:
    try:
        return [
            RerankScore(index=int(item["index"]), relevance_score=float(item["relevance_score"]))
            for item in body["results"]
        ]
    except (KeyError, TypeError, ValueError) as exc:
        raise IndexMismatch(f"Malformed rerank response: {exc}") from exc


class RerankClient:
    """Rerank gateway: (query, documents) -> index-tagged relevance scores.

    Args:
        model: Rerank model ID.
        api_key: Rerank API key.
        base_url: Rerank API base URL (the client posts to {base_url}/rerank).
        timeout: Per-request timeout in seconds.
        max_retries: How many retries on failure (HTTP/network).
        backoff_base: Backoff multiplier for retry delays.
    """

    def __init__(
        self,
        model: str = RERANK_MODEL,
        api_key: Optional[str] = RERANK_API_KEY,
        base_url: str = RERANK_BASE_URL,
        timeout: float = RERANK_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    def rerank(self, query: str, documents: Sequence[str]) -> List[RerankScore]:
        """Score every document against the query.

        Returns:
            One RerankScore per document, in the order the API returned them
            (not necessarily input order, see align_scores()).
        """
        if not documents:
            return []

        start_time = time.time()
        payload = {
            "model": self.model,
            "query": query,
            "documents": list(documents),
            "top_n": len(documents),
        }
        body = post_json(
            f"{self.base_url}/rerank",
            payload,
            self.api_key,
            self.timeout,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            label="rerank",
        )
        results = _parse_results(body)

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(f"[rerank] model={self.model} documents={len(documents)} time_ms={elapsed_ms:.1f}")
        return results


def rerank_candidates(reranker: Any, query: str, candidates: Sequence[Any]) -> List[ScoredChunk]:
    """Rerank index hits and return them aligned, in candidate order.

    Args:
        reranker: Object with rerank(query, documents) -> List[RerankScore].
        query: Query text used for reranking.
        candidates: IndexHit objects, nearest first.

    Returns:
        ScoredChunk list in candidate order (empty for no candidates, without
        calling the reranker).
    """
    if not candidates:
        return []
    results = reranker.rerank(query, [hit.text for hit in candidates])
    return attach_scores(candidates, results)
