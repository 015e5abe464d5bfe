"""Query router: the live request path.

## State Machine

```
route(text)
    ↓
Lookup: find_group(text), else find_group_by_phrasing(text)
    ├── found     → best_query(group)      (scored: reuse pre-scored phrasing)
    │                 └── none → canonical_query(group)   (cold start)
    └── not found → Resolve: embed + rewrite → create_group()
    ↓
Retrieve + Rerank (same mechanics as evaluate(), nothing persisted)
    ↓
Respond: threshold by reply type → sort by score → cap
```

The found path is the payoff of the evaluation loop: it reuses the stored
embedding, domain and expectation of the group's best phrasing and makes no
rewrite or embedding call. Text that was canonical before a promotion is still
found through the stored Query that holds it.

Group states reported with each result:
- cold_start: no Query of the group has been evaluated
- scored: at least one evaluation exists
- converged: promotion has run at least once
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from querylab.config import DEFAULT_TOP_K, RELEVANCE_THRESHOLDS
from querylab.errors import DuplicateGroup, DuplicateVariation, InvalidEntity
from querylab.evaluation.engine import EvaluationEngine
from querylab.query_groups.models import Query, QueryDraft, QueryGroup
from querylab.query_groups.store import GroupState
from querylab.rag_pipeline.retrieval.preprocessing.schemas import ReplyType
from querylab.rag_pipeline.retrieval.reranking import ScoredChunk
from querylab.shared.files import setup_logging

logger = setup_logging(__name__)


@dataclass
class RankedChunk:
    """A routed result: chunk identity, text and relevance score."""

    chunk_id: str
    text: str
    relevance_score: float
    distance: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RouteResult:
    """Response of QueryRouter.route().

    Attributes:
        group: The group the text resolved to.
        query: The Query whose embedding and domain were searched.
        state: Group state when the request was served.
        chunks: Filtered results, highest relevance first.
        timing_ms: Per-phase timing (lookup, retrieve, total).
    """

    group: QueryGroup
    query: Query
    state: GroupState
    chunks: List[RankedChunk] = field(default_factory=list)
    timing_ms: Dict[str, float] = field(default_factory=dict)

    @property
    def expectation(self) -> ReplyType:
        return self.query.expectation


def select_results(
    scored: List[ScoredChunk],
    expectation: ReplyType,
    thresholds: Mapping[str, float],
    top_k: int,
) -> List[RankedChunk]:
    """Drop chunks below the expectation's threshold, sort by score, cap.

    A recommendation returns at most one chunk.

    Example:
        >>> [c.chunk_id for c in select_results(scored, ReplyType.RESULTS, {"results": 0.1}, 10)]
        ['c3', 'c1']
    """
    expectation = ReplyType(expectation)
    threshold = thresholds.get(expectation.value, 0.0)
    limit = 1 if expectation == ReplyType.RECOMMENDATION else top_k

    kept = [chunk for chunk in scored if chunk.relevance_score >= threshold]
    kept.sort(key=lambda chunk: chunk.relevance_score, reverse=True)
    return [
        RankedChunk(
            chunk_id=chunk.chunk_id,
            text=chunk.text,
            relevance_score=chunk.relevance_score,
            distance=chunk.distance,
            metadata=dict(chunk.metadata),
        )
        for chunk in kept[:limit]
    ]


class QueryRouter:
    """Resolves live user text to a group and returns its ranked chunks.

    The router shares the engine's store and gateways, so the live path and
    the evaluation loop score chunks the same way.

    Args:
        engine: EvaluationEngine holding the store and gateways.
        top_k: Maximum number of results returned.
        thresholds: Minimum relevance score per reply type value.
    """

    def __init__(
        self,
        engine: EvaluationEngine,
        top_k: int = DEFAULT_TOP_K,
        thresholds: Optional[Mapping[str, float]] = None,
    ):
        if top_k < 1:
            raise InvalidEntity("top_k must be >= 1")
        self.engine = engine
        self.store = engine.store
        self.top_k = top_k
        self.thresholds = dict(RELEVANCE_THRESHOLDS if thresholds is None else thresholds)

    def route(self, text: str) -> RouteResult:
        """Serve one user query.

        Raises:
            InvalidEntity: If text is blank.
            GatewayTimeout, GatewayError: From any gateway call.
            IndexMismatch: If a gateway response cannot be aligned.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidEntity("query text must be a non-empty string")

        start_time = time.time()
        group = self.store.find_group(text)
        if group is None:
            group = self.store.find_group_by_phrasing(text)
        if group is not None:
            query = self._scored_or_canonical(group)
        else:
            group, query = self._resolve(text)
        lookup_ms = (time.time() - start_time) * 1000

        state = self.store.group_state(group)

        retrieve_start = time.time()
        scored = self.engine.retrieve(query)
        chunks = select_results(scored, query.expectation, self.thresholds, self.top_k)
        retrieve_ms = (time.time() - retrieve_start) * 1000

        total_ms = (time.time() - start_time) * 1000
        logger.info(
            f"[route] {text!r} -> group {group.id} ({state.value}) via query {query.id} "
            f"{query.content!r}: {len(chunks)}/{len(scored)} chunks, {total_ms:.0f}ms"
        )
        return RouteResult(
            group=group,
            query=query,
            state=state,
            chunks=chunks,
            timing_ms={"lookup": lookup_ms, "retrieve": retrieve_ms, "total": total_ms},
        )

    def _scored_or_canonical(self, group: QueryGroup) -> Query:
        try:
            best = self.store.best_query(group)
        except SQLAlchemyError as exc:
            logger.warning(f"[route] Could not load best query of group {group.id}, using canonical: {exc}")
            best = None
        if best is not None:
            return best

        canonical = self.store.canonical_query(group)
        if canonical is not None:
            return canonical

        # A group normally owns its first Query; rebuild it if it does not
        logger.warning(f"[route] Group {group.id} has no queries, resolving {group.canonical_identifier!r}")
        return self._resolve_into(group, group.canonical_identifier)

    def _classify(self, text: str) -> Tuple[List[float], Any]:
        embedding = self.engine.embedder.embed(text)
        classification = self.engine.rewriter.rewrite(text)
        return embedding, classification

    def _resolve(self, text: str) -> Tuple[QueryGroup, Query]:
        """Create a group for unseen text; losing a creation race re-reads."""
        embedding, classification = self._classify(text)

        try:
            group = self.store.create_group(text, embedding, classification)
        except DuplicateGroup:
            logger.info(f"[route] Group {text!r} created concurrently, re-reading")
            group = self.store.find_group(text)
            if group is None:
                raise
            return group, self._scored_or_canonical(group)
        except DuplicateVariation:
            existing = self.store.find_query(text, classification.domain)
            if existing is None:
                raise
            logger.info(f"[route] {text!r} already stored as query {existing.id}, reusing its group")
            owner = self.store.get_group(existing.query_group_id)
            return owner, self._scored_or_canonical(owner)

        return group, self.store.canonical_query(group)

    def _resolve_into(self, group: QueryGroup, text: str) -> Query:
        embedding, classification = self._classify(text)
        draft = QueryDraft(
            content=text,
            domain=classification.domain,
            expectation=classification.reply_type,
            embedding=embedding,
        )
        try:
            return self.store.add_variation(group, draft)
        except DuplicateVariation:
            existing = self.store.find_query(draft.content, draft.domain)
            if existing is None:
                raise
            return existing
