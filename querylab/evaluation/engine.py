"""Evaluation engine: explore, score and promote query variations.

## Query Evolution

Each cycle improves one QueryGroup a little:

1. **Explore**: rewrite the group's canonical phrasing into a new variation
2. **Evaluate**: retrieve K candidate chunks for the variation, rerank them,
   and store the amplitude (sum of ALL relevance scores)
3. **Promote**: move the canonical identifier to the best-scoring phrasing

Amplitude rewards phrasings whose whole neighbourhood is relevant, not just
the top hit. A phrasing that pulls 20 moderately relevant chunks beats one
that pulls a single perfect chunk and 19 misses.

## Consistency

Gateway calls happen before any write. An evaluation is persisted in one
transaction after every call succeeded, so a failed or cancelled evaluation
leaves nothing behind. Unique constraints resolve races: the loser gets a
duplicate error and re-reads the committed row.

## Concurrency

run_cycles() runs one cycle per group on a thread pool through
asyncio.run_in_executor (gateway clients are sync). Cycles of one group are
strictly sequential; distinct groups share nothing but the store. A store on
in-memory SQLite (one shared connection) runs its groups one at a time.
"""

import asyncio
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from querylab.config import CANDIDATE_K, CYCLE_MAX_WORKERS
from querylab.errors import AlreadyEvaluated, DuplicateVariation, GatewayTimeout, InvalidEntity
from querylab.evaluation.stopping import StoppingPolicy
from querylab.query_groups.models import Query, QueryDraft, QueryEvaluation, QueryGroup
from querylab.query_groups.store import QueryGroupStore
from querylab.rag_pipeline.retrieval.reranking import ScoredChunk, rerank_candidates
from querylab.shared.files import setup_logging

logger = setup_logging(__name__)


@dataclass
class CycleResult:
    """Outcome of one explore/evaluate/promote cycle.

    Attributes:
        group: The group as committed after promotion.
        previous_identifier: Canonical identifier before the cycle.
        variation: Query produced by the rewrite, None if it was skipped.
        evaluation: Evaluation of the variation, None if it was skipped.
        elapsed_ms: Wall-clock time of the cycle.
    """

    group: QueryGroup
    previous_identifier: str
    variation: Optional[Query] = None
    evaluation: Optional[QueryEvaluation] = None
    elapsed_ms: float = 0.0

    @property
    def promoted(self) -> bool:
        return self.group.canonical_identifier != self.previous_identifier


@dataclass
class CampaignResult:
    """Outcome of run_until(): every cycle plus why the campaign stopped."""

    group: QueryGroup
    stop_reason: str
    cycles: List[CycleResult] = field(default_factory=list)
    failed_iterations: int = 0
    best_amplitude: Optional[float] = None

    @property
    def iterations(self) -> int:
        return len(self.cycles) + self.failed_iterations


@dataclass
class GroupOutcome:
    """Per-group result of run_cycles(): a CycleResult or the error it raised."""

    group_id: int
    result: Optional[CycleResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EvaluationEngine:
    """Drives query evolution for QueryGroups.

    All collaborators are injected. Gateways only need the methods used here:
    embedder.embed(text), reranker.rerank(query, documents),
    rewriter.rewrite(text) and content_index.search(domain, embedding, k).

    Args:
        store: QueryGroupStore.
        embedder: Embedding gateway (e.g. OpenRouterEmbedder).
        reranker: Rerank gateway (e.g. RerankClient).
        rewriter: Rewrite gateway (e.g. QueryRewriter).
        content_index: WeaviateContentIndex or InMemoryContentIndex.
        candidate_k: Number of nearest chunks retrieved per evaluation.
    """

    def __init__(
        self,
        store: QueryGroupStore,
        embedder: Any,
        reranker: Any,
        rewriter: Any,
        content_index: Any,
        candidate_k: int = CANDIDATE_K,
    ):
        if candidate_k < 1:
            raise InvalidEntity("candidate_k must be >= 1")
        self.store = store
        self.embedder = embedder
        self.reranker = reranker
        self.rewriter = rewriter
        self.content_index = content_index
        self.candidate_k = candidate_k

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve(self, query: Query, k: Optional[int] = None) -> List[ScoredChunk]:
        """Nearest K chunks for a stored Query, each with its aligned relevance score.

        Nothing is persisted. Used by evaluate() and by the router.
        """
        candidates = self.content_index.search(query.domain, query.embedding, k or self.candidate_k)
        return rerank_candidates(self.reranker, query.content, candidates)

    # ------------------------------------------------------------------
    # Single-step operations
    # ------------------------------------------------------------------

    def evaluate(self, query: Query) -> QueryEvaluation:
        """Score a Query once and persist its evaluation.

        An already evaluated Query is returned as is, without gateway calls.

        Raises:
            GatewayTimeout, GatewayError: From the index or rerank gateway.
                Nothing is written.
            IndexMismatch: If the rerank response cannot be aligned.
        """
        existing = self.store.get_evaluation(query)
        if existing is not None:
            logger.info(f"[evaluate] Query {query.id} already evaluated (amplitude={existing.amplitude:.4f})")
            return existing

        start_time = time.time()
        scored = self.retrieve(query)
        amplitude = math.fsum(chunk.relevance_score for chunk in scored)
        distribution = {chunk.chunk_id: chunk.relevance_score for chunk in scored}

        try:
            evaluation = self.store.create_evaluation(query, amplitude, distribution)
        except AlreadyEvaluated:
            logger.info(f"[evaluate] Query {query.id} evaluated concurrently, re-reading")
            evaluation = self.store.get_evaluation(query)
            if evaluation is None:
                raise

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"[evaluate] Query {query.id} {query.content!r}: amplitude={evaluation.amplitude:.4f} "
            f"chunks={len(scored)} time_ms={elapsed_ms:.1f}"
        )
        return evaluation

    def generate_variation(self, group: QueryGroup) -> Query:
        """Rewrite the group's canonical phrasing and store it as a new Query.

        Returns:
            The new Query, or the existing one if this group already owns
            the same (content, domain).

        Raises:
            DuplicateVariation: If another group owns the rewritten phrasing.
            GatewayTimeout, GatewayError: From the rewrite or embedding gateway.
        """
        current = self.store.get_group(group.id)
        if current is None:
            raise InvalidEntity(f"Unknown query group {group.id}")

        classification = self.rewriter.rewrite(current.canonical_identifier)
        embedding = self.embedder.embed(classification.improved_query)
        draft = QueryDraft(
            content=classification.improved_query,
            domain=classification.domain,
            expectation=classification.reply_type,
            embedding=embedding,
        )

        try:
            return self.store.add_variation(current, draft)
        except DuplicateVariation:
            existing = self.store.find_query(draft.content, draft.domain)
            if existing is not None and existing.query_group_id == current.id:
                logger.info(f"[variation] Group {current.id} already has {draft.content!r}, reusing query {existing.id}")
                return existing
            raise

    def run_cycle(self, group: QueryGroup) -> CycleResult:
        """One explore -> evaluate -> promote step.

        A variation owned by another group is logged and skipped; promotion
        still runs over the group's existing evaluations.
        """
        start_time = time.time()
        current = self.store.get_group(group.id)
        if current is None:
            raise InvalidEntity(f"Unknown query group {group.id}")

        result = CycleResult(group=current, previous_identifier=current.canonical_identifier)

        try:
            result.variation = self.generate_variation(current)
        except DuplicateVariation as exc:
            logger.warning(f"[cycle] Group {current.id}: {exc}, skipping evaluation")

        if result.variation is not None:
            result.evaluation = self.evaluate(result.variation)

        result.group = self.store.promote(current)
        result.elapsed_ms = (time.time() - start_time) * 1000
        return result

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def _best_amplitude(self, group: QueryGroup) -> Optional[float]:
        evaluations = self.store.evaluations_for_group(group)
        if not evaluations:
            return None
        return max(evaluation.amplitude for evaluation in evaluations.values())

    def run_until(self, group: QueryGroup, policy: StoppingPolicy) -> CampaignResult:
        """Repeat run_cycle() until the policy says stop.

        A GatewayTimeout fails only that iteration; the campaign goes on.
        Any other error propagates.

        Example:
            >>> policy = StoppingPolicy(max_iterations=10, min_amplitude_delta=0.05, patience=3)
            >>> campaign = engine.run_until(group, policy)
            >>> campaign.stop_reason
            'plateau'
        """
        current = self.store.get_group(group.id)
        if current is None:
            raise InvalidEntity(f"Unknown query group {group.id}")

        tracker = policy.tracker(initial_best=self._best_amplitude(current))
        campaign = CampaignResult(group=current, stop_reason="")

        while True:
            reason = tracker.stop_reason()
            if reason is not None:
                campaign.stop_reason = reason
                break

            try:
                cycle = self.run_cycle(group)
            except GatewayTimeout as exc:
                campaign.failed_iterations += 1
                tracker.record(None)
                logger.warning(f"[campaign] Group {group.id} iteration {tracker.iterations} timed out: {exc}")
                continue

            campaign.cycles.append(cycle)
            campaign.group = cycle.group
            tracker.record(cycle.evaluation.amplitude if cycle.evaluation is not None else None)

        campaign.best_amplitude = tracker.best_amplitude
        logger.info(
            f"[campaign] Group {group.id} stopped ({campaign.stop_reason}) after "
            f"{campaign.iterations} iterations, canonical={campaign.group.canonical_identifier!r}"
        )
        return campaign

    async def run_cycles_async(
        self,
        groups: Sequence[QueryGroup],
        max_workers: int = CYCLE_MAX_WORKERS,
    ) -> List[GroupOutcome]:
        """Run one cycle per group concurrently.

        An in-memory SQLite store cannot take transactions from several
        threads, so its groups run one at a time.

        Returns:
            One GroupOutcome per group, in input order. A failing group does
            not cancel the others.
        """
        if max_workers < 1:
            raise InvalidEntity("max_workers must be >= 1")
        if not groups:
            return []
        if max_workers > 1 and not self.store.thread_safe:
            logger.warning("[cycles] Store shares one database connection, running groups one at a time")
            max_workers = 1

        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            tasks = [loop.run_in_executor(executor, self.run_cycle, group) for group in groups]
            results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for group, result in zip(groups, results):
            if isinstance(result, BaseException):
                logger.warning(f"[cycles] Group {group.id} failed: {result!r}")
                outcomes.append(GroupOutcome(group_id=group.id, error=result))
            else:
                outcomes.append(GroupOutcome(group_id=group.id, result=result))

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(f"[cycles] {len(outcomes) - failed}/{len(outcomes)} groups completed")
        return outcomes

    def run_cycles(
        self,
        groups: Sequence[QueryGroup],
        max_workers: int = CYCLE_MAX_WORKERS,
    ) -> List[GroupOutcome]:
        """Sync wrapper for run_cycles_async()."""
        return asyncio.run(self.run_cycles_async(groups, max_workers))
