"""
Query evolution: improve the canonical phrasing of stored query groups.

This stage:
- Loads query groups from the store (all, or the ones named with --groups)
- Without stopping options: runs ONE cycle per group, groups in parallel
- With stopping options: runs a campaign per group until the policy stops it
- Logs canonical identifier before/after and best amplitude per group

Meant for cron or manual batch runs. The router serves live traffic from
whatever the last run promoted.

Usage:
    python -m querylab.stages.run_query_evolution --init-db
    python -m querylab.stages.run_query_evolution                        # One cycle, all groups
    python -m querylab.stages.run_query_evolution --groups "ocean movies"
    python -m querylab.stages.run_query_evolution --iterations 10 --min-delta 0.05 --patience 3
    python -m querylab.stages.run_query_evolution --deadline 600 --workers 8
"""

import argparse
from typing import List, Optional

from querylab.config import (
    CONTENT_COLLECTION,
    CYCLE_MAX_WORKERS,
    DATA_DIR,
    DATABASE_URL,
    WEAVIATE_HOST,
    WEAVIATE_HTTP_PORT,
)
from querylab.evaluation.engine import EvaluationEngine
from querylab.evaluation.stopping import StoppingPolicy
from querylab.query_groups.database import build_engine, build_session_factory, init_db
from querylab.query_groups.models import QueryGroup
from querylab.query_groups.store import QueryGroupStore
from querylab.rag_pipeline.embedding.embedder import OpenRouterEmbedder
from querylab.rag_pipeline.indexing.content_index import WeaviateContentIndex
from querylab.rag_pipeline.indexing.weaviate_client import get_client
from querylab.rag_pipeline.retrieval.preprocessing.query_rewriter import QueryRewriter
from querylab.rag_pipeline.retrieval.reranking import RerankClient
from querylab.shared.files import setup_logging

# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------

logger = setup_logging("QueryEvolution")


# ---------------------------------------------------------------------------
# CORE LOGIC
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run query evolution cycles over stored query groups.")
    parser.add_argument("--groups", nargs="+", metavar="IDENTIFIER",
                        help="Canonical identifiers to process (default: all groups)")
    parser.add_argument("--iterations", type=int, help="Max cycles per group")
    parser.add_argument("--min-delta", type=float, help="Minimum best-amplitude gain that counts as progress")
    parser.add_argument("--patience", type=int, default=1,
                        help="Non-improving cycles tolerated before stopping (with --min-delta)")
    parser.add_argument("--deadline", type=float, help="Wall-clock budget per group, in seconds")
    parser.add_argument("--workers", type=int, default=CYCLE_MAX_WORKERS,
                        help="Parallel groups in single-cycle mode")
    parser.add_argument("--init-db", action="store_true", help="Create tables and exit")
    return parser.parse_args(argv)


def build_policy(args: argparse.Namespace) -> Optional[StoppingPolicy]:
    """StoppingPolicy from the CLI options, or None for a single cycle."""
    if args.iterations is None and args.min_delta is None and args.deadline is None:
        return None
    return StoppingPolicy(
        max_iterations=args.iterations,
        min_amplitude_delta=args.min_delta,
        patience=args.patience,
        deadline_seconds=args.deadline,
    )


def select_groups(store: QueryGroupStore, identifiers: Optional[List[str]]) -> List[QueryGroup]:
    """Resolve --groups to stored groups, warning about unknown identifiers."""
    if not identifiers:
        return store.list_groups()

    groups = []
    for identifier in identifiers:
        group = store.find_group(identifier)
        if group is None:
            logger.warning(f"No query group with canonical identifier {identifier!r}, skipping")
            continue
        groups.append(group)
    return groups


def run_single_cycle(engine: EvaluationEngine, groups: List[QueryGroup], workers: int) -> int:
    """One cycle per group in parallel. Returns the number of failed groups."""
    outcomes = engine.run_cycles(groups, max_workers=workers)
    for outcome in outcomes:
        if outcome.ok:
            cycle = outcome.result
            amplitude = cycle.evaluation.amplitude if cycle.evaluation is not None else None
            logger.info(
                f"Group {outcome.group_id}: {cycle.previous_identifier!r} -> "
                f"{cycle.group.canonical_identifier!r} (variation amplitude={amplitude})"
            )
        else:
            logger.error(f"Group {outcome.group_id} failed: {outcome.error}")
    return sum(1 for outcome in outcomes if not outcome.ok)


def run_campaigns(engine: EvaluationEngine, groups: List[QueryGroup], policy: StoppingPolicy) -> None:
    """Run a campaign per group, one group after another."""
    for group in groups:
        logger.info(f"Campaign for group {group.id}: {group.canonical_identifier!r}")
        campaign = engine.run_until(group, policy)
        logger.info(
            f"  {group.canonical_identifier!r} -> {campaign.group.canonical_identifier!r} | "
            f"iterations={campaign.iterations} failed={campaign.failed_iterations} "
            f"best_amplitude={campaign.best_amplitude} stop={campaign.stop_reason}"
        )


# ---------------------------------------------------------------------------
# ENTRY POINT
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for query evolution."""
    args = parse_args(argv)
    policy = build_policy(args)

    if DATABASE_URL.startswith("sqlite:///") and str(DATA_DIR) in DATABASE_URL:
        DATA_DIR.mkdir(parents=True, exist_ok=True)

    db_engine = build_engine()
    if args.init_db:
        init_db(db_engine)
        logger.info(f"Created tables in {db_engine.url}")
        return 0

    store = QueryGroupStore(build_session_factory(db_engine))
    groups = select_groups(store, args.groups)
    if not groups:
        logger.warning("No query groups to process. Route some queries first.")
        return 0

    logger.info(f"Processing {len(groups)} groups")
    logger.info(f"Content index: {CONTENT_COLLECTION} at http://{WEAVIATE_HOST}:{WEAVIATE_HTTP_PORT}")

    client = get_client()
    try:
        engine = EvaluationEngine(
            store=store,
            embedder=OpenRouterEmbedder(),
            reranker=RerankClient(),
            rewriter=QueryRewriter(),
            content_index=WeaviateContentIndex(client, CONTENT_COLLECTION),
        )
        if policy is None:
            failed = run_single_cycle(engine, groups, args.workers)
            return 1 if failed else 0
        run_campaigns(engine, groups, policy)
        return 0
    finally:
        client.close()


if __name__ == "__main__":
    raise SystemExit(main())
