"""Query group store: canonical intents, their phrasings and their scores.

## Adaptive Query Groups

A QueryGroup remembers one user intent. Each phrasing of that intent is a
Query, and each Query is scored at most once by a QueryEvaluation. Promotion
moves the group's canonical_identifier to the content of its best-scoring
Query, so over repeated cycles the canonical phrasing converges toward the
variant that retrieves best.

## Library Usage

Uses SQLAlchemy 2.0 ORM with an injected sessionmaker. Each public method
runs in its own transaction (session_scope), so one store instance can be
shared across worker threads. In-memory SQLite is the exception: every
session uses the same connection there (see thread_safe). IntegrityError
from the unique constraints is translated into DuplicateGroup,
DuplicateVariation or AlreadyEvaluated; the transaction is rolled back
before the error leaves the store.

## Data Flow

1. Router: find_group() -> create_group() on a miss (group + first Query
   in one transaction)
2. Engine: add_variation() -> create_evaluation() -> promote()
3. Router: best_query() to reuse the best pre-scored phrasing
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from querylab.errors import (
    AlreadyEvaluated,
    DuplicateGroup,
    DuplicateVariation,
    InvalidEntity,
)
from querylab.query_groups.database import session_scope, shares_one_connection
from querylab.query_groups.models import (
    Query,
    QueryDraft,
    QueryEvaluation,
    QueryGroup,
    new_evaluation,
    new_query,
    new_query_group,
)
from querylab.rag_pipeline.retrieval.preprocessing.schemas import Domain, QueryClassification
from querylab.shared.files import setup_logging

logger = setup_logging(__name__)


class GroupState(str, Enum):
    """Lifecycle of a group as seen by the router."""

    COLD_START = "cold_start"
    SCORED = "scored"
    CONVERGED = "converged"


class QueryGroupStore:
    """Persistence for QueryGroup, Query and QueryEvaluation rows.

    Args:
        session_factory: SQLAlchemy sessionmaker (see build_session_factory()).

    Example:
        >>> engine = build_engine("sqlite://")
        >>> init_db(engine)
        >>> store = QueryGroupStore(build_session_factory(engine))
        >>> group = store.create_group("ocean movies", embedding, classification)
        >>> store.find_group("ocean movies").id == group.id
        True
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    @property
    def thread_safe(self) -> bool:
        """False when the database is in-memory SQLite (one shared connection)."""
        bind = self._session_factory.kw.get("bind")
        return bind is None or not shares_one_connection(bind)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def find_group(self, identifier: str) -> Optional[QueryGroup]:
        """Exact match against canonical_identifier (no fuzzy matching)."""
        with self._session() as session:
            return session.scalars(
                select(QueryGroup).where(QueryGroup.canonical_identifier == identifier)
            ).first()

    def get_group(self, group_id: int) -> Optional[QueryGroup]:
        with self._session() as session:
            return session.get(QueryGroup, group_id)

    def list_groups(self) -> List[QueryGroup]:
        with self._session() as session:
            return list(session.scalars(select(QueryGroup).order_by(QueryGroup.id)))

    def create_group(
        self,
        identifier: str,
        embedding: Sequence[float],
        classification: QueryClassification,
    ) -> QueryGroup:
        """Insert a group and its first Query in a single transaction.

        The first Query's content is the identifier itself, tagged with the
        classification's domain and reply type.

        Args:
            identifier: Raw query text, becomes canonical_identifier.
            embedding: Embedding of the identifier.
            classification: Rewrite gateway output for the identifier.

        Returns:
            The committed QueryGroup.

        Raises:
            DuplicateGroup: If the identifier is already a canonical identifier.
            DuplicateVariation: If (identifier, domain) already exists as a
                Query of another group. Neither row is written.
            InvalidEntity: If any field fails validation.
        """
        group = new_query_group(identifier)
        draft = QueryDraft(
            content=identifier,
            domain=classification.domain,
            expectation=classification.reply_type,
            embedding=list(embedding),
        )

        with self._session() as session:
            session.add(group)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateGroup(identifier) from exc

            session.add(new_query(group.id, draft))
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateVariation(draft.content, draft.domain.value) from exc

        logger.info(f"[store] Created group {group.id}: {identifier!r} ({draft.domain.value})")
        return group

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def add_variation(self, group: QueryGroup, rewritten_query: QueryDraft) -> Query:
        """Insert a new Query under an existing group.

        Raises:
            DuplicateVariation: If (content, domain) already exists.
            InvalidEntity: If the group does not exist.
        """
        with self._session() as session:
            if session.get(QueryGroup, group.id) is None:
                raise InvalidEntity(f"Unknown query group {group.id}")

            query = new_query(group.id, rewritten_query)
            session.add(query)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateVariation(rewritten_query.content, rewritten_query.domain.value) from exc

        logger.info(f"[store] Added variation {query.id} to group {group.id}: {query.content!r}")
        return query

    def get_query(self, query_id: int) -> Optional[Query]:
        with self._session() as session:
            return session.get(Query, query_id)

    def find_query(self, content: str, domain: Domain) -> Optional[Query]:
        with self._session() as session:
            return session.scalars(
                select(Query).where(Query.content == content, Query.domain == Domain(domain))
            ).first()

    def find_group_by_phrasing(self, content: str) -> Optional[QueryGroup]:
        """Group owning a stored Query with this content, in any domain.

        Catches phrasings that were canonical before a promotion. The oldest
        matching Query wins when several domains hold the same text.
        """
        with self._session() as session:
            query = session.scalars(
                select(Query).where(Query.content == content).order_by(Query.id)
            ).first()
            if query is None:
                return None
            return session.get(QueryGroup, query.query_group_id)

    def list_queries(self, group: QueryGroup) -> List[Query]:
        with self._session() as session:
            return list(session.scalars(
                select(Query).where(Query.query_group_id == group.id).order_by(Query.id)
            ))

    def canonical_query(self, group: QueryGroup) -> Optional[Query]:
        """Query whose content is the canonical identifier, else the oldest Query."""
        with self._session() as session:
            current = session.get(QueryGroup, group.id)
            if current is None:
                return None
            query = session.scalars(
                select(Query)
                .where(
                    Query.query_group_id == current.id,
                    Query.content == current.canonical_identifier,
                )
                .order_by(Query.id)
            ).first()
            if query is not None:
                return query
            return session.scalars(
                select(Query).where(Query.query_group_id == current.id).order_by(Query.id)
            ).first()

    # ------------------------------------------------------------------
    # Scoring and promotion
    # ------------------------------------------------------------------

    @staticmethod
    def _ranked_queries(session: Session, group_id: int) -> List[Tuple[Query, float]]:
        # Highest amplitude first; ties go to the newest Query
        stmt = (
            select(Query, QueryEvaluation.amplitude)
            .join(QueryEvaluation, QueryEvaluation.query_id == Query.id)
            .where(Query.query_group_id == group_id)
            .order_by(
                QueryEvaluation.amplitude.desc(),
                Query.created_at.desc(),
                Query.id.desc(),
            )
        )
        return [(row[0], row[1]) for row in session.execute(stmt).all()]

    def best_query(self, group: QueryGroup) -> Optional[Query]:
        """Evaluated Query with the highest amplitude, or None if none is scored."""
        with self._session() as session:
            ranked = self._ranked_queries(session, group.id)
            return ranked[0][0] if ranked else None

    def count_evaluations(self, group: QueryGroup) -> int:
        with self._session() as session:
            return session.scalar(
                select(func.count(QueryEvaluation.id))
                .join(Query, QueryEvaluation.query_id == Query.id)
                .where(Query.query_group_id == group.id)
            ) or 0

    def group_state(self, group: QueryGroup) -> GroupState:
        """cold_start (nothing scored) -> scored -> converged (promoted at least once)."""
        current = self.get_group(group.id)
        if current is not None and current.promoted_at is not None:
            return GroupState.CONVERGED
        if self.count_evaluations(group) > 0:
            return GroupState.SCORED
        return GroupState.COLD_START

    def promote(self, group: QueryGroup) -> QueryGroup:
        """Set canonical_identifier to the content of the best-scoring Query.

        Only evaluated Queries compete. The winner has the strictly maximal
        amplitude; ties are broken by the newest Query. A winner whose content
        is already another group's canonical identifier is skipped in favour
        of the next candidate. With no evaluated Query the group is returned
        unchanged.

        Returns:
            The group as committed after promotion.
        """
        with self._session() as session:
            current = session.get(QueryGroup, group.id, with_for_update=True)
            if current is None:
                raise InvalidEntity(f"Unknown query group {group.id}")

            ranked = self._ranked_queries(session, current.id)
            if not ranked:
                logger.info(f"[promote] Group {current.id} has no evaluated queries, unchanged")
                return current

            for query, amplitude in ranked:
                if query.content != current.canonical_identifier:
                    taken = session.scalar(
                        select(QueryGroup.id).where(
                            QueryGroup.canonical_identifier == query.content,
                            QueryGroup.id != current.id,
                        )
                    )
                    if taken is not None:
                        logger.warning(
                            f"[promote] {query.content!r} is canonical for group {taken}, "
                            f"trying next candidate"
                        )
                        continue

                previous = current.canonical_identifier
                current.canonical_identifier = query.content
                current.promoted_at = datetime.now(timezone.utc)
                try:
                    session.flush()
                except IntegrityError as exc:
                    raise DuplicateGroup(query.content) from exc

                if previous != query.content:
                    logger.info(
                        f"[promote] Group {current.id}: {previous!r} -> {query.content!r} "
                        f"(amplitude={amplitude:.4f})"
                    )
                return current

            logger.warning(f"[promote] Group {current.id}: no usable candidate, unchanged")
            return current

    # ------------------------------------------------------------------
    # Evaluations
    # ------------------------------------------------------------------

    def get_evaluation(self, query: Query) -> Optional[QueryEvaluation]:
        with self._session() as session:
            return session.scalars(
                select(QueryEvaluation).where(QueryEvaluation.query_id == query.id)
            ).first()

    def create_evaluation(
        self,
        query: Query,
        amplitude: float,
        distribution: Mapping[str, float],
    ) -> QueryEvaluation:
        """Persist the one evaluation a Query may own.

        Raises:
            AlreadyEvaluated: If the Query already has an evaluation.
            InvalidEntity: If the Query does not exist or the scores are invalid.
        """
        evaluation = new_evaluation(query.id, amplitude, distribution)

        with self._session() as session:
            if session.get(Query, query.id) is None:
                raise InvalidEntity(f"Unknown query {query.id}")

            session.add(evaluation)
            try:
                session.flush()
            except IntegrityError as exc:
                raise AlreadyEvaluated(query.id) from exc

        return evaluation

    def delete_evaluation(self, query: Query) -> bool:
        """Delete a Query's evaluation so it can be scored again.

        Returns:
            True if an evaluation was deleted, False if none existed.
        """
        with self._session() as session:
            evaluation = session.scalars(
                select(QueryEvaluation).where(QueryEvaluation.query_id == query.id)
            ).first()
            if evaluation is None:
                return False
            session.delete(evaluation)

        logger.info(f"[store] Deleted evaluation of query {query.id}")
        return True

    def evaluations_for_group(self, group: QueryGroup) -> Dict[int, QueryEvaluation]:
        """Map of query_id -> evaluation for every scored Query in a group."""
        with self._session() as session:
            rows = session.scalars(
                select(QueryEvaluation)
                .join(Query, QueryEvaluation.query_id == Query.id)
                .where(Query.query_group_id == group.id)
            )
            return {evaluation.query_id: evaluation for evaluation in rows}
