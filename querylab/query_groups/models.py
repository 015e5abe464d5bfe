"""SQLAlchemy models and validated constructors for query groups.

## Data Model

- QueryGroup: one canonical user intent. canonical_identifier is the current
  best-known phrasing and is only changed by promotion.
- Query: one concrete phrasing under a group, tagged with a Domain and a
  ReplyType and carrying its embedding. Immutable once inserted.
- QueryEvaluation: the scored outcome of running one Query against the
  content index. At most one per Query, never updated in place.

Uniqueness is enforced by the storage layer so concurrent writers fail one
side instead of corrupting state:
- query_groups.canonical_identifier
- queries.(content, domain)
- query_evaluations.query_id

Foreign keys are ON DELETE RESTRICT: a group cannot be deleted while Queries
reference it, and a Query cannot be deleted while its evaluation exists.

## Validation

Rows are built through new_query_group(), new_query() and new_evaluation(),
which reject invalid fields with InvalidEntity before anything reaches the
database.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from querylab.errors import InvalidEntity
from querylab.rag_pipeline.retrieval.preprocessing.schemas import Domain, ReplyType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls):
    # Store enum values ("setting"), not member names ("SETTING")
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class QueryGroup(Base):
    __tablename__ = "query_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    canonical_identifier: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    # Stamped each time promotion picks a scored winner
    promoted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    queries: Mapped[List["Query"]] = relationship(
        back_populates="group", order_by="Query.id", passive_deletes="all"
    )

    def __repr__(self) -> str:
        return f"QueryGroup(id={self.id}, canonical_identifier={self.canonical_identifier!r})"


class Query(Base):
    __tablename__ = "queries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query_group_id: Mapped[int] = mapped_column(
        ForeignKey("query_groups.id", ondelete="RESTRICT"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[Domain] = mapped_column(_enum_column(Domain), nullable=False)
    expectation: Mapped[ReplyType] = mapped_column(_enum_column(ReplyType), nullable=False)
    embedding: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    group: Mapped[QueryGroup] = relationship(back_populates="queries")
    evaluation: Mapped[Optional["QueryEvaluation"]] = relationship(
        back_populates="query", uselist=False, passive_deletes="all"
    )

    __table_args__ = (
        UniqueConstraint("content", "domain", name="uq_queries_content_domain"),
        Index("idx_queries_group", "query_group_id"),
    )

    def __repr__(self) -> str:
        return (
            f"Query(id={self.id}, group={self.query_group_id}, "
            f"domain={self.domain.value}, content={self.content!r})"
        )


class QueryEvaluation(Base):
    __tablename__ = "query_evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    query_id: Mapped[int] = mapped_column(
        ForeignKey("queries.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    amplitude: Mapped[float] = mapped_column(Float, nullable=False)
    # chunk_id -> relevance score
    distribution: Mapped[Dict[str, float]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    query: Mapped[Query] = relationship(back_populates="evaluation")

    __table_args__ = (
        Index("idx_query_evaluations_amplitude", "amplitude"),
    )

    def __repr__(self) -> str:
        return f"QueryEvaluation(query_id={self.query_id}, amplitude={self.amplitude:.4f})"


# ============================================================================
# VALIDATED CONSTRUCTORS
# ============================================================================


def _coerce_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise InvalidEntity(f"{field} must be one of {allowed}, got {value!r}") from None


def _validate_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidEntity(f"{field} must be a non-empty string")
    return value


def _validate_embedding(embedding: Any) -> List[float]:
    if embedding is None or isinstance(embedding, (str, bytes)):
        raise InvalidEntity("embedding must be a sequence of floats")
    try:
        vector = [float(x) for x in embedding]
    except (TypeError, ValueError) as exc:
        raise InvalidEntity(f"embedding must be a sequence of floats: {exc}") from None
    if not vector:
        raise InvalidEntity("embedding must not be empty")
    if not all(math.isfinite(x) for x in vector):
        raise InvalidEntity("embedding must only contain finite values")
    return vector


@dataclass(frozen=True)
class QueryDraft:
    """A validated phrasing that has not been inserted yet.

    Attributes:
        content: The phrasing text.
        domain: Content index partition to search.
        expectation: Expected reply type.
        embedding: Embedding vector of content.
    """

    content: str
    domain: Domain
    expectation: ReplyType
    embedding: List[float]

    def __post_init__(self) -> None:
        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "content", _validate_text(self.content, "content"))
        object.__setattr__(self, "domain", _coerce_enum(Domain, self.domain, "domain"))
        object.__setattr__(self, "expectation", _coerce_enum(ReplyType, self.expectation, "expectation"))
        object.__setattr__(self, "embedding", _validate_embedding(self.embedding))


def new_query_group(identifier: str) -> QueryGroup:
    """Build an unsaved QueryGroup, rejecting a blank identifier."""
    return QueryGroup(canonical_identifier=_validate_text(identifier, "canonical_identifier"))


def new_query(query_group_id: int, draft: QueryDraft) -> Query:
    """Build an unsaved Query under a group from a validated draft."""
    if not isinstance(draft, QueryDraft):
        raise InvalidEntity(f"expected QueryDraft, got {type(draft).__name__}")
    return Query(
        query_group_id=query_group_id,
        content=draft.content,
        domain=draft.domain,
        expectation=draft.expectation,
        embedding=list(draft.embedding),
    )


def new_evaluation(
    query_id: int,
    amplitude: float,
    distribution: Mapping[str, float],
) -> QueryEvaluation:
    """Build an unsaved QueryEvaluation.

    Raises:
        InvalidEntity: If amplitude is negative or not finite, or a score in
            the distribution is negative or not finite.
    """
    amplitude = float(amplitude)
    if not math.isfinite(amplitude) or amplitude < 0:
        raise InvalidEntity(f"amplitude must be a finite non-negative number, got {amplitude}")

    scores: Dict[str, float] = {}
    for chunk_id, score in distribution.items():
        score = float(score)
        if not math.isfinite(score) or score < 0:
            raise InvalidEntity(f"score for {chunk_id!r} must be finite and non-negative, got {score}")
        scores[str(chunk_id)] = score

    return QueryEvaluation(query_id=query_id, amplitude=amplitude, distribution=scores)

