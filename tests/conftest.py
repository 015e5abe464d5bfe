"""Shared fixtures: in-memory store, scripted gateways and a local content index.

The gateways here are deterministic stand-ins with the same call surface as
the real clients (embed, rewrite, rerank). Each records its calls so tests
can assert that a path did or did not hit a gateway.
"""

import threading
from typing import Dict, List, Optional, Sequence

import pytest

from querylab.evaluation.engine import EvaluationEngine
from querylab.query_groups.database import build_engine, build_session_factory, init_db
from querylab.query_groups.models import QueryDraft
from querylab.query_groups.store import QueryGroupStore
from querylab.rag_pipeline.indexing.content_index import ContentChunk, InMemoryContentIndex
from querylab.rag_pipeline.retrieval.preprocessing.schemas import (
    Domain,
    QueryClassification,
    ReplyType,
)
from querylab.rag_pipeline.retrieval.reranking import RerankScore


def classify(
    improved_query: str,
    domain: Domain = Domain.SETTING,
    reply_type: ReplyType = ReplyType.RESULTS,
) -> QueryClassification:
    return QueryClassification(reply_type=reply_type, domain=domain, improved_query=improved_query)


def draft(
    content: str,
    domain: Domain = Domain.SETTING,
    expectation: ReplyType = ReplyType.RESULTS,
    embedding: Sequence[float] = (1.0, 0.0),
) -> QueryDraft:
    return QueryDraft(content=content, domain=domain, expectation=expectation, embedding=list(embedding))


class FakeEmbedder:
    """Returns a fixed vector per text (default for unknown texts)."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=(1.0, 0.0)):
        self.vectors = vectors or {}
        self.default = list(default)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        return list(self.vectors.get(text, self.default))


class ScriptedRewriter:
    """Rewrites each input text from a per-text script.

    A script entry is a list of outcomes consumed in order. An outcome is an
    improved phrasing (str), a QueryClassification, or an exception to raise.
    Once a text's script is used up, it rewrites to "<text> v<n>".
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, domain: Domain = Domain.SETTING,
                 reply_type: ReplyType = ReplyType.RESULTS):
        self.script = {text: list(outcomes) for text, outcomes in (script or {}).items()}
        self.domain = domain
        self.reply_type = reply_type
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def rewrite(self, text: str) -> QueryClassification:
        with self._lock:
            self.calls.append(text)
            outcomes = self.script.get(text)
            outcome = outcomes.pop(0) if outcomes else f"{text} v{self.calls.count(text)}"

        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, QueryClassification):
            return outcome
        return classify(outcome, self.domain, self.reply_type)


class ScriptedReranker:
    """Scores documents from a text -> score table.

    order controls how results come back: "input" (document order),
    "reversed", or "by_score" (highest first, like a real rerank API).
    """

    def __init__(self, scores: Optional[Dict[str, float]] = None, default: float = 0.0,
                 order: str = "input", error: Optional[BaseException] = None):
        self.scores = scores or {}
        self.default = default
        self.order = order
        self.error = error
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def rerank(self, query: str, documents: Sequence[str]) -> List[RerankScore]:
        with self._lock:
            self.calls.append((query, list(documents)))
        if self.error is not None:
            raise self.error

        results = [
            RerankScore(index=i, relevance_score=self.scores.get(doc, self.default))
            for i, doc in enumerate(documents)
        ]
        if self.order == "reversed":
            results.reverse()
        elif self.order == "by_score":
            results.sort(key=lambda r: r.relevance_score, reverse=True)
        return results


def add_chunks(index: InMemoryContentIndex, texts: Sequence[str], domain: Domain = Domain.SETTING,
               embedding: Sequence[float] = (1.0, 0.0)) -> List[ContentChunk]:
    """Add one chunk per text; chunk ids are "<domain>-<position>"."""
    chunks = [
        ContentChunk(
            chunk_id=f"{domain.value}-{i}",
            item_id=f"item-{i}",
            domain=domain,
            text=text,
            embedding=list(embedding),
        )
        for i, text in enumerate(texts)
    ]
    index.add_many(chunks)
    return chunks


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://", echo=False)
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> QueryGroupStore:
    return QueryGroupStore(session_factory)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def rewriter() -> ScriptedRewriter:
    return ScriptedRewriter()


@pytest.fixture
def reranker() -> ScriptedReranker:
    return ScriptedReranker()


@pytest.fixture
def content_index() -> InMemoryContentIndex:
    return InMemoryContentIndex()


@pytest.fixture
def engine(store, embedder, reranker, rewriter, content_index) -> EvaluationEngine:
    return EvaluationEngine(
        store=store,
        embedder=embedder,
        reranker=reranker,
        rewriter=rewriter,
        content_index=content_index,
        candidate_k=20,
    )


@pytest.fixture
def file_store(tmp_path) -> QueryGroupStore:
    """Store on a SQLite file, for tests that write from several threads."""
    engine = build_engine(f"sqlite:///{tmp_path / 'querylab.db'}", echo=False)
    init_db(engine)
    yield QueryGroupStore(build_session_factory(engine))
    engine.dispose()
