"""Tests for the HTTP gateways (structured chat, embeddings, rerank).

## Index Alignment

Embedding and rerank APIs tag every item of their response with the
position of the input it belongs to, and do not promise input order. The
gateways sort by that index and refuse anything that is not an exact
permutation of the inputs, instead of zipping positionally.

## Test Coverage

These tests verify:
- post_json retry/backoff on 429/5xx and timeouts, fail-fast on 4xx
- Structured completions with json_object fallback
- Embedding batch responses are reordered by index
- Rerank responses are aligned by index; malformed ones raise IndexMismatch

requests.post and time.sleep are monkeypatched; nothing leaves the process.
"""

import json

import pytest
import requests

from querylab.errors import GatewayError, GatewayTimeout, IndexMismatch
from querylab.rag_pipeline.embedding import embedder as embedder_module
from querylab.rag_pipeline.embedding.embedder import OpenRouterEmbedder, align_embeddings
from querylab.rag_pipeline.indexing.content_index import IndexHit
from querylab.rag_pipeline.retrieval import reranking as reranking_module
from querylab.rag_pipeline.retrieval.preprocessing.query_rewriter import QueryRewriter
from querylab.rag_pipeline.retrieval.preprocessing.schemas import (
    Domain,
    QueryClassification,
    ReplyType,
)
from querylab.rag_pipeline.retrieval.reranking import (
    RerankClient,
    RerankScore,
    align_scores,
    rerank_candidates,
)
from querylab.shared import openrouter_client
from querylab.shared.openrouter_client import (
    APIError,
    OpenRouterError,
    RateLimitError,
    call_structured_completion,
    post_json,
)


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("No JSON")
        return self._body


class FakePost:
    """Replays scripted responses (or raises scripted exceptions) in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def sleeps(monkeypatch):
    delays = []
    monkeypatch.setattr(openrouter_client.time, "sleep", delays.append)
    return delays


def install(monkeypatch, *outcomes) -> FakePost:
    fake = FakePost(*outcomes)
    monkeypatch.setattr(openrouter_client.requests, "post", fake)
    return fake


def chat_body(content: str) -> dict:
    return {"choices": [{"message": {"content": content}}]}


class TestPostJson:
    """Retry and error mapping of the shared HTTP helper."""

    def test_success(self, monkeypatch, sleeps) -> None:
        fake = install(monkeypatch, FakeResponse(200, {"ok": True}))
        assert post_json("http://x/api", {"a": 1}, "key", timeout=5) == {"ok": True}
        assert fake.calls[0]["headers"]["Authorization"] == "Bearer key"
        assert fake.calls[0]["timeout"] == 5
        assert sleeps == []

    def test_missing_key_fails_fast(self, monkeypatch, sleeps) -> None:
        fake = install(monkeypatch)
        with pytest.raises(OpenRouterError):
            post_json("http://x/api", {}, None, timeout=5)
        assert fake.calls == []

    def test_rate_limit_then_success(self, monkeypatch, sleeps) -> None:
        install(monkeypatch, FakeResponse(429, {}), FakeResponse(200, {"ok": True}))
        assert post_json("http://x/api", {}, "key", timeout=5, backoff_base=2.0) == {"ok": True}
        assert sleeps == [2.0]

    def test_rate_limit_exhausted(self, monkeypatch, sleeps) -> None:
        install(monkeypatch, *[FakeResponse(429, {}) for _ in range(3)])
        with pytest.raises(RateLimitError):
            post_json("http://x/api", {}, "key", timeout=5, max_retries=2, backoff_base=2.0)
        assert sleeps == [2.0, 4.0]

    def test_server_error_exhausted(self, monkeypatch, sleeps) -> None:
        install(monkeypatch, FakeResponse(503, {}), FakeResponse(503, {}))
        with pytest.raises(APIError) as exc_info:
            post_json("http://x/api", {}, "key", timeout=5, max_retries=1)
        assert exc_info.value.status_code == 503

    def test_client_error_not_retried(self, monkeypatch, sleeps) -> None:
        fake = install(monkeypatch, FakeResponse(400, {"error": {"message": "bad model"}}))
        with pytest.raises(APIError, match="bad model") as exc_info:
            post_json("http://x/api", {}, "key", timeout=5)
        assert exc_info.value.status_code == 400
        assert len(fake.calls) == 1

    def test_timeouts_become_gateway_timeout(self, monkeypatch, sleeps) -> None:
        fake = install(monkeypatch, *[requests.Timeout("slow") for _ in range(4)])
        with pytest.raises(GatewayTimeout):
            post_json("http://x/api", {}, "key", timeout=15, max_retries=3)
        assert len(fake.calls) == 4

    def test_connection_errors_become_gateway_error(self, monkeypatch, sleeps) -> None:
        install(monkeypatch, requests.ConnectionError("down"), requests.ConnectionError("down"))
        with pytest.raises(GatewayError):
            post_json("http://x/api", {}, "key", timeout=5, max_retries=1)

    def test_non_json_body(self, monkeypatch, sleeps) -> None:
        install(monkeypatch, FakeResponse(200, None, text="<html>"))
        with pytest.raises(APIError):
            post_json("http://x/api", {}, "key", timeout=5)

    def test_http_errors_are_gateway_errors(self) -> None:
        assert issubclass(RateLimitError, GatewayError)
        assert issubclass(APIError, GatewayError)


class TestStructuredCompletions:
    """Structured chat completions, as used by the rewriter."""

    def test_structured_completion_sends_schema(self, monkeypatch, sleeps) -> None:
        body = chat_body('{"reply_type": "results", "domain": "setting", "improved_query": "films at sea"}')
        fake = install(monkeypatch, FakeResponse(200, body))

        result = call_structured_completion(
            [{"role": "user", "content": "ocean movies"}], "some/model", QueryClassification,
            api_key="key", base_url="http://x",
        )

        assert result.domain == Domain.SETTING
        assert result.improved_query == "films at sea"
        response_format = fake.calls[0]["json"]["response_format"]
        assert response_format["type"] == "json_schema"
        assert response_format["json_schema"]["name"] == "QueryClassification"

    def test_schema_rejected_falls_back_to_json_object(self, monkeypatch, sleeps) -> None:
        body = chat_body('{"reply_type": "recommendation", "domain": "description", "improved_query": "x"}')
        fake = install(
            monkeypatch,
            FakeResponse(400, {"error": {"message": "response_format json_schema not supported"}}),
            FakeResponse(200, body),
        )

        result = call_structured_completion(
            [{"role": "user", "content": "q"}], "some/model", QueryClassification, api_key="key",
        )

        assert result.reply_type == ReplyType.RECOMMENDATION
        assert fake.calls[1]["json"]["response_format"] == {"type": "json_object"}

    def test_invalid_reply_after_fallback_raises(self, monkeypatch, sleeps) -> None:
        bad = chat_body('{"reply_type": "results", "domain": "ocean", "improved_query": "x"}')
        install(monkeypatch, FakeResponse(200, bad), FakeResponse(200, bad))
        with pytest.raises(APIError):
            call_structured_completion(
                [{"role": "user", "content": "q"}], "some/model", QueryClassification, api_key="key",
            )

    def test_rewriter_uses_its_timeout(self, monkeypatch, sleeps) -> None:
        body = chat_body('{"reply_type": "results", "domain": "setting", "improved_query": "\\"films at sea\\""}')
        fake = install(monkeypatch, FakeResponse(200, body))

        result = QueryRewriter(api_key="key", base_url="http://x", timeout=15).rewrite("ocean movies")

        assert result.improved_query == "films at sea"
        assert fake.calls[0]["timeout"] == 15


class TestEmbeddings:
    """Embedding batches are aligned by index."""

    def test_align_reorders_by_index(self) -> None:
        items = [
            {"index": 2, "embedding": [0.3]},
            {"index": 0, "embedding": [0.1]},
            {"index": 1, "embedding": [0.2]},
        ]
        assert align_embeddings(items, 3) == [[0.1], [0.2], [0.3]]

    @pytest.mark.parametrize("items,expected", [
        ([{"index": 0, "embedding": [0.1]}], 2),
        ([{"index": 0, "embedding": [0.1]}, {"index": 0, "embedding": [0.2]}], 2),
        ([{"index": 0, "embedding": [0.1]}, {"index": 2, "embedding": [0.2]}], 2),
        ([{"embedding": [0.1]}], 1),
        ([{"index": 0, "embedding": []}], 1),
    ])
    def test_align_rejects_misaligned(self, items, expected) -> None:
        with pytest.raises(IndexMismatch):
            align_embeddings(items, expected)

    def test_embed_batch_scrambled_response(self, monkeypatch) -> None:
        sent = {}

        def fake_post_json(url, payload, api_key, timeout, **kwargs):
            sent.update(url=url, payload=payload)
            return {"data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]}

        monkeypatch.setattr(embedder_module, "post_json", fake_post_json)
        client = OpenRouterEmbedder(model="m", api_key="key", base_url="http://x")

        assert client.embed(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]
        assert sent["url"] == "http://x/embeddings"
        assert sent["payload"] == {"model": "m", "input": ["first", "second"]}

    def test_embed_single_text(self, monkeypatch) -> None:
        monkeypatch.setattr(
            embedder_module, "post_json",
            lambda *args, **kwargs: {"data": [{"index": 0, "embedding": [0.5, 0.5]}]},
        )
        assert OpenRouterEmbedder(api_key="key").embed("ocean movies") == [0.5, 0.5]

    def test_empty_batch_makes_no_call(self, monkeypatch) -> None:
        def fail(*args, **kwargs):
            raise AssertionError("no request expected")

        monkeypatch.setattr(embedder_module, "post_json", fail)
        assert OpenRouterEmbedder(api_key="key").embed_batch([]) == []


class TestRerank:
    """Rerank results are aligned by index."""

    def test_align_scores_any_order(self) -> None:
        forward = [RerankScore(0, 0.9), RerankScore(1, 0.05), RerankScore(2, 0.2)]
        shuffled = [forward[2], forward[0], forward[1]]
        assert align_scores(forward, 3) == align_scores(shuffled, 3) == [0.9, 0.05, 0.2]

    @pytest.mark.parametrize("indices", [[0, 1], [0, 1, 1], [1, 2, 3], [0, 1, 2, 3]])
    def test_align_scores_rejects_non_permutation(self, indices) -> None:
        with pytest.raises(IndexMismatch):
            align_scores([RerankScore(i, 0.1) for i in indices], 3)

    def test_client_parses_response(self, monkeypatch) -> None:
        sent = {}

        def fake_post_json(url, payload, api_key, timeout, **kwargs):
            sent.update(url=url, payload=payload)
            return {"results": [
                {"index": 1, "relevance_score": 0.8},
                {"index": 0, "relevance_score": 0.1},
            ]}

        monkeypatch.setattr(reranking_module, "post_json", fake_post_json)
        client = RerankClient(model="rerank-v3.5", api_key="key", base_url="http://x")

        results = client.rerank("ocean movies", ["harbour", "storm at sea"])

        assert results == [RerankScore(1, 0.8), RerankScore(0, 0.1)]
        assert sent["url"] == "http://x/rerank"
        assert sent["payload"]["top_n"] == 2

    def test_client_malformed_response(self, monkeypatch) -> None:
        monkeypatch.setattr(
            reranking_module, "post_json",
            lambda *args, **kwargs: {"results": [{"index": 0}]},
        )
        with pytest.raises(IndexMismatch):
            RerankClient(api_key="key").rerank("q", ["doc"])

    def test_rerank_candidates_pairs_by_index(self) -> None:
        hits = [IndexHit("c0", "harbour", 0.1), IndexHit("c1", "storm at sea", 0.2)]

        class ByScoreReranker:
            def rerank(self, query, documents):
                return [RerankScore(1, 0.8), RerankScore(0, 0.1)]

        chunks = rerank_candidates(ByScoreReranker(), "ocean movies", hits)

        assert [(c.chunk_id, c.relevance_score) for c in chunks] == [("c0", 0.1), ("c1", 0.8)]

    def test_rerank_candidates_empty(self) -> None:
        class NeverCalled:
            def rerank(self, query, documents):
                raise AssertionError("no rerank expected")

        assert rerank_candidates(NeverCalled(), "q", []) == []


class TestClassificationSchema:

    def test_strips_quotes_and_whitespace(self) -> None:
        result = QueryClassification(reply_type="results", domain="setting", improved_query='  "films at sea" ')
        assert result.improved_query == "films at sea"

    @pytest.mark.parametrize("fields", [
        {"reply_type": "results", "domain": "setting", "improved_query": "  "},
        {"reply_type": "maybe", "domain": "setting", "improved_query": "x"},
        {"reply_type": "results", "domain": "ocean", "improved_query": "x"},
    ])
    def test_rejects_invalid(self, fields) -> None:
        with pytest.raises(ValueError):
            QueryClassification(**fields)
