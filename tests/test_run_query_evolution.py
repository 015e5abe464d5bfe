"""Tests for the query evolution driver stage (argument handling and modes)."""

import pytest

from conftest import FakeEmbedder, ScriptedReranker, ScriptedRewriter, add_chunks, classify
from querylab.errors import GatewayError
from querylab.evaluation.engine import EvaluationEngine
from querylab.stages import run_query_evolution as stage


def test_no_stopping_options_means_single_cycle() -> None:
    assert stage.build_policy(stage.parse_args([])) is None


def test_stopping_options_build_policy() -> None:
    args = stage.parse_args(["--iterations", "5", "--min-delta", "0.05", "--patience", "3", "--deadline", "60"])
    policy = stage.build_policy(args)
    assert policy.max_iterations == 5
    assert policy.min_amplitude_delta == pytest.approx(0.05)
    assert policy.patience == 3
    assert policy.deadline_seconds == pytest.approx(60.0)


def test_select_groups(store) -> None:
    a = store.create_group("ocean movies", [1.0, 0.0], classify("ocean movies"))
    b = store.create_group("space movies", [1.0, 0.0], classify("space movies"))

    assert [g.id for g in stage.select_groups(store, None)] == [a.id, b.id]
    assert [g.id for g in stage.select_groups(store, ["space movies", "unknown"])] == [b.id]


def test_single_cycle_reports_failures(file_store, content_index) -> None:
    add_chunks(content_index, ["a"])
    engine = EvaluationEngine(
        store=file_store,
        embedder=FakeEmbedder(),
        reranker=ScriptedReranker({"a": 0.5}),
        rewriter=ScriptedRewriter({"broken": [GatewayError("boom")]}),
        content_index=content_index,
    )
    groups = [
        file_store.create_group("healthy", [1.0, 0.0], classify("healthy")),
        file_store.create_group("broken", [1.0, 0.0], classify("broken")),
    ]

    assert stage.run_single_cycle(engine, groups, workers=2) == 1


def test_campaigns(engine, store, content_index) -> None:
    add_chunks(content_index, ["a"])
    group = store.create_group("ocean movies", [1.0, 0.0], classify("ocean movies"))

    stage.run_campaigns(engine, [group], stage.build_policy(stage.parse_args(["--iterations", "2"])))

    assert len(store.list_queries(group)) == 3
