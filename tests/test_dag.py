from __future__ import annotations

import pytest

from replayci import job, sh
from replayci.dag import build_dag
from replayci.errors import CycleError, DuplicateJobError, UnknownDependencyError


def _j(name, *needs):
    return job(name, sh("noop", "true"), needs=list(needs))


def test_order_respects_needs():
    graph = build_dag([
        _j("deploy", "containerize"),
        _j("compile"),
        _j("test", "compile", "scan"),
        _j("scan", "compile"),
        _j("containerize", "test"),
    ])
    order = graph.order()
    assert order == ["compile", "scan", "test", "containerize", "deploy"]
    for name in graph.jobs:
        for dep in graph.needs_of(name):
            assert order.index(dep) < order.index(name)


def test_levels_group_independent_jobs():
    graph = build_dag([_j("a"), _j("b"), _j("c", "a", "b"), _j("d", "a")])
    assert graph.levels() == [["a", "b"], ["c", "d"]]


def test_ancestors_is_transitive():
    graph = build_dag([_j("a"), _j("b", "a"), _j("c", "b"), _j("x")])
    assert graph.ancestors("c") == {"a", "b"}
    assert graph.is_ancestor("a", "c")
    assert not graph.is_ancestor("x", "c")
    assert graph.dependents_of("a") == {"b"}


def test_cycle_is_reported_with_path():
    with pytest.raises(CycleError) as exc:
        build_dag([_j("a", "b"), _j("b", "a")])
    assert exc.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(exc.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        build_dag([_j("a", "a")])


def test_unknown_dependency():
    with pytest.raises(UnknownDependencyError) as exc:
        build_dag([_j("a"), _j("b", "nope")])
    assert exc.value.job == "b"
    assert exc.value.missing == "nope"


def test_duplicate_job_names():
    with pytest.raises(DuplicateJobError):
        build_dag([_j("a"), _j("a")])


def test_empty_workflow_has_no_levels():
    assert build_dag([]).levels() == []
