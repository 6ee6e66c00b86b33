from __future__ import annotations

import pytest

from replayci import job, sh
from replayci.dag import build_dag
from replayci.errors import ArtifactConflictError, NotFoundError, SecretsFrozenError
from replayci.store import REDACTED, SCOPE_JOB, ArtifactStore, BoundArtifacts, SecretStore, VariableStore


@pytest.fixture
def graph():
    # build -> package, build -> lint; docs is independent
    return build_dag([
        job("build", sh("b", "true")),
        job("package", sh("p", "true"), needs=["build"]),
        job("lint", sh("l", "true"), needs=["build"]),
        job("docs", sh("d", "true")),
    ])


def _store(graph, completed):
    return ArtifactStore(graph, lambda name: name in completed)


def test_dependent_reads_completed_producer(graph):
    done = set()
    store = _store(graph, done)
    store.put("dist", "wheel", "build")
    done.add("build")
    assert store.get("dist", "package") == b"wheel"
    assert BoundArtifacts(store, "lint").get("dist") == b"wheel"


def test_unrelated_job_cannot_read(graph):
    done = set()
    store = _store(graph, done)
    store.put("dist", b"wheel", "build")
    done.add("build")
    with pytest.raises(NotFoundError):
        store.get("dist", "docs")


def test_read_before_producer_completes(graph):
    store = _store(graph, set())
    store.put("dist", b"wheel", "build")
    with pytest.raises(NotFoundError):
        store.get("dist", "package")
    # the producer can always read its own writes
    assert store.get("dist", "build") == b"wheel"


def test_missing_artifact(graph):
    with pytest.raises(NotFoundError):
        _store(graph, {"build"}).get("nothing", "package")


def test_only_producer_overwrites(graph):
    done = set()
    store = _store(graph, done)
    store.put("report", b"v1", "build")
    store.put("report", b"v2", "build")
    done.add("build")
    # a dependent may not replace what a sibling dependent is reading
    for writer in ("package", "docs"):
        with pytest.raises(ArtifactConflictError):
            store.put("report", b"v3", writer)
    assert store.artifacts()[0].producer == "build"
    assert store.get("report", "lint") == b"v2"


def test_finished_job_cannot_write(graph):
    store = _store(graph, {"build"})
    with pytest.raises(ArtifactConflictError):
        store.put("late", b"x", "build")
    assert len(store) == 0


def test_secrets_are_write_once_and_frozen():
    secrets = SecretStore({"TOKEN": "hunter2"})
    with pytest.raises(SecretsFrozenError):
        secrets.set("TOKEN", "other")
    secrets.set("EXTRA", "x")
    secrets.freeze()
    with pytest.raises(SecretsFrozenError):
        secrets.set("LATE", "y")
    assert secrets.get("TOKEN") == "hunter2"
    with pytest.raises(NotFoundError):
        secrets.get("NOPE")


def test_secret_redaction():
    secrets = SecretStore({"A": "abc", "B": "abcdef"})
    assert secrets.redact("token=abcdef and abc") == f"token={REDACTED} and {REDACTED}"
    assert "abc" not in repr(secrets)
    assert secrets.to_dict() == {"A": REDACTED, "B": REDACTED}
    with pytest.raises(TypeError):
        secrets.values()["A"] = "changed"


def test_job_variables_shadow_run_variables():
    variables = VariableStore({"REGION": "eu", "TIER": "free"})
    variables.set("REGION", "us", scope=SCOPE_JOB, job="deploy")
    assert variables.get("REGION", job="deploy") == "us"
    assert variables.get("REGION", job="build") == "eu"
    assert variables.resolved("deploy") == {"REGION": "us", "TIER": "free"}
    with pytest.raises(NotFoundError):
        variables.get("MISSING")
    with pytest.raises(ValueError):
        variables.set("X", "1", scope=SCOPE_JOB)
