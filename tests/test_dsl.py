from __future__ import annotations

import pytest

from replayci import build, job, matrix, sh, uses, wf
from replayci.errors import DuplicateJobError


def test_job_applies_default_cwd_to_shell_steps():
    j = job(
        "test",
        sh("unit", "pytest"),
        sh("lint", "ruff check .", cwd="src"),
        uses("upload", "actions/upload-artifact@v4", name="report", path="out"),
        cwd="app",
        needs=["build"],
        env={"CI": "1"},
        timeout=30,
    )
    assert [s.cwd for s in j.steps] == ["app", "src", None]
    assert j.steps[2].with_ == {"name": "report", "path": "out"}
    assert j.steps[2].kind == "action"
    assert j.needs == ["build"]
    assert j.timeout == 30


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_builder():
    j = (
        build("deploy")
        .depends_on("test", "scan")
        .when("github.event_name == 'release'")
        .define_step("ship", "make ship")
        .use_action("fetch", "download-artifact", name="dist")
        .with_env(REPLICAS=3)
        .with_timeout(60)
        .build()
    )
    assert j.needs == ["test", "scan"]
    assert j.if_ == "github.event_name == 'release'"
    assert j.env == {"REPLICAS": "3"}
    assert [s.kind for s in j.steps] == ["command", "action"]
    with pytest.raises(ValueError):
        build("nothing").build()


def test_matrix_jobs_are_flattened():
    flow = wf(
        job("build", sh("build", "make")),
        matrix("py", ["3.11", "3.12"]).jobs(lambda v: job(f"test-py{v}", sh("test", f"tox -e py{v}"), needs=["build"])),
        name="ci",
        on=["push"],
    )
    assert list(flow.jobs) == ["build", "test-py3.11", "test-py3.12"]


def test_wf_rejects_duplicate_names():
    with pytest.raises(DuplicateJobError):
        wf(job("a", sh("a", "x")), job("a", sh("b", "y")))
