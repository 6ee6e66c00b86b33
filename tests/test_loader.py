from __future__ import annotations

import json
import textwrap

import pytest

from replayci.errors import DuplicateJobError, WorkflowLoadError
from replayci.loader import load_workflow, loads_workflow, parse_workflow

PIPELINE = textwrap.dedent(
    """
    name: ci
    on: [push, pull_request]
    env:
      DEBUG: false
    jobs:
      compile:
        steps:
          - run: make build
      test:
        needs: compile
        if: github.event_name == 'push'
        timeout-minutes: 2
        steps:
          - name: Unit tests
            run: make test
            env:
              RETRIES: 3
          - uses: actions/upload-artifact@v4
            with:
              name: report
              path: reports/
    """
)


def test_yaml_pipeline():
    flow = loads_workflow(PIPELINE)
    assert flow.name == "ci"
    assert flow.on == ["push", "pull_request"]
    assert flow.env == {"DEBUG": "false"}
    assert set(flow.jobs) == {"compile", "test"}

    test = flow.jobs["test"]
    assert test.needs == ["compile"]
    assert test.if_ == "github.event_name == 'push'"
    assert test.timeout == 120
    assert test.steps[0].name == "Unit tests"
    assert test.steps[0].env == {"RETRIES": "3"}
    assert test.steps[1].uses == "actions/upload-artifact@v4"
    assert test.steps[1].with_ == {"name": "report", "path": "reports/"}
    assert test.steps[1].name == "actions/upload-artifact@v4"
    assert flow.jobs["compile"].steps[0].name == "make build"


def test_bare_on_key_is_not_a_boolean():
    flow = loads_workflow("on: release\njobs:\n  a:\n    steps:\n      - run: 'true'\n")
    assert flow.on == ["release"]
    assert flow.triggered_by("release")
    assert not flow.triggered_by("push")


def test_on_mapping_and_default():
    flow = parse_workflow({"on": {"push": {"branches": ["main"]}, "schedule": None}, "jobs": {"a": {"steps": [{"run": "x"}]}}})
    assert flow.on == ["push", "schedule"]
    assert parse_workflow({"jobs": {"a": {"steps": [{"run": "x"}]}}}).on == ["push"]


@pytest.mark.parametrize(
    "doc, fragment",
    [
        ({"jobs": {}}, "jobs"),
        ({"jobs": {"a": {"steps": []}}}, "steps"),
        ({"jobs": {"a": {"steps": [{"name": "nothing"}]}}}, "exactly one"),
        ({"jobs": {"a": {"steps": [{"run": "x", "uses": "checkout"}]}}}, "exactly one"),
        ({"jobs": {"a": {"steps": [{"run": "x", "timeout": -1}]}}}, "timeout"),
    ],
)
def test_schema_errors(doc, fragment):
    with pytest.raises(WorkflowLoadError) as exc:
        parse_workflow(doc)
    assert fragment in str(exc.value)


def test_not_a_mapping():
    with pytest.raises(WorkflowLoadError):
        loads_workflow("- just\n- a list\n")
    with pytest.raises(WorkflowLoadError):
        loads_workflow("jobs: [unclosed\n")


def test_load_json_and_unknown_suffix(tmp_path):
    path = tmp_path / "flow.json"
    path.write_text(json.dumps({"jobs": {"a": {"steps": [{"run": "echo hi"}]}}}))
    flow = load_workflow(path)
    assert flow.name == "flow"

    other = tmp_path / "flow.toml"
    other.write_text("")
    with pytest.raises(WorkflowLoadError):
        load_workflow(other)
    with pytest.raises(WorkflowLoadError):
        load_workflow(tmp_path / "missing.yml")


def test_load_python_workflow(tmp_path):
    path = tmp_path / "release_workflow.py"
    path.write_text(
        textwrap.dedent(
            """
            from replayci import job, sh, wf

            def workflow():
                return wf(
                    job("build", sh("Build", "make")),
                    job("ship", sh("Ship", "make ship"), needs=["build"]),
                    name="release",
                    on=["release"],
                )
            """
        )
    )
    flow = load_workflow(path)
    assert flow.name == "release"
    assert flow.on == ["release"]
    assert flow.jobs["ship"].needs == ["build"]


def test_python_workflow_with_job_list(tmp_path):
    path = tmp_path / "jobs.py"
    path.write_text("from replayci import job, sh\nJOBS = [job('a', sh('a', 'true')), job('a', sh('b', 'true'))]\n")
    with pytest.raises(DuplicateJobError):
        load_workflow(path)


def test_python_workflow_without_definition(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("X = 1\n")
    with pytest.raises(WorkflowLoadError):
        load_workflow(path)


@pytest.mark.parametrize("name", ["pipeline.yml", "release_workflow.py"])
def test_bundled_examples_are_valid(name):
    from pathlib import Path

    from replayci.scheduler import validate_workflow

    flow = load_workflow(Path(__file__).resolve().parent.parent / "examples" / name)
    graph = validate_workflow(flow)
    assert graph.levels()[0] == ["compile"]
    assert graph.order()[-1] in ("deploy", "notify")
