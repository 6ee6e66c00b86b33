# release_workflow.py
# The same shape as pipeline.yml, written with the Python DSL.
from __future__ import annotations

from replayci import build, job, matrix, sh, uses, wf


def workflow():
    return wf(
        job(
            "compile",
            sh("Build", "mkdir -p dist && echo built > dist/app.txt"),
            uses("Upload", "actions/upload-artifact@v4", name="dist", path="dist/"),
        ),
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh("Test", f"echo testing on {v}"), needs=["compile"])
        ),
        build("deploy")
        .depends_on("test-py3.11", "test-py3.12")
        .when("github.event_name == 'release'")
        .use_action("Fetch", "actions/download-artifact@v4", name="dist", path="release")
        .define_step("Ship", "cat release/dist/app.txt")
        .build(),
        name="release",
        on=["push", "release"],
    )
