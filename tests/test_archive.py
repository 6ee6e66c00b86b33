from __future__ import annotations

import pytest
import pytest_asyncio

from replayci import job, run_workflow, sh, wf
from replayci.archive import RunArchive


@pytest_asyncio.fixture
async def archive(tmp_path):
    store = RunArchive(f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'runs.db'}")
    await store.init()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_save_and_get(archive, executor):
    flow = wf(
        job("build", sh("build", "echo built")),
        job("test", sh("test", "exit 1"), needs=["build"]),
        job("ship", sh("ship", "echo shipped"), needs=["test"]),
        name="ci",
    )
    run = await run_workflow(flow, executor=executor, event="pull_request")
    await archive.save(run)

    stored = await archive.get(run.run_id)
    assert stored["workflow"] == "ci"
    assert stored["event"] == "pull_request"
    assert stored["status"] == "failed"
    assert list(stored["jobs"]) == ["build", "test", "ship"]
    assert stored["jobs"]["ship"]["status"] == "skipped"
    assert stored["jobs"]["ship"]["reason"] == "needs not successful: test"
    assert stored["jobs"]["build"]["steps"][0]["output"] == "built"


@pytest.mark.asyncio
async def test_save_replaces_existing_record(archive, executor):
    run = await run_workflow(wf(job("a", sh("a", "echo a"))), executor=executor, run_id="fixed")
    await archive.save(run)
    run.jobs["a"].reason = "re-saved"
    await archive.save(run)

    runs = await archive.list_runs()
    assert [r["run_id"] for r in runs] == ["fixed"]
    assert runs[0]["jobs"]["a"]["reason"] == "re-saved"


@pytest.mark.asyncio
async def test_list_runs_limit_and_unknown(archive, executor):
    for _ in range(3):
        await archive.save(await run_workflow(wf(job("a", sh("a", "echo a"))), executor=executor))
    assert len(await archive.list_runs(limit=2)) == 2
    assert await archive.get("does-not-exist") is None
