import json

import pytest

from relayci.errors import CommandError
from relayci.model import JobResult, JobStatus, RunResult, SkipCause, Trigger
from relayci.runlog import JobLog, RunStore


def test_job_log_keeps_lines_in_order():
    log = JobLog("build")
    log.write("one\ntwo\n")
    log.write("")
    log.write("three")
    assert log.text() == "one\ntwo\nthree\n"
    assert len(log) == 3
    assert JobLog("empty").text() == ""


@pytest.fixture
def run():
    result = RunResult(run_id="20240101-000000-abcd1234", trigger=Trigger("f" * 40, "refs/heads/master"))
    result.results["fmt"] = JobResult(
        name="fmt",
        status=JobStatus.FAILED,
        error=CommandError(job="fmt", step="fmt", cmd="cargo fmt --check", exit_code=1),
        log="Diff in src/main.rs\n",
        started_at=1.0,
        finished_at=3.5,
    )
    result.results["docker/build"] = JobResult(
        name="docker/build", status=JobStatus.SKIPPED, skip_cause=SkipCause.UPSTREAM_FAILED,
    )
    result.finished_at = 4.0
    return result


def test_saved_run_can_be_read_back(tmp_path, run):
    store = RunStore(tmp_path / "runs")
    store.save(run)

    summary = store.load_summary(run.run_id)
    assert summary["status"] == "failed"
    assert summary["trigger"]["ref"] == "refs/heads/master"
    assert summary["jobs"]["fmt"]["error"]["kind"] == "command"
    assert summary["jobs"]["fmt"]["duration_s"] == 2.5
    assert summary["jobs"]["docker/build"]["label"] == "skipped(upstream_failed)"
    assert store.load_log(run.run_id, "fmt") == "Diff in src/main.rs\n"
    assert store.load_log(run.run_id, "docker/build") == ""
    assert store.latest() == run.run_id

    # plain JSON on disk
    json.loads((store.run_dir(run.run_id) / "summary.json").read_text())


def test_unknown_run_or_job(tmp_path, run):
    store = RunStore(tmp_path / "runs")
    assert store.latest() is None
    with pytest.raises(FileNotFoundError):
        store.load_summary("nope")
    store.save(run)
    with pytest.raises(FileNotFoundError):
        store.load_log(run.run_id, "nope")
