import tempfile
import threading

import pytest

from relayci.errors import CommandError, JobCancelled, ProvisioningError
from relayci.model import EnvironmentSpec, Job, Step
from relayci.provision import ContainerEnvironment, provision, run_process
from relayci.scheduler import new_run_id
from relayci.runlog import JobLog


@pytest.fixture
def sandbox_root(tmp_path, monkeypatch):
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


def _provision(job, repo, log, **kwargs):
    return provision(job, repo_root=repo, run_id="run-1", log=log, **kwargs)


def test_steps_run_in_order_with_job_and_ci_env(tmp_path, sandbox_root):
    job = Job(
        name="build",
        steps=[Step("one", "echo one"), Step("two", 'echo "$GREETING from $RELAYCI_JOB"')],
        env={"GREETING": "hello"},
    )
    log = JobLog("build")
    with _provision(job, tmp_path, log, extra_env={"RELAYCI_JOB": "build"}) as env:
        for step in job.steps:
            env.run(step)

    text = log.text()
    assert text.index("one") < text.index("hello from build")
    assert list(sandbox_root.iterdir()) == []


def test_failing_step_raises_and_still_tears_down(tmp_path, sandbox_root):
    job = Job(name="test", steps=[Step("fail", "echo boom; exit 3")])
    log = JobLog("test")
    with pytest.raises(CommandError) as exc:
        with _provision(job, tmp_path, log) as env:
            assert env.sandbox.exists()
            env.run(job.steps[0])

    assert exc.value.exit_code == 3
    assert exc.value.step == "fail"
    assert "boom" in log.text()
    assert "teardown: done" in log.text()
    assert list(sandbox_root.iterdir()) == []


def test_missing_tool_is_a_provisioning_error(tmp_path, sandbox_root):
    job = Job(name="lint", steps=[Step("ruff", "ruff check .")], requires=["definitely-not-a-tool-xyz"])
    with pytest.raises(ProvisioningError) as exc:
        with _provision(job, tmp_path, JobLog("lint")):
            pytest.fail("setup should not succeed")

    assert exc.value.details["missing"] == ["definitely-not-a-tool-xyz"]
    assert list(sandbox_root.iterdir()) == []


def test_failed_package_install(tmp_path, sandbox_root):
    job = Job(
        name="check",
        steps=[Step("check", "true")],
        packages=["libostree-dev"],
        environment=EnvironmentSpec(install="exit 100 # {packages}"),
    )
    with pytest.raises(ProvisioningError, match="install failed"):
        with _provision(job, tmp_path, JobLog("check")):
            pass


def test_timeout_kills_the_step(tmp_path, sandbox_root):
    job = Job(name="slow", steps=[Step("sleep", "sleep 30")], timeout=0.5)
    with pytest.raises(CommandError) as exc:
        with _provision(job, tmp_path, JobLog("slow")) as env:
            env.run(job.steps[0])
    assert exc.value.timed_out


def test_cancellation_stops_the_step(tmp_path, sandbox_root):
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    job = Job(name="slow", steps=[Step("sleep", "sleep 30")])
    timer.start()
    try:
        with pytest.raises(JobCancelled):
            with _provision(job, tmp_path, JobLog("slow"), cancel_event=cancel) as env:
                env.run(job.steps[0])
    finally:
        timer.cancel()
    assert list(sandbox_root.iterdir()) == []


def test_missing_step_cwd(tmp_path, sandbox_root):
    job = Job(name="cwd", steps=[Step("ls", "ls", cwd="nope")])
    with pytest.raises(ProvisioningError, match="cwd not found"):
        with _provision(job, tmp_path, JobLog("cwd")) as env:
            env.run(job.steps[0])


def test_container_environment_is_always_removed(tmp_path):
    calls = tmp_path / "docker-calls"
    docker = tmp_path / "docker"
    docker.write_text(
        "#!/bin/sh\n"
        f'echo "$@" >> "{calls}"\n'
        'case "$*" in *"exit 3"*) exit 3;; esac\n'
        "exit 0\n"
    )
    docker.chmod(0o755)

    job = Job(
        name="check",
        steps=[Step("check", "exit 3", cwd="crate")],
        requires=["cargo"],
        environment=EnvironmentSpec(kind="container", image="rust:1"),
    )
    with pytest.raises(CommandError):
        with _provision(job, tmp_path, JobLog("check"), docker=str(docker)) as env:
            env.run(job.steps[0])

    lines = calls.read_text().splitlines()
    assert lines[0] == "--version"
    assert lines[1].startswith("run -d --rm --name relayci-run-1-check")
    assert "command -v cargo" in lines[2]
    assert lines[3].startswith("exec -w /workspace/crate relayci-run-1-check sh -c exit 3")
    assert lines[-1] == "rm -f relayci-run-1-check"


def test_run_process_captures_stderr_too(tmp_path):
    log = JobLog("x")
    code = run_process("echo out; echo err >&2; exit 2", cwd=tmp_path, log=log)
    assert code == 2
    assert "out" in log.text() and "err" in log.text()


def test_container_names_differ_between_runs_started_together(tmp_path):
    job = Job(name="check", steps=[Step("check", "true")], environment=EnvironmentSpec(kind="container", image="rust:1"))
    first, second = new_run_id(), new_run_id()

    names = {
        ContainerEnvironment(job, repo_root=tmp_path, run_id=run_id, log=JobLog("check")).container
        for run_id in (first, second)
    }
    assert len(names) == 2
    assert all(name.endswith("-check") for name in names)
