import threading

import pytest

from relayci import image, integration, job, publish_job, service, sh
from relayci.cache import ArtifactCache
from relayci.executor import ExecutionContext, JobExecutor, ci_env, default_topology
from relayci.fanout import FanOut
from relayci.model import JobStatus, SkipCause
from relayci.publish import Publisher
from relayci.runlog import JobLog
from relayci.scheduler import Scheduler, new_run_id


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "a.txt").write_text("hello\n")
    return root


def _ctx(trigger, name="job", **kwargs):
    return ExecutionContext(run_id="run-1", trigger=trigger, log=JobLog(name), cancel_event=threading.Event(), **kwargs)


def test_ci_env_describes_the_trigger(master):
    env = ci_env(job("x", sh("x", "true")), _ctx(master))
    assert env["CI"] == "true"
    assert env["RELAYCI_JOB"] == "x"
    assert env["RELAYCI_BRANCH"] == "master"
    assert env["RELAYCI_REVISION"] == "a" * 40


# ----------------------------------------------------------------------
# commands jobs
# ----------------------------------------------------------------------

def _bundle_job(**kwargs):
    return job(
        "bundle",
        sh("bundle", "mkdir -p dist && cp src/a.txt dist/out.txt && echo ran >> runs.log"),
        inputs=["src/**"],
        outputs=["dist/"],
        **kwargs,
    )


def test_cache_hit_restores_outputs_without_running(repo, tmp_path, master):
    executor = JobExecutor(repo_root=repo, cache=ArtifactCache(tmp_path / "cache"))

    first = executor(_bundle_job(), _ctx(master))
    assert first.status == JobStatus.SUCCEEDED
    assert not first.cached
    assert "bundle" in first.artifacts

    (repo / "dist" / "out.txt").unlink()
    second = executor(_bundle_job(), _ctx(master))

    assert second.status == JobStatus.SUCCEEDED
    assert second.cached
    assert (repo / "dist" / "out.txt").read_text() == "hello\n"
    assert (repo / "runs.log").read_text() == "ran\n"


def test_changed_input_is_a_miss(repo, tmp_path, master):
    executor = JobExecutor(repo_root=repo, cache=ArtifactCache(tmp_path / "cache"))
    executor(_bundle_job(), _ctx(master))
    (repo / "src" / "a.txt").write_text("changed\n")

    outcome = executor(_bundle_job(), _ctx(master))
    assert not outcome.cached
    assert (repo / "runs.log").read_text() == "ran\nran\n"


def test_skip_on_hit_disabled_always_runs(repo, tmp_path, master):
    executor = JobExecutor(repo_root=repo, cache=ArtifactCache(tmp_path / "cache"))
    executor(_bundle_job(cache_skip_on_hit=False), _ctx(master))
    outcome = executor(_bundle_job(cache_skip_on_hit=False), _ctx(master))
    assert outcome.status == JobStatus.SUCCEEDED
    assert (repo / "runs.log").read_text() == "ran\nran\n"


def test_missing_declared_outputs_fail_the_job(repo, tmp_path, master):
    executor = JobExecutor(repo_root=repo, cache=ArtifactCache(tmp_path / "cache"))
    outcome = executor(job("bundle", sh("noop", "true"), outputs=["dist/"]), _ctx(master))
    assert outcome.status == JobStatus.FAILED
    assert outcome.error.kind == "artifact"
    assert outcome.error.details["missing"] == ["dist/"]


def test_failing_step_is_a_command_error(repo, master):
    outcome = JobExecutor(repo_root=repo)(job("fmt", sh("fmt", "exit 1")), _ctx(master, "fmt"))
    assert outcome.status == JobStatus.FAILED
    assert outcome.error.kind == "command"
    assert outcome.error.job == "fmt"


def test_publish_without_an_upstream_image(repo, master, fake_registry):
    executor = JobExecutor(repo_root=repo, publisher=Publisher(fake_registry()))
    outcome = executor(publish_job("publish", artifact_from="docker-build"), _ctx(master))
    assert outcome.status == JobStatus.FAILED
    assert outcome.error.kind == "artifact"


# ----------------------------------------------------------------------
# a whole pipeline: gates -> image -> publish
# ----------------------------------------------------------------------

GATES = ["check", "test", "e2e", "fmt", "clippy", "ruff-lint", "ruff-format"]


def _pipeline(failing=()):
    jobs = []
    for name in GATES:
        if name == "e2e":
            jobs.append(integration(
                "e2e",
                compose_file="tests/docker-compose.yml",
                backing=[service("db")],
                primary=service("flat-manager"),
                script=["./tests/run-test.py"],
                ready_timeout=5,
                poll_interval=0.01,
            ))
        else:
            jobs.append(job(name, sh(name, "exit 1" if name in failing else "true")))
    jobs.append(image(
        "docker-build",
        registry="ghcr.io",
        repository="flatpak/flat-manager",
        platforms=["linux/amd64", "linux/arm64"],
        needs=list(GATES),
    ))
    jobs.append(publish_job("publish", artifact_from="docker-build", branches=["master"]))
    return jobs


@pytest.fixture
def pipeline_parts(repo, fake_build_backend, fake_registry, fake_topology):
    backend = fake_build_backend()
    registry = fake_registry()
    executor = JobExecutor(
        repo_root=repo,
        fanout=FanOut(backend),
        publisher=Publisher(registry),
        topology_factory=lambda job, ctx, root: fake_topology(),
    )
    return Scheduler(executor, max_workers=4), backend, registry


def test_green_master_pushes_revision_and_latest(pipeline_parts, master):
    scheduler, backend, registry = pipeline_parts
    run = scheduler.run(_pipeline(), master)

    assert run.ok, run.statuses()
    assert sorted(backend.builds) == ["linux/amd64", "linux/arm64"]
    assert len(registry.pushes) == 1
    _digest, refs = registry.pushes[0]
    assert refs == [f"ghcr.io/flatpak/flat-manager:{'a' * 40}", "ghcr.io/flatpak/flat-manager:latest"]
    assert run.results["publish"].details["refs"] == refs


def test_failing_gate_blocks_image_and_publish(pipeline_parts, master):
    scheduler, backend, registry = pipeline_parts
    run = scheduler.run(_pipeline(failing={"fmt"}), master)

    assert run.status == "failed"
    assert run.results["fmt"].status == JobStatus.FAILED
    assert run.results["check"].status == JobStatus.SUCCEEDED
    assert run.results["e2e"].status == JobStatus.SUCCEEDED
    assert run.results["docker-build"].label == "skipped(upstream_failed)"
    assert run.results["publish"].label == "skipped(upstream_failed)"
    assert backend.builds == []
    assert registry.pushes == []


def test_feature_branch_builds_but_does_not_publish(pipeline_parts, feature):
    scheduler, backend, registry = pipeline_parts
    run = scheduler.run(_pipeline(), feature)

    assert run.ok
    assert run.results["docker-build"].status == JobStatus.SUCCEEDED
    publish = run.results["publish"]
    assert publish.status == JobStatus.SKIPPED
    assert publish.skip_cause == SkipCause.PREDICATE
    assert "feature/x" in publish.details["reason"]
    assert registry.pushes == []


def test_failing_integration_script_keeps_its_report(repo, master, fake_topology):
    executor = JobExecutor(
        repo_root=repo,
        topology_factory=lambda job, ctx, root: fake_topology(script_exit=1, script_output="FAIL: upload"),
    )
    e2e = integration(
        "e2e",
        compose_file="tests/docker-compose.yml",
        primary=service("flat-manager"),
        script=["./tests/run-test.py"],
    )
    outcome = executor(e2e, _ctx(master, "e2e"))

    assert outcome.status == JobStatus.FAILED
    assert outcome.error.kind == "command"
    assert outcome.details["passed"] is False
    assert outcome.details["exit_code"] == 1
    assert "FAIL: upload" in outcome.details["report"]


def test_compose_projects_differ_between_runs_started_together(repo, master):
    e2e = integration(
        "e2e",
        compose_file="tests/docker-compose.yml",
        primary=service("flat-manager"),
        script=["./tests/run-test.py"],
    )
    projects = set()
    for run_id in (new_run_id(), new_run_id()):
        ctx = ExecutionContext(run_id=run_id, trigger=master, log=JobLog("e2e"), cancel_event=threading.Event())
        projects.add(default_topology(e2e, ctx, repo).project)

    assert len(projects) == 2
    for project in projects:
        # docker compose accepts lowercase letters, digits, dashes and underscores
        assert project == project.lower()
        assert all(c.isalnum() or c in "-_" for c in project)


def test_one_failed_platform_fails_the_run_and_publishes_nothing(repo, master, fake_build_backend, fake_registry, fake_topology):
    backend = fake_build_backend(fail={"linux/arm64"})
    registry = fake_registry()
    executor = JobExecutor(
        repo_root=repo,
        fanout=FanOut(backend),
        publisher=Publisher(registry),
        topology_factory=lambda job, ctx, root: fake_topology(),
    )
    run = Scheduler(executor, max_workers=4).run(_pipeline(), master)

    assert run.status == "failed"
    build = run.results["docker-build"]
    assert build.status == JobStatus.FAILED
    assert build.error.kind == "partial_platform_failure"
    assert build.error.details["succeeded"] == ["linux/amd64"]
    assert "image" not in build.artifacts
    assert run.results["publish"].label == "skipped(upstream_failed)"
    assert registry.pushes == []
