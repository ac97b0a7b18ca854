# tests/conftest.py
"""
Shared fixtures.

Nothing here needs a docker daemon: the scheduler is exercised with an
in-memory executor, image builds, registries and compose topologies with
fakes that record what they were asked to do.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from relayci.errors import CommandError
from relayci.executor import ExecutionContext, JobOutcome
from relayci.fanout import BuildBackend, BuildRequest
from relayci.harness import Topology
from relayci.model import BuildRecord, Job, JobStatus, Step, Trigger
from relayci.publish import RegistryBackend
from relayci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def plain_console():
    set_console(Console())
    yield


@pytest.fixture
def master() -> Trigger:
    return Trigger(revision="a" * 40, ref="refs/heads/master")


@pytest.fixture
def feature() -> Trigger:
    return Trigger(revision="b" * 40, ref="refs/heads/feature/x")


@pytest.fixture
def make_job() -> Callable[..., Job]:
    def _make(name: str, run: str = "true", **kwargs) -> Job:
        return Job(name=name, steps=[Step(name=name, run=run)], **kwargs)
    return _make


# ----------------------------------------------------------------------
# Scheduler fakes
# ----------------------------------------------------------------------

class FakeExecutor:
    """Succeeds unless told otherwise; records calls and peak concurrency."""

    def __init__(
        self,
        *,
        fail: Iterable[str] = (),
        raises: Optional[Dict[str, BaseException]] = None,
        hooks: Optional[Dict[str, Callable[[Job, ExecutionContext], Optional[JobOutcome]]]] = None,
        delay: float = 0.0,
    ):
        self.fail = set(fail)
        self.raises = dict(raises or {})
        self.hooks = dict(hooks or {})
        self.delay = delay
        self.calls: List[str] = []
        self.contexts: Dict[str, ExecutionContext] = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, job: Job, ctx: ExecutionContext) -> JobOutcome:
        with self._lock:
            self.calls.append(job.name)
            self.contexts[job.name] = ctx
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            ctx.log.write(f"ran {job.name}")
            if self.delay:
                time.sleep(self.delay)
            if job.name in self.hooks:
                outcome = self.hooks[job.name](job, ctx)
                if outcome is not None:
                    return outcome
            if job.name in self.raises:
                raise self.raises[job.name]
            if job.name in self.fail:
                return JobOutcome(
                    status=JobStatus.FAILED,
                    error=CommandError(job=job.name, step=job.name, cmd="false", exit_code=1),
                )
            return JobOutcome(status=JobStatus.SUCCEEDED)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def fake_executor():
    return FakeExecutor


# ----------------------------------------------------------------------
# Backend fakes
# ----------------------------------------------------------------------

class FakeBuildBackend(BuildBackend):
    def __init__(self, *, fail: Iterable[str] = (), missing_images: Iterable[str] = ()):
        self.fail = set(fail)
        self.missing_images = set(missing_images)
        self.builds: List[str] = []
        self.emulated: List[str] = []
        self._lock = threading.Lock()

    def ensure_emulation(self, platforms, *, log, cancel_event=None) -> None:
        self.emulated.extend(str(p) for p in platforms)

    def build(self, request: BuildRequest) -> BuildRecord:
        with self._lock:
            self.builds.append(str(request.platform))
        if str(request.platform) in self.fail:
            raise CommandError(job=request.job, step=f"build {request.platform}", cmd="docker buildx build", exit_code=1)
        return BuildRecord(
            job=request.job,
            platform=request.platform,
            image=request.tag,
            digest=f"sha256:{request.platform.slug}",
        )

    def has_image(self, record: BuildRecord) -> bool:
        return record.image not in self.missing_images


@pytest.fixture
def fake_build_backend():
    return FakeBuildBackend


class FakeRegistry(RegistryBackend):
    def __init__(self, *, error: Optional[BaseException] = None):
        self.error = error
        self.pushes: List[tuple] = []

    def push(self, artifact, refs, *, log, cancel_event=None) -> None:
        if self.error is not None:
            raise self.error
        self.pushes.append((artifact.digest, list(refs)))


@pytest.fixture
def fake_registry():
    return FakeRegistry


class FakeTopology(Topology):
    """
    Services become ready after `ready_after[service]` probes. The script
    exits with `script_exit` and prints `script_output`.
    """

    def __init__(
        self,
        *,
        ready_after: Optional[Dict[str, int]] = None,
        script_exit: int = 0,
        script_output: str = "all tests passed",
    ):
        self.ready_after = dict(ready_after or {})
        self.script_exit = script_exit
        self.script_output = script_output
        self.probes: Dict[str, int] = {}
        self.events: List[str] = []

    def up(self, *, log, cancel_event=None) -> None:
        self.events.append("up")

    def down(self, *, log) -> None:
        self.events.append("down")

    def is_running(self, service: str) -> bool:
        self.probes[service] = self.probes.get(service, 0) + 1
        return self.probes[service] > self.ready_after.get(service, 0)

    def exec(self, service, argv, *, log, timeout=None, cancel_event=None) -> int:
        self.events.append(f"exec {service} {' '.join(argv)}")
        log.write(self.script_output)
        return self.script_exit

    def logs(self) -> str:
        return "service logs"


@pytest.fixture
def fake_topology():
    return FakeTopology
