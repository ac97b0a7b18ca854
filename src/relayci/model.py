# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .conditions import Condition
    from .errors import CIError


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class PlatformTarget:
    """An (os, architecture) pair, e.g. linux/arm64 or linux/arm/v7."""
    os: str
    arch: str
    variant: str | None = None

    @classmethod
    def parse(cls, value: str) -> PlatformTarget:
        parts = value.strip().split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"Invalid platform {value!r}, expected os/arch[/variant]")
        return cls(*parts)

    def __str__(self) -> str:
        base = f"{self.os}/{self.arch}"
        return f"{base}/{self.variant}" if self.variant else base

    @property
    def slug(self) -> str:
        return str(self).replace("/", "-")


@dataclass(frozen=True)
class EnvironmentSpec:
    """
    Where a job's commands run.

    kind:
      - "local":     process sandbox on the host (private TMPDIR)
      - "container": a long-lived container, commands via `docker exec`
    """
    kind: str = "local"
    image: str | None = None
    # how declared packages get installed; {packages} is replaced by the list
    install: str = "apt-get install -y {packages}"
    volumes: Tuple[str, ...] = ()
    user: str | None = None


@dataclass
class ImageSpec:
    """
    A container image built from a multi-stage build description.

    The published reference is <registry>/<repository>:<tag>.
    """
    registry: str
    repository: str
    context: str = "."
    file: str = "Dockerfile"
    target: str | None = None
    platforms: List[PlatformTarget] = field(default_factory=list)
    build_args: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}"


@dataclass
class ServiceSpec:
    name: str
    # readiness probe: an argv run inside the service, or an http(s) URL
    ready_command: List[str] | None = None
    ready_url: str | None = None


@dataclass
class IntegrationSpec:
    """A multi-service topology (primary + backing stores) and the script to run in it."""
    compose_file: str
    primary: ServiceSpec
    script: List[str]
    backing: List[ServiceSpec] = field(default_factory=list)
    script_service: str | None = None
    project: str | None = None
    ready_timeout: float = 60.0
    poll_interval: float = 1.0


@dataclass
class PublishSpec:
    """Push the multi-arch image produced by `artifact_from`."""
    artifact_from: str
    latest_tag: str = "latest"
    branches: List[str] = field(default_factory=list)  # empty -> run-wide protected branches


@dataclass
class Job:
    """
    A CI job: steps + dependencies + a trigger predicate + metadata for
    provisioning and caching.

    `needs` are required dependencies (a failure skips this job);
    `after` only orders this job behind others.
    """
    name: str
    steps: list[Step] = field(default_factory=list)

    needs: list[str] = field(default_factory=list)
    after: list[str] = field(default_factory=list)
    when: Optional["Condition"] = None   # None -> success()

    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    environment: EnvironmentSpec = field(default_factory=EnvironmentSpec)

    timeout: float | None = None
    allow_failure: bool = False

    cache_enabled: bool = True
    cache_skip_on_hit: bool = True
    tool_versions: Optional[Dict[str, str]] = None
    cache_key_extra: Dict[str, str] = field(default_factory=dict)

    image: Optional[ImageSpec] = None
    integration: Optional[IntegrationSpec] = None
    publish: Optional[PublishSpec] = None

    @property
    def kind(self) -> str:
        if self.image is not None:
            return "image"
        if self.integration is not None:
            return "integration"
        if self.publish is not None:
            return "publish"
        return "commands"

    @property
    def dependencies(self) -> list[str]:
        out = list(self.needs)
        out.extend(d for d in self.after if d not in out)
        return out

    @property
    def condition(self) -> "Condition":
        if self.when is not None:
            return self.when
        from .conditions import success
        return success()


@dataclass(frozen=True)
class Trigger:
    """What started a Run: the source revision, the ref it was on and the event."""
    revision: str
    ref: str
    event: str = "push"

    @property
    def branch(self) -> str:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        return self.ref


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class SkipCause(str, Enum):
    PREDICATE = "predicate"
    UPSTREAM_FAILED = "upstream_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Artifact:
    """A content-fingerprinted output. Immutable once written to the cache."""
    name: str
    fingerprint: str
    digest: str
    size: int
    producer: str
    kind: str = "bundle"


@dataclass(frozen=True)
class BuildRecord:
    job: str
    platform: PlatformTarget
    image: str      # local/platform-specific reference
    digest: str     # image id / content digest
    cached: bool = False


@dataclass(frozen=True)
class MultiArchArtifact:
    """One reference resolving to a platform-specific build per target."""
    name: str
    records: Tuple[BuildRecord, ...]
    digest: str

    @property
    def platforms(self) -> List[str]:
        return [str(r.platform) for r in self.records]


@dataclass
class JobResult:
    name: str
    status: JobStatus = JobStatus.PENDING
    skip_cause: Optional[SkipCause] = None
    error: Optional["CIError"] = None
    log: str = ""
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cached: bool = False
    artifacts: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def label(self) -> str:
        if self.status == JobStatus.SKIPPED and self.skip_cause is not None:
            return f"skipped({self.skip_cause.value})"
        if self.status == JobStatus.SUCCEEDED and self.cached:
            return "succeeded(cache)"
        return self.status.value


@dataclass
class RunResult:
    run_id: str
    trigger: Trigger
    results: Dict[str, JobResult] = field(default_factory=dict)
    allow_failure: Dict[str, bool] = field(default_factory=dict)
    fatal: Optional["CIError"] = None
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def failed_jobs(self) -> List[str]:
        return [
            name for name, r in self.results.items()
            if r.status == JobStatus.FAILED and not self.allow_failure.get(name, False)
        ]

    @property
    def status(self) -> str:
        if self.fatal is not None or self.failed_jobs:
            return "failed"
        if self.cancelled:
            return "cancelled"
        return "succeeded"

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    def statuses(self) -> Dict[str, str]:
        return {name: r.label for name, r in self.results.items()}
