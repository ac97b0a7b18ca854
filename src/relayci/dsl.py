# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .conditions import Condition
from .model import (
    EnvironmentSpec,
    ImageSpec,
    IntegrationSpec,
    Job,
    PlatformTarget,
    PublishSpec,
    ServiceSpec,
    Step,
)


# ---------------------------------------------------------------------
# Step / environment helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def container(
    image: str,
    *,
    install: str = "apt-get update && apt-get install -y {packages}",
    volumes: Sequence[str] = (),
    user: str | None = None,
) -> EnvironmentSpec:
    """Run the job's steps inside a long-lived container of `image`."""
    return EnvironmentSpec(kind="container", image=image, install=install, volumes=tuple(volumes), user=user)


def local(*, install: str = "apt-get install -y {packages}") -> EnvironmentSpec:
    return EnvironmentSpec(kind="local", install=install)


def _platforms(values: Iterable[str | PlatformTarget]) -> List[PlatformTarget]:
    return [v if isinstance(v, PlatformTarget) else PlatformTarget.parse(v) for v in values]


# ---------------------------------------------------------------------
# Functional Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    after: Optional[List[str]] = None,
    when: Optional[Condition] = None,
    inputs: Optional[List[str]] = None,
    outputs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    packages: Optional[List[str]] = None,
    environment: Optional[EnvironmentSpec] = None,
    timeout: float | None = None,
    allow_failure: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    cache_enabled: bool = True,
    cache_skip_on_hit: bool = True,
    tool_versions: Optional[Dict[str, str]] = None,
    cache_key_extra: Optional[Dict[str, str]] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        after=list(after or []),
        when=when,
        inputs=list(inputs or []),
        outputs=list(outputs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
        packages=list(packages or []),
        environment=environment or EnvironmentSpec(),
        timeout=timeout,
        allow_failure=allow_failure,
        cache_enabled=cache_enabled,
        cache_skip_on_hit=cache_skip_on_hit,
        tool_versions=tool_versions,
        cache_key_extra=dict(cache_key_extra or {}),
    )


def image(
    name: str,
    *,
    registry: str,
    repository: str,
    platforms: Iterable[str | PlatformTarget],
    context: str = ".",
    file: str = "Dockerfile",
    target: str | None = None,
    build_args: Optional[Dict[str, str]] = None,
    labels: Optional[Dict[str, str]] = None,
    needs: Optional[List[str]] = None,
    after: Optional[List[str]] = None,
    when: Optional[Condition] = None,
    inputs: Optional[List[str]] = None,
    timeout: float | None = None,
    cache_enabled: bool = True,
) -> Job:
    """A multi-platform image build: one build per platform, all or nothing."""
    return Job(
        name=name,
        needs=list(needs or []),
        after=list(after or []),
        when=when,
        inputs=list(inputs or []),
        requires=["docker"],
        timeout=timeout,
        cache_enabled=cache_enabled,
        image=ImageSpec(
            registry=registry,
            repository=repository,
            context=context,
            file=file,
            target=target,
            platforms=_platforms(platforms),
            build_args=dict(build_args or {}),
            labels=dict(labels or {}),
        ),
    )


def service(
    name: str,
    *,
    ready_command: Optional[Sequence[str]] = None,
    ready_url: str | None = None,
) -> ServiceSpec:
    return ServiceSpec(
        name=name,
        ready_command=list(ready_command) if ready_command else None,
        ready_url=ready_url,
    )


def integration(
    name: str,
    *,
    compose_file: str,
    primary: ServiceSpec,
    script: Sequence[str],
    backing: Optional[List[ServiceSpec]] = None,
    script_service: str | None = None,
    project: str | None = None,
    ready_timeout: float = 60.0,
    poll_interval: float = 1.0,
    needs: Optional[List[str]] = None,
    after: Optional[List[str]] = None,
    when: Optional[Condition] = None,
    timeout: float | None = None,
    allow_failure: bool = False,
) -> Job:
    """Bring a compose topology up, wait for readiness, run `script` in the primary."""
    return Job(
        name=name,
        needs=list(needs or []),
        after=list(after or []),
        when=when,
        requires=["docker"],
        timeout=timeout,
        allow_failure=allow_failure,
        integration=IntegrationSpec(
            compose_file=compose_file,
            primary=primary,
            script=list(script),
            backing=list(backing or []),
            script_service=script_service,
            project=project,
            ready_timeout=ready_timeout,
            poll_interval=poll_interval,
        ),
    )


def publish_job(
    name: str,
    *,
    artifact_from: str,
    latest_tag: str = "latest",
    branches: Optional[List[str]] = None,
    needs: Optional[List[str]] = None,
    when: Optional[Condition] = None,
    timeout: float | None = None,
) -> Job:
    """Push the image built by `artifact_from` (implicitly a required dependency)."""
    deps = list(needs or [])
    if artifact_from not in deps:
        deps.insert(0, artifact_from)
    return Job(
        name=name,
        needs=deps,
        when=when,
        requires=["docker"],
        timeout=timeout,
        cache_enabled=False,
        publish=PublishSpec(artifact_from=artifact_from, latest_tag=latest_tag, branches=list(branches or [])),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._after: list[str] = []
        self._when: Optional[Condition] = None
        self._steps: list[Step] = []
        self._inputs: list[str] = []
        self._outputs: list[str] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._packages: list[str] = []
        self._environment = EnvironmentSpec()
        self._timeout: float | None = None
        self._allow_failure = False

        self._cache_enabled: bool = True
        self._cache_skip_on_hit: bool = True

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_after(self, *job_names: str):
        self._after.extend(job_names)
        return self

    def when(self, condition: Condition):
        self._when = condition
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_inputs(self, *paths: str):
        self._inputs.extend(paths)
        return self

    def with_outputs(self, *paths: str):
        self._outputs.extend(paths)
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_packages(self, *packages: str):
        self._packages.extend(packages)
        return self

    def in_container(self, image_ref: str, **kwargs):
        self._environment = container(image_ref, **kwargs)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_failure(self, allowed: bool = True):
        self._allow_failure = allowed
        return self

    def cache_behavior(self, *, enabled: bool = True, skip_on_hit: bool = True):
        self._cache_enabled = enabled
        self._cache_skip_on_hit = skip_on_hit
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            after=list(self._after),
            when=self._when,
            inputs=list(self._inputs),
            outputs=list(self._outputs),
            env=dict(self._env),
            requires=list(self._requires),
            packages=list(self._packages),
            environment=self._environment,
            timeout=self._timeout,
            allow_failure=self._allow_failure,
            cache_enabled=self._cache_enabled,
            cache_skip_on_hit=self._cache_skip_on_hit,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10","3.11"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper. Matrix expansions (lists) are flattened.

        from relayci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out
