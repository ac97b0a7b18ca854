# loader.py
"""
Pipeline definition surface.

Two ways to declare a job graph:

  - a Python workflow file defining `workflow() -> List[Job]` or `JOBS`
    (built with relayci.dsl)
  - a declarative YAML/JSON document, validated with pydantic:

        protected_branches: [master]
        jobs:
          fmt:
            steps:
              - {name: Format, run: cargo fmt --all --check}
          docker-build:
            needs: [fmt]
            image:
              registry: ghcr.io
              repository: flatpak/flat-manager
              platforms: [linux/amd64, linux/arm64]
          publish:
            needs: [docker-build]
            publish: {artifact_from: docker-build}

Whatever the source, a malformed definition is a ConfigurationError.
"""
from __future__ import annotations

import json
import runpy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .conditions import Condition, all_of, always, failure, on_branch, on_event, success
from .errors import ConfigurationError
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

DOCUMENT_SUFFIXES = (".yaml", ".yml", ".json")

Scalar = Union[str, int, float, bool]


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StepDoc(_Doc):
    name: str
    run: str
    cwd: Optional[str] = None


class EnvironmentDoc(_Doc):
    kind: Literal["local", "container"] = "local"
    image: Optional[str] = None
    install: str = "apt-get install -y {packages}"
    volumes: list[str] = Field(default_factory=list)
    user: Optional[str] = None

    @model_validator(mode="after")
    def _container_needs_image(self):
        if self.kind == "container" and not self.image:
            raise ValueError("a container environment needs an image")
        return self


class CacheDoc(_Doc):
    enabled: bool = True
    skip_on_hit: bool = True
    key_extra: dict[str, Scalar] = Field(default_factory=dict)
    tool_versions: Optional[dict[str, str]] = None


class ImageDoc(_Doc):
    registry: str
    repository: str
    platforms: list[str] = Field(min_length=1)
    context: str = "."
    file: str = "Dockerfile"
    target: Optional[str] = None
    build_args: dict[str, Scalar] = Field(default_factory=dict)
    labels: dict[str, Scalar] = Field(default_factory=dict)

    @field_validator("platforms")
    @classmethod
    def _parse_platforms(cls, values: list[str]) -> list[str]:
        for v in values:
            PlatformTarget.parse(v)
        return values


class ServiceDoc(_Doc):
    name: str
    ready_command: Optional[list[str]] = None
    ready_url: Optional[str] = None


class IntegrationDoc(_Doc):
    compose_file: str
    primary: ServiceDoc
    script: list[str] = Field(min_length=1)
    backing: list[ServiceDoc] = Field(default_factory=list)
    script_service: Optional[str] = None
    project: Optional[str] = None
    ready_timeout: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)


class PublishDoc(_Doc):
    artifact_from: str
    latest_tag: str = "latest"
    branches: list[str] = Field(default_factory=list)


class JobDoc(_Doc):
    steps: list[StepDoc] = Field(default_factory=list)
    needs: list[str] = Field(default_factory=list)
    after: list[str] = Field(default_factory=list)
    when: Literal["success", "failure", "always"] = "success"
    branches: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    packages: list[str] = Field(default_factory=list)
    environment: EnvironmentDoc = Field(default_factory=EnvironmentDoc)
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    env: dict[str, Scalar] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    allow_failure: bool = False
    cache: CacheDoc = Field(default_factory=CacheDoc)
    image: Optional[ImageDoc] = None
    integration: Optional[IntegrationDoc] = None
    publish: Optional[PublishDoc] = None

    @field_validator("needs", "after", mode="before")
    @classmethod
    def _one_or_many(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @model_validator(mode="after")
    def _one_kind(self):
        kinds = [k for k in ("image", "integration", "publish") if getattr(self, k) is not None]
        if len(kinds) > 1:
            raise ValueError(f"a job can only be one of image/integration/publish, got {kinds}")
        if kinds and self.steps:
            raise ValueError(f"{kinds[0]} jobs do not take steps")
        if not kinds and not self.steps:
            raise ValueError("job needs steps (or one of image/integration/publish)")
        return self


class PipelineDoc(_Doc):
    protected_branches: Optional[list[str]] = None
    jobs: dict[str, JobDoc] = Field(min_length=1)


# ----------------------------------------------------------------------
# Document -> model
# ----------------------------------------------------------------------

@dataclass
class Pipeline:
    jobs: List[Job]
    source: Path
    protected_branches: Optional[List[str]] = None


_WHEN = {"success": success, "failure": failure, "always": always}


def _condition(doc: JobDoc) -> Condition:
    parts = [_WHEN[doc.when]()]
    if doc.branches:
        parts.append(on_branch(*doc.branches))
    if doc.events:
        parts.append(on_event(*doc.events))
    return all_of(*parts)


def _strs(values: Dict[str, Scalar]) -> Dict[str, str]:
    return {k: str(v).lower() if isinstance(v, bool) else str(v) for k, v in values.items()}


def _service(doc: ServiceDoc) -> ServiceSpec:
    return ServiceSpec(name=doc.name, ready_command=doc.ready_command, ready_url=doc.ready_url)


def job_from_doc(name: str, doc: JobDoc) -> Job:
    needs = list(doc.needs)
    if doc.publish is not None and doc.publish.artifact_from not in needs:
        needs.insert(0, doc.publish.artifact_from)

    job = Job(
        name=name,
        steps=[Step(name=s.name, run=s.run, cwd=s.cwd) for s in doc.steps],
        needs=needs,
        after=list(doc.after),
        when=_condition(doc),
        inputs=list(doc.inputs),
        outputs=list(doc.outputs),
        env=_strs(doc.env),
        requires=list(doc.requires),
        packages=list(doc.packages),
        environment=EnvironmentSpec(
            kind=doc.environment.kind,
            image=doc.environment.image,
            install=doc.environment.install,
            volumes=tuple(doc.environment.volumes),
            user=doc.environment.user,
        ),
        timeout=doc.timeout,
        allow_failure=doc.allow_failure,
        cache_enabled=doc.cache.enabled,
        cache_skip_on_hit=doc.cache.skip_on_hit,
        tool_versions=doc.cache.tool_versions,
        cache_key_extra=_strs(doc.cache.key_extra),
    )
    if doc.image is not None:
        job.requires = job.requires or ["docker"]
        job.image = ImageSpec(
            registry=doc.image.registry,
            repository=doc.image.repository,
            context=doc.image.context,
            file=doc.image.file,
            target=doc.image.target,
            platforms=[PlatformTarget.parse(p) for p in doc.image.platforms],
            build_args=_strs(doc.image.build_args),
            labels=_strs(doc.image.labels),
        )
    if doc.integration is not None:
        i = doc.integration
        job.integration = IntegrationSpec(
            compose_file=i.compose_file,
            primary=_service(i.primary),
            script=list(i.script),
            backing=[_service(b) for b in i.backing],
            script_service=i.script_service,
            project=i.project,
            ready_timeout=i.ready_timeout,
            poll_interval=i.poll_interval,
        )
    if doc.publish is not None:
        job.cache_enabled = False
        job.publish = PublishSpec(
            artifact_from=doc.publish.artifact_from,
            latest_tag=doc.publish.latest_tag,
            branches=list(doc.publish.branches),
        )
    return job


def _format_errors(err: ValidationError) -> List[str]:
    out = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        out.append(f"{loc}: {e['msg']}" if loc else e["msg"])
    return out


def parse_pipeline_document(data: Any, *, source: str | Path = "<document>") -> Pipeline:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{source}: pipeline document must be a mapping, got {type(data).__name__}"
        )
    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        errors = _format_errors(e)
        raise ConfigurationError(
            f"{source}: invalid pipeline document ({len(errors)} error(s))",
            details={"errors": errors},
        ) from e
    jobs = [job_from_doc(name, j) for name, j in doc.jobs.items()]
    return Pipeline(jobs=jobs, source=Path(source), protected_branches=doc.protected_branches)


def load_pipeline_document(path: str | Path) -> Pipeline:
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline document not found: {p}")
    if p.suffix not in DOCUMENT_SUFFIXES:
        raise ConfigurationError(f"Unsupported pipeline document format: {p.suffix}")

    text = p.read_text(encoding="utf-8")
    try:
        if p.suffix == ".json":
            data = json.loads(text) if text.strip() else {}
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"{p.name}: could not parse: {e}") from e
    return parse_pipeline_document(data, source=p)


# ----------------------------------------------------------------------
# Python workflow files
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"relayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigurationError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return jobs


def load_pipeline(path: str | Path) -> Pipeline:
    """Load either kind of definition, picked by file suffix."""
    p = Path(path)
    if p.suffix in DOCUMENT_SUFFIXES:
        return load_pipeline_document(p)
    jobs = load_workflow(p)
    return Pipeline(jobs=jobs, source=p.expanduser().resolve())
